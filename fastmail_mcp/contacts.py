"""Contact operations over CardDAV."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .calendars import fetch_one, find_collection, find_owner
from .dav import CardDavClient
from .errors import NotFound, ProtocolError
from .models import Collection, ContactRecord, DavObject
from .rights import require_writable
from .vcard import build_contact, parse_contact_summary

log = logging.getLogger(__name__)

READ_ONLY_MESSAGE = "This address book is read-only. Pick another one from list_contact_lists."
READ_ONLY_HINT = "CardDAV create failed. This usually means you're targeting a read-only address book"


async def _address_books(dav: CardDavClient) -> List[Collection]:
    await dav.login()
    return await dav.fetch_collections()


def _summary(obj: DavObject) -> Optional[Dict[str, Any]]:
    return parse_contact_summary(obj.data) if obj.data is not None else None


def contact_entry(obj: DavObject) -> Dict[str, Any]:
    return {"id": obj.url, "url": obj.url, "etag": obj.etag, "summary": _summary(obj), "vcard": obj.data}


def _haystack(summary: Optional[Dict[str, Any]]) -> str:
    parts: List[str] = []
    for value in (summary or {}).values():
        if isinstance(value, list):
            parts.extend(str(item) for item in value)
        else:
            parts.append(str(value))
    return "\n".join(parts).lower()


async def list_address_books(dav: CardDavClient) -> List[Dict[str, Any]]:
    return [
        {"id": book.url, "name": book.display_name, "url": book.url}
        for book in await _address_books(dav)
    ]


async def list_contacts(dav: CardDavClient, address_book_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    book = find_collection(await _address_books(dav), address_book_id, "Address book")
    objects = await dav.fetch_objects(book.url)
    return [contact_entry(obj) for obj in objects[:limit]]


async def search_contacts(
    dav: CardDavClient,
    query: str,
    address_book_id: Optional[str] = None,
    limit: int = 50,
) -> List[Dict[str, Any]]:
    """Case-insensitive substring match over the parsed summary of every card."""
    needle = query.lower()
    books = await _address_books(dav)
    if address_book_id:
        books = [book for book in books if book.url == address_book_id]
    if not books:
        raise NotFound("No address books found")

    matches: List[Dict[str, Any]] = []
    for book in books:
        for obj in await dav.fetch_objects(book.url):
            summary = _summary(obj)
            if needle in _haystack(summary):
                matches.append({"id": obj.url, "url": obj.url, "etag": obj.etag, "summary": summary})
                if len(matches) >= limit:
                    return matches
    return matches


async def get_contact(dav: CardDavClient, contact_id: str) -> Dict[str, Any]:
    book = find_owner(await _address_books(dav), contact_id, "Address book")
    return contact_entry(await fetch_one(dav, book, contact_id, "Contact"))


async def create_contact(
    dav: CardDavClient,
    address_book_id: str,
    full_name: str,
    emails: Optional[List[str]] = None,
    phones: Optional[List[str]] = None,
    note: Optional[str] = None,
) -> Dict[str, Any]:
    book = find_collection(await _address_books(dav), address_book_id, "Address book")
    await require_writable(dav, book.url, READ_ONLY_MESSAGE)

    built = build_contact(ContactRecord(
        full_name=full_name, emails=list(emails or []), phones=list(phones or []), note=note
    ))
    try:
        url = await dav.create_object(book.url, built.filename, built.text)
    except ProtocolError as exc:
        if exc.status == 403:
            raise ProtocolError(READ_ONLY_HINT, status=403, body=exc.body) from exc
        raise
    log.info("created contact %s", url)
    return {"uid": built.uid, "id": url, "contactId": url}


async def update_contact(dav: CardDavClient, contact_id: str, vcard: str, etag: Optional[str] = None) -> Dict[str, Any]:
    book = find_owner(await _address_books(dav), contact_id, "Address book")
    await require_writable(dav, book.url, READ_ONLY_MESSAGE)
    if etag is None:
        etag = (await fetch_one(dav, book, contact_id, "Contact")).etag
    await dav.update_object(contact_id, vcard, etag)
    return {"status": "OK"}


async def delete_contact(dav: CardDavClient, contact_id: str, etag: Optional[str] = None) -> Dict[str, Any]:
    book = find_owner(await _address_books(dav), contact_id, "Address book")
    await require_writable(dav, book.url, READ_ONLY_MESSAGE)
    if etag is None:
        etag = (await fetch_one(dav, book, contact_id, "Contact")).etag
    await dav.delete_object(contact_id, etag)
    return {"status": "OK"}

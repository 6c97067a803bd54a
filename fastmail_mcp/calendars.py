"""
Calendar operations over CalDAV.

Every operation logs in, rediscovers the calendars below the home URL and
works from that fresh listing.  Calendars are identified by their absolute
URL; events by the absolute URL of their ``.ics`` resource.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional, Sequence

from .dav import CalDavClient
from .errors import FastmailError, InvalidFormat, LastCollectionError, NotFound, ProtocolError
from .ical import build_event, parse_event_summary
from .models import Attendee, Collection, DavObject, EventRecord
from .rights import get_rights, require_writable
from .timezones import (
    build_timezone_property,
    ensure_offset_aware,
    extract_timezone,
    is_valid_timezone,
    machine_timezone,
    resolve_timezone,
)

log = logging.getLogger(__name__)

READ_ONLY_HINT = "CalDAV create failed. This usually means you're targeting a read-only calendar/share"


async def _calendars(dav: CalDavClient) -> List[Collection]:
    await dav.login()
    return await dav.fetch_collections()


def find_collection(collections: Sequence[Collection], url: str, label: str = "Calendar") -> Collection:
    for collection in collections:
        if collection.url == url:
            return collection
    raise NotFound(f"{label} not found: {url}")


def find_owner(collections: Sequence[Collection], object_url: str, label: str = "Calendar") -> Collection:
    """Return the collection whose URL prefixes ``object_url``."""
    for collection in collections:
        if object_url.startswith(collection.url):
            return collection
    raise NotFound(f"{label} for {object_url} not found")


async def fetch_one(dav: CalDavClient, collection: Collection, url: str, label: str = "Event") -> DavObject:
    """Fetch one object by URL; anything but a returned body for that URL is a miss."""
    try:
        objects = await dav.fetch_objects(collection.url, urls=[url])
    except ProtocolError as exc:
        if exc.status == 404:
            raise NotFound(f"{label} not found: {url}") from exc
        raise
    for obj in objects:
        if obj.url == url and obj.data is not None:
            return obj
    raise NotFound(f"{label} not found: {url}")


def calendar_timezone(calendar: Collection) -> str:
    return resolve_timezone(extract_timezone(calendar.timezone))


def event_entry(obj: DavObject) -> Dict[str, Any]:
    return {
        "id": obj.url,
        "url": obj.url,
        "etag": obj.etag,
        "summary": parse_event_summary(obj.data) if obj.data is not None else None,
        "ical": obj.data,
    }


async def list_calendars(dav: CalDavClient) -> List[Dict[str, Any]]:
    """List calendars with each one's privileges, introspected concurrently."""
    calendars = await _calendars(dav)
    all_rights = await asyncio.gather(*(get_rights(dav, calendar.url) for calendar in calendars))
    out: List[Dict[str, Any]] = []
    for calendar, rights in zip(calendars, all_rights):
        entry: Dict[str, Any] = {"id": calendar.url, "name": calendar.display_name, "url": calendar.url}
        timezone = extract_timezone(calendar.timezone)
        if timezone:
            entry["timezone"] = timezone
        if rights is not None:
            entry["canWrite"] = rights.can_write
            entry["privileges"] = rights.privileges
        out.append(entry)
    return out


async def create_calendar(
    dav: CalDavClient,
    name: str,
    description: Optional[str] = None,
    color: Optional[str] = None,
    timezone: Optional[str] = None,
) -> Dict[str, Any]:
    tz = timezone or machine_timezone()
    if not is_valid_timezone(tz):
        raise InvalidFormat(f"Invalid timezone: {tz}")

    await dav.login()
    props: Dict[str, str] = {}
    if description:
        props["description"] = description
    if color:
        props["color"] = color
    props["timezone"] = build_timezone_property(tz)

    url = await dav.make_calendar(str(uuid.uuid4()), name, props)
    log.info("created calendar %s", url)
    return {"calendarId": url, "name": name, "timezone": tz}


async def update_calendar(
    dav: CalDavClient,
    calendar_id: str,
    name: Optional[str] = None,
    description: Optional[str] = None,
    color: Optional[str] = None,
    timezone: Optional[str] = None,
) -> Dict[str, Any]:
    if name is None and description is None and color is None and timezone is None:
        raise InvalidFormat("At least one property (name, description, color, timezone) must be provided")
    if timezone is not None and not is_valid_timezone(timezone):
        raise InvalidFormat(f"Invalid timezone: {timezone}")

    calendar = find_collection(await _calendars(dav), calendar_id)
    await require_writable(dav, calendar.url, "This calendar is read-only.")

    props: Dict[str, str] = {}
    if name is not None:
        props["name"] = name
    if description is not None:
        props["description"] = description
    if color is not None:
        props["color"] = color
    if timezone is not None:
        props["timezone"] = build_timezone_property(timezone)

    await dav.proppatch(calendar.url, props)
    return {"status": "OK"}


async def delete_calendar(dav: CalDavClient, calendar_id: str) -> Dict[str, Any]:
    calendars = await _calendars(dav)
    calendar = find_collection(calendars, calendar_id)
    if len(calendars) <= 1:
        raise LastCollectionError("Refusing to delete the last remaining calendar.")
    await dav.delete_collection(calendar.url)
    log.info("deleted calendar %s", calendar.url)
    return {"status": "OK"}


async def get_event(dav: CalDavClient, event_id: str) -> Dict[str, Any]:
    calendar = find_owner(await _calendars(dav), event_id)
    return event_entry(await fetch_one(dav, calendar, event_id))


async def list_events(
    dav: CalDavClient,
    calendar_id: str,
    start: Optional[str] = None,
    end: Optional[str] = None,
    limit: int = 50,
) -> List[Dict[str, Any]]:
    """
    List events of a calendar.  The time range only applies when both
    bounds are given; naive bounds are read in the calendar's timezone.
    """
    calendar = find_collection(await _calendars(dav), calendar_id)
    time_range = None
    if start and end:
        tz = calendar_timezone(calendar)
        time_range = (ensure_offset_aware(start, tz), ensure_offset_aware(end, tz))
    objects = await dav.fetch_objects(calendar.url, time_range=time_range)
    return [event_entry(obj) for obj in objects[:limit]]


async def create_event(
    dav: CalDavClient,
    calendar_id: str,
    title: str,
    start: str,
    end: str,
    organizer_email: Optional[str],
    organizer_name: Optional[str] = None,
    description: Optional[str] = None,
    location: Optional[str] = None,
    attendees: Optional[List[Attendee]] = None,
) -> Dict[str, Any]:
    if not organizer_email:
        raise FastmailError("Missing organizer email. Set FASTMAIL_ORGANIZER_EMAIL (or FASTMAIL_USERNAME).")

    calendar = find_collection(await _calendars(dav), calendar_id)
    await require_writable(dav, calendar.url)

    tz = calendar_timezone(calendar)
    built = build_event(EventRecord(
        title=title,
        start=ensure_offset_aware(start, tz),
        end=ensure_offset_aware(end, tz),
        organizer_email=organizer_email,
        organizer_name=organizer_name,
        description=description,
        location=location,
        attendees=list(attendees or []),
    ))
    try:
        url = await dav.create_object(calendar.url, built.filename, built.text)
    except ProtocolError as exc:
        if exc.status == 403:
            raise ProtocolError(READ_ONLY_HINT, status=403, body=exc.body) from exc
        raise
    log.info("created event %s", url)
    return {"uid": built.uid, "id": url, "eventId": url}


async def update_event(dav: CalDavClient, event_id: str, ical: str, etag: Optional[str] = None) -> Dict[str, Any]:
    """Replace an event with ``ical``, guarded by its ETag."""
    calendar = find_owner(await _calendars(dav), event_id)
    await require_writable(dav, calendar.url)
    if etag is None:
        etag = (await fetch_one(dav, calendar, event_id)).etag
    await dav.update_object(event_id, ical, etag)
    return {"status": "OK"}


async def delete_event(dav: CalDavClient, event_id: str, etag: Optional[str] = None) -> Dict[str, Any]:
    calendar = find_owner(await _calendars(dav), event_id)
    await require_writable(dav, calendar.url)
    if etag is None:
        etag = (await fetch_one(dav, calendar, event_id)).etag
    await dav.delete_object(event_id, etag)
    return {"status": "OK"}

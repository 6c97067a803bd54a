"""
WebDAV adapters for Fastmail's CalDAV and CardDAV endpoints.

Both sit on :class:`caldav.davclient.DAVClient`.  The calendar side walks
caldav's object model: the principal's ``calendar_home_set`` and its
``calendars()``, ``Calendar.search`` for queries, ``make_calendar``,
``set_properties`` and ``delete`` for collection writes.  caldav has no
address book model, so the CardDAV side sends PROPFIND and REPORT bodies
composed from caldav elements and reads the multistatus replies with
``DAVResponse.expand_simple_props``.

Object writes go through ``DAVClient.request`` because they carry
``If-Match`` / ``If-None-Match`` preconditions.  Every blocking call runs in
a worker thread via :func:`asyncio.to_thread`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import unquote, urljoin, urlparse

from caldav.davclient import DAVClient
from caldav.elements import cdav, dav, ical
from caldav.elements.base import BaseElement
from caldav.lib.error import AuthorizationError, DAVError, NotFoundError

from .elements import (
    Addressbook,
    AddressbookHomeSet,
    AddressbookMultiGet,
    AddressbookQuery,
    AddressData,
    CurrentUserPrivilegeSet,
    Filter,
    Privilege,
    PropFilter,
)
from .errors import AuthError, ProtocolError
from .ical import parse_iso
from .models import Collection, DavObject

log = logging.getLogger(__name__)

# Collection property names accepted by make_calendar and proppatch
CALENDAR_PROPERTIES = {
    "name": dav.DisplayName,
    "description": cdav.CalendarDescription,
    "color": ical.CalendarColor,
    "timezone": cdav.CalendarTimeZone,
}

_CALENDAR_PROPS = [
    dav.DisplayName(),
    cdav.CalendarDescription(),
    ical.CalendarColor(),
    cdav.CalendarTimeZone(),
]

_PRIVILEGES_XPATH = f".//{Privilege.tag}/*"


def _property_elements(props: Dict[str, str]) -> List[BaseElement]:
    return [CALENDAR_PROPERTIES[key](value) for key, value in props.items()]


def _first(value: Any) -> Optional[str]:
    if isinstance(value, list):
        return value[0] if value else None
    return value


class DavClient:
    """
    Async adapter over one CalDAV or CardDAV account.

    Subclasses supply discovery (:meth:`login`, :meth:`fetch_collections`)
    and the query side of :meth:`fetch_objects`; the transport, privilege
    introspection, multigets and precondition-guarded writes are shared.
    """

    label = "WebDAV"
    kind = ""
    home_set_name = ""
    content_type = "text/plain; charset=utf-8"
    data_element: type = BaseElement
    multiget_element: type = BaseElement

    def __init__(self, url: str, username: Optional[str], password: Optional[str], client: Any = None) -> None:
        self.principal_url = url if url.endswith("/") else f"{url}/"
        parsed = urlparse(self.principal_url)
        self.server_root = f"{parsed.scheme}://{parsed.netloc}"
        self.home_url: Optional[str] = None
        self._client = client or DAVClient(url=self.principal_url, username=username, password=password)

    # -- transport -------------------------------------------------------

    def _guard(self, action: str, url: str, call: Callable[..., Any], *args: Any) -> Any:
        """Run one blocking caldav call, translating its failures to :class:`ProtocolError`."""
        try:
            return call(*args)
        except AuthorizationError as exc:
            # caldav raises for both 401 and 403 without exposing which
            raise ProtocolError(f"{self.label} {action} {url} was rejected", status=403, body=exc.reason) from exc
        except NotFoundError as exc:
            raise ProtocolError(f"{self.label} {action} {url} not found", status=404, body=exc.reason) from exc
        except DAVError as exc:
            raise ProtocolError(f"{self.label} {action} {url} failed: {exc}") from exc
        except OSError as exc:
            # connection, TLS and timeout errors from the HTTP library
            log.error("%s %s %s could not reach the server: %s", self.label, action, url, exc)
            raise ProtocolError(f"{self.label} {action} {url} could not reach the server: {exc}") from exc

    async def _run(self, action: str, url: str, call: Callable[..., Any], *args: Any) -> Any:
        log.debug("%s %s", action, url)
        return await asyncio.to_thread(self._guard, action, url, call, *args)

    def _checked(self, action: str, url: str, response: Any) -> Any:
        status = int(response.status)
        log.debug("%s %s -> %s", action, url, status)
        if status // 100 != 2:
            log.error("%s %s %s failed with status %s", self.label, action, url, status)
            raise ProtocolError(f"{self.label} {action} failed", status=status, body=response.raw)
        return response

    async def request(
        self,
        method: str,
        url: str,
        body: str = "",
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """Issue one request and raise :class:`ProtocolError` on a non-2xx status."""

        def _send() -> Any:
            return self._checked(method, url, self._client.request(url, method, body, headers or {}))

        return await self._run(method, url, _send)

    def absolute(self, href: str) -> str:
        return href if href.startswith("http") else urljoin(self.server_root, href)

    def _url(self, value: Any) -> str:
        """Absolute, unquoted form of a caldav URL so identifiers compare as strings."""
        parsed = urlparse(str(value))
        root = f"{parsed.scheme}://{parsed.netloc}" if parsed.netloc else self.server_root
        return root + unquote(parsed.path)

    def _propfind(
        self,
        url: str,
        props: Sequence[BaseElement],
        depth: int = 0,
        multi_value: Sequence[BaseElement] = (),
        xpath: Optional[str] = None,
    ) -> Dict[str, Dict[str, Any]]:
        root = dav.Propfind() + (dav.Prop() + [*props, *multi_value])
        response = self._checked("PROPFIND", url, self._client.propfind(url, str(root), depth))
        found = response.expand_simple_props(list(props), list(multi_value), xpath=xpath)
        return {self.absolute(href): values for href, values in found.items()}

    def _report(self, url: str, root: BaseElement, depth: Optional[int]) -> List[DavObject]:
        response = self._checked("REPORT", url, self._client.report(url, str(root), depth))
        found = response.expand_simple_props([dav.GetEtag(), self.data_element()])
        objects: List[DavObject] = []
        for href, values in found.items():
            data = values.get(self.data_element.tag)
            # 404 entries and the collection itself carry no data
            if not data:
                continue
            objects.append(DavObject(url=self.absolute(href), etag=values.get(dav.GetEtag.tag), data=data))
        return objects

    # -- discovery -------------------------------------------------------

    def _home_set_href(self) -> Optional[str]:
        raise NotImplementedError

    def _remember_home(self, href: str) -> str:
        url = self.absolute(href)
        return url if url.endswith("/") else f"{url}/"

    async def login(self) -> str:
        """Resolve and remember the home URL, verifying the credentials."""
        try:
            href = await self._run("PROPFIND", self.principal_url, self._home_set_href)
        except ProtocolError as exc:
            log.error("%s login failed: %s", self.label, exc)
            raise AuthError(f"{self.label} login failed ({exc.status or 'no status'})") from exc
        if not href:
            raise ProtocolError(f"{self.label} server did not report a {self.home_set_name}")
        self.home_url = self._remember_home(href)
        return self.home_url

    async def fetch_collections(self) -> List[Collection]:
        raise NotImplementedError

    def _privileges(self, url: str) -> Optional[List[str]]:
        found = self._propfind(url, (), 0, multi_value=[CurrentUserPrivilegeSet()], xpath=_PRIVILEGES_XPATH)
        for values in found.values():
            tokens = values.get(CurrentUserPrivilegeSet.tag)
            if tokens:
                return tokens
        return None

    async def fetch_privileges(self, url: str) -> Optional[List[str]]:
        """Return the privilege tags of ``url`` (``{DAV:}read``, ...), if reported."""
        return await self._run("PROPFIND", url, self._privileges, url)

    # -- objects ---------------------------------------------------------

    def _multiget(self, collection_url: str, urls: Iterable[str]) -> List[DavObject]:
        root = self.multiget_element() + [
            dav.Prop() + [dav.GetEtag(), self.data_element()],
            *(dav.Href(value=urlparse(url).path) for url in urls),
        ]
        # multiget REPORTs go out without a Depth header
        return self._report(collection_url, root, None)

    def _query(self, collection_url: str, time_range: Optional[Tuple[str, str]]) -> List[DavObject]:
        raise NotImplementedError

    async def fetch_objects(
        self,
        collection_url: str,
        time_range: Optional[Tuple[str, str]] = None,
        urls: Optional[List[str]] = None,
    ) -> List[DavObject]:
        """
        Fetch objects of a collection.  ``urls`` switches to a multiget of
        exactly those objects; ``time_range`` (offset-aware ISO bounds)
        restricts a calendar query to overlapping events.  Entries the
        server reports without data (missing URLs) are left out.
        """
        if urls is not None:
            return await self._run("REPORT", collection_url, self._multiget, collection_url, urls)
        return await self._run("REPORT", collection_url, self._query, collection_url, time_range)

    async def create_object(self, collection_url: str, filename: str, text: str) -> str:
        """PUT a new object; the server must not already hold one at that URL."""
        url = urljoin(collection_url, filename)
        await self.request("PUT", url, text, {"Content-Type": self.content_type, "If-None-Match": "*"})
        return url

    async def update_object(self, url: str, text: str, etag: Optional[str]) -> None:
        headers = {"Content-Type": self.content_type}
        if etag:
            headers["If-Match"] = etag
        await self.request("PUT", url, text, headers)

    async def delete_object(self, url: str, etag: Optional[str] = None) -> None:
        headers = {"If-Match": etag} if etag else {}
        await self.request("DELETE", url, "", headers)


class CalDavClient(DavClient):
    """Calendars, through caldav's principal and calendar objects."""

    label = "CalDAV"
    kind = "calendar"
    home_set_name = "calendar-home-set"
    content_type = "text/calendar; charset=utf-8"
    data_element = cdav.CalendarData
    multiget_element = cdav.CalendarMultiGet

    def _principal(self) -> Any:
        return self._client.principal(url=self.principal_url)

    def _home_set_href(self) -> Optional[str]:
        return _first(self._principal().get_property(cdav.CalendarHomeSet()))

    def _remember_home(self, href: str) -> str:
        principal = self._principal()
        principal.calendar_home_set = href
        url = self._url(principal.calendar_home_set.url)
        return url if url.endswith("/") else f"{url}/"

    def _calendars(self) -> List[Collection]:
        home = self._principal().calendar_home_set
        response = home.get_properties(_CALENDAR_PROPS, depth=1, parse_response_xml=False)
        found = {
            self.absolute(href).rstrip("/"): values
            for href, values in response.expand_simple_props(_CALENDAR_PROPS).items()
        }
        collections: List[Collection] = []
        for calendar in home.calendars():
            url = self._url(calendar.url)
            if not url.endswith("/"):
                url = f"{url}/"
            values = found.get(url.rstrip("/"), {})
            collections.append(Collection(
                url=url,
                kind=self.kind,
                display_name=values.get(dav.DisplayName.tag) or "",
                timezone=values.get(cdav.CalendarTimeZone.tag),
                description=values.get(cdav.CalendarDescription.tag),
                color=values.get(ical.CalendarColor.tag),
            ))
        return collections

    async def fetch_collections(self) -> List[Collection]:
        """List the calendars below the calendar home."""
        if self.home_url is None:
            await self.login()
        return await self._run("PROPFIND", self.home_url, self._calendars)

    def _query(self, collection_url: str, time_range: Optional[Tuple[str, str]]) -> List[DavObject]:
        calendar = self._client.calendar(url=collection_url)
        if time_range is None:
            found = calendar.search(event=True, props=[dav.GetEtag()])
        else:
            start, end = time_range
            found = calendar.search(event=True, start=parse_iso(start), end=parse_iso(end), props=[dav.GetEtag()])
        return [
            DavObject(url=self._url(event.url), etag=event.props.get(dav.GetEtag.tag), data=event.data)
            for event in found
            if event.data
        ]

    # -- collections -----------------------------------------------------

    def _make_calendar(self, cal_id: str, name: str, props: Dict[str, str]) -> str:
        calendar = self._principal().make_calendar(name=name, cal_id=cal_id)
        extra = _property_elements(props)
        if extra:
            calendar.set_properties(extra)
        url = self._url(calendar.url)
        return url if url.endswith("/") else f"{url}/"

    async def make_calendar(self, cal_id: str, name: str, props: Dict[str, str]) -> str:
        """
        Create a calendar named ``name`` below the home set and apply the
        remaining ``props`` (``description``, ``color``, ``timezone``).
        Returns the new calendar's URL.
        """
        url = f"{self.home_url or self.principal_url}{cal_id}/"
        return await self._run("MKCALENDAR", url, self._make_calendar, cal_id, name, props)

    def _set_properties(self, url: str, props: Dict[str, str]) -> None:
        self._client.calendar(url=url).set_properties(_property_elements(props))

    async def proppatch(self, url: str, props: Dict[str, str]) -> None:
        await self._run("PROPPATCH", url, self._set_properties, url, props)

    def _delete_calendar(self, url: str) -> None:
        self._client.calendar(url=url).delete(wipe=False)

    async def delete_collection(self, url: str) -> None:
        await self._run("DELETE", url, self._delete_calendar, url)


class CardDavClient(DavClient):
    """Address books, through caldav's PROPFIND and REPORT calls."""

    label = "CardDAV"
    kind = "addressbook"
    home_set_name = "addressbook-home-set"
    content_type = "text/vcard; charset=utf-8"
    data_element = AddressData
    multiget_element = AddressbookMultiGet

    def _home_set_href(self) -> Optional[str]:
        for values in self._propfind(self.principal_url, [AddressbookHomeSet()]).values():
            href = _first(values.get(AddressbookHomeSet.tag))
            if href:
                return href
        return None

    def _address_books(self, home: str) -> List[Collection]:
        found = self._propfind(home, [dav.DisplayName()], depth=1, multi_value=[dav.ResourceType()])
        collections: List[Collection] = []
        for url, values in found.items():
            if Addressbook.tag not in (values.get(dav.ResourceType.tag) or []):
                continue
            collections.append(Collection(
                url=url,
                kind=self.kind,
                display_name=values.get(dav.DisplayName.tag) or "",
            ))
        return collections

    async def fetch_collections(self) -> List[Collection]:
        """List the address books below the address book home."""
        home = self.home_url or await self.login()
        return await self._run("PROPFIND", home, self._address_books, home)

    def _query(self, collection_url: str, time_range: Optional[Tuple[str, str]]) -> List[DavObject]:
        root = AddressbookQuery() + [
            dav.Prop() + [dav.GetEtag(), AddressData()],
            Filter() + PropFilter("FN"),
        ]
        return self._report(collection_url, root, 1)


def caldav_client(url: str, username: Optional[str], password: Optional[str], client: Any = None) -> CalDavClient:
    return CalDavClient(url, username, password, client=client)


def carddav_client(url: str, username: Optional[str], password: Optional[str], client: Any = None) -> CardDavClient:
    return CardDavClient(url, username, password, client=client)

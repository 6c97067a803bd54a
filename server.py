"""
MCP Server for Fastmail Mail, Calendars and Contacts
===================================================

This module implements a Model Context Protocol (MCP) server that exposes a
Fastmail account as tools.  Mail is reached over JMAP, calendars over CalDAV
and contacts over CardDAV.  The server uses the `fastmcp` framework to
handle the protocol machinery; each function decorated with `@mcp.tool()`
becomes a callable tool.

**Prerequisites**

Install the project (``pip install -e .``) and provide credentials in the
environment or in a `.env` file next to this script:

* ``FASTMAIL_USERNAME`` and ``FASTMAIL_APP_PASSWORD`` - an app password with
  mail, calendar and contacts access.  Used for JMAP and for CalDAV/CardDAV.
* ``FASTMAIL_API_TOKEN`` - optional JMAP bearer token; preferred for mail
  when set.  CalDAV/CardDAV always need the app password.

Optional: ``FASTMAIL_DAV_USERNAME``, ``FASTMAIL_BASE_URL``,
``FASTMAIL_CALDAV_URL``, ``FASTMAIL_CARDDAV_URL``,
``FASTMAIL_ORGANIZER_EMAIL``, ``MCP_TRANSPORT`` (``stdio`` or ``http``),
``HOST``, ``PORT`` and ``LOG_LEVEL``.

**Functionality**

* **Mail:** list, create, rename and delete mailboxes; list, search and read
  messages; send mail (draft, submit and file in Sent in one JMAP request);
  mark read/unread, move, trash; list attachments and build download URLs.

* **Calendars:** list calendars together with the user's write privilege,
  create/update/delete calendars, and list, read, create, update and delete
  events.  Naive datetimes (without an offset) are interpreted in the
  calendar's own timezone, falling back to the machine timezone.

* **Contacts:** list address books, list and search contacts, and read,
  create, update and delete vCards.

All tools return their results as structured content (JSON objects) under
the ``structuredContent`` field of the MCP tool result.  The JSON is also
serialized into a text block in the ``content`` field.

**Security considerations**

The app password grants full access to mail, calendars and contacts.  Run
the HTTP transport only behind an authenticating reverse proxy.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP
from fastmcp.tools.tool import ToolResult
from mcp.types import TextContent
from starlette.requests import Request
from starlette.responses import PlainTextResponse

from fastmail_mcp import calendars, contacts, mail
from fastmail_mcp.config import Settings, load_env_file
from fastmail_mcp.context import FastmailContext
from fastmail_mcp.errors import InvalidFormat
from fastmail_mcp.ical import parse_iso
from fastmail_mcp.models import Attendee
from fastmail_mcp.timezones import has_offset, is_valid_timezone, naive_to_utc


# ---------------------------------------------------------------------------
#  Configuration
#
# Environment variables are loaded from a .env file located next to this
# script.  Missing credentials are reported by the first tool that needs
# them, so the server can start (and list its tools) without any.
# ---------------------------------------------------------------------------

load_env_file()
SETTINGS = Settings.from_env()

logging.basicConfig(level=SETTINGS.log_level, format="%(levelname)s %(name)s %(message)s")
log = logging.getLogger("fastmail-mcp")

CONTEXT = FastmailContext(SETTINGS)

MAIL_LIMIT_MAX = 200
DAV_LIMIT_MAX = 500


# ---------------------------------------------------------------------------
#  MCP Server
# ---------------------------------------------------------------------------

mcp = FastMCP("fastmail-mcp", instructions=(
    "This server exposes a Fastmail account (mail, calendars, contacts) via "
    "the Model Context Protocol.  Mailbox, calendar, event, address book and "
    "contact ids are the values returned by the list tools; pass them back "
    "unchanged.  Datetimes are ISO 8601, either with an offset "
    "(2026-01-15T19:30:00Z, 2026-01-15T19:30:00+01:00) or naive "
    "(2026-01-15T19:30:00), in which case the calendar's timezone is used.  "
    "Only create events in calendars reported with canWrite=true."
))


@mcp.custom_route("/health", methods=["GET"])
async def health(_: Request) -> PlainTextResponse:
    """Simple health check for infrastructure monitoring."""
    return PlainTextResponse("OK")


def _tool_result(payload: Dict[str, Any], *, text: Optional[str] = None) -> ToolResult:
    """Create a ToolResult that keeps both summary text and JSON detail."""
    blocks: List[TextContent] = []
    if text:
        blocks.append(TextContent(type="text", text=text))
    blocks.append(TextContent(type="text", text=json.dumps(payload, indent=2, sort_keys=True, default=str)))
    return ToolResult(content=blocks, structured_content=payload)


# ---------------------------------------------------------------------------
#  Input validation
#
# Runs before any network call so that malformed arguments never reach
# the server.
# ---------------------------------------------------------------------------

_NAIVE_DATETIME_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}$")
_COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _check_timezone(tz: Optional[str]) -> None:
    if tz is not None and not is_valid_timezone(tz):
        raise InvalidFormat(f"Invalid timezone: {tz}")


def _check_datetime(field: str, value: Optional[str]) -> None:
    """Accept offset-aware ISO 8601 or a naive ``YYYY-MM-DDTHH:MM:SS``."""
    if value is None:
        return
    try:
        if _NAIVE_DATETIME_RE.match(value):
            naive_to_utc(value, "UTC")
            return
        if has_offset(value):
            parse_iso(value)
            return
    except InvalidFormat:
        pass
    raise InvalidFormat(
        f"{field} must be an ISO 8601 datetime with an offset or YYYY-MM-DDTHH:MM:SS, got {value!r}"
    )


def _check_color(color: Optional[str]) -> None:
    if color is not None and not _COLOR_RE.match(color):
        raise InvalidFormat(f"Color must be a CSS hex value like #FF0000, got {color!r}")


def _check_limit(limit: int, maximum: int) -> None:
    if not 1 <= limit <= maximum:
        raise InvalidFormat(f"limit must be between 1 and {maximum}")


def _check_emails(field: str, values: Optional[List[str]]) -> None:
    for value in values or []:
        if not _EMAIL_RE.match(value or ""):
            raise InvalidFormat(f"{field} contains an invalid email address: {value!r}")


def _check_required(field: str, value: Optional[str]) -> None:
    if not value or not value.strip():
        raise InvalidFormat(f"{field} must not be empty")


# ---------------------------------------------------------------------------
#  Mail Tools (JMAP)
# ---------------------------------------------------------------------------

@mcp.tool()
async def list_mailboxes() -> ToolResult:
    """
    List all mailboxes of the account.

    Each item carries the JMAP ``id`` (use it for the other mail tools),
    ``name``, ``role`` (``inbox``, ``drafts``, ``sent``, ``trash``, ...,
    or null for user folders) and message counts.
    """
    boxes = await mail.list_mailboxes(CONTEXT.jmap())
    return _tool_result({"mailboxes": boxes}, text=f"{len(boxes)} mailbox(es)")


@mcp.tool()
async def create_mailbox(
    name: str,
    parent_id: Optional[str] = None,
    role: Optional[str] = None,
    sort_order: Optional[int] = None,
    is_subscribed: Optional[bool] = None,
) -> ToolResult:
    """
    Create a mailbox (folder).

    Args:
        name: Mailbox name.
        parent_id: Optional id of the parent mailbox.
        role: Optional mailbox role; only for special system-like mailboxes.
        sort_order: Optional sort order.
        is_subscribed: Optional subscribed flag.
    """
    _check_required("name", name)
    created = await mail.create_mailbox(
        CONTEXT.jmap(), name, parent_id=parent_id, role=role, sort_order=sort_order, is_subscribed=is_subscribed
    )
    return _tool_result(created)


@mcp.tool()
async def update_mailbox(
    mailbox_id: str,
    name: Optional[str] = None,
    parent_id: Optional[str] = None,
    sort_order: Optional[int] = None,
    is_subscribed: Optional[bool] = None,
) -> ToolResult:
    """
    Rename, move or re-order a mailbox.  Pass ``parent_id=""`` to move the
    mailbox to the top level.  At least one field is required.
    """
    update: Dict[str, Any] = {}
    if name is not None:
        _check_required("name", name)
        update["name"] = name
    if parent_id is not None:
        update["parentId"] = parent_id or None
    if sort_order is not None:
        update["sortOrder"] = sort_order
    if is_subscribed is not None:
        update["isSubscribed"] = is_subscribed
    updated = await mail.update_mailbox(CONTEXT.jmap(), mailbox_id, update)
    return _tool_result(updated)


@mcp.tool()
async def delete_mailbox(mailbox_id: str) -> ToolResult:
    """
    Delete a mailbox.  System mailboxes (Inbox, Sent, Drafts, Trash, Spam,
    Junk, Archive) are refused.
    """
    return _tool_result(await mail.delete_mailbox(CONTEXT.jmap(), mailbox_id))


@mcp.tool()
async def list_emails(mailbox_id: Optional[str] = None, limit: int = 20) -> ToolResult:
    """
    List emails from a mailbox, newest first.

    Args:
        mailbox_id: Mailbox id from ``list_mailboxes`` (not its name).  If
            omitted, emails from all mailboxes are returned.
        limit: Maximum number of emails (1-200).
    """
    _check_limit(limit, MAIL_LIMIT_MAX)
    emails = await mail.list_emails(CONTEXT.jmap(), mailbox_id, limit)
    return _tool_result({"emails": emails}, text=f"{len(emails)} email(s)")


@mcp.tool()
async def get_email(email_id: str) -> ToolResult:
    """Fetch one email with its text/HTML body values and attachment metadata."""
    return _tool_result(await mail.get_email(CONTEXT.jmap(), email_id))


@mcp.tool()
async def search_emails(query: str, limit: int = 20) -> ToolResult:
    """Full-text search across all mailboxes, newest first (limit 1-200)."""
    _check_required("query", query)
    _check_limit(limit, MAIL_LIMIT_MAX)
    emails = await mail.search_emails(CONTEXT.jmap(), query, limit)
    return _tool_result({"emails": emails}, text=f"{len(emails)} email(s)")


@mcp.tool()
async def send_email(
    to: List[str],
    subject: str,
    text_body: Optional[str] = None,
    html_body: Optional[str] = None,
    cc: Optional[List[str]] = None,
    bcc: Optional[List[str]] = None,
    from_address: Optional[str] = None,
) -> ToolResult:
    """
    Send an email.

    Args:
        to: Recipient addresses (at least one).
        subject: Subject line.
        text_body: Plain text body.
        html_body: HTML body.  Exactly one of the two bodies is required.
        cc: Optional CC recipients.
        bcc: Optional BCC recipients.
        from_address: Sending identity.  Unknown addresses fall back to the
            account's primary identity.

    Returns ``submissionId`` and the ``emailId`` of the stored copy.
    """
    if not to:
        raise InvalidFormat("At least one recipient is required")
    _check_emails("to", to)
    _check_emails("cc", cc)
    _check_emails("bcc", bcc)
    if from_address is not None:
        _check_emails("from_address", [from_address])
    _check_required("subject", subject)
    result = await mail.send_email(
        CONTEXT.jmap(), to, subject, cc=cc, bcc=bcc, from_address=from_address,
        text_body=text_body, html_body=html_body,
    )
    return _tool_result(result, text=f"Email sent. submissionId={result['submissionId']}")


@mcp.tool()
async def mark_email_read(email_id: str, read: bool = True) -> ToolResult:
    """Mark an email read (``read=True``) or unread (``read=False``)."""
    return _tool_result(await mail.mark_email_read(CONTEXT.jmap(), email_id, read))


@mcp.tool()
async def move_email(email_id: str, target_mailbox_id: str) -> ToolResult:
    """Move an email to another mailbox, given the target's id from ``list_mailboxes``."""
    return _tool_result(await mail.move_email(CONTEXT.jmap(), email_id, target_mailbox_id))


@mcp.tool()
async def delete_email(email_id: str) -> ToolResult:
    """Delete an email by moving it to Trash."""
    return _tool_result(await mail.delete_email(CONTEXT.jmap(), email_id))


@mcp.tool()
async def get_email_attachments(email_id: str) -> ToolResult:
    """List the attachments of an email (partId, blobId, type, size, name)."""
    attachments = await mail.get_email_attachments(CONTEXT.jmap(), email_id)
    return _tool_result({"attachments": attachments}, text=f"{len(attachments)} attachment(s)")


@mcp.tool()
async def download_attachment(email_id: str, attachment_id: str) -> ToolResult:
    """
    Build an authenticated download URL for an attachment.

    ``attachment_id`` is the attachment's ``partId`` or ``blobId`` as
    returned by ``get_email_attachments``, or its zero-based position.
    """
    url = await mail.attachment_download_url(CONTEXT.jmap(), email_id, attachment_id)
    return _tool_result({"url": url}, text=url)


# ---------------------------------------------------------------------------
#  Calendar Tools (CalDAV)
# ---------------------------------------------------------------------------

async def _list_calendars() -> ToolResult:
    out = await calendars.list_calendars(CONTEXT.caldav())
    return _tool_result({"calendars": out}, text=f"{len(out)} calendar(s)")


@mcp.tool()
async def list_calendars() -> ToolResult:
    """
    List all calendars.

    Each item contains ``id``/``url`` (the calendar URL, used by the other
    calendar tools), ``name``, the calendar ``timezone`` when set, and
    ``canWrite``/``privileges`` when the server reports them.  Calendars
    shared read-only have ``canWrite=false``.
    """
    return await _list_calendars()


@mcp.tool()
async def get_my_fastmail_calendars() -> ToolResult:
    """Alias for ``list_calendars``."""
    return await _list_calendars()


@mcp.tool()
async def create_calendar(
    name: str,
    description: Optional[str] = None,
    color: Optional[str] = None,
    timezone: Optional[str] = None,
) -> ToolResult:
    """
    Create a calendar.

    Args:
        name: Display name.
        description: Optional description.
        color: Optional CSS hex color such as ``#FF0000``.
        timezone: IANA timezone (e.g. ``America/New_York``).  Defaults to
            the machine timezone.
    """
    _check_required("name", name)
    _check_color(color)
    _check_timezone(timezone)
    created = await calendars.create_calendar(
        CONTEXT.caldav(), name, description=description, color=color, timezone=timezone
    )
    return _tool_result(created)


@mcp.tool()
async def update_calendar(
    calendar_id: str,
    name: Optional[str] = None,
    description: Optional[str] = None,
    color: Optional[str] = None,
    timezone: Optional[str] = None,
) -> ToolResult:
    """Update a calendar's name, description, color or timezone.  At least one is required."""
    if name is not None:
        _check_required("name", name)
    _check_color(color)
    _check_timezone(timezone)
    result = await calendars.update_calendar(
        CONTEXT.caldav(), calendar_id, name=name, description=description, color=color, timezone=timezone
    )
    return _tool_result(result)


@mcp.tool()
async def delete_calendar(calendar_id: str) -> ToolResult:
    """Delete a calendar.  The last remaining calendar cannot be deleted."""
    return _tool_result(await calendars.delete_calendar(CONTEXT.caldav(), calendar_id))


@mcp.tool()
async def get_calendar_event(event_id: str) -> ToolResult:
    """Fetch one event by its id (the event URL): etag, parsed summary and raw iCalendar."""
    return _tool_result(await calendars.get_event(CONTEXT.caldav(), event_id))


async def _list_events(calendar_id: str, start: Optional[str], end: Optional[str], limit: int) -> ToolResult:
    _check_datetime("time_range_start", start)
    _check_datetime("time_range_end", end)
    _check_limit(limit, DAV_LIMIT_MAX)
    events = await calendars.list_events(CONTEXT.caldav(), calendar_id, start, end, limit)
    return _tool_result({"events": events}, text=f"{len(events)} event(s)")


@mcp.tool()
async def list_calendar_events(
    calendar_id: str,
    time_range_start: Optional[str] = None,
    time_range_end: Optional[str] = None,
    limit: int = 50,
) -> ToolResult:
    """
    List events of a calendar with parsed summaries and raw iCalendar.

    Args:
        calendar_id: Calendar id (URL) from ``list_calendars``.
        time_range_start: ISO 8601 datetime; the offset is optional and
            naive times use the calendar timezone.
        time_range_end: Same format.  The range only applies when both
            bounds are given.
        limit: Maximum number of events (1-500).
    """
    return await _list_events(calendar_id, time_range_start, time_range_end, limit)


@mcp.tool()
async def get_calendar_events_from_fastmail(
    calendar_url: str,
    time_range_start: Optional[str] = None,
    time_range_end: Optional[str] = None,
    limit: int = 50,
) -> ToolResult:
    """Alias for ``list_calendar_events``."""
    return await _list_events(calendar_url, time_range_start, time_range_end, limit)


@mcp.tool()
async def create_calendar_event(
    calendar_id: str,
    title: str,
    start: str,
    end: str,
    description: Optional[str] = None,
    location: Optional[str] = None,
    attendees: Optional[List[Dict[str, str]]] = None,
) -> ToolResult:
    """
    Create an event.  Times are stored in UTC; naive datetimes are
    interpreted in the calendar timezone (or the machine default).

    Args:
        calendar_id: Calendar id (URL) from ``list_calendars``.  It must be
            writable.
        title: Event summary.
        start: ISO 8601 start, offset optional.
        end: ISO 8601 end, offset optional.
        description: Optional description.
        location: Optional location.
        attendees: Optional list of ``{"email": ..., "name": ...}``.

    Returns ``uid`` and ``id``/``eventId`` (the new event URL).
    """
    _check_required("title", title)
    _check_datetime("start", start)
    _check_datetime("end", end)
    people: List[Attendee] = []
    for item in attendees or []:
        email = (item or {}).get("email")
        _check_emails("attendees", [email or ""])
        people.append(Attendee(email=email, name=item.get("name") or None))
    created = await calendars.create_event(
        CONTEXT.caldav(), calendar_id, title, start, end,
        organizer_email=CONTEXT.organizer_email,
        description=description, location=location, attendees=people,
    )
    return _tool_result(created)


@mcp.tool()
async def update_calendar_event(event_id: str, ical: str, etag: Optional[str] = None) -> ToolResult:
    """
    Replace an event with a complete iCalendar document.

    ``etag`` is the value from a previous read; when omitted the current
    ETag is fetched first.  A stale ETag makes the server refuse the write.
    """
    _check_required("ical", ical)
    return _tool_result(await calendars.update_event(CONTEXT.caldav(), event_id, ical, etag))


@mcp.tool()
async def delete_calendar_event(event_id: str, etag: Optional[str] = None) -> ToolResult:
    """Delete an event by its id (URL), guarded by its ETag."""
    return _tool_result(await calendars.delete_event(CONTEXT.caldav(), event_id, etag))


# ---------------------------------------------------------------------------
#  Contact Tools (CardDAV)
# ---------------------------------------------------------------------------

async def _list_contact_lists() -> ToolResult:
    books = await contacts.list_address_books(CONTEXT.carddav())
    return _tool_result({"addressBooks": books}, text=f"{len(books)} address book(s)")


@mcp.tool()
async def list_contact_lists() -> ToolResult:
    """List address books.  Their ``id`` (URL) is used by the other contact tools."""
    return await _list_contact_lists()


@mcp.tool()
async def get_my_fastmail_contact_lists() -> ToolResult:
    """Alias for ``list_contact_lists``."""
    return await _list_contact_lists()


@mcp.tool()
async def search_contacts(query: str, address_book_id: Optional[str] = None, limit: int = 50) -> ToolResult:
    """
    Search contacts by case-insensitive substring over name, emails and
    phones.  Optionally restricted to one address book.
    """
    _check_required("query", query)
    _check_limit(limit, DAV_LIMIT_MAX)
    found = await contacts.search_contacts(CONTEXT.carddav(), query, address_book_id, limit)
    return _tool_result({"contacts": found}, text=f"{len(found)} contact(s)")


async def _list_contacts(address_book_id: str, limit: int) -> ToolResult:
    _check_limit(limit, DAV_LIMIT_MAX)
    found = await contacts.list_contacts(CONTEXT.carddav(), address_book_id, limit)
    return _tool_result({"contacts": found}, text=f"{len(found)} contact(s)")


@mcp.tool()
async def list_contacts(address_book_id: str, limit: int = 50) -> ToolResult:
    """List contacts of an address book with parsed summaries and raw vCards."""
    return await _list_contacts(address_book_id, limit)


@mcp.tool()
async def get_contacts_from_fastmail_list(address_book_url: str, limit: int = 50) -> ToolResult:
    """Alias for ``list_contacts``."""
    return await _list_contacts(address_book_url, limit)


@mcp.tool()
async def get_contact(contact_id: str) -> ToolResult:
    """Fetch one contact by its id (vCard URL)."""
    return _tool_result(await contacts.get_contact(CONTEXT.carddav(), contact_id))


@mcp.tool()
async def create_contact(
    address_book_id: str,
    full_name: str,
    emails: Optional[List[str]] = None,
    phones: Optional[List[str]] = None,
    note: Optional[str] = None,
) -> ToolResult:
    """Create a contact.  Returns ``uid`` and ``id``/``contactId`` (the vCard URL)."""
    _check_required("full_name", full_name)
    _check_emails("emails", emails)
    created = await contacts.create_contact(
        CONTEXT.carddav(), address_book_id, full_name, emails=emails, phones=phones, note=note
    )
    return _tool_result(created)


@mcp.tool()
async def update_contact(contact_id: str, vcard: str, etag: Optional[str] = None) -> ToolResult:
    """Replace a contact with a complete vCard, guarded by its ETag."""
    _check_required("vcard", vcard)
    return _tool_result(await contacts.update_contact(CONTEXT.carddav(), contact_id, vcard, etag))


@mcp.tool()
async def delete_contact(contact_id: str, etag: Optional[str] = None) -> ToolResult:
    """Delete a contact by its id (vCard URL)."""
    return _tool_result(await contacts.delete_contact(CONTEXT.carddav(), contact_id, etag))


# ---------------------------------------------------------------------------
#  Server entry point
# ---------------------------------------------------------------------------

def main() -> None:
    if SETTINGS.transport == "http":
        log.info(
            "Starting MCP HTTP server on %s:%d (JMAP=%s CalDAV=%s CardDAV=%s)",
            SETTINGS.host, SETTINGS.port, SETTINGS.base_url, SETTINGS.caldav_url, SETTINGS.carddav_url,
        )
        mcp.run(transport="http", host=SETTINGS.host, port=SETTINGS.port, path="/mcp")
    else:
        log.info("Starting MCP stdio server (JMAP=%s)", SETTINGS.base_url)
        mcp.run()


if __name__ == "__main__":
    main()

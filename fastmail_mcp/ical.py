"""
iCalendar codec for calendar events.

``build_event`` serializes an :class:`EventRecord` into a single-VEVENT
VCALENDAR with the ``icalendar`` package, which takes care of text escaping
and line folding.  ``parse_event_summary`` is a deliberately partial reader
that pulls a handful of summary fields out of arbitrary server data.
"""

from __future__ import annotations

import datetime as dt
import re
import uuid
from typing import Dict, Optional

from icalendar import Calendar, Event, vCalAddress

from .errors import InvalidFormat
from .models import BuiltObject, EventRecord
from .timezones import ensure_offset_aware, machine_timezone

PRODID = "-//fastmail-mcp//EN"

_FOLD_RE = re.compile(r"\r?\n[ \t]")
_VEVENT_RE = re.compile(r"^BEGIN:VEVENT\r?$(.*?)^END:VEVENT", re.M | re.S)
_UNESCAPE_RE = re.compile(r"\\([\\;,nN])")


def parse_iso(value: str) -> dt.datetime:
    """
    Parse an ISO date/time string into an aware UTC datetime.  Accepts a
    trailing ``Z`` or ``±HH:MM`` offset; naive values are read in the
    machine timezone.
    """
    try:
        aware = ensure_offset_aware(value, machine_timezone())
        if aware.endswith("Z"):
            parsed = dt.datetime.fromisoformat(aware[:-1]).replace(tzinfo=dt.timezone.utc)
        else:
            parsed = dt.datetime.fromisoformat(aware)
    except (TypeError, ValueError) as exc:
        raise InvalidFormat(f"Invalid ISO datetime: {value}") from exc
    return parsed.astimezone(dt.timezone.utc)


def _address(email: str, name: Optional[str]) -> vCalAddress:
    address = vCalAddress(f"mailto:{email}")
    if name:
        address.params["CN"] = name
    return address


def build_event(record: EventRecord) -> BuiltObject:
    """Build a VCALENDAR holding one VEVENT for ``record``."""
    uid = str(uuid.uuid4())
    start = parse_iso(record.start)
    end = parse_iso(record.end)

    calendar = Calendar()
    calendar.add("prodid", PRODID)
    calendar.add("version", "2.0")
    calendar.add("calscale", "GREGORIAN")

    event = Event()
    event.add("uid", uid)
    event.add("dtstamp", dt.datetime.now(dt.timezone.utc).replace(microsecond=0))
    event.add("dtstart", start)
    event.add("dtend", end)
    # Fastmail enforces iTIP scheduling rules, which require an ORGANIZER.
    event.add("organizer", _address(record.organizer_email, record.organizer_name))
    event.add("summary", record.title)
    if record.description:
        event.add("description", record.description)
    if record.location:
        event.add("location", record.location)
    for attendee in record.attendees:
        event.add("attendee", _address(attendee.email, attendee.name))
    calendar.add_component(event)

    return BuiltObject(uid=uid, text=calendar.to_ical().decode("utf-8"), filename=f"{uid}.ics")


def unfold(text: str) -> str:
    return _FOLD_RE.sub("", text)


def unescape(value: str) -> str:
    def _replace(match: "re.Match[str]") -> str:
        char = match.group(1)
        return "\n" if char in "nN" else char

    return _UNESCAPE_RE.sub(_replace, value)


def first_value(text: str, key: str) -> Optional[str]:
    """Return the first value of property ``key``, ignoring its parameters."""
    match = re.search(rf"^{key}(?:;[^:\r\n]*)?:(.*?)\r?$", text, re.M)
    if not match:
        return None
    return match.group(1).strip()


def parse_event_summary(text: str) -> Dict[str, str]:
    """
    Extract ``uid``, ``title``, ``start``, ``end`` and ``location`` from
    iCalendar text.  Missing fields are left out of the result.
    """
    unfolded = unfold(text or "")
    block = _VEVENT_RE.search(unfolded)
    scope = block.group(1) if block else unfolded

    summary: Dict[str, str] = {}
    for field, key, is_text in (
        ("uid", "UID", False),
        ("title", "SUMMARY", True),
        ("start", "DTSTART", False),
        ("end", "DTEND", False),
        ("location", "LOCATION", True),
    ):
        value = first_value(scope, key)
        if value is None:
            continue
        summary[field] = unescape(value) if is_text else value
    return summary

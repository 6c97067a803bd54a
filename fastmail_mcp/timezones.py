"""
Timezone helpers for CalDAV calendar operations.

The effective timezone for a calendar is resolved from the calendar's own
``calendar-timezone`` property first and the host's configured zone second.
Naive (offset-less) datetimes supplied by callers are converted into UTC
instants using that zone before they are written to the server.
"""

from __future__ import annotations

import datetime as dt
import re
from typing import Optional
from zoneinfo import ZoneInfo

from tzlocal import get_localzone_name

from .errors import InvalidFormat

_NAIVE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})$")
_OFFSET_RE = re.compile(r"(Z|[+-]\d{2}:\d{2})$")
_TZID_RE = re.compile(r"TZID:([^\r\n]+)")

# January keeps northern-hemisphere zones on their standard offset.
_STANDARD_REFERENCE = dt.datetime(2020, 1, 1, 12, 0, 0, tzinfo=dt.timezone.utc)


def machine_timezone() -> str:
    """Return the host's IANA timezone identifier (e.g. ``"Europe/Paris"``)."""
    try:
        name = get_localzone_name()
    except Exception:
        name = None
    return name or "UTC"


def is_valid_timezone(tz: str) -> bool:
    """Return True if ``tz`` names a zone known to the tz database."""
    try:
        ZoneInfo(tz)
        return True
    except Exception:
        return False


def extract_timezone(blob: Optional[str]) -> Optional[str]:
    """
    Extract the TZID from a ``calendar-timezone`` property value.

    The property is a VCALENDAR wrapping a VTIMEZONE component.  Returns
    None when the blob is absent or carries no usable TZID.
    """
    if not blob:
        return None
    match = _TZID_RE.search(blob)
    if not match:
        return None
    return match.group(1).strip() or None


def resolve_timezone(declared: Optional[str] = None) -> str:
    """Calendar timezone first, then the machine default."""
    return declared or machine_timezone()


def has_offset(value: str) -> bool:
    return bool(_OFFSET_RE.search(value))


def _offset_at(instant: dt.datetime, zone: ZoneInfo) -> dt.timedelta:
    civil = instant.astimezone(zone).replace(tzinfo=None)
    return civil - instant.replace(tzinfo=None)


def naive_to_utc(naive: str, tz: str) -> str:
    """
    Interpret a naive ``YYYY-MM-DDTHH:MM:SS`` string in ``tz`` and return
    the matching UTC instant as ``YYYY-MM-DDTHH:MM:SS.000Z``.

    The components are first read as if they were UTC and shifted by the
    zone's offset at that provisional instant.  If the offset at the
    shifted instant differs (a DST transition lies in between), the second
    offset wins, which maps times just after a spring-forward jump onto the
    new offset.
    """
    match = _NAIVE_RE.match(naive or "")
    if not match:
        raise InvalidFormat(f"Invalid naive datetime (expected YYYY-MM-DDTHH:MM:SS): {naive}")
    try:
        provisional = dt.datetime(*(int(part) for part in match.groups()), tzinfo=dt.timezone.utc)
    except ValueError as exc:
        raise InvalidFormat(f"Invalid naive datetime: {naive} ({exc})") from exc
    if not is_valid_timezone(tz):
        raise InvalidFormat(f"Invalid timezone: {tz}")
    zone = ZoneInfo(tz)

    offset = _offset_at(provisional, zone)
    candidate = provisional - offset
    corrected = _offset_at(candidate, zone)
    if corrected != offset:
        candidate = provisional - corrected
    return candidate.strftime("%Y-%m-%dT%H:%M:%S.000Z")


def ensure_offset_aware(value: str, tz: str) -> str:
    """Return ``value`` unchanged when it has an offset, else convert from ``tz``."""
    if has_offset(value):
        return value
    return naive_to_utc(value, tz)


def build_timezone_property(tz: str) -> str:
    """
    Build a minimal VCALENDAR/VTIMEZONE for the ``calendar-timezone`` property.

    Only a single STANDARD component is emitted; servers look up the real
    transition rules from the TZID.
    """
    offset = _offset_at(_STANDARD_REFERENCE, ZoneInfo(tz))
    minutes = int(offset.total_seconds() // 60)
    sign = "+" if minutes >= 0 else "-"
    hours, mins = divmod(abs(minutes), 60)
    offset_str = f"{sign}{hours:02d}{mins:02d}"
    lines = [
        "BEGIN:VCALENDAR",
        "PRODID:-//fastmail-mcp//EN",
        "VERSION:2.0",
        "BEGIN:VTIMEZONE",
        f"TZID:{tz}",
        "BEGIN:STANDARD",
        "DTSTART:19700101T000000",
        f"TZOFFSETFROM:{offset_str}",
        f"TZOFFSETTO:{offset_str}",
        "END:STANDARD",
        "END:VTIMEZONE",
        "END:VCALENDAR",
    ]
    return "\r\n".join(lines)

"""vCard 3.0 codec for contacts."""

from __future__ import annotations

import re
import uuid
from typing import Any, Dict, List

from .ical import first_value, unescape, unfold
from .models import BuiltObject, ContactRecord


def vcard_escape(text: str) -> str:
    """Escape backslashes, newlines and separators for vCard text values."""
    return (
        text.replace("\\", "\\\\")
            .replace("\r", "")
            .replace("\n", "\\n")
            .replace(";", "\\;")
            .replace(",", "\\,")
    )


def split_name(full_name: str) -> tuple[str, str]:
    """Split a full name into (family, given) for the structured N field."""
    parts = full_name.split()
    if len(parts) > 1:
        return parts[-1], " ".join(parts[:-1])
    return (parts[0] if parts else ""), ""


def build_contact(record: ContactRecord) -> BuiltObject:
    uid = str(uuid.uuid4())
    family, given = split_name(record.full_name)
    lines = [
        "BEGIN:VCARD",
        "VERSION:3.0",
        f"UID:{uid}",
        f"FN:{vcard_escape(record.full_name)}",
        f"N:{vcard_escape(family)};{vcard_escape(given)};;;",
    ]
    for email in record.emails:
        lines.append(f"EMAIL;TYPE=INTERNET:{vcard_escape(email)}")
    for phone in record.phones:
        lines.append(f"TEL;TYPE=CELL:{vcard_escape(phone)}")
    if record.note:
        lines.append(f"NOTE:{vcard_escape(record.note)}")
    lines.append("END:VCARD")
    return BuiltObject(uid=uid, text="\r\n".join(lines) + "\r\n", filename=f"{uid}.vcf")


def _all_values(text: str, key: str) -> List[str]:
    return [
        value.strip()
        for value in re.findall(rf"^{key}(?:;[^:\r\n]*)?:(.*?)\r?$", text, re.M)
    ]


def parse_contact_summary(text: str) -> Dict[str, Any]:
    """
    Extract ``uid``, ``full_name``, ``emails`` and ``phones`` from vCard
    text.  ``uid``/``full_name`` are left out when missing.
    """
    unfolded = unfold(text or "")
    summary: Dict[str, Any] = {}
    uid = first_value(unfolded, "UID")
    if uid is not None:
        summary["uid"] = uid
    full_name = first_value(unfolded, "FN")
    if full_name is not None:
        summary["full_name"] = unescape(full_name)
    summary["emails"] = [unescape(v) for v in _all_values(unfolded, "EMAIL")]
    summary["phones"] = [unescape(v) for v in _all_values(unfolded, "TEL")]
    return summary

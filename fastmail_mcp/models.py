"""Records exchanged between the tools, the codecs and the DAV layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class Attendee:
    email: str
    name: Optional[str] = None


@dataclass
class EventRecord:
    """A calendar event as supplied by a tool call."""

    title: str
    start: str
    end: str
    organizer_email: str
    organizer_name: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    attendees: List[Attendee] = field(default_factory=list)


@dataclass
class ContactRecord:
    full_name: str
    emails: List[str] = field(default_factory=list)
    phones: List[str] = field(default_factory=list)
    note: Optional[str] = None


@dataclass
class BuiltObject:
    """Wire text produced by a codec together with its identifiers."""

    uid: str
    text: str
    filename: str


@dataclass
class Collection:
    """A calendar or address book.  Its URL is its identity."""

    url: str
    kind: str
    display_name: str = ""
    timezone: Optional[str] = None
    description: Optional[str] = None
    color: Optional[str] = None


@dataclass
class DavObject:
    """A calendar object or vCard stored in a collection."""

    url: str
    etag: Optional[str]
    data: Optional[str]

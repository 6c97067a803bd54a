import datetime as dt

import pytest
from icalendar import Calendar

from fastmail_mcp.errors import InvalidFormat
from fastmail_mcp.ical import build_event, parse_event_summary, parse_iso
from fastmail_mcp.models import Attendee, EventRecord


def _record(**overrides) -> EventRecord:
    fields = dict(
        title="Sprint Planning",
        start="2026-01-15T19:30:00Z",
        end="2026-01-15T20:30:00Z",
        organizer_email="me@example.com",
    )
    fields.update(overrides)
    return EventRecord(**fields)


def _vevent(text: str):
    calendar = Calendar.from_ical(text)
    events = list(calendar.walk("VEVENT"))
    assert len(events) == 1
    return calendar, events[0]


def test_parse_iso_normalizes_to_utc() -> None:
    assert parse_iso("2026-01-15T19:30:00Z") == dt.datetime(2026, 1, 15, 19, 30, tzinfo=dt.timezone.utc)
    assert parse_iso("2026-01-15T21:30:00+02:00") == dt.datetime(2026, 1, 15, 19, 30, tzinfo=dt.timezone.utc)


def test_parse_iso_rejects_garbage() -> None:
    with pytest.raises(InvalidFormat):
        parse_iso("yesterday")


def test_build_event_basic_shape() -> None:
    built = build_event(_record())
    assert built.filename == f"{built.uid}.ics"
    assert "\r\n" in built.text

    calendar, event = _vevent(built.text)
    assert str(calendar["PRODID"]) == "-//fastmail-mcp//EN"
    assert str(calendar["VERSION"]) == "2.0"
    assert str(calendar["CALSCALE"]) == "GREGORIAN"
    assert str(event["UID"]) == built.uid
    assert "DTSTAMP" in event
    assert event.decoded("DTSTART") == dt.datetime(2026, 1, 15, 19, 30, tzinfo=dt.timezone.utc)
    assert event.decoded("DTEND") == dt.datetime(2026, 1, 15, 20, 30, tzinfo=dt.timezone.utc)
    assert "DTSTART:20260115T193000Z" in built.text
    assert str(event["SUMMARY"]) == "Sprint Planning"
    assert str(event["ORGANIZER"]) == "mailto:me@example.com"
    assert "DESCRIPTION" not in event
    assert "LOCATION" not in event
    assert "ATTENDEE" not in event


def test_build_event_converts_offsets_to_utc() -> None:
    built = build_event(_record(start="2026-01-15T10:00:00+05:30", end="2026-01-15T11:00:00+05:30"))
    assert "DTSTART:20260115T043000Z" in built.text
    assert "DTEND:20260115T053000Z" in built.text


def test_build_event_uids_are_unique() -> None:
    assert build_event(_record()).uid != build_event(_record()).uid


def test_build_event_organizer_and_attendees() -> None:
    built = build_event(_record(
        organizer_name="Me",
        attendees=[Attendee(email="a@example.com", name="Ann"), Attendee(email="b@example.com")],
    ))
    _, event = _vevent(built.text)
    assert event["ORGANIZER"].params["CN"] == "Me"
    attendees = event["ATTENDEE"]
    assert [str(a) for a in attendees] == ["mailto:a@example.com", "mailto:b@example.com"]
    assert attendees[0].params["CN"] == "Ann"
    assert "CN" not in attendees[1].params


def test_build_event_escapes_text() -> None:
    built = build_event(_record(
        title="Lunch, then; coffee",
        description="Line one\nLine two \\ end",
        location="Room 1, Floor 2",
    ))
    assert "SUMMARY:Lunch\\, then\\; coffee" in built.text
    _, event = _vevent(built.text)
    assert str(event["DESCRIPTION"]) == "Line one\nLine two \\ end"
    assert str(event["LOCATION"]) == "Room 1, Floor 2"


def test_build_event_folds_long_lines() -> None:
    built = build_event(_record(description="x" * 400))
    for line in built.text.split("\r\n"):
        assert len(line.encode("utf-8")) <= 75
    _, event = _vevent(built.text)
    assert str(event["DESCRIPTION"]) == "x" * 400


def test_build_event_rejects_bad_datetimes() -> None:
    with pytest.raises(InvalidFormat):
        build_event(_record(start="tomorrow at noon"))


def test_parse_event_summary_round_trip() -> None:
    built = build_event(_record(title="Review, part 2", location="HQ; Room 4"))
    summary = parse_event_summary(built.text)
    assert summary == {
        "uid": built.uid,
        "title": "Review, part 2",
        "start": "20260115T193000Z",
        "end": "20260115T203000Z",
        "location": "HQ; Room 4",
    }


def test_parse_event_summary_ignores_parameters_and_unfolds() -> None:
    text = (
        "BEGIN:VCALENDAR\r\n"
        "BEGIN:VEVENT\r\n"
        "UID:abc-123\r\n"
        "SUMMARY;LANGUAGE=en:A very long\r\n"
        "  title\r\n"
        "DTSTART;TZID=Europe/Paris:20260115T090000\r\n"
        "END:VEVENT\r\n"
        "END:VCALENDAR\r\n"
    )
    summary = parse_event_summary(text)
    assert summary["uid"] == "abc-123"
    assert summary["title"] == "A very long title"
    assert summary["start"] == "20260115T090000"
    assert "end" not in summary
    assert "location" not in summary


def test_parse_event_summary_skips_vtimezone_dtstart() -> None:
    text = (
        "BEGIN:VCALENDAR\r\n"
        "BEGIN:VTIMEZONE\r\n"
        "TZID:America/New_York\r\n"
        "BEGIN:STANDARD\r\n"
        "DTSTART:19700101T000000\r\n"
        "END:STANDARD\r\n"
        "END:VTIMEZONE\r\n"
        "BEGIN:VEVENT\r\n"
        "UID:evt\r\n"
        "DTSTART;TZID=America/New_York:20260301T100000\r\n"
        "END:VEVENT\r\n"
        "END:VCALENDAR\r\n"
    )
    assert parse_event_summary(text)["start"] == "20260301T100000"


@pytest.mark.parametrize("text", ["", "garbage", "BEGIN:VCALENDAR\r\nEND:VCALENDAR\r\n"])
def test_parse_event_summary_is_best_effort(text: str) -> None:
    assert parse_event_summary(text) == {}

"""iCalendar text codec for the handful of VEVENT fields the calendar tools use.

Reading is line-based field extraction, not a full RFC 5545 parser: callers
only go through ``extract_field`` / ``parse_event``. Writing goes through
vobject, which handles TEXT escaping, parameter quoting and line folding.
"""

import re
from datetime import datetime, timezone
from functools import lru_cache

import vobject

from models import CalendarEvent, NewEvent

PRODID = "-//mcp-fastmail//EN"


@lru_cache(maxsize=None)
def _field_pattern(name: str) -> re.Pattern:
    # NAME, optional ;PARAM=... block (quoted values may contain ':'), then ':' VALUE
    return re.compile(
        rf'^{re.escape(name)}(?:;(?:"[^"\r\n]*"|[^":\r\n])*)?:([^\r\n]*)',
        re.MULTILINE,
    )


def unfold(document: str) -> str:
    """Join RFC 5545 folded continuation lines."""
    return re.sub(r"\r?\n[ \t]", "", document)


def extract_field(document: str, name: str) -> str | None:
    """Value of the first line starting with ``name``; parameters are ignored."""
    match = _field_pattern(name).search(document)
    return match.group(1).strip() if match else None


def extract_all(document: str, name: str) -> list[str]:
    return [m.group(1).strip() for m in _field_pattern(name).finditer(document)]


def unescape_text(value: str) -> str:
    return re.sub(
        r"\\([\\;,nN])",
        lambda m: "\n" if m.group(1) in "nN" else m.group(1),
        value,
    )


def to_utc(dt: datetime) -> datetime:
    """Naive datetimes are taken as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(vobject.icalendar.utc)


def build_event_document(uid: str, event: NewEvent, stamp: datetime | None = None) -> str:
    cal = vobject.iCalendar()
    cal.add("prodid").value = PRODID
    cal.add("calscale").value = "GREGORIAN"

    vevent = cal.add("vevent")
    vevent.add("uid").value = uid
    vevent.add("dtstamp").value = to_utc(stamp or datetime.now(tz=timezone.utc))
    vevent.add("dtstart").value = to_utc(event.start)
    vevent.add("dtend").value = to_utc(event.end)
    vevent.add("summary").value = event.title
    if event.description:
        vevent.add("description").value = event.description
    if event.location:
        vevent.add("location").value = event.location
    for participant in event.participants:
        attendee = vevent.add("attendee")
        attendee.value = f"mailto:{participant.email}"
        if participant.name:
            attendee.params["CN"] = [participant.name]
    return cal.serialize()


def parse_event(url: str, document: str | None, etag: str | None = None) -> CalendarEvent:
    """Decode one calendar object; the UID falls back to the object URL."""
    doc = unfold(document or "")
    # skip VTIMEZONE blocks, whose DTSTART lines precede the event's own
    start = doc.find("BEGIN:VEVENT")
    if start != -1:
        doc = doc[start:]

    def text(name: str) -> str | None:
        value = extract_field(doc, name)
        return unescape_text(value) if value is not None else None

    attendees = []
    for value in extract_all(doc, "ATTENDEE"):
        attendees.append(value[7:] if value.lower().startswith("mailto:") else value)

    return CalendarEvent(
        url=url,
        etag=etag or "",
        uid=extract_field(doc, "UID") or url,
        title=text("SUMMARY") or "Untitled",
        description=text("DESCRIPTION"),
        start=extract_field(doc, "DTSTART") or "",
        end=extract_field(doc, "DTEND") or "",
        location=text("LOCATION"),
        attendees=attendees,
    )

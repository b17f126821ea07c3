"""Fastmail CalDAV client: calendars and events over Basic-auth WebDAV."""

import logging
import uuid
from collections.abc import Callable
from contextlib import contextmanager
from datetime import datetime

import caldav
from caldav.elements import cdav, dav, ical
from caldav.lib import error as dav_error
from caldav.lib.url import URL

from errors import AuthError, ProtocolError
from ics import build_event_document, parse_event
from models import Calendar, CalendarEvent, NewEvent

log = logging.getLogger(__name__)

CALDAV_URL = "https://caldav.fastmail.com"

CALENDAR_PROPS = [dav.DisplayName(), cdav.CalendarDescription(), ical.CalendarColor()]


@contextmanager
def _dav_errors():
    try:
        yield
    except dav_error.AuthorizationError as e:
        raise AuthError(
            "Fastmail rejected the CalDAV credentials. "
            "Check FASTMAIL_USERNAME and FASTMAIL_CALDAV_PASSWORD."
        ) from e


def normalize_color(raw) -> str | None:
    """Calendar colors arrive as a plain string or wrapped in a vendor structure."""
    if isinstance(raw, dict):
        raw = next((raw[k] for k in ("_cdata", "value", "#text") if isinstance(raw.get(k), str)), None)
    if isinstance(raw, str):
        return raw.strip() or None
    return None


def collection_url(url: str) -> str:
    return url if url.endswith("/") else url + "/"


def parent_collection(event_url: str) -> str:
    """https://host/calendars/1/event.ics → https://host/calendars/1/"""
    return event_url.rsplit("/", 1)[0] + "/"


def _etag(obj) -> str:
    props = getattr(obj, "props", None) or {}
    return props.get(dav.GetEtag.tag) or ""


class CalDAVClient:
    def __init__(
        self,
        username: str,
        password: str,
        url: str = CALDAV_URL,
        client_factory: Callable[..., caldav.DAVClient] = caldav.DAVClient,
    ):
        self.username = username
        self.password = password
        self.url = url
        self._client_factory = client_factory
        self._client: caldav.DAVClient | None = None

    def _dav(self) -> caldav.DAVClient:
        if self._client is None:
            self._client = self._client_factory(
                url=self.url, username=self.username, password=self.password
            )
            log.info("CalDAV client created for %s", self.url)
        return self._client

    def _decode(self, obj) -> CalendarEvent:
        return parse_event(str(obj.url), obj.data, _etag(obj))

    def list_calendars(self) -> list[Calendar]:
        with _dav_errors():
            calendars = self._dav().principal().calendars()
            result = []
            for cal in calendars:
                props = cal.get_properties(CALENDAR_PROPS)
                name = props.get(dav.DisplayName.tag)
                result.append(Calendar(
                    url=collection_url(str(cal.url)),
                    display_name=name if isinstance(name, str) and name else "Unnamed Calendar",
                    description=props.get(cdav.CalendarDescription.tag) or None,
                    color=normalize_color(props.get(ical.CalendarColor.tag)),
                ))
        return result

    def list_events(
        self,
        calendar_url: str,
        time_range: tuple[datetime, datetime] | None = None,
    ) -> list[CalendarEvent]:
        with _dav_errors():
            calendar = self._dav().calendar(url=collection_url(calendar_url))
            if time_range:
                start, end = time_range
                objects = calendar.search(start=start, end=end, event=True, expand=False)
            else:
                objects = calendar.events()
            return [self._decode(obj) for obj in objects]

    def get_event_by_url(self, event_url: str) -> CalendarEvent | None:
        """Fetch one event from its collection; None when the server has nothing at that URL."""
        with _dav_errors():
            calendar = self._dav().calendar(url=parent_collection(event_url))
            try:
                objects = calendar.calendar_multiget([URL.objectify(event_url)])
            except dav_error.NotFoundError:
                return None
            objects = [obj for obj in objects if obj.data]
            if not objects:
                return None
            return self._decode(objects[0])

    def create_event(self, calendar_url: str, event: NewEvent) -> str:
        uid = str(uuid.uuid4())
        event_url = f"{calendar_url.rstrip('/')}/{uid}.ics"
        document = build_event_document(uid, event)
        with _dav_errors():
            resp = self._dav().put(
                event_url,
                document,
                {"Content-Type": 'text/calendar; charset="utf-8"', "If-None-Match": "*"},
            )
        if resp.status not in (200, 201, 204):
            raise ProtocolError(f"Calendar upload failed with HTTP {resp.status}")
        log.info("Created calendar event %s", uid)
        return event_url

    def delete_event(self, event_url: str) -> None:
        """Unconditional DELETE: no If-Match, so a concurrent edit can be lost.

        An object that is already gone counts as deleted.
        """
        with _dav_errors():
            resp = self._dav().delete(event_url)
        if resp.status == 404:
            log.info("Calendar event already absent: %s", event_url)
            return
        if resp.status not in (200, 202, 204):
            raise ProtocolError(f"Calendar delete failed with HTTP {resp.status}")

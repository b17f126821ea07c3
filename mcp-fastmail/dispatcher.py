"""Tool dispatch: argument checks, lazily built backend clients, error normalization.

One ToolDispatcher holds the memoized clients for a server process. Each
client is created on first use and only read afterwards; tool calls are
handled one at a time, so the lazy cells have a single writer.
"""

import json
import logging
import time
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import Any

import pydantic
from mcp.shared.exceptions import McpError
from mcp.types import INTERNAL_ERROR, INVALID_PARAMS, INVALID_REQUEST, METHOD_NOT_FOUND, ErrorData

from caldav_client import CalDAVClient
from contacts_client import ContactsClient
from credentials import (
    API_TOKEN_KEYS,
    BASE_URL_KEYS,
    CALDAV_PASSWORD_KEYS,
    USERNAME_KEYS,
    CredentialResolver,
)
from errors import ConfigurationError, ValidationError
from jmap_client import CONTACTS_CAPABILITY, FastmailAuth, JmapClient
from models import NewEvent

log = logging.getLogger(__name__)

EMAIL_TOOLS = [
    "list_mailboxes", "list_emails", "get_email", "send_email", "search_emails",
    "get_recent_emails", "mark_email_read", "delete_email", "move_email",
    "get_email_attachments", "download_attachment", "advanced_search", "get_thread",
    "get_mailbox_stats", "get_account_summary", "bulk_mark_read", "bulk_move", "bulk_delete",
]
CONTACT_TOOLS = ["list_contacts", "get_contact", "search_contacts"]
CALENDAR_TOOLS = [
    "list_calendars", "list_calendar_events", "get_calendar_event",
    "create_calendar_event", "delete_calendar_event",
]

# tool name → arguments that must be present and non-blank
REQUIRED_ARGS: dict[str, tuple[str, ...]] = {
    "list_mailboxes": (),
    "list_emails": (),
    "get_email": ("email_id",),
    "send_email": ("to", "subject"),
    "search_emails": ("query",),
    "get_recent_emails": (),
    "mark_email_read": ("email_id",),
    "delete_email": ("email_id",),
    "move_email": ("email_id", "target_mailbox_id"),
    "get_email_attachments": ("email_id",),
    "download_attachment": ("email_id", "attachment_id"),
    "advanced_search": (),
    "get_thread": ("thread_id",),
    "get_mailbox_stats": (),
    "get_account_summary": (),
    "bulk_mark_read": ("email_ids",),
    "bulk_move": ("email_ids", "target_mailbox_id"),
    "bulk_delete": ("email_ids",),
    "list_identities": (),
    "list_contacts": (),
    "get_contact": ("contact_id",),
    "search_contacts": ("query",),
    "list_calendars": (),
    "list_calendar_events": ("calendar_url",),
    "get_calendar_event": ("event_id",),
    "create_calendar_event": ("calendar_url", "title", "start", "end"),
    "delete_calendar_event": ("event_id",),
    "check_function_availability": (),
    "test_bulk_operations": (),
}
LIST_ARGS = frozenset({"to", "email_ids"})

# these tools never surface upstream text: it can carry ids, URLs or tokens
SCRUBBED_ERRORS = {
    "download_attachment": "Attachment download failed. Verify email_id and attachment_id and try again.",
    "get_thread": "Thread access failed. Verify thread_id and try again.",
}

BULK_TEST_MAX = 10
PACING_DELAY = 0.5


def _mcp_error(code: int, message: str) -> McpError:
    return McpError(ErrorData(code=code, message=message))


def _dumps(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False)


def _join(fields: tuple[str, ...]) -> str:
    if len(fields) == 1:
        return fields[0]
    if len(fields) == 2:
        return f"{fields[0]} and {fields[1]}"
    return ", ".join(fields[:-1]) + f", and {fields[-1]}"


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def validate_arguments(name: str, args: Mapping[str, Any]) -> None:
    required = REQUIRED_ARGS[name]
    if any(_blank(args.get(field)) for field in required):
        verb = "is" if len(required) == 1 else "are"
        raise ValidationError(f"{_join(required)} {verb} required")
    for field in LIST_ARGS.intersection(required):
        value = args[field]
        if not isinstance(value, list) or not value:
            raise ValidationError(f"{field} must be a non-empty list")
    if name == "send_email" and not (args.get("text_body") or args.get("html_body")):
        raise ValidationError("Either text_body or html_body is required")


def parse_datetime(field: str, value: str) -> datetime:
    """ISO 8601 → aware datetime (naive input is taken as UTC)."""
    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        raise ValidationError(f"{field} must be an ISO 8601 datetime") from None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _utc_date(field: str, value: str | None) -> str | None:
    """JMAP UTCDate form: 2024-01-01T00:00:00Z."""
    if not value:
        return None
    return parse_datetime(field, value).astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class ToolDispatcher:
    def __init__(
        self,
        env: Mapping[str, str] | None = None,
        jmap_factory: Callable[[FastmailAuth], JmapClient] = JmapClient,
        caldav_factory: Callable[[str, str], CalDAVClient] = CalDAVClient,
        sleep: Callable[[float], None] = time.sleep,
        pacing_delay: float = PACING_DELAY,
    ):
        self.credentials = CredentialResolver(env)
        self._jmap_factory = jmap_factory
        self._caldav_factory = caldav_factory
        self._sleep = sleep
        self.pacing_delay = pacing_delay
        self._jmap: JmapClient | None = None
        self._contacts: ContactsClient | None = None
        self._caldav: CalDAVClient | None = None

    # ── Lazy clients ──────────────────────────────────────────────────────────

    @property
    def jmap(self) -> JmapClient:
        if self._jmap is None:
            token = self.credentials.require(
                API_TOKEN_KEYS, hint="Create an API token in Fastmail Settings → Privacy & Security."
            )
            base_url = self.credentials.resolve(BASE_URL_KEYS).value
            self._jmap = self._jmap_factory(FastmailAuth(token, base_url))
            log.info("JMAP client created")
        return self._jmap

    @property
    def contacts(self) -> ContactsClient:
        if self._contacts is None:
            self._contacts = ContactsClient(self.jmap)
        return self._contacts

    @property
    def caldav(self) -> CalDAVClient:
        if self._caldav is None:
            username = self.credentials.require(
                USERNAME_KEYS,
                hint="Calendar access needs it set to your Fastmail email address.",
            )
            password = self.credentials.require(
                CALDAV_PASSWORD_KEYS,
                hint="Generate an app password in Fastmail Settings → Privacy & Security → App Passwords.",
            )
            self._caldav = self._caldav_factory(username, password)
        return self._caldav

    def calendar_configured(self) -> bool:
        return (
            self.credentials.resolve(USERNAME_KEYS).present
            and self.credentials.resolve(CALDAV_PASSWORD_KEYS).present
        )

    # ── Entry point ───────────────────────────────────────────────────────────

    def call(self, name: str, arguments: Mapping[str, Any] | None = None) -> str:
        """Run tool ``name``; failures surface as McpError with one of four codes."""
        if name not in REQUIRED_ARGS:
            raise _mcp_error(METHOD_NOT_FOUND, f"Unknown tool: {name}")
        handler = getattr(self, f"_tool_{name}")
        args = {k: v for k, v in (arguments or {}).items() if v is not None}

        try:
            validate_arguments(name, args)
            return handler(args)
        except McpError:
            raise
        except ValidationError as e:
            raise _mcp_error(INVALID_PARAMS, str(e)) from e
        except ConfigurationError as e:
            raise _mcp_error(INVALID_REQUEST, str(e)) from e
        except Exception as e:
            log.warning("Tool %s failed: %s", name, type(e).__name__)
            if name in SCRUBBED_ERRORS:
                raise _mcp_error(INTERNAL_ERROR, SCRUBBED_ERRORS[name]) from None
            raise _mcp_error(INTERNAL_ERROR, f"Tool execution failed: {e}") from e

    # ── Calendar tools (CalDAV credentials only) ──────────────────────────────

    def _tool_list_calendars(self, args: dict) -> str:
        return _dumps([c.to_wire() for c in self.caldav.list_calendars()])

    def _tool_list_calendar_events(self, args: dict) -> str:
        time_range = None
        if args.get("time_range_start") and args.get("time_range_end"):
            time_range = (
                parse_datetime("time_range_start", args["time_range_start"]),
                parse_datetime("time_range_end", args["time_range_end"]),
            )
        events = self.caldav.list_events(args["calendar_url"], time_range)
        return _dumps([e.to_wire() for e in events])

    def _tool_get_calendar_event(self, args: dict) -> str:
        event = self.caldav.get_event_by_url(args["event_id"])
        if event is None:
            raise ValidationError(f"Event not found: {args['event_id']}")
        return _dumps(event.to_wire())

    def _tool_create_calendar_event(self, args: dict) -> str:
        try:
            event = NewEvent(
                title=args["title"],
                start=parse_datetime("start", args["start"]),
                end=parse_datetime("end", args["end"]),
                description=args.get("description"),
                location=args.get("location"),
                participants=args.get("participants") or [],
            )
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid event: {e.errors()[0]['msg']}") from None
        if event.end < event.start:
            raise ValidationError("end must not be before start")
        event_url = self.caldav.create_event(args["calendar_url"], event)
        return f"Calendar event created successfully. Event URL: {event_url}"

    def _tool_delete_calendar_event(self, args: dict) -> str:
        self.caldav.delete_event(args["event_id"])
        return "Calendar event deleted successfully"

    # ── Mail tools ────────────────────────────────────────────────────────────

    def _tool_list_mailboxes(self, args: dict) -> str:
        return _dumps(self.jmap.get_mailboxes())

    def _tool_list_emails(self, args: dict) -> str:
        return _dumps(self.jmap.get_emails(args.get("mailbox_id"), int(args.get("limit", 20))))

    def _tool_get_email(self, args: dict) -> str:
        return _dumps(self.jmap.get_email_by_id(args["email_id"]))

    def _tool_send_email(self, args: dict) -> str:
        submission_id = self.jmap.send_email(
            to=args["to"],
            subject=args["subject"],
            text_body=args.get("text_body"),
            html_body=args.get("html_body"),
            cc=args.get("cc"),
            bcc=args.get("bcc"),
            from_addr=args.get("from_address"),
            mailbox_id=args.get("mailbox_id"),
        )
        return f"Email sent successfully. Submission ID: {submission_id}"

    def _tool_search_emails(self, args: dict) -> str:
        return _dumps(self.jmap.search_emails(args["query"], int(args.get("limit", 20))))

    def _tool_get_recent_emails(self, args: dict) -> str:
        emails = self.jmap.get_recent_emails(
            int(args.get("limit", 10)), args.get("mailbox_name", "inbox")
        )
        return _dumps(emails)

    def _tool_list_identities(self, args: dict) -> str:
        return _dumps(self.jmap.get_identities())

    def _tool_mark_email_read(self, args: dict) -> str:
        read = bool(args.get("read", True))
        self.jmap.mark_email_read(args["email_id"], read)
        return f"Email {'marked as read' if read else 'marked as unread'} successfully"

    def _tool_delete_email(self, args: dict) -> str:
        self.jmap.delete_email(args["email_id"])
        return "Email deleted successfully (moved to trash)"

    def _tool_move_email(self, args: dict) -> str:
        self.jmap.move_email(args["email_id"], args["target_mailbox_id"])
        return "Email moved successfully"

    def _tool_get_email_attachments(self, args: dict) -> str:
        return _dumps(self.jmap.get_email_attachments(args["email_id"]))

    def _tool_download_attachment(self, args: dict) -> str:
        url = self.jmap.download_attachment(args["email_id"], args["attachment_id"])
        return f"Download URL: {url}"

    def _tool_advanced_search(self, args: dict) -> str:
        after = _utc_date("after", args.get("after"))
        before = _utc_date("before", args.get("before"))
        emails = self.jmap.advanced_search(
            limit=int(args.get("limit", 50)),
            query=args.get("query"),
            from_addr=args.get("from_address"),
            to_addr=args.get("to_address"),
            subject=args.get("subject"),
            has_attachment=args.get("has_attachment"),
            is_unread=args.get("is_unread"),
            mailbox_id=args.get("mailbox_id"),
            after=after,
            before=before,
        )
        return _dumps(emails)

    def _tool_get_thread(self, args: dict) -> str:
        return _dumps(self.jmap.get_thread(args["thread_id"]))

    def _tool_get_mailbox_stats(self, args: dict) -> str:
        return _dumps(self.jmap.get_mailbox_stats(args.get("mailbox_id")))

    def _tool_get_account_summary(self, args: dict) -> str:
        return _dumps(self.jmap.get_account_summary())

    def _tool_bulk_mark_read(self, args: dict) -> str:
        read = bool(args.get("read", True))
        self.jmap.bulk_mark_read(args["email_ids"], read)
        state = "marked as read" if read else "marked as unread"
        return f"{len(args['email_ids'])} emails {state} successfully"

    def _tool_bulk_move(self, args: dict) -> str:
        self.jmap.bulk_move(args["email_ids"], args["target_mailbox_id"])
        return f"{len(args['email_ids'])} emails moved successfully"

    def _tool_bulk_delete(self, args: dict) -> str:
        self.jmap.bulk_delete(args["email_ids"])
        return f"{len(args['email_ids'])} emails deleted successfully (moved to trash)"

    # ── Contacts ──────────────────────────────────────────────────────────────

    def _tool_list_contacts(self, args: dict) -> str:
        return _dumps(self.contacts.list_contacts(int(args.get("limit", 50))))

    def _tool_get_contact(self, args: dict) -> str:
        return _dumps(self.contacts.get_contact(args["contact_id"]))

    def _tool_search_contacts(self, args: dict) -> str:
        return _dumps(self.contacts.search_contacts(args["query"], int(args.get("limit", 20))))

    # ── Diagnostics ───────────────────────────────────────────────────────────

    def _tool_check_function_availability(self, args: dict) -> str:
        session = self.jmap.get_session()
        contacts_available = session.has_capability(CONTACTS_CAPABILITY)
        calendar_available = self.calendar_configured()
        availability = {
            "email": {"available": True, "functions": EMAIL_TOOLS},
            "identity": {"available": True, "functions": ["list_identities"]},
            "contacts": {
                "available": contacts_available,
                "functions": CONTACT_TOOLS,
                "note": (
                    "Contacts are available" if contacts_available
                    else "Contacts access not available - may require enabling in Fastmail account settings"
                ),
                "enablementGuide": None if contacts_available else {
                    "steps": [
                        "1. Log into Fastmail web interface",
                        "2. Go to Settings → Privacy & Security → Connected Apps & API tokens",
                        "3. Check if contacts scope is enabled for your API token",
                        "4. If not available, you may need to upgrade your Fastmail plan or contact support",
                    ],
                    "documentation": "https://www.fastmail.com/help/technical/jmap-api.html",
                },
            },
            "calendar": {
                "available": calendar_available,
                "functions": CALENDAR_TOOLS,
                "note": (
                    "Calendar is available via CalDAV" if calendar_available
                    else "Calendar access requires FASTMAIL_USERNAME and FASTMAIL_CALDAV_PASSWORD env vars (CalDAV app password)"
                ),
                "enablementGuide": None if calendar_available else {
                    "steps": [
                        "1. Log into Fastmail web interface",
                        "2. Go to Settings → Privacy & Security → App Passwords",
                        "3. Create an app password",
                        "4. Set FASTMAIL_USERNAME to your Fastmail email address",
                        "5. Set FASTMAIL_CALDAV_PASSWORD to the app password",
                    ],
                },
            },
            "capabilities": sorted(session.capabilities),
        }
        return _dumps(availability)

    def _tool_test_bulk_operations(self, args: dict) -> str:
        """Mark a few recent inbox emails read, then unread again."""
        dry_run = bool(args.get("dry_run", True))
        limit = min(max(int(args.get("limit", 3)), 1), BULK_TEST_MAX)
        emails = self.jmap.get_recent_emails(limit, "inbox")
        if not emails:
            return "No emails found for bulk operation testing. Try sending yourself a test email first."

        email_ids = [e["id"] for e in emails[:limit]]
        operations = [
            {
                "name": "bulk_mark_read",
                "description": f"Mark {len(email_ids)} emails as read",
                "parameters": {"email_ids": email_ids, "read": True},
            },
            {
                "name": "bulk_mark_read (undo)",
                "description": f"Mark {len(email_ids)} emails as unread (undo previous)",
                "parameters": {"email_ids": email_ids, "read": False},
            },
        ]
        results: dict[str, Any] = {
            "testEmails": [
                {
                    "id": e["id"],
                    "subject": e.get("subject"),
                    "from": ((e.get("from") or [{}])[0]).get("email") or "unknown",
                    "receivedAt": e.get("receivedAt"),
                }
                for e in emails
            ],
            "operations": [],
        }

        if dry_run:
            results["operations"] = [
                {**op, "status": "DRY RUN - Would execute but not actually performed", "executed": False}
                for op in operations
            ]
            return (
                f"BULK OPERATIONS TEST (DRY RUN)\n\n{_dumps(results)}\n\n"
                "To actually execute the test, set dry_run: false"
            )

        for i, op in enumerate(operations):
            if i:
                self._sleep(self.pacing_delay)
            timestamp = datetime.now(tz=timezone.utc).isoformat()
            try:
                self.jmap.bulk_mark_read(op["parameters"]["email_ids"], op["parameters"]["read"])
                results["operations"].append(
                    {**op, "status": "SUCCESS", "executed": True, "timestamp": timestamp}
                )
            except Exception as e:
                results["operations"].append(
                    {**op, "status": "FAILED", "executed": False, "error": str(e), "timestamp": timestamp}
                )
        return f"BULK OPERATIONS TEST (EXECUTED)\n\n{_dumps(results)}"

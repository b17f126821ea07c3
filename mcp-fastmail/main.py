"""MCP Fastmail service – mail and contacts over JMAP, calendars over CalDAV."""

import logging
import os

from jose import JWTError, jwt
from mcp.server.fastmcp import FastMCP
from mcp.server.transport_security import TransportSecuritySettings
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp, Receive, Scope, Send

from dispatcher import ToolDispatcher
from models import Participant

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ALLOWED_HOSTS = [h.strip() for h in os.getenv("ALLOWED_HOSTS", "localhost").split(",") if h.strip()]

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)

# Fastmail credentials are resolved lazily, on the first tool call that needs them
dispatcher = ToolDispatcher()

# ---------------------------------------------------------------------------
# FastMCP server
# ---------------------------------------------------------------------------
# Host header must match ALLOWED_HOSTS; Traefik forwards the original host
_security = TransportSecuritySettings(allowed_hosts=ALLOWED_HOSTS)
mcp = FastMCP("mcp-fastmail", stateless_http=True, transport_security=_security)


# ---------------------------------------------------------------------------
# Mail tools
# ---------------------------------------------------------------------------


@mcp.tool()
def list_mailboxes() -> str:
    """List all mailboxes in the Fastmail account."""
    return dispatcher.call("list_mailboxes", {})


@mcp.tool()
def list_emails(mailbox_id: str | None = None, limit: int = 20) -> str:
    """List emails from a mailbox, newest first.

    Args:
        mailbox_id: Mailbox to list (default: all mailboxes).
        limit: Maximum number of emails to return.
    """
    return dispatcher.call("list_emails", {"mailbox_id": mailbox_id, "limit": limit})


@mcp.tool()
def get_email(email_id: str) -> str:
    """Get a specific email, including its body, by ID."""
    return dispatcher.call("get_email", {"email_id": email_id})


@mcp.tool()
def send_email(
    to: list[str],
    subject: str,
    text_body: str | None = None,
    html_body: str | None = None,
    cc: list[str] | None = None,
    bcc: list[str] | None = None,
    from_address: str | None = None,
    mailbox_id: str | None = None,
) -> str:
    """Send an email.

    Args:
        to: Recipient email addresses.
        subject: Email subject.
        text_body: Plain-text body (text_body or html_body is required).
        html_body: HTML body.
        cc: CC addresses.
        bcc: BCC addresses.
        from_address: Sender address; must be one of the account's identities.
        mailbox_id: Mailbox the draft is created in (default: Drafts).
    """
    return dispatcher.call("send_email", {
        "to": to,
        "subject": subject,
        "text_body": text_body,
        "html_body": html_body,
        "cc": cc,
        "bcc": bcc,
        "from_address": from_address,
        "mailbox_id": mailbox_id,
    })


@mcp.tool()
def search_emails(query: str, limit: int = 20) -> str:
    """Search emails by subject or content."""
    return dispatcher.call("search_emails", {"query": query, "limit": limit})


@mcp.tool()
def get_recent_emails(limit: int = 10, mailbox_name: str = "inbox") -> str:
    """Get the most recent emails from a mailbox (max 50).

    Args:
        limit: Number of emails to return.
        mailbox_name: Mailbox name or role, case-insensitive (default: inbox).
    """
    return dispatcher.call("get_recent_emails", {"limit": limit, "mailbox_name": mailbox_name})


@mcp.tool()
def list_identities() -> str:
    """List sending identities (addresses that can be used as From)."""
    return dispatcher.call("list_identities", {})


@mcp.tool()
def mark_email_read(email_id: str, read: bool = True) -> str:
    """Mark an email as read (read=True) or unread (read=False)."""
    return dispatcher.call("mark_email_read", {"email_id": email_id, "read": read})


@mcp.tool()
def delete_email(email_id: str) -> str:
    """Delete an email (move it to Trash)."""
    return dispatcher.call("delete_email", {"email_id": email_id})


@mcp.tool()
def move_email(email_id: str, target_mailbox_id: str) -> str:
    """Move an email to another mailbox."""
    return dispatcher.call("move_email", {"email_id": email_id, "target_mailbox_id": target_mailbox_id})


@mcp.tool()
def get_email_attachments(email_id: str) -> str:
    """List the attachments of an email."""
    return dispatcher.call("get_email_attachments", {"email_id": email_id})


@mcp.tool()
def download_attachment(email_id: str, attachment_id: str) -> str:
    """Get a download URL for an email attachment.

    Args:
        email_id: ID of the email.
        attachment_id: partId or blobId of the attachment (from get_email_attachments).
    """
    return dispatcher.call("download_attachment", {"email_id": email_id, "attachment_id": attachment_id})


@mcp.tool()
def advanced_search(
    query: str | None = None,
    from_address: str | None = None,
    to_address: str | None = None,
    subject: str | None = None,
    has_attachment: bool | None = None,
    is_unread: bool | None = None,
    mailbox_id: str | None = None,
    after: str | None = None,
    before: str | None = None,
    limit: int = 50,
) -> str:
    """Search emails combining several criteria; omitted criteria are not applied.

    Args:
        query: Text to search for in subject/body.
        from_address: Sender address.
        to_address: Recipient address.
        subject: Text in the subject.
        has_attachment: Only emails with (True) or without (False) attachments.
        is_unread: Only unread (True) or read (False) emails.
        mailbox_id: Restrict to one mailbox.
        after: Received after this ISO 8601 datetime.
        before: Received before this ISO 8601 datetime.
        limit: Maximum results.
    """
    return dispatcher.call("advanced_search", {
        "query": query,
        "from_address": from_address,
        "to_address": to_address,
        "subject": subject,
        "has_attachment": has_attachment,
        "is_unread": is_unread,
        "mailbox_id": mailbox_id,
        "after": after,
        "before": before,
        "limit": limit,
    })


@mcp.tool()
def get_thread(thread_id: str) -> str:
    """Get all emails in a conversation thread."""
    return dispatcher.call("get_thread", {"thread_id": thread_id})


@mcp.tool()
def get_mailbox_stats(mailbox_id: str | None = None) -> str:
    """Unread/total counts for one mailbox, or for all mailboxes."""
    return dispatcher.call("get_mailbox_stats", {"mailbox_id": mailbox_id})


@mcp.tool()
def get_account_summary() -> str:
    """Overall account summary with mailbox and identity statistics."""
    return dispatcher.call("get_account_summary", {})


@mcp.tool()
def bulk_mark_read(email_ids: list[str], read: bool = True) -> str:
    """Mark several emails as read or unread in one request."""
    return dispatcher.call("bulk_mark_read", {"email_ids": email_ids, "read": read})


@mcp.tool()
def bulk_move(email_ids: list[str], target_mailbox_id: str) -> str:
    """Move several emails to a mailbox in one request."""
    return dispatcher.call("bulk_move", {"email_ids": email_ids, "target_mailbox_id": target_mailbox_id})


@mcp.tool()
def bulk_delete(email_ids: list[str]) -> str:
    """Delete several emails (move to Trash) in one request."""
    return dispatcher.call("bulk_delete", {"email_ids": email_ids})


# ---------------------------------------------------------------------------
# Contacts tools
# ---------------------------------------------------------------------------


@mcp.tool()
def list_contacts(limit: int = 50) -> str:
    """List contacts from the address book."""
    return dispatcher.call("list_contacts", {"limit": limit})


@mcp.tool()
def get_contact(contact_id: str) -> str:
    """Get a specific contact by ID."""
    return dispatcher.call("get_contact", {"contact_id": contact_id})


@mcp.tool()
def search_contacts(query: str, limit: int = 20) -> str:
    """Search contacts by name or email."""
    return dispatcher.call("search_contacts", {"query": query, "limit": limit})


# ---------------------------------------------------------------------------
# Calendar tools (CalDAV: FASTMAIL_USERNAME + FASTMAIL_CALDAV_PASSWORD)
# ---------------------------------------------------------------------------


@mcp.tool()
def list_calendars() -> str:
    """List all calendars."""
    return dispatcher.call("list_calendars", {})


@mcp.tool()
def list_calendar_events(
    calendar_url: str,
    time_range_start: str | None = None,
    time_range_end: str | None = None,
) -> str:
    """List events from a calendar.

    Args:
        calendar_url: URL of the calendar (from list_calendars).
        time_range_start: Only events after this ISO 8601 datetime (needs time_range_end).
        time_range_end: Only events before this ISO 8601 datetime (needs time_range_start).
    """
    return dispatcher.call("list_calendar_events", {
        "calendar_url": calendar_url,
        "time_range_start": time_range_start,
        "time_range_end": time_range_end,
    })


@mcp.tool()
def get_calendar_event(event_id: str) -> str:
    """Get a calendar event by its URL (the url field from list_calendar_events)."""
    return dispatcher.call("get_calendar_event", {"event_id": event_id})


@mcp.tool()
def create_calendar_event(
    calendar_url: str,
    title: str,
    start: str,
    end: str,
    description: str | None = None,
    location: str | None = None,
    participants: list[Participant] | None = None,
) -> str:
    """Create a calendar event.

    Args:
        calendar_url: URL of the calendar (from list_calendars).
        title: Event title.
        start: Start datetime (ISO 8601).
        end: End datetime (ISO 8601).
        description: Optional event description.
        location: Optional event location.
        participants: Optional attendees, each {email, name?}.
    """
    return dispatcher.call("create_calendar_event", {
        "calendar_url": calendar_url,
        "title": title,
        "start": start,
        "end": end,
        "description": description,
        "location": location,
        "participants": [p.model_dump(exclude_none=True) for p in participants or []],
    })


@mcp.tool()
def delete_calendar_event(event_id: str) -> str:
    """Delete a calendar event by its URL."""
    return dispatcher.call("delete_calendar_event", {"event_id": event_id})


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------


@mcp.tool()
def check_function_availability() -> str:
    """Report which tool groups are usable with the current account and credentials."""
    return dispatcher.call("check_function_availability", {})


@mcp.tool()
def test_bulk_operations(dry_run: bool = True, limit: int = 3) -> str:
    """Exercise bulk_mark_read on a few recent inbox emails (read, then unread again).

    Args:
        dry_run: Only show what would be done (default True).
        limit: Number of emails to use, 1-10.
    """
    return dispatcher.call("test_bulk_operations", {"dry_run": dry_run, "limit": limit})


# ---------------------------------------------------------------------------
# JWT auth middleware (raw ASGI so SSE responses stream through)
# ---------------------------------------------------------------------------


class JWTAuthMiddleware:
    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        auth_header = request.headers.get("authorization", "")
        if not auth_header.startswith("Bearer "):
            response = Response(status_code=401)
            await response(scope, receive, send)
            return

        token = auth_header[7:]
        try:
            jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        except JWTError:
            logger.warning("Rejected request with invalid bearer token")
            response = Response(status_code=401)
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)


# ---------------------------------------------------------------------------
# ASGI app
# ---------------------------------------------------------------------------

_inner = mcp.streamable_http_app()
app = JWTAuthMiddleware(_inner)

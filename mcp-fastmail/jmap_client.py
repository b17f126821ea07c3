"""Fastmail JMAP client: session discovery, chained method batches and mail operations."""

import logging
from typing import Any
from urllib.parse import quote

import httpx

from errors import (
    AuthError,
    BulkUpdateError,
    NetworkError,
    NotFoundError,
    ProtocolError,
    SendEmailError,
    ValidationError,
)
from models import GetResult, JmapSession, MethodResult, QueryResult, SetResult, parse_method_result

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.fastmail.com"

CORE_CAPABILITY = "urn:ietf:params:jmap:core"
MAIL_CAPABILITY = "urn:ietf:params:jmap:mail"
SUBMISSION_CAPABILITY = "urn:ietf:params:jmap:submission"
CONTACTS_CAPABILITY = "urn:ietf:params:jmap:contacts"

EMAIL_SUMMARY_PROPERTIES = [
    "id", "threadId", "mailboxIds", "keywords", "subject",
    "from", "to", "receivedAt", "preview", "hasAttachment",
]
EMAIL_DETAIL_PROPERTIES = EMAIL_SUMMARY_PROPERTIES + [
    "cc", "bcc", "replyTo", "sentAt", "size",
    "textBody", "htmlBody", "attachments", "bodyValues",
]
MAILBOX_STATS_PROPERTIES = [
    "id", "name", "role", "parentId",
    "totalEmails", "unreadEmails", "totalThreads", "unreadThreads",
]
NEWEST_FIRST = [{"property": "receivedAt", "isAscending": False}]
RECENT_EMAILS_MAX = 50

# result label → step name reported when sending fails
SEND_STEPS = {
    "createDraft": "create draft",
    "submit": "submit",
    "moveToSent": "move to sent",
}


class FastmailAuth:
    """Bearer-token credentials plus the endpoint URLs derived from the base URL."""

    def __init__(self, api_token: str, base_url: str | None = None):
        self.api_token = api_token
        self.base_url = self.normalize_base_url(base_url)

    @staticmethod
    def normalize_base_url(base_url: str | None) -> str:
        if not base_url:
            return DEFAULT_BASE_URL
        url = base_url.strip().rstrip("/")
        if not url.startswith(("http://", "https://")):
            url = f"https://{url}"
        return url

    @property
    def session_url(self) -> str:
        return f"{self.base_url}/jmap/session"

    @property
    def api_url(self) -> str:
        return f"{self.base_url}/jmap/api/"

    def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }


# ---------------------------------------------------------------------------
# Batch builder
# ---------------------------------------------------------------------------


class Call:
    """Handle for one method call inside a Batch."""

    def __init__(self, index: int, method: str, label: str):
        self.index = index
        self.method = method
        self.label = label

    def ref(self, path: str) -> dict:
        """Back-reference to a fragment of this call's result, resolved server-side."""
        return {"resultOf": self.label, "name": self.method, "path": path}


class Batch:
    def __init__(self, *capabilities: str):
        self.using = [CORE_CAPABILITY]
        for cap in capabilities:
            if cap not in self.using:
                self.using.append(cap)
        self.calls: list[Call] = []
        self._arguments: list[dict] = []

    def add(self, method: str, arguments: dict, label: str | None = None) -> Call:
        label = label or f"c{len(self.calls)}"
        known = {c.label for c in self.calls}
        if label in known:
            raise ValueError(f"Duplicate result label {label!r}")
        for key, value in arguments.items():
            if not key.startswith("#"):
                continue
            if not isinstance(value, dict) or value.get("resultOf") not in known:
                raise ValueError(f"{method} argument {key!r} must reference an earlier call")
        call = Call(len(self.calls), method, label)
        self.calls.append(call)
        self._arguments.append(arguments)
        return call

    def to_request(self) -> dict:
        return {
            "using": list(self.using),
            "methodCalls": [
                [call.method, args, call.label]
                for call, args in zip(self.calls, self._arguments)
            ],
        }


class BatchResponse:
    """Method results, read by position: result ``i`` answers call ``i``."""

    def __init__(self, batch: Batch, method_responses: list):
        self.batch = batch
        self.method_responses = method_responses

    def raw(self, call: Call) -> dict:
        return self.method_responses[call.index][1]

    def result(self, call: Call) -> MethodResult:
        return parse_method_result(call.method, self.raw(call))

    def _typed(self, call: Call, model: type[MethodResult]):
        result = self.result(call)
        if not isinstance(result, model):
            raise ProtocolError(
                f"{call.method} does not return a {model.__name__}",
                method=call.method,
                label=call.label,
            )
        return result

    def query_result(self, call: Call) -> QueryResult:
        return self._typed(call, QueryResult)

    def get_result(self, call: Call) -> GetResult:
        return self._typed(call, GetResult)

    def set_result(self, call: Call) -> SetResult:
        return self._typed(call, SetResult)


def _describe(error: dict | None) -> str:
    error = error or {}
    kind = error.get("type", "unknown")
    description = error.get("description")
    return f"{kind}: {description}" if description else kind


def build_search_filter(
    query: str | None = None,
    from_addr: str | None = None,
    to_addr: str | None = None,
    subject: str | None = None,
    has_attachment: bool | None = None,
    is_unread: bool | None = None,
    mailbox_id: str | None = None,
    after: str | None = None,
    before: str | None = None,
) -> dict | None:
    """AND-filter over the criteria that were actually supplied; None when there are none."""
    conditions: list[dict] = []
    if query:
        conditions.append({"text": query})
    if from_addr:
        conditions.append({"from": from_addr})
    if to_addr:
        conditions.append({"to": to_addr})
    if subject:
        conditions.append({"subject": subject})
    if has_attachment is not None:
        conditions.append({"hasAttachment": has_attachment})
    if is_unread is True:
        conditions.append({"notKeyword": "$seen"})
    elif is_unread is False:
        conditions.append({"hasKeyword": "$seen"})
    if mailbox_id:
        conditions.append({"inMailbox": mailbox_id})
    if after:
        conditions.append({"after": after})
    if before:
        conditions.append({"before": before})
    if not conditions:
        return None
    return {"operator": "AND", "conditions": conditions}


def in_query_order(items: list[dict], ids: list[str]) -> list[dict]:
    """*/get may answer in any order; put objects back in the query's sort order."""
    rank = {object_id: i for i, object_id in enumerate(ids)}
    return sorted(items, key=lambda item: rank.get(item.get("id"), len(rank)))


def find_mailbox(mailboxes: list[dict], name_or_role: str) -> dict | None:
    """Case-insensitive match on role first, then on display name."""
    wanted = name_or_role.strip().lower()
    for mailbox in mailboxes:
        if (mailbox.get("role") or "").lower() == wanted:
            return mailbox
    for mailbox in mailboxes:
        if (mailbox.get("name") or "").lower() == wanted:
            return mailbox
    return None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class JmapClient:
    def __init__(self, auth: FastmailAuth, http: httpx.Client | None = None):
        self.auth = auth
        self._http = http or httpx.Client(timeout=30.0, follow_redirects=True)
        self._session: JmapSession | None = None

    # ── Transport ─────────────────────────────────────────────────────────────

    def _request(self, method: str, url: str, **kwargs) -> dict:
        try:
            resp = self._http.request(method, url, headers=self.auth.headers(), **kwargs)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status in (401, 403):
                raise AuthError(
                    f"Fastmail rejected the API token (HTTP {status}). "
                    "Check FASTMAIL_API_TOKEN and its scopes."
                ) from e
            raise ProtocolError(f"JMAP request failed with HTTP {status}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Could not reach Fastmail: {type(e).__name__}") from e
        try:
            return resp.json()
        except ValueError as e:
            raise ProtocolError("JMAP response was not valid JSON") from e

    def get_session(self) -> JmapSession:
        if self._session is None:
            doc = self._request("GET", self.auth.session_url)
            self._session = JmapSession.from_document(doc)
            log.info("JMAP session established (%d capabilities)", len(self._session.capabilities))
        return self._session

    @property
    def account_id(self) -> str:
        return self.get_session().account_id

    def execute(self, batch: Batch) -> BatchResponse:
        """POST the batch and return its results; any error-typed result raises ProtocolError."""
        session = self.get_session()
        log.debug("JMAP batch: %s", ", ".join(c.method for c in batch.calls))
        data = self._request("POST", session.api_url, json=batch.to_request())
        responses = data.get("methodResponses")
        if not isinstance(responses, list) or len(responses) < len(batch.calls):
            raise ProtocolError("JMAP response does not answer every method call")

        for call, (name, result, _call_id) in zip(batch.calls, responses):
            if name == "error":
                raise ProtocolError(
                    f"{call.method} failed: {_describe(result)}",
                    error_type=result.get("type"),
                    method=call.method,
                    label=call.label,
                )
        return BatchResponse(batch, responses)

    # ── Mailboxes & identities ────────────────────────────────────────────────

    def get_mailboxes(self) -> list[dict]:
        batch = Batch(MAIL_CAPABILITY)
        call = batch.add("Mailbox/get", {"accountId": self.account_id, "ids": None})
        return self.execute(batch).get_result(call).items

    def _mailbox_id_for(self, name_or_role: str) -> str:
        mailbox = find_mailbox(self.get_mailboxes(), name_or_role)
        if mailbox is None:
            raise NotFoundError(f"Mailbox not found: {name_or_role}")
        return mailbox["id"]

    def get_identities(self) -> list[dict]:
        batch = Batch(SUBMISSION_CAPABILITY)
        call = batch.add("Identity/get", {"accountId": self.account_id, "ids": None})
        return self.execute(batch).get_result(call).items

    def get_mailbox_stats(self, mailbox_id: str | None = None) -> dict | list[dict]:
        batch = Batch(MAIL_CAPABILITY)
        call = batch.add("Mailbox/get", {
            "accountId": self.account_id,
            "ids": [mailbox_id] if mailbox_id else None,
            "properties": MAILBOX_STATS_PROPERTIES,
        })
        mailboxes = self.execute(batch).get_result(call).items
        if mailbox_id is None:
            return mailboxes
        if not mailboxes:
            raise NotFoundError(f"Mailbox not found: {mailbox_id}")
        return mailboxes[0]

    def get_account_summary(self) -> dict:
        session = self.get_session()
        batch = Batch(MAIL_CAPABILITY, SUBMISSION_CAPABILITY)
        mailboxes_call = batch.add("Mailbox/get", {
            "accountId": session.account_id,
            "ids": None,
            "properties": MAILBOX_STATS_PROPERTIES,
        })
        identities_call = batch.add("Identity/get", {"accountId": session.account_id, "ids": None})
        response = self.execute(batch)
        mailboxes = response.get_result(mailboxes_call).items
        identities = response.get_result(identities_call).items
        return {
            "accountId": session.account_id,
            "username": session.username,
            "mailboxCount": len(mailboxes),
            "identityCount": len(identities),
            "totalEmails": sum(m.get("totalEmails") or 0 for m in mailboxes),
            "unreadEmails": sum(m.get("unreadEmails") or 0 for m in mailboxes),
            "mailboxes": [
                {
                    "name": m.get("name"),
                    "role": m.get("role"),
                    "totalEmails": m.get("totalEmails") or 0,
                    "unreadEmails": m.get("unreadEmails") or 0,
                }
                for m in mailboxes
                if m.get("role")
            ],
            "capabilities": sorted(session.capabilities),
        }

    # ── Reading mail ──────────────────────────────────────────────────────────

    def _query_emails(
        self,
        email_filter: dict | None,
        limit: int,
        properties: list[str] = EMAIL_SUMMARY_PROPERTIES,
    ) -> list[dict]:
        """Email/query chained into Email/get through a back-reference to the id list."""
        account_id = self.account_id
        batch = Batch(MAIL_CAPABILITY)
        query_args: dict[str, Any] = {"accountId": account_id, "sort": NEWEST_FIRST, "limit": limit}
        if email_filter:
            query_args["filter"] = email_filter
        query = batch.add("Email/query", query_args, "query")
        emails = batch.add("Email/get", {
            "accountId": account_id,
            "#ids": query.ref("/ids"),
            "properties": properties,
        }, "emails")
        response = self.execute(batch)
        return in_query_order(response.get_result(emails).items, response.query_result(query).ids)

    def get_emails(self, mailbox_id: str | None = None, limit: int = 20) -> list[dict]:
        return self._query_emails({"inMailbox": mailbox_id} if mailbox_id else None, limit)

    def search_emails(self, query: str, limit: int = 20) -> list[dict]:
        return self._query_emails({"text": query}, limit)

    def advanced_search(self, limit: int = 50, **criteria) -> list[dict]:
        return self._query_emails(build_search_filter(**criteria), limit)

    def get_recent_emails(self, limit: int = 10, mailbox_name: str = "inbox") -> list[dict]:
        limit = min(max(limit, 1), RECENT_EMAILS_MAX)
        mailbox_id = self._mailbox_id_for(mailbox_name)
        return self._query_emails({"inMailbox": mailbox_id}, limit)

    def get_email_by_id(self, email_id: str) -> dict:
        batch = Batch(MAIL_CAPABILITY)
        call = batch.add("Email/get", {
            "accountId": self.account_id,
            "ids": [email_id],
            "properties": EMAIL_DETAIL_PROPERTIES,
            "fetchTextBodyValues": True,
            "fetchHTMLBodyValues": True,
        })
        emails = self.execute(batch).get_result(call).items
        if not emails:
            raise NotFoundError(f"Email not found: {email_id}")
        return emails[0]

    def get_thread(self, thread_id: str) -> list[dict]:
        account_id = self.account_id
        batch = Batch(MAIL_CAPABILITY)
        thread = batch.add("Thread/get", {"accountId": account_id, "ids": [thread_id]}, "thread")
        emails = batch.add("Email/get", {
            "accountId": account_id,
            "#ids": thread.ref("/list/*/emailIds"),
            "properties": EMAIL_SUMMARY_PROPERTIES,
        }, "emails")
        response = self.execute(batch)
        if not response.get_result(thread).items:
            raise NotFoundError(f"Thread not found: {thread_id}")
        return response.get_result(emails).items

    def get_email_attachments(self, email_id: str) -> list[dict]:
        batch = Batch(MAIL_CAPABILITY)
        call = batch.add("Email/get", {
            "accountId": self.account_id,
            "ids": [email_id],
            "properties": ["id", "attachments"],
        })
        emails = self.execute(batch).get_result(call).items
        if not emails:
            raise NotFoundError(f"Email not found: {email_id}")
        return emails[0].get("attachments") or []

    def download_attachment(self, email_id: str, attachment_id: str) -> str:
        """Return a download URL for an attachment, matched by partId or blobId."""
        session = self.get_session()
        attachment = next(
            (a for a in self.get_email_attachments(email_id)
             if attachment_id in (a.get("partId"), a.get("blobId"))),
            None,
        )
        if attachment is None:
            raise NotFoundError(f"Attachment not found: {attachment_id}")
        if not session.download_url:
            raise ProtocolError("Session does not advertise a downloadUrl")
        values = {
            "accountId": session.account_id,
            "blobId": attachment["blobId"],
            "name": attachment.get("name") or "attachment",
            "type": attachment.get("type") or "application/octet-stream",
        }
        url = session.download_url
        for key, value in values.items():
            url = url.replace("{" + key + "}", quote(value, safe=""))
        return url

    # ── Changing mail ─────────────────────────────────────────────────────────

    def _update_emails(self, email_ids: list[str], patch: dict) -> list[str]:
        """One Email/set covering every id. Partial failures are reported, not rolled back."""
        batch = Batch(MAIL_CAPABILITY)
        call = batch.add("Email/set", {
            "accountId": self.account_id,
            "update": {email_id: dict(patch) for email_id in email_ids},
        })
        result = self.execute(batch).set_result(call)
        failed = {
            email_id: (error or {}).get("type", "unknown")
            for email_id, error in result.not_updated.items()
        }
        if failed:
            log.warning("Email/set left %d of %d emails unchanged", len(failed), len(email_ids))
            raise BulkUpdateError([i for i in email_ids if i not in failed], failed)
        return list(email_ids)

    def bulk_mark_read(self, email_ids: list[str], read: bool = True) -> list[str]:
        # null removes the keyword, so repeating either call is a no-op
        return self._update_emails(email_ids, {"keywords/$seen": True if read else None})

    def bulk_move(self, email_ids: list[str], target_mailbox_id: str) -> list[str]:
        return self._update_emails(email_ids, {"mailboxIds": {target_mailbox_id: True}})

    def bulk_delete(self, email_ids: list[str]) -> list[str]:
        """Move to the trash-role mailbox."""
        trash_id = self._mailbox_id_for("trash")
        return self._update_emails(email_ids, {"mailboxIds": {trash_id: True}})

    def mark_email_read(self, email_id: str, read: bool = True) -> None:
        self.bulk_mark_read([email_id], read)

    def move_email(self, email_id: str, target_mailbox_id: str) -> None:
        self.bulk_move([email_id], target_mailbox_id)

    def delete_email(self, email_id: str) -> None:
        self.bulk_delete([email_id])

    # ── Sending ───────────────────────────────────────────────────────────────

    def send_email(
        self,
        to: list[str],
        subject: str,
        text_body: str | None = None,
        html_body: str | None = None,
        cc: list[str] | None = None,
        bcc: list[str] | None = None,
        from_addr: str | None = None,
        mailbox_id: str | None = None,
    ) -> str:
        """Create a draft, submit it, then move it from drafts to sent.

        Returns the EmailSubmission id. Each step is its own call in one batch;
        a failure raises SendEmailError naming the step.
        """
        account_id = self.account_id

        prep = Batch(MAIL_CAPABILITY, SUBMISSION_CAPABILITY)
        identities_call = prep.add("Identity/get", {"accountId": account_id, "ids": None})
        mailboxes_call = prep.add("Mailbox/get", {"accountId": account_id, "ids": None})
        prepared = self.execute(prep)
        identities = prepared.get_result(identities_call).items
        mailboxes = prepared.get_result(mailboxes_call).items

        if not identities:
            raise ProtocolError("No sending identities found for this account")
        if from_addr:
            identity = next(
                (i for i in identities if (i.get("email") or "").lower() == from_addr.lower()),
                None,
            )
            if identity is None:
                raise ValidationError(f"From address is not a verified identity: {from_addr}")
        else:
            identity = identities[0]

        drafts = find_mailbox(mailboxes, "drafts")
        sent = find_mailbox(mailboxes, "sent")
        drafts_id = mailbox_id or (drafts or {}).get("id")
        if not drafts_id:
            raise NotFoundError("Mailbox not found: drafts")
        if sent is None:
            raise NotFoundError("Mailbox not found: sent")

        sender = {"email": identity["email"]}
        if identity.get("name"):
            sender["name"] = identity["name"]
        email: dict[str, Any] = {
            "mailboxIds": {drafts_id: True},
            "keywords": {"$draft": True, "$seen": True},
            "from": [sender],
            "to": [{"email": addr} for addr in to],
            "subject": subject,
            "bodyValues": {},
        }
        if cc:
            email["cc"] = [{"email": addr} for addr in cc]
        if bcc:
            email["bcc"] = [{"email": addr} for addr in bcc]
        if text_body:
            email["bodyValues"]["text"] = {"value": text_body}
            email["textBody"] = [{"partId": "text", "type": "text/plain"}]
        if html_body:
            email["bodyValues"]["html"] = {"value": html_body}
            email["htmlBody"] = [{"partId": "html", "type": "text/html"}]

        batch = Batch(MAIL_CAPABILITY, SUBMISSION_CAPABILITY)
        draft = batch.add("Email/set", {
            "accountId": account_id,
            "create": {"draft": email},
        }, "createDraft")
        submit = batch.add("EmailSubmission/set", {
            "accountId": account_id,
            "create": {"submission": {"identityId": identity["id"], "emailId": "#draft"}},
        }, "submit")
        move_patch: dict[str, Any] = {
            f"mailboxIds/{sent['id']}": True,
            "keywords/$draft": None,
        }
        if drafts_id != sent["id"]:
            move_patch[f"mailboxIds/{drafts_id}"] = None
        move = batch.add("Email/set", {
            "accountId": account_id,
            "update": {"#draft": move_patch},
        }, "moveToSent")

        try:
            response = self.execute(batch)
        except ProtocolError as e:
            if e.label in SEND_STEPS:
                raise SendEmailError(SEND_STEPS[e.label], str(e)) from e
            raise

        created = response.set_result(draft)
        if "draft" in created.not_created or "draft" not in created.created:
            raise SendEmailError("create draft", _describe(created.not_created.get("draft")))
        submitted = response.set_result(submit)
        if "submission" in submitted.not_created or "submission" not in submitted.created:
            raise SendEmailError("submit", _describe(submitted.not_created.get("submission")))
        moved = response.set_result(move)
        if moved.not_updated:
            raise SendEmailError("move to sent", _describe(next(iter(moved.not_updated.values()))))

        submission_id = submitted.created["submission"]["id"]
        log.info("Email submitted (%d recipients)", len(to) + len(cc or []) + len(bcc or []))
        return submission_id

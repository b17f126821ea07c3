import httpx
import pytest

from errors import (
    AuthError,
    BulkUpdateError,
    NetworkError,
    NotFoundError,
    ProtocolError,
    SendEmailError,
    ValidationError,
)
from jmap_client import Batch, BatchResponse, FastmailAuth, JmapClient, build_search_filter, find_mailbox
from models import GetResult, JmapSession, MethodResult, parse_method_result

MAILBOXES = [
    {"id": "mb-in", "name": "Inbox", "role": "inbox"},
    {"id": "mb-d", "name": "Drafts", "role": "drafts"},
    {"id": "mb-s", "name": "Sent", "role": "sent"},
    {"id": "mb-t", "name": "Trash", "role": "trash"},
    {"id": "mb-r", "name": "Receipts", "role": None},
]
IDENTITIES = [{"id": "id1", "email": "me@example.com", "name": "Me"}]


def listing(items):
    return {"accountId": "u123", "state": "1", "list": items, "notFound": []}


# ── Endpoints & session ───────────────────────────────────────────────────────


@pytest.mark.parametrize("raw,expected", [
    (None, "https://api.fastmail.com"),
    ("", "https://api.fastmail.com"),
    ("api.fastmail.com/", "https://api.fastmail.com"),
    ("  https://jmap.example.test//  ", "https://jmap.example.test"),
    ("http://localhost:8080", "http://localhost:8080"),
])
def test_base_url_normalization(raw, expected):
    auth = FastmailAuth("t", raw)
    assert auth.base_url == expected
    assert auth.session_url == f"{expected}/jmap/session"


def test_session_account_falls_back_to_first_account():
    session = JmapSession.from_document({"apiUrl": "https://x/api", "accounts": {"a1": {}, "a2": {}}})
    assert session.account_id == "a1"


def test_session_without_account_is_a_protocol_error():
    with pytest.raises(ProtocolError):
        JmapSession.from_document({"apiUrl": "https://x/api", "accounts": {}})


def test_session_is_fetched_once(jmap, jmap_server):
    jmap_server.handlers["Mailbox/get"] = lambda args, cid: listing(MAILBOXES)
    jmap.get_mailboxes()
    jmap.get_mailboxes()
    assert jmap_server.session_hits == 1
    assert jmap.account_id == "u123"
    assert jmap.get_session().download_url.startswith("https://www.fastmailusercontent.com/")


def test_rejected_token_is_an_auth_error(jmap, jmap_server):
    jmap_server.session_status = 401
    with pytest.raises(AuthError, match="HTTP 401"):
        jmap.get_mailboxes()


def test_unreachable_server_is_a_network_error():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = JmapClient(FastmailAuth("t"), http=httpx.Client(transport=httpx.MockTransport(refuse)))
    with pytest.raises(NetworkError, match="ConnectError"):
        client.get_session()
    with pytest.raises(NetworkError):
        client.get_mailboxes()


def test_error_response_names_the_method(jmap, jmap_server):
    jmap_server.handlers["Mailbox/get"] = lambda args, cid: ("error", {"type": "invalidArguments"})
    with pytest.raises(ProtocolError) as exc_info:
        jmap.get_mailboxes()
    assert exc_info.value.method == "Mailbox/get"
    assert exc_info.value.error_type == "invalidArguments"


# ── Batch builder ─────────────────────────────────────────────────────────────


def test_batch_rejects_forward_references():
    batch = Batch()
    with pytest.raises(ValueError):
        batch.add("Email/get", {"#ids": {"resultOf": "query", "name": "Email/query", "path": "/ids"}})


def test_batch_rejects_duplicate_labels():
    batch = Batch()
    batch.add("Mailbox/get", {}, "a")
    with pytest.raises(ValueError):
        batch.add("Identity/get", {}, "a")


def test_batch_request_shape():
    batch = Batch("urn:ietf:params:jmap:mail", "urn:ietf:params:jmap:mail")
    query = batch.add("Email/query", {"accountId": "u123"}, "q")
    batch.add("Email/get", {"accountId": "u123", "#ids": query.ref("/ids")})
    request = batch.to_request()
    assert request["using"] == ["urn:ietf:params:jmap:core", "urn:ietf:params:jmap:mail"]
    assert [c[2] for c in request["methodCalls"]] == ["q", "c1"]
    assert request["methodCalls"][1][1]["#ids"] == {"resultOf": "q", "name": "Email/query", "path": "/ids"}


def test_list_emails_chains_query_into_get(jmap, jmap_server):
    jmap_server.handlers["Email/query"] = lambda args, cid: {"ids": ["e1", "e2"], "position": 0}
    jmap_server.handlers["Email/get"] = lambda args, cid: listing([{"id": "e1"}, {"id": "e2"}])

    emails = jmap.get_emails("mb-in", 5)

    assert [e["id"] for e in emails] == ["e1", "e2"]
    assert len(jmap_server.requests) == 1
    (_, query_args, _), (_, get_args, _) = jmap_server.calls()
    assert query_args["filter"] == {"inMailbox": "mb-in"}
    assert query_args["limit"] == 5
    assert get_args["#ids"] == {"resultOf": "query", "name": "Email/query", "path": "/ids"}
    assert "ids" not in get_args


def test_emails_come_back_in_query_order(jmap, jmap_server):
    jmap_server.handlers["Email/query"] = lambda args, cid: {"ids": ["e2", "e3", "e1"]}
    jmap_server.handlers["Email/get"] = lambda args, cid: listing([{"id": "e1"}, {"id": "e2"}, {"id": "e3"}])

    assert [e["id"] for e in jmap.search_emails("invoice")] == ["e2", "e3", "e1"]


def test_get_result_keeps_unknown_fields():
    result = parse_method_result("Email/get", {
        "accountId": "u123", "state": "9", "list": [{"id": "e1"}], "notFound": None, "vendorHint": "x",
    })
    assert isinstance(result, GetResult)
    assert result.items == [{"id": "e1"}]
    assert result.not_found == []
    assert result.model_extra == {"vendorHint": "x"}

    other = parse_method_result("Foo/echo", {"hello": "world"})
    assert type(other) is MethodResult
    assert other.model_extra == {"hello": "world"}


def test_typed_accessor_rejects_the_wrong_result_kind():
    batch = Batch("urn:ietf:params:jmap:mail")
    call = batch.add("Mailbox/get", {"accountId": "u123"})
    response = BatchResponse(batch, [["Mailbox/get", listing([]), "c0"]])
    assert response.get_result(call).items == []
    with pytest.raises(ProtocolError, match="does not return a SetResult"):
        response.set_result(call)


def test_recent_emails_clamps_limit_and_resolves_mailbox(jmap, jmap_server):
    jmap_server.handlers["Mailbox/get"] = lambda args, cid: listing(MAILBOXES)
    jmap_server.handlers["Email/get"] = lambda args, cid: listing([])

    jmap.get_recent_emails(500, "INBOX")

    query_args = jmap_server.calls()[0][1]
    assert query_args["limit"] == 50
    assert query_args["filter"] == {"inMailbox": "mb-in"}


def test_recent_emails_unknown_mailbox(jmap, jmap_server):
    jmap_server.handlers["Mailbox/get"] = lambda args, cid: listing(MAILBOXES)
    with pytest.raises(NotFoundError):
        jmap.get_recent_emails(5, "Newsletters")


def test_find_mailbox_prefers_role_over_name():
    boxes = [{"id": "1", "name": "trash", "role": None}, {"id": "2", "name": "Bin", "role": "trash"}]
    assert find_mailbox(boxes, "Trash")["id"] == "2"
    assert find_mailbox(boxes, "bin")["id"] == "2"
    assert find_mailbox(boxes, "receipts") is None


# ── Search filters ────────────────────────────────────────────────────────────


def test_search_filter_only_includes_supplied_criteria():
    assert build_search_filter(from_addr="ann@example.com", is_unread=True) == {
        "operator": "AND",
        "conditions": [{"from": "ann@example.com"}, {"notKeyword": "$seen"}],
    }


def test_search_filter_keeps_false_flags():
    conditions = build_search_filter(has_attachment=False, is_unread=False)["conditions"]
    assert conditions == [{"hasAttachment": False}, {"hasKeyword": "$seen"}]


def test_advanced_search_without_criteria_sends_no_filter(jmap, jmap_server):
    jmap_server.handlers["Email/get"] = lambda args, cid: listing([])
    jmap.advanced_search(limit=10)
    query_args = jmap_server.calls()[0][1]
    assert "filter" not in query_args
    assert query_args["limit"] == 10


# ── Updates ───────────────────────────────────────────────────────────────────


def test_bulk_mark_read_is_one_email_set(jmap, jmap_server):
    jmap_server.handlers["Email/set"] = lambda args, cid: {"updated": {i: None for i in args["update"]}}

    updated = jmap.bulk_mark_read(["e1", "e2", "e3"])

    assert updated == ["e1", "e2", "e3"]
    calls = jmap_server.calls()
    assert len(jmap_server.requests) == 1
    assert len(calls) == 1
    method, args, _ = calls[0]
    assert method == "Email/set"
    assert args["update"] == {i: {"keywords/$seen": True} for i in ("e1", "e2", "e3")}


def test_mark_unread_removes_keyword_and_repeats_identically(jmap, jmap_server):
    jmap_server.handlers["Email/set"] = lambda args, cid: {"updated": {i: None for i in args["update"]}}

    jmap.bulk_mark_read(["e1"], read=False)
    jmap.bulk_mark_read(["e1"], read=False)

    first, second = jmap_server.requests
    assert first == second
    assert first["methodCalls"][0][1]["update"] == {"e1": {"keywords/$seen": None}}


def test_partial_bulk_failure_reports_both_sides(jmap, jmap_server):
    jmap_server.handlers["Email/set"] = lambda args, cid: {
        "updated": {"e1": None, "e3": None},
        "notUpdated": {"e2": {"type": "notFound"}},
    }
    with pytest.raises(BulkUpdateError) as exc_info:
        jmap.bulk_move(["e1", "e2", "e3"], "mb-r")
    assert exc_info.value.updated == ["e1", "e3"]
    assert exc_info.value.failed == {"e2": "notFound"}
    assert "e2 (notFound)" in str(exc_info.value)


def test_bulk_delete_moves_to_trash(jmap, jmap_server):
    jmap_server.handlers["Mailbox/get"] = lambda args, cid: listing(MAILBOXES)
    jmap_server.handlers["Email/set"] = lambda args, cid: {"updated": {"e1": None}}
    jmap.delete_email("e1")
    assert jmap_server.calls()[0][1]["update"] == {"e1": {"mailboxIds": {"mb-t": True}}}


# ── Threads & attachments ─────────────────────────────────────────────────────


def test_get_thread_follows_email_ids(jmap, jmap_server):
    jmap_server.handlers["Thread/get"] = lambda args, cid: listing([{"id": "T1", "emailIds": ["e1", "e2"]}])
    jmap_server.handlers["Email/get"] = lambda args, cid: listing([{"id": "e1"}, {"id": "e2"}])

    emails = jmap.get_thread("T1")

    assert [e["id"] for e in emails] == ["e1", "e2"]
    assert jmap_server.calls()[1][1]["#ids"]["path"] == "/list/*/emailIds"


def test_get_thread_unknown_id(jmap, jmap_server):
    jmap_server.handlers["Thread/get"] = lambda args, cid: listing([])
    jmap_server.handlers["Email/get"] = lambda args, cid: listing([])
    with pytest.raises(NotFoundError):
        jmap.get_thread("nope")


def test_download_url_is_filled_from_session_template(jmap, jmap_server):
    attachment = {"partId": "2", "blobId": "B 1", "name": "report.pdf", "type": "application/pdf"}
    jmap_server.handlers["Email/get"] = lambda args, cid: listing([{"id": "e1", "attachments": [attachment]}])

    url = jmap.download_attachment("e1", "2")

    assert url == (
        "https://www.fastmailusercontent.com/jmap/download/u123/B%201/report.pdf"
        "?type=application%2Fpdf"
    )


def test_download_unknown_attachment(jmap, jmap_server):
    jmap_server.handlers["Email/get"] = lambda args, cid: listing([{"id": "e1", "attachments": []}])
    with pytest.raises(NotFoundError):
        jmap.download_attachment("e1", "9")


# ── Sending ───────────────────────────────────────────────────────────────────


@pytest.fixture
def send_server(jmap_server):
    jmap_server.handlers["Identity/get"] = lambda args, cid: listing(IDENTITIES)
    jmap_server.handlers["Mailbox/get"] = lambda args, cid: listing(MAILBOXES)

    def email_set(args, cid):
        if cid == "createDraft":
            return {"created": {"draft": {"id": "E1", "threadId": "T1"}}}
        return {"updated": {"E1": None}}

    jmap_server.handlers["Email/set"] = email_set
    jmap_server.handlers["EmailSubmission/set"] = lambda args, cid: {"created": {"submission": {"id": "S1"}}}
    return jmap_server


def test_send_email_runs_three_steps_in_one_batch(jmap, send_server):
    submission_id = jmap.send_email(["ann@example.com"], "Hi", text_body="Hello")

    assert submission_id == "S1"
    assert len(send_server.requests) == 2
    calls = send_server.calls()
    assert [c[2] for c in calls] == ["createDraft", "submit", "moveToSent"]
    draft = calls[0][1]["create"]["draft"]
    assert draft["mailboxIds"] == {"mb-d": True}
    assert draft["from"] == [{"email": "me@example.com", "name": "Me"}]
    assert draft["bodyValues"] == {"text": {"value": "Hello"}}
    assert calls[1][1]["create"]["submission"] == {"identityId": "id1", "emailId": "#draft"}
    assert calls[2][1]["update"]["#draft"] == {
        "mailboxIds/mb-s": True,
        "keywords/$draft": None,
        "mailboxIds/mb-d": None,
    }


def test_send_failure_names_the_step(jmap, send_server):
    send_server.handlers["EmailSubmission/set"] = lambda args, cid: ("error", {"type": "forbiddenFrom"})
    with pytest.raises(SendEmailError) as exc_info:
        jmap.send_email(["ann@example.com"], "Hi", text_body="Hello")
    assert exc_info.value.step == "submit"
    assert "step 'submit'" in str(exc_info.value)


def test_rejected_draft_names_the_create_step(jmap, send_server):
    send_server.handlers["Email/set"] = lambda args, cid: (
        {"notCreated": {"draft": {"type": "invalidProperties", "description": "bad to"}}}
        if cid == "createDraft" else {"updated": None}
    )
    with pytest.raises(SendEmailError, match="create draft.*invalidProperties: bad to"):
        jmap.send_email(["not-an-address"], "Hi", html_body="<p>Hello</p>")


def test_unknown_from_address_is_rejected_before_sending(jmap, send_server):
    with pytest.raises(ValidationError):
        jmap.send_email(["ann@example.com"], "Hi", text_body="x", from_addr="other@example.com")
    assert len(send_server.requests) == 1

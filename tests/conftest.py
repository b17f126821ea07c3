import json

import httpx
import pytest

from jmap_client import FastmailAuth, JmapClient

ACCOUNT_ID = "u123"
API_URL = "https://api.fastmail.com/jmap/api/"
DOWNLOAD_URL = "https://www.fastmailusercontent.com/jmap/download/{accountId}/{blobId}/{name}?type={type}"

MAIL_CAPABILITIES = {
    "urn:ietf:params:jmap:core": {"maxCallsInRequest": 50},
    "urn:ietf:params:jmap:mail": {},
    "urn:ietf:params:jmap:submission": {},
}


class FakeJmapServer:
    """httpx MockTransport handler answering JMAP session and API requests.

    ``handlers`` maps a method name to ``fn(arguments, call_id)`` returning
    either a result dict or an ``(name, result)`` tuple, e.g. ``("error", {...})``.
    """

    def __init__(self, capabilities: dict | None = None):
        self.capabilities = dict(MAIL_CAPABILITIES if capabilities is None else capabilities)
        self.handlers: dict = {}
        self.session_status = 200
        self.session_hits = 0
        self.requests: list[dict] = []

    def session_document(self) -> dict:
        return {
            "apiUrl": API_URL,
            "downloadUrl": DOWNLOAD_URL,
            "username": "me@example.com",
            "primaryAccounts": {"urn:ietf:params:jmap:mail": ACCOUNT_ID},
            "accounts": {ACCOUNT_ID: {"name": "me@example.com"}},
            "capabilities": self.capabilities,
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET" and request.url.path == "/jmap/session":
            self.session_hits += 1
            if self.session_status != 200:
                return httpx.Response(self.session_status)
            return httpx.Response(200, json=self.session_document())

        body = json.loads(request.content)
        self.requests.append(body)
        responses = []
        for method, arguments, call_id in body["methodCalls"]:
            handler = self.handlers.get(method)
            result = handler(arguments, call_id) if handler else {"accountId": ACCOUNT_ID}
            name = method
            if isinstance(result, tuple):
                name, result = result
            responses.append([name, result, call_id])
        return httpx.Response(200, json={"methodResponses": responses, "sessionState": "s1"})

    def calls(self, index: int = -1) -> list:
        """methodCalls of the ``index``-th POSTed batch."""
        return self.requests[index]["methodCalls"]


@pytest.fixture
def jmap_server():
    return FakeJmapServer()


@pytest.fixture
def jmap(jmap_server):
    http = httpx.Client(transport=httpx.MockTransport(jmap_server))
    return JmapClient(FastmailAuth("test-token"), http=http)

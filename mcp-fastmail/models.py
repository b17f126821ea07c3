import re
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from errors import ProtocolError

MAIL_CAPABILITY = "urn:ietf:params:jmap:mail"


class WireModel(BaseModel):
    """Base for payloads exchanged with the backends and the agent (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# JMAP session + method results
# ---------------------------------------------------------------------------


class JmapSession(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    account_id: str
    api_url: str
    download_url: Optional[str] = None
    username: Optional[str] = None
    capabilities: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_document(cls, doc: dict) -> "JmapSession":
        """Build a session from the discovery document.

        The account comes from ``accountId`` if the server sends one, else the
        primary mail account, else the first advertised account.
        """
        account_id = doc.get("accountId")
        if not account_id:
            account_id = (doc.get("primaryAccounts") or {}).get(MAIL_CAPABILITY)
        if not account_id:
            account_id = next(iter(doc.get("accounts") or {}), None)
        if not account_id or not doc.get("apiUrl"):
            raise ProtocolError("JMAP session document has no account or apiUrl")
        return cls.model_validate({**doc, "accountId": account_id})

    def has_capability(self, urn: str) -> bool:
        return bool(self.capabilities.get(urn))


class MethodResult(WireModel):
    """Result of a JMAP method; fields we do not model are kept as extras."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    account_id: Optional[str] = None


class QueryResult(MethodResult):
    ids: list[str] = Field(default_factory=list)
    total: Optional[int] = None
    position: int = 0
    query_state: Optional[str] = None


class GetResult(MethodResult):
    items: list[dict[str, Any]] = Field(default_factory=list, alias="list")
    not_found: list[str] = Field(default_factory=list)
    state: Optional[str] = None


class SetResult(MethodResult):
    created: dict[str, Any] = Field(default_factory=dict)
    updated: dict[str, Any] = Field(default_factory=dict)
    destroyed: list[str] = Field(default_factory=list)
    not_created: dict[str, Any] = Field(default_factory=dict)
    not_updated: dict[str, Any] = Field(default_factory=dict)
    not_destroyed: dict[str, Any] = Field(default_factory=dict)


RESULT_TYPES: dict[str, type[MethodResult]] = {
    "query": QueryResult,
    "get": GetResult,
    "set": SetResult,
}


def parse_method_result(method: str, arguments: dict) -> MethodResult:
    """Pick the result variant from the method suffix (``Email/query`` → QueryResult)."""
    kind = method.rsplit("/", 1)[-1]
    # JMAP sends null for empty maps in */set responses
    cleaned = {k: v for k, v in arguments.items() if v is not None}
    return RESULT_TYPES.get(kind, MethodResult).model_validate(cleaned)


# ---------------------------------------------------------------------------
# Calendar
# ---------------------------------------------------------------------------


class Calendar(WireModel):
    url: str
    display_name: str = "Unnamed Calendar"
    description: Optional[str] = None
    color: Optional[str] = None


class CalendarEvent(WireModel):
    url: str
    etag: str = ""
    uid: str
    title: str = "Untitled"
    description: Optional[str] = None
    start: str = ""
    end: str = ""
    location: Optional[str] = None
    attendees: list[str] = Field(default_factory=list)


class Participant(WireModel):
    email: str
    name: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _single_address(cls, value: str) -> str:
        value = value.strip()
        if not value or re.search(r'[\s"<>;,]', value):
            raise ValueError("email must be a single bare address")
        return value

    @field_validator("name")
    @classmethod
    def _one_line_name(cls, value: Optional[str]) -> Optional[str]:
        # attendee names end up in a quoted CN parameter
        if value is None:
            return None
        value = " ".join(re.sub(r'[\x00-\x1f\x7f"]', " ", value).split())
        return value or None


class NewEvent(WireModel):
    title: str
    start: datetime
    end: datetime
    description: Optional[str] = None
    location: Optional[str] = None
    participants: list[Participant] = Field(default_factory=list)

"""Fastmail contacts over JMAP, gated by the contacts capability."""

import logging

from errors import CapabilityError, NetworkError, NotFoundError, ProtocolError
from jmap_client import CONTACTS_CAPABILITY, Batch, JmapClient, in_query_order

log = logging.getLogger(__name__)

CONTACT_PROPERTIES = ["id", "name", "emails", "phones", "addresses", "notes"]

CONTACTS_UNAVAILABLE = (
    "Contacts access not available. This account may not have JMAP contacts "
    "permissions enabled. Check the API token's scopes in Fastmail settings."
)


class ContactsClient:
    def __init__(self, jmap: JmapClient):
        self.jmap = jmap

    def has_contacts(self) -> bool:
        return self.jmap.get_session().has_capability(CONTACTS_CAPABILITY)

    def _require_contacts(self) -> str:
        if not self.has_contacts():
            raise CapabilityError(CONTACTS_UNAVAILABLE)
        return self.jmap.account_id

    def _query_contacts(self, account_id: str, contact_filter: dict | None, limit: int) -> list[dict]:
        batch = Batch(CONTACTS_CAPABILITY)
        query_args: dict = {"accountId": account_id, "limit": limit}
        if contact_filter:
            query_args["filter"] = contact_filter
        query = batch.add("Contact/query", query_args, "query")
        contacts = batch.add("Contact/get", {
            "accountId": account_id,
            "#ids": query.ref("/ids"),
            "properties": CONTACT_PROPERTIES,
        }, "contacts")
        response = self.jmap.execute(batch)
        return in_query_order(response.get_result(contacts).items, response.query_result(query).ids)

    def list_contacts(self, limit: int = 50) -> list[dict]:
        """List contacts; falls back to address-book containers once if the query fails."""
        account_id = self._require_contacts()
        try:
            return self._query_contacts(account_id, None, limit)
        except (ProtocolError, NetworkError) as error:
            log.warning("Contact/query failed (%s); trying AddressBook/get", type(error).__name__)
            batch = Batch(CONTACTS_CAPABILITY)
            books = batch.add("AddressBook/get", {"accountId": account_id})
            try:
                return self.jmap.execute(batch).get_result(books).items
            except (ProtocolError, NetworkError) as fallback_error:
                raise CapabilityError(
                    f"Contacts not supported or accessible: {error}"
                ) from fallback_error

    def get_contact(self, contact_id: str) -> dict:
        account_id = self._require_contacts()
        batch = Batch(CONTACTS_CAPABILITY)
        call = batch.add("Contact/get", {"accountId": account_id, "ids": [contact_id]})
        contacts = self.jmap.execute(batch).get_result(call).items
        if not contacts:
            raise NotFoundError(f"Contact not found: {contact_id}")
        return contacts[0]

    def search_contacts(self, query: str, limit: int = 20) -> list[dict]:
        account_id = self._require_contacts()
        return self._query_contacts(account_id, {"text": query}, limit)

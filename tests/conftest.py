"""Shared fakes for the migration tests: an in-memory Cerb5 store and a
recording Zendesk client."""

import json
from typing import Dict, List, Optional

import pytest

import cerb2zendesk as c2z
from cerb2zendesk import (
    LegacyAddress,
    LegacyAttachment,
    LegacyComment,
    LegacyMessage,
    LegacyOrganization,
    LegacyTicket,
    ZendeskError,
)


class FakeResponse:
    def __init__(self, status_code=200, payload=None, headers=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text
        self.content = self.text.encode()

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._payload is None and self.text:
            # what requests raises for an HTML error page
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self._payload


class FakeClock:
    def __init__(self, start: float = 100.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeStore:
    def __init__(self) -> None:
        self.organizations: Dict[int, LegacyOrganization] = {}
        self.addresses: Dict[int, LegacyAddress] = {}
        self.messages: Dict[int, List[LegacyMessage]] = {}
        self.comments: Dict[int, List[LegacyComment]] = {}
        self.attachments: Dict[int, List[LegacyAttachment]] = {}
        self.tickets: List[LegacyTicket] = []
        self.spam_bucket_id = 4
        self.calls: List[tuple] = []

    def eligible_tickets(self, after_id: Optional[int] = None) -> List[LegacyTicket]:
        return [t for t in self.tickets if after_id is None or t.id > after_id]

    def ticket_by_mask(self, mask: str) -> Optional[LegacyTicket]:
        return next((t for t in self.tickets if t.mask == mask), None)

    def organization(self, org_id: int) -> Optional[LegacyOrganization]:
        self.calls.append(("organization", org_id))
        return self.organizations.get(org_id)

    def address(self, address_id: int) -> Optional[LegacyAddress]:
        self.calls.append(("address", address_id))
        return self.addresses.get(address_id)

    def messages_for_ticket(self, ticket: LegacyTicket) -> List[LegacyMessage]:
        return list(self.messages.get(ticket.id, []))

    def comments_for_ticket(self, ticket, messages) -> List[LegacyComment]:
        return list(self.comments.get(ticket.id, []))

    def attachments_for_message(self, message: LegacyMessage) -> List[LegacyAttachment]:
        return list(self.attachments.get(message.id, []))


class FakeZendesk:
    def __init__(self) -> None:
        self.organizations: List[dict] = []
        self.users: List[dict] = []
        self.imported: List[dict] = []
        self.calls: List[tuple] = []
        self.fail_create = False
        self.fail_search = False
        self.fail_upload = False
        self.reject_masks: set = set()
        self._next_id = 1000

    def _id(self) -> int:
        self._next_id += 1
        return self._next_id

    def autocomplete_organizations(self, name: str) -> List[dict]:
        self.calls.append(("autocomplete_organizations", name))
        if self.fail_search:
            raise ZendeskError("GET organizations/autocomplete.json returned 500", status=500)
        return [o for o in self.organizations if o["name"].lower().startswith(name.lower())]

    def create_organization(self, name: str) -> dict:
        self.calls.append(("create_organization", name))
        if self.fail_create:
            raise ZendeskError("POST organizations.json returned 422", status=422, body="invalid")
        org = {"id": self._id(), "name": name}
        self.organizations.append(org)
        return org

    def search_users(self, query: str) -> List[dict]:
        self.calls.append(("search_users", query))
        if self.fail_search:
            raise ZendeskError("GET users/search.json returned 500", status=500)
        # fuzzy, like the real thing
        local = query.split("@")[0].lower()
        return [u for u in self.users if local in u["email"].lower()]

    def create_user(self, name: str, email: str) -> dict:
        self.calls.append(("create_user", name, email))
        if self.fail_create:
            raise ZendeskError("POST users.json returned 422", status=422, body="Email is reserved")
        user = {"id": self._id(), "name": name, "email": email}
        self.users.append(user)
        return user

    def upload_attachment(self, path, name: str) -> str:
        self.calls.append(("upload_attachment", str(path), name))
        if self.fail_upload:
            raise ZendeskError("POST uploads.json returned 413", status=413)
        return f"token-{name}"

    def import_ticket(self, ticket: dict) -> int:
        self.calls.append(("import_ticket", ticket["external_id"]))
        if ticket["external_id"] in self.reject_masks:
            raise ZendeskError("POST imports/tickets.json returned 422", status=422,
                               body='{"error":"RecordInvalid"}')
        self.imported.append(ticket)
        return self._id()

    def find_tickets_by_external_id(self, external_id: str) -> List[dict]:
        self.calls.append(("find_tickets_by_external_id", external_id))
        return [t for t in self.imported if t["external_id"] == external_id]

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)


def make_ticket(id: int = 1, mask: str = "ABC-12345-001", **overrides) -> LegacyTicket:
    fields = dict(
        id=id,
        mask=mask,
        subject=f"Ticket {id}",
        org_id=10,
        requester_address_id=20,
        owner_id=3,
        created=1559390400,  # 2019-06-01T12:00:00 UTC
        updated=1559394000,
    )
    fields.update(overrides)
    return LegacyTicket(**fields)


def make_message(id: int, created: int, body: str = "Hello", address_id: int = 20,
                 ticket_id: int = 1) -> LegacyMessage:
    return LegacyMessage(id=id, ticket_id=ticket_id, address_id=address_id, body=body, created=created)


def make_comment(id: int, created: int, body: str = "Internal note", address_id: int = 30,
                 context: str = c2z.CONTEXT_TICKET, context_id: int = 1) -> LegacyComment:
    return LegacyComment(id=id, context=context, context_id=context_id, address_id=address_id,
                         body=body, created=created)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> FakeStore:
    s = FakeStore()
    s.organizations[10] = LegacyOrganization(id=10, name="Acme Networks")
    s.addresses[20] = LegacyAddress(id=20, email="jane@customer.example", first_name="Jane", last_name="Doe")
    s.addresses[30] = LegacyAddress(id=30, email="agent@example.com", first_name="Ann", last_name="Agent")
    return s


@pytest.fixture
def zendesk() -> FakeZendesk:
    return FakeZendesk()


@pytest.fixture
def identities(store, zendesk) -> c2z.IdentityResolver:
    return c2z.IdentityResolver(store, zendesk)


@pytest.fixture
def organizations(store, zendesk) -> c2z.OrganizationResolver:
    return c2z.OrganizationResolver(store, zendesk)


@pytest.fixture
def migrator(store, zendesk, identities, organizations) -> c2z.TicketMigrator:
    return c2z.TicketMigrator(
        store, zendesk,
        organizations=organizations,
        identities=identities,
        owners=c2z.OwnerResolver({3: 777777777}),
        transformer=c2z.CommentTransformer(identities, c2z.AttachmentUploader(store, zendesk, "/nonexistent")),
    )

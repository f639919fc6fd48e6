import json
import time

import cbor2
import jwt
import pytest

from tenantchat.codec import encode_text
from tenantchat.config import ChatRuntimeConfig
from tenantchat.constants import COLL_ADMINS, COLL_CLIENTS, COLL_MEMBERS
from tenantchat.envelope import make_request
from tenantchat.models import Principal, Role
from tenantchat.service import ChatService
from tenantchat.store import MemoryStore

SECRET = "tenantchat-test-secret-0123456789abcdef"

ACME = "650000000000000000000001"
GLOBEX = "650000000000000000000002"

ALICE = "651000000000000000000001"
BOB = "651000000000000000000002"
ADA = "652000000000000000000001"
CARL = "653000000000000000000001"
EVE = "651000000000000000000009"

SEED = {
    ALICE: (COLL_MEMBERS, Role.MEMBER, ACME, "Alice", "Employee"),
    BOB: (COLL_MEMBERS, Role.MEMBER, ACME, "Bob", "Manager"),
    ADA: (COLL_ADMINS, Role.ADMIN, ACME, "Ada", "CEO"),
    CARL: (COLL_CLIENTS, Role.CLIENT, ACME, "Carl", "Client"),
    EVE: (COLL_MEMBERS, Role.MEMBER, GLOBEX, "Eve", "Employee"),
}

TENANT_NAMES = {ACME: "Acme Corp", GLOBEX: "Globex"}


class FakeTransport:
    """Records what the hub sends, decoded back into envelopes."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.fail = False

    async def send_text(self, text: str) -> None:
        if self.fail:
            raise RuntimeError("transport closed")
        self.sent.append(json.loads(text))

    async def send_bytes(self, data: bytes) -> None:
        if self.fail:
            raise RuntimeError("transport closed")
        self.sent.append(cbor2.loads(data))

    def events(self, name: str | None = None) -> list[dict]:
        return [e for e in self.sent if name is None or e["event"] == name]

    def data(self, name: str) -> list:
        return [e.get("data") for e in self.events(name)]

    def clear(self) -> None:
        self.sent.clear()


def principal(pid: str) -> Principal:
    _, role, tenant, name, position = SEED[pid]
    return Principal(
        id=pid,
        tenant_id=tenant,
        role=role,
        display_name=name,
        email=f"{name.lower()}@example.com",
        tenant_name=TENANT_NAMES[tenant],
        position=position,
    )


def make_token(pid: str, *, claim: str = "userId", position: str | None = None, ttl: int = 3600) -> str:
    _, _, tenant, _, default_position = SEED.get(pid, (None, None, ACME, None, "Employee"))
    claims = {
        claim: pid,
        "companyId": tenant,
        "position": position or default_position,
        "exp": int(time.time()) + ttl,
    }
    return jwt.encode(claims, SECRET, algorithm="HS256")


def seeded_store() -> MemoryStore:
    store = MemoryStore()
    for tenant_id, name in TENANT_NAMES.items():
        store.add_tenant(tenant_id, name)
    for pid, (collection, _, tenant, name, position) in SEED.items():
        store.add_principal(
            collection,
            {
                "_id": pid,
                "companyId": tenant,
                "firstName": name,
                "email": f"{name.lower()}@example.com",
                "position": position,
            },
        )
    return store


@pytest.fixture
def config(tmp_path) -> ChatRuntimeConfig:
    return ChatRuntimeConfig(
        data_dir=str(tmp_path),
        jwt_secret=SECRET,
        attachments_dir=str(tmp_path / "attachments"),
    )


@pytest.fixture
def store() -> MemoryStore:
    return seeded_store()


@pytest.fixture
def hub(config, store) -> ChatService:
    return ChatService(config, store=store)


async def connect(hub: ChatService, pid: str):
    transport = FakeTransport()
    conn = await hub.on_connect(principal(pid), transport)
    return conn, transport


async def emit(hub: ChatService, conn, event: str, *args) -> None:
    await hub.on_frame(conn, encode_text(make_request(event, *args)))

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .codec import encode, encode_text
from .models import Principal

if TYPE_CHECKING:
    from .service import ChatService


@dataclass
class _RateState:
    """Token bucket state for rate limiting."""

    tokens: float
    last_refill: float


@dataclass(eq=False)
class Connection:
    """One live transport bound to one principal for its whole lifetime.

    `transport` is anything with async `send_text(str)` and
    `send_bytes(bytes)` (a Starlette WebSocket, or a test double).
    """

    conn_id: str
    principal: Principal
    transport: Any
    groups: set[str] = field(default_factory=set)
    joined: set[str] = field(default_factory=set)
    binary: bool = False
    closed: bool = False

    async def send(self, env: dict) -> int:
        if self.binary:
            payload = encode(env)
            await self.transport.send_bytes(payload)
            return len(payload)
        text = encode_text(env)
        await self.transport.send_text(text)
        return len(text)


class SessionManager:
    """
    Tracks live connections for the chat hub.

    This class is responsible for:
    - Connection registration and teardown
    - Transport groups (which connections receive a room's events)
    - The per-principal index used as each principal's personal channel
    - Rate limiting with a token bucket per connection
    """

    def __init__(self, hub: ChatService) -> None:
        self.hub = hub
        self.log = logging.getLogger("tenantchat.session")
        self.connections: dict[str, Connection] = {}
        self._groups: dict[str, set[str]] = {}  # room id -> conn ids
        self._by_principal: dict[str, set[str]] = {}  # principal id -> conn ids
        self._rate: dict[str, _RateState] = {}

    def register(self, principal: Principal, transport: Any) -> Connection:
        conn = Connection(
            conn_id=secrets.token_hex(8),
            principal=principal,
            transport=transport,
        )
        self.connections[conn.conn_id] = conn
        self._by_principal.setdefault(principal.id, set()).add(conn.conn_id)
        self._rate[conn.conn_id] = _RateState(
            tokens=float(self.hub.config.rate_limit_msgs_per_minute),
            last_refill=time.monotonic(),
        )
        self.log.info(
            "Session created conn_id=%s principal=%s role=%s tenant=%s",
            conn.conn_id,
            principal.id,
            principal.role.value,
            principal.tenant_id,
        )
        return conn

    def unregister(self, conn: Connection) -> Connection | None:
        existing = self.connections.pop(conn.conn_id, None)
        self._rate.pop(conn.conn_id, None)
        if existing is None:
            return None

        existing.closed = True
        for room_id in list(existing.groups):
            self.remove_from_group(existing, room_id)

        ids = self._by_principal.get(existing.principal.id)
        if ids is not None:
            ids.discard(existing.conn_id)
            if not ids:
                self._by_principal.pop(existing.principal.id, None)

        self.log.info(
            "Session closed conn_id=%s principal=%s rooms=%s",
            existing.conn_id,
            existing.principal.id,
            len(existing.joined),
        )
        return existing

    def add_to_group(self, conn: Connection, room_id: str) -> None:
        if conn.closed:
            return
        self._groups.setdefault(room_id, set()).add(conn.conn_id)
        conn.groups.add(room_id)

    def remove_from_group(self, conn: Connection, room_id: str) -> None:
        conn.groups.discard(room_id)
        conn.joined.discard(room_id)
        members = self._groups.get(room_id)
        if members is None:
            return
        members.discard(conn.conn_id)
        if not members:
            self._groups.pop(room_id, None)

    def discard_group(self, room_id: str) -> list[Connection]:
        """Drop a room's transport group; return the connections that were in it."""
        ids = self._groups.pop(room_id, set())
        out: list[Connection] = []
        for cid in ids:
            conn = self.connections.get(cid)
            if conn is None:
                continue
            conn.groups.discard(room_id)
            conn.joined.discard(room_id)
            out.append(conn)
        return out

    def group_members(self, room_id: str) -> list[Connection]:
        return [
            self.connections[cid]
            for cid in sorted(self._groups.get(room_id, ()))
            if cid in self.connections
        ]

    def connections_for(self, principal_id: str) -> list[Connection]:
        return [
            self.connections[cid]
            for cid in sorted(self._by_principal.get(principal_id, ()))
            if cid in self.connections
        ]

    def refill_and_take(self, conn: Connection, cost: float = 1.0) -> bool:
        """
        Token bucket rate limiting.

        Refills tokens based on elapsed time and attempts to take `cost` tokens.
        Returns True if tokens were available and taken, False if rate limited.
        """
        state = self._rate.get(conn.conn_id)
        if state is None:
            return True

        now = time.monotonic()
        per_min = float(max(1, int(self.hub.config.rate_limit_msgs_per_minute)))
        rate_per_s = per_min / 60.0
        elapsed = max(0.0, now - state.last_refill)
        state.tokens = min(per_min, state.tokens + elapsed * rate_per_s)
        state.last_refill = now

        if state.tokens < cost:
            return False

        state.tokens -= cost
        return True

    def clear_all(self) -> list[Connection]:
        conns = list(self.connections.values())
        for conn in conns:
            conn.closed = True
        self.connections.clear()
        self._groups.clear()
        self._by_principal.clear()
        self._rate.clear()
        return conns

    def get_stats(self) -> dict[str, Any]:
        return {
            "total": len(self.connections),
            "principals": len(self._by_principal),
            "groups": len(self._groups),
            "binary": sum(1 for c in self.connections.values() if c.binary),
        }

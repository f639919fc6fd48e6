"""In-memory presence index.

A principal is present in a room while at least one of its connections has
joined that room. Each entry keeps the set of joined connection ids so a
second connection of the same principal keeps it present when the first one
goes away.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from .models import Role, policy_for


@dataclass
class PresenceEntry:
    principal_id: str
    display_name: str
    conn_ids: set[str] = field(default_factory=set)

    def to_wire(self) -> dict[str, str]:
        return {"userId": self.principal_id, "username": self.display_name}


class PresenceTracker:
    def __init__(self) -> None:
        self.log = logging.getLogger("tenantchat.presence")
        self._rooms: dict[str, dict[str, PresenceEntry]] = {}
        self._by_conn: dict[str, set[str]] = {}

    def join(self, room_id: str, principal_id: str, display_name: str, conn_id: str) -> bool:
        """Mark `conn_id` as joined. True if the principal was not present before."""
        members = self._rooms.setdefault(room_id, {})
        entry = members.get(principal_id)
        added = entry is None
        if entry is None:
            entry = PresenceEntry(principal_id, display_name)
            members[principal_id] = entry
        entry.conn_ids.add(conn_id)
        self._by_conn.setdefault(conn_id, set()).add(room_id)
        if added:
            self.log.debug("Present principal=%s room=%s", principal_id, room_id)
        return added

    def leave(self, room_id: str, principal_id: str, conn_id: str | None = None) -> bool:
        """Drop one connection (or all, when `conn_id` is None).

        True if the principal is no longer present in the room.
        """
        members = self._rooms.get(room_id)
        if not members:
            return False
        entry = members.get(principal_id)
        if entry is None:
            return False

        dropped = set(entry.conn_ids) if conn_id is None else {conn_id}
        entry.conn_ids -= dropped
        for cid in dropped:
            rooms = self._by_conn.get(cid)
            if rooms is not None:
                rooms.discard(room_id)
                if not rooms:
                    self._by_conn.pop(cid, None)

        if entry.conn_ids:
            return False

        members.pop(principal_id, None)
        if not members:
            self._rooms.pop(room_id, None)
        self.log.debug("Absent principal=%s room=%s", principal_id, room_id)
        return True

    def drop_connection(self, conn_id: str) -> list[str]:
        """Remove a closed connection everywhere; return rooms whose presence changed."""
        changed: list[str] = []
        for room_id in sorted(self._by_conn.get(conn_id, ())):
            members = self._rooms.get(room_id) or {}
            for principal_id, entry in list(members.items()):
                if conn_id in entry.conn_ids:
                    if self.leave(room_id, principal_id, conn_id):
                        changed.append(room_id)
        self._by_conn.pop(conn_id, None)
        return changed

    def discard_room(self, room_id: str) -> None:
        members = self._rooms.pop(room_id, None) or {}
        for entry in members.values():
            for cid in entry.conn_ids:
                rooms = self._by_conn.get(cid)
                if rooms is not None:
                    rooms.discard(room_id)
                    if not rooms:
                        self._by_conn.pop(cid, None)

    def snapshot(self, room_id: str) -> list[PresenceEntry]:
        return list((self._rooms.get(room_id) or {}).values())

    def count(self, room_id: str) -> int:
        return len(self._rooms.get(room_id) or ())

    def is_present(self, room_id: str, principal_id: str) -> bool:
        return principal_id in (self._rooms.get(room_id) or {})

    def shape_snapshot(self, room_id: str, viewer_role: Role) -> dict[str, Any]:
        """Presence payload for one recipient: identities for staff, a count otherwise."""
        if policy_for(viewer_role).sees_presence_identities:
            return {
                "roomId": room_id,
                "users": [e.to_wire() for e in self.snapshot(room_id)],
            }
        return {"roomId": room_id, "count": self.count(room_id)}

    def get_stats(self) -> dict[str, Any]:
        top_rooms = sorted(
            ((room, len(members)) for room, members in self._rooms.items()),
            key=lambda x: (-x[1], x[0]),
        )[:5]
        return {
            "rooms_present": len(self._rooms),
            "presence_entries": sum(len(m) for m in self._rooms.values()),
            "top_rooms": top_rooms,
        }

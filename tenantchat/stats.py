"""Statistics tracking and reporting for the chat hub."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .service import ChatService


class StatsManager:
    """
    Process-lifetime counters.

    Tracks counters for:
    - Frames and bytes in/out
    - Bad frames and rate limiting
    - Errors sent
    - Room joins, leaves, creations and deletions
    - Messages relayed
    """

    def __init__(self, hub: ChatService) -> None:
        self.hub = hub

        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            "bytes_in": 0,
            "bytes_out": 0,
            "events_in": 0,
            "events_out": 0,
            "events_bad": 0,
            "rate_limited": 0,
            "errors_sent": 0,
            "connections": 0,
            "connections_refused": 0,
            "joins": 0,
            "leaves": 0,
            "msgs_relayed": 0,
            "rooms_created": 0,
            "rooms_deleted": 0,
        }

    def set_start_time(self) -> None:
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        return int(self._counters.get(key, 0))

    def snapshot(self) -> dict[str, Any]:
        started = self.started_monotonic
        uptime_s = (time.monotonic() - started) if started is not None else 0.0
        return {
            "uptime_s": round(uptime_s, 1),
            "counters": dict(self._counters),
            "sessions": self.hub.session_manager.get_stats(),
            "rooms": self.hub.room_directory.get_stats(),
            "presence": self.hub.presence.get_stats(),
        }

    def format_stats(self) -> str:
        """Format current statistics as a human-readable string."""
        from . import __version__

        snap = self.snapshot()
        c = snap["counters"]
        sessions = snap["sessions"]
        rooms = snap["rooms"]
        presence = snap["presence"]
        cfg = self.hub.config

        lines: list[str] = []
        lines.append(f"tenantchat {__version__} stats")
        lines.append(f"uptime_s={snap['uptime_s']:.1f}")
        lines.append(
            f"connections={sessions['total']} principals={sessions['principals']} "
            f"groups={sessions['groups']} binary={sessions['binary']}"
        )
        lines.append(
            f"rooms_cached={rooms['rooms_cached']} "
            f"memberships_cached={rooms['memberships_cached']} "
            f"rooms_present={presence['rooms_present']} "
            f"presence_entries={presence['presence_entries']}"
        )
        if presence["top_rooms"]:
            lines.append(
                "top_rooms=" + ", ".join(f"{r}:{n}" for r, n in presence["top_rooms"])
            )
        lines.append(
            f"limits: rate_limit_msgs_per_minute={cfg.rate_limit_msgs_per_minute} "
            f"max_rooms_per_connection={cfg.max_rooms_per_connection} "
            f"max_room_name_len={cfg.max_room_name_len} "
            f"max_message_chars={cfg.max_message_chars}"
        )
        lines.append(
            "io: events_in={} events_out={} events_bad={} bytes_in={} bytes_out={}".format(
                c.get("events_in", 0),
                c.get("events_out", 0),
                c.get("events_bad", 0),
                c.get("bytes_in", 0),
                c.get("bytes_out", 0),
            )
        )
        lines.append(
            "events: joins={} leaves={} msgs_relayed={} errors_sent={} rate_limited={}".format(
                c.get("joins", 0),
                c.get("leaves", 0),
                c.get("msgs_relayed", 0),
                c.get("errors_sent", 0),
                c.get("rate_limited", 0),
            )
        )
        lines.append(
            "rooms: created={} deleted={} connections: accepted={} refused={}".format(
                c.get("rooms_created", 0),
                c.get("rooms_deleted", 0),
                c.get("connections", 0),
                c.get("connections_refused", 0),
            )
        )
        return "\n".join(lines)

from __future__ import annotations

import time

from .constants import K_ARGS, K_DATA, K_EVENT, K_TS, K_V, PROTOCOL_VERSION


def now_ms() -> int:
    return int(time.time() * 1000)


def make_envelope(event: str, *, data=None, ts: int | None = None) -> dict:
    """Build a server -> client envelope."""
    env: dict[str, object] = {
        K_V: PROTOCOL_VERSION,
        K_EVENT: str(event),
        K_TS: ts or now_ms(),
    }
    if data is not None:
        env[K_DATA] = data
    return env


def make_request(event: str, *args) -> dict:
    """Build a client -> server envelope."""
    return {K_V: PROTOCOL_VERSION, K_EVENT: str(event), K_ARGS: list(args)}


def envelope_args(env: dict) -> list:
    args = env.get(K_ARGS)
    if args is None:
        return []
    return list(args)


def validate_envelope(env: dict) -> None:
    if not isinstance(env, dict):
        raise TypeError("envelope must be a map")

    for k in env.keys():
        if not isinstance(k, str):
            raise TypeError("envelope keys must be strings")

    if K_EVENT not in env:
        raise ValueError(f"missing envelope key {K_EVENT!r}")

    event = env[K_EVENT]
    if not isinstance(event, str):
        raise TypeError("event name must be a string")
    if not event:
        raise ValueError("event name must not be empty")

    if K_V in env:
        v = env[K_V]
        if not isinstance(v, int) or isinstance(v, bool):
            raise TypeError("protocol version must be an integer")
        if v != PROTOCOL_VERSION:
            raise ValueError(f"unsupported version {v}")

    if K_ARGS in env and env[K_ARGS] is not None:
        if not isinstance(env[K_ARGS], list):
            raise TypeError("event arguments must be a list")

    if K_TS in env:
        ts = env[K_TS]
        if not isinstance(ts, int) or isinstance(ts, bool):
            raise TypeError("timestamp must be an integer")
        if ts < 0:
            raise ValueError("timestamp must be unsigned")

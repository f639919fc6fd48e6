from __future__ import annotations

import os
import secrets
import string
import time
from datetime import datetime, timezone

from bson import ObjectId

from .constants import (
    DISPLAY_NAME_MAX_CHARS,
    ROOM_ID_RANDOM_CHARS,
    ROOM_PREFIX,
    TENANT_ROOM_PREFIX,
)
from .errors import ValidationError

_ROOM_ID_ALPHABET = string.ascii_lowercase + string.digits


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat().replace("+00:00", "Z")


def new_object_id() -> str:
    return str(ObjectId())


def is_valid_object_id(value) -> bool:
    return isinstance(value, str) and ObjectId.is_valid(value)


def new_room_id(now_ms: int | None = None) -> str:
    ms = now_ms if now_ms is not None else int(time.time() * 1000)
    suffix = "".join(
        secrets.choice(_ROOM_ID_ALPHABET) for _ in range(ROOM_ID_RANDOM_CHARS)
    )
    return f"{ROOM_PREFIX}{ms}_{suffix}"


def tenant_room_id(tenant_id: str) -> str:
    return f"{TENANT_ROOM_PREFIX}{tenant_id}"


def tenant_of_room(room_id: str) -> str | None:
    """Return the tenant id encoded in an implicit tenant room id."""
    if not isinstance(room_id, str) or not room_id.startswith(TENANT_ROOM_PREFIX):
        return None
    tenant_id = room_id[len(TENANT_ROOM_PREFIX) :]
    return tenant_id or None


def is_explicit_room_id(room_id) -> bool:
    return isinstance(room_id, str) and room_id.startswith(ROOM_PREFIX)


def normalize_display_name(value, *, max_chars: int = DISPLAY_NAME_MAX_CHARS) -> str | None:
    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s:
        return None

    if max_chars > 0 and len(s) > int(max_chars):
        s = s[: int(max_chars)].rstrip()

    # Names end up in client UIs and log lines.
    if "\n" in s or "\r" in s or "\x00" in s:
        return None

    return s


def normalize_room_name(value, *, max_chars: int) -> str:
    if not isinstance(value, str):
        raise ValidationError("Invalid room name or users.")
    s = value.strip()
    if not s:
        raise ValidationError("Invalid room name or users.")
    if max_chars > 0 and len(s) > int(max_chars):
        raise ValidationError("Room name too long.")
    if "\n" in s or "\r" in s or "\x00" in s:
        raise ValidationError("Invalid room name or users.")
    return s


def require_room_id(value) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("Room ID is required and must be a non-empty string")
    return value.strip()

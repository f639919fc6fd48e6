"""Attachment collaborator: bytes for file and voice messages.

Objects are addressed by a key `<namespace>/<roomId>/<name>`; purging a
room's namespace removes every object under `<namespace>/<roomId>/`.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import secrets
import shutil
import time
from abc import ABC, abstractmethod
from pathlib import Path

from .config import ChatRuntimeConfig
from .constants import ATTACHMENT_NAMESPACES, NS_VOICE
from .errors import DependencyFailure, NotFound, ValidationError
from .models import Attachment

_SAFE_SEGMENT = re.compile(r"^[A-Za-z0-9_.-]+$")

UPLOAD_CHUNK_BYTES = 64 * 1024


def file_extension(filename: str) -> str:
    _, ext = os.path.splitext(filename or "")
    return ext.lstrip(".").lower()


def upload_limit(config: ChatRuntimeConfig, namespace: str) -> tuple[int, str]:
    if namespace == NS_VOICE:
        return int(config.max_voice_bytes), "Voice file is too large."
    return int(config.max_file_bytes), "File is too large."


async def read_upload(upload, limit: int, too_large: str) -> bytes:
    """Read `upload` in chunks, refusing it as soon as it passes `limit` bytes.

    `upload` is anything with an async `read(n)` and an optional `size`
    (a Starlette `UploadFile`).
    """
    size = getattr(upload, "size", None)
    if size is not None and size > limit:
        raise ValidationError(too_large)

    chunks: list[bytes] = []
    total = 0
    while True:
        chunk = await upload.read(UPLOAD_CHUNK_BYTES)
        if not chunk:
            break
        total += len(chunk)
        if total > limit:
            raise ValidationError(too_large)
        chunks.append(chunk)
    return b"".join(chunks)


def check_upload(
    config: ChatRuntimeConfig,
    namespace: str,
    *,
    filename: str,
    mime: str | None,
    size: int,
) -> None:
    """Refuse uploads with a wrong type or size for their namespace."""
    if namespace not in ATTACHMENT_NAMESPACES:
        raise ValidationError(f"unknown attachment namespace {namespace!r}")
    if not filename:
        raise ValidationError("No file uploaded.")
    if size <= 0:
        raise ValidationError("Uploaded file is empty.")

    ext = file_extension(filename)
    if namespace == NS_VOICE:
        if ext not in config.voice_extensions:
            raise ValidationError("Only audio files are allowed!")
        if (mime or "").split(";")[0].strip().lower() not in config.voice_mime_types:
            raise ValidationError("Only audio files are allowed!")
    elif ext not in config.file_extensions:
        raise ValidationError("Only images and documents are allowed!")

    limit, too_large = upload_limit(config, namespace)
    if size > limit:
        raise ValidationError(too_large)


class AttachmentStore(ABC):
    @abstractmethod
    async def put(
        self, namespace: str, room_id: str, filename: str, data: bytes, mime: str
    ) -> Attachment: ...

    @abstractmethod
    async def get(self, key: str) -> bytes: ...

    @abstractmethod
    async def delete(self, key: str) -> bool: ...

    @abstractmethod
    async def purge_room_attachments(self, room_id: str, namespace: str) -> int:
        """Delete every object of `namespace` tied to `room_id`; return the count."""


class FileAttachmentStore(AttachmentStore):
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.log = logging.getLogger("tenantchat.attachments")

    def _segment(self, value: str) -> str:
        if not isinstance(value, str) or not _SAFE_SEGMENT.match(value) or value in (".", ".."):
            raise ValidationError("invalid attachment path")
        return value

    def _path_for(self, key: str) -> Path:
        parts = key.split("/") if isinstance(key, str) else []
        if len(parts) != 3 or parts[0] not in ATTACHMENT_NAMESPACES:
            raise NotFound("File not found")
        for p in parts:
            self._segment(p)
        return self.root.joinpath(*parts)

    def _room_dir(self, namespace: str, room_id: str) -> Path:
        if namespace not in ATTACHMENT_NAMESPACES:
            raise ValidationError(f"unknown attachment namespace {namespace!r}")
        return self.root / namespace / self._segment(room_id)

    async def put(
        self, namespace: str, room_id: str, filename: str, data: bytes, mime: str
    ) -> Attachment:
        ext = file_extension(filename)
        name = f"{namespace}-{int(time.time() * 1000)}-{secrets.token_hex(4)}"
        if ext and _SAFE_SEGMENT.match(ext):
            name = f"{name}.{ext}"
        room_dir = self._room_dir(namespace, room_id)
        path = room_dir / name

        def _write() -> None:
            room_dir.mkdir(parents=True, exist_ok=True)
            with open(path, "wb") as f:
                f.write(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            self.log.warning("Attachment write failed path=%s: %s", path, e, exc_info=True)
            raise DependencyFailure("Failed to store attachment") from e

        key = f"{namespace}/{room_id}/{name}"
        self.log.debug("Stored attachment key=%s bytes=%s", key, len(data))
        return Attachment(
            kind=namespace,
            key=key,
            name=os.path.basename(filename),
            mime=mime or "application/octet-stream",
            size=len(data),
        )

    async def get(self, key: str) -> bytes:
        path = self._path_for(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise NotFound("File not found") from e
        except OSError as e:
            self.log.warning("Attachment read failed key=%s: %s", key, e)
            raise DependencyFailure("Failed to read attachment") from e

    async def delete(self, key: str) -> bool:
        path = self._path_for(key)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            return False
        except OSError as e:
            self.log.warning("Attachment delete failed key=%s: %s", key, e)
            raise DependencyFailure("Failed to delete attachment") from e
        return True

    async def purge_room_attachments(self, room_id: str, namespace: str) -> int:
        room_dir = self._room_dir(namespace, room_id)

        def _purge() -> int:
            if not room_dir.is_dir():
                return 0
            count = sum(1 for p in room_dir.iterdir() if p.is_file())
            shutil.rmtree(room_dir)
            return count

        try:
            count = await asyncio.to_thread(_purge)
        except OSError as e:
            self.log.warning(
                "Attachment purge failed room=%s ns=%s: %s", room_id, namespace, e
            )
            raise DependencyFailure(f"Failed to purge {namespace} attachments") from e
        self.log.info("Purged attachments room=%s ns=%s count=%s", room_id, namespace, count)
        return count

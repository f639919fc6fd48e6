"""Process-wide logging setup for the chat server.

Every component logs through a named `tenantchat.*` logger; this module only
decides where those records go. uvicorn, pymongo and the multipart parser are
kept at their own level so request noise does not drown hub events.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from .config import ChatRuntimeConfig

DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

LIBRARY_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "pymongo", "multipart")


def _level(value: Any, default: int) -> int:
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    name = str(value).strip().upper()
    if not name:
        return default
    if name == "WARN":
        name = "WARNING"
    if name.isdigit():
        return int(name)
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else default


def _blank_to_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


def _file_handler(path: str) -> logging.Handler:
    p = Path(os.path.expanduser(path))
    p.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(p, encoding="utf-8")
    # Log lines carry principal and room ids.
    try:
        os.chmod(p, 0o600)
    except OSError:
        pass
    return handler


def configure_logging(
    cfg: ChatRuntimeConfig,
    *,
    override_level: str | None = None,
    override_file: str | None = None,
) -> None:
    """Install console and file handlers on the root logger.

    CLI overrides win over the config. Calling this again replaces the
    handlers installed by the previous call.
    """
    log_file = _blank_to_none(override_file if override_file is not None else cfg.log_file)

    handlers: list[logging.Handler] = []
    if cfg.log_console:
        handlers.append(logging.StreamHandler())
    if log_file:
        handlers.append(_file_handler(log_file))

    formatter = logging.Formatter(
        fmt=_blank_to_none(cfg.log_format) or DEFAULT_FORMAT,
        datefmt=_blank_to_none(cfg.log_datefmt),
    )

    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(_level(override_level or cfg.log_level, logging.INFO))

    lib_level = _level(cfg.log_lib_level, logging.WARNING)
    for name in LIBRARY_LOGGERS:
        lib = logging.getLogger(name)
        lib.handlers.clear()
        lib.setLevel(lib_level)
        lib.propagate = True

    logging.captureWarnings(True)

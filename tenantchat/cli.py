from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace
from pathlib import Path

from .config import ChatRuntimeConfig, apply_config_data, apply_environment, load_toml
from .logging_config import configure_logging
from .paths import default_attachments_dir, default_config_path, ensure_private_dir


def _write_default_config(config_path: str) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))

    attachments_dir = str(default_attachments_dir(cfg_dir or None))

    content = f"""# tenantchat configuration (TOML)
#
# This file was created on first run.
# Edit it, then start tenantchat again.

[chat]

# Listen address for the HTTP and WebSocket server.
host = "127.0.0.1"
port = 8080

# Browser origins allowed by CORS. Leave empty to disable the CORS middleware.
allowed_origins = []

# MongoDB connection. Leave mongo_uri empty to keep everything in memory
# (development only; nothing survives a restart).
# TENANTCHAT_MONGO_URI (or MONGO_URI) in the environment overrides this.
mongo_uri = ""
mongo_db = "tm"

# Secret used to verify bearer tokens (HS256 by default).
# TENANTCHAT_JWT_SECRET (or JWT_SECRET) in the environment overrides this.
jwt_secret = ""
jwt_algorithms = ["HS256"]

# Token `position` values that may use the chat.
allowed_positions = ["Employee", "CEO", "Manager", "HR", "Client", "TeamLeader"]

# Where uploaded files and voice clips are stored.
attachments_dir = {attachments_dir!r}

# Upload limits.
max_file_bytes = {6 * 1024 * 1024}
max_voice_bytes = {10 * 1024 * 1024}
file_extensions = ["jpeg", "jpg", "png", "pdf", "doc", "docx"]
voice_extensions = ["mp3", "wav", "ogg", "webm"]
voice_mime_types = ["audio/mpeg", "audio/wav", "audio/ogg", "audio/webm"]

# Limits.
max_room_name_len = 64
max_message_chars = 4000
max_rooms_per_connection = 256
rate_limit_msgs_per_minute = 240

[logging]

# Log level for tenantchat itself.
level = "INFO"

# Log level for uvicorn, pymongo and multipart.
lib_level = "WARNING"

# Log to stderr (systemd/journald friendly).
console = true

# Optional file path for logs (leave empty to disable).
file = ""

# Log format and optional date format.
format = "%(asctime)s %(levelname)s %(name)s: %(message)s"
datefmt = ""
"""

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(content)
    try:
        os.chmod(config_path, 0o600)
    except OSError:
        pass


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="tenantchat", description="Run the multi-tenant chat server"
    )

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--host", default=None, help="Listen address")
    p.add_argument("--port", type=int, default=None, help="Listen port")
    p.add_argument("--mongo-uri", default=None, help="MongoDB connection URI")
    p.add_argument("--mongo-db", default=None, help="MongoDB database name")
    p.add_argument(
        "--attachments-dir", default=None, help="Directory for uploaded attachments"
    )

    p.add_argument(
        "--max-rooms", type=int, default=None, help="Max rooms per connection"
    )
    p.add_argument(
        "--max-room-name-len", type=int, default=None, help="Max room name length"
    )
    p.add_argument(
        "--rate-limit-msgs-per-minute",
        type=int,
        default=None,
        help="Per-connection event rate limit",
    )

    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )

    return p


def build_config(args: argparse.Namespace) -> ChatRuntimeConfig:
    config_path = str(args.config)
    cfg = ChatRuntimeConfig(config_path=config_path, data_dir=os.path.dirname(config_path) or None)
    if config_path and os.path.exists(config_path):
        cfg = apply_config_data(cfg, load_toml(config_path))
    cfg = apply_environment(cfg)

    if args.host is not None:
        cfg = replace(cfg, host=str(args.host))
    if args.port is not None:
        cfg = replace(cfg, port=int(args.port))
    if args.mongo_uri is not None:
        cfg = replace(cfg, mongo_uri=str(args.mongo_uri) or None)
    if args.mongo_db is not None:
        cfg = replace(cfg, mongo_db=str(args.mongo_db))
    if args.attachments_dir is not None:
        cfg = replace(cfg, attachments_dir=str(args.attachments_dir) or None)

    if args.max_rooms is not None:
        cfg = replace(cfg, max_rooms_per_connection=int(args.max_rooms))
    if args.max_room_name_len is not None:
        cfg = replace(cfg, max_room_name_len=int(args.max_room_name_len))
    if args.rate_limit_msgs_per_minute is not None:
        cfg = replace(
            cfg, rate_limit_msgs_per_minute=int(args.rate_limit_msgs_per_minute)
        )

    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)

    return cfg


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = str(args.config)
    if not os.path.exists(config_path):
        _write_default_config(config_path)
        print(
            "Created default tenantchat config. Edit it before starting:\n"
            f"- Config: {config_path}\n"
            "\nThen re-run tenantchat.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = build_config(args)
    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    if not cfg.jwt_secret:
        print(
            "jwt_secret is not set. Set it in the config file or TENANTCHAT_JWT_SECRET.",
            file=sys.stderr,
        )
        raise SystemExit(2)

    import uvicorn

    from .web import create_app

    app = create_app(cfg)
    # Logging is configured above; keep uvicorn from installing its own.
    uvicorn.run(app, host=cfg.host, port=int(cfg.port), log_config=None)


if __name__ == "__main__":
    main()

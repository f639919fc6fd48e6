from __future__ import annotations

import os
from dataclasses import asdict, dataclass, replace


@dataclass(frozen=True)
class ChatRuntimeConfig:
    config_path: str | None = None
    data_dir: str | None = None
    host: str = "127.0.0.1"
    port: int = 8080
    allowed_origins: tuple[str, ...] = ()
    mongo_uri: str | None = None
    mongo_db: str = "tm"
    jwt_secret: str | None = None
    jwt_algorithms: tuple[str, ...] = ("HS256",)
    allowed_positions: tuple[str, ...] = (
        "Employee",
        "CEO",
        "Manager",
        "HR",
        "Client",
        "TeamLeader",
    )
    attachments_dir: str | None = None
    max_file_bytes: int = 6 * 1024 * 1024  # 6 MiB
    max_voice_bytes: int = 10 * 1024 * 1024  # 10 MiB
    file_extensions: tuple[str, ...] = ("jpeg", "jpg", "png", "pdf", "doc", "docx")
    voice_extensions: tuple[str, ...] = ("mp3", "wav", "ogg", "webm")
    voice_mime_types: tuple[str, ...] = (
        "audio/mpeg",
        "audio/wav",
        "audio/ogg",
        "audio/webm",
    )
    max_room_name_len: int = 64
    max_message_chars: int = 4000
    max_rooms_per_connection: int = 256
    rate_limit_msgs_per_minute: int = 240
    log_level: str = "INFO"
    log_lib_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    log_datefmt: str | None = None


_TUPLE_KEYS = (
    "allowed_origins",
    "jwt_algorithms",
    "allowed_positions",
    "file_extensions",
    "voice_extensions",
    "voice_mime_types",
)

_OPTIONAL_STR_KEYS = (
    "data_dir",
    "mongo_uri",
    "jwt_secret",
    "attachments_dir",
    "log_file",
    "log_datefmt",
)


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data if isinstance(data, dict) else {}


def apply_config_data(base: ChatRuntimeConfig, data: dict) -> ChatRuntimeConfig:
    chat = data.get("chat") if isinstance(data, dict) else None
    if isinstance(chat, dict):
        data = {**data, **chat}

    log_table = data.get("logging") if isinstance(data, dict) else None
    if isinstance(log_table, dict):
        mapped: dict[str, object] = {}
        if "level" in log_table:
            mapped["log_level"] = log_table.get("level")
        if "lib_level" in log_table:
            mapped["log_lib_level"] = log_table.get("lib_level")
        if "console" in log_table:
            mapped["log_console"] = log_table.get("console")
        if "file" in log_table:
            mapped["log_file"] = log_table.get("file")
        if "format" in log_table:
            mapped["log_format"] = log_table.get("format")
        if "datefmt" in log_table:
            mapped["log_datefmt"] = log_table.get("datefmt")
        data = {**data, **mapped}

    allowed = set(asdict(base).keys())
    # This identifies where the config came from; do not let the file override it.
    allowed.discard("config_path")

    updates = {k: v for k, v in data.items() if k in allowed}

    for list_key in _TUPLE_KEYS:
        if list_key in updates and isinstance(updates[list_key], list):
            updates[list_key] = tuple(str(x) for x in updates[list_key])

    for opt_key in _OPTIONAL_STR_KEYS:
        if opt_key in updates and updates[opt_key] == "":
            updates[opt_key] = None

    if "port" in updates:
        updates["port"] = int(updates["port"])

    return replace(base, **updates) if updates else base


def apply_environment(cfg: ChatRuntimeConfig, environ=None) -> ChatRuntimeConfig:
    """Secrets may come from the environment instead of the config file."""
    env = os.environ if environ is None else environ
    updates: dict[str, object] = {}
    secret = env.get("TENANTCHAT_JWT_SECRET") or env.get("JWT_SECRET")
    if secret:
        updates["jwt_secret"] = secret
    mongo_uri = env.get("TENANTCHAT_MONGO_URI") or env.get("MONGO_URI")
    if mongo_uri:
        updates["mongo_uri"] = mongo_uri
    return replace(cfg, **updates) if updates else cfg

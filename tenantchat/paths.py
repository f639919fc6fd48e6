from __future__ import annotations

import os
from pathlib import Path


def default_tenantchat_dir() -> Path:
    override = os.environ.get("TENANTCHAT_HOME")
    if override:
        return Path(override)
    return Path.home() / ".tenantchat"


def default_config_path() -> Path:
    return default_tenantchat_dir() / "tenantchat.toml"


def default_attachments_dir(data_dir: str | None = None) -> Path:
    base = Path(data_dir) if data_dir else default_tenantchat_dir()
    return base / "attachments"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    try:
        # Best-effort tightening; may fail on some filesystems.
        os.chmod(path, 0o700)
    except OSError:
        pass

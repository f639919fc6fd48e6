import logging
import stat

from tenantchat.config import ChatRuntimeConfig
from tenantchat.logging_config import configure_logging


def _reset_root() -> None:
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()


def test_file_logging_with_overrides(tmp_path) -> None:
    log_path = tmp_path / "logs" / "chat.log"
    cfg = ChatRuntimeConfig(log_console=False, log_level="INFO", log_lib_level="error")
    try:
        configure_logging(cfg, override_level="debug", override_file=str(log_path))
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert [type(h) for h in root.handlers] == [logging.FileHandler]
        assert logging.getLogger("pymongo").level == logging.ERROR

        logging.getLogger("tenantchat.hub").debug("JOIN principal=%s", "p1")
        root.handlers[0].flush()
        assert "tenantchat.hub: JOIN principal=p1" in log_path.read_text(encoding="utf-8")
        assert stat.S_IMODE(log_path.stat().st_mode) == 0o600
    finally:
        _reset_root()


def test_reconfiguring_replaces_handlers_and_ignores_bad_levels() -> None:
    cfg = ChatRuntimeConfig(log_console=True, log_level="nonsense", log_lib_level="WARN")
    try:
        configure_logging(cfg)
        configure_logging(cfg, override_file="")
        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert root.level == logging.INFO
        assert logging.getLogger("uvicorn.access").level == logging.WARNING
    finally:
        _reset_root()

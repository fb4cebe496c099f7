import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, MutableMapping, Tuple

from flask import g, has_request_context

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3

# C0 and C1 control characters, rendered as visible escapes.
_ESCAPES = {code: f"\\x{code:02x}" for code in (*range(0x20), *range(0x7F, 0xA0))}
_ESCAPES[ord("\n")] = "\\n"
_ESCAPES[ord("\r")] = "\\r"


def sanitize_log_value(value: Any) -> Any:
    """Escape control characters so user input cannot forge log lines."""

    if not isinstance(value, str):
        return value
    return value.translate(_ESCAPES)


class RequestAwareLogger(logging.LoggerAdapter):
    """Prefix messages with ``request_id=...`` while a request is active."""

    def __init__(self, logger: logging.Logger) -> None:
        super().__init__(logger, {})

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> Tuple[Any, MutableMapping[str, Any]]:
        request_id = getattr(g, "request_id", None) if has_request_context() else None
        if request_id:
            msg = f"request_id={sanitize_log_value(request_id)} {msg}"
        return msg, kwargs


def configure_logging(level_name: str, logs_dir: Path) -> Path:
    """Configure root logging and attach a rotating file handler.

    Calling this more than once for the same directory reuses the existing
    handler instead of stacking duplicates.
    """

    numeric_level = getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level, format=LOG_FORMAT)

    logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = logs_dir / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter(LOG_FORMAT)

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    logging.getLogger("sharehost").setLevel(numeric_level)
    return log_path

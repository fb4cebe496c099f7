import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

BYTES_PER_MB = 1024 * 1024

DEFAULT_PORT = 3000
DEFAULT_MAX_FILE_SIZE_MB = 64
DEFAULT_MAX_TEMP_FILE_SIZE_MB = 128
DEFAULT_MAX_TTL_HOURS = 168
DEFAULT_CLEANUP_PERIOD_HOURS = 1
DEFAULT_UPLOAD_RATE_LIMIT = "60 per minute"
DEFAULT_QRCODE_RATE_LIMIT = "120 per minute"

logger = logging.getLogger("sharehost.config")


def _resolve_env_path(environ: Mapping[str, str], env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


def _safe_int_env(
    environ: Mapping[str, str], key: str, default: int, min_value: int = 1
) -> int:
    """Safely parse integer environment variable with error handling."""
    raw_value = environ.get(key)
    if raw_value is None or raw_value.strip() == "":
        return default
    try:
        parsed = int(raw_value)
    except (TypeError, ValueError):
        logger.warning(
            "Invalid value for %s: %s. Using default: %d", key, raw_value, default
        )
        return default
    if parsed < min_value:
        logger.warning(
            "Value for %s below minimum %d: %s. Using default: %d",
            key,
            min_value,
            raw_value,
            default,
        )
        return default
    return parsed


def _get_bool_env(environ: Mapping[str, str], key: str, default: bool) -> bool:
    raw_value = environ.get(key)
    if raw_value is None:
        return default
    normalized = raw_value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    logger.warning("Invalid boolean for %s: %s. Using default: %s", key, raw_value, default)
    return default


@dataclass
class Settings:
    """Runtime configuration for the share service."""

    port: int = DEFAULT_PORT
    base_url: str = f"http://localhost:{DEFAULT_PORT}"
    uploads_dir: Path = field(default_factory=lambda: Path("uploads").resolve())
    database_path: Path = field(default_factory=lambda: Path("database.db").resolve())
    logs_dir: Path = field(default_factory=lambda: Path("logs").resolve())
    legacy_keys_file: Path = field(default_factory=lambda: Path("keys").resolve())
    should_redirect: bool = True
    serve_uploads: bool = True
    max_file_size_mb: int = DEFAULT_MAX_FILE_SIZE_MB
    max_temp_file_size_mb: int = DEFAULT_MAX_TEMP_FILE_SIZE_MB
    max_ttl_hours: int = DEFAULT_MAX_TTL_HOURS
    cleanup_period_hours: int = DEFAULT_CLEANUP_PERIOD_HOURS
    init_cleanup: bool = True
    log_level: str = "INFO"
    upload_rate_limit: str = DEFAULT_UPLOAD_RATE_LIMIT
    qrcode_rate_limit: str = DEFAULT_QRCODE_RATE_LIMIT
    ratelimit_storage_uri: str = "memory://"

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * BYTES_PER_MB

    @property
    def max_temp_file_size_bytes(self) -> int:
        return self.max_temp_file_size_mb * BYTES_PER_MB

    def size_limit(self, temporary: bool) -> int:
        """Return the upload size limit in bytes for a permanent or temporary upload."""
        return self.max_temp_file_size_bytes if temporary else self.max_file_size_bytes

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        environ = os.environ if environ is None else environ
        cwd = Path.cwd()

        port = _safe_int_env(environ, "PORT", DEFAULT_PORT)
        base_url = (environ.get("BASE_URL") or f"http://localhost:{port}").rstrip("/")

        log_level = (environ.get("LOG_LEVEL") or "INFO").upper()
        if not isinstance(getattr(logging, log_level, None), int):
            logger.warning("Invalid LOG_LEVEL %s. Using INFO", log_level)
            log_level = "INFO"

        return cls(
            port=port,
            base_url=base_url,
            uploads_dir=_resolve_env_path(environ, "UPLOADS_DIRECTORY", cwd / "uploads"),
            database_path=_resolve_env_path(environ, "DATABASE_PATH", cwd / "database.db"),
            logs_dir=_resolve_env_path(environ, "LOGS_DIRECTORY", cwd / "logs"),
            legacy_keys_file=_resolve_env_path(environ, "LEGACY_KEYS_FILE", cwd / "keys"),
            should_redirect=_get_bool_env(environ, "SHOULD_REDIRECT", True),
            serve_uploads=_get_bool_env(environ, "SERVE_UPLOADS", True),
            max_file_size_mb=_safe_int_env(
                environ, "MAX_FILE_SIZE", DEFAULT_MAX_FILE_SIZE_MB
            ),
            max_temp_file_size_mb=_safe_int_env(
                environ, "MAX_TEMP_FILE_SIZE", DEFAULT_MAX_TEMP_FILE_SIZE_MB
            ),
            max_ttl_hours=_safe_int_env(environ, "MAX_TTL_HOURS", DEFAULT_MAX_TTL_HOURS),
            cleanup_period_hours=_safe_int_env(
                environ, "CLEANUP_PERIOD", DEFAULT_CLEANUP_PERIOD_HOURS
            ),
            init_cleanup=_get_bool_env(environ, "INIT_CLEANUP", True),
            log_level=log_level,
            upload_rate_limit=environ.get("UPLOAD_RATE_LIMIT") or DEFAULT_UPLOAD_RATE_LIMIT,
            qrcode_rate_limit=environ.get("QRCODE_RATE_LIMIT") or DEFAULT_QRCODE_RATE_LIMIT,
            ratelimit_storage_uri=environ.get("RATELIMIT_STORAGE_URI") or "memory://",
        )

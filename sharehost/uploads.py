import logging
import math
import os
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from .context import ShareContext
from .errors import (
    BadRequest,
    FileCreateError,
    KeyCollisionError,
    PayloadTooLarge,
    Unauthorized,
    UserNotFoundError,
)
from .logs import RequestAwareLogger, sanitize_log_value
from .storage import (
    CHUNK_SIZE_BYTES,
    StoredFile,
    add_file,
    db_now,
    discard_quietly,
    get_active_user_by_key,
    isoformat_utc,
    key_is_valid,
)

KEY_ATTEMPTS = 5
MIN_TTL_HOURS = 1

lifecycle_logger = RequestAwareLogger(logging.getLogger("sharehost.lifecycle"))


@dataclass(frozen=True)
class UploadResult:
    file: StoredFile
    url: str

    def to_payload(self) -> dict:
        return {
            "key": self.file.key,
            "url": self.url,
            "filename": self.file.filename,
            "size": self.file.size,
            "is_temp": self.file.is_temp,
            "expires_at": isoformat_utc(self.file.expires_at)
            if self.file.expires_at is not None
            else None,
        }


def parse_ttl(raw: Optional[str], max_hours: int) -> Optional[float]:
    """Validate a TTL in hours. ``None`` or blank means a permanent upload."""

    if raw is None or str(raw).strip() == "":
        return None
    try:
        hours = float(str(raw).strip())
    except ValueError as error:
        raise BadRequest("ttl must be a number of hours") from error
    if math.isnan(hours) or math.isinf(hours):
        raise BadRequest("ttl must be a finite number of hours")
    if not MIN_TTL_HOURS <= hours <= max_hours:
        raise BadRequest(f"ttl must be between {MIN_TTL_HOURS} and {max_hours} hours")
    return hours


def _stage(upload: FileStorage, staged: Path, limit: int) -> int:
    """Stream *upload* into *staged*; raise PayloadTooLarge past *limit* bytes."""

    written = 0
    old_umask = os.umask(0o077)
    try:
        with staged.open("wb") as destination:
            while True:
                chunk = upload.stream.read(CHUNK_SIZE_BYTES)
                if not chunk:
                    break
                if written + len(chunk) > limit:
                    raise PayloadTooLarge()
                destination.write(chunk)
                written += len(chunk)
    finally:
        os.umask(old_umask)
    return written


def authorize_upload(context: ShareContext, access_key: Optional[str]) -> None:
    """Raise Unauthorized unless *access_key* belongs to a live user."""

    with context.db.connect() as conn:
        if not key_is_valid(conn, access_key):
            lifecycle_logger.warning("upload_rejected reason=invalid_key")
            raise Unauthorized()


def store_upload(
    context: ShareContext,
    access_key: Optional[str],
    upload: Optional[FileStorage],
    ttl_raw: Optional[str] = None,
) -> UploadResult:
    """Authorize, validate and persist one uploaded file.

    The body is staged to disk first, so the metadata row is only inserted
    for a fully received payload. The staged blob is moved into place before
    the transaction commits and removed again if anything fails.
    """

    settings = context.settings
    authorize_upload(context, access_key)

    if upload is None or not upload.filename:
        lifecycle_logger.warning("upload_rejected reason=no_file_part")
        raise BadRequest("No file uploaded")

    ttl_hours = parse_ttl(ttl_raw, settings.max_ttl_hours)
    temporary = ttl_hours is not None
    limit = settings.size_limit(temporary)

    original_name = secure_filename(upload.filename) or ""
    extension = os.path.splitext(original_name)[1]

    staged = context.blobs.open_staging()
    promoted: Optional[Path] = None
    try:
        size = _stage(upload, staged, limit)

        with context.db.transaction() as conn:
            user = get_active_user_by_key(conn, access_key)
            if user is None:
                raise UserNotFoundError(sanitize_log_value(access_key.split("_", 1)[0]))

            expires_at = db_now(conn) + ttl_hours * 3600 if temporary else None
            stored = None
            for attempt in range(KEY_ATTEMPTS):
                try:
                    stored = add_file(
                        conn,
                        user.id,
                        extension,
                        size,
                        expires_at,
                        original_name=original_name,
                    )
                    break
                except KeyCollisionError:
                    lifecycle_logger.warning(
                        "upload_key_collision attempt=%d user_id=%d", attempt + 1, user.id
                    )
            if stored is None:
                raise FileCreateError(f"no free key after {KEY_ATTEMPTS} attempts")

            try:
                promoted = context.blobs.promote(staged, stored.filename, temporary)
            except OSError as error:
                raise FileCreateError(f"failed to write blob: {error}") from error
    except PayloadTooLarge:
        lifecycle_logger.warning(
            "upload_rejected reason=too_large filename=%s limit=%d temporary=%s",
            sanitize_log_value(original_name),
            limit,
            temporary,
        )
        discard_quietly(staged)
        raise
    except (FileCreateError, UserNotFoundError):
        lifecycle_logger.exception(
            "file_upload_failed filename=%s", sanitize_log_value(original_name)
        )
        discard_quietly(staged)
        discard_quietly(promoted)
        raise
    except (OSError, sqlite3.Error) as error:
        lifecycle_logger.exception(
            "file_upload_failed filename=%s", sanitize_log_value(original_name)
        )
        discard_quietly(staged)
        discard_quietly(promoted)
        raise FileCreateError(str(error)) from error

    lifecycle_logger.info(
        "file_uploaded key=%s filename=%s owner_id=%d size=%d ttl_hours=%s",
        stored.key,
        stored.filename,
        stored.owner_id,
        stored.size,
        ttl_hours,
    )
    return UploadResult(file=stored, url=context.share_url(stored.key))

"""Startup bootstrap: the fallback account plus migration of pre-database data.

Older deployments kept access keys in a plaintext ``keys`` file and stored
uploads as ``<publicKey><ext>`` directly in the uploads directory. Both are
imported into the database on startup; already-imported entries are skipped,
so running it repeatedly is harmless.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List

from .cleanup import FALLBACK_USER
from .context import ShareContext
from .errors import KeyCollisionError, ShareError
from .storage import (
    User,
    add_file_with_key,
    create_user,
    get_file,
    get_user,
    get_user_by_key,
)

logger = logging.getLogger("sharehost.migrate")

# Files stored under a generated name are ``<uuid4><ext>``; the stem is 36 chars.
UUID_STEM_LENGTH = 36


@dataclass
class MigrationReport:
    users_migrated: int = 0
    files_migrated: int = 0
    failures: int = 0


def ensure_fallback_user(context: ShareContext) -> User:
    with context.db.transaction() as conn:
        existing = get_user(conn, FALLBACK_USER)
        if existing is not None:
            return existing
        logger.info("fallback_user_creating name=%s", FALLBACK_USER)
        user = create_user(conn, FALLBACK_USER)
    logger.info("fallback_user_created name=%s user_id=%d", user.name, user.id)
    return user


def read_legacy_keys(path: Path) -> List[str]:
    if not path.is_file():
        return []
    lines = path.read_text(encoding="utf-8").splitlines()
    return [line.strip() for line in lines if line.strip()]


def migrate_legacy_keys(context: ShareContext, report: MigrationReport) -> None:
    keys = read_legacy_keys(context.settings.legacy_keys_file)
    if not keys:
        return

    logger.warning(
        "legacy_keys_found path=%s count=%d", context.settings.legacy_keys_file, len(keys)
    )
    for key in keys:
        name = key.split("_", 1)[0]
        if not name:
            logger.warning("legacy_key_skipped reason=no_user_prefix")
            continue
        try:
            with context.db.transaction() as conn:
                if get_user_by_key(conn, key) is not None:
                    continue
                user = create_user(conn, name, key)
        except ShareError as error:
            report.failures += 1
            logger.error("legacy_key_migration_failed user=%s error=%s", name, error)
            continue
        report.users_migrated += 1
        logger.info("legacy_key_migrated user=%s user_id=%d", user.name, user.id)


def migrate_legacy_files(
    context: ShareContext, owner: User, report: MigrationReport
) -> None:
    for blob in context.blobs.iter_legacy_blobs():
        key = blob.stem
        if not key or blob.name.startswith(".") or len(key) == UUID_STEM_LENGTH:
            continue
        try:
            size = blob.stat().st_size
            with context.db.transaction() as conn:
                if get_file(conn, key) is not None:
                    continue
                add_file_with_key(conn, owner.id, key, blob.name, size, original_name=blob.name)
        except KeyCollisionError:
            continue
        except (OSError, ShareError) as error:
            report.failures += 1
            logger.error("legacy_file_migration_failed path=%s error=%s", blob, error)
            continue
        report.files_migrated += 1
        logger.info("legacy_file_migrated key=%s owner=%s", key, owner.name)


def bootstrap(context: ShareContext) -> MigrationReport:
    report = MigrationReport()
    fallback = ensure_fallback_user(context)
    migrate_legacy_keys(context, report)
    migrate_legacy_files(context, fallback, report)
    if report.users_migrated or report.files_migrated or report.failures:
        logger.warning(
            "migration_completed users=%d files=%d failures=%d",
            report.users_migrated,
            report.files_migrated,
            report.failures,
        )
    return report

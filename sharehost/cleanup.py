import atexit
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler

from .context import ShareContext
from .errors import ProtectedUserError
from .storage import (
    StoredFile,
    User,
    delete_file,
    delete_user_by_id,
    get_expired_files,
    get_expired_users,
    get_user,
    reassign_files,
)

logger = logging.getLogger("sharehost.cleanup")

FALLBACK_USER = "anonymous"
SWEEP_JOB_ID = "sweep_expired"


@dataclass
class SweepReport:
    files_removed: int = 0
    blobs_missing: int = 0
    blob_errors: int = 0
    users_removed: int = 0
    staging_removed: int = 0
    failures: int = 0


def remove_blob(context: ShareContext, record: StoredFile) -> Optional[bool]:
    """Delete the blob behind *record*.

    Returns True when removed, False when it was already missing and None when
    the filesystem refused; the failure is logged, never raised.
    """

    try:
        removed = context.blobs.remove(record.filename, record.is_temp)
    except OSError as error:
        logger.warning(
            "blob_delete_failed key=%s filename=%s error=%s",
            record.key,
            record.filename,
            error,
        )
        return None
    if not removed:
        logger.info("blob_already_missing key=%s filename=%s", record.key, record.filename)
    return removed


def discard_file(context: ShareContext, record: StoredFile) -> bool:
    """Delete a file's blob and then its row.

    A blob that cannot be removed does not stop the row from being deleted.
    Returns whether the row was deleted.
    """

    remove_blob(context, record)
    with context.db.transaction() as conn:
        return delete_file(conn, record.id)


def retire_user(conn: sqlite3.Connection, user: User) -> int:
    """Delete *user*, handing any remaining files to the fallback account.

    Returns the number of files reassigned. The fallback account itself can
    never be retired.
    """

    if user.name == FALLBACK_USER:
        raise ProtectedUserError(user.name)

    fallback = get_user(conn, FALLBACK_USER)
    reassigned = 0
    if fallback is not None:
        reassigned = reassign_files(conn, user.id, fallback.id)
    if reassigned:
        logger.warning(
            "user_files_reassigned user=%s count=%d to=%s", user.name, reassigned, FALLBACK_USER
        )
    delete_user_by_id(conn, user.id)
    return reassigned


def sweep_expired(context: ShareContext) -> SweepReport:
    """Delete expired files (blob first, then row), then expired users.

    Each item is handled on its own; a failure is logged and the sweep moves
    on to the next item.
    """

    report = SweepReport()
    logger.info("cleanup_started")

    with context.db.connect() as conn:
        expired_files = get_expired_files(conn)

    for record in expired_files:
        blob_removed = remove_blob(context, record)
        if blob_removed is None:
            report.blob_errors += 1
        elif not blob_removed:
            report.blobs_missing += 1

        try:
            with context.db.transaction() as conn:
                deleted = delete_file(conn, record.id)
        except sqlite3.Error as error:
            report.failures += 1
            logger.error("cleanup_file_row_failed key=%s error=%s", record.key, error)
            continue
        if deleted:
            report.files_removed += 1
            logger.warning(
                "cleanup_file_deleted key=%s filename=%s", record.key, record.filename
            )

    with context.db.connect() as conn:
        expired_users = get_expired_users(conn)

    for user in expired_users:
        try:
            with context.db.transaction() as conn:
                retire_user(conn, user)
        except (ProtectedUserError, sqlite3.Error) as error:
            report.failures += 1
            logger.error("cleanup_user_failed user=%s error=%s", user.name, error)
            continue
        report.users_removed += 1
        logger.warning("cleanup_user_deleted user=%s", user.name)

    report.staging_removed = context.blobs.remove_stale_staging()

    logger.info(
        "cleanup_completed files=%d blobs_missing=%d blob_errors=%d users=%d staging=%d failures=%d",
        report.files_removed,
        report.blobs_missing,
        report.blob_errors,
        report.users_removed,
        report.staging_removed,
        report.failures,
    )
    return report


def next_fire_time(now: datetime, period: timedelta) -> datetime:
    """Return the next boundary after *now* that is a whole multiple of *period*
    counted from the UTC epoch (the top of the hour for a one-hour period).

    *now* exactly on a boundary is returned unchanged.
    """

    if period <= timedelta(0):
        raise ValueError("period must be positive")
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    epoch = datetime(1970, 1, 1, tzinfo=timezone.utc)
    remainder = (now - epoch) % period
    if not remainder:
        return now
    return now + (period - remainder)


class CleanupScheduler:
    """Runs :func:`sweep_expired` on an APScheduler background thread."""

    def __init__(self, context: ShareContext, period_hours: int) -> None:
        self.context = context
        self.period = timedelta(hours=max(1, period_hours))
        self._scheduler: Optional[BackgroundScheduler] = None

    def _run(self) -> None:
        try:
            sweep_expired(self.context)
        except Exception:  # pragma: no cover
            logger.exception("cleanup_job_failed")

    def start(self, now: Optional[datetime] = None) -> datetime:
        first_run = next_fire_time(now or datetime.now(timezone.utc), self.period)
        scheduler = BackgroundScheduler(daemon=True, timezone=timezone.utc)
        scheduler.add_job(
            func=self._run,
            trigger="interval",
            seconds=int(self.period.total_seconds()),
            start_date=first_run,
            id=SWEEP_JOB_ID,
            name="Delete expired files and users",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        scheduler.start()
        self._scheduler = scheduler
        atexit.register(self.shutdown)
        logger.info(
            "cleanup_scheduled first_run=%s period_hours=%s",
            first_run.isoformat(),
            self.period.total_seconds() / 3600,
        )
        return first_run

    def next_run_time(self) -> Optional[datetime]:
        if self._scheduler is None:
            return None
        job = self._scheduler.get_job(SWEEP_JOB_ID)
        return job.next_run_time if job else None

    def shutdown(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None


def start_cleanup(context: ShareContext) -> Optional[CleanupScheduler]:
    """Run one sweep now and schedule the rest, unless ``INIT_CLEANUP`` is off."""

    if context.scheduler is not None:
        return context.scheduler
    if not context.settings.init_cleanup:
        logger.info("cleanup_disabled")
        return None
    sweep_expired(context)
    scheduler = CleanupScheduler(context, context.settings.cleanup_period_hours)
    scheduler.start()
    context.scheduler = scheduler
    return scheduler

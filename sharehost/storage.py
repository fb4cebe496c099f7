import logging
import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator, List, Optional, Union

from .errors import FileCreateError, KeyCollisionError, UserInsertError
from .keys import generate_api_key, generate_public_key, generate_storage_filename

logger = logging.getLogger("sharehost.storage")

# Current time according to the database, in epoch seconds. Every expiry
# comparison goes through this expression so the application clock never
# participates.
DB_NOW = "((julianday('now') - 2440587.5) * 86400.0)"

TEMP_DIR_NAME = "temp"
STAGING_DIR_NAME = ".staging"
CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
STAGING_MAX_AGE_SECONDS = 3600


@dataclass(frozen=True)
class User:
    id: int
    name: str
    api_key: str
    expires_at: Optional[float]
    created_at: float

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "User":
        return cls(
            id=row["id"],
            name=row["name"],
            api_key=row["api_key"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )


@dataclass(frozen=True)
class StoredFile:
    id: int
    key: str
    owner_id: int
    filename: str
    original_name: str
    size: int
    expires_at: Optional[float]
    created_at: float

    @property
    def is_temp(self) -> bool:
        return self.expires_at is not None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "StoredFile":
        return cls(
            id=row["id"],
            key=row["key"],
            owner_id=row["owner_id"],
            filename=row["filename"],
            original_name=row["original_name"],
            size=row["size"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )


@dataclass(frozen=True)
class Inserted:
    file: StoredFile


@dataclass(frozen=True)
class Collision:
    key: str


@dataclass(frozen=True)
class InsertFailed:
    detail: str


InsertOutcome = Union[Inserted, Collision, InsertFailed]


class Database:
    """Owns the SQLite path and hands out short-lived connections."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)

    def _open(self) -> sqlite3.Connection:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.path, timeout=30.0, isolation_level=None)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Autocommit connection for single read statements."""
        conn = self._open()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Connection inside ``BEGIN IMMEDIATE``; commits on success, rolls back on error."""
        conn = self._open()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()
        finally:
            conn.close()

    def init_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE,
                    api_key TEXT NOT NULL UNIQUE,
                    expires_at REAL,
                    created_at REAL NOT NULL DEFAULT {DB_NOW}
                )
                """
            )
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS files (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    key TEXT NOT NULL UNIQUE,
                    owner_id INTEGER NOT NULL REFERENCES users(id),
                    filename TEXT NOT NULL,
                    original_name TEXT NOT NULL DEFAULT '',
                    size INTEGER NOT NULL,
                    expires_at REAL,
                    created_at REAL NOT NULL DEFAULT {DB_NOW}
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_files_expires_at ON files(expires_at)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_files_owner ON files(owner_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_files_filename ON files(filename)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_users_expires_at ON users(expires_at)"
            )

    def ping(self) -> bool:
        try:
            with self.connect() as conn:
                conn.execute("SELECT 1").fetchone()
        except sqlite3.Error as error:
            logger.error("database_ping_failed path=%s error=%s", self.path, error)
            return False
        return True


def db_now(conn: sqlite3.Connection) -> float:
    return float(conn.execute(f"SELECT {DB_NOW} AS now").fetchone()["now"])


def isoformat_utc(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace(
        "+00:00", "Z"
    )


# Users


def create_user(
    conn: sqlite3.Connection,
    name: str,
    key: Optional[str] = None,
    expires_at: Optional[float] = None,
) -> User:
    """Insert a user, generating ``{name}_{hex}`` when no key is supplied.

    ``expires_at`` is an epoch timestamp; ``None`` means the key never expires.
    """

    api_key = key or generate_api_key(name)
    try:
        cursor = conn.execute(
            "INSERT INTO users (name, api_key, expires_at) VALUES (?, ?, ?)",
            (name, api_key, expires_at),
        )
    except sqlite3.IntegrityError as error:
        raise UserInsertError(name, str(error)) from error

    row = conn.execute(
        "SELECT * FROM users WHERE id = ?", (cursor.lastrowid,)
    ).fetchone()
    if row is None:
        raise UserInsertError(name)

    logger.info(
        "user_created user_id=%d name=%s expires_at=%s", row["id"], name, expires_at
    )
    return User.from_row(row)


def get_user(conn: sqlite3.Connection, name: str) -> Optional[User]:
    row = conn.execute("SELECT * FROM users WHERE name = ? LIMIT 1", (name,)).fetchone()
    return User.from_row(row) if row else None


def get_user_by_id(conn: sqlite3.Connection, user_id: int) -> Optional[User]:
    row = conn.execute("SELECT * FROM users WHERE id = ? LIMIT 1", (user_id,)).fetchone()
    return User.from_row(row) if row else None


def get_user_by_key(conn: sqlite3.Connection, key: str) -> Optional[User]:
    row = conn.execute(
        "SELECT * FROM users WHERE api_key = ? LIMIT 1", (key,)
    ).fetchone()
    return User.from_row(row) if row else None


def get_active_user_by_key(conn: sqlite3.Connection, key: str) -> Optional[User]:
    row = conn.execute(
        f"""
        SELECT * FROM users
        WHERE api_key = ? AND (expires_at IS NULL OR expires_at > {DB_NOW})
        LIMIT 1
        """,
        (key,),
    ).fetchone()
    return User.from_row(row) if row else None


def key_is_valid(conn: sqlite3.Connection, key: Optional[str]) -> bool:
    """Return True when *key* belongs to an unexpired user. Never writes."""
    if not key:
        return False
    return get_active_user_by_key(conn, key) is not None


def list_users(conn: sqlite3.Connection) -> List[User]:
    rows = conn.execute("SELECT * FROM users ORDER BY id").fetchall()
    return [User.from_row(row) for row in rows]


def delete_user(conn: sqlite3.Connection, name: str) -> bool:
    cursor = conn.execute("DELETE FROM users WHERE name = ?", (name,))
    return cursor.rowcount > 0


def delete_user_by_id(conn: sqlite3.Connection, user_id: int) -> bool:
    cursor = conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
    return cursor.rowcount > 0


def get_expired_users(conn: sqlite3.Connection) -> List[User]:
    rows = conn.execute(
        f"SELECT * FROM users WHERE expires_at IS NOT NULL AND expires_at <= {DB_NOW}"
    ).fetchall()
    return [User.from_row(row) for row in rows]


# Files


def insert_file(
    conn: sqlite3.Connection,
    owner_id: int,
    key: str,
    filename: str,
    size: int,
    expires_at: Optional[float] = None,
    original_name: str = "",
) -> InsertOutcome:
    """Insert a file row and report the outcome without raising.

    Key uniqueness is enforced by the table itself through ``ON CONFLICT``,
    so two writers racing for the same key cannot both succeed.
    """

    try:
        cursor = conn.execute(
            """
            INSERT INTO files (key, owner_id, filename, original_name, size, expires_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(key) DO NOTHING
            """,
            (key, owner_id, filename, original_name, size, expires_at),
        )
    except sqlite3.Error as error:
        return InsertFailed(str(error))

    if cursor.rowcount == 0:
        return Collision(key)

    row = conn.execute(
        "SELECT * FROM files WHERE id = ?", (cursor.lastrowid,)
    ).fetchone()
    if row is None:
        return InsertFailed(f"inserted row for {key} could not be read back")
    return Inserted(StoredFile.from_row(row))


def add_file_with_key(
    conn: sqlite3.Connection,
    owner_id: int,
    key: str,
    filename: str,
    size: int,
    expires_at: Optional[float] = None,
    original_name: str = "",
) -> StoredFile:
    outcome = insert_file(
        conn, owner_id, key, filename, size, expires_at, original_name=original_name
    )
    if isinstance(outcome, Collision):
        logger.warning("file_key_collision key=%s", key)
        raise KeyCollisionError(key)
    if isinstance(outcome, InsertFailed):
        logger.error(
            "file_insert_failed key=%s owner_id=%d detail=%s", key, owner_id, outcome.detail
        )
        raise FileCreateError(outcome.detail)
    return outcome.file


def add_file(
    conn: sqlite3.Connection,
    owner_id: int,
    extension: str,
    size: int,
    expires_at: Optional[float] = None,
    original_name: str = "",
) -> StoredFile:
    """Allocate a public key and storage name, then insert the row.

    Raises :class:`KeyCollisionError` when the generated key is taken.
    """

    return add_file_with_key(
        conn,
        owner_id,
        generate_public_key(),
        generate_storage_filename(extension),
        size,
        expires_at,
        original_name=original_name,
    )


def get_file(conn: sqlite3.Connection, key: str) -> Optional[StoredFile]:
    row = conn.execute("SELECT * FROM files WHERE key = ? LIMIT 1", (key,)).fetchone()
    return StoredFile.from_row(row) if row else None


def get_active_file(conn: sqlite3.Connection, key: str) -> Optional[StoredFile]:
    row = conn.execute(
        f"""
        SELECT * FROM files
        WHERE key = ? AND (expires_at IS NULL OR expires_at > {DB_NOW})
        LIMIT 1
        """,
        (key,),
    ).fetchone()
    return StoredFile.from_row(row) if row else None


def get_file_by_filename(conn: sqlite3.Connection, filename: str) -> Optional[StoredFile]:
    row = conn.execute(
        "SELECT * FROM files WHERE filename = ? LIMIT 1", (filename,)
    ).fetchone()
    return StoredFile.from_row(row) if row else None


def get_files_by_owner(conn: sqlite3.Connection, owner_id: int) -> List[StoredFile]:
    rows = conn.execute(
        "SELECT * FROM files WHERE owner_id = ? ORDER BY id", (owner_id,)
    ).fetchall()
    return [StoredFile.from_row(row) for row in rows]


def delete_file(conn: sqlite3.Connection, file_id: int) -> bool:
    cursor = conn.execute("DELETE FROM files WHERE id = ?", (file_id,))
    return cursor.rowcount > 0


def get_expired_files(conn: sqlite3.Connection) -> List[StoredFile]:
    rows = conn.execute(
        f"SELECT * FROM files WHERE expires_at IS NOT NULL AND expires_at <= {DB_NOW}"
    ).fetchall()
    return [StoredFile.from_row(row) for row in rows]


def reassign_files(conn: sqlite3.Connection, from_owner_id: int, to_owner_id: int) -> int:
    cursor = conn.execute(
        "UPDATE files SET owner_id = ? WHERE owner_id = ?", (to_owner_id, from_owner_id)
    )
    return cursor.rowcount


# Blobs


class BlobStore:
    """Flat blob directory with a ``temp/`` area for expiring uploads."""

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root).resolve()
        self.temp_dir = self.root / TEMP_DIR_NAME
        self.staging_dir = self.root / STAGING_DIR_NAME

    def ensure_directories(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        self.staging_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, filename: str, temporary: bool) -> Path:
        directory = self.temp_dir if temporary else self.root
        return directory / filename

    def url_path(self, filename: str, temporary: bool) -> str:
        if temporary:
            return f"/uploads/{TEMP_DIR_NAME}/{filename}"
        return f"/uploads/{filename}"

    def resolve(self, filename: str, temporary: bool) -> Optional[Path]:
        """Return the blob path if it stays inside the uploads root, else None."""

        if (
            not filename
            or filename.startswith(".")
            or any(separator in filename for separator in ("/", "\\", "\x00"))
        ):
            logger.warning("blob_name_rejected filename=%r", filename)
            return None
        candidate = self.path_for(filename, temporary)
        try:
            resolved = candidate.resolve()
        except (OSError, RuntimeError):
            return None
        base = self.temp_dir.resolve() if temporary else self.root
        if resolved.parent != base:
            logger.warning("path_traversal_detected filename=%s path=%s", filename, resolved)
            return None
        return resolved

    def open_staging(self) -> Path:
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        return self.staging_dir / f"{uuid.uuid4().hex}.tmp"

    def promote(self, staged: Path, filename: str, temporary: bool) -> Path:
        """Atomically move a staged blob to its final location."""
        target = self.path_for(filename, temporary)
        target.parent.mkdir(parents=True, exist_ok=True)
        staged.replace(target)
        return target

    def remove(self, filename: str, temporary: bool) -> bool:
        """Delete a blob. Returns False if it was already gone; other OS errors propagate."""
        path = self.path_for(filename, temporary)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def remove_stale_staging(self, max_age_seconds: int = STAGING_MAX_AGE_SECONDS) -> int:
        """Remove staging files left behind by aborted uploads."""

        if not self.staging_dir.exists():
            return 0
        removed = 0
        cutoff = time.time() - max_age_seconds
        for staged in self.staging_dir.glob("*.tmp"):
            try:
                if staged.stat().st_mtime < cutoff:
                    staged.unlink()
                    removed += 1
                    logger.info("staging_file_removed path=%s", staged)
            except OSError as error:
                logger.warning("staging_cleanup_failed path=%s error=%s", staged, error)
        return removed

    def iter_legacy_blobs(self) -> List[Path]:
        if not self.root.exists():
            return []
        return sorted(entry for entry in self.root.iterdir() if entry.is_file())


def discard_quietly(path: Optional[Path]) -> None:
    """Remove a leftover staging or promoted blob after a failed upload."""
    if path is None:
        return
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as error:
        logger.warning("blob_discard_failed path=%s error=%s", path, error)

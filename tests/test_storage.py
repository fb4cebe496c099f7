import os
import sqlite3
import tempfile
import time
import unittest
from pathlib import Path
from unittest import mock

from sharehost.errors import FileCreateError, KeyCollisionError, UserInsertError
from sharehost.storage import (
    DB_NOW,
    BlobStore,
    Collision,
    Database,
    Inserted,
    InsertFailed,
    add_file,
    add_file_with_key,
    create_user,
    db_now,
    delete_user,
    get_active_file,
    get_active_user_by_key,
    get_expired_files,
    get_expired_users,
    get_file,
    get_file_by_filename,
    get_files_by_owner,
    get_user,
    insert_file,
    isoformat_utc,
    key_is_valid,
    list_users,
    reassign_files,
)


class DatabaseTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db = Database(Path(self.tmp.name) / "data" / "database.db")
        self.db.init_schema()
        with self.db.transaction() as conn:
            self.user = create_user(conn, "alice")

    def tearDown(self):
        self.tmp.cleanup()

    def test_init_schema_is_idempotent(self):
        self.db.init_schema()
        with self.db.connect() as conn:
            self.assertEqual(len(list_users(conn)), 1)

    def test_create_user_generates_prefixed_key(self):
        self.assertRegex(self.user.api_key, r"^alice_[0-9a-f]{32}$")
        self.assertIsNone(self.user.expires_at)
        self.assertGreater(self.user.created_at, 0)

    def test_create_user_accepts_explicit_key(self):
        with self.db.transaction() as conn:
            bob = create_user(conn, "bob", "bob_custom")
        self.assertEqual(bob.api_key, "bob_custom")

    def test_duplicate_name_raises(self):
        with self.assertRaises(UserInsertError):
            with self.db.transaction() as conn:
                create_user(conn, "alice")
        with self.db.connect() as conn:
            self.assertEqual([user.name for user in list_users(conn)], ["alice"])

    def test_key_is_valid_respects_expiry(self):
        with self.db.transaction() as conn:
            now = db_now(conn)
            expired = create_user(conn, "old", expires_at=now - 5)
            fresh = create_user(conn, "new", expires_at=now + 3600)
        with self.db.connect() as conn:
            self.assertTrue(key_is_valid(conn, self.user.api_key))
            self.assertTrue(key_is_valid(conn, fresh.api_key))
            self.assertFalse(key_is_valid(conn, expired.api_key))
            self.assertFalse(key_is_valid(conn, ""))
            self.assertFalse(key_is_valid(conn, None))
            self.assertFalse(key_is_valid(conn, "alice_unknown"))
            self.assertIsNone(get_active_user_by_key(conn, expired.api_key))
            self.assertEqual(
                [user.name for user in get_expired_users(conn)], ["old"]
            )

    def test_db_now_tracks_epoch_seconds(self):
        with self.db.connect() as conn:
            now = db_now(conn)
        self.assertAlmostEqual(now, time.time(), delta=5)

    def test_insert_file_outcomes(self):
        with self.db.transaction() as conn:
            first = insert_file(conn, self.user.id, "abc", "a.txt", 3)
            second = insert_file(conn, self.user.id, "abc", "b.txt", 4)
            orphan = insert_file(conn, 9999, "zzz", "c.txt", 5)
        self.assertIsInstance(first, Inserted)
        self.assertEqual(first.file.key, "abc")
        self.assertIsInstance(second, Collision)
        self.assertEqual(second.key, "abc")
        self.assertIsInstance(orphan, InsertFailed)

    def test_add_file_with_key_raises_typed_errors(self):
        with self.db.transaction() as conn:
            add_file_with_key(conn, self.user.id, "taken", "a.txt", 1)
        with self.assertRaises(KeyCollisionError):
            with self.db.transaction() as conn:
                add_file_with_key(conn, self.user.id, "taken", "b.txt", 1)
        with self.assertRaises(FileCreateError):
            with self.db.transaction() as conn:
                add_file_with_key(conn, 9999, "other", "c.txt", 1)

    def test_add_file_generates_key_and_name(self):
        with self.db.transaction() as conn:
            stored = add_file(conn, self.user.id, ".jpg", 10, original_name="cat.jpg")
        self.assertEqual(len(stored.key), 8)
        self.assertTrue(stored.filename.endswith(".jpg"))
        self.assertFalse(stored.is_temp)
        self.assertEqual(stored.original_name, "cat.jpg")

    def test_add_file_collision_from_generator(self):
        with mock.patch("sharehost.storage.generate_public_key", return_value="same"):
            with self.db.transaction() as conn:
                add_file(conn, self.user.id, ".txt", 1)
            with self.assertRaises(KeyCollisionError):
                with self.db.transaction() as conn:
                    add_file(conn, self.user.id, ".txt", 1)

    def test_active_lookup_hides_expired_files(self):
        with self.db.transaction() as conn:
            now = db_now(conn)
            add_file_with_key(conn, self.user.id, "live", "l.txt", 1, now + 60)
            add_file_with_key(conn, self.user.id, "dead", "d.txt", 1, now - 60)
            add_file_with_key(conn, self.user.id, "perm", "p.txt", 1)
        with self.db.connect() as conn:
            self.assertIsNotNone(get_active_file(conn, "live"))
            self.assertIsNotNone(get_active_file(conn, "perm"))
            self.assertIsNone(get_active_file(conn, "dead"))
            self.assertIsNotNone(get_file(conn, "dead"))
            self.assertEqual([f.key for f in get_expired_files(conn)], ["dead"])
            self.assertEqual(get_file_by_filename(conn, "l.txt").key, "live")

    def test_owner_listing_and_reassignment(self):
        with self.db.transaction() as conn:
            bob = create_user(conn, "bob")
            add_file_with_key(conn, self.user.id, "k1", "1.txt", 1)
            add_file_with_key(conn, self.user.id, "k2", "2.txt", 1)
            add_file_with_key(conn, bob.id, "k3", "3.txt", 1)
            moved = reassign_files(conn, self.user.id, bob.id)
        self.assertEqual(moved, 2)
        with self.db.connect() as conn:
            self.assertEqual(get_files_by_owner(conn, self.user.id), [])
            self.assertEqual(
                [f.key for f in get_files_by_owner(conn, bob.id)], ["k1", "k2", "k3"]
            )

    def test_delete_user_blocked_while_files_reference_it(self):
        with self.db.transaction() as conn:
            add_file_with_key(conn, self.user.id, "k1", "1.txt", 1)
        with self.assertRaises(sqlite3.IntegrityError):
            with self.db.transaction() as conn:
                delete_user(conn, "alice")
        with self.db.connect() as conn:
            self.assertIsNotNone(get_user(conn, "alice"))

    def test_expiry_comparison_uses_database_clock(self):
        with self.db.transaction() as conn:
            conn.execute(
                f"UPDATE users SET expires_at = {DB_NOW} + 3600 WHERE id = ?",
                (self.user.id,),
            )
        with mock.patch("time.time", return_value=0):
            with self.db.connect() as conn:
                self.assertTrue(key_is_valid(conn, self.user.api_key))

    def test_isoformat_utc(self):
        self.assertEqual(isoformat_utc(0), "1970-01-01T00:00:00Z")

    def test_ping(self):
        self.assertTrue(self.db.ping())


class BlobStoreTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.blobs = BlobStore(Path(self.tmp.name) / "uploads")
        self.blobs.ensure_directories()

    def tearDown(self):
        self.tmp.cleanup()

    def test_directories_created(self):
        self.assertTrue(self.blobs.root.is_dir())
        self.assertTrue(self.blobs.temp_dir.is_dir())
        self.assertTrue(self.blobs.staging_dir.is_dir())

    def test_promote_moves_staged_blob(self):
        staged = self.blobs.open_staging()
        staged.write_bytes(b"data")
        target = self.blobs.promote(staged, "x.txt", temporary=True)
        self.assertFalse(staged.exists())
        self.assertEqual(target, self.blobs.temp_dir / "x.txt")
        self.assertEqual(target.read_bytes(), b"data")

    def test_remove_reports_missing(self):
        (self.blobs.root / "a.txt").write_bytes(b"a")
        self.assertTrue(self.blobs.remove("a.txt", temporary=False))
        self.assertFalse(self.blobs.remove("a.txt", temporary=False))

    def test_resolve_rejects_escape_attempts(self):
        (self.blobs.root / "ok.txt").write_bytes(b"ok")
        self.assertEqual(
            self.blobs.resolve("ok.txt", temporary=False), self.blobs.root / "ok.txt"
        )
        for name in ("", "..", "../x", ".staging", "a/b", "a\\b", "x\x00y"):
            with self.subTest(name=name):
                self.assertIsNone(self.blobs.resolve(name, temporary=False))

    def test_resolve_rejects_symlink_escape(self):
        outside = Path(self.tmp.name) / "secret.txt"
        outside.write_bytes(b"secret")
        link = self.blobs.root / "link.txt"
        os.symlink(outside, link)
        self.assertIsNone(self.blobs.resolve("link.txt", temporary=False))

    def test_url_paths(self):
        self.assertEqual(self.blobs.url_path("a.png", temporary=False), "/uploads/a.png")
        self.assertEqual(
            self.blobs.url_path("a.png", temporary=True), "/uploads/temp/a.png"
        )

    def test_stale_staging_removed(self):
        old = self.blobs.open_staging()
        old.write_bytes(b"old")
        stale = time.time() - 7200
        os.utime(old, (stale, stale))
        recent = self.blobs.open_staging()
        recent.write_bytes(b"new")
        self.assertEqual(self.blobs.remove_stale_staging(), 1)
        self.assertFalse(old.exists())
        self.assertTrue(recent.exists())

    def test_legacy_blobs_are_top_level_files_only(self):
        (self.blobs.root / "abc.png").write_bytes(b"x")
        (self.blobs.temp_dir / "tmp.png").write_bytes(b"x")
        self.assertEqual(
            [path.name for path in self.blobs.iter_legacy_blobs()], ["abc.png"]
        )


if __name__ == "__main__":
    unittest.main()

import sys
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import backend_app


NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _entry(entry_id: str, title: str = "Yellow", artist: str = "Coldplay") -> backend_app.QueueEntry:
    return backend_app.QueueEntry(
        id=entry_id,
        title=title,
        artist=artist,
        artwork_url="https://img/a.jpg",
        played_today=False,
        requested_by="Alice",
        requested_at=NOW,
    )


class StoreContract:
    """Behaviour every queue store must share."""

    def make_store(self) -> backend_app.SongStore:
        raise NotImplementedError

    def setUp(self) -> None:
        self.store = self.make_store()
        self.store.ping()

    def test_pending_keeps_insertion_order(self) -> None:
        self.store.insert_pending(_entry("a"))
        self.store.insert_pending(_entry("b", "Fix You"))

        self.assertEqual([e.id for e in self.store.list_pending()], ["a", "b"])
        self.assertEqual(self.store.list_pending()[0], _entry("a"))

    def test_insert_with_same_id_does_not_duplicate(self) -> None:
        self.store.insert_pending(_entry("a"))
        self.store.insert_pending(_entry("a"))

        self.assertEqual(len(self.store.list_pending()), 1)

    def test_delete_pending(self) -> None:
        self.store.insert_pending(_entry("a"))
        self.store.delete_pending("a")
        self.store.delete_pending("missing")

        self.assertEqual(self.store.list_pending(), [])

    def test_archive_moves_entry_to_history(self) -> None:
        entry = _entry("a")
        self.store.insert_pending(entry)
        record = backend_app.PlayRecord(entry.title, entry.artist, entry.requested_by, NOW)

        self.store.archive(entry, record)

        self.assertEqual(self.store.list_pending(), [])
        self.assertEqual(self.store.list_history(), [record])

    def test_played_since_filters_by_time(self) -> None:
        self.store.append_history(backend_app.PlayRecord("Old", "Band", "A", NOW - timedelta(days=1)))
        self.store.append_history(backend_app.PlayRecord("New", "Band", "B", NOW))
        self.store.append_history(backend_app.PlayRecord("New", "Band", "C", NOW + timedelta(minutes=3)))

        self.assertEqual(self.store.query_played_since(NOW - timedelta(hours=1)), {("New", "Band")})

    def test_history_keeps_order(self) -> None:
        for name in ("A", "B", "C"):
            self.store.append_history(backend_app.PlayRecord("Song", "Band", name, NOW))

        self.assertEqual([r.requested_by for r in self.store.list_history()], ["A", "B", "C"])


class MemoryStoreTests(StoreContract, unittest.TestCase):
    def make_store(self):
        return backend_app.MemoryStore()


class JsonFileStoreTests(StoreContract, unittest.TestCase):
    def make_store(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        return backend_app.JsonFileStore(Path(self._tmp.name) / "data" / "songs.json")

    def test_survives_reopen(self) -> None:
        self.store.insert_pending(_entry("a"))

        reopened = backend_app.JsonFileStore(self.store.path)

        self.assertEqual(reopened.list_pending(), [_entry("a")])

    def test_corrupt_file_fails_ping(self) -> None:
        self.store.path.write_text("{not json", encoding="utf-8")

        with self.assertRaises(backend_app.StoreUnavailableError):
            self.store.ping()


class SqlStoreTests(StoreContract, unittest.TestCase):
    def make_store(self):
        return backend_app.SqlStore("sqlite://")

    def test_timestamp_columns_default_to_current_utc(self) -> None:
        before = datetime.now(timezone.utc).replace(microsecond=0)
        with self.store.SessionLocal() as db:
            db.add(backend_app.PlayedSong(title="Yellow", artist="Coldplay"))
            db.commit()
        after = datetime.now(timezone.utc) + timedelta(seconds=1)

        (record,) = self.store.list_history()

        self.assertEqual(record.played_at.tzinfo, timezone.utc)
        self.assertTrue(before <= record.played_at <= after)

    def test_unreachable_database_fails_ping(self) -> None:
        store = backend_app.SqlStore("sqlite:////nonexistent-dir/for/sure/db.sqlite")

        with self.assertRaises(backend_app.StoreUnavailableError):
            store.ping()


class BuildStoreTests(unittest.TestCase):
    def test_backends(self) -> None:
        self.assertIsInstance(backend_app.build_store("memory"), backend_app.MemoryStore)
        with patch.object(backend_app, "STORE_PATH", "/tmp/songs.json"):
            self.assertIsInstance(backend_app.build_store("JSON"), backend_app.JsonFileStore)
        with patch.object(backend_app, "DB_URL", "sqlite://"):
            self.assertIsInstance(backend_app.build_store("sql"), backend_app.SqlStore)

    def test_unknown_backend(self) -> None:
        with self.assertRaises(backend_app.StoreUnavailableError):
            backend_app.build_store("mongo")


if __name__ == "__main__":
    unittest.main()

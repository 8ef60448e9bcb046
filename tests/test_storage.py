import io
import json
import tempfile
import threading
import unittest
from unittest import mock
from datetime import datetime, timedelta, timezone
from pathlib import Path

from fileshare import storage


def _record(file_id="abc", filename="a.txt", size=3, **overrides):
    record = storage.FileRecord.create(
        filename=filename,
        stored_name=overrides.pop("stored_name", f"{file_id}.txt"),
        size=size,
        mime_type=overrides.pop("mime_type", "text/plain"),
        file_id=file_id,
        now=overrides.pop("now", None),
    )
    for key, value in overrides.items():
        setattr(record, key, value)
    return record


class GenerateIdTests(unittest.TestCase):
    def test_ids_are_short_and_url_safe(self):
        identifier = storage.generate_id()
        self.assertRegex(identifier, r"^[A-Za-z0-9_-]+$")
        self.assertEqual(len(identifier), 12)

    def test_ids_do_not_repeat(self):
        identifiers = {storage.generate_id() for _ in range(1000)}
        self.assertEqual(len(identifiers), 1000)


class FileRecordTests(unittest.TestCase):
    def test_create_sets_retention_and_counter(self):
        now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        record = _record(now=now)
        self.assertEqual(record.upload_date, now)
        self.assertEqual(record.expires_at, now + timedelta(days=7))
        self.assertEqual(record.download_count, 0)

    def test_missing_mime_type_defaults_to_octet_stream(self):
        record = _record(mime_type=None)
        self.assertEqual(record.mime_type, "application/octet-stream")

    def test_expiry_comparison_is_strict(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        record = _record(now=now)
        self.assertFalse(record.is_expired(record.expires_at))
        self.assertTrue(record.is_expired(record.expires_at + timedelta(microseconds=1)))

    def test_dict_uses_camel_case_and_utc_timestamps(self):
        now = datetime(2026, 3, 4, 5, 6, 7, 890000, tzinfo=timezone.utc)
        payload = _record(now=now).to_dict()
        self.assertEqual(payload["uploadDate"], "2026-03-04T05:06:07.890Z")
        self.assertEqual(payload["expiresAt"], "2026-03-11T05:06:07.890Z")
        self.assertEqual(payload["storedName"], "abc.txt")
        self.assertEqual(storage.FileRecord.from_dict(payload), _record(now=now))

    def test_from_dict_rejects_incomplete_entries(self):
        with self.assertRaises(ValueError):
            storage.FileRecord.from_dict({"id": "abc"})
        with self.assertRaises(ValueError):
            storage.FileRecord.from_dict(["not", "a", "dict"])


class MetadataStoreTests(unittest.TestCase):
    def setUp(self):
        self.store = storage.MetadataStore()

    def test_insert_find_and_delete(self):
        record = self.store.insert(_record("one"))
        self.assertIs(self.store.find_by_id("one"), record)
        self.assertIsNone(self.store.find_by_id("two"))

        self.assertIs(self.store.delete("one"), record)
        self.assertIsNone(self.store.delete("one"))
        self.assertEqual(len(self.store), 0)

    def test_increment_download(self):
        self.store.insert(_record("one"))
        self.assertEqual(self.store.increment_download("one").download_count, 1)
        self.assertEqual(self.store.increment_download("one").download_count, 2)
        self.assertIsNone(self.store.increment_download("missing"))

    def test_list_returns_snapshot_in_insertion_order(self):
        for file_id in ("b", "a", "c"):
            self.store.insert(_record(file_id))
        snapshot = self.store.list_records()
        self.store.delete("a")
        self.assertEqual([record.id for record in snapshot], ["b", "a", "c"])
        self.assertEqual([record.id for record in self.store.list_records()], ["b", "c"])

    def test_concurrent_increments_are_not_lost(self):
        self.store.insert(_record("one"))

        def bump():
            for _ in range(200):
                self.store.increment_download("one")

        threads = [threading.Thread(target=bump) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(self.store.find_by_id("one").download_count, 1600)

    def test_failed_save_rolls_back_each_mutation(self):
        for file_id in ("a", "b", "c"):
            self.store.insert(_record(file_id))

        with mock.patch.object(self.store, "save", side_effect=OSError("disk full")):
            with self.assertRaises(OSError):
                self.store.insert(_record("d"))
            with self.assertRaises(OSError):
                self.store.increment_download("b")
            with self.assertRaises(OSError):
                self.store.delete("b")

        self.assertEqual([record.id for record in self.store.list_records()], ["a", "b", "c"])
        self.assertEqual(self.store.find_by_id("b").download_count, 0)

    def test_insert_at_position(self):
        for file_id in ("a", "c"):
            self.store.insert(_record(file_id))
        self.assertEqual(self.store.position_of("c"), 1)
        self.store.insert(_record("b"), self.store.position_of("c"))
        self.assertEqual([record.id for record in self.store.list_records()], ["a", "b", "c"])
        self.assertIsNone(self.store.position_of("missing"))


class JsonMetadataStoreTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "data" / "database.json"

    def tearDown(self):
        self.tmp.cleanup()

    def _read(self):
        return json.loads(self.path.read_text(encoding="utf-8"))

    def test_missing_document_is_a_clean_start(self):
        store = storage.JsonMetadataStore(self.path)
        self.assertEqual(store.load(), (True, None))
        self.assertEqual(len(store), 0)
        self.assertFalse(self.path.exists())

    def test_every_mutation_rewrites_document(self):
        store = storage.JsonMetadataStore(self.path)
        store.insert(_record("one"))
        self.assertEqual([entry["id"] for entry in self._read()], ["one"])

        store.increment_download("one")
        self.assertEqual(self._read()[0]["downloadCount"], 1)

        store.insert(_record("two"))
        store.delete("one")
        self.assertEqual([entry["id"] for entry in self._read()], ["two"])

    def test_document_is_pretty_printed(self):
        store = storage.JsonMetadataStore(self.path)
        store.insert(_record("one"))
        self.assertTrue(self.path.read_text(encoding="utf-8").startswith("[\n  {"))

    def test_load_restores_saved_records(self):
        first = storage.JsonMetadataStore(self.path)
        first.insert(_record("one", filename="report.pdf"))
        first.increment_download("one")

        second = storage.JsonMetadataStore(self.path)
        self.assertEqual(second.load(), (True, None))
        restored = second.find_by_id("one")
        self.assertEqual(restored.filename, "report.pdf")
        self.assertEqual(restored.download_count, 1)
        self.assertEqual(restored.expires_at - restored.upload_date, timedelta(days=7))

    def test_malformed_document_loads_empty_with_reason(self):
        self.path.parent.mkdir(parents=True)
        for content in (b"{not json", b'{"id": "x"}', b'[{"id": "x"}]', b"\xff\xfe\x00garbage"):
            self.path.write_bytes(content)
            store = storage.JsonMetadataStore(self.path)
            ok, reason = store.load()
            self.assertFalse(ok)
            self.assertTrue(reason)
            self.assertEqual(len(store), 0)
            # The document is left for the operator until the next mutation.
            self.assertEqual(self.path.read_bytes(), content)


class BlobStoreTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name) / "uploads"
        self.blobs = storage.BlobStore(self.root)

    def tearDown(self):
        self.tmp.cleanup()

    def test_stored_name_keeps_extension(self):
        self.assertRegex(self.blobs.make_stored_name("archive.tar.gz"), r"^[A-Za-z0-9_-]{12}\.gz$")
        self.assertTrue(self.blobs.make_stored_name("photo.JPG").endswith(".JPG"))
        self.assertNotIn(".", self.blobs.make_stored_name("README"))
        self.assertNotEqual(
            self.blobs.make_stored_name("a.txt"), self.blobs.make_stored_name("a.txt")
        )

    def test_write_then_read(self):
        payload = b"x" * (storage.CHUNK_SIZE_BYTES + 10)
        written = self.blobs.write(io.BytesIO(payload), "blob.bin")
        self.assertEqual(written, len(payload))
        self.assertTrue(self.blobs.exists("blob.bin"))

        with self.blobs.open("blob.bin") as handle:
            self.assertEqual(handle.read(), payload)
        self.assertEqual([path.name for path in self.root.iterdir()], ["blob.bin"])

    def test_write_over_limit_leaves_nothing_behind(self):
        with self.assertRaises(storage.BlobTooLargeError):
            self.blobs.write(io.BytesIO(b"x" * 10), "big.bin", max_bytes=5)
        self.assertEqual(list(self.root.iterdir()), [])

    def test_missing_blob_raises_not_found(self):
        with self.assertRaises(storage.BlobNotFoundError):
            self.blobs.open("missing.bin")
        self.assertIsInstance(storage.BlobNotFoundError("x"), storage.NotFoundError)

    def test_delete_is_idempotent(self):
        self.blobs.write(io.BytesIO(b"abc"), "gone.txt")
        self.assertTrue(self.blobs.delete("gone.txt"))
        self.assertFalse(self.blobs.delete("gone.txt"))
        self.assertFalse(self.blobs.exists("gone.txt"))

    def test_names_cannot_escape_directory(self):
        self.blobs.ensure()
        for name in ("../outside.txt", "nested/inner.txt", "..", ""):
            with self.assertRaises(storage.BlobNotFoundError):
                self.blobs.path_for(name)
        self.assertFalse(self.blobs.delete("../outside.txt"))


if __name__ == "__main__":
    unittest.main()

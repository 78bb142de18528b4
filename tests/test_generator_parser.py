"""
Tests for bundle generation and parsing.

Uses Python's unittest module.
Tests archive layout, container and version checks, temp file cleanup, and
an export followed by an import into a second account.
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
import unittest
import zipfile
from datetime import UTC, datetime
from pathlib import Path

from bundle_samples import sample_bundle, write_zip, zip_bytes

from recipevault.interchange.errors import FileFormatError, InterchangeError, SchemaError
from recipevault.interchange.generator import BackupGenerator
from recipevault.interchange.parser import BundleParser
from recipevault.interchange.restorer import BackupRestorer
from recipevault.storage.models import Account
from recipevault.storage.recipe_store import RecipeStore

FIXED_NOW = datetime(2024, 5, 1, 10, 0, tzinfo=UTC)


class TestBackupGenerator(unittest.TestCase):
    """Tests for BackupGenerator."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        self.store = RecipeStore(Path(self.temp_dir) / "data")
        self.account = self.store.create_account(Account.create("cook", "c@example.com", "h"))
        BackupRestorer(self.store).restore(self.account.id, sample_bundle(), "merge")
        self.work_dir = Path(self.temp_dir) / "work"
        self.generator = BackupGenerator(
            self.store, work_dir=self.work_dir, clock=lambda: FIXED_NOW
        )

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_build_bundle(self) -> None:
        bundle = self.generator.build_bundle(self.account.id, "automatic")

        self.assertEqual(bundle["version"], "2.2.0")
        self.assertEqual(bundle["exportDate"], "2024-05-01T10:00:00+00:00")
        self.assertEqual(bundle["type"], "automatic")
        self.assertEqual(bundle["account"], {"username": "cook", "email": "c@example.com"})
        self.assertEqual(
            bundle["statistics"],
            {"recipeCount": 2, "collectionCount": 1, "mealPlanCount": 1, "shoppingListCount": 1},
        )

    def test_snapshots_use_stored_ids(self) -> None:
        bundle = self.generator.build_bundle(self.account.id)
        recipe_ids = {r["id"] for r in bundle["recipes"]}

        self.assertEqual(set(bundle["collections"][0]["recipeIds"]), recipe_ids)
        meal = bundle["mealPlans"][0]["meals"][0]
        self.assertIn(meal["recipes"][0]["recipeId"], recipe_ids)
        self.assertEqual(meal["mealType"], "breakfast")

    def test_generate_archive(self) -> None:
        """Test that the archive holds exactly one backup.json entry."""
        backup = self.generator.generate(self.account.id, "manual")

        self.assertTrue(backup.path.exists())
        self.assertTrue(backup.filename.startswith("recipe-book-manual-backup-20240501-100000-"))
        self.assertEqual(backup.size, backup.path.stat().st_size)
        self.assertEqual(len(backup.checksum), 64)
        self.assertEqual(backup.statistics["recipeCount"], 2)

        with zipfile.ZipFile(backup.path) as archive:
            self.assertEqual(archive.namelist(), ["backup.json"])
            document = json.loads(archive.read("backup.json"))
        self.assertEqual(document["account"]["username"], "cook")

        # Only the archive remains; the intermediate JSON file is gone
        self.assertEqual(os.listdir(self.work_dir), [backup.filename])

    def test_generate_invalid_type(self) -> None:
        with self.assertRaises(InterchangeError) as ctx:
            self.generator.generate(self.account.id, "weekly")
        self.assertEqual(ctx.exception.code, "EXPORT_ERROR")

    def test_refuses_version_below_floor(self) -> None:
        generator = BackupGenerator(self.store, work_dir=self.work_dir, version="1.4.0")
        with self.assertRaises(SchemaError):
            generator.generate(self.account.id)
        self.assertFalse(self.work_dir.exists() and os.listdir(self.work_dir))

    def test_cleanup_backup_file(self) -> None:
        backup = self.generator.generate(self.account.id)
        self.generator.cleanup_backup_file(backup.path)
        self.assertFalse(backup.path.exists())
        # A second cleanup is harmless
        self.generator.cleanup_backup_file(backup.path)


class TestBundleParser(unittest.TestCase):
    """Tests for BundleParser."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        self.extract_dir = Path(self.temp_dir) / "extract"
        self.parser = BundleParser(temp_dir=self.extract_dir)

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _zip(self, document: object, entry_name: str = "backup.json") -> Path:
        return write_zip(Path(self.temp_dir) / "backup.zip", document, entry_name)

    def _assert_no_leftovers(self) -> None:
        self.assertEqual(os.listdir(self.extract_dir), [])

    def test_parse(self) -> None:
        data = self.parser.parse(self._zip(sample_bundle()))

        self.assertEqual(data["version"], "2.2.0")
        self.assertEqual(len(data["recipes"]), 2)
        self._assert_no_leftovers()

    def test_missing_file(self) -> None:
        with self.assertRaises(FileFormatError) as ctx:
            self.parser.parse(Path(self.temp_dir) / "nope.zip")
        self.assertEqual(ctx.exception.code, "NO_FILE")

    def test_not_a_zip(self) -> None:
        path = Path(self.temp_dir) / "backup.zip"
        path.write_text(json.dumps(sample_bundle()))
        with self.assertRaises(FileFormatError) as ctx:
            self.parser.parse(path)
        self.assertEqual(ctx.exception.code, "INVALID_FILE_TYPE")

    def test_empty_archive(self) -> None:
        path = Path(self.temp_dir) / "empty.zip"
        with zipfile.ZipFile(path, "w"):
            pass
        with self.assertRaises(FileFormatError) as ctx:
            self.parser.parse(path)
        self.assertEqual(ctx.exception.code, "EMPTY_FILE")
        self._assert_no_leftovers()

    def test_invalid_json(self) -> None:
        with self.assertRaises(FileFormatError) as ctx:
            self.parser.parse(self._zip("{not json"))
        self.assertEqual(ctx.exception.code, "INVALID_JSON")
        self._assert_no_leftovers()

    def test_empty_document(self) -> None:
        with self.assertRaises(FileFormatError) as ctx:
            self.parser.parse(self._zip("   "))
        self.assertEqual(ctx.exception.code, "EMPTY_FILE")

    def test_legacy_entry_name(self) -> None:
        """Test that a single JSON entry with another name is accepted."""
        data = self.parser.parse(self._zip(sample_bundle(), entry_name="export.json"))
        self.assertEqual(data["account"]["username"], "cook")

    def test_ambiguous_archive(self) -> None:
        path = Path(self.temp_dir) / "two.zip"
        with zipfile.ZipFile(path, "w") as archive:
            archive.writestr("a.json", "{}")
            archive.writestr("b.json", "{}")
        with self.assertRaises(FileFormatError) as ctx:
            self.parser.parse(path)
        self.assertEqual(ctx.exception.code, "INVALID_STRUCTURE")

    def test_document_too_large(self) -> None:
        parser = BundleParser(max_file_size=10, temp_dir=self.extract_dir)
        with self.assertRaises(FileFormatError) as ctx:
            parser.parse(self._zip(sample_bundle()))
        self.assertEqual(ctx.exception.code, "FILE_TOO_LARGE")
        self.assertEqual(ctx.exception.status_code, 413)

    def test_newer_major_version(self) -> None:
        with self.assertRaises(SchemaError) as ctx:
            self.parser.parse(self._zip(sample_bundle(version="3.0.0")))
        self.assertEqual(ctx.exception.code, "INCOMPATIBLE_VERSION")

    def test_missing_recipes(self) -> None:
        bundle = sample_bundle()
        del bundle["recipes"]
        with self.assertRaises(SchemaError) as ctx:
            self.parser.parse(self._zip(bundle))
        self.assertEqual(ctx.exception.code, "MISSING_FIELD")

    def test_parse_bytes_json(self) -> None:
        data = self.parser.parse_bytes(json.dumps(sample_bundle()).encode())
        self.assertEqual(data["type"], "manual")

    def test_parse_bytes_zip(self) -> None:
        data = self.parser.parse_bytes(zip_bytes(sample_bundle()))
        self.assertEqual(len(data["collections"]), 1)
        self._assert_no_leftovers()

    def test_parse_bytes_rejects_empty_and_oversized(self) -> None:
        with self.assertRaises(FileFormatError) as ctx:
            self.parser.parse_bytes(b"")
        self.assertEqual(ctx.exception.code, "EMPTY_FILE")

        parser = BundleParser(max_file_size=5)
        with self.assertRaises(FileFormatError) as ctx:
            parser.parse_bytes(b"{" + b" " * 10 + b"}")
        self.assertEqual(ctx.exception.code, "FILE_TOO_LARGE")

    def test_preview(self) -> None:
        preview = self.parser.preview(self._zip(sample_bundle()))

        self.assertEqual(preview["version"], "2.2.0")
        self.assertEqual(preview["type"], "manual")
        self.assertEqual(preview["statistics"]["recipeCount"], 2)
        self.assertEqual(
            preview["details"]["recipes"],
            [{"id": "r1", "title": "Pancakes"}, {"id": "r2", "title": "Tomato Soup"}],
        )
        self.assertEqual(preview["details"]["collections"][0]["recipeCount"], 3)
        self.assertEqual(preview["details"]["shoppingLists"][0]["itemCount"], 3)

    def test_preview_without_details(self) -> None:
        preview = self.parser.preview(self._zip(sample_bundle()), include_details=False)
        self.assertNotIn("details", preview)

    def test_preview_malformed_nested_fields(self) -> None:
        """Test that preview of an unvalidated bundle treats non-list fields as empty."""
        bundle = sample_bundle(
            collections=[{"name": "x", "recipeIds": 5}],
            mealPlans=[{"name": "Week", "date": "2024-05-06", "meals": "none"}],
            shoppingLists=[{"name": "Groceries", "items": {"milk": 1}}],
            statistics="lots",
        )

        preview = self.parser.preview(self._zip(bundle))

        details = preview["details"]
        self.assertEqual(details["collections"], [{"name": "x", "recipeCount": 0, "recipeIds": []}])
        self.assertEqual(details["mealPlans"][0]["mealCount"], 0)
        self.assertEqual(details["shoppingLists"][0]["itemCount"], 0)
        self.assertEqual(preview["statistics"]["collectionCount"], 1)

    def test_parse_bytes_uses_file_suffix(self) -> None:
        raw_json = json.dumps(sample_bundle()).encode()

        self.assertEqual(self.parser.parse_bytes(raw_json, "backup.json")["type"], "manual")
        data = self.parser.parse_bytes(zip_bytes(sample_bundle()), "Backup.ZIP")
        self.assertEqual(len(data["recipes"]), 2)

        for raw, filename in (
            (b"not an archive", "notes.zip"),
            (raw_json, "backup.zip"),
            (raw_json, "backup.txt"),
            (zip_bytes(sample_bundle()), "backup"),
        ):
            with self.subTest(filename=filename):
                with self.assertRaises(FileFormatError) as ctx:
                    self.parser.parse_bytes(raw, filename)
                self.assertEqual(ctx.exception.code, "INVALID_FILE_TYPE")


class TestExportImportRoundTrip(unittest.TestCase):
    """An exported account imported into a second account keeps its content."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        self.store = RecipeStore(Path(self.temp_dir) / "data")
        self.source = self.store.create_account(Account.create("cook", "c@example.com", "h"))
        self.target = self.store.create_account(Account.create("friend", "f@example.com", "h"))
        self.restorer = BackupRestorer(self.store)
        self.restorer.restore(self.source.id, sample_bundle(), "merge")

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_round_trip(self) -> None:
        generator = BackupGenerator(self.store, work_dir=Path(self.temp_dir) / "work")
        backup = generator.generate(self.source.id)
        bundle = BundleParser().parse(backup.path)

        stats = self.restorer.restore(self.target.id, bundle, "merge")

        self.assertEqual(stats.total_imported, 5)
        self.assertEqual(
            self.store.count_entities(self.target.id), self.store.count_entities(self.source.id)
        )

        source_titles = sorted(r.title for r in self.store.get_recipes(self.source.id))
        target_recipes = self.store.get_recipes(self.target.id)
        self.assertEqual(sorted(r.title for r in target_recipes), source_titles)

        target_ids = {r.id for r in target_recipes}
        collection = self.store.get_collections(self.target.id)[0]
        self.assertEqual(len(collection.recipe_ids), 2)
        self.assertTrue(set(collection.recipe_ids) <= target_ids)

        # Re-importing the same archive in merge mode skips everything
        again = self.restorer.restore(self.target.id, bundle, "merge")
        self.assertEqual(again.total_imported, 0)
        self.assertEqual(again.total_skipped, 5)


if __name__ == "__main__":
    unittest.main()

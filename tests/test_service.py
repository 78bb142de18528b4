"""
Tests for BackupService.

Uses Python's unittest module with a real store and the local folder
provider; nothing leaves the temporary directory.
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
import unittest
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import patch

from bundle_samples import sample_bundle, write_zip, zip_bytes
from cryptography.fernet import Fernet

from recipevault.config.credentials import TOKEN_KEY_FILENAME, TokenCipher, hash_password
from recipevault.config.settings import Settings
from recipevault.interchange.errors import (
    ContentValidationError,
    FileFormatError,
    ProviderError,
    SchemaError,
    SecurityError,
)
from recipevault.providers.base import ProviderRegistry
from recipevault.providers.local import LocalFolderProvider
from recipevault.scheduler import BackupScheduler
from recipevault.service import BackupService
from recipevault.storage.models import Account, BackupStatus, ProviderConnection, ProviderKind
from recipevault.storage.recipe_store import RecipeStore
from recipevault.storage.state_store import MemoryStateStore

NOW = datetime(2024, 5, 1, 10, 0, tzinfo=UTC)
PASSWORD = "correct horse"


class ServiceTestCase(unittest.TestCase):
    """Shared fixture: a service over a temporary store with a local provider."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        base = Path(self.temp_dir)

        self.settings = Settings()
        self.settings.data_dir = str(base / "data")
        self.settings.work_dir = str(base / "work")
        self.settings.providers.local.root = str(base / "cloud")

        self.store = RecipeStore(base / "data")
        self.downloads = base / "downloads"
        self.provider = LocalFolderProvider(
            base / "cloud", download_dir=self.downloads, clock=lambda: NOW
        )
        self.state_time = 1_000.0
        self.service = BackupService(
            self.store,
            TokenCipher(Fernet.generate_key()),
            providers=ProviderRegistry([self.provider]),
            state_store=MemoryStateStore(clock=lambda: self.state_time),
            settings=self.settings,
            clock=lambda: NOW,
        )
        # Low iteration count keeps the password checks fast
        self.account = self.store.create_account(
            Account.create("cook", "cook@example.com", hash_password(PASSWORD, iterations=1_000))
        )

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _connect(self) -> None:
        _, state = self.service.begin_provider_authorization(self.account.id, "local")
        self.service.complete_provider_authorization(state, "")

    def _recipe_titles(self) -> list[str]:
        return sorted(r.title for r in self.store.get_recipes(self.account.id))


class TestImportExport(ServiceTestCase):
    """Tests for manual bundle import and export."""

    def test_import_bytes(self) -> None:
        summary = self.service.import_bundle(self.account.id, zip_bytes(sample_bundle()))

        self.assertEqual(summary.total_imported, 5)
        self.assertEqual(self._recipe_titles(), ["Pancakes", "Tomato Soup"])

    def test_import_path(self) -> None:
        path = write_zip(Path(self.temp_dir) / "upload.zip", sample_bundle())
        summary = self.service.import_bundle(self.account.id, path)
        self.assertEqual(summary.recipes_imported, 2)

    def test_import_checks_file_type(self) -> None:
        corrupt = Path(self.temp_dir) / "notes.zip"
        corrupt.write_text("not an archive")
        misnamed = Path(self.temp_dir) / "recipes.csv"
        misnamed.write_bytes(zip_bytes(sample_bundle()))

        for path in (corrupt, misnamed):
            with self.subTest(path=path.name):
                with self.assertRaises(FileFormatError) as ctx:
                    self.service.import_bundle(self.account.id, path)
                self.assertEqual(ctx.exception.code, "INVALID_FILE_TYPE")
        self.assertEqual(self._recipe_titles(), [])

    def test_import_named_json_upload(self) -> None:
        raw = json.dumps(sample_bundle()).encode()
        summary = self.service.import_bundle(self.account.id, raw, filename="backup.json")
        self.assertEqual(summary.total_imported, 5)

    def test_import_without_file(self) -> None:
        for raw in (None, b"", Path(self.temp_dir) / "missing.zip"):
            with self.subTest(raw=raw):
                with self.assertRaises(FileFormatError) as ctx:
                    self.service.import_bundle(self.account.id, raw)
                self.assertEqual(ctx.exception.code, "NO_FILE")

    def test_import_oversized_path(self) -> None:
        self.settings.imports.max_file_size = 10
        path = write_zip(Path(self.temp_dir) / "upload.zip", sample_bundle())

        with self.assertRaises(FileFormatError) as ctx:
            self.service.import_bundle(self.account.id, path)
        self.assertEqual(ctx.exception.code, "FILE_TOO_LARGE")

    def test_import_invalid_mode(self) -> None:
        with self.assertRaises(ContentValidationError) as ctx:
            self.service.import_bundle(self.account.id, zip_bytes(sample_bundle()), "append")
        self.assertEqual(ctx.exception.code, "INVALID_MODE")

    def test_replace_requires_password(self) -> None:
        raw = zip_bytes(sample_bundle())
        for password in (None, "wrong"):
            with self.subTest(password=password):
                with self.assertRaises(SecurityError) as ctx:
                    self.service.import_bundle(self.account.id, raw, "replace", password)
                self.assertEqual(ctx.exception.code, "INVALID_PASSWORD")
        self.assertEqual(self._recipe_titles(), [])

    def test_replace_with_password(self) -> None:
        self.service.import_bundle(self.account.id, zip_bytes(sample_bundle()))
        replacement = sample_bundle(collections=[], mealPlans=[], shoppingLists=[])
        replacement["recipes"] = replacement["recipes"][:1]

        self.service.import_bundle(self.account.id, zip_bytes(replacement), "replace", PASSWORD)

        self.assertEqual(self._recipe_titles(), ["Pancakes"])
        self.assertEqual(self.store.count_entities(self.account.id)["collections"], 0)

    def test_invalid_bundle_fails_before_password_check(self) -> None:
        raw = zip_bytes(sample_bundle(version="7.0.0"))
        with self.assertRaises(SchemaError):
            self.service.import_bundle(self.account.id, raw, "replace")

    def test_export(self) -> None:
        self.service.import_bundle(self.account.id, zip_bytes(sample_bundle()))
        output_dir = Path(self.temp_dir) / "exports"

        backup = self.service.export_bundle(self.account.id, output_dir)

        self.assertEqual(backup.path.parent, output_dir)
        self.assertTrue(backup.filename.startswith("recipe-book-manual-backup-"))
        self.assertEqual(backup.statistics["recipeCount"], 2)


class TestProviderConnection(ServiceTestCase):
    """Tests for the two-step connect flow."""

    def test_connect_and_status(self) -> None:
        url, state = self.service.begin_provider_authorization(self.account.id, "local")
        self.assertIn(state, url)

        connection = self.service.complete_provider_authorization(state, "")

        self.assertEqual(connection.provider, ProviderKind.LOCAL)
        self.assertEqual(connection.account_id, self.account.id)
        status = self.service.get_cloud_status(self.account.id)
        self.assertTrue(status["connected"])
        self.assertEqual(status["provider"], "local")
        self.assertFalse(status["schedule"]["enabled"])

    def test_state_is_single_use(self) -> None:
        _, state = self.service.begin_provider_authorization(self.account.id, "local")
        self.service.complete_provider_authorization(state, "")

        with self.assertRaises(SecurityError) as ctx:
            self.service.complete_provider_authorization(state, "")
        self.assertEqual(ctx.exception.code, "INVALID_STATE")

    def test_unknown_and_expired_state(self) -> None:
        with self.assertRaises(SecurityError):
            self.service.complete_provider_authorization("not-a-state", "")

        _, state = self.service.begin_provider_authorization(self.account.id, "local")
        self.state_time += self.settings.security.oauth_state_ttl_seconds + 1
        with self.assertRaises(SecurityError) as ctx:
            self.service.complete_provider_authorization(state, "")
        self.assertEqual(ctx.exception.code, "INVALID_STATE")

    def test_unconfigured_provider(self) -> None:
        with self.assertRaises(ProviderError) as ctx:
            self.service.begin_provider_authorization(self.account.id, "dropbox")
        self.assertEqual(ctx.exception.code, "UNSUPPORTED_PROVIDER")

    def test_disconnect(self) -> None:
        self._connect()
        self.service.update_schedule(self.account.id, enabled=True)

        kind = self.service.disconnect_provider(self.account.id)

        self.assertEqual(kind, ProviderKind.LOCAL)
        status = self.service.get_cloud_status(self.account.id)
        self.assertEqual(status, {"connected": False, "provider": None})
        self.assertFalse(self.service.get_schedule(self.account.id).enabled)
        with self.assertRaises(ProviderError) as ctx:
            self.service.disconnect_provider(self.account.id)
        self.assertEqual(ctx.exception.code, "NOT_CONNECTED")


class TestCloudBackups(ServiceTestCase):
    """Tests for manual cloud backups and remote restores."""

    def setUp(self) -> None:
        super().setUp()
        self.service.import_bundle(self.account.id, zip_bytes(sample_bundle()))

    def test_requires_connection(self) -> None:
        with self.assertRaises(ProviderError) as ctx:
            self.service.generate_and_upload_backup(self.account.id)
        self.assertEqual(ctx.exception.code, "NOT_CONNECTED")

    def test_generate_and_upload(self) -> None:
        self._connect()

        info = self.service.generate_and_upload_backup(self.account.id)

        self.assertEqual(info["type"], "manual")
        self.assertEqual(info["timestamp"], NOW.isoformat())
        settings = self.store.get_backup_settings(self.account.id)
        self.assertEqual(settings.stats.manual_backups, 1)
        self.assertEqual(settings.stats.last_manual_backup, NOW)
        self.assertEqual(settings.schedule.last_backup_status, BackupStatus.SUCCESS)
        # The locally generated archive is gone
        self.assertEqual(os.listdir(Path(self.settings.work_dir) / "generated"), [])

    def test_upload_failure_marks_status(self) -> None:
        self._connect()
        with patch.object(
            self.provider, "upload_backup", side_effect=ProviderError("disk full")
        ):
            with self.assertRaises(ProviderError):
                self.service.generate_and_upload_backup(self.account.id)

        status = self.service.get_schedule(self.account.id).last_backup_status
        self.assertEqual(status, BackupStatus.FAILED)
        self.assertEqual(os.listdir(Path(self.settings.work_dir) / "generated"), [])

    def test_list_preview_and_delete(self) -> None:
        self._connect()
        info = self.service.generate_and_upload_backup(self.account.id)

        backups = self.service.list_remote_backups(self.account.id, limit=0)
        self.assertEqual([b.id for b in backups], [info["id"]])

        preview = self.service.preview_backup(self.account.id, info["id"])
        self.assertEqual(preview["statistics"]["recipeCount"], 2)
        self.assertEqual(os.listdir(self.downloads), [])

        self.service.delete_remote_backup(self.account.id, info["id"])
        self.assertEqual(self.service.list_remote_backups(self.account.id), [])

    def test_restore_requires_password(self) -> None:
        self._connect()
        info = self.service.generate_and_upload_backup(self.account.id)

        with self.assertRaises(SecurityError) as ctx:
            self.service.restore_from_remote(self.account.id, info["id"], "merge", None)
        self.assertEqual(ctx.exception.code, "INVALID_PASSWORD")

    def test_restore_replace(self) -> None:
        self._connect()
        info = self.service.generate_and_upload_backup(self.account.id)
        extra = {
            "title": "Added later",
            "ingredients": [{"name": "Salt", "amount": "1"}],
            "instructions": ["Season"],
        }
        later = sample_bundle(recipes=[extra], collections=[], mealPlans=[], shoppingLists=[])
        self.service.import_bundle(self.account.id, zip_bytes(later))
        self.assertIn("Added later", self._recipe_titles())

        stats = self.service.restore_from_remote(self.account.id, info["id"], "replace", PASSWORD)

        self.assertEqual(stats.total_imported, 5)
        self.assertEqual(self._recipe_titles(), ["Pancakes", "Tomato Soup"])
        self.assertEqual(os.listdir(self.downloads), [])

    def test_restore_merge_skips_duplicates(self) -> None:
        self._connect()
        info = self.service.generate_and_upload_backup(self.account.id)

        stats = self.service.restore_from_remote(self.account.id, info["id"], "merge", PASSWORD)

        self.assertEqual(stats.total_imported, 0)
        self.assertEqual(stats.total_skipped, 5)


class TestSchedule(ServiceTestCase):
    """Tests for schedule management."""

    def test_enable_requires_connection(self) -> None:
        with self.assertRaises(ProviderError) as ctx:
            self.service.update_schedule(self.account.id, enabled=True)
        self.assertEqual(ctx.exception.code, "NOT_CONNECTED")

    def test_enable_computes_next_backup(self) -> None:
        self._connect()
        schedule = self.service.update_schedule(
            self.account.id, enabled=True, frequency="daily", time="23:30", timezone="UTC"
        )

        self.assertTrue(schedule.enabled)
        self.assertEqual(schedule.next_backup, datetime(2024, 5, 1, 23, 30, tzinfo=UTC))
        self.assertEqual(self.service.get_schedule(self.account.id).time, "23:30")

    def test_disable_clears_next_backup(self) -> None:
        self._connect()
        self.service.update_schedule(self.account.id, enabled=True)
        schedule = self.service.update_schedule(self.account.id, enabled=False)

        self.assertFalse(schedule.enabled)
        self.assertIsNone(schedule.next_backup)

    def test_reenable_resets_failures(self) -> None:
        self._connect()
        schedule = self.service.get_schedule(self.account.id)
        schedule.failure_count = 3
        self.store.save_schedule(self.account.id, schedule)

        schedule = self.service.update_schedule(self.account.id, enabled=True)

        self.assertEqual(schedule.failure_count, 0)

    def test_invalid_values(self) -> None:
        self._connect()
        for kwargs in ({"time": "7pm"}, {"frequency": "hourly"}, {"timezone": "Nowhere/City"}):
            with self.subTest(**kwargs):
                with self.assertRaises(ContentValidationError) as ctx:
                    self.service.update_schedule(self.account.id, **kwargs)
                self.assertEqual(ctx.exception.code, "INVALID_SCHEDULE")

    def test_scheduler_runs_enabled_schedule(self) -> None:
        """Test that a scheduler built by the service picks up a due schedule."""
        self._connect()
        schedule = self.service.update_schedule(self.account.id, enabled=True)
        self.service._clock = lambda: schedule.next_backup + timedelta(minutes=1)

        scheduler = self.service.create_scheduler()
        self.assertIsInstance(scheduler, BackupScheduler)
        report = scheduler.run_tick()

        self.assertEqual(report.succeeded, [self.account.id])


class TestFromSettings(unittest.TestCase):
    """Tests for BackupService.from_settings."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_builds_collaborators(self) -> None:
        settings = Settings()
        settings.data_dir = str(Path(self.temp_dir) / "data")
        settings.work_dir = str(Path(self.temp_dir) / "work")
        settings.providers.local.root = str(Path(self.temp_dir) / "cloud")

        service = BackupService.from_settings(settings)

        self.assertEqual(service.providers.kinds(), [ProviderKind.LOCAL])
        self.assertTrue((Path(self.temp_dir) / "data" / TOKEN_KEY_FILENAME).exists())

    def test_refreshed_tokens_are_persisted(self) -> None:
        settings = Settings()
        settings.data_dir = str(Path(self.temp_dir) / "data")
        settings.work_dir = str(Path(self.temp_dir) / "work")
        service = BackupService.from_settings(settings)
        account = service.store.create_account(Account.create("cook", "c@example.com", "h"))
        service.store.save_connection(
            account.id,
            ProviderConnection(
                provider=ProviderKind.DROPBOX,
                account_id=account.id,
                access_token="old-encrypted",
                refresh_token="refresh-encrypted",
            ),
        )

        connection = service.store.get_backup_settings(account.id).connection
        connection.access_token = "new-encrypted"
        connection.token_expiry = NOW + timedelta(hours=4)
        service._persist_tokens(connection)

        stored = service.store.get_backup_settings(account.id).connection
        self.assertEqual(stored.access_token, "new-encrypted")
        self.assertEqual(stored.token_expiry, NOW + timedelta(hours=4))


if __name__ == "__main__":
    unittest.main()

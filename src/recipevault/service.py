"""
Controller-facing backup service.

BackupService is the surface an HTTP layer (or the CLI) calls: manual bundle
import and export, cloud backups and restores, schedule management and the
provider connect flow. It wires the interchange components, the provider
registry, the token cipher and the OAuth state store together.

Replace-mode imports and every remote restore are destructive and require
the account password.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from recipevault.config.credentials import (
    TokenCipher,
    hash_password,
    load_or_create_token_key,
    verify_password,
)
from recipevault.config.settings import Settings
from recipevault.interchange.duplicates import DuplicateDetector
from recipevault.interchange.errors import (
    ContentValidationError,
    FileFormatError,
    ProviderError,
    SecurityError,
)
from recipevault.interchange.generator import BackupGenerator, GeneratedBackup
from recipevault.interchange.parser import BundleParser
from recipevault.interchange.processor import ImportSummary
from recipevault.interchange.restorer import BackupRestorer, RestoreStatistics, validate_mode
from recipevault.interchange.validator import BundleValidator
from recipevault.notifications import LoggingNotificationSender, NotificationSender
from recipevault.providers import build_registry
from recipevault.providers.base import CloudProvider, ProviderRegistry, RemoteBackup
from recipevault.scheduler.backup_scheduler import (
    BackupScheduler,
    calculate_next_backup,
    get_timezone,
    parse_schedule_time,
)
from recipevault.storage.models import (
    Account,
    BackupFrequency,
    BackupSettings,
    BackupStatus,
    ProviderConnection,
    ProviderKind,
    ScheduleState,
    utc_now,
)
from recipevault.storage.recipe_store import RecipeStore, StorageError
from recipevault.storage.state_store import (
    MemoryStateStore,
    SQLiteStateStore,
    StateStore,
    TieredStateStore,
)

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 10
MAX_LIST_LIMIT = 100
OAUTH_STATE_PREFIX = "oauth:state:"
STATE_DB_FILENAME = "state.db"


class BackupService:
    """
    Entry point for backup, restore and schedule operations.

    Example:
        service = BackupService.from_settings(load_config())
        summary = service.import_bundle(account_id, Path("backup.zip"))
        info = service.generate_and_upload_backup(account_id)
        stats = service.restore_from_remote(account_id, info["id"], "merge", password)
    """

    def __init__(
        self,
        store: RecipeStore,
        cipher: TokenCipher,
        providers: ProviderRegistry | None = None,
        state_store: StateStore | None = None,
        notifier: NotificationSender | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """
        Initialize the service.

        Args:
            store: Account and entity storage.
            cipher: Cipher for provider tokens.
            providers: Configured provider adapters.
            state_store: Holds OAuth state between the two connect steps.
            notifier: Receives scheduler failure notices.
            settings: Loaded settings; defaults apply when omitted.
            clock: Source of the current time.
        """
        self.settings = settings or Settings()
        self.store = store
        self.cipher = cipher
        self.providers = providers or ProviderRegistry()
        self.state_store = state_store or MemoryStateStore()
        self.notifier = notifier or LoggingNotificationSender()
        self._clock = clock

        work_dir = Path(self.settings.work_dir).expanduser()
        self.validator = BundleValidator(
            reject_malicious_content=self.settings.imports.reject_malicious_content
        )
        self.parser = BundleParser(
            max_file_size=self.settings.imports.max_file_size,
            temp_dir=work_dir / "extract",
        )
        self.generator = BackupGenerator(store, work_dir=work_dir / "generated", clock=clock)
        self.restorer = BackupRestorer(
            store,
            validator=self.validator,
            detector=DuplicateDetector(store),
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        notifier: NotificationSender | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> BackupService:
        """
        Build a service and its collaborators from settings.

        The OAuth state store is two-tiered: a SQLite table in the data
        directory, falling back to process memory if that table is
        unavailable.
        """
        data_dir = Path(settings.data_dir).expanduser()
        store = RecipeStore(data_dir)
        cipher = TokenCipher(load_or_create_token_key(data_dir, settings.security.token_key))
        state_store = TieredStateStore(
            SQLiteStateStore(data_dir / STATE_DB_FILENAME),
            MemoryStateStore(),
        )
        service = cls(
            store,
            cipher,
            state_store=state_store,
            notifier=notifier,
            settings=settings,
            clock=clock,
        )
        service.providers = build_registry(
            settings, cipher, on_tokens_refreshed=service._persist_tokens, clock=clock
        )
        return service

    def create_scheduler(self) -> BackupScheduler:
        """Build a BackupScheduler sharing this service's collaborators."""
        config = self.settings.scheduler
        return BackupScheduler(
            self.store,
            self.providers,
            BackupGenerator(
                self.store,
                work_dir=Path(self.settings.work_dir).expanduser() / "scheduled",
                clock=self._clock,
            ),
            self.notifier,
            clock=self._clock,
            tick_interval=config.tick_interval_seconds,
            batch_size=config.batch_size,
            max_failures=config.max_failures,
            retry_delay=timedelta(seconds=config.retry_delay_seconds),
        )

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------

    def create_account(self, username: str, email: str, password: str) -> Account:
        """Create an account with a hashed password."""
        account = Account.create(username, email, hash_password(password))
        return self.store.create_account(account)

    def _verify_password(self, account_id: str, password: str | None, action: str) -> None:
        account = self.store.get_account(account_id)
        if not password:
            raise SecurityError(f"Password required for {action}", code="INVALID_PASSWORD")
        if not verify_password(password, account.password_hash):
            logger.warning(f"Invalid password for {action} by account {account_id}")
            raise SecurityError("Invalid password", code="INVALID_PASSWORD")

    # -------------------------------------------------------------------------
    # Manual import / export
    # -------------------------------------------------------------------------

    def import_bundle(
        self,
        account_id: str,
        raw_file: bytes | Path | str | None,
        mode: str = "merge",
        password: str | None = None,
        filename: str | None = None,
    ) -> ImportSummary:
        """
        Import an uploaded bundle into an account.

        Args:
            account_id: Target account.
            raw_file: Uploaded content, or a path to it.
            mode: "merge" (default) or "replace".
            password: Account password, required for replace mode.
            filename: Original name of an uploaded file. Paths use their
                own name. The suffix selects ZIP or JSON decoding.

        Returns:
            ImportSummary of the committed import.

        Raises:
            FileFormatError: If the upload is missing, of the wrong type or
                undecodable.
            SchemaError / ContentValidationError: If the bundle is invalid.
            SecurityError: If replace mode lacks the right password.
            TransactionError: If writing failed.
        """
        validate_mode(mode)
        raw, name = self._read_upload(raw_file)
        bundle = self.parser.parse_bytes(raw, filename or name)

        # Validate before asking for the password so bad files fail fast
        self.validator.validate(bundle)
        if mode == "replace":
            self._verify_password(account_id, password, "replace mode")

        stats = self.restorer.restore(account_id, bundle, mode)
        return stats.summary

    def _read_upload(
        self, raw_file: bytes | Path | str | None
    ) -> tuple[bytes, str | None]:
        if raw_file is None or raw_file == b"":
            raise FileFormatError("No file uploaded", code="NO_FILE")
        if isinstance(raw_file, bytes):
            return raw_file, None

        path = Path(raw_file)
        if not path.is_file():
            raise FileFormatError(f"File not found: {path}", code="NO_FILE")
        max_size = self.settings.imports.max_file_size
        if path.stat().st_size > max_size:
            raise FileFormatError(
                f"File exceeds maximum size of {max_size} bytes",
                code="FILE_TOO_LARGE",
                details={"maxSize": max_size},
            )
        return path.read_bytes(), path.name

    def export_bundle(self, account_id: str, output_dir: Path | str) -> GeneratedBackup:
        """Write a manual bundle archive for an account into output_dir."""
        generator = BackupGenerator(self.store, work_dir=output_dir, clock=self._clock)
        return generator.generate(account_id, "manual")

    # -------------------------------------------------------------------------
    # Cloud backups
    # -------------------------------------------------------------------------

    def _connected(self, account_id: str) -> tuple[BackupSettings, CloudProvider]:
        settings = self.store.get_backup_settings(account_id)
        if settings.connection is None:
            raise ProviderError(
                "No cloud provider connected. Connect a provider first.",
                code="NOT_CONNECTED",
            )
        return settings, self.providers.get(settings.connection.provider)

    def generate_and_upload_backup(self, account_id: str) -> dict[str, Any]:
        """
        Create a manual backup and upload it to the connected provider.

        Returns:
            Backup info: id, filename, size, path, timestamp, type.

        Raises:
            ProviderError: If no provider is connected or the upload fails.
        """
        settings, provider = self._connected(account_id)
        connection = settings.connection
        logger.info(f"Manual backup requested for account {account_id}")

        backup = self.generator.generate(account_id, "manual")
        try:
            uploaded = provider.upload_backup(connection, backup.path, "manual")
        except Exception:
            settings.schedule.last_backup_status = BackupStatus.FAILED
            try:
                self.store.save_schedule(account_id, settings.schedule)
            except StorageError as e:
                logger.error(f"Failed to update backup status for account {account_id}: {e}")
            raise
        finally:
            self.generator.cleanup_backup_file(backup.path)

        now = self._clock()
        stats = settings.stats
        stats.total_backups += 1
        stats.manual_backups += 1
        stats.last_manual_backup = now
        stats.total_storage_used += backup.size
        self.store.save_stats(account_id, stats)

        settings.schedule.last_backup = now
        settings.schedule.last_backup_status = BackupStatus.SUCCESS
        self.store.save_schedule(account_id, settings.schedule)

        logger.info(f"Manual backup successful for account {account_id}: {uploaded.name}")
        return {
            "id": uploaded.id,
            "filename": uploaded.name,
            "size": uploaded.size,
            "path": uploaded.path,
            "timestamp": now.isoformat(),
            "type": "manual",
        }

    def list_remote_backups(
        self, account_id: str, limit: int = DEFAULT_LIST_LIMIT
    ) -> list[RemoteBackup]:
        """List the account's remote backups, newest first (limit clamped to 1..100)."""
        settings, provider = self._connected(account_id)
        limit = min(max(int(limit), 1), MAX_LIST_LIMIT)
        return provider.list_backups(settings.connection, limit)

    def delete_remote_backup(self, account_id: str, backup_id: str) -> None:
        """Delete one remote backup."""
        settings, provider = self._connected(account_id)
        provider.delete_backup(settings.connection, backup_id)
        logger.info(f"Deleted remote backup {backup_id} for account {account_id}")

    def preview_backup(self, account_id: str, backup_id: str) -> dict[str, Any]:
        """Download a remote backup and summarize it without importing."""
        settings, provider = self._connected(account_id)
        local_path = provider.download_backup(settings.connection, backup_id)
        try:
            return self.parser.preview(local_path)
        finally:
            local_path.unlink(missing_ok=True)

    def restore_from_remote(
        self,
        account_id: str,
        backup_id: str,
        mode: str,
        password: str | None,
    ) -> RestoreStatistics:
        """
        Restore a remote backup into the account.

        Raises:
            SecurityError: If the password is missing or wrong.
            ProviderError: If the download fails.
            TransactionError: If writing failed.
        """
        validate_mode(mode)
        self._verify_password(account_id, password, "restore")
        settings, provider = self._connected(account_id)

        logger.info(f"Restoring backup {backup_id} for account {account_id} ({mode})")
        local_path = provider.download_backup(settings.connection, backup_id)
        try:
            bundle = self.parser.parse(local_path)
        finally:
            local_path.unlink(missing_ok=True)

        return self.restorer.restore(account_id, bundle, mode)

    # -------------------------------------------------------------------------
    # Schedule
    # -------------------------------------------------------------------------

    def get_schedule(self, account_id: str) -> ScheduleState:
        return self.store.get_backup_settings(account_id).schedule

    def update_schedule(
        self,
        account_id: str,
        enabled: bool | None = None,
        frequency: str | None = None,
        time: str | None = None,
        timezone: str | None = None,
    ) -> ScheduleState:
        """
        Change an account's automatic backup schedule.

        Enabling computes next_backup; disabling clears it. Re-enabling a
        schedule resets its failure count.

        Raises:
            ContentValidationError: For an invalid frequency, time or
                timezone (code INVALID_SCHEDULE).
            ProviderError: If enabling without a connected provider.
        """
        settings = self.store.get_backup_settings(account_id)
        schedule = settings.schedule

        try:
            if frequency is not None:
                schedule.frequency = BackupFrequency.from_string(frequency)
            if time is not None:
                parse_schedule_time(time)
                schedule.time = time
            if timezone is not None:
                get_timezone(timezone)
                schedule.timezone = timezone
        except ValueError as e:
            raise ContentValidationError(str(e), code="INVALID_SCHEDULE") from e

        if enabled is not None:
            if enabled and settings.connection is None:
                raise ProviderError(
                    "Connect a cloud provider before enabling automatic backups",
                    code="NOT_CONNECTED",
                )
            if enabled and not schedule.enabled:
                schedule.failure_count = 0
            schedule.enabled = enabled

        if schedule.enabled:
            schedule.next_backup = calculate_next_backup(
                schedule.frequency, schedule.time, schedule.timezone, self._clock()
            )
        else:
            schedule.next_backup = None

        self.store.save_schedule(account_id, schedule)
        logger.info(
            f"Backup schedule updated for account {account_id}: "
            f"enabled={schedule.enabled}, {schedule.frequency.value} at {schedule.time} "
            f"{schedule.timezone}"
        )
        return schedule

    # -------------------------------------------------------------------------
    # Provider connection
    # -------------------------------------------------------------------------

    def begin_provider_authorization(
        self, account_id: str, kind: ProviderKind | str
    ) -> tuple[str, str]:
        """
        Start connecting a provider.

        Returns:
            (authorization URL, state token). The state is single use and
            expires after security.oauth_state_ttl_seconds.
        """
        self.store.get_account(account_id)
        provider = self.providers.get(kind)
        state = secrets.token_hex(16)
        self.state_store.put(
            OAUTH_STATE_PREFIX + state,
            {"account_id": account_id, "provider": provider.kind.value},
            self.settings.security.oauth_state_ttl_seconds,
        )
        return provider.authorization_url(state), state

    def complete_provider_authorization(self, state: str, code: str) -> ProviderConnection:
        """
        Finish connecting a provider after the user granted access.

        Raises:
            SecurityError: If the state is unknown, expired or already used
                (code INVALID_STATE).
            ProviderError: If the code exchange fails.
        """
        pending = self.state_store.pop(OAUTH_STATE_PREFIX + state) if state else None
        if pending is None:
            logger.warning("Invalid or expired OAuth state token")
            raise SecurityError("Invalid or expired authorization state", code="INVALID_STATE")

        account_id = pending["account_id"]
        provider = self.providers.get(pending["provider"])
        grant = provider.exchange_code(code)

        now = self._clock()
        connection = ProviderConnection(
            provider=provider.kind,
            account_id=account_id,
            access_token=self.cipher.encrypt(grant.access_token) if grant.access_token else "",
            refresh_token=self.cipher.encrypt(grant.refresh_token) if grant.refresh_token else "",
            token_expiry=now + timedelta(seconds=grant.expires_in) if grant.expires_in else None,
            account_email=grant.account_email,
            account_name=grant.account_name,
            connected_at=now,
        )
        # A new connection starts with default schedule, retention and stats
        self.store.save_backup_settings(
            BackupSettings(account_id=account_id, connection=connection)
        )
        logger.info(f"{provider.kind.value} connected for account {account_id}")
        return connection

    def disconnect_provider(self, account_id: str) -> ProviderKind:
        """Remove the connection and reset backup settings to defaults."""
        settings = self.store.get_backup_settings(account_id)
        if settings.connection is None:
            raise ProviderError("No cloud provider connected", code="NOT_CONNECTED")

        kind = settings.connection.provider
        self.store.save_backup_settings(BackupSettings(account_id=account_id))
        logger.info(f"{kind.value} disconnected for account {account_id}")
        return kind

    def get_cloud_status(self, account_id: str) -> dict[str, Any]:
        settings = self.store.get_backup_settings(account_id)
        if settings.connection is None:
            return {"connected": False, "provider": None}
        return {
            "connected": True,
            "provider": settings.connection.provider.value,
            "account_email": settings.connection.account_email,
            "account_name": settings.connection.account_name,
            "schedule": settings.schedule.to_dict(),
            "retention": {
                "max_backups": settings.retention.max_backups,
                "auto_cleanup": settings.retention.auto_cleanup,
            },
            "stats": settings.stats.to_dict(),
        }

    def _persist_tokens(self, connection: ProviderConnection) -> None:
        self.store.update_tokens(
            connection.account_id,
            connection.access_token,
            connection.token_expiry,
            connection.refresh_token,
        )

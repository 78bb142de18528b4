"""
Automatic backup scheduler.

A built-in scheduler using threading. Every tick it selects the accounts
whose automatic backup is due, runs their jobs in bounded concurrent
batches, and drives each account through its schedule state machine:

    scheduled(next_backup) -> in_progress -> success   -> scheduled(next occurrence)
                                          -> failure   -> scheduled(now + 1h)
                                          -> 3rd failure -> disabled (+ one notice)

One account's failure never affects another account's job. Local bundle
files are deleted after every upload attempt.
"""

from __future__ import annotations

import calendar
import logging
import re
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from datetime import time as dt_time
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from recipevault.interchange.errors import SchedulingError
from recipevault.interchange.generator import BackupGenerator, GeneratedBackup
from recipevault.notifications import BackupFailureNotice, NotificationSender
from recipevault.providers.base import CloudProvider, ProviderRegistry, UploadedBackup
from recipevault.storage.models import (
    BackupFrequency,
    BackupSettings,
    BackupStatus,
    ProviderConnection,
    utc_now,
)
from recipevault.storage.recipe_store import RecipeStore, StorageError

logger = logging.getLogger(__name__)

# HH:MM, 24 hour
TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

# Listing size used when pruning old backups
CLEANUP_LIST_LIMIT = 100


class SchedulerError(Exception):
    """Base exception for scheduler lifecycle errors."""

    pass


def parse_schedule_time(value: str) -> tuple[int, int]:
    """
    Parse a schedule time of day.

    Raises:
        ValueError: If value is not HH:MM in 24 hour format.
    """
    match = TIME_PATTERN.match(value or "")
    if not match:
        raise ValueError(f"Invalid time: {value!r}. Use HH:MM (24 hour)")
    return int(match.group(1)), int(match.group(2))


def get_timezone(name: str) -> ZoneInfo:
    """
    Resolve an IANA timezone name.

    Raises:
        ValueError: If the timezone is unknown.
    """
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone: {name}") from e


def _add_month(day: date) -> date:
    year, month = (day.year + 1, 1) if day.month == 12 else (day.year, day.month + 1)
    last_day = calendar.monthrange(year, month)[1]
    return day.replace(year=year, month=month, day=min(day.day, last_day))


def calculate_next_backup(
    frequency: BackupFrequency,
    time: str,
    timezone: str,
    now: datetime,
) -> datetime:
    """
    Compute the next automatic backup time.

    Takes today's occurrence of time in the schedule's timezone. If that is
    not after now, rolls forward one day (daily), seven days (weekly) or one
    calendar month (monthly, day clamped to the month's length).

    Args:
        frequency: Backup cadence.
        time: Time of day, HH:MM.
        timezone: IANA timezone name.
        now: Current time (aware).

    Returns:
        Next backup time in UTC.

    Raises:
        ValueError: If time or timezone is invalid.
    """
    hours, minutes = parse_schedule_time(time)
    tz = get_timezone(timezone)
    local_now = now.astimezone(tz)

    day = local_now.date()
    candidate = datetime.combine(day, dt_time(hours, minutes), tzinfo=tz)
    if candidate <= local_now:
        if frequency == BackupFrequency.DAILY:
            day = day + timedelta(days=1)
        elif frequency == BackupFrequency.WEEKLY:
            day = day + timedelta(days=7)
        else:
            day = _add_month(day)
        candidate = datetime.combine(day, dt_time(hours, minutes), tzinfo=tz)

    return candidate.astimezone(UTC)


@dataclass
class TickReport:
    """
    Outcome of one scheduler tick.

    Attributes:
        started_at: When the tick began.
        due: Number of accounts that were due.
        batches: Number of batches run.
        succeeded: Account ids whose backup succeeded.
        failed: Per-account failures.
        skipped: True if another tick was already running.
        error: Set if the due accounts could not be loaded.
    """

    started_at: datetime
    due: int = 0
    batches: int = 0
    succeeded: list[str] = field(default_factory=list)
    failed: list[SchedulingError] = field(default_factory=list)
    skipped: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "due": self.due,
            "batches": self.batches,
            "succeeded": list(self.succeeded),
            "failed": [{"account_id": f.account_id, **f.to_dict()} for f in self.failed],
            "skipped": self.skipped,
            "error": self.error,
        }


class BackupScheduler:
    """
    Runs due automatic backups on a fixed cadence.

    Usage:
        scheduler = BackupScheduler(store, registry, generator, notifier)
        scheduler.start()            # background thread, ticks hourly
        report = scheduler.run_tick()  # or drive ticks directly
        scheduler.stop()
    """

    def __init__(
        self,
        store: RecipeStore,
        providers: ProviderRegistry,
        generator: BackupGenerator,
        notifier: NotificationSender,
        clock: Callable[[], datetime] = utc_now,
        tick_interval: float = 3600,
        batch_size: int = 5,
        max_failures: int = 3,
        retry_delay: timedelta = timedelta(hours=1),
    ) -> None:
        """
        Initialize the scheduler.

        Args:
            store: Account and schedule storage.
            providers: Adapters for connected providers.
            generator: Builds bundle archives.
            notifier: Receives the notice when a schedule is disabled.
            clock: Source of the current time.
            tick_interval: Seconds between ticks in the background loop.
            batch_size: Accounts processed concurrently.
            max_failures: Consecutive failures before a schedule is disabled.
            retry_delay: Delay before retrying a failed backup.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.store = store
        self.providers = providers
        self.generator = generator
        self.notifier = notifier
        self.tick_interval = tick_interval
        self.batch_size = batch_size
        self.max_failures = max_failures
        self.retry_delay = retry_delay
        self._clock = clock

        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        """True while the background loop is alive."""
        return self._thread is not None and self._thread.is_alive()

    def start(self, foreground: bool = False) -> None:
        """
        Start ticking.

        Args:
            foreground: If True, run the loop in the calling thread until
                stop() is called from elsewhere.

        Raises:
            SchedulerError: If the scheduler is already running.
        """
        if self.is_running:
            raise SchedulerError("Backup scheduler is already running")

        self._stop_event.clear()
        logger.info(f"Backup scheduler started (tick every {self.tick_interval:g}s)")
        if foreground:
            self._run_loop()
            return

        self._thread = threading.Thread(
            target=self._run_loop,
            name="recipevault-scheduler",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float | None = 30.0) -> None:
        """Stop the background loop, waiting for an active tick to finish."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Backup scheduler stopped")

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_tick()
            except Exception:
                logger.exception("Error in backup scheduler loop")
            self._stop_event.wait(self.tick_interval)

    # -------------------------------------------------------------------------
    # Ticks
    # -------------------------------------------------------------------------

    def run_tick(self) -> TickReport:
        """
        Run every due backup once.

        Only one tick runs at a time; a call made while another tick is
        active returns immediately with a skipped report.

        Returns:
            TickReport with per-account outcomes.
        """
        report = TickReport(started_at=self._clock())
        if not self._tick_lock.acquire(blocking=False):
            logger.warning("Backup scheduler tick already in progress, skipping")
            report.skipped = True
            return report

        try:
            try:
                due = self.store.list_due_schedules(report.started_at)
            except StorageError as e:
                logger.error(f"Failed to load due backups: {e}")
                report.error = str(e)
                return report

            report.due = len(due)
            if not due:
                logger.debug("No due backups found")
                return report

            logger.info(f"Found {len(due)} due backup(s)")
            with ThreadPoolExecutor(
                max_workers=self.batch_size, thread_name_prefix="recipevault-backup"
            ) as executor:
                for start in range(0, len(due), self.batch_size):
                    batch = due[start : start + self.batch_size]
                    report.batches += 1
                    self._run_batch(executor, batch, report)
                    logger.info(
                        f"Batch {report.batches}: "
                        f"{len(report.succeeded)} successful, {len(report.failed)} failed so far"
                    )

            logger.info("Scheduled backup check completed")
            return report
        finally:
            self._tick_lock.release()

    def _run_batch(
        self,
        executor: ThreadPoolExecutor,
        batch: list[BackupSettings],
        report: TickReport,
    ) -> None:
        futures = [
            (s.account_id, executor.submit(self.execute_scheduled_backup, s.account_id))
            for s in batch
        ]
        # Wait for every job; each outcome is recorded on its own
        for account_id, future in futures:
            try:
                future.result()
                report.succeeded.append(account_id)
            except SchedulingError as e:
                report.failed.append(e)
            except Exception as e:
                logger.exception(f"Unexpected error in backup job for {account_id}")
                report.failed.append(SchedulingError(str(e), account_id))

    # -------------------------------------------------------------------------
    # Per-account job
    # -------------------------------------------------------------------------

    def execute_scheduled_backup(self, account_id: str) -> UploadedBackup:
        """
        Run one account's automatic backup and advance its schedule.

        Returns:
            The uploaded backup.

        Raises:
            SchedulingError: If the backup failed. The failure has already
                been recorded against the schedule.
        """
        logger.info(f"Starting scheduled backup for account {account_id}")
        settings = self.store.get_backup_settings(account_id)
        settings.schedule.last_backup_status = BackupStatus.IN_PROGRESS
        self.store.save_schedule(account_id, settings.schedule)

        backup: GeneratedBackup | None = None
        try:
            connection = settings.connection
            if connection is None:
                raise SchedulingError(
                    "No cloud provider connected", account_id, code="NOT_CONNECTED"
                )
            provider = self.providers.get(connection.provider)

            backup = self.generator.generate(account_id, "automatic")
            uploaded = provider.upload_backup(connection, backup.path, "automatic")
        except Exception as e:
            logger.error(f"Scheduled backup failed for account {account_id}: {e}")
            self._record_failure(settings)
            if isinstance(e, SchedulingError):
                raise
            raise SchedulingError(
                f"Scheduled backup failed: {e}",
                account_id,
                details={"failureCount": settings.schedule.failure_count},
            ) from e
        finally:
            if backup is not None:
                self.generator.cleanup_backup_file(backup.path)

        logger.info(f"Scheduled backup successful for account {account_id}: {uploaded.name}")
        if settings.retention.auto_cleanup:
            self._cleanup_old_backups(
                account_id, provider, connection, settings.retention.max_backups
            )

        # A bookkeeping error after a completed upload is not a backup failure
        try:
            self._record_success(settings, backup.size)
        except StorageError as e:
            logger.error(
                f"Failed to record successful backup for account {account_id}: {e}"
            )
        return uploaded

    def _record_success(self, settings: BackupSettings, size: int) -> None:
        now = self._clock()
        schedule = settings.schedule
        schedule.last_backup = now
        schedule.last_backup_status = BackupStatus.SUCCESS
        schedule.failure_count = 0
        schedule.next_backup = calculate_next_backup(
            schedule.frequency, schedule.time, schedule.timezone, now
        )
        self.store.save_schedule(settings.account_id, schedule)

        stats = settings.stats
        stats.total_backups += 1
        stats.auto_backups += 1
        stats.total_storage_used += size
        self.store.save_stats(settings.account_id, stats)

    def _record_failure(self, settings: BackupSettings) -> None:
        account_id = settings.account_id
        now = self._clock()
        schedule = settings.schedule
        schedule.last_backup_status = BackupStatus.FAILED
        schedule.failure_count += 1

        disabled = schedule.failure_count >= self.max_failures
        if disabled:
            schedule.enabled = False
            schedule.next_backup = None
            logger.warning(
                f"Disabled automatic backups for account {account_id} "
                f"after {schedule.failure_count} failures"
            )
        else:
            schedule.next_backup = now + self.retry_delay
            logger.info(
                f"Scheduled retry for account {account_id} at {schedule.next_backup.isoformat()} "
                f"(failure #{schedule.failure_count})"
            )

        try:
            self.store.save_schedule(account_id, schedule)
        except StorageError as e:
            logger.error(f"Failed to update failure status for account {account_id}: {e}")
            return

        if disabled:
            self._notify_disabled(settings, now)

    def _notify_disabled(self, settings: BackupSettings, attempted_at: datetime) -> None:
        try:
            account = self.store.get_account(settings.account_id)
            self.notifier.send_backup_failure_email(
                BackupFailureNotice(
                    account_email=account.email,
                    username=account.username,
                    provider=settings.connection.provider.value if settings.connection else "",
                    last_attempt=attempted_at,
                    failure_count=settings.schedule.failure_count,
                )
            )
            logger.info(f"Backup failure notification sent for account {settings.account_id}")
        except Exception as e:
            logger.error(f"Failed to send backup failure notification: {e}")

    def _cleanup_old_backups(
        self,
        account_id: str,
        provider: CloudProvider,
        connection: ProviderConnection,
        max_backups: int,
    ) -> int:
        """Delete remote backups beyond max_backups, newest kept. Never raises."""
        deleted = 0
        try:
            backups = provider.list_backups(connection, CLEANUP_LIST_LIMIT)
            stale = backups[max(max_backups, 0) :]
            if not stale:
                return 0

            logger.info(f"Cleaning up {len(stale)} old backup(s) for account {account_id}")
            for backup in stale:
                try:
                    provider.delete_backup(connection, backup.id)
                    deleted += 1
                except Exception as e:
                    logger.error(f"Failed to delete old backup {backup.filename}: {e}")
        except Exception as e:
            logger.error(f"Failed to clean up old backups for account {account_id}: {e}")
        return deleted

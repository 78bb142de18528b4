"""
Scheduler for automatic cloud backups.

BackupScheduler is an explicit service instance: it is constructed with its
store, provider registry, generator, notification sender and clock, and
started and stopped by its owner. Each tick runs due accounts in bounded
concurrent batches.

Usage:
    from recipevault.scheduler import BackupScheduler

    scheduler = BackupScheduler(store, registry, generator, notifier)
    scheduler.start()
    ...
    scheduler.stop()
"""

from recipevault.scheduler.backup_scheduler import (
    BackupScheduler,
    SchedulerError,
    TickReport,
    calculate_next_backup,
    parse_schedule_time,
)

__all__ = [
    # Main class
    "BackupScheduler",
    # Dataclasses
    "TickReport",
    # Errors
    "SchedulerError",
    # Utilities
    "calculate_next_backup",
    "parse_schedule_time",
]

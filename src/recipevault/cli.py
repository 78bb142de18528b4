"""
Command-line interface for RecipeVault.

This module provides the main CLI entry point and all subcommands
for managing recipe book backups, restores and cloud schedules.

Commands:
    init            Initialize RecipeVault configuration
    account         Create accounts and show their contents
    export          Write an account's bundle archive to disk
    import          Import a bundle archive into an account
    inspect         Summarize a bundle archive without importing it
    connect         Connect a cloud storage provider
    disconnect      Disconnect the cloud storage provider
    status          Show cloud connection, schedule and statistics
    backup          Create a backup and upload it to the provider
    backups         List remote backups
    preview         Summarize a remote backup
    restore         Restore a remote backup
    delete-backup   Delete a remote backup
    schedule        Configure automatic backups
    scheduler       Run the automatic backup scheduler

Output Modes:
    --quiet/-q:     Suppress non-essential output (only errors and results)
    --verbose/-v:   Show additional details (can be repeated: -vv for debug)
    Default:        Normal output with progress and status messages
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, NoReturn

from recipevault import __version__
from recipevault.config.credentials import CredentialError, load_or_create_token_key
from recipevault.config.settings import (
    ConfigurationError,
    Settings,
    get_config_path,
    load_config,
    save_config,
)
from recipevault.interchange.errors import InterchangeError
from recipevault.interchange.parser import BundleParser
from recipevault.service import BackupService
from recipevault.storage.models import Account, ProviderKind
from recipevault.storage.recipe_store import StorageError

# Global output mode settings
_quiet_mode = False
_verbose_level = 0


def set_output_mode(quiet: bool, verbose: int) -> None:
    """
    Set the global output mode.

    Args:
        quiet: If True, suppress non-essential output.
        verbose: Verbosity level (0=normal, 1=verbose, 2+=debug).
    """
    global _quiet_mode, _verbose_level
    _quiet_mode = quiet
    _verbose_level = verbose


def output(message: str = "", force: bool = False) -> None:
    """
    Print output respecting quiet mode.

    Args:
        message: The message to print.
        force: If True, print even in quiet mode (for essential output).
    """
    if not _quiet_mode or force:
        print(message)


def output_verbose(message: str, level: int = 1) -> None:
    """
    Print output only in verbose mode.

    Args:
        message: The message to print.
        level: Minimum verbosity level required (1=verbose, 2=debug).
    """
    if _verbose_level >= level:
        print(message)


def output_error(message: str) -> None:
    """
    Print an error message (always shown, even in quiet mode).

    Args:
        message: The error message to print.
    """
    print(message, file=sys.stderr)


def output_json(data: Any) -> None:
    """Print data as indented JSON (always shown)."""
    print(json.dumps(data, indent=2, default=str))


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for RecipeVault CLI."""
    parser = argparse.ArgumentParser(
        prog="recipevault",
        description="Backup and restore engine for recipe book accounts",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"recipevault {__version__}",
    )

    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Override config file location (default: ~/.recipevault/config.yaml)",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase output verbosity (can be repeated)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        metavar="<command>",
    )

    # init command
    init_parser = subparsers.add_parser(
        "init",
        help="Initialize RecipeVault configuration",
        description="Create the configuration file, data directories and token key.",
    )
    init_parser.set_defaults(func=cmd_init)

    # account command
    account_parser = subparsers.add_parser(
        "account",
        help="Manage accounts",
        description="Create accounts and show what they contain.",
    )
    account_subparsers = account_parser.add_subparsers(
        title="account commands",
        dest="account_command",
        metavar="<account-command>",
    )
    account_create_parser = account_subparsers.add_parser(
        "create",
        help="Create an account",
    )
    account_create_parser.add_argument("username", help="Account username")
    account_create_parser.add_argument("--email", required=True, help="Account email address")
    account_create_parser.set_defaults(func=cmd_account_create)

    account_show_parser = account_subparsers.add_parser(
        "show",
        help="Show account details and entity counts",
    )
    account_show_parser.add_argument("username", help="Account username")
    account_show_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    account_show_parser.set_defaults(func=cmd_account_show)

    # export command
    export_parser = subparsers.add_parser(
        "export",
        help="Export an account to a bundle archive",
        description="Write a manual backup bundle (ZIP) for an account.",
    )
    export_parser.add_argument("username", help="Account username")
    export_parser.add_argument(
        "--output",
        "-o",
        metavar="DIR",
        help="Output directory for the archive (default: current directory)",
    )
    export_parser.set_defaults(func=cmd_export)

    # import command
    import_parser = subparsers.add_parser(
        "import",
        help="Import a bundle archive into an account",
        description=(
            "Import a bundle archive. Merge mode skips duplicates; replace mode "
            "deletes the account's existing data first and asks for the password."
        ),
    )
    import_parser.add_argument("username", help="Account username")
    import_parser.add_argument("file", metavar="FILE", help="Path to the bundle archive (.zip)")
    import_parser.add_argument(
        "--mode",
        choices=["merge", "replace"],
        default="merge",
        help="Import mode (default: merge)",
    )
    import_parser.add_argument(
        "--json",
        action="store_true",
        help="Output the import summary as JSON",
    )
    import_parser.set_defaults(func=cmd_import)

    # inspect command
    inspect_parser = subparsers.add_parser(
        "inspect",
        help="Summarize a bundle archive without importing it",
    )
    inspect_parser.add_argument("file", metavar="FILE", help="Path to the bundle archive (.zip)")
    inspect_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    inspect_parser.set_defaults(func=cmd_inspect)

    # connect command
    connect_parser = subparsers.add_parser(
        "connect",
        help="Connect a cloud storage provider",
        description="Start the provider consent flow and store the resulting connection.",
    )
    connect_parser.add_argument("username", help="Account username")
    connect_parser.add_argument(
        "provider",
        choices=[kind.value for kind in ProviderKind],
        help="Provider to connect",
    )
    connect_parser.add_argument(
        "--code",
        help="Authorization code (prompted for when omitted)",
    )
    connect_parser.set_defaults(func=cmd_connect)

    # disconnect command
    disconnect_parser = subparsers.add_parser(
        "disconnect",
        help="Disconnect the cloud storage provider",
    )
    disconnect_parser.add_argument("username", help="Account username")
    disconnect_parser.set_defaults(func=cmd_disconnect)

    # status command
    status_parser = subparsers.add_parser(
        "status",
        help="Show cloud connection, schedule and backup statistics",
    )
    status_parser.add_argument("username", help="Account username")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    # backup command
    backup_parser = subparsers.add_parser(
        "backup",
        help="Create a backup and upload it to the connected provider",
    )
    backup_parser.add_argument("username", help="Account username")
    backup_parser.set_defaults(func=cmd_backup)

    # backups command
    backups_parser = subparsers.add_parser(
        "backups",
        help="List remote backups",
    )
    backups_parser.add_argument("username", help="Account username")
    backups_parser.add_argument(
        "--limit",
        type=int,
        default=10,
        help="Maximum number of backups to list (1-100, default: 10)",
    )
    backups_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    backups_parser.set_defaults(func=cmd_backups)

    # preview command
    preview_parser = subparsers.add_parser(
        "preview",
        help="Summarize a remote backup without restoring it",
    )
    preview_parser.add_argument("username", help="Account username")
    preview_parser.add_argument("backup_id", metavar="BACKUP_ID", help="Remote backup id")
    preview_parser.set_defaults(func=cmd_preview)

    # restore command
    restore_parser = subparsers.add_parser(
        "restore",
        help="Restore a remote backup",
        description="Download a remote backup and import it. Asks for the account password.",
    )
    restore_parser.add_argument("username", help="Account username")
    restore_parser.add_argument("backup_id", metavar="BACKUP_ID", help="Remote backup id")
    restore_parser.add_argument(
        "--mode",
        choices=["merge", "replace"],
        default="merge",
        help="Import mode (default: merge)",
    )
    restore_parser.set_defaults(func=cmd_restore)

    # delete-backup command
    delete_parser = subparsers.add_parser(
        "delete-backup",
        help="Delete a remote backup",
    )
    delete_parser.add_argument("username", help="Account username")
    delete_parser.add_argument("backup_id", metavar="BACKUP_ID", help="Remote backup id")
    delete_parser.add_argument(
        "--force",
        action="store_true",
        help="Skip confirmation prompt",
    )
    delete_parser.set_defaults(func=cmd_delete_backup)

    # schedule command
    schedule_parser = subparsers.add_parser(
        "schedule",
        help="Configure automatic backups",
        description="Show or change an account's automatic backup schedule.",
    )
    schedule_parser.add_argument("username", help="Account username")
    schedule_group = schedule_parser.add_mutually_exclusive_group()
    schedule_group.add_argument(
        "--enable",
        action="store_true",
        help="Enable automatic backups",
    )
    schedule_group.add_argument(
        "--disable",
        action="store_true",
        help="Disable automatic backups",
    )
    schedule_parser.add_argument(
        "--frequency",
        choices=["daily", "weekly", "monthly"],
        help="Backup frequency",
    )
    schedule_parser.add_argument(
        "--time",
        metavar="HH:MM",
        help="Local time of day for backups",
    )
    schedule_parser.add_argument(
        "--timezone",
        metavar="TZ",
        help="IANA timezone name, e.g. Europe/Berlin",
    )
    schedule_parser.set_defaults(func=cmd_schedule)

    # scheduler command
    scheduler_parser = subparsers.add_parser(
        "scheduler",
        help="Run the automatic backup scheduler",
        description="Run due automatic backups, once or continuously in the foreground.",
    )
    scheduler_parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single tick and exit",
    )
    scheduler_parser.set_defaults(func=cmd_scheduler)

    return parser


def setup_logging(verbose: int, quiet: bool) -> None:
    """Configure logging based on verbosity level."""
    if quiet:
        level = logging.WARNING
    elif verbose == 0:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _load_settings(args: argparse.Namespace) -> Settings:
    config_path = Path(args.config) if args.config else None
    return load_config(config_path)


def _load_service(args: argparse.Namespace) -> BackupService:
    return BackupService.from_settings(_load_settings(args))


def _resolve_account(service: BackupService, username: str) -> Account | None:
    account = service.store.get_account_by_username(username)
    if account is None:
        output_error(f"Error: Unknown account: {username}")
    return account


def _format_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / 1024 / 1024:.2f} MB"


def cmd_init(args: argparse.Namespace) -> int:
    """Initialize RecipeVault configuration."""
    config_path = Path(args.config) if args.config else get_config_path()

    output("RecipeVault Initialization")
    output("=" * 50)
    output()

    if config_path.exists():
        output(f"RecipeVault is already initialized: {config_path}")
        output()
        output("To reset, delete the configuration file and run init again.")
        return 0

    settings = Settings()
    try:
        save_config(settings, config_path)
        output(f"Configuration file created: {config_path}")
    except ConfigurationError as e:
        output_error(f"Error creating configuration: {e}")
        return 1

    data_dir = Path(settings.data_dir).expanduser()
    data_dir.mkdir(parents=True, exist_ok=True)
    Path(settings.work_dir).expanduser().mkdir(parents=True, exist_ok=True)
    Path(settings.providers.local.root).expanduser().mkdir(parents=True, exist_ok=True)

    load_or_create_token_key(data_dir, settings.security.token_key)
    output(f"Data directory: {data_dir}")
    output()
    output("Initialization complete.")
    output()
    output("Next steps:")
    output("  1. Run 'recipevault account create <username> --email <email>'")
    output("  2. Run 'recipevault connect <username> local' to store backups locally")
    output("  3. Run 'recipevault schedule <username> --enable' for automatic backups")
    output()
    return 0


def cmd_account_create(args: argparse.Namespace) -> int:
    """Create an account."""
    service = _load_service(args)

    while True:
        password = getpass.getpass("Account password: ")
        if len(password) < 8:
            output_error("Error: Password must be at least 8 characters.")
            continue
        confirm = getpass.getpass("Confirm password: ")
        if password != confirm:
            output_error("Error: Passwords do not match.")
            continue
        break

    account = service.create_account(args.username, args.email, password)
    output(f"Account created: {account.username} ({account.id})")
    return 0


def cmd_account_show(args: argparse.Namespace) -> int:
    """Show account details and entity counts."""
    service = _load_service(args)
    account = _resolve_account(service, args.username)
    if account is None:
        return 1

    counts = service.store.count_entities(account.id)
    if args.json:
        output_json({**account.to_dict(), "counts": counts})
        return 0

    output(f"Account: {account.username}")
    output(f"  ID: {account.id}")
    output(f"  Email: {account.email}")
    output()
    for name, count in counts.items():
        output(f"  {name}: {count}")
    return 0


def cmd_export(args: argparse.Namespace) -> int:
    """Export an account to a bundle archive."""
    service = _load_service(args)
    account = _resolve_account(service, args.username)
    if account is None:
        return 1

    output_dir = Path(args.output) if args.output else Path.cwd()
    output(f"Exporting {account.username} to {output_dir}...")
    backup = service.export_bundle(account.id, output_dir)

    output()
    output("Export complete.")
    output(f"  File: {backup.path}", force=True)
    output(f"  Size: {_format_size(backup.size)}")
    output_verbose(f"  SHA-256: {backup.checksum}")
    for name, count in backup.statistics.items():
        output(f"  {name}: {count}")
    return 0


def cmd_import(args: argparse.Namespace) -> int:
    """Import a bundle archive into an account."""
    service = _load_service(args)
    account = _resolve_account(service, args.username)
    if account is None:
        return 1

    password = None
    if args.mode == "replace":
        output("Replace mode deletes all existing recipes, collections,")
        output("meal plans and shopping lists for this account.")
        password = getpass.getpass("Account password: ")

    output(f"Importing {args.file} ({args.mode})...")
    summary = service.import_bundle(account.id, Path(args.file), args.mode, password)

    if args.json:
        output_json(summary.to_dict())
        return 0

    output()
    output("Import complete.")
    output(f"  Recipes: {summary.recipes_imported}")
    output(f"  Collections: {summary.collections_imported}")
    output(f"  Meal plans: {summary.meal_plans_imported}")
    output(f"  Shopping lists: {summary.shopping_lists_imported}")
    if summary.duplicates_skipped:
        output(f"  Duplicates skipped: {summary.duplicates_skipped}")
    if summary.dropped_references:
        output(f"  Dropped recipe references: {summary.dropped_references}")
    output_verbose(f"  Duration: {summary.duration:.2f}s")
    return 0


def cmd_inspect(args: argparse.Namespace) -> int:
    """Summarize a bundle archive without importing it."""
    settings = _load_settings(args)
    parser = BundleParser(max_file_size=settings.imports.max_file_size)
    preview = parser.preview(Path(args.file), include_details=args.verbose > 0 or args.json)

    if args.json:
        output_json(preview)
        return 0

    output(f"Bundle: {args.file}")
    output(f"  Version: {preview['version']}")
    output(f"  Exported: {preview['exportDate']}")
    output(f"  Type: {preview['type']}")
    for name, count in preview["statistics"].items():
        output(f"  {name}: {count}")
    return 0


def cmd_connect(args: argparse.Namespace) -> int:
    """Connect a cloud storage provider."""
    service = _load_service(args)
    account = _resolve_account(service, args.username)
    if account is None:
        return 1

    url, state = service.begin_provider_authorization(account.id, args.provider)
    code = args.code
    if args.provider != ProviderKind.LOCAL.value and not code:
        output("Open this URL in a browser and grant access:")
        output()
        output(f"  {url}", force=True)
        output()
        code = input("Authorization code: ").strip()

    connection = service.complete_provider_authorization(state, code or "")
    label = connection.account_email or connection.account_name
    output(f"Connected {connection.provider.value}" + (f" ({label})" if label else ""))
    return 0


def cmd_disconnect(args: argparse.Namespace) -> int:
    """Disconnect the cloud storage provider."""
    service = _load_service(args)
    account = _resolve_account(service, args.username)
    if account is None:
        return 1

    kind = service.disconnect_provider(account.id)
    output(f"Disconnected {kind.value}. Backup settings were reset.")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Show cloud connection, schedule and backup statistics."""
    service = _load_service(args)
    account = _resolve_account(service, args.username)
    if account is None:
        return 1

    status = service.get_cloud_status(account.id)
    if args.json:
        output_json(status)
        return 0

    if not status["connected"]:
        output("No cloud provider connected.")
        return 0

    schedule = status["schedule"]
    stats = status["stats"]
    output(f"Provider: {status['provider']}")
    if status["account_email"]:
        output(f"  Account: {status['account_email']}")
    output()
    output("Schedule:")
    output(f"  Enabled: {schedule['enabled']}")
    output(f"  Frequency: {schedule['frequency']} at {schedule['time']} {schedule['timezone']}")
    output(f"  Last backup: {schedule['last_backup'] or 'never'}")
    output(f"  Last status: {schedule['last_backup_status'] or '-'}")
    output(f"  Next backup: {schedule['next_backup'] or '-'}")
    output(f"  Consecutive failures: {schedule['failure_count']}")
    output()
    output("Statistics:")
    output(f"  Total backups: {stats['total_backups']}")
    output(f"  Manual: {stats['manual_backups']}  Automatic: {stats['auto_backups']}")
    output(f"  Storage used: {_format_size(stats['total_storage_used'])}")
    return 0


def cmd_backup(args: argparse.Namespace) -> int:
    """Create a backup and upload it to the connected provider."""
    service = _load_service(args)
    account = _resolve_account(service, args.username)
    if account is None:
        return 1

    output("Creating backup...")
    info = service.generate_and_upload_backup(account.id)
    output()
    output("Backup uploaded successfully.")
    output(f"  ID: {info['id']}", force=True)
    output(f"  File: {info['filename']}")
    output(f"  Size: {_format_size(info['size'])}")
    output_verbose(f"  Path: {info['path']}")
    return 0


def cmd_backups(args: argparse.Namespace) -> int:
    """List remote backups."""
    service = _load_service(args)
    account = _resolve_account(service, args.username)
    if account is None:
        return 1

    backups = service.list_remote_backups(account.id, args.limit)
    if args.json:
        output_json([backup.to_dict() for backup in backups])
        return 0

    if not backups:
        output("No backups found.")
        return 0

    output(f"{'ID':<40} {'TYPE':<8} {'SIZE':>10}  CREATED")
    for backup in backups:
        output(
            f"{backup.id:<40} {backup.type:<8} {_format_size(backup.size):>10}  "
            f"{backup.timestamp.strftime('%Y-%m-%d %H:%M')}",
            force=True,
        )
    return 0


def cmd_preview(args: argparse.Namespace) -> int:
    """Summarize a remote backup without restoring it."""
    service = _load_service(args)
    account = _resolve_account(service, args.username)
    if account is None:
        return 1

    output_json(service.preview_backup(account.id, args.backup_id))
    return 0


def cmd_restore(args: argparse.Namespace) -> int:
    """Restore a remote backup."""
    service = _load_service(args)
    account = _resolve_account(service, args.username)
    if account is None:
        return 1

    if args.mode == "replace":
        output("Replace mode deletes all existing recipes, collections,")
        output("meal plans and shopping lists for this account.")
    password = getpass.getpass("Account password: ")

    output(f"Restoring {args.backup_id} ({args.mode})...")
    stats = service.restore_from_remote(account.id, args.backup_id, args.mode, password)

    output()
    output("Restore complete.")
    output(f"  Imported: {stats.total_imported}")
    output(f"  Skipped: {stats.total_skipped}")
    for name, count in stats.by_type.items():
        output_verbose(f"    {name}: {count}")
    if stats.degraded:
        output("  Warning: storage had no transactions; the restore was not atomic.")
    return 0


def cmd_delete_backup(args: argparse.Namespace) -> int:
    """Delete a remote backup."""
    service = _load_service(args)
    account = _resolve_account(service, args.username)
    if account is None:
        return 1

    if not args.force:
        response = input(f"Delete backup {args.backup_id}? [y/N] ").strip().lower()
        if response not in ("y", "yes"):
            output("Cancelled.")
            return 0

    service.delete_remote_backup(account.id, args.backup_id)
    output("Backup deleted.")
    return 0


def cmd_schedule(args: argparse.Namespace) -> int:
    """Show or change an account's automatic backup schedule."""
    service = _load_service(args)
    account = _resolve_account(service, args.username)
    if account is None:
        return 1

    enabled = True if args.enable else False if args.disable else None
    if enabled is None and not (args.frequency or args.time or args.timezone):
        schedule = service.get_schedule(account.id)
    else:
        schedule = service.update_schedule(
            account.id,
            enabled=enabled,
            frequency=args.frequency,
            time=args.time,
            timezone=args.timezone,
        )

    state = "enabled" if schedule.enabled else "disabled"
    output(f"Automatic backups {state}: {schedule.frequency.value} at {schedule.time}")
    output(f"  Timezone: {schedule.timezone}")
    if schedule.next_backup:
        output(f"  Next backup: {schedule.next_backup.isoformat()}")
    if schedule.failure_count:
        output(f"  Consecutive failures: {schedule.failure_count}")
    return 0


def cmd_scheduler(args: argparse.Namespace) -> int:
    """Run the automatic backup scheduler."""
    service = _load_service(args)
    scheduler = service.create_scheduler()

    if args.once:
        report = scheduler.run_tick()
        output_verbose(json.dumps(report.to_dict(), indent=2))
        output(
            f"Tick complete: {report.due} due, {len(report.succeeded)} succeeded, "
            f"{len(report.failed)} failed"
        )
        return 1 if report.error else 0

    def handle_signal(signum: int, frame: Any) -> None:
        output("\nStopping scheduler...")
        scheduler.stop(timeout=0)

    signal.signal(signal.SIGTERM, handle_signal)

    output("Running backup scheduler in foreground (Ctrl+C to stop)")
    scheduler.start(foreground=True)
    return 0


def main() -> NoReturn:
    """Main entry point for RecipeVault CLI."""
    parser = create_parser()
    args = parser.parse_args()

    # Set up logging and output mode
    setup_logging(args.verbose, args.quiet)
    set_output_mode(args.quiet, args.verbose)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    if not hasattr(args, "func"):
        parser.parse_args([args.command, "--help"])

    try:
        exit_code = args.func(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        output("\nOperation cancelled.")
        sys.exit(130)
    except CredentialError as e:
        output_error(f"Credential error: {e}")
        sys.exit(2)
    except ConfigurationError as e:
        output_error(f"Configuration error: {e}")
        sys.exit(2)
    except InterchangeError as e:
        output_error(f"Error: {e}")
        sys.exit(1)
    except StorageError as e:
        output_error(f"Storage error: {e}")
        sys.exit(1)
    except Exception as e:
        if args.verbose > 0:
            raise
        output_error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

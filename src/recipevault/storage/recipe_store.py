"""
Recipe storage engine for RecipeVault.

This module provides the RecipeStore class which persists accounts, their
recipes, collections, meal plans and shopping lists, and the per-account
automatic backup settings in a single SQLite database.

Storage Structure:
    data/
        recipevault.db                      # SQLite database
        token.key                           # Fernet key for provider tokens

Design Decisions:
    - SQLite is used for its simplicity, portability, and ACID compliance
    - Entity content lives in a JSON column; owner, name and dates are real
      columns so lookups can be scoped and filtered
    - Writes that must be all-or-nothing go through transaction(), which
      yields a StoreSession bound to one connection
    - Transaction support is an explicit capability (supports_transactions);
      callers branch on it instead of guessing

Thread Safety:
    The store uses SQLite's thread-safe mode and connection-per-operation
    pattern. Write sessions open with BEGIN IMMEDIATE so two imports for the
    same database serialize on the write lock.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from recipevault.storage.models import (
    Account,
    BackupSettings,
    BackupStats,
    Collection,
    MealPlan,
    ProviderConnection,
    ProviderKind,
    Recipe,
    RetentionPolicy,
    ScheduleState,
    ShoppingList,
    format_timestamp,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for storage errors."""

    pass


class AccountNotFoundError(StorageError):
    """Raised when a requested account does not exist."""

    pass


# Database schema version for migrations
SCHEMA_VERSION = 1

DB_FILENAME = "recipevault.db"

# Busy timeout while waiting for another writer, in seconds
LOCK_TIMEOUT = 30.0


CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    username TEXT NOT NULL UNIQUE,
    email TEXT,
    password_hash TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS recipes (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    title TEXT NOT NULL,
    data_json TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (account_id) REFERENCES accounts(id)
);

CREATE INDEX IF NOT EXISTS idx_recipes_account ON recipes(account_id);

CREATE TABLE IF NOT EXISTS collections (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    name TEXT NOT NULL,
    data_json TEXT NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (account_id) REFERENCES accounts(id)
);

CREATE INDEX IF NOT EXISTS idx_collections_account ON collections(account_id);

CREATE TABLE IF NOT EXISTS meal_plans (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    name TEXT NOT NULL,
    start_date TEXT NOT NULL,
    end_date TEXT NOT NULL,
    data_json TEXT NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (account_id) REFERENCES accounts(id)
);

CREATE INDEX IF NOT EXISTS idx_meal_plans_account ON meal_plans(account_id);

CREATE TABLE IF NOT EXISTS shopping_lists (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    name TEXT NOT NULL,
    data_json TEXT NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (account_id) REFERENCES accounts(id)
);

CREATE INDEX IF NOT EXISTS idx_shopping_lists_account ON shopping_lists(account_id);

-- One row per account; provider tokens are stored encrypted
CREATE TABLE IF NOT EXISTS backup_settings (
    account_id TEXT PRIMARY KEY,
    provider TEXT,
    access_token TEXT,
    refresh_token TEXT,
    token_expiry TEXT,
    provider_email TEXT,
    provider_name TEXT,
    connected_at TEXT,
    schedule_json TEXT NOT NULL,
    retention_json TEXT NOT NULL,
    stats_json TEXT NOT NULL,
    FOREIGN KEY (account_id) REFERENCES accounts(id)
);
"""

ENTITY_TABLES = ("recipes", "collections", "meal_plans", "shopping_lists")


class StoreSession:
    """
    A unit of work bound to one database connection.

    Obtained from RecipeStore.transaction() (atomic) or RecipeStore.session()
    (autocommit, used only when transactions are unavailable).
    """

    def __init__(self, conn: sqlite3.Connection, transactional: bool) -> None:
        self._conn = conn
        self.transactional = transactional

    def _execute(self, sql: str, params: tuple[Any, ...]) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, params)
        except sqlite3.Error as e:
            raise StorageError(f"Database write failed: {e}") from e

    def insert_recipe(self, recipe: Recipe) -> None:
        self._execute(
            """
            INSERT INTO recipes (id, account_id, title, data_json, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                recipe.id,
                recipe.account_id,
                recipe.title,
                json.dumps(recipe.to_dict()),
                recipe.created_at.isoformat(),
                recipe.updated_at.isoformat(),
            ),
        )

    def insert_collection(self, collection: Collection) -> None:
        self._execute(
            """
            INSERT INTO collections (id, account_id, name, data_json, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                collection.id,
                collection.account_id,
                collection.name,
                json.dumps(collection.to_dict()),
                collection.created_at.isoformat(),
            ),
        )

    def insert_meal_plan(self, meal_plan: MealPlan) -> None:
        self._execute(
            """
            INSERT INTO meal_plans (
                id, account_id, name, start_date, end_date, data_json, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                meal_plan.id,
                meal_plan.account_id,
                meal_plan.name,
                meal_plan.start_date.isoformat(),
                meal_plan.end_date.isoformat(),
                json.dumps(meal_plan.to_dict()),
                meal_plan.created_at.isoformat(),
            ),
        )

    def insert_shopping_list(self, shopping_list: ShoppingList) -> None:
        self._execute(
            """
            INSERT INTO shopping_lists (id, account_id, name, data_json, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                shopping_list.id,
                shopping_list.account_id,
                shopping_list.name,
                json.dumps(shopping_list.to_dict()),
                shopping_list.created_at.isoformat(),
            ),
        )

    def delete_all_owned(self, account_id: str) -> dict[str, int]:
        """
        Delete every recipe, collection, meal plan and shopping list of an account.

        Returns:
            Number of deleted rows per table.
        """
        deleted: dict[str, int] = {}
        for table in ENTITY_TABLES:
            cursor = self._execute(f"DELETE FROM {table} WHERE account_id = ?", (account_id,))
            deleted[table] = cursor.rowcount
        return deleted


class RecipeStore:
    """
    SQLite-backed storage for accounts and their recipe data.

    Example:
        store = RecipeStore("/var/lib/recipevault")
        account = store.create_account(Account.create("cook", "c@example.com", pw_hash))

        with store.transaction() as session:
            session.insert_recipe(recipe)

        recipes = store.get_recipes(account.id)

    Attributes:
        data_dir: Base directory for data storage.
        db_path: Path to the SQLite database file.
    """

    def __init__(
        self,
        data_dir: Path | str | None = None,
        supports_transactions: bool = True,
    ) -> None:
        """
        Initialize the recipe store.

        Args:
            data_dir: Base directory for data storage. Defaults to
                ~/.recipevault/data
            supports_transactions: Whether multi-entity transactions are
                available. Deployments on storage that cannot hold a write
                lock across statements set this to False.
        """
        if data_dir is None:
            data_dir = Path.home() / ".recipevault" / "data"
        elif isinstance(data_dir, str):
            data_dir = Path(data_dir)

        self.data_dir = data_dir
        self.db_path = data_dir / DB_FILENAME
        self._supports_transactions = supports_transactions

        self.data_dir.mkdir(parents=True, exist_ok=True)

        self._init_database()

    @property
    def supports_transactions(self) -> bool:
        """Whether transaction() is available on this store."""
        return self._supports_transactions

    def _init_database(self) -> None:
        """Initialize the database schema."""
        with self._get_connection() as conn:
            conn.executescript(CREATE_TABLES_SQL)

            row = conn.execute(
                "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
            ).fetchone()

            if row is None:
                conn.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, utc_now().isoformat()),
                )
                logger.info(f"Initialized database schema version {SCHEMA_VERSION}")
            elif row[0] < SCHEMA_VERSION:
                logger.warning(
                    f"Database schema version {row[0]} is older than "
                    f"expected version {SCHEMA_VERSION}"
                )

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Get a database connection with proper settings.

        Yields:
            SQLite connection with row factory set.
        """
        conn = sqlite3.connect(
            str(self.db_path),
            isolation_level=None,  # Autocommit mode, we manage transactions manually
            check_same_thread=False,
            timeout=LOCK_TIMEOUT,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[StoreSession, None, None]:
        """
        Open an atomic unit of work.

        Everything written through the yielded session is committed when the
        block exits normally and rolled back if it raises.

        Raises:
            StorageError: If this store does not support transactions.
        """
        if not self._supports_transactions:
            raise StorageError("This store does not support transactions")

        with self._get_connection() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageError(f"Cannot begin transaction: {e}") from e
            try:
                yield StoreSession(conn, transactional=True)
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                logger.debug("Rolled back transaction")
                raise

    @contextmanager
    def session(self) -> Generator[StoreSession, None, None]:
        """Open a non-transactional session; each write commits on its own."""
        with self._get_connection() as conn:
            yield StoreSession(conn, transactional=False)

    # Accounts

    def create_account(self, account: Account) -> Account:
        """
        Persist a new account and its default backup settings.

        Raises:
            StorageError: If the username is taken or the write fails.
        """
        with self._get_connection() as conn:
            try:
                conn.execute("BEGIN TRANSACTION")
                conn.execute(
                    """
                    INSERT INTO accounts (id, username, email, password_hash, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        account.id,
                        account.username,
                        account.email,
                        account.password_hash,
                        account.created_at.isoformat(),
                    ),
                )
                self._write_backup_settings(conn, BackupSettings(account_id=account.id))
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                conn.execute("ROLLBACK")
                raise StorageError(f"Failed to create account: {e}") from e

        logger.info(f"Created account {account.username}")
        return account

    def get_account(self, account_id: str) -> Account:
        """
        Get an account by ID.

        Raises:
            AccountNotFoundError: If no such account exists.
        """
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()
        if row is None:
            raise AccountNotFoundError(f"Account not found: {account_id}")
        return self._row_to_account(row)

    def get_account_by_username(self, username: str) -> Account | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE username = ?", (username,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def _row_to_account(self, row: sqlite3.Row) -> Account:
        return Account(
            id=row["id"],
            username=row["username"],
            email=row["email"] or "",
            password_hash=row["password_hash"],
            created_at=parse_timestamp(row["created_at"]) or utc_now(),
        )

    # Owned entities

    def get_recipes(self, account_id: str) -> list[Recipe]:
        rows = self._select_owned("recipes", account_id)
        return [Recipe.from_dict(json.loads(row["data_json"])) for row in rows]

    def get_collections(self, account_id: str) -> list[Collection]:
        rows = self._select_owned("collections", account_id)
        return [Collection.from_dict(json.loads(row["data_json"])) for row in rows]

    def get_meal_plans(self, account_id: str) -> list[MealPlan]:
        rows = self._select_owned("meal_plans", account_id)
        return [MealPlan.from_dict(json.loads(row["data_json"])) for row in rows]

    def get_shopping_lists(self, account_id: str) -> list[ShoppingList]:
        rows = self._select_owned("shopping_lists", account_id)
        return [ShoppingList.from_dict(json.loads(row["data_json"])) for row in rows]

    def get_recipe(self, account_id: str, recipe_id: str) -> Recipe | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT data_json FROM recipes WHERE account_id = ? AND id = ?",
                (account_id, recipe_id),
            ).fetchone()
        return Recipe.from_dict(json.loads(row["data_json"])) if row else None

    def count_entities(self, account_id: str) -> dict[str, int]:
        """
        Count an account's owned entities.

        Returns:
            Dictionary with keys recipes, collections, meal_plans, shopping_lists.
        """
        counts: dict[str, int] = {}
        with self._get_connection() as conn:
            for table in ENTITY_TABLES:
                row = conn.execute(
                    f"SELECT COUNT(*) FROM {table} WHERE account_id = ?", (account_id,)
                ).fetchone()
                counts[table] = row[0]
        return counts

    def _select_owned(self, table: str, account_id: str) -> list[sqlite3.Row]:
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"SELECT data_json FROM {table} WHERE account_id = ? ORDER BY created_at, rowid",
                (account_id,),
            )
            return cursor.fetchall()

    # Backup settings

    def get_backup_settings(self, account_id: str) -> BackupSettings:
        """
        Get an account's backup settings.

        Raises:
            AccountNotFoundError: If the account has no settings row.
        """
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM backup_settings WHERE account_id = ?", (account_id,)
            ).fetchone()
        if row is None:
            raise AccountNotFoundError(f"Account not found: {account_id}")
        return self._row_to_backup_settings(row)

    def save_backup_settings(self, settings: BackupSettings) -> None:
        """Write all backup settings for an account."""
        with self._get_connection() as conn:
            try:
                self._write_backup_settings(conn, settings)
            except sqlite3.Error as e:
                raise StorageError(f"Failed to save backup settings: {e}") from e

    def save_schedule(self, account_id: str, schedule: ScheduleState) -> None:
        """Update only the schedule state of an account."""
        self._update_settings_column(account_id, "schedule_json", json.dumps(schedule.to_dict()))

    def save_stats(self, account_id: str, stats: BackupStats) -> None:
        """Update only the usage counters of an account."""
        self._update_settings_column(account_id, "stats_json", json.dumps(stats.to_dict()))

    def save_connection(self, account_id: str, connection: ProviderConnection | None) -> None:
        """Store (or clear, with None) an account's provider connection."""
        settings = self.get_backup_settings(account_id)
        settings.connection = connection
        self.save_backup_settings(settings)

    def update_tokens(
        self,
        account_id: str,
        access_token: str,
        token_expiry: datetime | None,
        refresh_token: str | None = None,
    ) -> None:
        """
        Persist refreshed provider tokens.

        Args:
            account_id: Owning account.
            access_token: New access token, already encrypted.
            token_expiry: When the new access token expires.
            refresh_token: New refresh token, already encrypted, if rotated.
        """
        with self._get_connection() as conn:
            try:
                if refresh_token is None:
                    conn.execute(
                        """
                        UPDATE backup_settings SET access_token = ?, token_expiry = ?
                        WHERE account_id = ?
                        """,
                        (access_token, format_timestamp(token_expiry), account_id),
                    )
                else:
                    conn.execute(
                        """
                        UPDATE backup_settings
                        SET access_token = ?, token_expiry = ?, refresh_token = ?
                        WHERE account_id = ?
                        """,
                        (access_token, format_timestamp(token_expiry), refresh_token, account_id),
                    )
            except sqlite3.Error as e:
                raise StorageError(f"Failed to update provider tokens: {e}") from e

    def list_due_schedules(self, now: datetime) -> list[BackupSettings]:
        """
        Find accounts whose automatic backup is due.

        An account is due when its schedule is enabled, a provider is
        connected, and next_backup is at or before now.
        """
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM backup_settings WHERE provider IS NOT NULL ORDER BY account_id"
            ).fetchall()

        due = []
        for row in rows:
            settings = self._row_to_backup_settings(row)
            schedule = settings.schedule
            if (
                schedule.enabled
                and schedule.next_backup is not None
                and schedule.next_backup <= now
            ):
                due.append(settings)
        return due

    def _update_settings_column(self, account_id: str, column: str, value: str) -> None:
        with self._get_connection() as conn:
            try:
                cursor = conn.execute(
                    f"UPDATE backup_settings SET {column} = ? WHERE account_id = ?",
                    (value, account_id),
                )
            except sqlite3.Error as e:
                raise StorageError(f"Failed to update backup settings: {e}") from e
        if cursor.rowcount == 0:
            raise AccountNotFoundError(f"Account not found: {account_id}")

    def _write_backup_settings(self, conn: sqlite3.Connection, settings: BackupSettings) -> None:
        connection = settings.connection
        conn.execute(
            """
            INSERT OR REPLACE INTO backup_settings (
                account_id, provider, access_token, refresh_token, token_expiry,
                provider_email, provider_name, connected_at,
                schedule_json, retention_json, stats_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                settings.account_id,
                connection.provider.value if connection else None,
                connection.access_token if connection else None,
                connection.refresh_token if connection else None,
                format_timestamp(connection.token_expiry) if connection else None,
                connection.account_email if connection else None,
                connection.account_name if connection else None,
                connection.connected_at.isoformat() if connection else None,
                json.dumps(settings.schedule.to_dict()),
                json.dumps(
                    {
                        "max_backups": settings.retention.max_backups,
                        "auto_cleanup": settings.retention.auto_cleanup,
                    }
                ),
                json.dumps(settings.stats.to_dict()),
            ),
        )

    def _row_to_backup_settings(self, row: sqlite3.Row) -> BackupSettings:
        connection = None
        if row["provider"]:
            connection = ProviderConnection(
                provider=ProviderKind.from_string(row["provider"]),
                account_id=row["account_id"],
                access_token=row["access_token"] or "",
                refresh_token=row["refresh_token"] or "",
                token_expiry=parse_timestamp(row["token_expiry"]),
                account_email=row["provider_email"] or "",
                account_name=row["provider_name"] or "",
                connected_at=parse_timestamp(row["connected_at"]) or utc_now(),
            )

        retention = json.loads(row["retention_json"])
        stats = json.loads(row["stats_json"])

        return BackupSettings(
            account_id=row["account_id"],
            connection=connection,
            schedule=ScheduleState.from_dict(json.loads(row["schedule_json"])),
            retention=RetentionPolicy(
                max_backups=int(retention.get("max_backups", 10)),
                auto_cleanup=bool(retention.get("auto_cleanup", True)),
            ),
            stats=BackupStats(
                total_backups=int(stats.get("total_backups", 0)),
                manual_backups=int(stats.get("manual_backups", 0)),
                auto_backups=int(stats.get("auto_backups", 0)),
                total_storage_used=int(stats.get("total_storage_used", 0)),
                last_manual_backup=parse_timestamp(stats.get("last_manual_backup")),
            ),
        )


"""
Restore orchestration for RecipeVault.

BackupRestorer runs a decoded bundle through validation, duplicate
detection (merge mode) and ImportProcessor inside one unit of work:

    validate -> detect duplicates -> open transaction -> process -> commit

Any failure while writing rolls the transaction back and surfaces as a
single TransactionError; no statistics are returned for a failed restore.

Stores without transaction support are handled deliberately: the restore
still runs, on a non-transactional session, and a "degraded atomicity"
warning is logged so operators can see that a failure may leave partial
data behind.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from recipevault.interchange.bundle import entity_counts
from recipevault.interchange.duplicates import DuplicateDetector
from recipevault.interchange.errors import (
    ContentValidationError,
    TransactionError,
)
from recipevault.interchange.processor import IMPORT_MODES, ImportProcessor, ImportSummary
from recipevault.interchange.validator import BundleValidator
from recipevault.storage.recipe_store import RecipeStore

logger = logging.getLogger(__name__)

# Store table name -> bundle statistics key
_COUNT_KEYS = {
    "recipes": "recipeCount",
    "collections": "collectionCount",
    "meal_plans": "mealPlanCount",
    "shopping_lists": "shoppingListCount",
}


@dataclass
class RestoreStatistics:
    """
    Aggregate outcome of a successful restore.

    Attributes:
        total_imported: Entities written across all types.
        total_skipped: Bundle entries skipped as duplicates.
        by_type: Imported and skipped counts per bundle array key.
        summary: The processor's detailed summary.
        degraded: True if the restore ran without a transaction.
    """

    total_imported: int
    total_skipped: int
    by_type: dict[str, dict[str, int]]
    summary: ImportSummary
    degraded: bool = False

    @classmethod
    def from_summary(cls, summary: ImportSummary, degraded: bool = False) -> RestoreStatistics:
        imported = {
            "recipes": summary.recipes_imported,
            "collections": summary.collections_imported,
            "mealPlans": summary.meal_plans_imported,
            "shoppingLists": summary.shopping_lists_imported,
        }
        by_type = {
            key: {"imported": count, "skipped": summary.skipped.get(key, 0)}
            for key, count in imported.items()
        }
        return cls(
            total_imported=summary.total_imported,
            total_skipped=summary.duplicates_skipped,
            by_type=by_type,
            summary=summary,
            degraded=degraded,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalImported": self.total_imported,
            "totalSkipped": self.total_skipped,
            "byType": self.by_type,
            "summary": self.summary.to_dict(),
            "degraded": self.degraded,
        }


def validate_mode(mode: str) -> None:
    """
    Check a restore mode.

    Raises:
        ContentValidationError: If mode is not merge or replace.
    """
    if mode not in IMPORT_MODES:
        raise ContentValidationError(
            f"Invalid restore mode: {mode}. Must be one of: {', '.join(IMPORT_MODES)}",
            code="INVALID_MODE",
        )


class BackupRestorer:
    """
    Restores bundles into accounts atomically.

    Example:
        restorer = BackupRestorer(store)
        stats = restorer.restore(account_id, bundle, "merge")
        print(stats.total_imported, stats.total_skipped)
    """

    def __init__(
        self,
        store: RecipeStore,
        validator: BundleValidator | None = None,
        detector: DuplicateDetector | None = None,
        processor: ImportProcessor | None = None,
    ) -> None:
        self.store = store
        self.validator = validator or BundleValidator()
        self.detector = detector or DuplicateDetector(store)
        self.processor = processor or ImportProcessor()

    def restore(self, account_id: str, bundle: dict[str, Any], mode: str) -> RestoreStatistics:
        """
        Restore a decoded bundle into an account.

        Args:
            account_id: Target account.
            bundle: Decoded bundle document (validated again here).
            mode: "merge" or "replace".

        Returns:
            RestoreStatistics for the committed import.

        Raises:
            ContentValidationError: For an invalid mode or entity.
            SchemaError: For missing fields or an unsupported version.
            SecurityError: For rejected markup.
            TransactionError: If writing failed; nothing was committed unless
                the error is flagged degraded.
        """
        validate_mode(mode)
        clean = self.validator.validate(bundle)

        skip_sets = self.detector.detect(account_id, clean) if mode == "merge" else None

        if self.store.supports_transactions:
            try:
                with self.store.transaction() as session:
                    summary = self.processor.process(session, account_id, clean, mode, skip_sets)
            except Exception as e:
                logger.error(f"Restore failed for {account_id}, transaction rolled back: {e}")
                raise TransactionError(
                    f"Restore failed and was rolled back: {e}",
                    details={"mode": mode},
                ) from e
            degraded = False
        else:
            logger.warning(
                f"Store does not support transactions; restoring {account_id} with "
                "degraded atomicity (a failure may leave partial data)"
            )
            try:
                with self.store.session() as session:
                    summary = self.processor.process(session, account_id, clean, mode, skip_sets)
            except Exception as e:
                logger.error(
                    f"Restore failed for {account_id} without a transaction; "
                    f"partial data may remain: {e}"
                )
                raise TransactionError(
                    f"Restore failed without transaction support: {e}",
                    details={"mode": mode},
                    degraded=True,
                ) from e
            degraded = True

        stats = RestoreStatistics.from_summary(summary, degraded=degraded)
        logger.info(
            f"Restored backup into {account_id} ({mode}): "
            f"{stats.total_imported} imported, {stats.total_skipped} skipped"
        )
        return stats

    def preview_restore(self, account_id: str, bundle: dict[str, Any], mode: str) -> dict[str, Any]:
        """
        Describe what a restore would do without writing anything.

        Returns:
            For replace mode: willDelete, willImport and finalCount.
            For merge mode: existing, fromBackup, duplicates and estimatedFinal.
        """
        validate_mode(mode)
        clean = self.validator.validate(bundle)

        existing_rows = self.store.count_entities(account_id)
        existing = {_COUNT_KEYS[table]: count for table, count in existing_rows.items()}
        incoming = entity_counts(clean)

        if mode == "replace":
            return {
                "mode": mode,
                "willDelete": existing,
                "willImport": incoming,
                "finalCount": dict(incoming),
            }

        duplicates = self.detector.detect(account_id, clean)
        skipped = {
            "recipeCount": len(duplicates.recipes),
            "collectionCount": len(duplicates.collections),
            "mealPlanCount": len(duplicates.meal_plans),
            "shoppingListCount": len(duplicates.shopping_lists),
        }
        return {
            "mode": mode,
            "existing": existing,
            "fromBackup": incoming,
            "duplicates": skipped,
            "estimatedFinal": {
                key: existing[key] + incoming[key] - skipped[key] for key in incoming
            },
        }

"""
Bundle generation for RecipeVault.

Serializes everything an account owns into a versioned bundle and packs it
into a ZIP archive holding a single backup.json entry. The intermediate
JSON file is always removed; the archive is removed again if packaging
fails.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import uuid
import zipfile
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from recipevault.interchange.bundle import (
    BACKUP_TYPES,
    BUNDLE_ENTRY_NAME,
    BUNDLE_VERSION,
    MIN_SUPPORTED_MAJOR,
    entity_counts,
    parse_version,
)
from recipevault.interchange.errors import InterchangeError, SchemaError
from recipevault.storage.models import (
    Account,
    Collection,
    MealPlan,
    Recipe,
    ShoppingList,
    format_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)


class AccountDataSource(Protocol):
    """Read access the generator needs."""

    def get_account(self, account_id: str) -> Account: ...

    def get_recipes(self, account_id: str) -> list[Recipe]: ...

    def get_collections(self, account_id: str) -> list[Collection]: ...

    def get_meal_plans(self, account_id: str) -> list[MealPlan]: ...

    def get_shopping_lists(self, account_id: str) -> list[ShoppingList]: ...


@dataclass
class GeneratedBackup:
    """A bundle archive written to local disk."""

    path: Path
    filename: str
    size: int
    checksum: str
    statistics: dict[str, int]

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": str(self.path),
            "filename": self.filename,
            "size": self.size,
            "checksum": self.checksum,
            "statistics": dict(self.statistics),
        }


def recipe_snapshot(recipe: Recipe) -> dict[str, Any]:
    """Portable form of a stored recipe."""
    return {
        "id": recipe.id,
        "title": recipe.title,
        "description": recipe.description,
        "ingredients": [
            {"name": i.name, "amount": i.amount, "unit": i.unit} for i in recipe.ingredients
        ],
        "instructions": list(recipe.instructions),
        "prepTime": recipe.prep_time,
        "cookTime": recipe.cook_time,
        "servings": recipe.servings,
        "dishType": recipe.dish_type,
        "cuisine": recipe.cuisine,
        "difficulty": recipe.difficulty,
        "tags": list(recipe.tags),
        "rating": recipe.rating,
        "notes": recipe.notes,
        "sourceUrl": recipe.source_url,
        "imageUrl": recipe.image_url,
        "isLocked": recipe.is_locked,
        "createdAt": recipe.created_at.isoformat(),
        "updatedAt": recipe.updated_at.isoformat(),
    }


def collection_snapshot(collection: Collection) -> dict[str, Any]:
    """Portable form of a stored collection."""
    return {
        "id": collection.id,
        "name": collection.name,
        "description": collection.description,
        "icon": collection.icon,
        "isPublic": collection.is_public,
        "recipeIds": list(collection.recipe_ids),
        "createdAt": collection.created_at.isoformat(),
    }


def meal_plan_snapshot(meal_plan: MealPlan) -> dict[str, Any]:
    """Portable form of a stored meal plan."""
    return {
        "id": meal_plan.id,
        "name": meal_plan.name,
        "startDate": meal_plan.start_date.isoformat(),
        "endDate": meal_plan.end_date.isoformat(),
        "isTemplate": meal_plan.is_template,
        "meals": [
            {
                "date": meal.date.isoformat(),
                "mealType": meal.meal_type,
                "recipes": [
                    {"recipeId": r.recipe_id, "servings": r.servings} for r in meal.recipes
                ],
                "notes": meal.notes,
            }
            for meal in meal_plan.meals
        ],
        "createdAt": meal_plan.created_at.isoformat(),
    }


def shopping_list_snapshot(shopping_list: ShoppingList) -> dict[str, Any]:
    """Portable form of a stored shopping list."""
    return {
        "id": shopping_list.id,
        "name": shopping_list.name,
        "items": [
            {
                "ingredient": item.ingredient,
                "quantity": item.quantity,
                "unit": item.unit,
                "category": item.category,
                "checked": item.checked,
                "recipeId": item.recipe_id,
                "notes": item.notes,
                "isCustom": item.is_custom,
            }
            for item in shopping_list.items
        ],
        "isActive": shopping_list.is_active,
        "completedAt": format_timestamp(shopping_list.completed_at),
        "createdAt": shopping_list.created_at.isoformat(),
    }


class BackupGenerator:
    """
    Writes bundle archives for accounts.

    Example:
        generator = BackupGenerator(store, work_dir=Path("/tmp/recipevault"))
        backup = generator.generate(account_id, "automatic")
        try:
            provider.upload_backup(connection, backup.path, "automatic")
        finally:
            generator.cleanup_backup_file(backup.path)
    """

    def __init__(
        self,
        source: AccountDataSource,
        work_dir: Path | str | None = None,
        version: str = BUNDLE_VERSION,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """
        Initialize the generator.

        Args:
            source: Read access to account data.
            work_dir: Directory for generated archives. Defaults to the
                system temporary directory.
            version: Bundle version stamped into every bundle.
            clock: Source of the export timestamp.
        """
        self.source = source
        self.work_dir = Path(work_dir) if work_dir else Path(tempfile.gettempdir())
        self.version = version
        self._clock = clock

    def build_bundle(self, account_id: str, backup_type: str = "manual") -> dict[str, Any]:
        """
        Assemble the bundle document for an account.

        Raises:
            SchemaError: If the configured version is below the supported floor.
        """
        version = parse_version(self.version)
        if version.major < MIN_SUPPORTED_MAJOR:
            raise SchemaError(
                f"Refusing to package bundle version {self.version}; "
                f"minimum supported major version is {MIN_SUPPORTED_MAJOR}",
                code="INCOMPATIBLE_VERSION",
            )

        account = self.source.get_account(account_id)
        bundle: dict[str, Any] = {
            "version": self.version,
            "exportDate": self._clock().isoformat(),
            "type": backup_type,
            "account": {"username": account.username, "email": account.email},
            "recipes": [recipe_snapshot(r) for r in self.source.get_recipes(account_id)],
            "collections": [
                collection_snapshot(c) for c in self.source.get_collections(account_id)
            ],
            "mealPlans": [meal_plan_snapshot(m) for m in self.source.get_meal_plans(account_id)],
            "shoppingLists": [
                shopping_list_snapshot(s) for s in self.source.get_shopping_lists(account_id)
            ],
        }
        bundle["statistics"] = entity_counts(bundle)
        return bundle

    def generate(self, account_id: str, backup_type: str = "manual") -> GeneratedBackup:
        """
        Generate a bundle archive for an account.

        Args:
            account_id: Account to export.
            backup_type: "manual" or "automatic".

        Returns:
            GeneratedBackup describing the archive on disk.

        Raises:
            SchemaError: If the bundle version is below the supported floor.
            InterchangeError: If the archive cannot be written.
        """
        if backup_type not in BACKUP_TYPES:
            raise InterchangeError(
                f"Invalid backup type: {backup_type}. Must be one of: {', '.join(BACKUP_TYPES)}",
                code="EXPORT_ERROR",
            )

        bundle = self.build_bundle(account_id, backup_type)

        self.work_dir.mkdir(parents=True, exist_ok=True)
        timestamp = self._clock().strftime("%Y%m%d-%H%M%S")
        filename = f"recipe-book-{backup_type}-backup-{timestamp}-{uuid.uuid4().hex[:8]}.zip"
        zip_path = self.work_dir / filename

        json_fd, json_name = tempfile.mkstemp(
            prefix="bundle-", suffix=".json", dir=str(self.work_dir)
        )
        json_path = Path(json_name)
        try:
            with os.fdopen(json_fd, "w", encoding="utf-8") as f:
                json.dump(bundle, f, indent=2, ensure_ascii=False)

            with zipfile.ZipFile(
                zip_path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9
            ) as archive:
                archive.write(json_path, arcname=BUNDLE_ENTRY_NAME)

            size = zip_path.stat().st_size
            checksum = _sha256(zip_path)
        except (OSError, TypeError, ValueError) as e:
            zip_path.unlink(missing_ok=True)
            logger.exception(f"Backup generation failed for {account_id}")
            raise InterchangeError(
                f"Failed to write backup archive: {e}", code="EXPORT_ERROR"
            ) from e
        finally:
            json_path.unlink(missing_ok=True)

        logger.info(f"Backup generated: {zip_path} ({size:,} bytes)")
        return GeneratedBackup(
            path=zip_path,
            filename=filename,
            size=size,
            checksum=checksum,
            statistics=bundle["statistics"],
        )

    def cleanup_backup_file(self, path: Path | str) -> None:
        """Delete a generated archive; failures are logged, not raised."""
        try:
            Path(path).unlink(missing_ok=True)
            logger.debug(f"Removed local backup file {path}")
        except OSError as e:
            logger.warning(f"Could not remove local backup file {path}: {e}")


def _sha256(path: Path) -> str:
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            sha256.update(chunk)
    return sha256.hexdigest()

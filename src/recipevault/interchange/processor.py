"""
Transactional writer for validated bundles.

ImportProcessor turns bundle snapshots into stored entities through a
StoreSession. Processing order is fixed:

    1. Recipes (building the old id -> new id table)
    2. Collections (recipe references rewritten through the table)
    3. Meal plans (recipe references rewritten through the table)
    4. Shopping lists (item recipe links rewritten through the table)

References with no entry in the table are dropped, never fatal. The
processor does not open or commit transactions; the caller owns the
session and decides what happens on failure.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from recipevault.interchange.bundle import (
    collection_refs,
    ingredient_name,
    meal_refs,
    snapshot_id,
)
from recipevault.interchange.duplicates import DEFAULT_MEAL_PLAN_NAME, DuplicateSkipSets
from recipevault.interchange.errors import ContentValidationError
from recipevault.storage.models import (
    Collection,
    DishType,
    Ingredient,
    Meal,
    MealPlan,
    MealRecipe,
    MealType,
    Recipe,
    ShoppingCategory,
    ShoppingItem,
    ShoppingList,
    new_id,
    parse_timestamp,
    utc_now,
)
from recipevault.storage.recipe_store import StoreSession

logger = logging.getLogger(__name__)

IMPORT_MODES = ("merge", "replace")

DEFAULT_COLLECTION_ICON = "📁"

# Exact dish type spellings, checked before partial matches
_DISH_TYPE_EXACT: dict[str, DishType] = {
    "appetizer": DishType.APPETIZER,
    "appetizers": DishType.APPETIZER,
    "starter": DishType.APPETIZER,
    "starters": DishType.APPETIZER,
    "main course": DishType.MAIN_COURSE,
    "main dish": DishType.MAIN_COURSE,
    "main": DishType.MAIN_COURSE,
    "entree": DishType.MAIN_COURSE,
    "entrée": DishType.MAIN_COURSE,
    "side dish": DishType.SIDE_DISH,
    "side": DishType.SIDE_DISH,
    "sides": DishType.SIDE_DISH,
    "dessert": DishType.DESSERT,
    "desserts": DishType.DESSERT,
    "sweet": DishType.DESSERT,
    "sweets": DishType.DESSERT,
    "beverage": DishType.BEVERAGE,
    "beverages": DishType.BEVERAGE,
    "drink": DishType.BEVERAGE,
    "drinks": DishType.BEVERAGE,
    "snack": DishType.SNACK,
    "snacks": DishType.SNACK,
    "breakfast": DishType.BREAKFAST,
    "lunch": DishType.LUNCH,
    "dinner": DishType.DINNER,
    "supper": DishType.DINNER,
}

# Substrings checked in order when no exact spelling matched
_DISH_TYPE_PARTIAL: list[tuple[tuple[str, ...], DishType]] = [
    (("appetizer", "starter"), DishType.APPETIZER),
    (("main", "entree", "entrée"), DishType.MAIN_COURSE),
    (("side",), DishType.SIDE_DISH),
    (("dessert", "sweet", "cake", "cookie", "pie"), DishType.DESSERT),
    (("beverage", "drink", "cocktail", "smoothie"), DishType.BEVERAGE),
    (("snack",), DishType.SNACK),
    (("breakfast", "brunch"), DishType.BREAKFAST),
    (("lunch",), DishType.LUNCH),
    (("dinner", "supper"), DishType.DINNER),
]


def normalize_dish_type(value: Any) -> str:
    """
    Map free-text dish types onto the DishType enum.

    Canonical values pass through, then exact spellings are tried, then
    substrings. Anything else becomes "Other".
    """
    if not isinstance(value, str) or not value.strip():
        return DishType.OTHER.value

    text = value.strip().lower()
    for member in DishType:
        if member.value.lower() == text:
            return member.value

    if text in _DISH_TYPE_EXACT:
        return _DISH_TYPE_EXACT[text].value

    for needles, dish_type in _DISH_TYPE_PARTIAL:
        if any(needle in text for needle in needles):
            return dish_type.value

    return DishType.OTHER.value


def _optional_int(value: Any) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _optional_float(value: Any) -> float | None:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


@dataclass
class ImportSummary:
    """
    Outcome of one import.

    Attributes:
        mode: "merge" or "replace".
        recipes_imported: Recipes written.
        collections_imported: Collections written.
        meal_plans_imported: Meal plans written.
        shopping_lists_imported: Shopping lists written.
        duplicates_skipped: Bundle entries skipped as duplicates (all types).
        skipped: Skipped entries per bundle array key.
        dropped_references: Recipe references dropped because they did not
            resolve to a recipe imported in the same call.
        duration: Seconds spent writing.
    """

    mode: str
    recipes_imported: int = 0
    collections_imported: int = 0
    meal_plans_imported: int = 0
    shopping_lists_imported: int = 0
    duplicates_skipped: int = 0
    skipped: dict[str, int] = field(default_factory=dict)
    dropped_references: int = 0
    duration: float = 0.0

    @property
    def total_imported(self) -> int:
        return (
            self.recipes_imported
            + self.collections_imported
            + self.meal_plans_imported
            + self.shopping_lists_imported
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to the response shape used by controllers."""
        return {
            "mode": self.mode,
            "recipesImported": self.recipes_imported,
            "collectionsImported": self.collections_imported,
            "mealPlansImported": self.meal_plans_imported,
            "shoppingListsImported": self.shopping_lists_imported,
            "duplicatesSkipped": self.duplicates_skipped,
            "skipped": dict(self.skipped),
            "droppedReferences": self.dropped_references,
            "totalImported": self.total_imported,
            "duration": round(self.duration, 3),
        }


class ImportProcessor:
    """
    Writes the non-skipped entities of a validated bundle.

    One processor can be shared; all per-import state (the id remapping
    table, counters) lives inside a single process() call.
    """

    def process(
        self,
        session: StoreSession,
        account_id: str,
        bundle: dict[str, Any],
        mode: str,
        skip_sets: DuplicateSkipSets | None = None,
    ) -> ImportSummary:
        """
        Write a bundle into an account.

        Args:
            session: Open store session; the caller commits or rolls back.
            account_id: Owning account for every written entity.
            bundle: Bundle that passed BundleValidator.validate().
            mode: "merge" keeps existing data, "replace" deletes it first.
            skip_sets: Bundle indices to skip (merge mode).

        Returns:
            ImportSummary with per-type counts.

        Raises:
            ContentValidationError: If mode is not merge or replace.
            StorageError: If a write fails.
        """
        if mode not in IMPORT_MODES:
            raise ContentValidationError(
                f"Invalid import mode: {mode}. Must be one of: {', '.join(IMPORT_MODES)}",
                code="INVALID_MODE",
            )

        started = time.monotonic()
        skip = skip_sets or DuplicateSkipSets()
        summary = ImportSummary(
            mode=mode, duplicates_skipped=skip.total, skipped=skip.to_dict()
        )

        if mode == "replace":
            deleted = session.delete_all_owned(account_id)
            logger.info(f"Replace import cleared existing data for {account_id}: {deleted}")

        id_map: dict[str, str] = {}

        for index, snapshot in enumerate(bundle.get("recipes", [])):
            if index in skip.recipes:
                continue
            recipe = self._build_recipe(account_id, snapshot)
            session.insert_recipe(recipe)
            old_id = snapshot_id(snapshot)
            if old_id is not None:
                id_map[old_id] = recipe.id
            summary.recipes_imported += 1

        for index, snapshot in enumerate(bundle.get("collections", [])):
            if index in skip.collections:
                continue
            collection, dropped = self._build_collection(account_id, snapshot, id_map)
            session.insert_collection(collection)
            summary.collections_imported += 1
            summary.dropped_references += dropped

        for index, snapshot in enumerate(bundle.get("mealPlans", [])):
            if index in skip.meal_plans:
                continue
            meal_plan, dropped = self._build_meal_plan(account_id, snapshot, id_map)
            session.insert_meal_plan(meal_plan)
            summary.meal_plans_imported += 1
            summary.dropped_references += dropped

        for index, snapshot in enumerate(bundle.get("shoppingLists", [])):
            if index in skip.shopping_lists:
                continue
            shopping_list, dropped = self._build_shopping_list(account_id, snapshot, id_map)
            session.insert_shopping_list(shopping_list)
            summary.shopping_lists_imported += 1
            summary.dropped_references += dropped

        summary.duration = time.monotonic() - started

        if summary.dropped_references:
            logger.warning(
                f"Dropped {summary.dropped_references} unresolved recipe reference(s) "
                f"while importing for {account_id}"
            )
        logger.info(
            f"Imported {summary.total_imported} entities for {account_id} "
            f"({mode} mode, {summary.duplicates_skipped} duplicates skipped)"
        )
        return summary

    def _build_recipe(self, account_id: str, snapshot: dict[str, Any]) -> Recipe:
        ingredients = [
            Ingredient(
                name=_text(ingredient_name(ingredient)).strip(),
                amount=_text(ingredient.get("amount")),
                unit=_text(ingredient.get("unit")),
            )
            for ingredient in snapshot.get("ingredients", [])
        ]

        instructions = []
        for step in snapshot.get("instructions", []):
            if isinstance(step, dict):
                step = step.get("description", step.get("text"))
            instructions.append(_text(step).strip())

        tags = snapshot.get("tags") or []
        now = utc_now()

        return Recipe(
            id=new_id(),
            account_id=account_id,
            title=_text(snapshot.get("title")).strip(),
            ingredients=ingredients,
            instructions=instructions,
            description=_text(snapshot.get("description")),
            prep_time=_optional_int(snapshot.get("prepTime")),
            cook_time=_optional_int(snapshot.get("cookTime")),
            servings=_optional_int(snapshot.get("servings")),
            dish_type=normalize_dish_type(snapshot.get("dishType")),
            cuisine=_text(snapshot.get("cuisine")),
            difficulty=_text(snapshot.get("difficulty")),
            tags=[_text(tag) for tag in tags] if isinstance(tags, list) else [],
            rating=_optional_float(snapshot.get("rating")),
            notes=_text(snapshot.get("notes")),
            source_url=_text(snapshot.get("sourceUrl")),
            image_url=_text(snapshot.get("imageUrl")),
            is_locked=bool(snapshot.get("isLocked", False)),
            created_at=now,
            updated_at=now,
        )

    def _build_collection(
        self,
        account_id: str,
        snapshot: dict[str, Any],
        id_map: dict[str, str],
    ) -> tuple[Collection, int]:
        refs = collection_refs(snapshot)
        recipe_ids = [id_map[ref] for ref in refs if ref in id_map]

        collection = Collection(
            id=new_id(),
            account_id=account_id,
            name=_text(snapshot.get("name")).strip(),
            description=_text(snapshot.get("description")),
            icon=_text(snapshot.get("icon")) or DEFAULT_COLLECTION_ICON,
            is_public=bool(snapshot.get("isPublic", False)),
            recipe_ids=recipe_ids,
            created_at=utc_now(),
        )
        return collection, len(refs) - len(recipe_ids)

    def _build_meal_plan(
        self,
        account_id: str,
        snapshot: dict[str, Any],
        id_map: dict[str, str],
    ) -> tuple[MealPlan, int]:
        start = parse_timestamp(snapshot.get("startDate") or snapshot.get("date")) or utc_now()
        end = parse_timestamp(snapshot.get("endDate")) or start

        meals = []
        dropped = 0
        for entry in snapshot.get("meals", []):
            recipes = []
            for ref, servings in meal_refs(entry):
                if ref in id_map:
                    recipes.append(
                        MealRecipe(recipe_id=id_map[ref], servings=_optional_int(servings) or 1)
                    )
                else:
                    dropped += 1

            meal_type = entry.get("mealType", entry.get("type"))
            meals.append(
                Meal(
                    date=parse_timestamp(entry.get("date")) or start,
                    meal_type=MealType.from_string(meal_type).value,
                    recipes=recipes,
                    notes=_text(entry.get("notes")),
                )
            )

        meal_plan = MealPlan(
            id=new_id(),
            account_id=account_id,
            name=_text(snapshot.get("name")).strip() or DEFAULT_MEAL_PLAN_NAME,
            start_date=start,
            end_date=end,
            meals=meals,
            is_template=bool(snapshot.get("isTemplate", False)),
            created_at=utc_now(),
        )
        return meal_plan, dropped

    def _build_shopping_list(
        self,
        account_id: str,
        snapshot: dict[str, Any],
        id_map: dict[str, str],
    ) -> tuple[ShoppingList, int]:
        items = []
        dropped = 0
        for item in snapshot.get("items") or []:
            recipe_id = None
            old_ref = item.get("recipeId")
            if old_ref not in (None, ""):
                recipe_id = id_map.get(str(old_ref))
                if recipe_id is None:
                    dropped += 1

            items.append(
                ShoppingItem(
                    ingredient=_text(item.get("ingredient")).strip(),
                    quantity=_optional_float(item.get("quantity")) or 0,
                    unit=_text(item.get("unit")),
                    category=ShoppingCategory.from_string(item.get("category")).value,
                    checked=bool(item.get("checked", False)),
                    recipe_id=recipe_id,
                    notes=_text(item.get("notes")),
                    is_custom=bool(item.get("isCustom", False)),
                )
            )

        shopping_list = ShoppingList(
            id=new_id(),
            account_id=account_id,
            name=_text(snapshot.get("name")).strip(),
            items=items,
            is_active=bool(snapshot.get("isActive", True)),
            completed_at=parse_timestamp(snapshot.get("completedAt")),
            created_at=utc_now(),
        )
        return shopping_list, dropped

"""
Duplicate detection for merge-mode imports.

Each entity type has a DuplicateStrategy that decides whether a bundle
snapshot matches something the account already owns. The detector runs
every strategy against the account's existing data before any write and
returns the bundle indices to skip.

Default strategies:
    - Recipes: same title and same first three ingredient names
      (case-insensitive, order among those three ignored)
    - Collections, shopping lists: same name (case-insensitive)
    - Meal plans: same name and an overlapping date range
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from recipevault.interchange.bundle import ingredient_name
from recipevault.storage.models import (
    Collection,
    MealPlan,
    Recipe,
    ShoppingList,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

DEFAULT_MEAL_PLAN_NAME = "Imported Meal Plan"

# Number of leading ingredients that take part in the recipe signature
SIGNATURE_INGREDIENTS = 3


class DataAccessor(Protocol):
    """Read-only view of an account's existing entities."""

    def get_recipes(self, account_id: str) -> list[Recipe]: ...

    def get_collections(self, account_id: str) -> list[Collection]: ...

    def get_meal_plans(self, account_id: str) -> list[MealPlan]: ...

    def get_shopping_lists(self, account_id: str) -> list[ShoppingList]: ...


def _fold(value: Any) -> str:
    return str(value or "").strip().casefold()


class DuplicateStrategy(ABC):
    """
    Decides whether a bundle snapshot duplicates existing data.

    Strategies are stateless; matcher() builds a per-call index so one
    strategy can serve concurrent imports.
    """

    @abstractmethod
    def matcher(self, existing: list[Any]) -> Callable[[dict[str, Any]], bool]:
        """Index existing entities and return a predicate over bundle snapshots."""
        pass


class RecipeSignatureStrategy(DuplicateStrategy):
    """Match recipes on title plus the first few ingredient names."""

    def __init__(self, ingredient_count: int = SIGNATURE_INGREDIENTS) -> None:
        self.ingredient_count = ingredient_count

    def signature(self, title: Any, ingredient_names: list[Any]) -> tuple[str, tuple[str, ...]]:
        leading = ingredient_names[: self.ingredient_count]
        return _fold(title), tuple(sorted(_fold(name) for name in leading))

    def matcher(self, existing: list[Recipe]) -> Callable[[dict[str, Any]], bool]:
        signatures = {self.signature(r.title, r.ingredient_names) for r in existing}

        def is_duplicate(snapshot: dict[str, Any]) -> bool:
            names = [
                ingredient_name(ingredient)
                for ingredient in snapshot.get("ingredients") or []
                if isinstance(ingredient, dict)
            ]
            return self.signature(snapshot.get("title"), names) in signatures

        return is_duplicate


class NameMatchStrategy(DuplicateStrategy):
    """Match entities on a case-insensitive name."""

    def matcher(self, existing: list[Any]) -> Callable[[dict[str, Any]], bool]:
        names = {_fold(entity.name) for entity in existing}
        return lambda snapshot: _fold(snapshot.get("name")) in names


class NameAndDateOverlapStrategy(DuplicateStrategy):
    """Match meal plans on name when their date ranges overlap."""

    def matcher(self, existing: list[MealPlan]) -> Callable[[dict[str, Any]], bool]:
        plans: dict[str, list[MealPlan]] = {}
        for plan in existing:
            plans.setdefault(_fold(plan.name), []).append(plan)

        def is_duplicate(snapshot: dict[str, Any]) -> bool:
            candidates = plans.get(_fold(snapshot.get("name") or DEFAULT_MEAL_PLAN_NAME))
            if not candidates:
                return False

            start = parse_timestamp(snapshot.get("startDate") or snapshot.get("date"))
            if start is None:
                return False
            end = parse_timestamp(snapshot.get("endDate")) or start
            return any(plan.overlaps(start, end) for plan in candidates)

        return is_duplicate


@dataclass
class DuplicateSkipSets:
    """Bundle indices to skip, per entity type."""

    recipes: set[int] = field(default_factory=set)
    collections: set[int] = field(default_factory=set)
    meal_plans: set[int] = field(default_factory=set)
    shopping_lists: set[int] = field(default_factory=set)

    @property
    def total(self) -> int:
        return (
            len(self.recipes)
            + len(self.collections)
            + len(self.meal_plans)
            + len(self.shopping_lists)
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "recipes": len(self.recipes),
            "collections": len(self.collections),
            "mealPlans": len(self.meal_plans),
            "shoppingLists": len(self.shopping_lists),
        }


class DuplicateDetector:
    """
    Computes merge-mode skip sets against an account's existing data.

    The detector only reads; it never writes and keeps no state between
    calls.

    Example:
        detector = DuplicateDetector(store)
        skip = detector.detect(account_id, bundle)
        print(skip.total)
    """

    def __init__(
        self,
        accessor: DataAccessor,
        recipe_strategy: DuplicateStrategy | None = None,
        collection_strategy: DuplicateStrategy | None = None,
        meal_plan_strategy: DuplicateStrategy | None = None,
        shopping_list_strategy: DuplicateStrategy | None = None,
    ) -> None:
        self.accessor = accessor
        self.recipe_strategy = recipe_strategy or RecipeSignatureStrategy()
        self.collection_strategy = collection_strategy or NameMatchStrategy()
        self.meal_plan_strategy = meal_plan_strategy or NameAndDateOverlapStrategy()
        self.shopping_list_strategy = shopping_list_strategy or NameMatchStrategy()

    def detect(self, account_id: str, bundle: dict[str, Any]) -> DuplicateSkipSets:
        """
        Find bundle entries that duplicate the account's existing data.

        Args:
            account_id: Account whose data is compared against.
            bundle: Validated bundle.

        Returns:
            DuplicateSkipSets with one index set per entity type.
        """
        skip = DuplicateSkipSets(
            recipes=self._scan(
                self.recipe_strategy,
                self.accessor.get_recipes(account_id),
                bundle.get("recipes", []),
            ),
            collections=self._scan(
                self.collection_strategy,
                self.accessor.get_collections(account_id),
                bundle.get("collections", []),
            ),
            meal_plans=self._scan(
                self.meal_plan_strategy,
                self.accessor.get_meal_plans(account_id),
                bundle.get("mealPlans", []),
            ),
            shopping_lists=self._scan(
                self.shopping_list_strategy,
                self.accessor.get_shopping_lists(account_id),
                bundle.get("shoppingLists", []),
            ),
        )

        if skip.total:
            logger.info(f"Detected {skip.total} duplicate(s) for account {account_id}")
        return skip

    def _scan(
        self,
        strategy: DuplicateStrategy,
        existing: list[Any],
        snapshots: list[dict[str, Any]],
    ) -> set[int]:
        if not existing or not snapshots:
            return set()
        is_duplicate = strategy.matcher(existing)
        return {index for index, snapshot in enumerate(snapshots) if is_duplicate(snapshot)}

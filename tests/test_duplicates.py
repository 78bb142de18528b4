"""Tests for merge-mode duplicate detection."""

from __future__ import annotations

import shutil
import tempfile
import unittest
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

from bundle_samples import sample_bundle

from recipevault.interchange.duplicates import (
    DuplicateDetector,
    DuplicateSkipSets,
    DuplicateStrategy,
    NameAndDateOverlapStrategy,
    RecipeSignatureStrategy,
)
from recipevault.storage.models import (
    Account,
    Collection,
    Ingredient,
    MealPlan,
    Recipe,
    ShoppingList,
    new_id,
)
from recipevault.storage.recipe_store import RecipeStore


def recipe(title: str, *ingredients: str) -> Recipe:
    return Recipe(
        id=new_id(),
        account_id="a",
        title=title,
        ingredients=[Ingredient(name) for name in ingredients],
    )


def meal_plan(name: str, start: datetime, end: datetime) -> MealPlan:
    return MealPlan(id=new_id(), account_id="a", name=name, start_date=start, end_date=end)


class TestRecipeSignatureStrategy(unittest.TestCase):
    """Tests for the default recipe strategy."""

    def setUp(self) -> None:
        self.strategy = RecipeSignatureStrategy()

    def test_matches_title_and_leading_ingredients(self) -> None:
        """Test that case and order of the leading ingredients are ignored."""
        is_duplicate = self.strategy.matcher([recipe("PANCAKES", "egg", "milk", "flour")])
        snapshot = sample_bundle()["recipes"][0]
        self.assertTrue(is_duplicate(snapshot))

    def test_only_first_three_ingredients_count(self) -> None:
        is_duplicate = self.strategy.matcher([recipe("Pancakes", "Flour", "Milk", "Egg")])
        snapshot = sample_bundle()["recipes"][0]
        snapshot["ingredients"].append({"name": "Sugar", "amount": "1"})
        self.assertTrue(is_duplicate(snapshot))

    def test_different_ingredients(self) -> None:
        is_duplicate = self.strategy.matcher([recipe("Pancakes", "Flour", "Water", "Egg")])
        self.assertFalse(is_duplicate(sample_bundle()["recipes"][0]))

    def test_different_title(self) -> None:
        is_duplicate = self.strategy.matcher([recipe("Crepes", "Flour", "Milk", "Egg")])
        self.assertFalse(is_duplicate(sample_bundle()["recipes"][0]))

    def test_blank_name_falls_back_to_item(self) -> None:
        is_duplicate = self.strategy.matcher([recipe("Pancakes", "Flour", "Milk", "Egg")])
        snapshot = sample_bundle()["recipes"][0]
        snapshot["ingredients"][0] = {"name": "  ", "item": "Flour", "amount": "200"}
        self.assertTrue(is_duplicate(snapshot))


class TestNameAndDateOverlapStrategy(unittest.TestCase):
    """Tests for the meal plan strategy."""

    def setUp(self) -> None:
        existing = meal_plan(
            "week 1", datetime(2024, 5, 1, tzinfo=UTC), datetime(2024, 5, 6, tzinfo=UTC)
        )
        self.is_duplicate = NameAndDateOverlapStrategy().matcher([existing])

    def test_overlapping_same_name(self) -> None:
        snapshot = {"name": "Week 1", "startDate": "2024-05-06", "endDate": "2024-05-12"}
        self.assertTrue(self.is_duplicate(snapshot))

    def test_same_name_no_overlap(self) -> None:
        snapshot = {"name": "Week 1", "startDate": "2024-05-07", "endDate": "2024-05-12"}
        self.assertFalse(self.is_duplicate(snapshot))

    def test_different_name(self) -> None:
        snapshot = {"name": "Week 2", "startDate": "2024-05-01"}
        self.assertFalse(self.is_duplicate(snapshot))

    def test_single_date_plan(self) -> None:
        self.assertTrue(self.is_duplicate({"name": "week 1", "date": "2024-05-03"}))


class TestDuplicateDetector(unittest.TestCase):
    """Tests for DuplicateDetector against a real store."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        self.store = RecipeStore(Path(self.temp_dir))
        self.account = self.store.create_account(Account.create("cook", "c@example.com", "h"))
        self.detector = DuplicateDetector(self.store)

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_empty_account_has_no_duplicates(self) -> None:
        skip = self.detector.detect(self.account.id, sample_bundle())
        self.assertEqual(skip.total, 0)

    def test_detects_each_type(self) -> None:
        account_id = self.account.id
        pancakes = recipe("Pancakes", "Flour", "Milk", "Egg")
        pancakes.account_id = account_id
        with self.store.transaction() as session:
            session.insert_recipe(pancakes)
            session.insert_collection(
                Collection(id=new_id(), account_id=account_id, name="favourites")
            )
            plan = meal_plan(
                "Week 1", datetime(2024, 5, 10, tzinfo=UTC), datetime(2024, 5, 20, tzinfo=UTC)
            )
            plan.account_id = account_id
            session.insert_meal_plan(plan)
            session.insert_shopping_list(
                ShoppingList(id=new_id(), account_id=account_id, name="GROCERIES")
            )

        skip = self.detector.detect(account_id, sample_bundle())

        self.assertEqual(skip.recipes, {0})
        self.assertEqual(skip.collections, {0})
        self.assertEqual(skip.meal_plans, {0})
        self.assertEqual(skip.shopping_lists, {0})
        self.assertEqual(skip.total, 4)
        self.assertEqual(
            skip.to_dict(),
            {"recipes": 1, "collections": 1, "mealPlans": 1, "shoppingLists": 1},
        )

    def test_other_accounts_are_ignored(self) -> None:
        other = self.store.create_account(Account.create("other", "o@example.com", "h"))
        pancakes = recipe("Pancakes", "Flour", "Milk", "Egg")
        pancakes.account_id = other.id
        with self.store.transaction() as session:
            session.insert_recipe(pancakes)

        self.assertEqual(self.detector.detect(self.account.id, sample_bundle()).total, 0)

    def test_pluggable_recipe_strategy(self) -> None:
        """Test that a custom strategy replaces the default recipe matching."""

        class TitleOnly(DuplicateStrategy):
            def matcher(self, existing: list[Any]) -> Callable[[dict[str, Any]], bool]:
                titles = {r.title for r in existing}
                return lambda snapshot: snapshot.get("title") in titles

        accessor = MagicMock()
        accessor.get_recipes.return_value = [recipe("Tomato Soup", "Water")]
        accessor.get_collections.return_value = []
        accessor.get_meal_plans.return_value = []
        accessor.get_shopping_lists.return_value = []

        detector = DuplicateDetector(accessor, recipe_strategy=TitleOnly())
        skip = detector.detect("a", sample_bundle())

        self.assertEqual(skip.recipes, {1})
        accessor.get_recipes.assert_called_once_with("a")

    def test_skip_sets_default_empty(self) -> None:
        self.assertEqual(DuplicateSkipSets().total, 0)


if __name__ == "__main__":
    unittest.main()

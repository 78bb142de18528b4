"""Tests for ImportProcessor and dish type normalization."""

from __future__ import annotations

import shutil
import tempfile
import unittest
from pathlib import Path

from bundle_samples import sample_bundle

from recipevault.interchange.duplicates import DuplicateSkipSets
from recipevault.interchange.errors import ContentValidationError
from recipevault.interchange.processor import ImportProcessor, normalize_dish_type
from recipevault.interchange.validator import BundleValidator
from recipevault.storage.models import Account, Recipe, new_id
from recipevault.storage.recipe_store import RecipeStore


class TestNormalizeDishType(unittest.TestCase):
    """Tests for normalize_dish_type."""

    def test_canonical_values(self) -> None:
        self.assertEqual(normalize_dish_type("Main Course"), "Main Course")
        self.assertEqual(normalize_dish_type("side dish"), "Side Dish")

    def test_exact_spellings(self) -> None:
        self.assertEqual(normalize_dish_type("entrée"), "Main Course")
        self.assertEqual(normalize_dish_type("Drinks"), "Beverage")
        self.assertEqual(normalize_dish_type("supper"), "Dinner")

    def test_partial_matches(self) -> None:
        self.assertEqual(normalize_dish_type("Chocolate cake"), "Dessert")
        self.assertEqual(normalize_dish_type("Sunday brunch"), "Breakfast")
        self.assertEqual(normalize_dish_type("Soups and starters"), "Appetizer")

    def test_unknown_values(self) -> None:
        self.assertEqual(normalize_dish_type("Soup"), "Other")
        self.assertEqual(normalize_dish_type(""), "Other")
        self.assertEqual(normalize_dish_type(None), "Other")
        self.assertEqual(normalize_dish_type(3), "Other")


class TestImportProcessor(unittest.TestCase):
    """Tests for ImportProcessor against a real store."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        self.store = RecipeStore(Path(self.temp_dir))
        self.account = self.store.create_account(Account.create("cook", "c@example.com", "h"))
        self.processor = ImportProcessor()
        self.bundle = BundleValidator().validate(sample_bundle())

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _process(self, mode: str = "merge", skip: DuplicateSkipSets | None = None):
        with self.store.transaction() as session:
            return self.processor.process(session, self.account.id, self.bundle, mode, skip)

    def _recipes_by_title(self) -> dict[str, Recipe]:
        return {r.title: r for r in self.store.get_recipes(self.account.id)}

    def test_imports_everything(self) -> None:
        summary = self._process()

        self.assertEqual(summary.recipes_imported, 2)
        self.assertEqual(summary.collections_imported, 1)
        self.assertEqual(summary.meal_plans_imported, 1)
        self.assertEqual(summary.shopping_lists_imported, 1)
        self.assertEqual(summary.total_imported, 5)
        self.assertEqual(summary.duplicates_skipped, 0)

    def test_fresh_ids_and_owner(self) -> None:
        """Test that stored entities get new ids and the target owner."""
        self._process()
        recipes = self.store.get_recipes(self.account.id)

        self.assertEqual(len(recipes), 2)
        for stored in recipes:
            self.assertNotIn(stored.id, ("r1", "r2"))
            self.assertEqual(stored.account_id, self.account.id)

    def test_recipe_fields_converted(self) -> None:
        self._process()
        recipes = self._recipes_by_title()

        pancakes = recipes["Pancakes"]
        self.assertEqual(pancakes.ingredient_names, ["Flour", "Milk", "Egg"])
        self.assertEqual(pancakes.instructions, ["Mix everything", "Fry in a pan"])
        self.assertEqual(pancakes.dish_type, "Breakfast")
        self.assertEqual(pancakes.servings, 4)
        self.assertEqual(pancakes.prep_time, 10)
        self.assertEqual(pancakes.tags, ["sweet"])

        soup = recipes["Tomato Soup"]
        self.assertEqual(soup.instructions, ["Simmer for an hour"])
        self.assertEqual(soup.dish_type, "Appetizer")

    def test_blank_ingredient_name_uses_item(self) -> None:
        bundle = sample_bundle()
        bundle["recipes"][1]["ingredients"] = [
            {"name": "<b></b>", "item": "Tomatoes", "amount": "1"},
            {"name": "   ", "item": "Basil", "amount": "5"},
        ]
        self.bundle = BundleValidator().validate(bundle)

        self._process()

        soup = self._recipes_by_title()["Tomato Soup"]
        self.assertEqual(soup.ingredient_names, ["Tomatoes", "Basil"])

    def test_references_are_remapped(self) -> None:
        """Test that collections, meals and shopping items point at the new recipe ids."""
        summary = self._process()
        recipes = self._recipes_by_title()
        pancakes_id = recipes["Pancakes"].id
        soup_id = recipes["Tomato Soup"].id

        collection = self.store.get_collections(self.account.id)[0]
        self.assertEqual(collection.recipe_ids, [pancakes_id, soup_id])

        meal = self.store.get_meal_plans(self.account.id)[0].meals[0]
        self.assertEqual(meal.meal_type, "breakfast")
        self.assertEqual([(r.recipe_id, r.servings) for r in meal.recipes], [(pancakes_id, 2)])

        items = self.store.get_shopping_lists(self.account.id)[0].items
        self.assertEqual(items[0].recipe_id, soup_id)
        self.assertIsNone(items[1].recipe_id)
        self.assertEqual(items[1].category, "Bakery")
        self.assertTrue(items[2].is_custom)

        # "gone" in the collection, the meal and one shopping item
        self.assertEqual(summary.dropped_references, 3)

    def test_skipped_recipe_references_are_dropped(self) -> None:
        """Test that references to a skipped duplicate are dropped, not kept."""
        summary = self._process(skip=DuplicateSkipSets(recipes={0}))

        self.assertEqual(summary.recipes_imported, 1)
        self.assertEqual(summary.duplicates_skipped, 1)
        self.assertEqual(summary.skipped["recipes"], 1)
        collection = self.store.get_collections(self.account.id)[0]
        self.assertEqual(len(collection.recipe_ids), 1)
        meal = self.store.get_meal_plans(self.account.id)[0].meals[0]
        self.assertEqual(meal.recipes, [])

    def test_skip_sets_skip_other_types(self) -> None:
        skip = DuplicateSkipSets(collections={0}, meal_plans={0}, shopping_lists={0})
        summary = self._process(skip=skip)

        self.assertEqual(summary.total_imported, 2)
        self.assertEqual(self.store.count_entities(self.account.id)["collections"], 0)

    def test_replace_clears_existing_data(self) -> None:
        with self.store.transaction() as session:
            session.insert_recipe(Recipe(id=new_id(), account_id=self.account.id, title="Old"))

        self._process(mode="replace")

        titles = sorted(self._recipes_by_title())
        self.assertEqual(titles, ["Pancakes", "Tomato Soup"])

    def test_merge_keeps_existing_data(self) -> None:
        with self.store.transaction() as session:
            session.insert_recipe(Recipe(id=new_id(), account_id=self.account.id, title="Old"))

        self._process(mode="merge")

        self.assertEqual(len(self._recipes_by_title()), 3)

    def test_invalid_mode(self) -> None:
        with self.assertRaises(ContentValidationError) as ctx:
            self._process(mode="overwrite")
        self.assertEqual(ctx.exception.code, "INVALID_MODE")
        self.assertEqual(self.store.count_entities(self.account.id)["recipes"], 0)

    def test_summary_to_dict(self) -> None:
        data = self._process().to_dict()

        self.assertEqual(data["mode"], "merge")
        self.assertEqual(data["recipesImported"], 2)
        self.assertEqual(data["totalImported"], 5)
        self.assertEqual(data["droppedReferences"], 3)


if __name__ == "__main__":
    unittest.main()

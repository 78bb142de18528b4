"""
Validation and sanitization of untrusted bundles.

Bundles arrive from user uploads and from cloud storage; neither source is
trusted. Validation runs in two passes and stops at the first violation:

    1. Structural: required top-level fields, identity, version range, and
       the four entity arrays.
    2. Content: per-entity field rules for recipes, collections, meal plans
       and shopping lists.

Before the content rules run, every string is stripped of HTML markup,
script blocks, javascript: URIs and inline event handlers. After them,
references to recipes that are not in the bundle are logged as warnings
(ImportProcessor drops them).
"""

from __future__ import annotations

import copy
import logging
import re
from typing import Any

from recipevault.interchange.bundle import (
    CURRENT_VERSION_MAJOR,
    ENTITY_KEYS,
    MIN_SUPPORTED_MAJOR,
    collection_refs,
    ingredient_name,
    is_supported_major,
    meal_plan_refs,
    parse_version,
    snapshot_id,
)
from recipevault.interchange.errors import (
    ContentValidationError,
    FileFormatError,
    SchemaError,
    SecurityError,
)
from recipevault.storage.models import MealType, parse_timestamp

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 200

# Applied in order; script and style blocks go before generic tags so their
# contents are removed along with the tags.
_SANITIZE_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE),
    re.compile(r"<style\b[^<]*(?:(?!</style>)<[^<]*)*</style>", re.IGNORECASE),
    re.compile(r"</?[a-zA-Z][^>]*>"),
    re.compile(r"javascript\s*:", re.IGNORECASE),
    re.compile(r"\bon\w+\s*=", re.IGNORECASE),
]


def sanitize_text(value: str) -> str:
    """
    Strip markup, scripts, javascript: URIs and inline handlers from a string.

    The passes repeat until the string is stable, so a payload nested inside
    another (e.g. "javajavascript:script:") cannot reassemble itself.
    """
    while True:
        cleaned = value
        for pattern in _SANITIZE_PATTERNS:
            cleaned = pattern.sub("", cleaned)
        if cleaned == value:
            return cleaned
        value = cleaned


def _is_blank(value: Any) -> bool:
    return not isinstance(value, str) or not value.strip()


class BundleValidator:
    """
    Validates and sanitizes a decoded bundle.

    Example:
        validator = BundleValidator()
        clean = validator.validate(json.loads(raw))

    Attributes:
        reject_malicious_content: Raise SecurityError instead of silently
            stripping markup.
    """

    def __init__(self, reject_malicious_content: bool = False) -> None:
        self.reject_malicious_content = reject_malicious_content

    def validate(self, data: Any) -> dict[str, Any]:
        """
        Run both validation passes.

        Returns:
            Sanitized copy of the bundle with entity arrays at the top level.
        """
        self.validate_structure(data)
        return self.validate_content(data)

    # Structural pass

    def validate_structure(self, data: Any) -> None:
        """
        Check required top-level fields, version and entity arrays.

        Raises:
            FileFormatError: If the document is not a JSON object.
            SchemaError: If a field is missing, the version is unsupported,
                or an entity array has the wrong type.
        """
        if not isinstance(data, dict):
            raise FileFormatError(
                "Backup file must contain a JSON object", code="INVALID_STRUCTURE"
            )

        for field_name in ("version", "exportDate"):
            if data.get(field_name) in (None, ""):
                raise SchemaError(
                    f"Missing required field: {field_name}",
                    code="MISSING_FIELD",
                    details={"field": field_name},
                )

        if self._identity(data) is None:
            raise SchemaError(
                "Missing required field: account.username",
                code="MISSING_FIELD",
                details={"field": "account.username"},
            )

        self._check_version(data["version"])

        container = data.get("data")
        if container is not None and not isinstance(container, dict):
            raise SchemaError(
                "Field 'data' must be an object",
                code="INVALID_STRUCTURE",
                details={"field": "data"},
            )

        for key in ENTITY_KEYS:
            items = self._entity_array(data, key)
            if items is None:
                raise SchemaError(
                    f"Missing required field: {key}",
                    code="MISSING_FIELD",
                    details={"field": key},
                )
            if not isinstance(items, list):
                raise SchemaError(
                    f"Field '{key}' must be an array",
                    code="INVALID_STRUCTURE",
                    details={"field": key},
                )

    def _identity(self, data: dict[str, Any]) -> str | None:
        for key in ("account", "user"):
            owner = data.get(key)
            if isinstance(owner, dict) and not _is_blank(owner.get("username")):
                return str(owner["username"])
        return None

    def _check_version(self, raw_version: Any) -> None:
        try:
            version = parse_version(raw_version)
        except ValueError as e:
            raise SchemaError(
                f"Invalid version format: {raw_version}",
                code="INVALID_VERSION",
                details={"version": str(raw_version)},
            ) from e

        if not is_supported_major(version.major):
            raise SchemaError(
                f"Backup version {version} is not supported. "
                f"Supported major versions: {MIN_SUPPORTED_MAJOR} to {CURRENT_VERSION_MAJOR}",
                code="INCOMPATIBLE_VERSION",
                details={"version": str(raw_version)},
            )

    def _entity_array(self, data: dict[str, Any], key: str) -> Any:
        if key in data:
            return data[key]
        container = data.get("data")
        if isinstance(container, dict):
            return container.get(key)
        return None

    # Content pass

    def validate_content(self, data: dict[str, Any]) -> dict[str, Any]:
        """
        Check every entity, warn about dangling references, and sanitize.

        Expects a bundle that passed validate_structure().

        Returns:
            Sanitized deep copy of the bundle with entity arrays hoisted to
            the top level.

        Raises:
            ContentValidationError: On the first entity violation.
            SecurityError: If markup is found and reject_malicious_content is set.
        """
        hoisted = {k: v for k, v in data.items() if k != "data"}
        for key in ENTITY_KEYS:
            hoisted[key] = self._entity_array(data, key)

        # Sanitizing first means the field rules see what will be stored
        bundle: dict[str, Any] = self._sanitize(copy.deepcopy(hoisted), "")

        for index, recipe in enumerate(bundle["recipes"]):
            self._validate_recipe(index, recipe)
        for index, collection in enumerate(bundle["collections"]):
            self._validate_collection(index, collection)
        for index, meal_plan in enumerate(bundle["mealPlans"]):
            self._validate_meal_plan(index, meal_plan)
        for index, shopping_list in enumerate(bundle["shoppingLists"]):
            self._validate_shopping_list(index, shopping_list)

        self._warn_dangling_references(bundle)

        return bundle

    def _validate_recipe(self, index: int, recipe: Any) -> None:
        if not isinstance(recipe, dict):
            raise ContentValidationError(
                f"Recipe at index {index} must be an object",
                code="INVALID_RECIPE",
                details={"index": index},
            )

        title = recipe.get("title")
        if _is_blank(title):
            raise ContentValidationError(
                f"Recipe at index {index} is missing a title",
                code="INVALID_RECIPE",
                details={"index": index, "field": "title"},
            )
        if len(title) > MAX_TITLE_LENGTH:
            raise ContentValidationError(
                f"Recipe title at index {index} exceeds {MAX_TITLE_LENGTH} characters",
                code="FIELD_TOO_LONG",
                details={"index": index, "field": "title", "maxLength": MAX_TITLE_LENGTH},
            )

        ingredients = recipe.get("ingredients")
        if not isinstance(ingredients, list) or not ingredients:
            raise ContentValidationError(
                f"Recipe '{title}' must have at least one ingredient",
                code="INVALID_RECIPE",
                details={"index": index, "field": "ingredients"},
            )
        for position, ingredient in enumerate(ingredients):
            if not isinstance(ingredient, dict):
                raise ContentValidationError(
                    f"Ingredient {position} of recipe '{title}' must be an object",
                    code="INVALID_INGREDIENT",
                    details={"index": index, "ingredient": position},
                )
            if ingredient_name(ingredient) is None:
                raise ContentValidationError(
                    f"Ingredient {position} of recipe '{title}' is missing a name",
                    code="INVALID_INGREDIENT",
                    details={"index": index, "ingredient": position, "field": "name"},
                )
            if ingredient.get("amount") is None:
                raise ContentValidationError(
                    f"Ingredient {position} of recipe '{title}' is missing an amount",
                    code="INVALID_INGREDIENT",
                    details={"index": index, "ingredient": position, "field": "amount"},
                )

        instructions = recipe.get("instructions")
        if not isinstance(instructions, list) or not instructions:
            raise ContentValidationError(
                f"Recipe '{title}' must have at least one instruction",
                code="INVALID_RECIPE",
                details={"index": index, "field": "instructions"},
            )
        for position, step in enumerate(instructions):
            text = step
            if isinstance(step, dict):
                text = step.get("description", step.get("text"))
            if _is_blank(text):
                raise ContentValidationError(
                    f"Instruction {position} of recipe '{title}' has no text",
                    code="INVALID_INSTRUCTION",
                    details={"index": index, "instruction": position},
                )

    def _validate_collection(self, index: int, collection: Any) -> None:
        if not isinstance(collection, dict) or _is_blank(collection.get("name")):
            raise ContentValidationError(
                f"Collection at index {index} is missing a name",
                code="INVALID_COLLECTION",
                details={"index": index, "field": "name"},
            )
        for key in ("recipeIds", "recipes"):
            if key in collection and not isinstance(collection[key], list):
                raise ContentValidationError(
                    f"Collection '{collection['name']}' field '{key}' must be an array",
                    code="INVALID_COLLECTION",
                    details={"index": index, "field": key},
                )

    def _validate_meal_plan(self, index: int, meal_plan: Any) -> None:
        if not isinstance(meal_plan, dict):
            raise ContentValidationError(
                f"Meal plan at index {index} must be an object",
                code="INVALID_MEAL_PLAN",
                details={"index": index},
            )

        start_raw = meal_plan.get("startDate") or meal_plan.get("date")
        if not start_raw:
            raise ContentValidationError(
                f"Meal plan at index {index} is missing a date",
                code="INVALID_MEAL_PLAN",
                details={"index": index, "field": "startDate"},
            )
        start = self._parse_date(start_raw, "INVALID_MEAL_PLAN", index, "startDate")
        end = self._parse_date(
            meal_plan.get("endDate") or start_raw, "INVALID_MEAL_PLAN", index, "endDate"
        )
        if start is not None and end is not None and end < start:
            raise ContentValidationError(
                f"Meal plan at index {index} ends before it starts",
                code="INVALID_MEAL_PLAN",
                details={"index": index, "field": "endDate"},
            )

        meals = meal_plan.get("meals")
        if not isinstance(meals, list):
            raise ContentValidationError(
                f"Meal plan at index {index} must have a meals array",
                code="INVALID_MEAL_PLAN",
                details={"index": index, "field": "meals"},
            )

        for position, meal in enumerate(meals):
            if not isinstance(meal, dict):
                raise ContentValidationError(
                    f"Meal {position} of meal plan {index} must be an object",
                    code="INVALID_MEAL",
                    details={"index": index, "meal": position},
                )
            meal_type = meal.get("mealType", meal.get("type"))
            try:
                MealType.from_string(meal_type if isinstance(meal_type, str) else "")
            except ValueError as e:
                raise ContentValidationError(
                    f"Meal {position} of meal plan {index} has invalid meal type: {meal_type}",
                    code="INVALID_MEAL",
                    details={"index": index, "meal": position, "field": "mealType"},
                ) from e
            if meal.get("date"):
                self._parse_date(meal["date"], "INVALID_MEAL", index, "date")
            if "recipes" in meal and not isinstance(meal["recipes"], list):
                raise ContentValidationError(
                    f"Meal {position} of meal plan {index} field 'recipes' must be an array",
                    code="INVALID_MEAL",
                    details={"index": index, "meal": position, "field": "recipes"},
                )

    def _validate_shopping_list(self, index: int, shopping_list: Any) -> None:
        if not isinstance(shopping_list, dict) or _is_blank(shopping_list.get("name")):
            raise ContentValidationError(
                f"Shopping list at index {index} is missing a name",
                code="INVALID_SHOPPING_LIST",
                details={"index": index, "field": "name"},
            )

        items = shopping_list.get("items")
        if items is None:
            return
        if not isinstance(items, list):
            raise ContentValidationError(
                f"Shopping list '{shopping_list['name']}' field 'items' must be an array",
                code="INVALID_SHOPPING_LIST",
                details={"index": index, "field": "items"},
            )
        for position, item in enumerate(items):
            if not isinstance(item, dict) or _is_blank(item.get("ingredient")):
                raise ContentValidationError(
                    f"Item {position} of shopping list '{shopping_list['name']}' "
                    "is missing an ingredient",
                    code="INVALID_SHOPPING_LIST",
                    details={"index": index, "item": position, "field": "ingredient"},
                )

    def _parse_date(self, value: Any, code: str, index: int, field_name: str) -> Any:
        try:
            return parse_timestamp(value)
        except (TypeError, ValueError) as e:
            raise ContentValidationError(
                f"Invalid date for '{field_name}' at index {index}: {value}",
                code=code,
                details={"index": index, "field": field_name},
            ) from e

    def _warn_dangling_references(self, bundle: dict[str, Any]) -> None:
        known = {snapshot_id(r) for r in bundle["recipes"]} - {None}

        for collection in bundle["collections"]:
            missing = [ref for ref in collection_refs(collection) if ref not in known]
            if missing:
                logger.warning(
                    f"Collection '{collection['name']}' references {len(missing)} "
                    "recipe(s) not in the backup; they will be skipped"
                )

        for index, meal_plan in enumerate(bundle["mealPlans"]):
            missing = [ref for ref in meal_plan_refs(meal_plan) if ref not in known]
            if missing:
                name = meal_plan.get("name") or f"#{index}"
                logger.warning(
                    f"Meal plan '{name}' references {len(missing)} "
                    "recipe(s) not in the backup; they will be skipped"
                )

        for shopping_list in bundle["shoppingLists"]:
            missing = [
                item["recipeId"]
                for item in shopping_list.get("items") or []
                if item.get("recipeId") and str(item["recipeId"]) not in known
            ]
            if missing:
                logger.warning(
                    f"Shopping list '{shopping_list['name']}' references {len(missing)} "
                    "recipe(s) not in the backup; the links will be cleared"
                )

    def _sanitize(self, value: Any, path: str) -> Any:
        if isinstance(value, str):
            cleaned = sanitize_text(value)
            if cleaned != value and self.reject_malicious_content:
                raise SecurityError(
                    f"Potentially malicious content found in {path or 'bundle'}",
                    code="MALICIOUS_CONTENT",
                    details={"field": path},
                )
            return cleaned
        if isinstance(value, dict):
            return {
                k: self._sanitize(v, f"{path}.{k}" if path else str(k)) for k, v in value.items()
            }
        if isinstance(value, list):
            return [self._sanitize(v, f"{path}[{i}]") for i, v in enumerate(value)]
        return value

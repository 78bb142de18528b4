"""
Bundle format constants and version handling.

A bundle is a JSON document:

    {
        "version": "2.2.0",
        "exportDate": "2024-05-01T10:00:00+00:00",
        "type": "manual",
        "account": {"username": "cook", "email": "cook@example.com"},
        "recipes": [...],
        "collections": [...],
        "mealPlans": [...],
        "shoppingLists": [...],
        "statistics": {"recipeCount": 2, ...}
    }

wrapped in a ZIP archive holding a single "backup.json" entry.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

BUNDLE_VERSION = "2.2.0"
CURRENT_VERSION_MAJOR = 2

# Oldest major version this engine reads and writes
MIN_SUPPORTED_MAJOR = 2

BUNDLE_ENTRY_NAME = "backup.json"

# Bundle array key -> statistics key
ENTITY_KEYS: dict[str, str] = {
    "recipes": "recipeCount",
    "collections": "collectionCount",
    "mealPlans": "mealPlanCount",
    "shoppingLists": "shoppingListCount",
}

BACKUP_TYPES = ("manual", "automatic")

_VERSION_PATTERN = re.compile(r"^v?(\d+)(?:\.(\d+))?(?:\.(\d+))?(?:[-+][0-9A-Za-z.-]+)?$")


@dataclass(frozen=True, order=True)
class BundleVersion:
    """A parsed major.minor.patch bundle version."""

    major: int
    minor: int = 0
    patch: int = 0

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


def parse_version(value: Any) -> BundleVersion:
    """
    Parse a bundle version string.

    Accepts "X", "X.Y" and "X.Y.Z" with an optional leading "v" and an
    optional pre-release or build suffix, so exports from older clients
    ("2.0") still parse.

    Raises:
        ValueError: If the value is not a version string.
    """
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str):
        raise ValueError(f"Version must be a string, got {type(value).__name__}")

    match = _VERSION_PATTERN.match(value.strip())
    if match is None:
        raise ValueError(f"Invalid version format: {value}")

    major, minor, patch = match.groups()
    return BundleVersion(int(major), int(minor or 0), int(patch or 0))


def is_supported_major(major: int) -> bool:
    """Check a major version against the supported floor and ceiling."""
    return MIN_SUPPORTED_MAJOR <= major <= CURRENT_VERSION_MAJOR


def entity_counts(bundle: dict[str, Any]) -> dict[str, int]:
    """
    Count the entities in each array of a bundle.

    Missing or non-list arrays count as zero.
    """
    counts = {}
    for key, stat_key in ENTITY_KEYS.items():
        items = bundle.get(key)
        counts[stat_key] = len(items) if isinstance(items, list) else 0
    return counts


def snapshot_id(snapshot: dict[str, Any]) -> str | None:
    """Portable identifier of an entity snapshot ("id", or legacy "_id")."""
    value = snapshot.get("id")
    if value in (None, ""):
        value = snapshot.get("_id")
    if value in (None, ""):
        return None
    return str(value)


def ingredient_name(ingredient: dict[str, Any]) -> str | None:
    """First non-blank of an ingredient's "name" and legacy "item" fields."""
    for key in ("name", "item"):
        value = ingredient.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


def _reference_id(ref: Any) -> str | None:
    if isinstance(ref, dict):
        return snapshot_id(ref)
    if ref in (None, ""):
        return None
    return str(ref)


def collection_refs(collection: dict[str, Any]) -> list[str | None]:
    """
    Recipe references of a collection snapshot, in order.

    Reads "recipeIds", falling back to the legacy "recipes" list of ids or
    recipe objects. Unreadable entries come back as None.
    """
    refs = collection.get("recipeIds")
    if refs is None:
        refs = collection.get("recipes")
    if not isinstance(refs, list):
        return []
    return [_reference_id(ref) for ref in refs]


def meal_refs(meal: dict[str, Any]) -> list[tuple[str | None, Any]]:
    """
    Recipe references of one meal entry as (recipe id, servings) pairs.

    Entries may be plain ids, {"recipeId": ..., "servings": ...}, or legacy
    {"recipe": <id or recipe object>, "servings": ...}.
    """
    entries = meal.get("recipes")
    if not isinstance(entries, list):
        return []

    refs: list[tuple[str | None, Any]] = []
    for entry in entries:
        if isinstance(entry, dict):
            target = entry.get("recipeId", entry.get("recipe"))
            refs.append((_reference_id(target), entry.get("servings")))
        else:
            refs.append((_reference_id(entry), None))
    return refs


def meal_plan_refs(meal_plan: dict[str, Any]) -> list[str | None]:
    """All recipe references across a meal plan's meals."""
    meals = meal_plan.get("meals")
    if not isinstance(meals, list):
        return []
    refs: list[str | None] = []
    for meal in meals:
        if isinstance(meal, dict):
            refs.extend(ref for ref, _ in meal_refs(meal))
    return refs

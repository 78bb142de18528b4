"""
Recipe storage engine.

This module provides persistent storage for accounts and their recipe data
in SQLite, plus a short-lived state store for OAuth flows.

Features:
    - Owner-scoped reads and writes for every entity
    - Atomic multi-entity writes through transaction()
    - Explicit transaction capability flag for degraded deployments
    - Encrypted provider tokens and per-account backup schedule state
    - Two-tier TTL state store for single-use OAuth state

Storage Structure:
    data/
        recipevault.db                      # SQLite database
        token.key                           # Fernet key for provider tokens

Usage:
    from recipevault.storage import RecipeStore

    store = RecipeStore()
    with store.transaction() as session:
        session.insert_recipe(recipe)
    recipes = store.get_recipes(account_id)
"""

from recipevault.storage.models import (
    Account,
    BackupFrequency,
    BackupSettings,
    BackupStats,
    BackupStatus,
    Collection,
    DishType,
    Ingredient,
    Meal,
    MealPlan,
    MealRecipe,
    MealType,
    ProviderConnection,
    ProviderKind,
    Recipe,
    RetentionPolicy,
    ScheduleState,
    ShoppingCategory,
    ShoppingItem,
    ShoppingList,
)
from recipevault.storage.recipe_store import (
    AccountNotFoundError,
    RecipeStore,
    StorageError,
    StoreSession,
)
from recipevault.storage.state_store import (
    MemoryStateStore,
    SQLiteStateStore,
    StateStore,
    TieredStateStore,
)

__all__ = [
    # Main store classes
    "RecipeStore",
    "StoreSession",
    "StateStore",
    "MemoryStateStore",
    "SQLiteStateStore",
    "TieredStateStore",
    # Data models
    "Account",
    "Recipe",
    "Ingredient",
    "Collection",
    "MealPlan",
    "Meal",
    "MealRecipe",
    "ShoppingList",
    "ShoppingItem",
    "BackupSettings",
    "BackupStats",
    "ProviderConnection",
    "RetentionPolicy",
    "ScheduleState",
    # Enums
    "BackupFrequency",
    "BackupStatus",
    "DishType",
    "MealType",
    "ProviderKind",
    "ShoppingCategory",
    # Exceptions
    "StorageError",
    "AccountNotFoundError",
]

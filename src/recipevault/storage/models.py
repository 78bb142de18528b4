"""
Data models for recipe storage.

This module defines the dataclasses used to represent an account's recipes,
collections, meal plans, shopping lists and automatic backup settings in
the database.

Schema Design Decisions:
    - IDs are UUIDs stored as strings for portability
    - Timestamps are stored as ISO format strings in UTC
    - Nested lists (ingredients, meals, items) are stored as JSON TEXT
    - Every row carries the owning account_id; queries are always scoped by it
    - Provider tokens are stored only in encrypted form
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def new_id() -> str:
    """Generate a new entity identifier."""
    return str(uuid.uuid4())


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse a timestamp from a bundle or database value.

    Accepts datetimes, dates, and ISO-8601 strings (date-only strings and a
    trailing "Z" included). Naive values are treated as UTC.

    Returns:
        Aware datetime, or None for empty input.

    Raises:
        ValueError: If the value cannot be interpreted as a timestamp.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.strip())
    else:
        raise ValueError(f"Unsupported timestamp value: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def format_timestamp(value: datetime | None) -> str | None:
    """Format an optional timestamp for storage."""
    return value.isoformat() if value is not None else None


class DishType(Enum):
    """Canonical dish types a recipe may be filed under."""

    APPETIZER = "Appetizer"
    MAIN_COURSE = "Main Course"
    SIDE_DISH = "Side Dish"
    DESSERT = "Dessert"
    BEVERAGE = "Beverage"
    SNACK = "Snack"
    BREAKFAST = "Breakfast"
    LUNCH = "Lunch"
    DINNER = "Dinner"
    OTHER = "Other"


class MealType(Enum):
    """Meal slots within a meal plan day."""

    BREAKFAST = "breakfast"
    LUNCH = "lunch"
    DINNER = "dinner"
    SNACK = "snack"

    @classmethod
    def from_string(cls, value: str) -> MealType:
        """Parse a meal type, ignoring case and surrounding whitespace."""
        normalized = value.strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        valid = ", ".join(m.value for m in cls)
        raise ValueError(f"Invalid meal type: {value}. Must be one of: {valid}")


class ShoppingCategory(Enum):
    """Grocery aisles for shopping list items."""

    PRODUCE = "Produce"
    DAIRY = "Dairy"
    MEAT = "Meat"
    PANTRY = "Pantry"
    FROZEN = "Frozen"
    BAKERY = "Bakery"
    BEVERAGES = "Beverages"
    SNACKS = "Snacks"
    OTHER = "Other"

    @classmethod
    def from_string(cls, value: str | None) -> ShoppingCategory:
        """Parse a category, falling back to OTHER for unknown values."""
        if value:
            normalized = value.strip().lower()
            for member in cls:
                if member.value.lower() == normalized:
                    return member
        return cls.OTHER


class BackupFrequency(Enum):
    """How often automatic backups run."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    @classmethod
    def from_string(cls, value: str) -> BackupFrequency:
        """
        Create a BackupFrequency from a string value.

        Raises:
            ValueError: If the value is not a valid frequency.
        """
        value_lower = value.lower()
        for member in cls:
            if member.value == value_lower:
                return member
        valid = ", ".join(m.value for m in cls)
        raise ValueError(f"Invalid frequency: {value}. Must be one of: {valid}")


class BackupStatus(Enum):
    """Outcome of the most recent automatic backup."""

    SUCCESS = "success"
    FAILED = "failed"
    IN_PROGRESS = "in_progress"


class ProviderKind(Enum):
    """Cloud storage providers an account can connect."""

    LOCAL = "local"
    DROPBOX = "dropbox"
    GOOGLE_DRIVE = "google_drive"

    @classmethod
    def from_string(cls, value: str) -> ProviderKind:
        """
        Create a ProviderKind from a string value.

        Raises:
            ValueError: If the value names an unknown provider.
        """
        normalized = value.strip().lower().replace("-", "_")
        for member in cls:
            if member.value == normalized:
                return member
        valid = ", ".join(m.value for m in cls)
        raise ValueError(f"Invalid provider: {value}. Must be one of: {valid}")


@dataclass
class Account:
    """
    A recipe book account.

    Database Table: accounts
        - id TEXT PRIMARY KEY
        - username TEXT NOT NULL UNIQUE
        - email TEXT
        - password_hash TEXT NOT NULL
        - created_at TEXT NOT NULL
    """

    id: str
    username: str
    email: str
    password_hash: str
    created_at: datetime

    @classmethod
    def create(cls, username: str, email: str, password_hash: str) -> Account:
        """Create a new Account with auto-generated ID and timestamp."""
        return cls(
            id=new_id(),
            username=username,
            email=email,
            password_hash=password_hash,
            created_at=utc_now(),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, omitting the password hash."""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Ingredient:
    """One ingredient line of a recipe."""

    name: str
    amount: str = ""
    unit: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "amount": self.amount, "unit": self.unit}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Ingredient:
        return cls(
            name=data.get("name", ""),
            amount=data.get("amount", ""),
            unit=data.get("unit", ""),
        )


@dataclass
class Recipe:
    """
    A stored recipe.

    Attributes:
        id: Unique identifier.
        account_id: Owning account.
        title: Recipe title (at most 200 characters).
        ingredients: Ingredient lines in display order.
        instructions: Instruction steps as plain text.
        dish_type: One of the DishType values.
        is_locked: Locked recipes cannot be edited by the owner.

    Database Table: recipes
        - id TEXT PRIMARY KEY
        - account_id TEXT NOT NULL REFERENCES accounts(id)
        - title TEXT NOT NULL
        - data_json TEXT NOT NULL (remaining fields)
        - created_at TEXT NOT NULL
        - updated_at TEXT NOT NULL
    """

    id: str
    account_id: str
    title: str
    ingredients: list[Ingredient] = field(default_factory=list)
    instructions: list[str] = field(default_factory=list)
    description: str = ""
    prep_time: int | None = None
    cook_time: int | None = None
    servings: int | None = None
    dish_type: str = DishType.OTHER.value
    cuisine: str = ""
    difficulty: str = ""
    tags: list[str] = field(default_factory=list)
    rating: float | None = None
    notes: str = ""
    source_url: str = ""
    image_url: str = ""
    is_locked: bool = False
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def ingredient_names(self) -> list[str]:
        return [ingredient.name for ingredient in self.ingredients]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "account_id": self.account_id,
            "title": self.title,
            "ingredients": [i.to_dict() for i in self.ingredients],
            "instructions": list(self.instructions),
            "description": self.description,
            "prep_time": self.prep_time,
            "cook_time": self.cook_time,
            "servings": self.servings,
            "dish_type": self.dish_type,
            "cuisine": self.cuisine,
            "difficulty": self.difficulty,
            "tags": list(self.tags),
            "rating": self.rating,
            "notes": self.notes,
            "source_url": self.source_url,
            "image_url": self.image_url,
            "is_locked": self.is_locked,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Recipe:
        """Create from dictionary."""
        return cls(
            id=data["id"],
            account_id=data["account_id"],
            title=data["title"],
            ingredients=[Ingredient.from_dict(i) for i in data.get("ingredients", [])],
            instructions=list(data.get("instructions", [])),
            description=data.get("description", ""),
            prep_time=data.get("prep_time"),
            cook_time=data.get("cook_time"),
            servings=data.get("servings"),
            dish_type=data.get("dish_type", DishType.OTHER.value),
            cuisine=data.get("cuisine", ""),
            difficulty=data.get("difficulty", ""),
            tags=list(data.get("tags", [])),
            rating=data.get("rating"),
            notes=data.get("notes", ""),
            source_url=data.get("source_url", ""),
            image_url=data.get("image_url", ""),
            is_locked=bool(data.get("is_locked", False)),
            created_at=parse_timestamp(data.get("created_at")) or utc_now(),
            updated_at=parse_timestamp(data.get("updated_at")) or utc_now(),
        )


@dataclass
class Collection:
    """
    A named, ordered group of recipes.

    Database Table: collections
        - id TEXT PRIMARY KEY
        - account_id TEXT NOT NULL REFERENCES accounts(id)
        - name TEXT NOT NULL
        - data_json TEXT NOT NULL
        - created_at TEXT NOT NULL
    """

    id: str
    account_id: str
    name: str
    description: str = ""
    icon: str = "📁"
    is_public: bool = False
    recipe_ids: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "account_id": self.account_id,
            "name": self.name,
            "description": self.description,
            "icon": self.icon,
            "is_public": self.is_public,
            "recipe_ids": list(self.recipe_ids),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Collection:
        """Create from dictionary."""
        return cls(
            id=data["id"],
            account_id=data["account_id"],
            name=data["name"],
            description=data.get("description", ""),
            icon=data.get("icon", "📁"),
            is_public=bool(data.get("is_public", False)),
            recipe_ids=list(data.get("recipe_ids", [])),
            created_at=parse_timestamp(data.get("created_at")) or utc_now(),
        )


@dataclass
class MealRecipe:
    """A recipe scheduled into a meal, with its serving count."""

    recipe_id: str
    servings: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {"recipe_id": self.recipe_id, "servings": self.servings}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MealRecipe:
        return cls(recipe_id=data["recipe_id"], servings=data.get("servings", 1))


@dataclass
class Meal:
    """One meal slot on one day of a meal plan."""

    date: datetime
    meal_type: str
    recipes: list[MealRecipe] = field(default_factory=list)
    notes: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "meal_type": self.meal_type,
            "recipes": [r.to_dict() for r in self.recipes],
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Meal:
        return cls(
            date=parse_timestamp(data["date"]) or utc_now(),
            meal_type=data["meal_type"],
            recipes=[MealRecipe.from_dict(r) for r in data.get("recipes", [])],
            notes=data.get("notes", ""),
        )


@dataclass
class MealPlan:
    """
    A dated plan of meals.

    Database Table: meal_plans
        - id TEXT PRIMARY KEY
        - account_id TEXT NOT NULL REFERENCES accounts(id)
        - name TEXT NOT NULL
        - start_date TEXT NOT NULL
        - end_date TEXT NOT NULL
        - data_json TEXT NOT NULL
        - created_at TEXT NOT NULL
    """

    id: str
    account_id: str
    name: str
    start_date: datetime
    end_date: datetime
    meals: list[Meal] = field(default_factory=list)
    is_template: bool = False
    created_at: datetime = field(default_factory=utc_now)

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """Check whether the inclusive range [start, end] overlaps this plan."""
        return start <= self.end_date and end >= self.start_date

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "account_id": self.account_id,
            "name": self.name,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "meals": [m.to_dict() for m in self.meals],
            "is_template": self.is_template,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MealPlan:
        """Create from dictionary."""
        start_date = parse_timestamp(data["start_date"]) or utc_now()
        return cls(
            id=data["id"],
            account_id=data["account_id"],
            name=data["name"],
            start_date=start_date,
            end_date=parse_timestamp(data.get("end_date")) or start_date,
            meals=[Meal.from_dict(m) for m in data.get("meals", [])],
            is_template=bool(data.get("is_template", False)),
            created_at=parse_timestamp(data.get("created_at")) or utc_now(),
        )


@dataclass
class ShoppingItem:
    """One line of a shopping list."""

    ingredient: str
    quantity: float = 0
    unit: str = ""
    category: str = ShoppingCategory.OTHER.value
    checked: bool = False
    recipe_id: str | None = None
    notes: str = ""
    is_custom: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "ingredient": self.ingredient,
            "quantity": self.quantity,
            "unit": self.unit,
            "category": self.category,
            "checked": self.checked,
            "recipe_id": self.recipe_id,
            "notes": self.notes,
            "is_custom": self.is_custom,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ShoppingItem:
        return cls(
            ingredient=data.get("ingredient", ""),
            quantity=data.get("quantity", 0),
            unit=data.get("unit", ""),
            category=data.get("category", ShoppingCategory.OTHER.value),
            checked=bool(data.get("checked", False)),
            recipe_id=data.get("recipe_id"),
            notes=data.get("notes", ""),
            is_custom=bool(data.get("is_custom", False)),
        )


@dataclass
class ShoppingList:
    """
    A shopping list.

    Database Table: shopping_lists
        - id TEXT PRIMARY KEY
        - account_id TEXT NOT NULL REFERENCES accounts(id)
        - name TEXT NOT NULL
        - data_json TEXT NOT NULL
        - created_at TEXT NOT NULL
    """

    id: str
    account_id: str
    name: str
    items: list[ShoppingItem] = field(default_factory=list)
    is_active: bool = True
    completed_at: datetime | None = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "account_id": self.account_id,
            "name": self.name,
            "items": [i.to_dict() for i in self.items],
            "is_active": self.is_active,
            "completed_at": format_timestamp(self.completed_at),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ShoppingList:
        """Create from dictionary."""
        return cls(
            id=data["id"],
            account_id=data["account_id"],
            name=data["name"],
            items=[ShoppingItem.from_dict(i) for i in data.get("items", [])],
            is_active=bool(data.get("is_active", True)),
            completed_at=parse_timestamp(data.get("completed_at")),
            created_at=parse_timestamp(data.get("created_at")) or utc_now(),
        )


@dataclass
class ProviderConnection:
    """
    A connected cloud storage provider.

    Tokens are held in encrypted form; decrypt them with a TokenCipher only
    at the moment a provider call needs them. The owning account id travels
    with the connection so refreshed tokens can be persisted.
    """

    provider: ProviderKind
    account_id: str = ""
    access_token: str = ""
    refresh_token: str = ""
    token_expiry: datetime | None = None
    account_email: str = ""
    account_name: str = ""
    connected_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a display-safe dictionary (tokens omitted)."""
        return {
            "provider": self.provider.value,
            "token_expiry": format_timestamp(self.token_expiry),
            "account_email": self.account_email,
            "account_name": self.account_name,
            "connected_at": self.connected_at.isoformat(),
        }


@dataclass
class ScheduleState:
    """
    Automatic backup schedule for one account.

    Attributes:
        enabled: Whether automatic backups run.
        frequency: Cadence of automatic backups.
        time: Time of day in HH:MM (24 hour) in the schedule's timezone.
        timezone: IANA timezone name.
        last_backup: When the last successful automatic backup finished.
        last_backup_status: Outcome of the most recent attempt.
        next_backup: When the next attempt is due.
        failure_count: Consecutive failed attempts.
    """

    enabled: bool = False
    frequency: BackupFrequency = BackupFrequency.WEEKLY
    time: str = "02:00"
    timezone: str = "UTC"
    last_backup: datetime | None = None
    last_backup_status: BackupStatus | None = None
    next_backup: datetime | None = None
    failure_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "enabled": self.enabled,
            "frequency": self.frequency.value,
            "time": self.time,
            "timezone": self.timezone,
            "last_backup": format_timestamp(self.last_backup),
            "last_backup_status": (
                self.last_backup_status.value if self.last_backup_status else None
            ),
            "next_backup": format_timestamp(self.next_backup),
            "failure_count": self.failure_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScheduleState:
        """Create from dictionary."""
        status = data.get("last_backup_status")
        return cls(
            enabled=bool(data.get("enabled", False)),
            frequency=BackupFrequency.from_string(data.get("frequency", "weekly")),
            time=data.get("time", "02:00"),
            timezone=data.get("timezone", "UTC"),
            last_backup=parse_timestamp(data.get("last_backup")),
            last_backup_status=BackupStatus(status) if status else None,
            next_backup=parse_timestamp(data.get("next_backup")),
            failure_count=int(data.get("failure_count", 0)),
        )


@dataclass
class RetentionPolicy:
    """How many remote backups to keep."""

    max_backups: int = 10
    auto_cleanup: bool = True


@dataclass
class BackupStats:
    """Usage counters for an account's backups."""

    total_backups: int = 0
    manual_backups: int = 0
    auto_backups: int = 0
    total_storage_used: int = 0
    last_manual_backup: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_backups": self.total_backups,
            "manual_backups": self.manual_backups,
            "auto_backups": self.auto_backups,
            "total_storage_used": self.total_storage_used,
            "last_manual_backup": format_timestamp(self.last_manual_backup),
        }


@dataclass
class BackupSettings:
    """
    Everything the engine persists about an account's cloud backups.

    Database Table: backup_settings (one row per account)
    """

    account_id: str
    connection: ProviderConnection | None = None
    schedule: ScheduleState = field(default_factory=ScheduleState)
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    stats: BackupStats = field(default_factory=BackupStats)

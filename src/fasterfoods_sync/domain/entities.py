"""Domain entities mirrored from the FasterFoods API."""

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

SNAPSHOT_SCHEMA_VERSION = 1
TEMP_ID_PREFIX = "local-"


def make_temp_id() -> str:
    """Return a locally generated identifier for an unsent entity."""
    return f"{TEMP_ID_PREFIX}{uuid4()}"


def is_temp_id(value: str) -> bool:
    """Return True when the id was generated locally."""
    return value.startswith(TEMP_ID_PREFIX)


class WireModel(BaseModel):
    """Base model using the API's camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Serialize using wire field names."""
        return self.model_dump(mode="json", by_alias=True)


class User(WireModel):
    """Authenticated user profile."""

    id: int
    first_name: str
    last_name: str
    email: str
    role: str
    plan: str
    avatar_url: str | None = None


class UserSettings(WireModel):
    """User preferences."""

    theme: str = "light"
    unit_system: str = "imperial"
    notifications_enabled: bool = True
    language: str = "en"
    food_logging_level: str = "beginner"


class PantryItem(WireModel):
    """Item stored in the user's pantry."""

    id: str
    name: str
    quantity: str | None = None
    unit: str | None = None
    expiry_date: str | None = None
    added_on: str | None = None
    checked: bool = False


class ShoppingItem(WireModel):
    """Item on a shopping list."""

    id: str
    name: str
    quantity: str | None = None
    unit: str | None = None
    list: str | None = None
    checked: bool = False
    added_at: float | None = None
    checked_at: float | None = None
    shopping_list_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class ShoppingList(WireModel):
    """Named shopping list with its items."""

    id: str
    name: str
    user_id: int | None = None
    items: list[ShoppingItem] = Field(default_factory=list)
    created_at: str | None = None
    updated_at: str | None = None


class FoodLogCreateRequest(WireModel):
    """Fields submitted when logging food.

    The food log form carries many optional questionnaire answers; unknown fields
    are kept verbatim so they survive the round trip through the outbox.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )

    name: str
    meal: str
    datetime: str
    logging_level: str = "beginner"
    calories: str | None = None
    carbohydrates: str | None = None
    protein: str | None = None
    fat: str | None = None
    portion_size: str | None = None
    meal_time: str | None = None
    mood: str | None = None
    notes: str | None = None


class FoodLogItem(FoodLogCreateRequest):
    """Logged food entry."""

    id: str

    @classmethod
    def from_request(cls, item_id: str, request: FoodLogCreateRequest) -> "FoodLogItem":
        """Build a local entry for a request that has not been sent yet."""
        return cls.model_validate({**request.to_wire(), "id": item_id})


class WorkoutItem(WireModel):
    """Logged workout."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str
    activity: str
    category: str
    duration: str
    calories: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    datetime: str
    user_id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


class CustomMetric(WireModel):
    """User-defined metric reading."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str
    value: str
    unit: str
    date: str
    metric_type: str
    user_id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


class Snapshot(WireModel):
    """Last known-good merged state persisted for offline use."""

    schema_version: int = SNAPSHOT_SCHEMA_VERSION
    cached_at: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))
    user: User | None = None
    settings: UserSettings | None = None
    pantry_items: list[PantryItem] = Field(default_factory=list)
    shopping_lists: list[ShoppingList] = Field(default_factory=list)
    food_log_items: list[FoodLogItem] = Field(default_factory=list)
    workout_items: list[WorkoutItem] = Field(default_factory=list)
    custom_metrics: list[CustomMetric] = Field(default_factory=list)

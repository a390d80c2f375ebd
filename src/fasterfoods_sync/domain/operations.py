"""Typed outbox operations and the entity references their payloads carry.

Each payload model declares which entity it creates (and the field holding the
temporary id) plus the closed set of id-bearing fields that point at other
entities. Reconciliation and moot pruning are driven entirely by these
declarations, so adding a kind means declaring its references once.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, ClassVar, Self
from uuid import UUID, uuid4

from pydantic import Field, model_validator

from fasterfoods_sync.domain.entities import (
    CustomMetric,
    FoodLogCreateRequest,
    WireModel,
    WorkoutItem,
)


class OperationKind(StrEnum):
    """Closed set of mutations the outbox can hold."""

    CREATE_SHOPPING_LIST = "createShoppingList"
    ADD_SHOPPING_ITEM = "addShoppingItem"
    TOGGLE_SHOPPING_ITEM = "toggleShoppingItem"
    DELETE_SHOPPING_ITEM = "deleteShoppingItem"
    DELETE_SHOPPING_LIST = "deleteShoppingList"
    ADD_PANTRY_ITEM = "addPantryItem"
    UPDATE_PANTRY_ITEM = "updatePantryItem"
    TOGGLE_PANTRY_ITEM = "togglePantryItem"
    DELETE_PANTRY_ITEM = "deletePantryItem"
    ADD_FOOD_LOG_ITEM = "addFoodLogItem"
    DELETE_FOOD_LOG_ITEM = "deleteFoodLogItem"
    ADD_WORKOUT = "addWorkout"
    DELETE_WORKOUT = "deleteWorkout"
    ADD_CUSTOM_METRIC = "addCustomMetric"
    DELETE_CUSTOM_METRIC = "deleteCustomMetric"


class EntityType(StrEnum):
    """Entity types whose identifiers can be temporary."""

    SHOPPING_LIST = "shoppingList"
    SHOPPING_ITEM = "shoppingItem"
    PANTRY_ITEM = "pantryItem"
    FOOD_LOG_ITEM = "foodLogItem"
    WORKOUT = "workout"
    CUSTOM_METRIC = "customMetric"


class OperationPayload(WireModel):
    """Base class for kind-specific payloads."""

    KIND: ClassVar[OperationKind]
    CREATES: ClassVar[tuple[EntityType, str] | None] = None
    REFERENCES: ClassVar[dict[EntityType, tuple[str, ...]]] = {}

    def created_id(self, entity: EntityType) -> str | None:
        """Return the temporary id this payload creates for the entity type."""
        if self.CREATES is None or self.CREATES[0] != entity:
            return None
        return getattr(self, self.CREATES[1])

    def referenced_ids(self, entity: EntityType) -> list[str]:
        """Return the ids of the given entity type this payload depends on."""
        return [getattr(self, name) for name in self.REFERENCES.get(entity, ())]

    def mentions(self, entity: EntityType, entity_id: str) -> bool:
        """Return True if the payload creates or references the entity id."""
        if self.created_id(entity) == entity_id:
            return True
        return entity_id in self.referenced_ids(entity)

    def with_reference(
        self, entity: EntityType, old_id: str, new_id: str
    ) -> Self | None:
        """Return a copy with references renamed, or None when nothing matched."""
        updates = {
            name: new_id
            for name in self.REFERENCES.get(entity, ())
            if getattr(self, name) == old_id
        }
        if not updates:
            return None
        return self.model_copy(update=updates)


class CreateShoppingListPayload(OperationPayload):
    """Create a shopping list."""

    KIND = OperationKind.CREATE_SHOPPING_LIST
    CREATES = (EntityType.SHOPPING_LIST, "temp_id")

    temp_id: str
    name: str


class AddShoppingItemPayload(OperationPayload):
    """Add an item to a shopping list that may itself be unsent."""

    KIND = OperationKind.ADD_SHOPPING_ITEM
    CREATES = (EntityType.SHOPPING_ITEM, "temp_item_id")
    REFERENCES = {EntityType.SHOPPING_LIST: ("list_id",)}

    temp_item_id: str
    list_id: str
    name: str
    quantity: str | None = None
    unit: str | None = None
    list_label: str | None = None


class ToggleShoppingItemPayload(OperationPayload):
    """Check or uncheck a shopping item."""

    KIND = OperationKind.TOGGLE_SHOPPING_ITEM
    REFERENCES = {
        EntityType.SHOPPING_LIST: ("list_id",),
        EntityType.SHOPPING_ITEM: ("item_id",),
    }

    list_id: str
    item_id: str
    checked: bool
    checked_at: int | None = None


class DeleteShoppingItemPayload(OperationPayload):
    """Delete a shopping item."""

    KIND = OperationKind.DELETE_SHOPPING_ITEM
    REFERENCES = {
        EntityType.SHOPPING_LIST: ("list_id",),
        EntityType.SHOPPING_ITEM: ("item_id",),
    }

    list_id: str
    item_id: str


class DeleteShoppingListPayload(OperationPayload):
    """Delete a shopping list."""

    KIND = OperationKind.DELETE_SHOPPING_LIST
    REFERENCES = {EntityType.SHOPPING_LIST: ("list_id",)}

    list_id: str


class AddPantryItemPayload(OperationPayload):
    """Create a pantry item."""

    KIND = OperationKind.ADD_PANTRY_ITEM
    CREATES = (EntityType.PANTRY_ITEM, "temp_id")

    temp_id: str
    name: str
    quantity: str | None = None
    unit: str | None = None
    expiry_date: str | None = None


class UpdatePantryItemPayload(OperationPayload):
    """Partially update a pantry item."""

    KIND = OperationKind.UPDATE_PANTRY_ITEM
    REFERENCES = {EntityType.PANTRY_ITEM: ("id",)}

    id: str
    name: str | None = None
    quantity: str | None = None
    unit: str | None = None
    expiry_date: str | None = None

    def updates(self) -> dict[str, str]:
        """Return only the fields that were changed, keyed by wire name."""
        return self.model_dump(
            by_alias=True, exclude={"id"}, exclude_none=True, mode="json"
        )


class TogglePantryItemPayload(OperationPayload):
    """Flip a pantry item's checked state."""

    KIND = OperationKind.TOGGLE_PANTRY_ITEM
    REFERENCES = {EntityType.PANTRY_ITEM: ("id",)}

    id: str


class DeletePantryItemPayload(OperationPayload):
    """Delete a pantry item."""

    KIND = OperationKind.DELETE_PANTRY_ITEM
    REFERENCES = {EntityType.PANTRY_ITEM: ("id",)}

    id: str


class AddFoodLogItemPayload(OperationPayload):
    """Log a food entry."""

    KIND = OperationKind.ADD_FOOD_LOG_ITEM
    CREATES = (EntityType.FOOD_LOG_ITEM, "temp_id")

    temp_id: str
    request: FoodLogCreateRequest


class DeleteFoodLogItemPayload(OperationPayload):
    """Delete a food log entry."""

    KIND = OperationKind.DELETE_FOOD_LOG_ITEM
    REFERENCES = {EntityType.FOOD_LOG_ITEM: ("id",)}

    id: str


class AddWorkoutPayload(OperationPayload):
    """Log a workout."""

    KIND = OperationKind.ADD_WORKOUT
    CREATES = (EntityType.WORKOUT, "temp_id")

    temp_id: str
    item: WorkoutItem


class DeleteWorkoutPayload(OperationPayload):
    """Delete a workout."""

    KIND = OperationKind.DELETE_WORKOUT
    REFERENCES = {EntityType.WORKOUT: ("id",)}

    id: str


class AddCustomMetricPayload(OperationPayload):
    """Record a custom metric."""

    KIND = OperationKind.ADD_CUSTOM_METRIC
    CREATES = (EntityType.CUSTOM_METRIC, "temp_id")

    temp_id: str
    metric: CustomMetric


class DeleteCustomMetricPayload(OperationPayload):
    """Delete a custom metric reading."""

    KIND = OperationKind.DELETE_CUSTOM_METRIC
    REFERENCES = {EntityType.CUSTOM_METRIC: ("id",)}

    id: str


PayloadType = (
    CreateShoppingListPayload
    | AddShoppingItemPayload
    | ToggleShoppingItemPayload
    | DeleteShoppingItemPayload
    | DeleteShoppingListPayload
    | AddPantryItemPayload
    | UpdatePantryItemPayload
    | TogglePantryItemPayload
    | DeletePantryItemPayload
    | AddFoodLogItemPayload
    | DeleteFoodLogItemPayload
    | AddWorkoutPayload
    | DeleteWorkoutPayload
    | AddCustomMetricPayload
    | DeleteCustomMetricPayload
)

PAYLOAD_TYPES: dict[OperationKind, type[OperationPayload]] = {
    payload_type.KIND: payload_type for payload_type in PayloadType.__args__
}


class OutboxOperation(WireModel):
    """A pending mutation awaiting confirmation from the server."""

    id: UUID = Field(default_factory=uuid4)
    kind: OperationKind
    payload: PayloadType
    created_at: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))

    @model_validator(mode="before")
    @classmethod
    def _decode_payload(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        payload = data.get("payload")
        try:
            kind = OperationKind(data.get("kind"))
        except ValueError:
            return data
        if isinstance(payload, dict):
            data = {**data, "payload": PAYLOAD_TYPES[kind].model_validate(payload)}
        return data

    @model_validator(mode="after")
    def _check_kind(self) -> Self:
        if self.payload.KIND != self.kind:
            raise ValueError(
                f"payload {type(self.payload).__name__} does not match kind {self.kind}"
            )
        return self

    @classmethod
    def wrap(cls, payload: OperationPayload) -> "OutboxOperation":
        """Create an operation for a payload, deriving its kind."""
        return cls(kind=payload.KIND, payload=payload)

    def mentions(self, entity: EntityType, entity_id: str) -> bool:
        return self.payload.mentions(entity, entity_id)

    def with_reference(
        self, entity: EntityType, old_id: str, new_id: str
    ) -> "OutboxOperation | None":
        """Return a renamed copy keeping id, kind and timestamp, or None."""
        payload = self.payload.with_reference(entity, old_id, new_id)
        if payload is None:
            return None
        return self.model_copy(update={"payload": payload})

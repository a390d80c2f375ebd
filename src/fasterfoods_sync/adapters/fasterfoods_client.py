"""FasterFoods REST API client."""

import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from fasterfoods_sync.config import normalize_base_url
from fasterfoods_sync.domain.entities import (
    CustomMetric,
    FoodLogCreateRequest,
    FoodLogItem,
    PantryItem,
    ShoppingItem,
    ShoppingList,
    User,
    UserSettings,
    WorkoutItem,
)
from fasterfoods_sync.domain.errors import AUTH_REQUIRED_MESSAGE, APIError

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"

ModelT = TypeVar("ModelT", bound=BaseModel)


class FasterFoodsClient(Protocol):
    """Interface for the remote FasterFoods service."""

    async def get_user(self) -> User:
        """Return the authenticated user's profile."""

    async def get_settings(self) -> UserSettings:
        """Return the user's settings."""

    async def update_settings(self, settings: UserSettings) -> UserSettings:
        """Replace the user's settings."""

    async def list_shopping_lists(self) -> list[ShoppingList]:
        """Return every shopping list with its items."""

    async def create_shopping_list(
        self, name: str, *, idempotency_key: str | None = None
    ) -> ShoppingList:
        """Create a shopping list."""

    async def delete_shopping_list(self, list_id: str) -> None:
        """Delete a shopping list."""

    async def add_shopping_item(  # noqa: PLR0913
        self,
        list_id: str,
        name: str,
        quantity: str | None = None,
        unit: str | None = None,
        list_label: str | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> ShoppingItem:
        """Add an item to a shopping list."""

    async def update_shopping_item(
        self, list_id: str, item_id: str, updates: dict[str, Any]
    ) -> ShoppingItem:
        """Patch a shopping item."""

    async def delete_shopping_item(self, list_id: str, item_id: str) -> None:
        """Delete a shopping item."""

    async def list_pantry_items(self) -> list[PantryItem]:
        """Return the pantry."""

    async def create_pantry_item(
        self,
        name: str,
        quantity: str | None = None,
        unit: str | None = None,
        expiry_date: str | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> PantryItem:
        """Create a pantry item."""

    async def update_pantry_item(
        self, item_id: str, updates: dict[str, Any]
    ) -> PantryItem:
        """Update a pantry item."""

    async def toggle_pantry_item(self, item_id: str) -> PantryItem:
        """Flip a pantry item's checked state."""

    async def delete_pantry_item(self, item_id: str) -> None:
        """Delete a pantry item."""

    async def list_food_log_items(self) -> list[FoodLogItem]:
        """Return the food log."""

    async def create_food_log_item(
        self, request: FoodLogCreateRequest, *, idempotency_key: str | None = None
    ) -> FoodLogItem:
        """Log a food entry."""

    async def delete_food_log_item(self, item_id: str) -> None:
        """Delete a food log entry."""

    async def list_workout_items(self) -> list[WorkoutItem]:
        """Return logged workouts."""

    async def create_workout_item(
        self, item: WorkoutItem, *, idempotency_key: str | None = None
    ) -> WorkoutItem:
        """Log a workout."""

    async def delete_workout_item(self, item_id: str) -> None:
        """Delete a workout."""

    async def list_custom_metrics(self) -> list[CustomMetric]:
        """Return custom metric readings."""

    async def create_custom_metric(
        self, metric: CustomMetric, *, idempotency_key: str | None = None
    ) -> CustomMetric:
        """Record a custom metric reading."""

    async def delete_custom_metric(self, metric_id: str) -> None:
        """Delete a custom metric reading."""


@dataclass
class HttpxFasterFoodsClient(FasterFoodsClient):
    """FasterFoods client implemented with httpx."""

    base_url: str
    token: str | None
    http_client: httpx.AsyncClient
    timeout: float = 30.0

    @classmethod
    def create(
        cls, base_url: str, token: str | None, timeout: float = 30.0
    ) -> "HttpxFasterFoodsClient":
        """Create a client with a managed httpx session."""
        return cls(
            base_url=normalize_base_url(base_url),
            token=token,
            http_client=httpx.AsyncClient(),
            timeout=timeout,
        )

    def set_token(self, token: str | None) -> None:
        """Replace the bearer token used for authorized calls."""
        self.token = token or None

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        await self.http_client.aclose()

    async def get_user(self) -> User:
        """Fetch the authenticated user's profile."""
        return _decode_one(await self._request("GET", "/user"), User, "user")

    async def get_settings(self) -> UserSettings:
        """Fetch user settings."""
        data = await self._request("GET", "/settings")
        return _decode_one(data, UserSettings, "settings")

    async def update_settings(self, settings: UserSettings) -> UserSettings:
        """Replace user settings."""
        data = await self._request("PUT", "/settings", json_body=settings.to_wire())
        return _decode_one(data, UserSettings, "settings")

    async def list_shopping_lists(self) -> list[ShoppingList]:
        """Fetch every shopping list."""
        data = await self._request("GET", "/shopping-lists")
        return _decode_many(data, ShoppingList, "shopping list")

    async def create_shopping_list(
        self, name: str, *, idempotency_key: str | None = None
    ) -> ShoppingList:
        """Create a shopping list."""
        data = await self._request(
            "POST",
            "/shopping-lists",
            json_body={"name": name},
            idempotency_key=idempotency_key,
        )
        return _decode_one(data, ShoppingList, "shopping list")

    async def delete_shopping_list(self, list_id: str) -> None:
        """Delete a shopping list."""
        await self._request("DELETE", f"/shopping-lists/{list_id}")

    async def add_shopping_item(  # noqa: PLR0913
        self,
        list_id: str,
        name: str,
        quantity: str | None = None,
        unit: str | None = None,
        list_label: str | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> ShoppingItem:
        """Add an item to a shopping list."""
        payload = _compact(
            {"name": name, "quantity": quantity, "unit": unit, "list": list_label}
        )
        data = await self._request(
            "POST",
            f"/shopping-lists/{list_id}/items",
            json_body=payload,
            idempotency_key=idempotency_key,
        )
        return _decode_one(data, ShoppingItem, "shopping item")

    async def update_shopping_item(
        self, list_id: str, item_id: str, updates: dict[str, Any]
    ) -> ShoppingItem:
        """Patch a shopping item."""
        data = await self._request(
            "PATCH", f"/shopping-lists/{list_id}/items/{item_id}", json_body=updates
        )
        return _decode_one(data, ShoppingItem, "shopping item")

    async def delete_shopping_item(self, list_id: str, item_id: str) -> None:
        """Delete a shopping item."""
        await self._request("DELETE", f"/shopping-lists/{list_id}/items/{item_id}")

    async def list_pantry_items(self) -> list[PantryItem]:
        """Fetch the pantry."""
        data = await self._request("GET", "/pantry/items")
        return _decode_many(data, PantryItem, "pantry")

    async def create_pantry_item(
        self,
        name: str,
        quantity: str | None = None,
        unit: str | None = None,
        expiry_date: str | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> PantryItem:
        """Create a pantry item."""
        payload = _compact(
            {
                "name": name,
                "quantity": quantity,
                "unit": unit,
                "expiryDate": expiry_date,
            }
        )
        data = await self._request(
            "POST", "/pantry/items", json_body=payload, idempotency_key=idempotency_key
        )
        return _decode_one(data, PantryItem, "pantry")

    async def update_pantry_item(
        self, item_id: str, updates: dict[str, Any]
    ) -> PantryItem:
        """Update a pantry item."""
        data = await self._request("PUT", f"/pantry/items/{item_id}", json_body=updates)
        return _decode_one(data, PantryItem, "pantry")

    async def toggle_pantry_item(self, item_id: str) -> PantryItem:
        """Flip a pantry item's checked state."""
        data = await self._request("PATCH", f"/pantry/items/{item_id}/toggle")
        return _decode_one(data, PantryItem, "pantry")

    async def delete_pantry_item(self, item_id: str) -> None:
        """Delete a pantry item."""
        await self._request("DELETE", f"/pantry/items/{item_id}")

    async def list_food_log_items(self) -> list[FoodLogItem]:
        """Fetch the food log."""
        data = await self._request("GET", "/food-log/items")
        return _decode_many(data, FoodLogItem, "food log")

    async def create_food_log_item(
        self, request: FoodLogCreateRequest, *, idempotency_key: str | None = None
    ) -> FoodLogItem:
        """Log a food entry."""
        data = await self._request(
            "POST",
            "/food-log/items",
            json_body=request.model_dump(mode="json", by_alias=True, exclude_none=True),
            idempotency_key=idempotency_key,
        )
        return _decode_one(data, FoodLogItem, "food log")

    async def delete_food_log_item(self, item_id: str) -> None:
        """Delete a food log entry."""
        await self._request("DELETE", f"/food-log/items/{item_id}")

    async def list_workout_items(self) -> list[WorkoutItem]:
        """Fetch logged workouts."""
        data = await self._request("GET", "/workout/items")
        return _decode_many(data, WorkoutItem, "workout")

    async def create_workout_item(
        self, item: WorkoutItem, *, idempotency_key: str | None = None
    ) -> WorkoutItem:
        """Log a workout."""
        payload = item.model_dump(
            mode="json",
            by_alias=True,
            include={
                "name",
                "activity",
                "category",
                "duration",
                "calories",
                "parameters",
                "datetime",
            },
        )
        data = await self._request(
            "POST", "/workout/items", json_body=payload, idempotency_key=idempotency_key
        )
        return _decode_one(data, WorkoutItem, "workout")

    async def delete_workout_item(self, item_id: str) -> None:
        """Delete a workout."""
        await self._request("DELETE", f"/workout/items/{item_id}")

    async def list_custom_metrics(self) -> list[CustomMetric]:
        """Fetch custom metric readings."""
        data = await self._request("GET", "/custom-metrics/items")
        return _decode_many(data, CustomMetric, "custom metric")

    async def create_custom_metric(
        self, metric: CustomMetric, *, idempotency_key: str | None = None
    ) -> CustomMetric:
        """Record a custom metric reading."""
        payload = metric.model_dump(
            mode="json",
            by_alias=True,
            include={"name", "value", "unit", "date", "metric_type"},
        )
        data = await self._request(
            "POST",
            "/custom-metrics/items",
            json_body=payload,
            idempotency_key=idempotency_key,
        )
        return _decode_one(data, CustomMetric, "custom metric")

    async def delete_custom_metric(self, metric_id: str) -> None:
        """Delete a custom metric reading."""
        await self._request("DELETE", f"/custom-metrics/items/{metric_id}")

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: object | None = None,
        idempotency_key: str | None = None,
    ) -> object | None:
        if not self.token:
            raise APIError(AUTH_REQUIRED_MESSAGE)
        headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {self.token}",
        }
        if idempotency_key:
            headers[IDEMPOTENCY_HEADER] = idempotency_key
        url = f"{self.base_url}{path}"
        try:
            response = await self.http_client.request(
                method, url, json=json_body, headers=headers, timeout=self.timeout
            )
        except httpx.TransportError as exc:
            logger.info("%s %s failed: %s", method, path, exc)
            raise APIError(
                str(exc) or "The network connection was lost.", is_network_error=True
            ) from exc
        if not response.is_success:
            raise _error_from_response(response)
        if not response.content:
            return None
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise APIError(f"Invalid JSON from {path}") from exc


def _compact(payload: dict[str, str | None]) -> dict[str, str]:
    return {key: value for key, value in payload.items() if value}


def _error_from_response(response: httpx.Response) -> APIError:
    status = response.status_code
    fallback = response.reason_phrase or f"HTTP {status}"
    try:
        body = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        body = None
    if isinstance(body, dict):
        message = _error_message(body) or fallback
        return APIError(message, status, unverified=bool(body.get("unverified")))
    text = response.text.strip()
    return APIError(text or fallback, status)


def _error_message(body: dict[str, Any]) -> str | None:
    details = body.get("details")
    if isinstance(details, list) and details:
        return ", ".join(str(detail) for detail in details)
    errors = body.get("errors")
    if isinstance(errors, dict) and errors:
        messages: list[str] = []
        for value in errors.values():
            if isinstance(value, list):
                messages.extend(str(item) for item in value)
            else:
                messages.append(str(value))
        return ", ".join(messages)
    for key in ("error", "message", "detail"):
        value = body.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _decode_one(data: object, model: type[ModelT], label: str) -> ModelT:
    """Decode a bare object, a single-key wrapper or a wrapper holding items."""
    candidates: list[object] = []
    if isinstance(data, dict) and len(data) == 1:
        # A wrapper is tried first: models whose fields all have defaults would
        # otherwise accept the envelope itself.
        inner = next(iter(data.values()))
        candidates.append(inner)
        if isinstance(inner, dict) and isinstance(inner.get("items"), list):
            candidates.extend(inner["items"][:1])
    if isinstance(data, dict) and isinstance(data.get("items"), list):
        candidates.extend(data["items"][:1])
    candidates.append(data)
    for candidate in candidates:
        if not isinstance(candidate, dict):
            continue
        try:
            return model.model_validate(candidate)
        except ValidationError:
            continue
    raise APIError(f"Unexpected {label} response")


def _decode_many(data: object, model: type[ModelT], label: str) -> list[ModelT]:
    """Decode a bare array, an items wrapper or a single wrapped object."""
    items: object = data
    if isinstance(data, dict):
        if isinstance(data.get("items"), list):
            items = data["items"]
        elif len(data) == 1:
            inner = next(iter(data.values()))
            if isinstance(inner, dict) and isinstance(inner.get("items"), list):
                items = inner["items"]
            elif isinstance(inner, list):
                items = inner
            else:
                return [_decode_one(data, model, label)]
    if not isinstance(items, list):
        raise APIError(f"Unexpected {label} response")
    try:
        return [model.model_validate(item) for item in items]
    except ValidationError as exc:
        raise APIError(f"Unexpected {label} response") from exc

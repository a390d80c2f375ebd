"""Shared test fixtures."""

import asyncio
from dataclasses import dataclass, field
from itertools import count
from pathlib import Path
from typing import Any

import pytest

from fasterfoods_sync.adapters.fasterfoods_client import FasterFoodsClient
from fasterfoods_sync.config import Settings
from fasterfoods_sync.containers import AppContainer, build_container
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
from fasterfoods_sync.domain.errors import APIError
from fasterfoods_sync.services.network import NetworkMonitor
from fasterfoods_sync.services.outbox import OfflineOutbox
from fasterfoods_sync.services.snapshot_store import FileSnapshotStore
from fasterfoods_sync.services.sync import SyncCoordinator


def not_found() -> APIError:
    return APIError("Not found", 404)


@dataclass
class Hold:
    """Parks one fake server call until the test releases it."""

    reached: asyncio.Event = field(default_factory=asyncio.Event)
    release: asyncio.Event = field(default_factory=asyncio.Event)


@dataclass
class FakeFasterFoodsClient(FasterFoodsClient):
    """In-memory FasterFoods server that deduplicates creates by idempotency key."""

    user: User = field(
        default_factory=lambda: User(
            id=7,
            first_name="Ada",
            last_name="Lovelace",
            email="ada@example.com",
            role="user",
            plan="free",
        )
    )
    settings: UserSettings = field(default_factory=UserSettings)
    shopping_lists: dict[str, ShoppingList] = field(default_factory=dict)
    pantry: dict[str, PantryItem] = field(default_factory=dict)
    food_log: dict[str, FoodLogItem] = field(default_factory=dict)
    workouts: dict[str, WorkoutItem] = field(default_factory=dict)
    metrics: dict[str, CustomMetric] = field(default_factory=dict)
    server_ids: list[str] = field(default_factory=list)
    calls: list[tuple[str, tuple[Any, ...]]] = field(default_factory=list)
    failures: dict[str, list[APIError]] = field(default_factory=dict)
    idempotency: dict[str, Any] = field(default_factory=dict)
    holds: dict[str, Hold] = field(default_factory=dict)
    _counter: count = field(default_factory=lambda: count(1))

    def fail_next(self, method: str, error: APIError, times: int = 1) -> None:
        self.failures.setdefault(method, []).extend([error] * times)

    def hold(self, method: str) -> Hold:
        """Block the next call to method; it is recorded before it waits."""
        hold = Hold()
        self.holds[method] = hold
        return hold

    def calls_to(self, method: str) -> list[tuple[Any, ...]]:
        return [args for name, args in self.calls if name == method]

    async def _call(self, method: str, *args: Any) -> None:
        self.calls.append((method, args))
        hold = self.holds.pop(method, None)
        if hold is not None:
            hold.reached.set()
            await hold.release.wait()
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def _next_id(self) -> str:
        if self.server_ids:
            return self.server_ids.pop(0)
        return f"srv-{next(self._counter)}"

    def _dedupe(self, key: str | None) -> Any | None:
        if key is None:
            return None
        return self.idempotency.get(key)

    async def get_user(self) -> User:
        await self._call("get_user")
        return self.user

    async def get_settings(self) -> UserSettings:
        await self._call("get_settings")
        return self.settings

    async def update_settings(self, settings: UserSettings) -> UserSettings:
        await self._call("update_settings", settings)
        self.settings = settings
        return settings

    async def list_shopping_lists(self) -> list[ShoppingList]:
        await self._call("list_shopping_lists")
        return [lst.model_copy(deep=True) for lst in self.shopping_lists.values()]

    async def create_shopping_list(
        self, name: str, *, idempotency_key: str | None = None
    ) -> ShoppingList:
        await self._call("create_shopping_list", name, idempotency_key)
        existing = self._dedupe(idempotency_key)
        if existing is not None:
            return existing
        created = ShoppingList(id=self._next_id(), name=name)
        self.shopping_lists[created.id] = created
        if idempotency_key:
            self.idempotency[idempotency_key] = created
        return created.model_copy(deep=True)

    async def delete_shopping_list(self, list_id: str) -> None:
        await self._call("delete_shopping_list", list_id)
        if self.shopping_lists.pop(list_id, None) is None:
            raise not_found()

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
        await self._call("add_shopping_item", list_id, name, idempotency_key)
        existing = self._dedupe(idempotency_key)
        if existing is not None:
            return existing
        shopping_list = self.shopping_lists.get(list_id)
        if shopping_list is None:
            raise not_found()
        item = ShoppingItem(
            id=self._next_id(),
            name=name,
            quantity=quantity,
            unit=unit,
            list=list_label,
            shopping_list_id=list_id,
        )
        shopping_list.items.append(item)
        if idempotency_key:
            self.idempotency[idempotency_key] = item
        return item.model_copy()

    async def update_shopping_item(
        self, list_id: str, item_id: str, updates: dict[str, Any]
    ) -> ShoppingItem:
        await self._call("update_shopping_item", list_id, item_id, updates)
        shopping_list = self.shopping_lists.get(list_id)
        if shopping_list is None:
            raise not_found()
        for index, item in enumerate(shopping_list.items):
            if item.id == item_id:
                updated = item.model_copy(update={"checked": updates["checked"]})
                shopping_list.items[index] = updated
                return updated.model_copy()
        raise not_found()

    async def delete_shopping_item(self, list_id: str, item_id: str) -> None:
        await self._call("delete_shopping_item", list_id, item_id)
        shopping_list = self.shopping_lists.get(list_id)
        if shopping_list is None or all(i.id != item_id for i in shopping_list.items):
            raise not_found()
        shopping_list.items = [i for i in shopping_list.items if i.id != item_id]

    async def list_pantry_items(self) -> list[PantryItem]:
        await self._call("list_pantry_items")
        return list(self.pantry.values())

    async def create_pantry_item(
        self,
        name: str,
        quantity: str | None = None,
        unit: str | None = None,
        expiry_date: str | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> PantryItem:
        await self._call("create_pantry_item", name, idempotency_key)
        existing = self._dedupe(idempotency_key)
        if existing is not None:
            return existing
        item = PantryItem(
            id=self._next_id(),
            name=name,
            quantity=quantity,
            unit=unit,
            expiry_date=expiry_date,
        )
        self.pantry[item.id] = item
        if idempotency_key:
            self.idempotency[idempotency_key] = item
        return item

    async def update_pantry_item(
        self, item_id: str, updates: dict[str, Any]
    ) -> PantryItem:
        await self._call("update_pantry_item", item_id, updates)
        item = self.pantry.get(item_id)
        if item is None:
            raise not_found()
        updated = PantryItem.model_validate({**item.to_wire(), **updates})
        self.pantry[item_id] = updated
        return updated

    async def toggle_pantry_item(self, item_id: str) -> PantryItem:
        await self._call("toggle_pantry_item", item_id)
        item = self.pantry.get(item_id)
        if item is None:
            raise not_found()
        updated = item.model_copy(update={"checked": not item.checked})
        self.pantry[item_id] = updated
        return updated

    async def delete_pantry_item(self, item_id: str) -> None:
        await self._call("delete_pantry_item", item_id)
        if self.pantry.pop(item_id, None) is None:
            raise not_found()

    async def list_food_log_items(self) -> list[FoodLogItem]:
        await self._call("list_food_log_items")
        return list(self.food_log.values())

    async def create_food_log_item(
        self, request: FoodLogCreateRequest, *, idempotency_key: str | None = None
    ) -> FoodLogItem:
        await self._call("create_food_log_item", request, idempotency_key)
        existing = self._dedupe(idempotency_key)
        if existing is not None:
            return existing
        item = FoodLogItem.from_request(self._next_id(), request)
        self.food_log[item.id] = item
        if idempotency_key:
            self.idempotency[idempotency_key] = item
        return item

    async def delete_food_log_item(self, item_id: str) -> None:
        await self._call("delete_food_log_item", item_id)
        if self.food_log.pop(item_id, None) is None:
            raise not_found()

    async def list_workout_items(self) -> list[WorkoutItem]:
        await self._call("list_workout_items")
        return list(self.workouts.values())

    async def create_workout_item(
        self, item: WorkoutItem, *, idempotency_key: str | None = None
    ) -> WorkoutItem:
        await self._call("create_workout_item", item, idempotency_key)
        existing = self._dedupe(idempotency_key)
        if existing is not None:
            return existing
        created = item.model_copy(update={"id": self._next_id()})
        self.workouts[created.id] = created
        if idempotency_key:
            self.idempotency[idempotency_key] = created
        return created

    async def delete_workout_item(self, item_id: str) -> None:
        await self._call("delete_workout_item", item_id)
        if self.workouts.pop(item_id, None) is None:
            raise not_found()

    async def list_custom_metrics(self) -> list[CustomMetric]:
        await self._call("list_custom_metrics")
        return list(self.metrics.values())

    async def create_custom_metric(
        self, metric: CustomMetric, *, idempotency_key: str | None = None
    ) -> CustomMetric:
        await self._call("create_custom_metric", metric, idempotency_key)
        existing = self._dedupe(idempotency_key)
        if existing is not None:
            return existing
        created = metric.model_copy(update={"id": self._next_id()})
        self.metrics[created.id] = created
        if idempotency_key:
            self.idempotency[idempotency_key] = created
        return created

    async def delete_custom_metric(self, metric_id: str) -> None:
        await self._call("delete_custom_metric", metric_id)
        if self.metrics.pop(metric_id, None) is None:
            raise not_found()


def build_coordinator(
    cache_dir: Path, remote: FasterFoodsClient, monitor: NetworkMonitor
) -> SyncCoordinator:
    """Build a coordinator over fresh store and outbox instances for cache_dir."""
    return SyncCoordinator(
        client=remote,
        snapshot_store=FileSnapshotStore(cache_dir),
        outbox=OfflineOutbox(cache_dir),
        network_monitor=monitor,
    )


@pytest.fixture
def cache_dir(tmp_path: Path) -> Path:
    return tmp_path / "OfflineCache"


@pytest.fixture
def remote() -> FakeFasterFoodsClient:
    return FakeFasterFoodsClient()


@pytest.fixture
def network_monitor() -> NetworkMonitor:
    """Monitor that starts offline and only changes when tests say so."""
    return NetworkMonitor(lambda: False)


@pytest.fixture
def coordinator(
    cache_dir: Path, remote: FakeFasterFoodsClient, network_monitor: NetworkMonitor
) -> SyncCoordinator:
    return build_coordinator(cache_dir, remote, network_monitor)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        api_base_url="http://127.0.0.1:9",
        api_token="test-token",
        cache_dir=str(tmp_path),
        reachability_interval_seconds=0,
        reachability_timeout_seconds=0.1,
    )


@pytest.fixture
def container(
    settings: Settings,
    remote: FakeFasterFoodsClient,
    network_monitor: NetworkMonitor,
) -> AppContainer:
    return build_container(settings, client=remote, network_monitor=network_monitor)

"""Offline-first synchronization coordinator."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Protocol, TypeVar
from uuid import UUID

from fasterfoods_sync.adapters.fasterfoods_client import FasterFoodsClient
from fasterfoods_sync.domain.entities import (
    CustomMetric,
    FoodLogCreateRequest,
    FoodLogItem,
    PantryItem,
    ShoppingItem,
    ShoppingList,
    Snapshot,
    User,
    UserSettings,
    WorkoutItem,
    is_temp_id,
    make_temp_id,
)
from fasterfoods_sync.domain.errors import (
    APIError,
    EntityNotFoundError,
    FailureKind,
    classify_failure,
)
from fasterfoods_sync.domain.operations import (
    AddCustomMetricPayload,
    AddFoodLogItemPayload,
    AddPantryItemPayload,
    AddShoppingItemPayload,
    AddWorkoutPayload,
    CreateShoppingListPayload,
    DeleteCustomMetricPayload,
    DeleteFoodLogItemPayload,
    DeletePantryItemPayload,
    DeleteShoppingItemPayload,
    DeleteShoppingListPayload,
    DeleteWorkoutPayload,
    EntityType,
    OperationPayload,
    OutboxOperation,
    TogglePantryItemPayload,
    ToggleShoppingItemPayload,
    UpdatePantryItemPayload,
)
from fasterfoods_sync.services.network import NetworkMonitor
from fasterfoods_sync.services.outbox import OfflineOutbox
from fasterfoods_sync.services.snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)

DEFAULT_PANTRY_QUANTITY = "1"
DEFAULT_PANTRY_UNIT = "pieces"


class _Identified(Protocol):
    id: str


EntityT = TypeVar("EntityT", bound=_Identified)
ResultT = TypeVar("ResultT")


@dataclass
class SyncReport:
    """Outcome of one replay pass."""

    sent: int = 0
    moot: int = 0
    remaining: int = 0
    error: APIError | None = None
    failed_operation_id: UUID | None = None

    @property
    def completed(self) -> bool:
        return self.error is None and self.remaining == 0


@dataclass
class SyncCoordinator:
    """Applies mutations optimistically and reconciles them with the server.

    The coordinator is the only writer of the snapshot and the outbox. Replay
    passes and merges are serialized by one asyncio lock; optimistic updates
    happen before that lock is taken so callers see their change immediately.
    """

    client: FasterFoodsClient
    snapshot_store: SnapshotStore
    outbox: OfflineOutbox
    network_monitor: NetworkMonitor
    cache_window_days: int = 14
    snapshot: Snapshot = field(default_factory=Snapshot)
    last_sync_error: str | None = None
    last_synced_at: datetime | None = None
    _id_map: dict[tuple[EntityType, str], str] = field(default_factory=dict, init=False)
    _replay_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)
    _tasks: set[asyncio.Task] = field(default_factory=set, init=False)
    _awaited: set[UUID] = field(default_factory=set, init=False)
    _rejections: dict[UUID, APIError] = field(default_factory=dict, init=False)
    _loop: asyncio.AbstractEventLoop | None = field(default=None, init=False)
    _unsubscribe: Callable[[], None] | None = field(default=None, init=False)
    _generation: int = field(default=0, init=False)

    @property
    def is_offline(self) -> bool:
        return not self.network_monitor.is_connected

    @property
    def is_syncing(self) -> bool:
        return self._replay_lock.locked()

    @property
    def pending_operations(self) -> int:
        return len(self.outbox)

    async def start(self) -> None:
        """Seed state from disk and replay on every reconnect."""
        cached = self.snapshot_store.load()
        if cached is not None:
            self.snapshot = cached
        self.outbox.remove_orphaned_operations()
        self._loop = asyncio.get_running_loop()
        if self._unsubscribe is None:
            self._unsubscribe = self.network_monitor.subscribe(
                self._on_connectivity_change
            )
        if self.network_monitor.is_connected and len(self.outbox):
            self._schedule_replay()

    async def stop(self) -> None:
        """Stop reacting to connectivity changes and cancel background replays."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._loop = None

    async def wait_for_background(self) -> None:
        """Wait until scheduled replays have finished."""
        # Let callbacks queued with call_soon_threadsafe create their tasks.
        await asyncio.sleep(0)
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def resolve_id(self, entity: EntityType, entity_id: str) -> str:
        """Map a temporary id reconciled this session to its server id."""
        return self._id_map.get((entity, entity_id), entity_id)

    async def flush_pending_operations(self) -> SyncReport:
        """Replay the outbox in order until it is empty or a pass must stop."""
        if not self.network_monitor.is_connected:
            return SyncReport(remaining=len(self.outbox))
        async with self._replay_lock:
            return await self._drain()

    async def refresh_all(self) -> SyncReport:
        """Push pending work, then merge every collection from the server."""
        report = await self.flush_pending_operations()
        loaders: list[Callable[[], Awaitable[object]]] = [
            self.load_user,
            self.load_settings,
            self.load_shopping_lists,
            self.load_pantry_items,
            self.load_food_log_items,
            self.load_workout_items,
            self.load_custom_metrics,
        ]
        for loader in loaders:
            try:
                await loader()
            except APIError as error:
                logger.info("Refresh of %s failed: %s", loader.__name__, error.message)
                if report.error is None:
                    report.error = error
                if classify_failure(error) is FailureKind.CONNECTIVITY:
                    break
        report.remaining = len(self.outbox)
        return report

    async def clear_offline_state(self) -> None:
        """Forget everything stored locally, for logout.

        Background replays are cancelled. A pass started by a caller finishes its
        in-flight request and then stops; what the server already created stays.
        """
        self._generation += 1
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        async with self._replay_lock:
            self.snapshot_store.clear()
            self.outbox.clear()
            self.snapshot = Snapshot()
            self._id_map.clear()
            self.last_sync_error = None
            self.last_synced_at = None
        logger.info("Cleared offline state")

    # Shopping lists

    async def create_shopping_list(self, name: str) -> ShoppingList:
        """Create a list locally and queue it for the server."""
        temp_id = make_temp_id()
        now = _now_iso()
        shopping_list = ShoppingList(
            id=temp_id, name=name.strip(), created_at=now, updated_at=now
        )
        self.snapshot.shopping_lists.append(shopping_list)
        self._persist()
        await self._submit(
            CreateShoppingListPayload(temp_id=temp_id, name=shopping_list.name)
        )
        resolved = self.resolve_id(EntityType.SHOPPING_LIST, temp_id)
        return self._find_list(resolved) or shopping_list

    async def add_shopping_item(
        self,
        list_id: str,
        name: str,
        quantity: str | None = None,
        unit: str | None = None,
        list_label: str | None = None,
    ) -> ShoppingItem:
        """Add an item to a list, which may itself be unsent."""
        list_id = self.resolve_id(EntityType.SHOPPING_LIST, list_id)
        shopping_list = self._require_list(list_id)
        temp_id = make_temp_id()
        item = ShoppingItem(
            id=temp_id,
            name=name,
            quantity=quantity,
            unit=unit,
            list=list_label,
            added_at=time.time(),
            shopping_list_id=list_id,
        )
        shopping_list.items.append(item)
        self._persist()
        await self._submit(
            AddShoppingItemPayload(
                temp_item_id=temp_id,
                list_id=list_id,
                name=name,
                quantity=quantity,
                unit=unit,
                list_label=list_label,
            )
        )
        return self._current_item(temp_id) or item

    async def toggle_shopping_item(
        self, list_id: str, item_id: str, checked: bool | None = None
    ) -> ShoppingItem:
        """Check or uncheck an item; flips it when checked is omitted."""
        list_id = self.resolve_id(EntityType.SHOPPING_LIST, list_id)
        item_id = self.resolve_id(EntityType.SHOPPING_ITEM, item_id)
        shopping_list = self._require_list(list_id)
        index = _index_of(shopping_list.items, item_id)
        if index is None:
            raise EntityNotFoundError(f"Shopping item {item_id} not found")
        new_state = checked
        if new_state is None:
            new_state = not shopping_list.items[index].checked
        checked_at = int(time.time()) if new_state else None
        item = shopping_list.items[index].model_copy(
            update={"checked": new_state, "checked_at": checked_at}
        )
        shopping_list.items[index] = item
        self._persist()
        await self._submit(
            ToggleShoppingItemPayload(
                list_id=list_id,
                item_id=item_id,
                checked=new_state,
                checked_at=checked_at,
            )
        )
        return self._current_item(item_id) or item

    async def delete_shopping_item(self, list_id: str, item_id: str) -> None:
        """Remove an item locally and queue the delete when the server knows it."""
        list_id = self.resolve_id(EntityType.SHOPPING_LIST, list_id)
        item_id = self.resolve_id(EntityType.SHOPPING_ITEM, item_id)
        shopping_list = self._find_list(list_id)
        if shopping_list is not None:
            shopping_list.items = [i for i in shopping_list.items if i.id != item_id]
        self._persist()
        if is_temp_id(item_id) or is_temp_id(list_id):
            self.outbox.remove_operations_for(EntityType.SHOPPING_ITEM, item_id)
            return
        await self._submit(DeleteShoppingItemPayload(list_id=list_id, item_id=item_id))

    async def delete_shopping_list(self, list_id: str) -> None:
        """Remove a list locally and queue the delete when the server knows it."""
        list_id = self.resolve_id(EntityType.SHOPPING_LIST, list_id)
        self.snapshot.shopping_lists = [
            lst for lst in self.snapshot.shopping_lists if lst.id != list_id
        ]
        self._persist()
        if is_temp_id(list_id):
            self.outbox.remove_operations_for(EntityType.SHOPPING_LIST, list_id)
            return
        await self._submit(DeleteShoppingListPayload(list_id=list_id))

    # Pantry

    async def add_pantry_item(
        self,
        name: str,
        quantity: str | None = None,
        unit: str | None = None,
        expiry_date: str | None = None,
    ) -> PantryItem:
        """Add a pantry item; quantity and unit fall back to one piece."""
        quantity = quantity or DEFAULT_PANTRY_QUANTITY
        unit = unit or DEFAULT_PANTRY_UNIT
        temp_id = make_temp_id()
        item = PantryItem(
            id=temp_id,
            name=name,
            quantity=quantity,
            unit=unit,
            expiry_date=expiry_date,
            added_on=_now_iso(),
        )
        self.snapshot.pantry_items.append(item)
        self._persist()
        await self._submit(
            AddPantryItemPayload(
                temp_id=temp_id,
                name=name,
                quantity=quantity,
                unit=unit,
                expiry_date=expiry_date,
            )
        )
        resolved = self.resolve_id(EntityType.PANTRY_ITEM, temp_id)
        return self._find_pantry_item(resolved) or item

    async def update_pantry_item(
        self,
        item_id: str,
        *,
        name: str | None = None,
        quantity: str | None = None,
        unit: str | None = None,
        expiry_date: str | None = None,
    ) -> PantryItem:
        """Apply the given field changes to a pantry item."""
        item_id = self.resolve_id(EntityType.PANTRY_ITEM, item_id)
        index = self._require_pantry_index(item_id)
        payload = UpdatePantryItemPayload(
            id=item_id, name=name, quantity=quantity, unit=unit, expiry_date=expiry_date
        )
        changes = payload.model_dump(exclude={"id"}, exclude_none=True)
        if not changes:
            return self.snapshot.pantry_items[index]
        item = self.snapshot.pantry_items[index].model_copy(update=changes)
        self.snapshot.pantry_items[index] = item
        self._persist()
        await self._submit(payload)
        return self._find_pantry_item(item_id) or item

    async def toggle_pantry_item(self, item_id: str) -> PantryItem:
        """Flip a pantry item's checked state."""
        item_id = self.resolve_id(EntityType.PANTRY_ITEM, item_id)
        index = self._require_pantry_index(item_id)
        current = self.snapshot.pantry_items[index]
        item = current.model_copy(update={"checked": not current.checked})
        self.snapshot.pantry_items[index] = item
        self._persist()
        await self._submit(TogglePantryItemPayload(id=item_id))
        return self._find_pantry_item(item_id) or item

    async def check_all_pantry_items(self) -> int:
        """Check every unchecked pantry item and return how many changed."""
        unchecked = [item.id for item in self.snapshot.pantry_items if not item.checked]
        for item_id in unchecked:
            await self.toggle_pantry_item(item_id)
        return len(unchecked)

    async def delete_pantry_item(self, item_id: str) -> None:
        """Remove a pantry item locally and queue the delete when needed."""
        item_id = self.resolve_id(EntityType.PANTRY_ITEM, item_id)
        self.snapshot.pantry_items = _without(self.snapshot.pantry_items, item_id)
        self._persist()
        if is_temp_id(item_id):
            self.outbox.remove_operations_for(EntityType.PANTRY_ITEM, item_id)
            return
        await self._submit(DeletePantryItemPayload(id=item_id))

    # Food log, workouts and custom metrics

    async def add_food_log_item(self, request: FoodLogCreateRequest) -> FoodLogItem:
        """Log food locally and queue it for the server."""
        temp_id = make_temp_id()
        item = FoodLogItem.from_request(temp_id, request)
        self.snapshot.food_log_items.append(item)
        self._persist()
        await self._submit(AddFoodLogItemPayload(temp_id=temp_id, request=request))
        resolved = self.resolve_id(EntityType.FOOD_LOG_ITEM, temp_id)
        return _find(self.snapshot.food_log_items, resolved) or item

    async def delete_food_log_item(self, item_id: str) -> None:
        """Remove a food log entry."""
        item_id = self.resolve_id(EntityType.FOOD_LOG_ITEM, item_id)
        self.snapshot.food_log_items = _without(self.snapshot.food_log_items, item_id)
        self._persist()
        if is_temp_id(item_id):
            self.outbox.remove_operations_for(EntityType.FOOD_LOG_ITEM, item_id)
            return
        await self._submit(DeleteFoodLogItemPayload(id=item_id))

    async def add_workout(self, workout: WorkoutItem) -> WorkoutItem:
        """Log a workout locally and queue it for the server."""
        temp_id = make_temp_id()
        item = workout.model_copy(update={"id": temp_id})
        self.snapshot.workout_items.append(item)
        self._persist()
        await self._submit(AddWorkoutPayload(temp_id=temp_id, item=item))
        resolved = self.resolve_id(EntityType.WORKOUT, temp_id)
        return _find(self.snapshot.workout_items, resolved) or item

    async def delete_workout(self, item_id: str) -> None:
        """Remove a workout."""
        item_id = self.resolve_id(EntityType.WORKOUT, item_id)
        self.snapshot.workout_items = _without(self.snapshot.workout_items, item_id)
        self._persist()
        if is_temp_id(item_id):
            self.outbox.remove_operations_for(EntityType.WORKOUT, item_id)
            return
        await self._submit(DeleteWorkoutPayload(id=item_id))

    async def add_custom_metric(self, metric: CustomMetric) -> CustomMetric:
        """Record a metric locally and queue it for the server."""
        temp_id = make_temp_id()
        item = metric.model_copy(update={"id": temp_id})
        self.snapshot.custom_metrics.append(item)
        self._persist()
        await self._submit(AddCustomMetricPayload(temp_id=temp_id, metric=item))
        resolved = self.resolve_id(EntityType.CUSTOM_METRIC, temp_id)
        return _find(self.snapshot.custom_metrics, resolved) or item

    async def delete_custom_metric(self, metric_id: str) -> None:
        """Remove a custom metric reading."""
        metric_id = self.resolve_id(EntityType.CUSTOM_METRIC, metric_id)
        self.snapshot.custom_metrics = _without(self.snapshot.custom_metrics, metric_id)
        self._persist()
        if is_temp_id(metric_id):
            self.outbox.remove_operations_for(EntityType.CUSTOM_METRIC, metric_id)
            return
        await self._submit(DeleteCustomMetricPayload(id=metric_id))

    async def sync_settings(self, settings: UserSettings) -> UserSettings:
        """Store settings locally and push them when online.

        Settings are not queued; an offline change is sent with the next call.
        """
        self.snapshot.settings = settings
        self._persist()
        if not self.network_monitor.is_connected:
            return settings
        try:
            updated = await self._fetch(lambda: self.client.update_settings(settings))
        except APIError as error:
            if classify_failure(error) is FailureKind.CONNECTIVITY:
                return settings
            raise
        self.snapshot.settings = updated
        self._persist()
        return updated

    # Merge path

    async def load_user(self) -> User:
        """Fetch the user profile into the snapshot."""
        user = await self._fetch(self.client.get_user)
        self.snapshot.user = user
        self._persist()
        return user

    async def load_settings(self) -> UserSettings:
        """Fetch settings into the snapshot."""
        settings = await self._fetch(self.client.get_settings)
        self.snapshot.settings = settings
        self._persist()
        return settings

    async def load_shopping_lists(self) -> list[ShoppingList]:
        """Merge server shopping lists with unsent local changes."""
        async with self._replay_lock:
            remote = await self._fetch(self.client.list_shopping_lists)
            deleted_lists = self.outbox.pending_deletes(EntityType.SHOPPING_LIST)
            deleted_items = self.outbox.pending_deletes(EntityType.SHOPPING_ITEM)
            pending_lists = self.outbox.pending_creates(EntityType.SHOPPING_LIST)
            pending_items = self.outbox.pending_creates(EntityType.SHOPPING_ITEM)
            local_lists = {lst.id: lst for lst in self.snapshot.shopping_lists}

            self.outbox.remove_missing_references(
                EntityType.SHOPPING_LIST, {lst.id for lst in remote}
            )
            self.outbox.remove_missing_references(
                EntityType.SHOPPING_ITEM,
                {item.id for lst in remote for item in lst.items},
            )

            merged: list[ShoppingList] = []
            for shopping_list in remote:
                if shopping_list.id in deleted_lists:
                    continue
                items = [i for i in shopping_list.items if i.id not in deleted_items]
                local = local_lists.get(shopping_list.id)
                if local is not None:
                    items.extend(i for i in local.items if i.id in pending_items)
                merged.append(shopping_list.model_copy(update={"items": items}))
            merged.extend(
                lst for lst in self.snapshot.shopping_lists if lst.id in pending_lists
            )
            self.snapshot.shopping_lists = merged
            self._persist()
            return merged

    async def load_pantry_items(self) -> list[PantryItem]:
        """Merge the server pantry with unsent local changes."""
        async with self._replay_lock:
            remote = await self._fetch(self.client.list_pantry_items)
            merged = self._merge(
                EntityType.PANTRY_ITEM, remote, self.snapshot.pantry_items
            )
            self.snapshot.pantry_items = merged
            self._persist()
            return merged

    async def load_food_log_items(self) -> list[FoodLogItem]:
        """Merge the server food log with unsent local entries."""
        async with self._replay_lock:
            remote = await self._fetch(self.client.list_food_log_items)
            merged = self._merge(
                EntityType.FOOD_LOG_ITEM, remote, self.snapshot.food_log_items
            )
            self.snapshot.food_log_items = merged
            self._persist()
            return merged

    async def load_workout_items(self) -> list[WorkoutItem]:
        """Merge server workouts with unsent local entries."""
        async with self._replay_lock:
            remote = await self._fetch(self.client.list_workout_items)
            merged = self._merge(
                EntityType.WORKOUT, remote, self.snapshot.workout_items
            )
            self.snapshot.workout_items = merged
            self._persist()
            return merged

    async def load_custom_metrics(self) -> list[CustomMetric]:
        """Merge server metrics with unsent local readings."""
        async with self._replay_lock:
            remote = await self._fetch(self.client.list_custom_metrics)
            merged = self._merge(
                EntityType.CUSTOM_METRIC, remote, self.snapshot.custom_metrics
            )
            self.snapshot.custom_metrics = merged
            self._persist()
            return merged

    def _merge(
        self, entity: EntityType, remote: list[EntityT], local: list[EntityT]
    ) -> list[EntityT]:
        deleted = self.outbox.pending_deletes(entity)
        pending = self.outbox.pending_creates(entity)
        self.outbox.remove_missing_references(entity, {item.id for item in remote})
        merged = [item for item in remote if item.id not in deleted]
        merged.extend(item for item in local if item.id in pending)
        return merged

    async def _fetch(self, call: Callable[[], Awaitable[ResultT]]) -> ResultT:
        try:
            result = await call()
        except APIError as error:
            kind = classify_failure(error)
            if kind is FailureKind.CONNECTIVITY:
                self.network_monitor.set_connected(False)
            elif kind is FailureKind.AUTHENTICATION:
                self.last_sync_error = error.message
            raise
        self.network_monitor.set_connected(True)
        return result

    # Replay

    async def _submit(self, payload: OperationPayload) -> None:
        operation = OutboxOperation.wrap(payload)
        self._awaited.add(operation.id)
        try:
            self.outbox.enqueue(operation)
            if not self.network_monitor.is_connected:
                return
            async with self._replay_lock:
                report = await self._drain()
        finally:
            self._awaited.discard(operation.id)
            rejection = self._rejections.pop(operation.id, None)
        if rejection is not None:
            if rejection.is_not_found:
                return
            raise rejection
        if report.error is None or self.outbox.get(operation.id) is None:
            return
        if classify_failure(report.error) is FailureKind.CONNECTIVITY:
            return
        raise report.error

    async def _drain(self) -> SyncReport:
        report = SyncReport(moot=self.outbox.remove_orphaned_operations())
        attempted: set[UUID] = set()
        generation = self._generation
        while self.network_monitor.is_connected and generation == self._generation:
            operation = next(
                (op for op in self.outbox.all() if op.id not in attempted), None
            )
            if operation is None:
                break
            attempted.add(operation.id)
            try:
                await self._send(operation)
            except APIError as error:
                kind = classify_failure(error)
                if kind is FailureKind.REJECTED:
                    logger.warning(
                        "Dropping %s operation %s rejected with %s: %s",
                        operation.kind,
                        operation.id,
                        error.status_code,
                        error.message,
                    )
                    self.outbox.remove(operation.id)
                    self._forget_rejected_create(operation)
                    report.moot += 1 + self.outbox.remove_orphaned_operations()
                    if operation.id in self._awaited:
                        self._rejections[operation.id] = error
                    continue
                report.error = error
                report.failed_operation_id = operation.id
                if kind is FailureKind.CONNECTIVITY:
                    self.network_monitor.set_connected(False)
                else:
                    self.last_sync_error = error.message
                logger.info(
                    "Replay stopped at %s operation %s (%s): %s",
                    operation.kind,
                    operation.id,
                    kind,
                    error.message,
                )
                break
            report.sent += 1
        report.remaining = len(self.outbox)
        if report.error is None and report.remaining == 0:
            self.last_sync_error = None
            self.last_synced_at = datetime.now(tz=UTC)
        return report

    async def _send(self, operation: OutboxOperation) -> None:  # noqa: C901, PLR0912
        payload = operation.payload
        client = self.client
        match payload:
            case CreateShoppingListPayload():
                created = await client.create_shopping_list(
                    payload.name, idempotency_key=payload.temp_id
                )
                self._reconcile_shopping_list(payload.temp_id, created)
                if self._was_cancelled(operation, EntityType.SHOPPING_LIST, created.id):
                    self._enqueue(DeleteShoppingListPayload(list_id=created.id))
            case AddShoppingItemPayload():
                created = await client.add_shopping_item(
                    payload.list_id,
                    payload.name,
                    payload.quantity,
                    payload.unit,
                    payload.list_label,
                    idempotency_key=payload.temp_item_id,
                )
                self._reconcile_shopping_item(
                    payload.list_id, payload.temp_item_id, created
                )
                if self._was_cancelled(operation, EntityType.SHOPPING_ITEM, created.id):
                    self._enqueue(
                        DeleteShoppingItemPayload(
                            list_id=payload.list_id, item_id=created.id
                        )
                    )
            case ToggleShoppingItemPayload():
                updates: dict[str, object] = {"checked": payload.checked}
                if payload.checked_at is not None:
                    updates["checkedAt"] = payload.checked_at
                updated = await client.update_shopping_item(
                    payload.list_id, payload.item_id, updates
                )
                if self._is_settled(
                    operation, EntityType.SHOPPING_ITEM, payload.item_id
                ):
                    self._replace_shopping_item(
                        payload.list_id, payload.item_id, updated
                    )
            case DeleteShoppingItemPayload():
                await client.delete_shopping_item(payload.list_id, payload.item_id)
            case DeleteShoppingListPayload():
                await client.delete_shopping_list(payload.list_id)
            case AddPantryItemPayload():
                created = await client.create_pantry_item(
                    payload.name,
                    payload.quantity,
                    payload.unit,
                    payload.expiry_date,
                    idempotency_key=payload.temp_id,
                )
                self._reconcile(
                    EntityType.PANTRY_ITEM,
                    self.snapshot.pantry_items,
                    payload.temp_id,
                    created,
                )
                if self._was_cancelled(operation, EntityType.PANTRY_ITEM, created.id):
                    self._enqueue(DeletePantryItemPayload(id=created.id))
            case UpdatePantryItemPayload():
                updated = await client.update_pantry_item(payload.id, payload.updates())
                self._settle_pantry_item(operation, updated)
            case TogglePantryItemPayload():
                updated = await client.toggle_pantry_item(payload.id)
                self._settle_pantry_item(operation, updated)
            case DeletePantryItemPayload():
                await client.delete_pantry_item(payload.id)
            case AddFoodLogItemPayload():
                created = await client.create_food_log_item(
                    payload.request, idempotency_key=payload.temp_id
                )
                self._reconcile(
                    EntityType.FOOD_LOG_ITEM,
                    self.snapshot.food_log_items,
                    payload.temp_id,
                    created,
                )
                if self._was_cancelled(operation, EntityType.FOOD_LOG_ITEM, created.id):
                    self._enqueue(DeleteFoodLogItemPayload(id=created.id))
            case DeleteFoodLogItemPayload():
                await client.delete_food_log_item(payload.id)
            case AddWorkoutPayload():
                created = await client.create_workout_item(
                    payload.item, idempotency_key=payload.temp_id
                )
                self._reconcile(
                    EntityType.WORKOUT,
                    self.snapshot.workout_items,
                    payload.temp_id,
                    created,
                )
                if self._was_cancelled(operation, EntityType.WORKOUT, created.id):
                    self._enqueue(DeleteWorkoutPayload(id=created.id))
            case DeleteWorkoutPayload():
                await client.delete_workout_item(payload.id)
            case AddCustomMetricPayload():
                created = await client.create_custom_metric(
                    payload.metric, idempotency_key=payload.temp_id
                )
                self._reconcile(
                    EntityType.CUSTOM_METRIC,
                    self.snapshot.custom_metrics,
                    payload.temp_id,
                    created,
                )
                if self._was_cancelled(operation, EntityType.CUSTOM_METRIC, created.id):
                    self._enqueue(DeleteCustomMetricPayload(id=created.id))
            case DeleteCustomMetricPayload():
                await client.delete_custom_metric(payload.id)
            case _:
                raise TypeError(f"Unsupported payload {type(payload).__name__}")
        self._persist()
        self.outbox.remove(operation.id)

    def _was_cancelled(
        self, operation: OutboxOperation, entity: EntityType, server_id: str
    ) -> bool:
        """Return True when the entity was deleted locally mid-create."""
        if self.outbox.get(operation.id) is not None:
            return False
        logger.info(
            "Created %s %s was deleted locally; queueing delete", entity, server_id
        )
        return True

    def _enqueue(self, payload: OperationPayload) -> None:
        self.outbox.enqueue(OutboxOperation.wrap(payload))

    def _forget_rejected_create(self, operation: OutboxOperation) -> None:
        """Remove the optimistic entity of a create the server refused."""
        payload = operation.payload
        if payload.CREATES is None:
            return
        entity = payload.CREATES[0]
        temp_id = payload.created_id(entity)
        snapshot = self.snapshot
        match entity:
            case EntityType.SHOPPING_LIST:
                snapshot.shopping_lists = _without(snapshot.shopping_lists, temp_id)
            case EntityType.SHOPPING_ITEM:
                for shopping_list in snapshot.shopping_lists:
                    shopping_list.items = _without(shopping_list.items, temp_id)
            case EntityType.PANTRY_ITEM:
                snapshot.pantry_items = _without(snapshot.pantry_items, temp_id)
            case EntityType.FOOD_LOG_ITEM:
                snapshot.food_log_items = _without(snapshot.food_log_items, temp_id)
            case EntityType.WORKOUT:
                snapshot.workout_items = _without(snapshot.workout_items, temp_id)
            case EntityType.CUSTOM_METRIC:
                snapshot.custom_metrics = _without(snapshot.custom_metrics, temp_id)
        self._persist()
        logger.info("Removed %s %s refused by the server", entity, temp_id)

    def _is_settled(
        self, operation: OutboxOperation, entity: EntityType, entity_id: str
    ) -> bool:
        """Return True when no later queued operation still changes the entity."""
        return not any(
            other.id != operation.id and other.mentions(entity, entity_id)
            for other in self.outbox.all()
        )

    def _settle_pantry_item(
        self, operation: OutboxOperation, updated: PantryItem
    ) -> None:
        if not self._is_settled(operation, EntityType.PANTRY_ITEM, updated.id):
            return
        index = _index_of(self.snapshot.pantry_items, updated.id)
        if index is not None:
            self.snapshot.pantry_items[index] = updated

    def _reconcile(
        self, entity: EntityType, items: list[EntityT], temp_id: str, created: EntityT
    ) -> None:
        """Rename temp_id to the server id in the outbox, then in the snapshot."""
        self.outbox.rewrite_payload_ids(entity, temp_id, created.id)
        index = _index_of(items, temp_id)
        if index is None:
            index = _index_of(items, created.id)
        if index is not None:
            if self._is_pending(entity, created.id, temp_id):
                items[index] = items[index].model_copy(update={"id": created.id})
            else:
                items[index] = created
        self._remember(entity, temp_id, created.id)

    def _reconcile_shopping_list(self, temp_id: str, created: ShoppingList) -> None:
        self.outbox.rewrite_payload_ids(EntityType.SHOPPING_LIST, temp_id, created.id)
        local = self._find_list(temp_id) or self._find_list(created.id)
        if local is not None:
            local.id = created.id
            local.name = created.name
            local.user_id = created.user_id
            local.created_at = created.created_at or local.created_at
            local.updated_at = created.updated_at or local.updated_at
            for item in local.items:
                item.shopping_list_id = created.id
        self._remember(EntityType.SHOPPING_LIST, temp_id, created.id)

    def _reconcile_shopping_item(
        self, list_id: str, temp_id: str, created: ShoppingItem
    ) -> None:
        self.outbox.rewrite_payload_ids(EntityType.SHOPPING_ITEM, temp_id, created.id)
        shopping_list = self._find_list(list_id)
        if shopping_list is not None:
            index = _index_of(shopping_list.items, temp_id)
            if index is None:
                index = _index_of(shopping_list.items, created.id)
            if index is not None:
                if self._is_pending(EntityType.SHOPPING_ITEM, created.id, temp_id):
                    replacement = shopping_list.items[index].model_copy(
                        update={"id": created.id}
                    )
                else:
                    replacement = created.model_copy(
                        update={"shopping_list_id": created.shopping_list_id or list_id}
                    )
                shopping_list.items[index] = replacement
        self._remember(EntityType.SHOPPING_ITEM, temp_id, created.id)

    def _replace_shopping_item(
        self, list_id: str, item_id: str, updated: ShoppingItem
    ) -> None:
        shopping_list = self._find_list(list_id)
        if shopping_list is None:
            return
        index = _index_of(shopping_list.items, item_id)
        if index is not None:
            shopping_list.items[index] = updated.model_copy(
                update={"shopping_list_id": updated.shopping_list_id or list_id}
            )

    def _is_pending(self, entity: EntityType, server_id: str, temp_id: str) -> bool:
        """Return True when operations besides the create still target the entity."""
        return any(
            op.mentions(entity, server_id) and op.payload.created_id(entity) != temp_id
            for op in self.outbox.all()
        )

    def _remember(self, entity: EntityType, temp_id: str, server_id: str) -> None:
        self._id_map[(entity, temp_id)] = server_id
        logger.info("Reconciled %s %s as %s", entity, temp_id, server_id)

    # Background replay

    def _on_connectivity_change(self, connected: bool) -> None:
        loop = self._loop
        if not connected or loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._schedule_replay)

    def _schedule_replay(self) -> None:
        if self._tasks:
            return
        task = asyncio.get_running_loop().create_task(self.flush_pending_operations())
        self._tasks.add(task)
        task.add_done_callback(self._on_replay_done)

    def _on_replay_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background replay failed", exc_info=error)
            return
        report = task.result()
        logger.info(
            "Background replay sent %d, dropped %d, %d remaining",
            report.sent,
            report.moot,
            report.remaining,
        )

    # Snapshot helpers

    def _persist(self) -> None:
        self.snapshot_store.save(self._windowed())

    def _windowed(self) -> Snapshot:
        cutoff = datetime.now(tz=UTC) - timedelta(days=self.cache_window_days)
        return self.snapshot.model_copy(
            update={
                "cached_at": datetime.now(tz=UTC),
                "food_log_items": _within(
                    self.snapshot.food_log_items, lambda i: i.datetime, cutoff
                ),
                "workout_items": _within(
                    self.snapshot.workout_items, lambda i: i.datetime, cutoff
                ),
                "custom_metrics": _within(
                    self.snapshot.custom_metrics, lambda i: i.date, cutoff
                ),
            }
        )

    def _find_list(self, list_id: str) -> ShoppingList | None:
        return _find(self.snapshot.shopping_lists, list_id)

    def _require_list(self, list_id: str) -> ShoppingList:
        shopping_list = self._find_list(list_id)
        if shopping_list is None:
            raise EntityNotFoundError(f"Shopping list {list_id} not found")
        return shopping_list

    def _current_item(self, item_id: str) -> ShoppingItem | None:
        item_id = self.resolve_id(EntityType.SHOPPING_ITEM, item_id)
        for shopping_list in self.snapshot.shopping_lists:
            item = _find(shopping_list.items, item_id)
            if item is not None:
                return item
        return None

    def _find_pantry_item(self, item_id: str) -> PantryItem | None:
        return _find(self.snapshot.pantry_items, item_id)

    def _require_pantry_index(self, item_id: str) -> int:
        index = _index_of(self.snapshot.pantry_items, item_id)
        if index is None:
            raise EntityNotFoundError(f"Pantry item {item_id} not found")
        return index


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


def _index_of(items: list[EntityT], entity_id: str) -> int | None:
    for index, item in enumerate(items):
        if item.id == entity_id:
            return index
    return None


def _find(items: list[EntityT], entity_id: str) -> EntityT | None:
    index = _index_of(items, entity_id)
    return None if index is None else items[index]


def _without(items: list[EntityT], entity_id: str) -> list[EntityT]:
    return [item for item in items if item.id != entity_id]


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse the API's ISO-8601 and plain date formats; naive values are UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _within(
    items: Iterable[EntityT], stamp: Callable[[EntityT], str | None], cutoff: datetime
) -> list[EntityT]:
    """Keep entries on or after cutoff; entries with unreadable dates are kept."""
    kept = []
    for item in items:
        moment = parse_timestamp(stamp(item))
        if moment is None or moment >= cutoff:
            kept.append(item)
    return kept

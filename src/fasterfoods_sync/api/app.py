"""FastAPI application factory."""

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from fasterfoods_sync.api.models import (
    CustomMetricCreate,
    PantryItemCreate,
    PantryItemUpdate,
    ShoppingItemCreate,
    ShoppingItemToggle,
    ShoppingListCreate,
    SyncReportResponse,
    SyncStatus,
    WorkoutCreate,
)
from fasterfoods_sync.app_logging import configure_logging
from fasterfoods_sync.containers import AppContainer
from fasterfoods_sync.domain.entities import (
    CustomMetric,
    FoodLogCreateRequest,
    UserSettings,
    WorkoutItem,
)
from fasterfoods_sync.domain.errors import (
    APIError,
    EntityNotFoundError,
    FailureKind,
    classify_failure,
)
from fasterfoods_sync.services.sync import SyncCoordinator

ModelT = TypeVar("ModelT", bound=BaseModel)

_FAILURE_STATUS = {
    FailureKind.AUTHENTICATION: status.HTTP_401_UNAUTHORIZED,
    FailureKind.REJECTED: 422,
}


def create_app(container: AppContainer) -> FastAPI:  # noqa: PLR0915
    """Create a FastAPI app configured with dependencies."""
    configure_logging(container.settings.log_level)
    logger = logging.getLogger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        state_container: AppContainer = app.state.container
        await state_container.sync_coordinator.start()
        watcher: asyncio.Task | None = None
        interval = state_container.settings.reachability_interval_seconds
        if interval > 0:
            watcher = asyncio.create_task(
                state_container.network_monitor.watch(interval)
            )
        yield
        if watcher is not None:
            watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher
        await state_container.close_resources()

    app = FastAPI(lifespan=lifespan)
    app.state.container = container

    @app.exception_handler(APIError)
    async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
        kind = classify_failure(exc)
        logger.info("Remote call failed (%s): %s", kind, exc.message)
        return JSONResponse(
            status_code=_FAILURE_STATUS.get(kind, status.HTTP_502_BAD_GATEWAY),
            content={"detail": exc.message, "kind": kind.value},
        )

    @app.exception_handler(EntityNotFoundError)
    async def not_found_handler(
        request: Request, exc: EntityNotFoundError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)}
        )

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Simple health check endpoint."""
        return {"status": "ok"}

    @app.get("/snapshot")
    async def snapshot(request: Request) -> dict[str, object]:
        """Return the merged local state."""
        return _coordinator(request).snapshot.to_wire()

    @app.get("/sync/status")
    async def sync_status(request: Request) -> dict[str, object]:
        """Return connectivity and outbox state."""
        coordinator = _coordinator(request)
        return SyncStatus(
            is_offline=coordinator.is_offline,
            is_syncing=coordinator.is_syncing,
            pending_operations=coordinator.pending_operations,
            last_sync_error=coordinator.last_sync_error,
            last_synced_at=coordinator.last_synced_at,
        ).to_wire()

    @app.post("/sync/flush")
    async def sync_flush(request: Request) -> dict[str, object]:
        """Replay queued operations now."""
        report = await _coordinator(request).flush_pending_operations()
        return SyncReportResponse.from_report(report).to_wire()

    @app.post("/sync/refresh")
    async def sync_refresh(request: Request) -> dict[str, object]:
        """Replay queued operations, then merge server state."""
        report = await _coordinator(request).refresh_all()
        return SyncReportResponse.from_report(report).to_wire()

    @app.delete("/sync/state")
    async def sync_clear(request: Request) -> dict[str, str]:
        """Discard the snapshot and the outbox."""
        await _coordinator(request).clear_offline_state()
        return {"status": "cleared"}

    @app.put("/settings")
    async def update_settings(
        settings: UserSettings, request: Request
    ) -> dict[str, object]:
        """Store settings and push them when online."""
        updated = await _coordinator(request).sync_settings(settings)
        return updated.to_wire()

    @app.get("/shopping-lists")
    async def list_shopping_lists(
        request: Request, refresh: bool = False
    ) -> dict[str, object]:
        """Return shopping lists, merging from the server when asked."""
        coordinator = _coordinator(request)
        lists = await _maybe_load(
            coordinator, refresh, coordinator.load_shopping_lists
        )
        items = lists if lists is not None else coordinator.snapshot.shopping_lists
        return {"items": _wire_list(items)}

    @app.post("/shopping-lists", status_code=status.HTTP_201_CREATED)
    async def create_shopping_list(
        body: ShoppingListCreate, request: Request
    ) -> dict[str, object]:
        """Create a shopping list."""
        created = await _coordinator(request).create_shopping_list(body.name)
        return created.to_wire()

    @app.delete("/shopping-lists/{list_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_shopping_list(list_id: str, request: Request) -> None:
        """Delete a shopping list."""
        await _coordinator(request).delete_shopping_list(list_id)

    @app.post("/shopping-lists/{list_id}/items", status_code=status.HTTP_201_CREATED)
    async def add_shopping_item(
        list_id: str, body: ShoppingItemCreate, request: Request
    ) -> dict[str, object]:
        """Add an item to a shopping list."""
        item = await _coordinator(request).add_shopping_item(
            list_id, body.name, body.quantity, body.unit, body.list_label
        )
        return item.to_wire()

    @app.patch("/shopping-lists/{list_id}/items/{item_id}")
    async def toggle_shopping_item(
        list_id: str, item_id: str, body: ShoppingItemToggle, request: Request
    ) -> dict[str, object]:
        """Check or uncheck a shopping item."""
        item = await _coordinator(request).toggle_shopping_item(
            list_id, item_id, body.checked
        )
        return item.to_wire()

    @app.delete(
        "/shopping-lists/{list_id}/items/{item_id}",
        status_code=status.HTTP_204_NO_CONTENT,
    )
    async def delete_shopping_item(
        list_id: str, item_id: str, request: Request
    ) -> None:
        """Delete a shopping item."""
        await _coordinator(request).delete_shopping_item(list_id, item_id)

    @app.get("/pantry/items")
    async def list_pantry_items(
        request: Request, refresh: bool = False
    ) -> dict[str, object]:
        """Return pantry items, merging from the server when asked."""
        coordinator = _coordinator(request)
        loaded = await _maybe_load(coordinator, refresh, coordinator.load_pantry_items)
        items = loaded if loaded is not None else coordinator.snapshot.pantry_items
        return {"items": _wire_list(items)}

    @app.post("/pantry/items", status_code=status.HTTP_201_CREATED)
    async def add_pantry_item(
        body: PantryItemCreate, request: Request
    ) -> dict[str, object]:
        """Add a pantry item."""
        item = await _coordinator(request).add_pantry_item(
            body.name, body.quantity, body.unit, body.expiry_date
        )
        return item.to_wire()

    @app.post("/pantry/items/check-all")
    async def check_all_pantry_items(request: Request) -> dict[str, int]:
        """Check every pantry item."""
        changed = await _coordinator(request).check_all_pantry_items()
        return {"checked": changed}

    @app.put("/pantry/items/{item_id}")
    async def update_pantry_item(
        item_id: str, body: PantryItemUpdate, request: Request
    ) -> dict[str, object]:
        """Update a pantry item."""
        item = await _coordinator(request).update_pantry_item(
            item_id,
            name=body.name,
            quantity=body.quantity,
            unit=body.unit,
            expiry_date=body.expiry_date,
        )
        return item.to_wire()

    @app.patch("/pantry/items/{item_id}/toggle")
    async def toggle_pantry_item(item_id: str, request: Request) -> dict[str, object]:
        """Flip a pantry item's checked state."""
        item = await _coordinator(request).toggle_pantry_item(item_id)
        return item.to_wire()

    @app.delete("/pantry/items/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_pantry_item(item_id: str, request: Request) -> None:
        """Delete a pantry item."""
        await _coordinator(request).delete_pantry_item(item_id)

    @app.get("/food-log/items")
    async def list_food_log_items(
        request: Request, refresh: bool = False
    ) -> dict[str, object]:
        """Return food log entries, merging from the server when asked."""
        coordinator = _coordinator(request)
        loaded = await _maybe_load(
            coordinator, refresh, coordinator.load_food_log_items
        )
        items = loaded if loaded is not None else coordinator.snapshot.food_log_items
        return {"items": _wire_list(items)}

    @app.post("/food-log/items", status_code=status.HTTP_201_CREATED)
    async def add_food_log_item(
        body: FoodLogCreateRequest, request: Request
    ) -> dict[str, object]:
        """Log food."""
        item = await _coordinator(request).add_food_log_item(body)
        return item.to_wire()

    @app.delete("/food-log/items/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_food_log_item(item_id: str, request: Request) -> None:
        """Delete a food log entry."""
        await _coordinator(request).delete_food_log_item(item_id)

    @app.get("/workout/items")
    async def list_workout_items(
        request: Request, refresh: bool = False
    ) -> dict[str, object]:
        """Return workouts, merging from the server when asked."""
        coordinator = _coordinator(request)
        loaded = await _maybe_load(coordinator, refresh, coordinator.load_workout_items)
        items = loaded if loaded is not None else coordinator.snapshot.workout_items
        return {"items": _wire_list(items)}

    @app.post("/workout/items", status_code=status.HTTP_201_CREATED)
    async def add_workout(body: WorkoutCreate, request: Request) -> dict[str, object]:
        """Log a workout."""
        workout = WorkoutItem.model_validate(body.model_dump())
        item = await _coordinator(request).add_workout(workout)
        return item.to_wire()

    @app.delete("/workout/items/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_workout(item_id: str, request: Request) -> None:
        """Delete a workout."""
        await _coordinator(request).delete_workout(item_id)

    @app.get("/custom-metrics/items")
    async def list_custom_metrics(
        request: Request, refresh: bool = False
    ) -> dict[str, object]:
        """Return custom metric readings, merging from the server when asked."""
        coordinator = _coordinator(request)
        loaded = await _maybe_load(
            coordinator, refresh, coordinator.load_custom_metrics
        )
        items = loaded if loaded is not None else coordinator.snapshot.custom_metrics
        return {"items": _wire_list(items)}

    @app.post("/custom-metrics/items", status_code=status.HTTP_201_CREATED)
    async def add_custom_metric(
        body: CustomMetricCreate, request: Request
    ) -> dict[str, object]:
        """Record a custom metric reading."""
        metric = CustomMetric.model_validate(body.model_dump())
        item = await _coordinator(request).add_custom_metric(metric)
        return item.to_wire()

    @app.delete(
        "/custom-metrics/items/{metric_id}", status_code=status.HTTP_204_NO_CONTENT
    )
    async def delete_custom_metric(metric_id: str, request: Request) -> None:
        """Delete a custom metric reading."""
        await _coordinator(request).delete_custom_metric(metric_id)

    return app


def _coordinator(request: Request) -> SyncCoordinator:
    container: AppContainer = request.app.state.container
    return container.sync_coordinator


async def _maybe_load(
    coordinator: SyncCoordinator,
    refresh: bool,
    load: Callable[[], Awaitable[list[ModelT]]],
) -> list[ModelT] | None:
    """Run a merge when asked and online; offline callers get the snapshot."""
    if not refresh or coordinator.is_offline:
        return None
    try:
        return await load()
    except APIError as error:
        if classify_failure(error) is FailureKind.CONNECTIVITY:
            return None
        raise


def _wire_list(items: list[ModelT]) -> list[dict[str, object]]:
    return [item.model_dump(mode="json", by_alias=True) for item in items]

"""Dependency container wiring for the sync service."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from fasterfoods_sync.adapters.fasterfoods_client import (
    FasterFoodsClient,
    HttpxFasterFoodsClient,
)
from fasterfoods_sync.config import Settings, resolve_cache_dir
from fasterfoods_sync.services.network import NetworkMonitor, shared_network_monitor
from fasterfoods_sync.services.outbox import OfflineOutbox
from fasterfoods_sync.services.snapshot_store import FileSnapshotStore
from fasterfoods_sync.services.sync import SyncCoordinator


@dataclass
class AppContainer:
    """Holds application-wide dependencies."""

    settings: Settings
    client: FasterFoodsClient
    network_monitor: NetworkMonitor
    sync_coordinator: SyncCoordinator
    close_resources: Callable[[], Awaitable[None]]


def build_container(
    settings: Settings | None = None,
    *,
    client: FasterFoodsClient | None = None,
    network_monitor: NetworkMonitor | None = None,
) -> AppContainer:
    """Create the default dependency container."""
    resolved_settings = settings or Settings()
    cache_dir = resolve_cache_dir(resolved_settings)
    http_client: HttpxFasterFoodsClient | None = None
    if client is None:
        http_client = HttpxFasterFoodsClient.create(
            base_url=resolved_settings.api_base_url,
            token=resolved_settings.api_token,
            timeout=resolved_settings.request_timeout_seconds,
        )
        client = http_client
    monitor = network_monitor or shared_network_monitor(resolved_settings)
    coordinator = SyncCoordinator(
        client=client,
        snapshot_store=FileSnapshotStore(cache_dir),
        outbox=OfflineOutbox(cache_dir),
        network_monitor=monitor,
        cache_window_days=resolved_settings.cache_window_days,
    )

    async def close_resources() -> None:
        await coordinator.stop()
        if http_client is not None:
            await http_client.close()

    return AppContainer(
        settings=resolved_settings,
        client=client,
        network_monitor=monitor,
        sync_coordinator=coordinator,
        close_resources=close_resources,
    )

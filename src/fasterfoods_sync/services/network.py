"""Process-wide connectivity signal."""

import asyncio
import logging
import socket
import threading
from collections.abc import Callable

import httpx

from fasterfoods_sync.config import Settings, normalize_base_url

logger = logging.getLogger(__name__)

ConnectivityCallback = Callable[[bool], None]
Probe = Callable[[], bool]

_DEFAULT_PORTS = {"http": 80, "https": 443}


def probe_connectivity(host: str, port: int, timeout: float = 3.0) -> bool:
    """Return True when a TCP connection to host:port can be opened."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


class NetworkMonitor:
    """Observable connectivity flag with edge-triggered callbacks.

    The probe runs once during construction so callers always see a definite
    value. Callbacks run outside the lock on the thread that observed the
    transition and must not block.
    """

    def __init__(self, probe: Probe, *, initial: bool | None = None) -> None:
        self._probe = probe
        self._lock = threading.Lock()
        self._subscribers: list[ConnectivityCallback] = []
        self._connected = self._run_probe() if initial is None else initial

    @property
    def is_connected(self) -> bool:
        with self._lock:
            return self._connected

    def subscribe(self, callback: ConnectivityCallback) -> Callable[[], None]:
        """Register a transition callback and return a function that removes it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def set_connected(self, connected: bool) -> bool:
        """Record a connectivity observation; returns True on a transition."""
        with self._lock:
            if self._connected == connected:
                return False
            self._connected = connected
            subscribers = list(self._subscribers)
        logger.info("Connectivity changed: %s", "online" if connected else "offline")
        for callback in subscribers:
            try:
                callback(connected)
            except Exception:
                logger.exception("Connectivity callback failed")
        return True

    def refresh(self) -> bool:
        """Probe now and publish the result."""
        connected = self._run_probe()
        self.set_connected(connected)
        return connected

    async def watch(self, interval: float) -> None:
        """Poll the probe until cancelled."""
        while True:
            await asyncio.sleep(interval)
            connected = await asyncio.to_thread(self._run_probe)
            self.set_connected(connected)

    def _run_probe(self) -> bool:
        try:
            return bool(self._probe())
        except Exception:
            logger.warning("Connectivity probe failed", exc_info=True)
            return False


_shared_monitor: NetworkMonitor | None = None
_shared_lock = threading.Lock()


def build_probe(settings: Settings) -> Probe:
    """Return a probe that connects to the API host."""
    url = httpx.URL(normalize_base_url(settings.api_base_url))
    host = url.host
    port = url.port or _DEFAULT_PORTS.get(url.scheme, 443)
    timeout = settings.reachability_timeout_seconds

    def probe() -> bool:
        return probe_connectivity(host, port, timeout)

    return probe


def shared_network_monitor(settings: Settings) -> NetworkMonitor:
    """Return the process-wide monitor, creating it on first use."""
    global _shared_monitor  # noqa: PLW0603
    with _shared_lock:
        if _shared_monitor is None:
            _shared_monitor = NetworkMonitor(build_probe(settings))
        return _shared_monitor


def reset_shared_network_monitor() -> None:
    """Forget the process-wide monitor so the next call builds a fresh one."""
    global _shared_monitor  # noqa: PLW0603
    with _shared_lock:
        _shared_monitor = None

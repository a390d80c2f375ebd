"""Durable storage for the offline snapshot."""

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from fasterfoods_sync.domain.entities import SNAPSHOT_SCHEMA_VERSION, Snapshot

logger = logging.getLogger(__name__)

SNAPSHOT_FILE_NAME = "offline_snapshot.json"


class SnapshotStore(Protocol):
    """Persistence interface for the offline snapshot."""

    def load(self) -> Snapshot | None:
        """Return the persisted snapshot, or None when absent or unreadable."""

    def save(self, snapshot: Snapshot) -> None:
        """Persist the snapshot, replacing any previous one."""

    def clear(self) -> None:
        """Remove the persisted snapshot."""


@dataclass
class FileSnapshotStore(SnapshotStore):
    """JSON file snapshot store with atomic replace-on-write."""

    directory: Path
    file_name: str = SNAPSHOT_FILE_NAME
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False
    )

    @property
    def path(self) -> Path:
        return self.directory / self.file_name

    def load(self) -> Snapshot | None:
        """Return the snapshot, treating missing or corrupt data as a cold start."""
        with self._lock:
            try:
                raw = self.path.read_text(encoding="utf-8")
            except FileNotFoundError:
                return None
            except (OSError, UnicodeDecodeError):
                logger.warning("Failed to read offline snapshot", exc_info=True)
                return None
        try:
            snapshot = Snapshot.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding unreadable offline snapshot at %s", self.path)
            return None
        if snapshot.schema_version != SNAPSHOT_SCHEMA_VERSION:
            logger.info(
                "Ignoring offline snapshot with schema version %s",
                snapshot.schema_version,
            )
            return None
        return snapshot

    def save(self, snapshot: Snapshot) -> None:
        """Write the snapshot atomically; failures are logged, not raised."""
        document = json.dumps(snapshot.to_wire(), indent=2, sort_keys=True)
        with self._lock:
            try:
                atomic_write_text(self.path, document)
            except OSError:
                logger.warning("Failed to save offline snapshot", exc_info=True)

    def clear(self) -> None:
        """Delete the snapshot file if present."""
        with self._lock:
            try:
                self.path.unlink(missing_ok=True)
            except OSError:
                logger.warning("Failed to clear offline snapshot", exc_info=True)


def atomic_write_text(path: Path, text: str) -> None:
    """Write text to a sibling temp file, fsync it and rename it over path."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=path.parent
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise

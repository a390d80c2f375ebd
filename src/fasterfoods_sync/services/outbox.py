"""Durable FIFO log of mutations not yet confirmed by the server."""

import json
import logging
import threading
from collections.abc import Callable, Collection, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from uuid import UUID

from pydantic import ValidationError

from fasterfoods_sync.domain.entities import is_temp_id
from fasterfoods_sync.domain.operations import (
    EntityType,
    OperationKind,
    OutboxOperation,
)
from fasterfoods_sync.services.snapshot_store import atomic_write_text

logger = logging.getLogger(__name__)

OUTBOX_FILE_NAME = "offline_outbox.json"

_DELETE_KINDS: dict[EntityType, OperationKind] = {
    EntityType.SHOPPING_LIST: OperationKind.DELETE_SHOPPING_LIST,
    EntityType.SHOPPING_ITEM: OperationKind.DELETE_SHOPPING_ITEM,
    EntityType.PANTRY_ITEM: OperationKind.DELETE_PANTRY_ITEM,
    EntityType.FOOD_LOG_ITEM: OperationKind.DELETE_FOOD_LOG_ITEM,
    EntityType.WORKOUT: OperationKind.DELETE_WORKOUT,
    EntityType.CUSTOM_METRIC: OperationKind.DELETE_CUSTOM_METRIC,
}


@dataclass
class OfflineOutbox:
    """Ordered operation log persisted as a single JSON document.

    All mutations go through one lock. The new list is written to disk before it
    replaces the in-memory list, so a reader never sees a state that was not
    handed to the filesystem. A failed write is logged and the in-memory list
    stays authoritative for the rest of the session.
    """

    directory: Path
    file_name: str = OUTBOX_FILE_NAME
    _operations: list[OutboxOperation] = field(
        default_factory=list, init=False, repr=False
    )
    _lock: threading.RLock = field(
        default_factory=threading.RLock, init=False, repr=False
    )

    def __post_init__(self) -> None:
        self._operations = self._load()

    @property
    def path(self) -> Path:
        return self.directory / self.file_name

    def __len__(self) -> int:
        with self._lock:
            return len(self._operations)

    def enqueue(self, operation: OutboxOperation) -> None:
        """Append an operation and persist before returning."""
        with self._lock:
            self._commit([*self._operations, operation])
        logger.debug("Queued %s operation %s", operation.kind, operation.id)

    def all(self) -> list[OutboxOperation]:
        """Return the operations in enqueue order."""
        with self._lock:
            return list(self._operations)

    def get(self, operation_id: UUID) -> OutboxOperation | None:
        """Return a queued operation by id."""
        with self._lock:
            for operation in self._operations:
                if operation.id == operation_id:
                    return operation
            return None

    def remove(self, operation_id: UUID) -> bool:
        """Remove one operation by id; returns False if it was not queued."""
        return self.remove_where(lambda operation: operation.id == operation_id) > 0

    def remove_where(self, predicate: Callable[[OutboxOperation], bool]) -> int:
        """Remove every matching operation with a single write."""
        with self._lock:
            kept = [op for op in self._operations if not predicate(op)]
            removed = len(self._operations) - len(kept)
            if removed:
                self._commit(kept)
            return removed

    def rewrite_payload_ids(self, entity: EntityType, old_id: str, new_id: str) -> int:
        """Rename every reference to old_id in place and return the count.

        Order, operation ids and kinds are untouched. Calling it again with the same
        arguments finds nothing to rename and does not write.
        """
        if old_id == new_id:
            return 0
        with self._lock:
            rewritten = 0
            updated: list[OutboxOperation] = []
            for operation in self._operations:
                renamed = operation.with_reference(entity, old_id, new_id)
                if renamed is None:
                    updated.append(operation)
                    continue
                updated.append(renamed)
                rewritten += 1
            if rewritten:
                self._commit(updated)
        if rewritten:
            logger.info(
                "Reconciled %s %s -> %s in %d queued operations",
                entity,
                old_id,
                new_id,
                rewritten,
            )
        return rewritten

    def remove_operations_for(self, entity: EntityType, entity_id: str) -> int:
        """Drop the create and every dependent operation of an unsent entity."""
        removed = self.remove_where(
            lambda operation: operation.mentions(entity, entity_id)
        )
        if removed:
            logger.info(
                "Pruned %d moot operations for %s %s", removed, entity, entity_id
            )
        return removed

    def remove_orphaned_operations(self) -> int:
        """Drop operations whose temporary references have no create ahead of them."""
        with self._lock:
            created: set[tuple[EntityType, str]] = set()
            orphaned: set[UUID] = set()
            for operation in self._operations:
                payload = operation.payload
                if _references_unknown_temp_id(payload, created):
                    orphaned.add(operation.id)
                    continue
                if payload.CREATES is not None:
                    entity = payload.CREATES[0]
                    created.add((entity, payload.created_id(entity)))
        if not orphaned:
            return 0
        removed = self.remove_where(lambda operation: operation.id in orphaned)
        logger.warning("Pruned %d operations with dangling temporary ids", removed)
        return removed

    def remove_missing_references(
        self, entity: EntityType, surviving_ids: Collection[str]
    ) -> int:
        """Drop operations that target server entities which no longer exist."""

        def is_moot(operation: OutboxOperation) -> bool:
            return any(
                not is_temp_id(entity_id) and entity_id not in surviving_ids
                for entity_id in operation.payload.referenced_ids(entity)
            )

        removed = self.remove_where(is_moot)
        if removed:
            logger.info(
                "Pruned %d operations referencing deleted %s entities", removed, entity
            )
        return removed

    def pending_deletes(self, entity: EntityType) -> set[str]:
        """Return ids of the entity type that have a queued delete."""
        kind = _DELETE_KINDS[entity]
        with self._lock:
            return {
                entity_id
                for operation in self._operations
                if operation.kind == kind
                for entity_id in operation.payload.referenced_ids(entity)
            }

    def pending_creates(self, entity: EntityType) -> set[str]:
        """Return temporary ids of the entity type that are still unsent."""
        with self._lock:
            return {
                created
                for operation in self._operations
                if (created := operation.payload.created_id(entity)) is not None
            }

    def clear(self) -> None:
        """Drop every queued operation."""
        with self._lock:
            self._commit([])

    def _commit(self, operations: list[OutboxOperation]) -> None:
        self._persist(operations)
        self._operations = operations

    def _persist(self, operations: Iterable[OutboxOperation]) -> None:
        document = json.dumps(
            [operation.to_wire() for operation in operations], indent=2, sort_keys=True
        )
        try:
            atomic_write_text(self.path, document)
        except OSError:
            logger.warning("Failed to persist outbox", exc_info=True)

    def _load(self) -> list[OutboxOperation]:
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return []
        except OSError:
            logger.warning("Failed to read outbox; starting empty", exc_info=True)
            return []
        try:
            document = json.loads(raw)
            if not isinstance(document, list):
                raise TypeError("outbox document is not a list")
            return [OutboxOperation.model_validate(entry) for entry in document]
        except (ValueError, TypeError, ValidationError):
            logger.warning("Discarding unreadable outbox at %s", self.path)
            return []


def _references_unknown_temp_id(payload, created: set[tuple[EntityType, str]]) -> bool:
    for entity in payload.REFERENCES:
        for entity_id in payload.referenced_ids(entity):
            if is_temp_id(entity_id) and (entity, entity_id) not in created:
                return True
    return False

"""Pydantic models for the local HTTP surface."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import Field

from fasterfoods_sync.domain.entities import WireModel
from fasterfoods_sync.services.sync import SyncReport


class ShoppingListCreate(WireModel):
    """New shopping list."""

    name: str = Field(min_length=1)


class ShoppingItemCreate(WireModel):
    """New shopping item."""

    name: str = Field(min_length=1)
    quantity: str | None = None
    unit: str | None = None
    list_label: str | None = None


class ShoppingItemToggle(WireModel):
    """Explicit checked state; omitted flips the item."""

    checked: bool | None = None


class PantryItemCreate(WireModel):
    """New pantry item."""

    name: str = Field(min_length=1)
    quantity: str | None = None
    unit: str | None = None
    expiry_date: str | None = None


class PantryItemUpdate(WireModel):
    """Partial pantry item update."""

    name: str | None = None
    quantity: str | None = None
    unit: str | None = None
    expiry_date: str | None = None


class WorkoutCreate(WireModel):
    """New workout."""

    name: str
    activity: str
    category: str
    duration: str
    calories: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    datetime: str


class CustomMetricCreate(WireModel):
    """New custom metric reading."""

    name: str
    value: str
    unit: str
    date: str
    metric_type: str


class SyncStatus(WireModel):
    """Connectivity and outbox state."""

    is_offline: bool
    is_syncing: bool
    pending_operations: int
    last_sync_error: str | None = None
    last_synced_at: datetime | None = None


class SyncReportResponse(WireModel):
    """Result of a replay pass."""

    sent: int
    moot: int
    remaining: int
    error: str | None = None
    failed_operation_id: UUID | None = None

    @classmethod
    def from_report(cls, report: SyncReport) -> "SyncReportResponse":
        return cls(
            sent=report.sent,
            moot=report.moot,
            remaining=report.remaining,
            error=report.error.message if report.error else None,
            failed_operation_id=report.failed_operation_id,
        )

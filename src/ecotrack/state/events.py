"""Queued ingestion events.

Every input the engine reacts to is wrapped in one of these and drained by
a single consumer task, in arrival order.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ecotrack.models.message import NormalizedMessage


class IngestionSource(StrEnum):
    BUS = "bus"
    STORE = "store"
    SWEEP = "sweep"


class _QueuedEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    received_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("received_at")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class BusMessageEvent(_QueuedEvent):
    """A normalized bus message."""

    source: IngestionSource = IngestionSource.BUS
    message: NormalizedMessage


class StoreSnapshotEvent(_QueuedEvent):
    """A full ``devices`` subtree as last emitted by the store watch."""

    source: IngestionSource = IngestionSource.STORE
    snapshot: Any = None


class SweepEvent(_QueuedEvent):
    """Periodic presence expiry tick."""

    source: IngestionSource = IngestionSource.SWEEP


EngineEvent = BusMessageEvent | StoreSnapshotEvent | SweepEvent

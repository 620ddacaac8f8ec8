"""Aggregate fleet metrics and command results."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class FleetMetrics(BaseModel):
    """Counts derived from the unified device view."""

    model_config = ConfigDict(frozen=True)

    total: int = 0
    active_count: int = 0
    full_bin_count: int = 0
    flood_count: int = 0


class CommandStep(StrEnum):
    STORE_TOMBSTONE = "store_tombstone"
    BUS_CLEAR = "bus_clear"
    LIVE_REMOVE = "live_remove"
    STORE_WRITE = "store_write"
    BUS_META = "bus_meta"


class CommandResult(BaseModel):
    """Outcome of a multi-step command.

    A command never raises for a failed step; it reports which steps
    completed so the caller can retry. Every step is idempotent.
    """

    model_config = ConfigDict(frozen=True)

    command: str
    device_id: str
    completed: tuple[CommandStep, ...] = ()
    failed: tuple[CommandStep, ...] = ()
    errors: dict[str, str] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

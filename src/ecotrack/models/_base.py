"""Shared pydantic base for documents kept in the remote store.

Store documents are written by firmware, the dashboard and this service,
so keys arrive in camelCase (``fillPct``, ``lastSeen``) and "not available"
is spelled several ways. :class:`EcotrackBaseModel` maps the keys onto
snake_case fields and treats placeholders as absent, keeping the untouched
document in ``raw``.
"""

from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

# Spellings of "not available" seen in device and dashboard writes.
_PLACEHOLDERS = frozenset({"", "--", "NaN", "nan", "null"})

# Threshold to distinguish seconds from milliseconds.
_MS_THRESHOLD = 1_000_000_000_000


def parse_epoch(value: Any) -> datetime | None:
    """Convert an epoch timestamp (seconds **or** milliseconds) to a UTC datetime.

    Returns ``None`` for missing, non-numeric or non-positive values.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    try:
        ts = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(ts) or ts <= 0:
        return None
    if ts >= _MS_THRESHOLD:
        ts /= 1000.0
    try:
        return datetime.fromtimestamp(ts, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return None


def to_epoch_ms(value: datetime | None) -> int | None:
    if value is None:
        return None
    return int(value.timestamp() * 1000)


EpochTimestamp = Annotated[datetime | None, BeforeValidator(parse_epoch)]
"""Annotated type that coerces epoch ints (seconds or ms) to UTC datetimes."""


def is_placeholder(value: Any) -> bool:
    """True for ``None``, NaN and the "not available" strings."""
    if value is None:
        return True
    if isinstance(value, float):
        return math.isnan(value)
    return isinstance(value, str) and value.strip() in _PLACEHOLDERS


class EcotrackBaseModel(BaseModel):
    """Frozen, camelCase-aliased model with placeholder keys dropped before validation."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )

    raw: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _drop_placeholders(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        present = {key: value for key, value in data.items() if not is_placeholder(value)}
        # raw= passed as a keyword wins over the captured document.
        present.setdefault("raw", dict(data))
        return present

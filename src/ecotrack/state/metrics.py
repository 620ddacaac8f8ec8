"""Fleet metrics derivation."""

from __future__ import annotations

from collections.abc import Iterable

from ecotrack.models.device import Device
from ecotrack.models.fleet import FleetMetrics


def derive_metrics(devices: Iterable[Device], *, full_threshold: int) -> FleetMetrics:
    """Recompute fleet counts wholesale from the unified view."""
    total = active = full = flooded = 0
    for device in devices:
        total += 1
        if device.online:
            active += 1
        if device.bin_full or (device.fill_pct is not None and device.fill_pct >= full_threshold):
            full += 1
        if device.flooded:
            flooded += 1
    return FleetMetrics(total=total, active_count=active, full_bin_count=full, flood_count=flooded)

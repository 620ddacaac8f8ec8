from __future__ import annotations

from ecotrack.models.device import Device
from ecotrack.state.metrics import derive_metrics


def test_metrics_count_every_condition() -> None:
    devices = [
        Device(id="bin-01", online=True, fill_pct=95, bin_full=True),
        Device(id="bin-02", online=True, fill_pct=40),
        Device(id="bin-03", online=False, flooded=True),
        Device(id="bin-04", online=False, bin_full=True),
    ]

    metrics = derive_metrics(devices, full_threshold=90)

    assert metrics.total == 4
    assert metrics.active_count == 2
    assert metrics.full_bin_count == 2
    assert metrics.flood_count == 1


def test_metrics_of_empty_fleet() -> None:
    metrics = derive_metrics([], full_threshold=90)

    assert (metrics.total, metrics.active_count, metrics.full_bin_count, metrics.flood_count) == (0, 0, 0, 0)

#!/usr/bin/env python3
"""Live terminal monitor for an EcoTrack fleet.

Connects to the telemetry bus and the remote store using ``ECOTRACK_*``
environment variables (or the flags below) and prints the fleet view every
time it changes, plus one line per raised alert.

Example::

    ECOTRACK_MQTT_HOST=broker.example.com \
    ECOTRACK_STORE_URL=https://example-default-rtdb.firebaseio.com \
    python scripts/live_monitor.py --mute-file ~/.ecotrack/mute.json
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from collections.abc import Mapping
from pathlib import Path

# Allow running from repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from ecotrack import AlertBanner, Device, EcotrackConfig, EcotrackMonitor, FleetMetrics  # noqa: E402

_LOG = logging.getLogger("live_monitor")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Watch EcoTrack devices live")
    parser.add_argument("--host", help="Broker host (overrides ECOTRACK_MQTT_HOST)")
    parser.add_argument("--store-url", help="Store base URL (overrides ECOTRACK_STORE_URL)")
    parser.add_argument("--no-bus", action="store_true", help="Only watch the store")
    parser.add_argument("--no-mirror", action="store_true", help="Do not mirror bus telemetry into the store")
    parser.add_argument("--mute-file", help="JSON file that persists the alert mute preference")
    parser.add_argument("--mute", action="store_true", help="Start with the audible cue muted")
    parser.add_argument("--logs", metavar="DEVICE_ID", help="Load and print the log history of one device, then exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable DEBUG logging")
    return parser.parse_args()


def _build_config(args: argparse.Namespace) -> EcotrackConfig:
    overrides: dict[str, object] = {}
    if args.host:
        overrides["broker"] = {"host": args.host}
    if args.store_url:
        overrides["store"] = {"base_url": args.store_url}
    if args.no_mirror:
        overrides["mirror_writes"] = False
    if args.mute_file:
        overrides["mute_preference_path"] = str(Path(args.mute_file).expanduser())
    return EcotrackConfig.from_env(**overrides)


def _format_device(device: Device) -> str:
    state = "online " if device.online else "offline"
    fill = f"{device.fill_pct:3d}%" if device.fill_pct is not None else "  --"
    flags = []
    if device.bin_full:
        flags.append("FULL")
    if device.flooded:
        flags.append("FLOOD")
    if not device.registered:
        flags.append("unregistered")
    if device.coord_fix != "none":
        flags.append(f"coords:{device.coord_fix}")
    position = f"{device.lat:.5f},{device.lon:.5f}" if device.has_position else "no position"
    return f"  {device.id:<24} {state} fill={fill} {position:<22} {' '.join(flags)}"


def _print_view(view: Mapping[str, Device], metrics: FleetMetrics) -> None:
    print(
        f"\n== {metrics.total} devices | {metrics.active_count} active | "
        f"{metrics.full_bin_count} full | {metrics.flood_count} flooded =="
    )
    for device in view.values():
        print(_format_device(device))


def _print_alert(banner: AlertBanner) -> None:
    print(f"!! {banner.raised_at:%H:%M:%S} {banner.message} (dismiss id {banner.banner_id})")


async def _run(args: argparse.Namespace) -> int:
    config = _build_config(args)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    async with EcotrackMonitor(
        config,
        enable_bus=not args.no_bus,
        on_change=_print_view,
        on_alert=_print_alert,
    ) as monitor:
        if args.mute:
            monitor.set_muted(True)
        permission = await monitor.request_notification_permission()
        _LOG.info("Desktop notifications: %s", permission.value)

        if args.logs:
            entries = await monitor.load_logs(args.logs)
            for entry in entries:
                print(f"{entry.arrival:%Y-%m-%d %H:%M:%S} [{entry.ts_kind.value}] {entry.payload}")
            return 0

        await stop.wait()
    return 0


def main() -> int:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())

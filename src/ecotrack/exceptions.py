"""Custom exception hierarchy for ecotrack."""

from __future__ import annotations


class EcotrackError(Exception):
    """Base exception for all ecotrack errors."""


class EcotrackConfigError(EcotrackError):
    """Invalid or missing configuration."""


class EcotrackTransportError(EcotrackError):
    """Transport-level failure (network, non-2xx, invalid JSON, broker down)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        path: str = "",
    ) -> None:
        self.status_code = status_code
        self.path = path
        super().__init__(message)


class EcotrackStoreError(EcotrackTransportError):
    """Remote store request failed or returned an unusable body."""


class EcotrackBusError(EcotrackTransportError):
    """Telemetry bus runtime is unavailable or rejected an operation.

    Publishing while merely *disconnected* is not an error: the runtime
    queues the message and flushes it on reconnect. This is raised only
    when no runtime exists at all (not started, or already stopped).
    """

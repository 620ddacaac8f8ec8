"""Ingestion layer.

This package contains adapters that receive data from the telemetry bus and
the remote store and emit normalized domain objects.
"""

__all__: list[str] = []

"""Ingestion layer.

This package contains the telemetry provider adapter and the helpers that
turn provider payloads into normalized :class:`TelemetrySignal` records.
"""

__all__: list[str] = []

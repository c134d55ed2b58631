"""Observability helpers."""

from kibitz.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_events_decoded,
    record_decode_failure,
    record_generation,
    record_dispatch,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_events_decoded",
    "record_decode_failure",
    "record_generation",
    "record_dispatch",
]

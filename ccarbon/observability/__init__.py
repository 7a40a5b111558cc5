"""Observability helpers."""

from ccarbon.observability.otel import (
    initialize,
    shutdown,
    record_lines,
    record_decode_failure,
    record_tokens,
)

__all__ = [
    "initialize",
    "shutdown",
    "record_lines",
    "record_decode_failure",
    "record_tokens",
]

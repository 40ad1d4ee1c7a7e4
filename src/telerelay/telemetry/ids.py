# src/telerelay/telemetry/ids.py
"""Trace and span id allocation for records the relay emits about itself."""

from opentelemetry.sdk.trace.id_generator import IdGenerator, RandomIdGenerator
from opentelemetry.trace import format_span_id, format_trace_id


class IdAllocator:
    """Hex-encoded W3C trace/span ids from an OpenTelemetry id generator."""

    def __init__(self, generator: IdGenerator | None = None) -> None:
        self._generator = generator if generator is not None else RandomIdGenerator()

    def new_trace_id(self) -> str:
        return format_trace_id(self._generator.generate_trace_id())

    def new_span_id(self) -> str:
        return format_span_id(self._generator.generate_span_id())

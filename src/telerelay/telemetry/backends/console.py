# src/telerelay/telemetry/backends/console.py
"""Console backend.

Writes each encoded OTLP document as one JSON line to stdout (or the
stream supplied in the backend context). Useful as a fallback target
while no collector is reachable, and for local debugging.
"""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, TextIO

import structlog

from telerelay.contracts.errors import BackendError
from telerelay.contracts.results import DeliveryResult

if TYPE_CHECKING:
    from telerelay.contracts.envelope import Envelope
    from telerelay.engine.clock import Clock
    from telerelay.telemetry.otlp.encoder import OtlpEncoder
    from telerelay.telemetry.protocols import BackendContext

logger = structlog.get_logger(__name__)


class ConsoleBackend:
    """Deliver envelopes by printing their OTLP documents."""

    _name = "console"

    def __init__(self) -> None:
        self._stream: TextIO = sys.stdout
        self._encoder: OtlpEncoder | None = None
        self._clock: Clock | None = None

    @property
    def name(self) -> str:
        return self._name

    def configure(self, context: BackendContext) -> None:
        self._encoder = context.encoder
        self._clock = context.clock
        if context.stream is not None:
            self._stream = context.stream

    def deliver(self, envelope: Envelope) -> DeliveryResult:
        if self._encoder is None or self._clock is None:
            raise BackendError(self._name, "deliver() called before configure()")
        start = self._clock.monotonic()
        try:
            document = self._encoder.encode(envelope)
            self._stream.write(document.body.getvalue().decode("utf-8"))
            self._stream.write("\n")
            self._stream.flush()
        except Exception as e:
            logger.warning("console_delivery_failed", kind=envelope.kind.value, error=str(e))
            return DeliveryResult.failed(self._name, str(e))
        return DeliveryResult(
            success=True,
            backend=self._name,
            latency_ms=(self._clock.monotonic() - start) * 1000.0,
        )

    def close(self) -> None:
        # Never close the process's own stdout
        pass

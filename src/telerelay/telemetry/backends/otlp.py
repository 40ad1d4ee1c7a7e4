# src/telerelay/telemetry/backends/otlp.py
"""OTLP/HTTP delivery backend: encoder plus transport."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from telerelay.contracts.errors import BackendError
from telerelay.contracts.results import DeliveryResult
from telerelay.telemetry.transport import OtlpHttpTransport

if TYPE_CHECKING:
    from telerelay.contracts.envelope import Envelope
    from telerelay.core.diagnostics import DiagnosticSink
    from telerelay.telemetry.otlp.encoder import OtlpEncoder
    from telerelay.telemetry.protocols import BackendContext

logger = structlog.get_logger(__name__)


class OtlpBackend:
    """Deliver envelopes to an OpenTelemetry collector over HTTP/JSON.

    Args:
        transport: Optional transport, mainly for tests; otherwise one is
            built at configure time from the collector settings.
    """

    _name = "otlp"

    def __init__(self, transport: OtlpHttpTransport | None = None) -> None:
        self._transport = transport
        self._encoder: OtlpEncoder | None = None
        self._diagnostics: DiagnosticSink | None = None

    @property
    def name(self) -> str:
        return self._name

    def configure(self, context: BackendContext) -> None:
        self._encoder = context.encoder
        self._diagnostics = context.diagnostics
        if self._transport is None:
            config = context.config
            self._transport = OtlpHttpTransport(lambda: config.current().collector, clock=context.clock)

    def deliver(self, envelope: Envelope) -> DeliveryResult:
        if self._encoder is None or self._transport is None:
            raise BackendError(self._name, "deliver() called before configure()")
        try:
            document = self._encoder.encode(envelope)
        except Exception as e:
            # Encoding is retried like any other failure; the attempt cap bounds it
            logger.error("otlp_encode_failed", kind=envelope.kind.value, error=str(e), exc_info=True)
            if self._diagnostics is not None:
                self._diagnostics.record("backends.otlp", f"Encode failed: {e}", error_code="encode_failed")
            return DeliveryResult.failed(self._name, f"encode failed: {e}")
        return DeliveryResult.from_transport(self._name, self._transport.send(document))

    def close(self) -> None:
        if self._transport is not None:
            self._transport.close()

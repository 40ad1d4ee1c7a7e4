# src/telerelay/engine/pipeline.py
"""Producer-facing send path.

submit() is the only entry point instrumented code needs. It never raises:
every outcome (delivered, queued, dropped, failed) comes back as a
SubmitResult.

In async mode the envelope is only enqueued and the delivery worker ships
it later. In sync mode it is delivered inline through the selected
backend; a failed or skipped delivery falls back to the queue so the
envelope is retried. forced_async() pins async mode for the duration of a
block regardless of configuration (the failover orchestrator uses it so
its own transition records never wait on the collector).
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager

import structlog
from sqlalchemy.exc import SQLAlchemyError

from telerelay.contracts.enums import SubmitOutcome
from telerelay.contracts.envelope import Envelope
from telerelay.contracts.results import EnqueueResult, SubmitResult
from telerelay.core.config import ConfigProvider
from telerelay.core.diagnostics import DiagnosticSink, NullDiagnostics
from telerelay.core.store.delivery_log import DeliveryLog
from telerelay.engine.circuit_breaker import CircuitBreaker
from telerelay.engine.clock import DEFAULT_CLOCK, Clock
from telerelay.engine.pulse import PulseController
from telerelay.engine.queue import DurableQueue
from telerelay.telemetry.factory import BackendSelector

logger = structlog.get_logger(__name__)


class TelemetryPipeline:
    """Accepts envelopes from producers and routes them to the queue or a backend."""

    def __init__(
        self,
        queue: DurableQueue,
        backends: BackendSelector,
        delivery_log: DeliveryLog,
        pulse: PulseController,
        config: ConfigProvider,
        *,
        breaker: CircuitBreaker | None = None,
        clock: Clock | None = None,
        diagnostics: DiagnosticSink | None = None,
    ) -> None:
        self._queue = queue
        self._backends = backends
        self._log = delivery_log
        self._pulse = pulse
        self._config = config
        self._breaker = breaker
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._diagnostics: DiagnosticSink = diagnostics if diagnostics is not None else NullDiagnostics()
        self._forced_lock = threading.Lock()
        self._forced_depth = 0

    @property
    def async_mode(self) -> bool:
        with self._forced_lock:
            if self._forced_depth > 0:
                return True
        return self._config.current().pipeline.async_mode

    @contextmanager
    def forced_async(self) -> Iterator[None]:
        """Force async mode inside the block; the prior mode returns on exit."""
        with self._forced_lock:
            self._forced_depth += 1
        try:
            yield
        finally:
            with self._forced_lock:
                self._forced_depth -= 1

    def submit(self, envelope: Envelope, *, gated: bool = True) -> SubmitResult:
        """Route one envelope.

        Args:
            envelope: Span, metric or log to ship
            gated: When False the pulse category toggles, sampling and the
                queue admission limit are bypassed; relay-internal records
                (failover transitions and status) use this so they are
                never dropped.
        """
        try:
            return self._submit(envelope, gated=gated)
        except Exception as e:
            logger.error("submit_failed", kind=envelope.kind.value, error=str(e), exc_info=True)
            self._diagnostics.record("engine.pipeline", f"Submit failed: {e}", error_code="submit_failed")
            return SubmitResult(outcome=SubmitOutcome.FAILED, reason=str(e))

    def _submit(self, envelope: Envelope, *, gated: bool) -> SubmitResult:
        if gated:
            if not self._pulse.allows(envelope.kind):
                return SubmitResult(outcome=SubmitOutcome.DROPPED, reason="pulse_category_disabled")
            if not self._pulse.sample():
                return SubmitResult(outcome=SubmitOutcome.DROPPED, reason="sampled_out")

        if self.async_mode:
            return self._enqueue(envelope, enforce_capacity=gated)

        if self._breaker is not None and self._breaker.is_open():
            return self._enqueue(envelope, reason="circuit_open", enforce_capacity=gated)

        delivery = self._backends.deliver(envelope)
        try:
            self._log.record(envelope.kind, delivery, at=self._clock.now())
        except SQLAlchemyError as e:
            logger.error("delivery_log_write_failed", kind=envelope.kind.value, error=str(e))
        if delivery.success:
            return SubmitResult(outcome=SubmitOutcome.DELIVERED)

        logger.info("sync_delivery_failed", kind=envelope.kind.value, error=delivery.error)
        return self._enqueue(envelope, reason=delivery.error or "delivery_failed", enforce_capacity=gated)

    def _enqueue(self, envelope: Envelope, *, reason: str | None = None, enforce_capacity: bool = True) -> SubmitResult:
        queued: EnqueueResult = self._queue.enqueue(envelope, enforce_capacity=enforce_capacity)
        if queued.accepted:
            return SubmitResult(outcome=SubmitOutcome.QUEUED, reason=reason, item_id=queued.item_id)
        return SubmitResult(outcome=SubmitOutcome.FAILED, reason=queued.error)

# src/telerelay/engine/worker.py
"""Delivery worker: one drain-and-deliver cycle per run_once() call.

A cycle is skipped outright (no claims, no attempt counts touched) when
the pulse level disables queue processing or the circuit breaker is open.
Otherwise the batch controller sizes the drain and each item runs
claim -> decode -> deliver -> record -> resolve sequentially.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog
from sqlalchemy.exc import SQLAlchemyError

from telerelay.contracts.envelope import envelope_from_json
from telerelay.contracts.errors import EnvelopeFormatError
from telerelay.contracts.results import DeliveryResult, QueueItem
from telerelay.core.diagnostics import DiagnosticSink, NullDiagnostics
from telerelay.core.store.delivery_log import DeliveryLog
from telerelay.engine.batch_controller import BatchController
from telerelay.engine.circuit_breaker import CircuitBreaker
from telerelay.engine.clock import DEFAULT_CLOCK, Clock
from telerelay.engine.pulse import PulseController
from telerelay.engine.queue import DurableQueue
from telerelay.telemetry.factory import BackendSelector

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class WorkerCycleResult:
    """Counters for one worker cycle."""

    skipped_reason: str | None = None
    batch_size: int = 0
    drained: int = 0
    delivered: int = 0
    failed: int = 0
    lost_claims: int = 0
    category_skipped: int = 0
    delivered_ids: list[int] = field(default_factory=list)

    @property
    def skipped(self) -> bool:
        return self.skipped_reason is not None


class DeliveryWorker:
    """Drains the durable queue and delivers through the selected backend."""

    def __init__(
        self,
        queue: DurableQueue,
        backends: BackendSelector,
        delivery_log: DeliveryLog,
        breaker: CircuitBreaker,
        batch: BatchController,
        pulse: PulseController,
        *,
        clock: Clock | None = None,
        diagnostics: DiagnosticSink | None = None,
    ) -> None:
        self._queue = queue
        self._backends = backends
        self._log = delivery_log
        self._breaker = breaker
        self._batch = batch
        self._pulse = pulse
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._diagnostics: DiagnosticSink = diagnostics if diagnostics is not None else NullDiagnostics()

    def run_once(self) -> WorkerCycleResult:
        result = WorkerCycleResult()
        if not self._pulse.queue_processing_enabled():
            result.skipped_reason = "pulse_queue_processing_disabled"
            logger.debug("worker_cycle_skipped", reason=result.skipped_reason)
            return result
        if self._breaker.is_open():
            result.skipped_reason = "circuit_open"
            logger.info("worker_cycle_skipped", reason=result.skipped_reason)
            return result

        result.batch_size = self._batch.optimal_batch_size()
        items = self._queue.drain(result.batch_size)
        result.drained = len(items)

        for item in items:
            try:
                self._process(item, result)
            except SQLAlchemyError as e:
                # Item stays claimable once its lease expires; the cap bounds retries
                result.failed += 1
                logger.error("worker_item_store_error", item_id=item.item_id, error=str(e))
                self._diagnostics.record("engine.worker", f"Queue item {item.item_id}: store error {e}", error_code="store_error")

        if items:
            logger.info(
                "worker_cycle_complete",
                batch_size=result.batch_size,
                drained=result.drained,
                delivered=result.delivered,
                failed=result.failed,
                lost_claims=result.lost_claims,
                category_skipped=result.category_skipped,
            )
        return result

    def _process(self, item: QueueItem, result: WorkerCycleResult) -> None:
        if not self._pulse.allows(item.kind):
            # Left untouched for when the category is re-enabled
            result.category_skipped += 1
            return
        if not self._queue.claim(item):
            result.lost_claims += 1
            logger.debug("queue_claim_lost", item_id=item.item_id)
            return

        try:
            envelope = envelope_from_json(item.payload)
        except EnvelopeFormatError as e:
            self._diagnostics.record("engine.worker", f"Queue item {item.item_id}: {e}", error_code="malformed_envelope")
            self._queue.record_failure(item.item_id, str(e))
            result.failed += 1
            return

        delivery: DeliveryResult = self._backends.deliver(envelope)
        try:
            self._log.record(item.kind, delivery, at=self._clock.now(), item_id=item.item_id)
        except SQLAlchemyError as e:
            # The outcome itself must still be resolved below
            logger.error("delivery_log_write_failed", item_id=item.item_id, error=str(e))

        if delivery.success:
            self._queue.mark_processed(item.item_id)
            result.delivered += 1
            result.delivered_ids.append(item.item_id)
            return

        result.failed += 1
        self._queue.record_failure(item.item_id, delivery.error or f"HTTP {delivery.status_code}")
        if item.attempts + 1 >= self._queue.max_attempts:
            logger.warning("queue_item_exhausted", item_id=item.item_id, kind=item.kind.value, error=delivery.error)
            self._diagnostics.record(
                "engine.worker",
                f"Queue item {item.item_id} exhausted its attempts: {delivery.error}",
                error_code="attempts_exhausted",
            )

# src/telerelay/engine/failover.py
"""Failover orchestrator: hands delivery between the primary agent and the local worker.

Normally a separate primary agent ships telemetry (AGENT_PRIMARY) and the
local delivery job stays disabled. Each tick assesses the agent from its
heartbeat, decides whether local delivery should take over, and performs
at most one transition:

    AGENT_PRIMARY  -> LOCAL_FALLBACK   enable delivery.local, persist mode
    LOCAL_FALLBACK -> AGENT_PRIMARY    agent HEALTHY again and no fallback
                                       needed: disable delivery.local

Every transition emits a span and a log record describing it (previous
mode, new mode, trigger reason, queue depth). Those records go through
the send path inside a forced-async window so they only touch the queue.

Ticks are serialized and idempotent: repeated ticks under unchanged
conditions make no further transitions and emit no further transition
records. The persisted mode only ever holds the last value that was
written successfully.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import timedelta

import structlog

from telerelay.contracts.enums import AgentHealth, FailoverReason, ProcessingMode
from telerelay.contracts.envelope import LogEnvelope, SpanEnvelope
from telerelay.contracts.errors import OrchestratorError
from telerelay.core.config import ConfigProvider, FailoverSettings
from telerelay.core.diagnostics import DiagnosticSink, NullDiagnostics
from telerelay.core.store.state import PipelineStateStore
from telerelay.engine.clock import DEFAULT_CLOCK, Clock
from telerelay.engine.health import AgentHealthMonitor, HealthSnapshot
from telerelay.engine.pipeline import TelemetryPipeline
from telerelay.engine.queue import DurableQueue
from telerelay.engine.scheduler import JobScheduler
from telerelay.telemetry.ids import IdAllocator

logger = structlog.get_logger(__name__)

MONITOR_JOB = "failover.monitor"
LOCAL_DELIVERY_JOB = "delivery.local"

STATE_KEY_MODE = "processing.mode"
STATE_KEY_LAST_STATUS = "failover.last_status_at"

_DEFAULT_MODE = ProcessingMode.AGENT_PRIMARY


def decide_fallback(
    settings: FailoverSettings,
    health: AgentHealth,
    queue_depth: int,
) -> tuple[bool, FailoverReason]:
    """Whether local delivery should own the queue, and why."""
    if not settings.enabled:
        return False, FailoverReason.FAILOVER_DISABLED
    if health is AgentHealth.DEAD:
        return True, FailoverReason.AGENT_HEARTBEAT_MISSING
    overloaded = queue_depth > settings.queue_threshold
    if health is AgentHealth.DEGRADED:
        if overloaded:
            return True, FailoverReason.AGENT_DEGRADED_QUEUE_OVERLOAD
        return False, FailoverReason.QUEUE_WITHIN_THRESHOLD
    if health is AgentHealth.UNKNOWN:
        if overloaded:
            return True, FailoverReason.AGENT_UNKNOWN_QUEUE_OVERLOAD
        return False, FailoverReason.QUEUE_WITHIN_THRESHOLD
    return False, FailoverReason.AGENT_HEALTHY


@dataclass(frozen=True, slots=True)
class FailoverTickResult:
    """Outcome of one orchestrator tick."""

    previous_mode: ProcessingMode
    mode: ProcessingMode
    health: AgentHealth
    should_fallback: bool
    reason: FailoverReason
    queue_depth: int
    status_emitted: bool = False

    @property
    def transitioned(self) -> bool:
        return self.previous_mode is not self.mode


class FailoverOrchestrator:
    """Decides and applies processing-mode transitions.

    Args:
        state: Pipeline state (processing mode, status cadence)
        scheduler: Job registry holding the monitor and local delivery jobs
        monitor: Agent heartbeat assessment
        queue: Durable queue (pending depth)
        pipeline: Send path for transition and status records
        config: Settings provider
        clock: Time source
        diagnostics: Sink for orchestration failures
        ids: Trace/span id source for transition records
    """

    def __init__(
        self,
        state: PipelineStateStore,
        scheduler: JobScheduler,
        monitor: AgentHealthMonitor,
        queue: DurableQueue,
        pipeline: TelemetryPipeline,
        config: ConfigProvider,
        *,
        clock: Clock | None = None,
        diagnostics: DiagnosticSink | None = None,
        ids: IdAllocator | None = None,
    ) -> None:
        self._state = state
        self._scheduler = scheduler
        self._monitor = monitor
        self._queue = queue
        self._pipeline = pipeline
        self._config = config
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._diagnostics: DiagnosticSink = diagnostics if diagnostics is not None else NullDiagnostics()
        self._ids = ids if ids is not None else IdAllocator()
        self._lock = threading.Lock()

    def current_mode(self) -> ProcessingMode:
        stored = self._state.get(STATE_KEY_MODE)
        if stored is None:
            return _DEFAULT_MODE
        try:
            return ProcessingMode(stored)
        except ValueError:
            logger.warning("processing_mode_invalid", stored=stored)
            return _DEFAULT_MODE

    def record_agent_heartbeat(
        self,
        *,
        items_planned: int = 0,
        items_processed: int = 0,
        check_interval_seconds: int | None = None,
    ) -> None:
        """Entry point for the primary agent to report it is alive."""
        self._monitor.record_heartbeat(
            items_planned=items_planned,
            items_processed=items_processed,
            check_interval_seconds=check_interval_seconds,
        )

    def ensure_jobs(self) -> None:
        """Create the monitor (enabled) and local delivery (disabled) jobs if missing."""
        settings = self._config.current().failover
        try:
            if not self._scheduler.job_exists(MONITOR_JOB):
                self._scheduler.create_job(
                    MONITOR_JOB,
                    interval_seconds=settings.monitor_interval_seconds,
                    enabled=True,
                    description="Primary agent health check and failover decision",
                )
            if not self._scheduler.job_exists(LOCAL_DELIVERY_JOB):
                self._scheduler.create_job(
                    LOCAL_DELIVERY_JOB,
                    interval_seconds=settings.local_delivery_interval_seconds,
                    enabled=False,
                    description="Local queue delivery while the primary agent is unavailable",
                )
        except Exception as e:
            self._fail("bootstrap", e)

    def tick(self) -> FailoverTickResult:
        """Run one assessment and apply at most one transition.

        Raises:
            OrchestratorError: If a job toggle or the mode write failed.
        """
        with self._lock:
            return self._tick()

    def _tick(self) -> FailoverTickResult:
        settings = self._config.current().failover
        self.ensure_jobs()

        snapshot = self._monitor.assess()
        depth = self._queue.depth()
        should_fallback, reason = decide_fallback(settings, snapshot.health, depth)
        previous = self.current_mode()

        if previous is ProcessingMode.AGENT_PRIMARY and should_fallback:
            self._transition(previous, ProcessingMode.LOCAL_FALLBACK, enable_local=True, reason=reason, depth=depth)
            return FailoverTickResult(
                previous_mode=previous,
                mode=ProcessingMode.LOCAL_FALLBACK,
                health=snapshot.health,
                should_fallback=should_fallback,
                reason=reason,
                queue_depth=depth,
            )

        if previous is ProcessingMode.LOCAL_FALLBACK and not should_fallback and snapshot.health is AgentHealth.HEALTHY:
            self._transition(
                previous,
                ProcessingMode.AGENT_PRIMARY,
                enable_local=False,
                reason=FailoverReason.AGENT_RECOVERED,
                depth=depth,
            )
            return FailoverTickResult(
                previous_mode=previous,
                mode=ProcessingMode.AGENT_PRIMARY,
                health=snapshot.health,
                should_fallback=should_fallback,
                reason=FailoverReason.AGENT_RECOVERED,
                queue_depth=depth,
            )

        emitted = self._maybe_emit_status(settings, previous, snapshot, should_fallback, reason, depth)
        return FailoverTickResult(
            previous_mode=previous,
            mode=previous,
            health=snapshot.health,
            should_fallback=should_fallback,
            reason=reason,
            queue_depth=depth,
            status_emitted=emitted,
        )

    def _transition(
        self,
        previous: ProcessingMode,
        target: ProcessingMode,
        *,
        enable_local: bool,
        reason: FailoverReason,
        depth: int,
    ) -> None:
        with self._pipeline.forced_async():
            try:
                self._scheduler.set_enabled(LOCAL_DELIVERY_JOB, enable_local)
            except Exception as e:
                self._fail("toggle_local_delivery", e)

            try:
                self._state.set(STATE_KEY_MODE, target.value, now=self._clock.now())
            except Exception as e:
                self._revert_toggle(not enable_local)
                self._fail("persist_mode", e)

            logger.warning(
                "processing_mode_changed",
                previous_mode=previous.value,
                mode=target.value,
                reason=reason.value,
                queue_depth=depth,
            )
            self._emit_transition(previous, target, reason, depth)

    def _revert_toggle(self, enabled: bool) -> None:
        try:
            self._scheduler.set_enabled(LOCAL_DELIVERY_JOB, enabled)
        except Exception as e:
            logger.error("local_delivery_revert_failed", enabled=enabled, error=str(e))

    def _fail(self, step: str, error: Exception) -> None:
        logger.error("failover_step_failed", step=step, error=str(error), exc_info=True)
        self._diagnostics.record("engine.failover", f"Failover step {step} failed: {error}", error_code="failover_failed")
        raise OrchestratorError(step, str(error)) from error

    def _emit_transition(
        self,
        previous: ProcessingMode,
        target: ProcessingMode,
        reason: FailoverReason,
        depth: int,
    ) -> None:
        now = self._clock.now().isoformat()
        trace_id = self._ids.new_trace_id()
        span_id = self._ids.new_span_id()
        attributes = {
            "processing.previous_mode": previous.value,
            "processing.mode": target.value,
            "trigger.reason": reason.value,
            "queue.depth": depth,
        }
        span = SpanEnvelope(
            trace_id=trace_id,
            span_id=span_id,
            operation_name="failover.transition",
            start_time=now,
            end_time=now,
            duration_ms=0.0,
            status="OK",
            attributes=attributes,
        )
        log = LogEnvelope(
            severity="WARN",
            message=f"Processing mode changed from {previous.value} to {target.value} ({reason.value})",
            timestamp=now,
            attributes=attributes,
            trace_id=trace_id,
            span_id=span_id,
        )
        for envelope in (span, log):
            result = self._pipeline.submit(envelope, gated=False)
            logger.debug("transition_record_submitted", kind=envelope.kind.value, outcome=result.outcome.value)

    def _maybe_emit_status(
        self,
        settings: FailoverSettings,
        mode: ProcessingMode,
        snapshot: HealthSnapshot,
        should_fallback: bool,
        reason: FailoverReason,
        depth: int,
    ) -> bool:
        now = self._clock.now()
        last = self._state.get_datetime(STATE_KEY_LAST_STATUS)
        if last is not None and now - last < timedelta(minutes=settings.status_interval_minutes):
            return False
        self._state.set_datetime(STATE_KEY_LAST_STATUS, now, now=now)

        attributes = {
            "processing.mode": mode.value,
            "agent.health": snapshot.health.value,
            "agent.missed_runs": snapshot.missed_runs,
            "queue.depth": depth,
            "failover.should_fallback": should_fallback,
            "trigger.reason": reason.value,
        }
        logger.debug("failover_status", **attributes)
        with self._pipeline.forced_async():
            self._pipeline.submit(
                LogEnvelope(
                    severity="DEBUG",
                    message=f"Failover status: mode={mode.value} health={snapshot.health.value}",
                    timestamp=now.isoformat(),
                    attributes=attributes,
                ),
                gated=False,
            )
        return True

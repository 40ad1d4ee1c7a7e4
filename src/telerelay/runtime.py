# src/telerelay/runtime.py
"""Wiring of relay components around one store.

RelayRuntime is the explicit context object every entry point (CLI, an
embedding application, tests) builds once and passes around. Nothing in
the relay keeps module-level session state; every component reads its
settings through the shared ConfigProvider and its runtime state from the
store.
"""

from __future__ import annotations

import random
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Self, TextIO

import structlog

from telerelay.contracts.errors import BackendError
from telerelay.core.config import ConfigProvider, RelaySettings
from telerelay.core.diagnostics import StoreDiagnostics
from telerelay.core.store import ConfigEntryStore, DeliveryLog, HeartbeatStore, PipelineStateStore, RelayDB
from telerelay.engine.batch_controller import BatchController
from telerelay.engine.circuit_breaker import CircuitBreaker
from telerelay.engine.clock import DEFAULT_CLOCK, Clock
from telerelay.engine.failover import LOCAL_DELIVERY_JOB, MONITOR_JOB, FailoverOrchestrator
from telerelay.engine.health import AgentHealthMonitor
from telerelay.engine.pipeline import TelemetryPipeline
from telerelay.engine.pulse import PulseController
from telerelay.engine.queue import DurableQueue
from telerelay.engine.scheduler import JobRunner, StoreJobScheduler
from telerelay.engine.worker import DeliveryWorker
from telerelay.telemetry.factory import BackendSelector, create_backend_selector
from telerelay.telemetry.ids import IdAllocator
from telerelay.telemetry.otlp import MetricClassifier, OtlpEncoder, ResourceInfo, compute_instance_id
from telerelay.telemetry.protocols import BackendContext, DeliveryBackend

logger = structlog.get_logger(__name__)


@dataclass
class RelayRuntime:
    """Every relay component, built against one store and one clock."""

    db: RelayDB
    clock: Clock
    config: ConfigProvider
    state: PipelineStateStore
    config_entries: ConfigEntryStore
    heartbeats: HeartbeatStore
    delivery_log: DeliveryLog
    diagnostics: StoreDiagnostics
    pulse: PulseController
    breaker: CircuitBreaker
    batch: BatchController
    queue: DurableQueue
    backends: BackendSelector
    worker: DeliveryWorker
    pipeline: TelemetryPipeline
    monitor: AgentHealthMonitor
    scheduler: StoreJobScheduler
    orchestrator: FailoverOrchestrator
    _owns_db: bool = True

    @classmethod
    def from_settings(
        cls,
        settings: RelaySettings,
        *,
        db: RelayDB | None = None,
        clock: Clock | None = None,
        backend_plugins: Iterable[Any] = (),
        backend_instances: dict[str, DeliveryBackend] | None = None,
        stream: TextIO | None = None,
        rng: random.Random | None = None,
        ids: IdAllocator | None = None,
    ) -> Self:
        """Build the runtime.

        Args:
            settings: Loaded base settings (stored overrides apply on top)
            db: Existing store; otherwise one is opened from store.url
            clock: Time source (SystemClock by default)
            backend_plugins: Extra pluggy plugins contributing delivery backends
            backend_instances: Pre-built backends keyed by name
            stream: Output stream for the console backend
            rng: Random source for pulse sampling
            ids: Trace/span id source for orchestrator records

        Raises:
            BackendError: If the configured fallback backend is unknown.
        """
        owns_db = db is None
        if db is None:
            db = RelayDB.from_url(settings.store.url)
        clock = clock if clock is not None else DEFAULT_CLOCK

        config_entries = ConfigEntryStore(db)
        config = ConfigProvider(settings, entries=config_entries.entries)
        state = PipelineStateStore(db)
        heartbeats = HeartbeatStore(db)
        delivery_log = DeliveryLog(db)
        diagnostics = StoreDiagnostics(db, clock.now)

        current = config.current()
        resource = ResourceInfo(
            service_name=current.service.name,
            service_version=current.service.version,
            environment=current.service.environment,
            instance_id=compute_instance_id(current.service.name),
            tenant_id=current.tenant.id,
            tenant_name=current.tenant.name,
        )
        encoder = OtlpEncoder(
            resource,
            MetricClassifier(current.metrics.type_overrides),
            diagnostics=diagnostics,
            now=clock.now,
        )
        context = BackendContext(config=config, encoder=encoder, diagnostics=diagnostics, clock=clock, stream=stream)
        try:
            backends = create_backend_selector(context, backend_plugins=backend_plugins, instances=backend_instances)
        except BackendError:
            if owns_db:
                db.close()
            raise

        pulse = PulseController(state, config, clock=clock, rng=rng)
        breaker = CircuitBreaker(state, delivery_log, config, clock=clock)
        batch = BatchController(delivery_log, config, pulse, clock=clock)
        queue = DurableQueue(db, config, pulse=pulse, clock=clock, diagnostics=diagnostics)
        worker = DeliveryWorker(queue, backends, delivery_log, breaker, batch, pulse, clock=clock, diagnostics=diagnostics)
        pipeline = TelemetryPipeline(
            queue, backends, delivery_log, pulse, config, breaker=breaker, clock=clock, diagnostics=diagnostics
        )
        monitor = AgentHealthMonitor(heartbeats, config, clock=clock)
        scheduler = StoreJobScheduler(db, clock=clock)
        orchestrator = FailoverOrchestrator(
            state, scheduler, monitor, queue, pipeline, config, clock=clock, diagnostics=diagnostics, ids=ids
        )
        logger.debug("relay_runtime_built", store=db.engine.url.render_as_string(hide_password=True))
        return cls(
            db=db,
            clock=clock,
            config=config,
            state=state,
            config_entries=config_entries,
            heartbeats=heartbeats,
            delivery_log=delivery_log,
            diagnostics=diagnostics,
            pulse=pulse,
            breaker=breaker,
            batch=batch,
            queue=queue,
            backends=backends,
            worker=worker,
            pipeline=pipeline,
            monitor=monitor,
            scheduler=scheduler,
            orchestrator=orchestrator,
            _owns_db=owns_db,
        )

    def job_runner(self) -> JobRunner:
        """A runner with the monitor and local delivery jobs registered."""
        self.orchestrator.ensure_jobs()
        runner = JobRunner(self.scheduler, clock=self.clock, diagnostics=self.diagnostics)
        runner.register(MONITOR_JOB, self.orchestrator.tick)
        runner.register(LOCAL_DELIVERY_JOB, self.worker.run_once, interval_scale=self.pulse.scale_interval)
        return runner

    def close(self) -> None:
        self.backends.close()
        if self._owns_db:
            self.db.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

# src/telerelay/engine/health.py
"""Primary agent health assessment.

Classification, in order:
    UNKNOWN   no heartbeat has ever been recorded
    DEAD      floor((now - last heartbeat) / check interval) >= max missed runs
    DEGRADED  processed / planned < degraded ratio (nothing planned counts as 1.0)
    HEALTHY   otherwise
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime

import structlog

from telerelay.contracts.enums import AgentHealth
from telerelay.core.config import ConfigProvider
from telerelay.core.store.heartbeats import AgentHeartbeat, HeartbeatStore
from telerelay.engine.clock import DEFAULT_CLOCK, Clock

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class HealthSnapshot:
    """Agent health and the facts it was derived from."""

    health: AgentHealth
    heartbeat: AgentHeartbeat | None
    missed_runs: int
    processed_ratio: float | None
    check_interval_seconds: int


def processed_ratio(planned: int, processed: int) -> float:
    if planned <= 0:
        return 1.0
    return processed / planned


def assess(
    heartbeat: AgentHeartbeat | None,
    *,
    now: datetime,
    default_interval_seconds: int,
    max_missed_runs: int,
    degraded_ratio: float,
) -> HealthSnapshot:
    """Classify agent health from its latest heartbeat."""
    if heartbeat is None:
        return HealthSnapshot(
            health=AgentHealth.UNKNOWN,
            heartbeat=None,
            missed_runs=0,
            processed_ratio=None,
            check_interval_seconds=default_interval_seconds,
        )

    interval = heartbeat.check_interval_seconds or default_interval_seconds
    elapsed = max(0.0, (now - heartbeat.last_heartbeat).total_seconds())
    missed = math.floor(elapsed / interval)
    ratio = processed_ratio(heartbeat.items_planned, heartbeat.items_processed)

    if missed >= max_missed_runs:
        health = AgentHealth.DEAD
    elif ratio < degraded_ratio:
        health = AgentHealth.DEGRADED
    else:
        health = AgentHealth.HEALTHY
    return HealthSnapshot(
        health=health,
        heartbeat=heartbeat,
        missed_runs=missed,
        processed_ratio=ratio,
        check_interval_seconds=interval,
    )


class AgentHealthMonitor:
    """Records heartbeats for the primary agent and classifies its health."""

    def __init__(self, heartbeats: HeartbeatStore, config: ConfigProvider, *, clock: Clock | None = None) -> None:
        self._heartbeats = heartbeats
        self._config = config
        self._clock = clock if clock is not None else DEFAULT_CLOCK

    def record_heartbeat(
        self,
        *,
        items_planned: int = 0,
        items_processed: int = 0,
        check_interval_seconds: int | None = None,
        agent_name: str | None = None,
    ) -> None:
        settings = self._config.current().failover
        name = agent_name or settings.agent_name
        self._heartbeats.record(
            name,
            at=self._clock.now(),
            check_interval_seconds=check_interval_seconds,
            items_planned=items_planned,
            items_processed=items_processed,
        )
        logger.debug("agent_heartbeat_recorded", agent=name, planned=items_planned, processed=items_processed)

    def assess(self) -> HealthSnapshot:
        settings = self._config.current().failover
        return assess(
            self._heartbeats.latest(settings.agent_name),
            now=self._clock.now(),
            default_interval_seconds=settings.check_interval_seconds,
            max_missed_runs=settings.max_missed_runs,
            degraded_ratio=settings.degraded_ratio,
        )

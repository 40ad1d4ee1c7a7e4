# src/telerelay/engine/circuit_breaker.py
"""Circuit breaker over recent delivery outcomes.

States:
    CLOSED: Normal operation, the worker delivers
    OPEN: Collector considered unhealthy, worker cycles are skipped
    HALF_OPEN: Probing; the worker delivers at full volume while outcomes
        since entering HALF_OPEN decide between CLOSED and OPEN

Transitions (evaluated lazily on every query):
    CLOSED -> OPEN       attempts in window >= min_attempts and error rate > threshold
    OPEN -> HALF_OPEN    recovery window elapsed since opening
    HALF_OPEN -> CLOSED  >= half_open_samples since entering and error rate <= threshold / 2
    HALF_OPEN -> OPEN    >= half_open_samples since entering and error rate > threshold / 2

State and the time of the last transition live in the pipeline state table,
and outcomes come from the delivery log, so every relay process sharing a
store sees the same circuit.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog

from telerelay.contracts.enums import CircuitState
from telerelay.core.config import CircuitBreakerSettings, ConfigProvider
from telerelay.core.store.delivery_log import DeliveryLog, DeliveryStats
from telerelay.core.store.state import PipelineStateStore
from telerelay.engine.clock import DEFAULT_CLOCK, Clock

logger = structlog.get_logger(__name__)

STATE_KEY = "circuit.state"
CHANGED_AT_KEY = "circuit.changed_at"


@dataclass(frozen=True, slots=True)
class CircuitSnapshot:
    """Circuit state plus the statistics it was decided from."""

    state: CircuitState
    changed_at: datetime | None
    window: DeliveryStats
    since_transition: DeliveryStats | None


class CircuitBreaker:
    """Persisted circuit breaker driven by the delivery log."""

    def __init__(
        self,
        state: PipelineStateStore,
        delivery_log: DeliveryLog,
        config: ConfigProvider,
        *,
        clock: Clock | None = None,
    ) -> None:
        self._state = state
        self._log = delivery_log
        self._config = config
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._lock = threading.RLock()

    def _load(self) -> tuple[CircuitState, datetime | None]:
        raw = self._state.get(STATE_KEY)
        try:
            state = CircuitState(raw) if raw is not None else CircuitState.CLOSED
        except ValueError:
            logger.warning("circuit_state_invalid", stored=raw)
            state = CircuitState.CLOSED
        return state, self._state.get_datetime(CHANGED_AT_KEY)

    def _transition(self, previous: CircuitState, new: CircuitState, now: datetime, **context: object) -> CircuitState:
        self._state.set(STATE_KEY, new.value, now=now)
        self._state.set_datetime(CHANGED_AT_KEY, now, now=now)
        log = logger.warning if new is CircuitState.OPEN else logger.info
        log("circuit_transition", previous=previous.value, state=new.value, **context)
        return new

    def evaluate(self) -> CircuitState:
        """Apply any due transition and return the resulting state."""
        with self._lock:
            settings = self._config.current().circuit_breaker
            if not settings.enabled:
                return CircuitState.CLOSED
            state, changed_at = self._load()
            now = self._clock.now()

            if state is CircuitState.CLOSED:
                stats = self._log.stats_since(now - timedelta(seconds=settings.window_seconds))
                if stats.attempts >= settings.min_attempts and stats.error_rate > settings.error_threshold:
                    return self._transition(
                        state,
                        CircuitState.OPEN,
                        now,
                        attempts=stats.attempts,
                        error_rate=round(stats.error_rate, 4),
                    )
                return state

            if state is CircuitState.OPEN:
                recovery = timedelta(minutes=settings.recovery_minutes)
                if changed_at is None or now - changed_at >= recovery:
                    return self._transition(state, CircuitState.HALF_OPEN, now)
                return state

            return self._settle_half_open(settings, changed_at, now)

    def _settle_half_open(
        self,
        settings: CircuitBreakerSettings,
        changed_at: datetime | None,
        now: datetime,
    ) -> CircuitState:
        since = changed_at if changed_at is not None else now
        stats = self._log.stats_since(since)
        if stats.attempts < settings.half_open_samples:
            return CircuitState.HALF_OPEN
        probe_threshold = settings.error_threshold / 2
        target = CircuitState.CLOSED if stats.error_rate <= probe_threshold else CircuitState.OPEN
        return self._transition(
            CircuitState.HALF_OPEN,
            target,
            now,
            samples=stats.attempts,
            error_rate=round(stats.error_rate, 4),
        )

    def is_open(self) -> bool:
        """The worker's single pre-batch query."""
        return self.evaluate() is CircuitState.OPEN

    def snapshot(self) -> CircuitSnapshot:
        with self._lock:
            state = self.evaluate()
            _, changed_at = self._load()
            settings = self._config.current().circuit_breaker
            now = self._clock.now()
            window = self._log.stats_since(now - timedelta(seconds=settings.window_seconds))
            since = self._log.stats_since(changed_at) if changed_at is not None else None
            return CircuitSnapshot(state=state, changed_at=changed_at, window=window, since_transition=since)

    def reset(self) -> None:
        """Force CLOSED (operator action)."""
        with self._lock:
            previous, _ = self._load()
            self._transition(previous, CircuitState.CLOSED, self._clock.now(), reason="reset")

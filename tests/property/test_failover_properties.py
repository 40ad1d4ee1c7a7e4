# tests/property/test_failover_properties.py
"""Property-based tests for circuit breaker and failover decisions.

Each circuit example builds its own in-memory store; hypothesis does not
reset function-scoped fixtures between examples.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from hypothesis import given
from hypothesis import strategies as st

from telerelay.contracts.enums import AgentHealth, CircuitState, EnvelopeKind, FailoverReason
from telerelay.contracts.results import DeliveryResult
from telerelay.core.config import ConfigProvider, FailoverSettings
from telerelay.core.store import AgentHeartbeat, DeliveryLog, PipelineStateStore, RelayDB
from telerelay.engine.circuit_breaker import CircuitBreaker
from telerelay.engine.clock import MockClock
from telerelay.engine.failover import decide_fallback
from telerelay.engine.health import assess
from tests.conftest import make_settings


def _breaker_after(successes: int, failures: int, *, half_open: bool) -> CircuitState:
    clock = MockClock()
    with RelayDB.in_memory() as db:
        log = DeliveryLog(db)
        breaker = CircuitBreaker(PipelineStateStore(db), log, ConfigProvider(make_settings()), clock=clock)
        if half_open:
            for _ in range(60):
                log.record(EnvelopeKind.SPAN, DeliveryResult.failed("otlp", "HTTP 503"), at=clock.now())
            assert breaker.evaluate() is CircuitState.OPEN
            clock.advance(300)
            assert breaker.evaluate() is CircuitState.HALF_OPEN
        for _ in range(successes):
            log.record(EnvelopeKind.SPAN, DeliveryResult(success=True, backend="otlp"), at=clock.now())
        for _ in range(failures):
            log.record(EnvelopeKind.SPAN, DeliveryResult.failed("otlp", "HTTP 503"), at=clock.now())
        return breaker.evaluate()


class TestCircuitTransitions:
    @given(successes=st.integers(min_value=0, max_value=80), failures=st.integers(min_value=0, max_value=80))
    def test_closed_opens_exactly_above_threshold(self, successes: int, failures: int) -> None:
        total = successes + failures
        should_open = total >= 50 and failures / total > 0.5
        expected = CircuitState.OPEN if should_open else CircuitState.CLOSED
        assert _breaker_after(successes, failures, half_open=False) is expected

    @given(successes=st.integers(min_value=0, max_value=20), failures=st.integers(min_value=0, max_value=20))
    def test_half_open_settles_on_probe_rate(self, successes: int, failures: int) -> None:
        total = successes + failures
        if total < 10:
            expected = CircuitState.HALF_OPEN
        elif failures / total <= 0.25:
            expected = CircuitState.CLOSED
        else:
            expected = CircuitState.OPEN
        assert _breaker_after(successes, failures, half_open=True) is expected


class TestFailoverDecision:
    @given(
        enabled=st.booleans(),
        health=st.sampled_from(AgentHealth),
        depth=st.integers(min_value=0, max_value=5000),
        threshold=st.integers(min_value=0, max_value=5000),
    )
    def test_fallback_needs_dead_agent_or_overload(self, enabled: bool, health: AgentHealth, depth: int, threshold: int) -> None:
        settings = FailoverSettings(enabled=enabled, queue_threshold=threshold)

        should_fallback, reason = decide_fallback(settings, health, depth)

        if should_fallback:
            assert enabled
            assert health is AgentHealth.DEAD or (health is not AgentHealth.HEALTHY and depth > threshold)
        if health is AgentHealth.HEALTHY:
            assert should_fallback is False
        if not enabled:
            assert reason is FailoverReason.FAILOVER_DISABLED

    @given(
        older=st.integers(min_value=0, max_value=100_000),
        extra=st.integers(min_value=0, max_value=100_000),
        interval=st.integers(min_value=1, max_value=3600),
    )
    def test_missed_runs_grow_with_silence(self, older: int, extra: int, interval: int) -> None:
        now = datetime(2024, 6, 1, tzinfo=UTC)

        def missed(age: int) -> int:
            heartbeat = AgentHeartbeat("primary-agent", now - timedelta(seconds=age), interval, 0, 0)
            return assess(heartbeat, now=now, default_interval_seconds=60, max_missed_runs=3, degraded_ratio=0.7).missed_runs

        assert missed(older) <= missed(older + extra)

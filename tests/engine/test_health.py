# tests/engine/test_health.py
"""Tests for agent health classification."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from telerelay.contracts.enums import AgentHealth
from telerelay.core.config import ConfigProvider
from telerelay.core.store import AgentHeartbeat, HeartbeatStore, RelayDB
from telerelay.engine.clock import MockClock
from telerelay.engine.health import AgentHealthMonitor, assess, processed_ratio

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)


def _heartbeat(age_seconds: float, *, interval: int | None = 60, planned: int = 0, processed: int = 0) -> AgentHeartbeat:
    return AgentHeartbeat(
        agent_name="primary-agent",
        last_heartbeat=NOW - timedelta(seconds=age_seconds),
        check_interval_seconds=interval,
        items_planned=planned,
        items_processed=processed,
    )


def _assess(heartbeat: AgentHeartbeat | None) -> AgentHealth:
    return assess(heartbeat, now=NOW, default_interval_seconds=60, max_missed_runs=3, degraded_ratio=0.7).health


class TestAssess:
    def test_no_heartbeat_is_unknown(self) -> None:
        snapshot = assess(None, now=NOW, default_interval_seconds=60, max_missed_runs=3, degraded_ratio=0.7)
        assert snapshot.health is AgentHealth.UNKNOWN
        assert snapshot.processed_ratio is None

    @pytest.mark.parametrize(
        ("age", "expected"),
        [
            (0, AgentHealth.HEALTHY),
            (179.9, AgentHealth.HEALTHY),
            (180, AgentHealth.DEAD),
            (3600, AgentHealth.DEAD),
        ],
    )
    def test_missed_runs(self, age: float, expected: AgentHealth) -> None:
        assert _assess(_heartbeat(age)) is expected

    def test_missed_run_count(self) -> None:
        snapshot = assess(_heartbeat(150), now=NOW, default_interval_seconds=60, max_missed_runs=3, degraded_ratio=0.7)
        assert snapshot.missed_runs == 2

    def test_agent_interval_overrides_default(self) -> None:
        assert _assess(_heartbeat(200, interval=120)) is AgentHealth.HEALTHY
        assert _assess(_heartbeat(200, interval=None)) is AgentHealth.DEAD

    def test_future_heartbeat_counts_as_fresh(self) -> None:
        assert _assess(_heartbeat(-30)) is AgentHealth.HEALTHY

    @pytest.mark.parametrize(
        ("planned", "processed", "expected"),
        [
            (0, 0, AgentHealth.HEALTHY),
            (100, 70, AgentHealth.HEALTHY),
            (100, 69, AgentHealth.DEGRADED),
            (100, 0, AgentHealth.DEGRADED),
        ],
    )
    def test_processed_ratio(self, planned: int, processed: int, expected: AgentHealth) -> None:
        assert _assess(_heartbeat(10, planned=planned, processed=processed)) is expected

    def test_dead_wins_over_degraded(self) -> None:
        assert _assess(_heartbeat(600, planned=100, processed=0)) is AgentHealth.DEAD

    def test_ratio_with_nothing_planned(self) -> None:
        assert processed_ratio(0, 5) == 1.0
        assert processed_ratio(4, 1) == 0.25


class TestAgentHealthMonitor:
    @pytest.fixture
    def monitor(self, db: RelayDB, config: ConfigProvider, clock: MockClock) -> AgentHealthMonitor:
        return AgentHealthMonitor(HeartbeatStore(db), config, clock=clock)

    def test_unknown_until_first_heartbeat(self, monitor: AgentHealthMonitor) -> None:
        assert monitor.assess().health is AgentHealth.UNKNOWN

    def test_heartbeat_then_silence(self, monitor: AgentHealthMonitor, clock: MockClock) -> None:
        monitor.record_heartbeat(items_planned=10, items_processed=10)
        assert monitor.assess().health is AgentHealth.HEALTHY

        clock.advance(180)
        snapshot = monitor.assess()
        assert snapshot.health is AgentHealth.DEAD
        assert snapshot.missed_runs == 3

    def test_heartbeat_overwrites(self, monitor: AgentHealthMonitor, clock: MockClock) -> None:
        monitor.record_heartbeat(items_planned=10, items_processed=1)
        assert monitor.assess().health is AgentHealth.DEGRADED

        clock.advance(30)
        monitor.record_heartbeat(items_planned=10, items_processed=9)
        snapshot = monitor.assess()
        assert snapshot.health is AgentHealth.HEALTHY
        assert snapshot.heartbeat is not None
        assert snapshot.heartbeat.last_heartbeat == clock.now()

    def test_other_agents_ignored(self, monitor: AgentHealthMonitor) -> None:
        monitor.record_heartbeat(agent_name="someone-else")
        assert monitor.assess().health is AgentHealth.UNKNOWN

    def test_reported_interval_used(self, monitor: AgentHealthMonitor, clock: MockClock) -> None:
        monitor.record_heartbeat(check_interval_seconds=300)
        clock.advance(600)
        assert monitor.assess().health is AgentHealth.HEALTHY

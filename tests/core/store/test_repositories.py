# tests/core/store/test_repositories.py
"""Tests for the store repositories: state, config entries, heartbeats, delivery log."""

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy import text

from telerelay.contracts.enums import EnvelopeKind
from telerelay.contracts.errors import SchemaCompatibilityError
from telerelay.contracts.results import DeliveryResult
from telerelay.core.store import ConfigEntryStore, DeliveryLog, HeartbeatStore, PipelineStateStore, RelayDB, as_utc

T0 = datetime(2024, 1, 1, tzinfo=UTC)


class TestRelayDB:
    def test_file_store_creates_tables(self, tmp_path: Path) -> None:
        db = RelayDB.from_url(f"sqlite:///{tmp_path / 'relay.db'}")
        try:
            with db.connection() as conn:
                tables = {row[0] for row in conn.execute(text("SELECT name FROM sqlite_master WHERE type='table'"))}
            assert {"queue_items", "delivery_attempts", "diagnostics", "pipeline_state", "scheduled_jobs"} <= tables
        finally:
            db.close()

    def test_sqlite_pragmas(self, tmp_path: Path) -> None:
        db = RelayDB.from_url(f"sqlite:///{tmp_path / 'relay.db'}")
        try:
            with db.connection() as conn:
                assert conn.execute(text("PRAGMA journal_mode")).scalar() == "wal"
                assert conn.execute(text("PRAGMA busy_timeout")).scalar() == 5000
        finally:
            db.close()

    def test_outdated_schema_rejected(self, tmp_path: Path) -> None:
        """A store whose queue table predates leases is refused."""
        path = tmp_path / "old.db"
        old = RelayDB.from_url(f"sqlite:///{path}", create_tables=False)
        with old.connection() as conn:
            conn.execute(text("CREATE TABLE queue_items (item_id INTEGER PRIMARY KEY, payload TEXT)"))
        old.close()

        with pytest.raises(SchemaCompatibilityError, match=r"queue_items\.lease_until"):
            RelayDB.from_url(f"sqlite:///{path}")

    def test_closed_engine_unavailable(self) -> None:
        db = RelayDB.in_memory()
        db.close()
        with pytest.raises(RuntimeError):
            _ = db.engine

    def test_as_utc(self) -> None:
        naive = datetime(2024, 1, 1, 12, 0)
        assert as_utc(naive) == datetime(2024, 1, 1, 12, 0, tzinfo=UTC)


class TestPipelineStateStore:
    def test_get_missing(self, db: RelayDB) -> None:
        assert PipelineStateStore(db).get("processing.mode") is None

    def test_set_then_update(self, db: RelayDB) -> None:
        state = PipelineStateStore(db)
        state.set("processing.mode", "agent_primary", now=T0)
        state.set("processing.mode", "local_fallback", now=T0)
        assert state.get("processing.mode") == "local_fallback"
        assert state.all() == {"processing.mode": "local_fallback"}

    def test_datetime_round_trip(self, db: RelayDB) -> None:
        state = PipelineStateStore(db)
        moment = T0 + timedelta(minutes=3, microseconds=5)
        state.set_datetime("failover.last_status_at", moment, now=T0)
        assert state.get_datetime("failover.last_status_at") == moment


class TestConfigEntryStore:
    def test_set_list_delete(self, db: RelayDB) -> None:
        entries = ConfigEntryStore(db)
        entries.set("failover.queue_threshold", "10", now=T0, description="test")
        entries.set("failover.queue_threshold", "20", now=T0)
        assert entries.entries() == {"failover.queue_threshold": "20"}
        assert entries.delete("failover.queue_threshold") is True
        assert entries.delete("failover.queue_threshold") is False
        assert entries.entries() == {}


class TestHeartbeatStore:
    def test_latest_missing(self, db: RelayDB) -> None:
        assert HeartbeatStore(db).latest("primary-agent") is None

    def test_record_overwrites(self, db: RelayDB) -> None:
        store = HeartbeatStore(db)
        store.record("primary-agent", at=T0, items_planned=10, items_processed=4)
        store.record("primary-agent", at=T0 + timedelta(seconds=60), check_interval_seconds=30, items_planned=10, items_processed=9)

        beat = store.latest("primary-agent")
        assert beat is not None
        assert beat.last_heartbeat == T0 + timedelta(seconds=60)
        assert beat.check_interval_seconds == 30
        assert (beat.items_planned, beat.items_processed) == (10, 9)


class TestDeliveryLog:
    def _ok(self, latency: float) -> DeliveryResult:
        return DeliveryResult(success=True, backend="otlp", latency_ms=latency, status_code=200)

    def test_empty_window(self, db: RelayDB) -> None:
        stats = DeliveryLog(db).stats_since(T0)
        assert stats.attempts == 0
        assert stats.error_rate == 0.0
        assert stats.avg_latency_ms is None

    def test_window_aggregates(self, db: RelayDB) -> None:
        log = DeliveryLog(db)
        log.record(EnvelopeKind.SPAN, self._ok(100.0), at=T0 - timedelta(minutes=10))
        log.record(EnvelopeKind.SPAN, self._ok(100.0), at=T0)
        log.record(EnvelopeKind.LOG, DeliveryResult.failed("otlp", "timeout: read"), at=T0 + timedelta(seconds=1))
        log.record(EnvelopeKind.METRIC, self._ok(200.0), at=T0 + timedelta(seconds=2))

        stats = log.stats_since(T0)
        assert stats.attempts == 3
        assert stats.failures == 1
        assert stats.error_rate == pytest.approx(1 / 3)
        assert stats.avg_latency_ms == pytest.approx(100.0)

    def test_purge_before(self, db: RelayDB) -> None:
        log = DeliveryLog(db)
        log.record(EnvelopeKind.SPAN, self._ok(1.0), at=T0)
        log.record(EnvelopeKind.SPAN, self._ok(1.0), at=T0 + timedelta(days=2))
        assert log.purge_before(T0 + timedelta(days=1)) == 1
        assert log.stats_since(T0 - timedelta(days=1)).attempts == 1

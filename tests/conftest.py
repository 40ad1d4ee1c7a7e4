# tests/conftest.py
"""Shared test fixtures and helpers.

Fixtures build relay components against an in-memory store and a
MockClock, so every time window (circuit breaker, batch lookback,
heartbeat age, claim lease) is driven explicitly by the test.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/
"""

from __future__ import annotations

import logging
import os
import random
from collections.abc import Callable, Iterator
from typing import Any

import pytest
import structlog
from hypothesis import Phase, Verbosity, settings

from telerelay.contracts.envelope import Envelope, LogEnvelope, MetricEnvelope, SpanEnvelope
from telerelay.contracts.results import DeliveryResult
from telerelay.core.config import ConfigProvider, RelaySettings
from telerelay.core.store import ConfigEntryStore, RelayDB
from telerelay.engine.clock import MockClock
from telerelay.runtime import RelayRuntime
from telerelay.telemetry.protocols import BackendContext

# =============================================================================
# Hypothesis Configuration
# =============================================================================

settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


# =============================================================================
# Settings helpers
# =============================================================================


def make_settings(**sections: dict[str, Any]) -> RelaySettings:
    """RelaySettings with the given sections overridden.

    Example:
        make_settings(queue={"max_attempts": 3}, failover={"enabled": False})
    """
    return RelaySettings.model_validate(sections)


# =============================================================================
# Envelope builders
# =============================================================================


def make_span(name: str = "op", **overrides: Any) -> SpanEnvelope:
    fields: dict[str, Any] = {
        "trace_id": "4bf92f3577b34da6a3ce929d0e0e4736",
        "span_id": "00f067aa0ba902b7",
        "operation_name": name,
        "start_time": "2024-01-01T00:00:00.000Z",
        "end_time": "2024-01-01T00:00:00.250Z",
        "duration_ms": 250.0,
        "status": "OK",
    }
    fields.update(overrides)
    return SpanEnvelope(**fields)


def make_metric(name: str = "queue.depth", value: float = 1.0, **overrides: Any) -> MetricEnvelope:
    fields: dict[str, Any] = {"name": name, "value": value, "timestamp": "2024-01-01T00:00:00Z"}
    fields.update(overrides)
    return MetricEnvelope(**fields)


def make_log(message: str = "hello", severity: str = "INFO", **overrides: Any) -> LogEnvelope:
    fields: dict[str, Any] = {"severity": severity, "message": message, "timestamp": "2024-01-01T00:00:00Z"}
    fields.update(overrides)
    return LogEnvelope(**fields)


# =============================================================================
# Test doubles
# =============================================================================


class FixedRandom(random.Random):
    """Random source whose every draw returns the same value."""

    def __init__(self, value: float) -> None:
        super().__init__(0)
        self.value = value

    def random(self) -> float:
        return self.value


class RecordingBackend:
    """Delivery backend that records envelopes instead of sending them.

    Outcomes are scripted through ``outcome``: a callable receiving the
    envelope and returning (success, error). The default always succeeds.
    """

    _name = "recording"

    def __init__(self, outcome: Callable[[Envelope], tuple[bool, str | None]] | None = None) -> None:
        self.delivered: list[Envelope] = []
        self.attempted: list[Envelope] = []
        self.outcome = outcome if outcome is not None else (lambda envelope: (True, None))
        self.configured = False
        self.closed = False

    @property
    def name(self) -> str:
        return self._name

    def configure(self, context: BackendContext) -> None:
        self.configured = True

    def deliver(self, envelope: Envelope) -> DeliveryResult:
        self.attempted.append(envelope)
        success, error = self.outcome(envelope)
        if success:
            self.delivered.append(envelope)
            return DeliveryResult(success=True, backend=self._name, latency_ms=10.0, status_code=200)
        return DeliveryResult(success=False, backend=self._name, latency_ms=10.0, status_code=503, error=error)

    def close(self) -> None:
        self.closed = True

    def fail_always(self, error: str = "HTTP 503: unavailable") -> None:
        self.outcome = lambda envelope: (False, error)

    def succeed_always(self) -> None:
        self.outcome = lambda envelope: (True, None)


class RecordingDiagnostics:
    """Diagnostic sink that keeps records in memory."""

    def __init__(self) -> None:
        self.records: list[dict[str, Any]] = []

    def record(
        self,
        module: str,
        message: str,
        *,
        error_code: str | None = None,
        trace_id: str | None = None,
        span_id: str | None = None,
    ) -> None:
        self.records.append({"module": module, "message": message, "error_code": error_code})

    def codes(self) -> list[str | None]:
        return [r["error_code"] for r in self.records]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def restore_logging() -> Iterator[None]:
    """configure_logging replaces root handlers; put them back after each test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
    structlog.reset_defaults()


@pytest.fixture
def clock() -> MockClock:
    return MockClock()


@pytest.fixture
def db() -> Iterator[RelayDB]:
    database = RelayDB.in_memory()
    yield database
    database.close()


@pytest.fixture
def relay_settings() -> RelaySettings:
    return make_settings(failover={"fallback_backend": "recording"})


@pytest.fixture
def config(db: RelayDB, relay_settings: RelaySettings) -> ConfigProvider:
    """Provider reading overrides from the test store."""
    return ConfigProvider(relay_settings, entries=ConfigEntryStore(db).entries)


@pytest.fixture
def backend() -> RecordingBackend:
    return RecordingBackend()


@pytest.fixture
def runtime(db: RelayDB, clock: MockClock, relay_settings: RelaySettings, backend: RecordingBackend) -> Iterator[RelayRuntime]:
    """Fully wired relay over the in-memory store, delivering to a RecordingBackend."""
    rt = RelayRuntime.from_settings(relay_settings, db=db, clock=clock, backend_instances={"recording": backend})
    yield rt
    rt.close()

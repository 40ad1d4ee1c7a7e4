# tests/telemetry/test_factory.py
"""Tests for backend discovery (pluggy) and runtime selection."""

from __future__ import annotations

import io

import pytest

from telerelay.contracts.errors import BackendError
from telerelay.core.config import ConfigProvider
from telerelay.core.diagnostics import DiagnosticSink, NullDiagnostics
from telerelay.engine.clock import MockClock
from telerelay.telemetry.backends import ConsoleBackend, OtlpBackend
from telerelay.telemetry.factory import BackendSelector, create_backend_selector, discover_backend_registry
from telerelay.telemetry.hookspecs import hookimpl
from telerelay.telemetry.otlp import OtlpEncoder, ResourceInfo
from telerelay.telemetry.protocols import BackendContext
from tests.conftest import RecordingBackend, RecordingDiagnostics, make_log, make_settings


class _RecordingPlugin:
    @hookimpl
    def telerelay_get_backends(self) -> list[type]:
        return [RecordingBackend]


class _DuplicatePlugin:
    @hookimpl
    def telerelay_get_backends(self) -> list[type]:
        class AnotherConsole(ConsoleBackend):
            pass

        return [AnotherConsole]


def _context(
    clock: MockClock,
    entries: dict[str, str] | None = None,
    *,
    diagnostics: DiagnosticSink | None = None,
    **failover: object,
) -> BackendContext:
    settings = make_settings(failover=dict(failover))
    overrides = entries if entries is not None else {}
    resource = ResourceInfo(service_name="svc", service_version="1", environment="test", instance_id="i")
    return BackendContext(
        config=ConfigProvider(settings, entries=lambda: overrides),
        encoder=OtlpEncoder(resource, now=clock.now),
        diagnostics=diagnostics if diagnostics is not None else NullDiagnostics(),
        clock=clock,
        stream=io.StringIO(),
    )


class TestDiscovery:
    def test_builtin_backends(self) -> None:
        registry = discover_backend_registry()
        assert registry == {"otlp": OtlpBackend, "console": ConsoleBackend}

    def test_extra_plugin(self) -> None:
        registry = discover_backend_registry([_RecordingPlugin()])
        assert registry["recording"] is RecordingBackend

    def test_duplicate_name_rejected(self) -> None:
        with pytest.raises(BackendError, match="Duplicate backend name 'console'"):
            discover_backend_registry([_DuplicatePlugin()])


class TestBackendSelector:
    def test_unknown_configured_backend_fails_setup(self, clock: MockClock) -> None:
        with pytest.raises(BackendError, match="vendorx"):
            create_backend_selector(_context(clock, fallback_backend="vendorx"))

    def test_current_follows_setting(self, clock: MockClock) -> None:
        entries: dict[str, str] = {}
        selector = create_backend_selector(_context(clock, entries), backend_plugins=[_RecordingPlugin()])
        assert isinstance(selector.current(), OtlpBackend)

        entries["failover.fallback_backend"] = "recording"
        backend = selector.current()
        assert isinstance(backend, RecordingBackend)
        assert backend.configured is True

    def test_instances_are_reused(self, clock: MockClock) -> None:
        selector = create_backend_selector(_context(clock, fallback_backend="console"))
        assert selector.get("console") is selector.get("console")

    def test_unknown_runtime_selector_falls_back_to_otlp(self, clock: MockClock) -> None:
        """A bad hot-reloaded selector is logged and OTLP is used."""
        entries: dict[str, str] = {}
        selector = create_backend_selector(_context(clock, entries))
        entries["failover.fallback_backend"] = "nonexistent"
        assert isinstance(selector.current(), OtlpBackend)

    def test_get_unknown(self, clock: MockClock) -> None:
        selector = BackendSelector(_context(clock), discover_backend_registry())
        with pytest.raises(BackendError, match="Unknown backend"):
            selector.get("nope")

    def test_prebuilt_instances(self, clock: MockClock) -> None:
        recording = RecordingBackend()
        selector = create_backend_selector(_context(clock, fallback_backend="recording"), instances={"recording": recording})
        assert selector.current() is recording
        assert "recording" in selector.available

        selector.close()
        assert recording.closed is True

    def test_deliver_uses_current_backend(self, clock: MockClock) -> None:
        recording = RecordingBackend()
        selector = create_backend_selector(_context(clock, fallback_backend="recording"), instances={"recording": recording})

        result = selector.deliver(make_log())

        assert result.success is True
        assert len(recording.delivered) == 1

    def test_deliver_contains_backend_exceptions(self, clock: MockClock) -> None:
        def explode(envelope: object) -> tuple[bool, str | None]:
            raise ConnectionResetError("peer went away")

        diagnostics = RecordingDiagnostics()
        recording = RecordingBackend(outcome=explode)
        selector = create_backend_selector(
            _context(clock, diagnostics=diagnostics, fallback_backend="recording"), instances={"recording": recording}
        )

        result = selector.deliver(make_log())

        assert result.success is False
        assert result.backend == "recording"
        assert result.error == "ConnectionResetError: peer went away"
        assert diagnostics.codes() == ["backend_raised"]

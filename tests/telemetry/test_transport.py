# tests/telemetry/test_transport.py
"""Tests for the OTLP/HTTP transport, with the collector mocked by respx."""

from __future__ import annotations

import json

import httpx
import pytest
import respx

from telerelay.contracts.errors import CollectorConfigurationError
from telerelay.contracts.results import MAX_ERROR_TEXT
from telerelay.core.config import CollectorSettings
from telerelay.engine.clock import MockClock
from telerelay.telemetry.otlp import OtlpEncoder, ResourceInfo
from telerelay.telemetry.otlp.encoder import EncodedDocument
from telerelay.telemetry.transport import OtlpHttpTransport, build_endpoint
from tests.conftest import make_log, make_span

BASE_URL = "http://collector.test:4318"


def _encode(envelope: object, clock: MockClock, spill_threshold: int | None = None) -> EncodedDocument:
    resource = ResourceInfo(service_name="svc", service_version="1", environment="test", instance_id="i")
    return OtlpEncoder(resource, now=clock.now, spill_threshold=spill_threshold).encode(envelope)  # type: ignore[arg-type]


def _transport(clock: MockClock, **collector: object) -> OtlpHttpTransport:
    settings = CollectorSettings(base_url=BASE_URL, **collector)  # type: ignore[arg-type]
    return OtlpHttpTransport(lambda: settings, clock=clock)


class TestBuildEndpoint:
    @pytest.mark.parametrize(
        ("base", "expected"),
        [
            ("http://collector:4318", "http://collector:4318/v1/traces"),
            ("http://collector:4318/", "http://collector:4318/v1/traces"),
            ("https://otel.example.com/prefix", "https://otel.example.com/prefix/v1/traces"),
        ],
    )
    def test_joins(self, base: str, expected: str) -> None:
        assert build_endpoint(base, "v1/traces") == expected

    @pytest.mark.parametrize("base", [None, "", "   ", "collector:4318/path", "ftp://collector", "/relative"])
    def test_rejects(self, base: str | None) -> None:
        with pytest.raises(CollectorConfigurationError):
            build_endpoint(base, "v1/logs")


class TestOtlpHttpTransport:
    @respx.mock
    def test_success(self, clock: MockClock) -> None:
        route = respx.post(f"{BASE_URL}/v1/traces").mock(return_value=httpx.Response(200))
        transport = _transport(clock, headers={"Authorization": "Bearer token"})

        result = transport.send(_encode(make_span(), clock))

        assert result.success is True
        assert result.status_code == 200
        assert result.error is None
        request = route.calls.last.request
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["Authorization"] == "Bearer token"
        assert json.loads(request.content)["resourceSpans"][0]["scopeSpans"][0]["spans"][0]["name"] == "op"
        transport.close()

    @pytest.mark.parametrize("status", [200, 201, 202, 204])
    @respx.mock
    def test_success_statuses(self, clock: MockClock, status: int) -> None:
        respx.post(f"{BASE_URL}/v1/logs").mock(return_value=httpx.Response(status))
        assert _transport(clock).send(_encode(make_log(), clock)).success is True

    @respx.mock
    def test_rejection_body_is_truncated(self, clock: MockClock) -> None:
        """A failed status records the code and at most MAX_ERROR_TEXT of the body."""
        respx.post(f"{BASE_URL}/v1/logs").mock(return_value=httpx.Response(500, text="E" * 10_000))

        result = _transport(clock).send(_encode(make_log(), clock))

        assert result.success is False
        assert result.status_code == 500
        assert result.error is not None
        assert result.error.startswith("HTTP 500: EEE")
        assert len(result.error) <= MAX_ERROR_TEXT

    @respx.mock
    def test_rejection_without_body(self, clock: MockClock) -> None:
        respx.post(f"{BASE_URL}/v1/logs").mock(return_value=httpx.Response(429))
        result = _transport(clock).send(_encode(make_log(), clock))
        assert result.error == "HTTP 429"

    @respx.mock
    def test_redirect_is_a_failure(self, clock: MockClock) -> None:
        respx.post(f"{BASE_URL}/v1/logs").mock(return_value=httpx.Response(307, headers={"Location": "http://elsewhere/"}))
        result = _transport(clock).send(_encode(make_log(), clock))
        assert result.success is False
        assert result.status_code == 307

    @respx.mock
    def test_timeout(self, clock: MockClock) -> None:
        respx.post(f"{BASE_URL}/v1/logs").mock(side_effect=httpx.ReadTimeout("read timed out"))

        result = _transport(clock, timeout_seconds=2.0).send(_encode(make_log(), clock))

        assert result.success is False
        assert result.status_code is None
        assert result.error is not None
        assert result.error.startswith("timeout:")

    @respx.mock
    def test_connection_error(self, clock: MockClock) -> None:
        respx.post(f"{BASE_URL}/v1/logs").mock(side_effect=httpx.ConnectError("connection refused"))
        result = _transport(clock).send(_encode(make_log(), clock))
        assert result.success is False
        assert result.error == "ConnectError: connection refused"

    def test_invalid_collector_url(self, clock: MockClock) -> None:
        """A bad base URL is a failed result, never an exception."""
        settings = CollectorSettings(base_url="not a url")
        result = OtlpHttpTransport(lambda: settings, clock=clock).send(_encode(make_log(), clock))
        assert result.success is False
        assert result.status_code is None
        assert "Invalid collector URL" in (result.error or "")

    @respx.mock
    def test_large_body_is_streamed(self, clock: MockClock) -> None:
        """Bodies larger than the chunk size are sent as a chunked stream."""
        received: list[bytes] = []

        def capture(request: httpx.Request) -> httpx.Response:
            received.append(request.read())
            return httpx.Response(202)

        respx.post(f"{BASE_URL}/v1/logs").mock(side_effect=capture)
        document = _encode(make_log("x" * 5000), clock, spill_threshold=256)
        settings = CollectorSettings(base_url=BASE_URL)
        transport = OtlpHttpTransport(lambda: settings, clock=clock, chunk_size=1024)

        result = transport.send(document)

        assert result.success is True
        assert received == [document.body.getvalue()]

    @respx.mock
    def test_settings_read_per_send(self, clock: MockClock) -> None:
        """A changed base URL applies to the next send."""
        respx.post("http://first:4318/v1/logs").mock(return_value=httpx.Response(200))
        respx.post("http://second:4318/v1/logs").mock(return_value=httpx.Response(200))
        current = {"settings": CollectorSettings(base_url="http://first:4318")}
        transport = OtlpHttpTransport(lambda: current["settings"], clock=clock)

        transport.send(_encode(make_log(), clock))
        current["settings"] = CollectorSettings(base_url="http://second:4318")
        transport.send(_encode(make_log(), clock))

        assert respx.calls.call_count == 2
        assert str(respx.calls.last.request.url) == "http://second:4318/v1/logs"

    def test_injected_client_not_closed(self, clock: MockClock) -> None:
        client = httpx.Client()
        transport = OtlpHttpTransport(lambda: CollectorSettings(), client=client, clock=clock)
        transport.close()
        assert client.is_closed is False
        client.close()

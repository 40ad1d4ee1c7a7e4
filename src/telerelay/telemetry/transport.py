# src/telerelay/telemetry/transport.py
"""HTTP transport for finished OTLP documents.

send() POSTs one document to {base_url}/v1/traces|metrics|logs and reports
the outcome as a TransportResult. It never raises: timeouts, connection
errors, non-success statuses and a missing or unusable collector URL all
come back as failed results. Responses are opened with client.stream()
inside a context manager, so the connection is released on every exit
path including timeouts and undecodable responses.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator

import httpx
import structlog

from telerelay.contracts.errors import CollectorConfigurationError
from telerelay.contracts.results import MAX_ERROR_TEXT, TransportResult, truncate_text
from telerelay.core.config import CollectorSettings
from telerelay.engine.clock import DEFAULT_CLOCK, Clock
from telerelay.telemetry.otlp.buffer import DEFAULT_CHUNK_SIZE
from telerelay.telemetry.otlp.encoder import EncodedDocument

logger = structlog.get_logger(__name__)

SUCCESS_STATUSES = frozenset({200, 201, 202, 204})


def build_endpoint(base_url: str | None, path: str) -> str:
    """Join the collector base URL and a signal path.

    Raises:
        CollectorConfigurationError: If the base URL is missing, relative or not http(s).
    """
    if base_url is None or not base_url.strip():
        raise CollectorConfigurationError(base_url, "collector base URL is not configured")
    try:
        parsed = httpx.URL(base_url.strip())
    except httpx.InvalidURL as e:
        raise CollectorConfigurationError(base_url, str(e)) from e
    if parsed.scheme not in ("http", "https"):
        raise CollectorConfigurationError(base_url, f"unsupported scheme {parsed.scheme!r}")
    if not parsed.host:
        raise CollectorConfigurationError(base_url, "URL has no host")
    return f"{str(parsed).rstrip('/')}/{path.lstrip('/')}"


class OtlpHttpTransport:
    """Posts OTLP/JSON documents to a collector.

    Collector settings are read through a callable on every send so that a
    changed base URL or timeout applies without rebuilding the transport.

    Args:
        collector: Callable returning the current collector settings
        client: Optional preconfigured httpx.Client (closed by close() only if owned)
        clock: Time source for latency measurement
        chunk_size: Bodies larger than this are streamed in chunks of this size
    """

    def __init__(
        self,
        collector: Callable[[], CollectorSettings],
        *,
        client: httpx.Client | None = None,
        clock: Clock | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self._collector = collector
        self._owns_client = client is None
        # follow_redirects=False: a collector redirect is a misconfiguration, not a success
        self._client = client if client is not None else httpx.Client(follow_redirects=False)
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._chunk_size = chunk_size

    def send(self, document: EncodedDocument) -> TransportResult:
        settings = self._collector()
        try:
            url = build_endpoint(settings.base_url, document.path)
        except CollectorConfigurationError as e:
            logger.warning("collector_url_invalid", url=settings.base_url, error=e.message, kind=document.kind.value)
            return TransportResult(success=False, status_code=None, latency_ms=0.0, error=str(e))

        body = document.body
        content: bytes | Iterator[bytes]
        if len(body) > self._chunk_size:
            content = body.iter_chunks(self._chunk_size)
        else:
            content = body.getvalue()
        headers = {**settings.headers, "Content-Type": "application/json"}

        start = self._clock.monotonic()
        try:
            with self._client.stream(
                "POST",
                url,
                content=content,
                headers=headers,
                timeout=settings.timeout_seconds,
            ) as response:
                status = response.status_code
                if status in SUCCESS_STATUSES:
                    return TransportResult(
                        success=True,
                        status_code=status,
                        latency_ms=self._elapsed_ms(start),
                    )
                error = self._read_error_body(response)
        except httpx.TimeoutException as e:
            latency_ms = self._elapsed_ms(start)
            logger.warning("collector_timeout", url=url, timeout=settings.timeout_seconds, error=str(e))
            return TransportResult(success=False, status_code=None, latency_ms=latency_ms, error=f"timeout: {e}")
        except httpx.HTTPError as e:
            latency_ms = self._elapsed_ms(start)
            logger.warning("collector_request_failed", url=url, error_type=type(e).__name__, error=str(e))
            return TransportResult(
                success=False,
                status_code=None,
                latency_ms=latency_ms,
                error=truncate_text(f"{type(e).__name__}: {e}"),
            )

        latency_ms = self._elapsed_ms(start)
        logger.info("collector_rejected", url=url, status_code=status, latency_ms=round(latency_ms, 1))
        return TransportResult(success=False, status_code=status, latency_ms=latency_ms, error=error)

    def _elapsed_ms(self, start: float) -> float:
        return (self._clock.monotonic() - start) * 1000.0

    @staticmethod
    def _read_error_body(response: httpx.Response) -> str | None:
        """Read at most MAX_ERROR_TEXT bytes of a rejection body."""
        collected = bytearray()
        for chunk in response.iter_bytes():
            collected += chunk
            if len(collected) >= MAX_ERROR_TEXT:
                break
        text = collected.decode("utf-8", errors="replace")
        return truncate_text(f"HTTP {response.status_code}: {text}" if text else f"HTTP {response.status_code}")

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

# src/telerelay/contracts/results.py
"""Result types passed across subsystem boundaries.

Expected outcomes (a lost claim race, a rejected enqueue, a failed POST)
are values, not exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from telerelay.contracts.enums import EnvelopeKind, SubmitOutcome

# Stored error text and response bodies are truncated to this many characters.
MAX_ERROR_TEXT = 4000


def truncate_text(text: str | None, limit: int = MAX_ERROR_TEXT) -> str | None:
    """Truncate text for storage, marking the cut."""
    if text is None or len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


@dataclass(frozen=True, slots=True)
class TransportResult:
    """Outcome of one HTTP POST to the collector.

    Attributes:
        success: True for 200/201/202/204
        status_code: HTTP status, or None when no response was received
        latency_ms: Wall time spent on the request
        error: Failure description (truncated response body or exception text)
    """

    success: bool
    status_code: int | None
    latency_ms: float
    error: str | None = None


@dataclass(frozen=True, slots=True)
class DeliveryResult:
    """Outcome of delivering one envelope through a backend."""

    success: bool
    backend: str
    latency_ms: float = 0.0
    status_code: int | None = None
    error: str | None = None

    @classmethod
    def from_transport(cls, backend: str, result: TransportResult) -> DeliveryResult:
        return cls(
            success=result.success,
            backend=backend,
            latency_ms=result.latency_ms,
            status_code=result.status_code,
            error=result.error,
        )

    @classmethod
    def failed(cls, backend: str, error: str) -> DeliveryResult:
        return cls(success=False, backend=backend, error=truncate_text(error))


@dataclass(frozen=True, slots=True)
class EnqueueResult:
    """Outcome of appending an envelope to the durable queue."""

    accepted: bool
    item_id: int | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class QueueItem:
    """A queued envelope as seen by one drain.

    ``attempts`` is the attempt count observed at drain time; a claim only
    succeeds if the stored count still matches it.
    """

    item_id: int
    kind: EnvelopeKind
    payload: str
    created_at: datetime
    attempts: int
    last_attempt_at: datetime | None = None
    last_error: str | None = None


@dataclass(frozen=True, slots=True)
class SubmitResult:
    """What the send path did with one envelope."""

    outcome: SubmitOutcome
    reason: str | None = None
    item_id: int | None = None

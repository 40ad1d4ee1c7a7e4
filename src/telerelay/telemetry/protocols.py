# src/telerelay/telemetry/protocols.py
"""Protocol definitions for delivery backends.

A backend delivers one envelope to somewhere outside the relay. The OTLP
backend encodes and POSTs to a collector; other adapters (console, vendor
bridges) implement the same contract and are selected by the
failover.fallback_backend setting.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, TextIO, runtime_checkable

if TYPE_CHECKING:
    from telerelay.contracts.envelope import Envelope
    from telerelay.contracts.results import DeliveryResult
    from telerelay.core.config import ConfigProvider
    from telerelay.core.diagnostics import DiagnosticSink
    from telerelay.engine.clock import Clock
    from telerelay.telemetry.otlp.encoder import OtlpEncoder


@dataclass(frozen=True, slots=True)
class BackendContext:
    """Shared collaborators handed to every backend at configure time."""

    config: ConfigProvider
    encoder: OtlpEncoder
    diagnostics: DiagnosticSink
    clock: Clock
    stream: TextIO | None = None


@runtime_checkable
class DeliveryBackend(Protocol):
    """Protocol for delivery backends.

    Lifecycle:
        1. Discovery: telerelay_get_backends hook returns backend classes
        2. Instantiation: classes are created with no arguments
        3. Configuration: configure() receives the shared BackendContext
        4. Operation: deliver() called once per envelope (must not raise)
        5. Shutdown: close() releases connections

    Error handling:
        - configure() MUST raise BackendError on invalid setup
        - deliver() MUST NOT raise - failures are returned as DeliveryResult
        - close() MUST be idempotent
    """

    @property
    def name(self) -> str:
        """Backend name, matched against failover.fallback_backend."""
        ...

    def configure(self, context: BackendContext) -> None: ...

    def deliver(self, envelope: Envelope) -> DeliveryResult: ...

    def close(self) -> None: ...

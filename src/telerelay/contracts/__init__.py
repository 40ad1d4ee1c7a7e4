"""Shared contracts for cross-boundary data types.

This package is a LEAF MODULE with no outbound dependencies to core/engine.
Settings classes live in telerelay.core.config and are not re-exported here.

Import patterns:
    from telerelay.contracts import MetricEnvelope, EnvelopeKind, DeliveryResult
    from telerelay.core.config import RelaySettings
"""

from telerelay.contracts.enums import (
    AgentHealth,
    CircuitState,
    EnvelopeKind,
    FailoverReason,
    MetricType,
    ProcessingMode,
    PulseLevel,
    QueueOrdering,
    SubmitOutcome,
)
from telerelay.contracts.envelope import (
    Envelope,
    LogEnvelope,
    MetricEnvelope,
    SpanEnvelope,
    SpanEvent,
    envelope_from_dict,
    envelope_from_json,
    envelope_to_dict,
    envelope_to_json,
    normalize_id,
)
from telerelay.contracts.errors import (
    BackendError,
    CollectorConfigurationError,
    EnvelopeFormatError,
    OrchestratorError,
    SchemaCompatibilityError,
    TelemetryRelayError,
)
from telerelay.contracts.results import (
    MAX_ERROR_TEXT,
    DeliveryResult,
    EnqueueResult,
    QueueItem,
    SubmitResult,
    TransportResult,
    truncate_text,
)

__all__ = [
    "MAX_ERROR_TEXT",
    "AgentHealth",
    "BackendError",
    "CircuitState",
    "CollectorConfigurationError",
    "DeliveryResult",
    "EnqueueResult",
    "Envelope",
    "EnvelopeFormatError",
    "EnvelopeKind",
    "FailoverReason",
    "LogEnvelope",
    "MetricEnvelope",
    "MetricType",
    "OrchestratorError",
    "ProcessingMode",
    "PulseLevel",
    "QueueItem",
    "QueueOrdering",
    "SchemaCompatibilityError",
    "SpanEnvelope",
    "SpanEvent",
    "SubmitOutcome",
    "SubmitResult",
    "TelemetryRelayError",
    "TransportResult",
    "envelope_from_dict",
    "envelope_from_json",
    "envelope_to_dict",
    "envelope_to_json",
    "normalize_id",
    "truncate_text",
]

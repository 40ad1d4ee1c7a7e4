"""Kinds, states and reason codes shared by the relay subsystems.

Values are persisted as plain strings (queue rows, pipeline state), so
renaming a member is a storage migration.
"""

from enum import StrEnum


class EnvelopeKind(StrEnum):
    """Kind of telemetry item carried by an envelope.

    Stored in the database (queue_items.kind, delivery_attempts.kind).
    """

    SPAN = "span"
    METRIC = "metric"
    LOG = "log"


class CircuitState(StrEnum):
    """Circuit breaker state.

    Stored in the pipeline state table.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class ProcessingMode(StrEnum):
    """Which subsystem currently owns delivery."""

    AGENT_PRIMARY = "agent_primary"
    LOCAL_FALLBACK = "local_fallback"


class AgentHealth(StrEnum):
    """Health classification of the primary delivery agent."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DEAD = "dead"
    UNKNOWN = "unknown"


class PulseLevel(StrEnum):
    """Coarse throttling level, from full capacity to hibernation."""

    PULSE1 = "pulse1"
    PULSE2 = "pulse2"
    PULSE3 = "pulse3"
    PULSE4 = "pulse4"
    HIBERNATE = "hibernate"


class MetricType(StrEnum):
    """OTLP metric data shape chosen for a metric name."""

    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


class FailoverReason(StrEnum):
    """Why the failover decision came out the way it did.

    Attached to transition and status records as trigger.reason.
    """

    FAILOVER_DISABLED = "failover_disabled"
    AGENT_HEARTBEAT_MISSING = "agent_heartbeat_missing"
    AGENT_DEGRADED_QUEUE_OVERLOAD = "agent_degraded_queue_overload"
    AGENT_UNKNOWN_QUEUE_OVERLOAD = "agent_unknown_queue_overload"
    QUEUE_WITHIN_THRESHOLD = "queue_within_threshold"
    AGENT_HEALTHY = "agent_healthy"
    AGENT_RECOVERED = "agent_recovered"


class QueueOrdering(StrEnum):
    """Drain ordering policy for the durable queue."""

    PRIORITY = "priority"
    FIFO = "fifo"


class SubmitOutcome(StrEnum):
    """What the send path did with a submitted envelope."""

    DELIVERED = "delivered"
    QUEUED = "queued"
    DROPPED = "dropped"
    FAILED = "failed"

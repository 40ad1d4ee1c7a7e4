# src/telerelay/contracts/errors.py
"""Exception taxonomy for telerelay.

Producer-facing operations (submit, enqueue) and delivery operations never
raise these into callers; they return result objects instead. Exceptions are
reserved for setup problems and for orchestrator failures, which are
operationally significant and must surface to the tick's caller.
"""


class TelemetryRelayError(Exception):
    """Base class for all telerelay errors."""


class EnvelopeFormatError(TelemetryRelayError):
    """Raised when a serialized envelope cannot be parsed.

    Attributes:
        reason: Human-readable description of what was wrong
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Malformed envelope: {reason}")


class CollectorConfigurationError(TelemetryRelayError):
    """Raised when the collector base URL is missing or unusable.

    Transport catches this internally and reports it as a failed delivery,
    since configuration may become valid on a later attempt.
    """

    def __init__(self, url: str | None, message: str) -> None:
        self.url = url
        self.message = message
        super().__init__(f"Invalid collector URL {url!r}: {message}")


class BackendError(TelemetryRelayError):
    """Raised when a delivery backend cannot be discovered or configured.

    This is raised during setup, NOT during delivery. Delivery operations
    must not raise - they return a failed DeliveryResult instead.

    Attributes:
        backend_name: Name of the backend that failed
        message: Human-readable error description
    """

    def __init__(self, backend_name: str, message: str) -> None:
        self.backend_name = backend_name
        self.message = message
        super().__init__(f"Backend '{backend_name}' failed: {message}")


class OrchestratorError(TelemetryRelayError):
    """Raised when a failover transition could not be completed.

    Processing mode is left at its last successfully persisted value.

    Attributes:
        step: Step that failed (e.g. "toggle_local_delivery", "persist_mode")
    """

    def __init__(self, step: str, message: str) -> None:
        self.step = step
        self.message = message
        super().__init__(f"Failover step '{step}' failed: {message}")


class SchemaCompatibilityError(TelemetryRelayError):
    """Raised when an existing store is missing tables or columns."""

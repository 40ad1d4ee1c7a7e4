"""Outbound telemetry: OTLP encoding, HTTP transport and delivery backends."""

from telerelay.telemetry.factory import BackendSelector, create_backend_selector, discover_backend_registry
from telerelay.telemetry.protocols import BackendContext, DeliveryBackend
from telerelay.telemetry.transport import OtlpHttpTransport

__all__ = [
    "BackendContext",
    "BackendSelector",
    "DeliveryBackend",
    "OtlpHttpTransport",
    "create_backend_selector",
    "discover_backend_registry",
]

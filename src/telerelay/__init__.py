"""
Telerelay: resilient OTLP/HTTP telemetry export.

Spans, metrics and logs are wrapped in envelopes, buffered in a durable
queue and delivered to an OpenTelemetry collector, shielded by a circuit
breaker, adaptive batching, a pulse throttling ladder and agent failover.
"""

__version__ = "0.1.0"

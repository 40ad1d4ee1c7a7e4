"""Built-in delivery backends.

Available backends:
- OtlpBackend ("otlp"): encode to OTLP/JSON and POST to the collector
- ConsoleBackend ("console"): print encoded documents, one per line

Plugin registration:
    Backends are registered via the telerelay_get_backends hook.
    BuiltinBackendsPlugin registers the built-in backends.
"""

from telerelay.telemetry.backends.console import ConsoleBackend
from telerelay.telemetry.backends.otlp import OtlpBackend
from telerelay.telemetry.hookspecs import hookimpl


class BuiltinBackendsPlugin:
    """Plugin that registers built-in delivery backends."""

    @hookimpl
    def telerelay_get_backends(self) -> list[type]:
        return [OtlpBackend, ConsoleBackend]


__all__ = [
    "BuiltinBackendsPlugin",
    "ConsoleBackend",
    "OtlpBackend",
]

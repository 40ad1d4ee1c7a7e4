# src/telerelay/telemetry/hookspecs.py
"""pluggy hook specifications for delivery backends.

Backends implement these hooks to register themselves with the relay.

Usage (implementing a backend plugin):
    from telerelay.telemetry.hookspecs import hookimpl

    class MyBackendPlugin:
        @hookimpl
        def telerelay_get_backends(self):
            return [MyBackend]
"""

from typing import TYPE_CHECKING

import pluggy

if TYPE_CHECKING:
    from telerelay.telemetry.protocols import DeliveryBackend

PROJECT_NAME = "telerelay"

hookspec = pluggy.HookspecMarker(PROJECT_NAME)
hookimpl = pluggy.HookimplMarker(PROJECT_NAME)


class TelerelayBackendSpec:
    """Hook specifications for delivery backend plugins."""

    @hookspec
    def telerelay_get_backends(self) -> list[type["DeliveryBackend"]]:  # type: ignore[empty-body]
        """Return delivery backend classes (not instances)."""

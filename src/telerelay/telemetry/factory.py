# src/telerelay/telemetry/factory.py
"""Backend discovery and selection.

Handles:
1. Discovering backend classes via the telerelay_get_backends pluggy hook
2. Instantiating and configuring them with the shared BackendContext
3. Choosing the active backend from failover.fallback_backend on every call
4. Isolating callers from backends that raise during delivery

Usage:
    selector = create_backend_selector(context)
    result = selector.deliver(envelope)
"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from typing import Any

import pluggy
import structlog

from telerelay.contracts.envelope import Envelope
from telerelay.contracts.errors import BackendError
from telerelay.contracts.results import DeliveryResult
from telerelay.telemetry.backends import BuiltinBackendsPlugin
from telerelay.telemetry.hookspecs import PROJECT_NAME, TelerelayBackendSpec
from telerelay.telemetry.protocols import BackendContext, DeliveryBackend

logger = structlog.get_logger(__name__)

DEFAULT_BACKEND = "otlp"


def _resolve_backend_name(backend_class: type[DeliveryBackend]) -> str:
    name = backend_class.__dict__.get("_name")
    if type(name) is str and name != "":
        return name
    try:
        instance = backend_class()
    except Exception as e:
        raise BackendError(backend_class.__name__, f"Failed to instantiate during discovery: {e}") from e
    resolved = instance.name
    if type(resolved) is not str or resolved == "":
        raise BackendError(backend_class.__name__, f"Backend name must be a non-empty string, got {resolved!r}")
    return resolved


def discover_backend_registry(backend_plugins: Iterable[Any] = ()) -> dict[str, type[DeliveryBackend]]:
    """Build the name -> class registry from built-in and extra plugins.

    Raises:
        BackendError: If a plugin fails to register or two backends share a name.
    """
    plugin_manager = pluggy.PluginManager(PROJECT_NAME)
    plugin_manager.add_hookspecs(TelerelayBackendSpec)

    for plugin in [BuiltinBackendsPlugin(), *list(backend_plugins)]:
        try:
            plugin_manager.register(plugin)
            plugin_manager.check_pending()
        except (pluggy.PluginValidationError, ValueError) as e:
            if isinstance(e, pluggy.PluginValidationError):
                plugin_manager.unregister(plugin=plugin)
            raise BackendError("backend_plugins", f"Invalid backend plugin {type(plugin).__name__}: {e}") from e

    registry: dict[str, type[DeliveryBackend]] = {}
    for backend_classes in plugin_manager.hook.telerelay_get_backends():
        for backend_class in backend_classes:
            name = _resolve_backend_name(backend_class)
            if name in registry:
                raise BackendError(
                    name,
                    f"Duplicate backend name '{name}': {registry[name].__name__} and {backend_class.__name__}",
                )
            registry[name] = backend_class
    return registry


class BackendSelector:
    """Holds configured backend instances and returns the selected one.

    Instances are created on first use and reused afterwards. A selector
    value that names no known backend (for instance after a bad hot-reload)
    is logged and the OTLP backend is used instead.
    """

    def __init__(
        self,
        context: BackendContext,
        registry: dict[str, type[DeliveryBackend]],
        *,
        instances: dict[str, DeliveryBackend] | None = None,
    ) -> None:
        self._context = context
        self._registry = registry
        self._instances: dict[str, DeliveryBackend] = dict(instances or {})
        self._lock = threading.Lock()

    @property
    def available(self) -> list[str]:
        return sorted(set(self._registry) | set(self._instances))

    def get(self, name: str) -> DeliveryBackend:
        """Return the configured backend called name.

        Raises:
            BackendError: If no backend has that name.
        """
        with self._lock:
            if name in self._instances:
                return self._instances[name]
            try:
                backend_class = self._registry[name]
            except KeyError:
                raise BackendError(name, f"Unknown backend. Available: {self.available}") from None
            backend = backend_class()
            backend.configure(self._context)
            self._instances[name] = backend
            logger.debug("backend_configured", backend=name)
            return backend

    def current(self) -> DeliveryBackend:
        name = self._context.config.current().failover.fallback_backend
        try:
            return self.get(name)
        except BackendError:
            logger.error("backend_selector_unknown", requested=name, using=DEFAULT_BACKEND, available=self.available)
            return self.get(DEFAULT_BACKEND)

    def deliver(self, envelope: Envelope) -> DeliveryResult:
        """Deliver through the selected backend with failure isolation.

        A backend that raises despite the protocol is reported as a failed
        delivery so the caller's retry path still runs.
        """
        backend = self.current()
        try:
            return backend.deliver(envelope)
        except Exception as e:
            logger.warning("backend_deliver_raised", backend=backend.name, kind=envelope.kind.value, error=str(e))
            self._context.diagnostics.record(
                "telemetry.factory",
                f"Backend {backend.name} raised during delivery: {type(e).__name__}: {e}",
                error_code="backend_raised",
            )
            return DeliveryResult.failed(backend.name, f"{type(e).__name__}: {e}")

    def close(self) -> None:
        with self._lock:
            for backend in self._instances.values():
                backend.close()
            self._instances.clear()


def create_backend_selector(
    context: BackendContext,
    *,
    backend_plugins: Iterable[Any] = (),
    instances: dict[str, DeliveryBackend] | None = None,
) -> BackendSelector:
    """Discover backends and validate the configured selector.

    Args:
        context: Shared collaborators for backend configuration
        backend_plugins: Extra plugin objects implementing telerelay_get_backends
        instances: Pre-built backends keyed by name (take precedence over discovery)

    Raises:
        BackendError: If discovery fails or the configured backend is unknown.
    """
    registry = discover_backend_registry(backend_plugins)
    selector = BackendSelector(context, registry, instances=instances)
    configured = context.config.current().failover.fallback_backend
    if configured not in selector.available:
        raise BackendError(configured, f"Configured fallback backend is unknown. Available: {selector.available}")
    return selector

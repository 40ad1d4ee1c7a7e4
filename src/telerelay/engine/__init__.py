"""Delivery engine: queue, worker, circuit breaker, batch and pulse control, failover.

Submodules are imported directly (e.g. telerelay.engine.queue); this package
initializer stays empty so low-level modules such as engine.clock can be
imported without pulling in the whole engine.
"""

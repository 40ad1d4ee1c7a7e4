"""Durable store: connection management, schema and repositories."""

from telerelay.core.store.database import RelayDB, as_utc
from telerelay.core.store.delivery_log import DeliveryLog, DeliveryStats
from telerelay.core.store.heartbeats import AgentHeartbeat, HeartbeatStore
from telerelay.core.store.state import ConfigEntryStore, PipelineStateStore

__all__ = [
    "AgentHeartbeat",
    "ConfigEntryStore",
    "DeliveryLog",
    "DeliveryStats",
    "HeartbeatStore",
    "PipelineStateStore",
    "RelayDB",
    "as_utc",
]

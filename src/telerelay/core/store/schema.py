# src/telerelay/core/store/schema.py
"""SQLAlchemy table definitions for the relay store.

Uses SQLAlchemy Core (not ORM) so the claim and resolve statements stay
explicit, single-row conditional UPDATEs on both SQLite and PostgreSQL.
All timestamps are written as UTC.
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)

metadata = MetaData()

# === Durable queue ===

queue_items_table = Table(
    "queue_items",
    metadata,
    Column("item_id", Integer, primary_key=True, autoincrement=True),
    Column("kind", String(16), nullable=False),
    Column("payload", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("processed", Boolean, nullable=False, default=False),
    # Never decremented; items at the cap are excluded from drains but kept
    Column("process_attempts", Integer, nullable=False, default=0),
    Column("last_attempt_at", DateTime(timezone=True)),
    Column("last_error", Text),
    Column("processed_at", DateTime(timezone=True)),
    # Set by a successful claim, cleared on resolve
    Column("lease_until", DateTime(timezone=True)),
)

Index("ix_queue_items_pending", queue_items_table.c.processed, queue_items_table.c.process_attempts, queue_items_table.c.created_at)

# === Delivery outcomes (feeds circuit breaker and batch controller) ===

delivery_attempts_table = Table(
    "delivery_attempts",
    metadata,
    Column("attempt_id", Integer, primary_key=True, autoincrement=True),
    Column("attempted_at", DateTime(timezone=True), nullable=False),
    Column("kind", String(16), nullable=False),
    Column("backend", String(64), nullable=False),
    Column("success", Boolean, nullable=False),
    Column("latency_ms", Float),
    Column("http_status", Integer),
    Column("error", Text),
    Column("item_id", Integer),
)

Index("ix_delivery_attempts_time", delivery_attempts_table.c.attempted_at)

# === Diagnostics (independently committed) ===

diagnostics_table = Table(
    "diagnostics",
    metadata,
    Column("diagnostic_id", Integer, primary_key=True, autoincrement=True),
    Column("recorded_at", DateTime(timezone=True), nullable=False),
    Column("module", String(128), nullable=False),
    Column("message", Text, nullable=False),
    Column("error_code", String(64)),
    Column("trace_id", String(64)),
    Column("span_id", String(32)),
)

Index("ix_diagnostics_time", diagnostics_table.c.recorded_at)

# === Runtime state and hot-reloadable overrides ===

pipeline_state_table = Table(
    "pipeline_state",
    metadata,
    Column("key", String(128), primary_key=True),
    Column("value", Text, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

config_entries_table = Table(
    "config_entries",
    metadata,
    Column("key", String(128), primary_key=True),
    Column("value", Text, nullable=False),
    Column("description", Text),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

# === Primary agent heartbeats ===

agent_heartbeats_table = Table(
    "agent_heartbeats",
    metadata,
    Column("agent_name", String(128), primary_key=True),
    Column("last_heartbeat", DateTime(timezone=True), nullable=False),
    Column("check_interval_seconds", Integer),
    Column("items_planned", Integer, nullable=False, default=0),
    Column("items_processed", Integer, nullable=False, default=0),
)

# === Recurring jobs ===

scheduled_jobs_table = Table(
    "scheduled_jobs",
    metadata,
    Column("name", String(128), primary_key=True),
    Column("enabled", Boolean, nullable=False),
    Column("interval_seconds", Integer, nullable=False),
    Column("description", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

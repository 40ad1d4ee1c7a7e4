# src/telerelay/core/store/state.py
"""Key/value repositories: pipeline runtime state and config overrides.

Runtime state (processing mode, circuit state, pulse level, cadence
timestamps) is read from the store at the start of every tick instead of
living in process globals, so several relay processes sharing one store
agree on it.
"""

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from sqlalchemy import Table, delete, insert, select, update
from sqlalchemy.exc import IntegrityError

from telerelay.core.store.database import RelayDB, as_utc
from telerelay.core.store.schema import config_entries_table, pipeline_state_table


def _upsert(db: RelayDB, table: Table, key: str, values: Mapping[str, Any]) -> None:
    """Update the row for key, inserting it if absent."""
    stmt = update(table).where(table.c.key == key).values(**values)
    with db.connection() as conn:
        if conn.execute(stmt).rowcount:
            return
    try:
        with db.connection() as conn:
            conn.execute(insert(table).values(key=key, **values))
    except IntegrityError:
        # Another writer inserted first
        with db.connection() as conn:
            conn.execute(stmt)


class PipelineStateStore:
    """Persisted runtime state keyed by name."""

    def __init__(self, db: RelayDB) -> None:
        self._db = db

    def get(self, key: str) -> str | None:
        query = select(pipeline_state_table.c.value).where(pipeline_state_table.c.key == key)
        with self._db.connection() as conn:
            return conn.execute(query).scalar_one_or_none()

    def set(self, key: str, value: str, *, now: datetime) -> None:
        _upsert(self._db, pipeline_state_table, key, {"value": value, "updated_at": now})

    def get_datetime(self, key: str) -> datetime | None:
        raw = self.get(key)
        if raw is None:
            return None
        return as_utc(datetime.fromisoformat(raw))

    def set_datetime(self, key: str, value: datetime, *, now: datetime) -> None:
        self.set(key, value.isoformat(), now=now)

    def all(self) -> dict[str, str]:
        query = select(pipeline_state_table.c.key, pipeline_state_table.c.value)
        with self._db.connection() as conn:
            return {row.key: row.value for row in conn.execute(query)}


class ConfigEntryStore:
    """Hot-reloadable configuration overrides (dotted settings key -> raw text)."""

    def __init__(self, db: RelayDB) -> None:
        self._db = db

    def entries(self) -> dict[str, str]:
        query = select(config_entries_table.c.key, config_entries_table.c.value)
        with self._db.connection() as conn:
            return {row.key: row.value for row in conn.execute(query)}

    def set(self, key: str, value: str, *, now: datetime, description: str | None = None) -> None:
        _upsert(
            self._db,
            config_entries_table,
            key,
            {"value": value, "description": description, "updated_at": now},
        )

    def delete(self, key: str) -> bool:
        with self._db.connection() as conn:
            return bool(conn.execute(delete(config_entries_table).where(config_entries_table.c.key == key)).rowcount)

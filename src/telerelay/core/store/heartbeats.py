# src/telerelay/core/store/heartbeats.py
"""Heartbeats reported by the primary delivery agent."""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from telerelay.core.store.database import RelayDB, as_utc
from telerelay.core.store.schema import agent_heartbeats_table


@dataclass(frozen=True, slots=True)
class AgentHeartbeat:
    """Most recent self-report of an agent."""

    agent_name: str
    last_heartbeat: datetime
    check_interval_seconds: int | None
    items_planned: int
    items_processed: int


class HeartbeatStore:
    """One row per agent, overwritten on every heartbeat."""

    def __init__(self, db: RelayDB) -> None:
        self._db = db

    def record(
        self,
        agent_name: str,
        *,
        at: datetime,
        check_interval_seconds: int | None = None,
        items_planned: int = 0,
        items_processed: int = 0,
    ) -> None:
        values = {
            "last_heartbeat": at,
            "check_interval_seconds": check_interval_seconds,
            "items_planned": items_planned,
            "items_processed": items_processed,
        }
        stmt = update(agent_heartbeats_table).where(agent_heartbeats_table.c.agent_name == agent_name).values(**values)
        with self._db.connection() as conn:
            if conn.execute(stmt).rowcount:
                return
        try:
            with self._db.connection() as conn:
                conn.execute(insert(agent_heartbeats_table).values(agent_name=agent_name, **values))
        except IntegrityError:
            with self._db.connection() as conn:
                conn.execute(stmt)

    def latest(self, agent_name: str) -> AgentHeartbeat | None:
        query = select(agent_heartbeats_table).where(agent_heartbeats_table.c.agent_name == agent_name)
        with self._db.connection() as conn:
            row = conn.execute(query).fetchone()
        if row is None:
            return None
        return AgentHeartbeat(
            agent_name=row.agent_name,
            last_heartbeat=as_utc(row.last_heartbeat),
            check_interval_seconds=row.check_interval_seconds,
            items_planned=row.items_planned,
            items_processed=row.items_processed,
        )

# src/telerelay/core/store/delivery_log.py
"""Delivery attempt log.

Every delivery attempt, from the worker or the synchronous send path,
appends one row. The circuit breaker and the batch controller derive their
error rates and latency averages from windows over this table.
"""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import case, delete, func, insert, select

from telerelay.contracts.enums import EnvelopeKind
from telerelay.contracts.results import DeliveryResult, truncate_text
from telerelay.core.store.database import RelayDB
from telerelay.core.store.schema import delivery_attempts_table


@dataclass(frozen=True, slots=True)
class DeliveryStats:
    """Aggregate over a window of delivery attempts."""

    attempts: int
    failures: int
    avg_latency_ms: float | None

    @property
    def error_rate(self) -> float:
        if self.attempts == 0:
            return 0.0
        return self.failures / self.attempts


class DeliveryLog:
    """Append-only record of delivery outcomes."""

    def __init__(self, db: RelayDB) -> None:
        self._db = db

    def record(
        self,
        kind: EnvelopeKind,
        result: DeliveryResult,
        *,
        at: datetime,
        item_id: int | None = None,
    ) -> None:
        with self._db.connection() as conn:
            conn.execute(
                insert(delivery_attempts_table).values(
                    attempted_at=at,
                    kind=kind.value,
                    backend=result.backend,
                    success=result.success,
                    latency_ms=result.latency_ms,
                    http_status=result.status_code,
                    error=truncate_text(result.error),
                    item_id=item_id,
                )
            )

    def stats_since(self, since: datetime) -> DeliveryStats:
        """Attempts, failures and mean latency for attempts at or after since."""
        t = delivery_attempts_table
        query = select(
            func.count(),
            func.coalesce(func.sum(case((t.c.success.is_(False), 1), else_=0)), 0),
            func.avg(t.c.latency_ms),
        ).where(t.c.attempted_at >= since)
        with self._db.connection() as conn:
            attempts, failures, avg_latency = conn.execute(query).one()
        return DeliveryStats(
            attempts=int(attempts),
            failures=int(failures),
            avg_latency_ms=float(avg_latency) if avg_latency is not None else None,
        )

    def purge_before(self, cutoff: datetime) -> int:
        with self._db.connection() as conn:
            return conn.execute(delete(delivery_attempts_table).where(delivery_attempts_table.c.attempted_at < cutoff)).rowcount

# src/telerelay/engine/queue.py
"""Durable queue of pending envelopes.

Producers append with enqueue(), which never performs transport I/O and
never raises. The delivery worker consumes items in three short steps:

    drain(n)        select up to n visible items in policy order
    claim(item)     conditional UPDATE: attempts+1 and a lease, only if the
                    row is still unprocessed, still at the attempt count this
                    drain saw, and not leased by someone else
    resolve         mark_processed() on success or record_failure() on
                    failure, exactly one of the two, clearing the lease

Each step commits on its own, and delivery happens between claim and
resolve outside any transaction. Two overlapping drains may select the
same row, but only one claim can win it, so an item is never delivered
twice by concurrent workers. A crash after claim leaves the row
invisible until its lease expires, after which it is retried with the
attempt already counted; the attempt cap bounds the retries. Items that
reach the cap stay in the table for inspection and are never deleted by
the worker.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

import structlog
from sqlalchemy import ColumnElement, Table, and_, case, delete, func, insert, or_, select, update

from telerelay.contracts.enums import EnvelopeKind, QueueOrdering
from telerelay.contracts.envelope import Envelope, envelope_to_json
from telerelay.contracts.results import EnqueueResult, QueueItem, truncate_text
from telerelay.core.config import ConfigProvider
from telerelay.core.diagnostics import DiagnosticSink, NullDiagnostics
from telerelay.core.store.database import RelayDB, as_utc
from telerelay.core.store.schema import queue_items_table
from telerelay.engine.clock import DEFAULT_CLOCK, Clock
from telerelay.engine.pulse import PulseController

logger = structlog.get_logger(__name__)

QUEUE_FULL = "queue_full"


class OrderingPolicy(Protocol):
    """Drain order for visible queue items."""

    name: str

    def order_by(self, table: Table) -> list[ColumnElement[Any]]: ...


class PriorityOrdering:
    """Spans first, then metrics, then everything else; arrival order within each class."""

    name = QueueOrdering.PRIORITY.value

    def order_by(self, table: Table) -> list[ColumnElement[Any]]:
        priority = case(
            (table.c.kind == EnvelopeKind.SPAN.value, 0),
            (table.c.kind == EnvelopeKind.METRIC.value, 1),
            else_=2,
        )
        return [priority, table.c.created_at, table.c.item_id]


class FifoOrdering:
    """Pure arrival order."""

    name = QueueOrdering.FIFO.value

    def order_by(self, table: Table) -> list[ColumnElement[Any]]:
        return [table.c.created_at, table.c.item_id]


_POLICIES: dict[QueueOrdering, OrderingPolicy] = {
    QueueOrdering.PRIORITY: PriorityOrdering(),
    QueueOrdering.FIFO: FifoOrdering(),
}


def ordering_for(ordering: QueueOrdering) -> OrderingPolicy:
    return _POLICIES[ordering]


@dataclass(frozen=True, slots=True)
class QueueStats:
    """Counts by lifecycle stage."""

    pending: int
    processed: int
    exhausted: int
    leased: int


@dataclass(frozen=True, slots=True)
class QueueItemState:
    """Current stored state of one queue item."""

    item_id: int
    kind: EnvelopeKind
    processed: bool
    attempts: int
    last_error: str | None
    last_attempt_at: datetime | None
    processed_at: datetime | None


class DurableQueue:
    """Attempt-bounded persistent queue backed by the relay store.

    Args:
        db: Relay store
        config: Settings provider (queue.* is read on every call)
        pulse: Optional pulse controller; scales the admission limit
        clock: Time source
        diagnostics: Sink for enqueue failures
        ordering: Explicit ordering policy; otherwise queue.ordering selects one
    """

    def __init__(
        self,
        db: RelayDB,
        config: ConfigProvider,
        *,
        pulse: PulseController | None = None,
        clock: Clock | None = None,
        diagnostics: DiagnosticSink | None = None,
        ordering: OrderingPolicy | None = None,
    ) -> None:
        self._db = db
        self._config = config
        self._pulse = pulse
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._diagnostics: DiagnosticSink = diagnostics if diagnostics is not None else NullDiagnostics()
        self._ordering = ordering

    def _policy(self) -> OrderingPolicy:
        if self._ordering is not None:
            return self._ordering
        return ordering_for(self._config.current().queue.ordering)

    @property
    def max_attempts(self) -> int:
        return self._config.current().queue.max_attempts

    def capacity(self) -> int:
        """Pending depth at which enqueue starts rejecting."""
        limit = self._config.current().queue.max_pending
        if self._pulse is not None:
            return self._pulse.scale_capacity(limit)
        return limit

    def enqueue(self, envelope: Envelope, *, enforce_capacity: bool = True) -> EnqueueResult:
        """Append an envelope. Never raises; failures come back in the result.

        enforce_capacity=False admits the envelope past the pulse-scaled
        limit; only relay-internal records use it.
        """
        try:
            payload = envelope_to_json(envelope)
            capacity = self.capacity()
            depth = self.depth()
            if enforce_capacity and depth >= capacity:
                logger.warning("queue_full", depth=depth, capacity=capacity, kind=envelope.kind.value)
                return EnqueueResult(accepted=False, error=QUEUE_FULL)
            with self._db.connection() as conn:
                result = conn.execute(
                    insert(queue_items_table).values(
                        kind=envelope.kind.value,
                        payload=payload,
                        created_at=self._clock.now(),
                        processed=False,
                        process_attempts=0,
                    )
                )
                item_id = int(result.inserted_primary_key[0])
        except Exception as e:
            # Producers must never see a relay failure
            logger.error("enqueue_failed", kind=envelope.kind.value, error=str(e), exc_info=True)
            self._diagnostics.record("engine.queue", f"Enqueue failed: {e}", error_code="enqueue_failed")
            return EnqueueResult(accepted=False, error=truncate_text(str(e)))
        return EnqueueResult(accepted=True, item_id=item_id)

    def _visible(self, now: datetime) -> ColumnElement[bool]:
        t = queue_items_table
        return and_(
            t.c.processed.is_(False),
            t.c.process_attempts < self._config.current().queue.max_attempts,
            or_(t.c.lease_until.is_(None), t.c.lease_until < now),
        )

    def drain(self, max_items: int) -> list[QueueItem]:
        """Select up to max_items visible items in policy order.

        Selection does not reserve anything; call claim() before delivering.
        """
        if max_items <= 0:
            return []
        t = queue_items_table
        query = select(t).where(self._visible(self._clock.now())).order_by(*self._policy().order_by(t)).limit(max_items)
        if self._db.supports_skip_locked:
            query = query.with_for_update(skip_locked=True)
        with self._db.connection() as conn:
            rows = conn.execute(query).fetchall()
        return [
            QueueItem(
                item_id=row.item_id,
                kind=EnvelopeKind(row.kind),
                payload=row.payload,
                created_at=as_utc(row.created_at),
                attempts=row.process_attempts,
                last_attempt_at=as_utc(row.last_attempt_at) if row.last_attempt_at is not None else None,
                last_error=row.last_error,
            )
            for row in rows
        ]

    def claim(self, item: QueueItem) -> bool:
        """Take ownership of a drained item for one attempt.

        Returns:
            False if another worker already claimed or resolved the item.
        """
        t = queue_items_table
        now = self._clock.now()
        lease_until = now + timedelta(seconds=self._config.current().queue.lease_seconds)
        stmt = (
            update(t)
            .where(
                t.c.item_id == item.item_id,
                t.c.processed.is_(False),
                t.c.process_attempts == item.attempts,
                or_(t.c.lease_until.is_(None), t.c.lease_until < now),
            )
            .values(
                process_attempts=t.c.process_attempts + 1,
                last_attempt_at=now,
                lease_until=lease_until,
            )
        )
        with self._db.connection() as conn:
            return conn.execute(stmt).rowcount == 1

    def mark_processed(self, item_id: int) -> bool:
        t = queue_items_table
        stmt = (
            update(t)
            .where(t.c.item_id == item_id, t.c.processed.is_(False))
            .values(processed=True, processed_at=self._clock.now(), lease_until=None)
        )
        with self._db.connection() as conn:
            return conn.execute(stmt).rowcount == 1

    def record_failure(self, item_id: int, error: str) -> bool:
        t = queue_items_table
        stmt = (
            update(t)
            .where(t.c.item_id == item_id, t.c.processed.is_(False))
            .values(last_error=truncate_text(error), lease_until=None)
        )
        with self._db.connection() as conn:
            return conn.execute(stmt).rowcount == 1

    def depth(self) -> int:
        """Items still eligible for delivery (unprocessed and under the attempt cap)."""
        t = queue_items_table
        query = select(func.count()).where(
            t.c.processed.is_(False),
            t.c.process_attempts < self._config.current().queue.max_attempts,
        )
        with self._db.connection() as conn:
            return int(conn.execute(query).scalar_one())

    def stats(self) -> QueueStats:
        t = queue_items_table
        max_attempts = self._config.current().queue.max_attempts
        now = self._clock.now()
        unprocessed = t.c.processed.is_(False)
        query = select(
            func.count().filter(and_(unprocessed, t.c.process_attempts < max_attempts)),
            func.count().filter(t.c.processed.is_(True)),
            func.count().filter(and_(unprocessed, t.c.process_attempts >= max_attempts)),
            func.count().filter(and_(unprocessed, t.c.lease_until.is_not(None), t.c.lease_until >= now)),
        )
        with self._db.connection() as conn:
            pending, processed, exhausted, leased = conn.execute(query).one()
        return QueueStats(pending=int(pending), processed=int(processed), exhausted=int(exhausted), leased=int(leased))

    def inspect(self, item_id: int) -> QueueItemState | None:
        query = select(queue_items_table).where(queue_items_table.c.item_id == item_id)
        with self._db.connection() as conn:
            row = conn.execute(query).fetchone()
        if row is None:
            return None
        return QueueItemState(
            item_id=row.item_id,
            kind=EnvelopeKind(row.kind),
            processed=bool(row.processed),
            attempts=row.process_attempts,
            last_error=row.last_error,
            last_attempt_at=as_utc(row.last_attempt_at) if row.last_attempt_at is not None else None,
            processed_at=as_utc(row.processed_at) if row.processed_at is not None else None,
        )

    def purge_processed(self, older_than: timedelta | None = None) -> int:
        """Delete processed items older than the retention period.

        Unprocessed and exhausted items are never purged.
        """
        if older_than is None:
            older_than = timedelta(days=self._config.current().queue.retention_days)
        cutoff = self._clock.now() - older_than
        t = queue_items_table
        with self._db.connection() as conn:
            deleted = conn.execute(delete(t).where(t.c.processed.is_(True), t.c.processed_at < cutoff)).rowcount
        logger.info("queue_purged", deleted=deleted, cutoff=cutoff.isoformat())
        return deleted

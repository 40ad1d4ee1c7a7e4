# src/telerelay/core/diagnostics.py
"""Independently committed diagnostics sink.

Diagnostics record why something went wrong inside the relay (a payload
that would not parse, an attribute set that had to be dropped, a failed
failover step). Each record is written in its own transaction so that a
rollback elsewhere never erases it, and a failure to write one is logged
and swallowed: diagnostics must never make things worse.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

import structlog
from sqlalchemy import delete, insert, select
from sqlalchemy.exc import SQLAlchemyError

from telerelay.contracts.results import truncate_text
from telerelay.core.store.database import as_utc
from telerelay.core.store.schema import diagnostics_table

if TYPE_CHECKING:
    from telerelay.core.store.database import RelayDB

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class Diagnostic:
    """One stored diagnostic record."""

    recorded_at: datetime
    module: str
    message: str
    error_code: str | None = None
    trace_id: str | None = None
    span_id: str | None = None


class DiagnosticSink(Protocol):
    """Anything that can accept a diagnostic without raising."""

    def record(
        self,
        module: str,
        message: str,
        *,
        error_code: str | None = None,
        trace_id: str | None = None,
        span_id: str | None = None,
    ) -> None: ...


class NullDiagnostics:
    """Sink that only logs; used where no store is available."""

    def record(
        self,
        module: str,
        message: str,
        *,
        error_code: str | None = None,
        trace_id: str | None = None,
        span_id: str | None = None,
    ) -> None:
        logger.debug("diagnostic", module=module, message=message, error_code=error_code)


class StoreDiagnostics:
    """Writes diagnostics to the store, one transaction per record.

    Args:
        db: Relay store
        now: Callable returning the current UTC time
    """

    def __init__(self, db: RelayDB, now: Callable[[], datetime]) -> None:
        self._db = db
        self._now = now

    def record(
        self,
        module: str,
        message: str,
        *,
        error_code: str | None = None,
        trace_id: str | None = None,
        span_id: str | None = None,
    ) -> None:
        try:
            with self._db.connection() as conn:
                conn.execute(
                    insert(diagnostics_table).values(
                        recorded_at=self._now(),
                        module=module[:128],
                        message=truncate_text(message),
                        error_code=error_code,
                        trace_id=trace_id,
                        span_id=span_id,
                    )
                )
        except SQLAlchemyError as e:
            logger.warning(
                "diagnostic_write_failed",
                module=module,
                message=message,
                error=str(e),
            )

    def recent(self, limit: int = 50) -> list[Diagnostic]:
        query = select(diagnostics_table).order_by(diagnostics_table.c.diagnostic_id.desc()).limit(limit)
        with self._db.connection() as conn:
            rows = conn.execute(query).fetchall()
        return [
            Diagnostic(
                recorded_at=as_utc(row.recorded_at),
                module=row.module,
                message=row.message,
                error_code=row.error_code,
                trace_id=row.trace_id,
                span_id=row.span_id,
            )
            for row in rows
        ]

    def purge_before(self, cutoff: datetime) -> int:
        with self._db.connection() as conn:
            return conn.execute(delete(diagnostics_table).where(diagnostics_table.c.recorded_at < cutoff)).rowcount

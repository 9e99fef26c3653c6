from __future__ import annotations

import json
import logging
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Iterator


@dataclass
class IngestionRun:
    """Tracks a single fetch run's state."""

    session_id: str
    target_table: str
    metadata: dict[str, Any] = field(default_factory=dict)
    pages_fetched: int = 0
    rows_inserted: int = 0
    rows_duplicate: int = 0
    status: str = "running"
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None

    def fail(self, error: str) -> None:
        self.status = "failed"
        self.error = error

    def cancel(self) -> None:
        self.status = "cancelled"

    def __enter__(self) -> IngestionRun:
        self.started_at = datetime.now(UTC)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.completed_at = datetime.now(UTC)
        if exc_type is not None:
            self.fail(str(exc_val))
        elif self.status == "running":
            self.status = "success"
        return False


class IngestionTracker:
    """
    Keeps a history of fetch runs.

    When backed by a PostgresEngine, persists each finished run to
    meta.ingest_log. When no engine is provided, operates in memory-only
    mode (useful for testing or preview workflows).

    Only the most recent history_limit runs are kept in memory.
    """

    TABLE_NAME = "meta.ingest_log"

    def __init__(self, engine: Any | None = None, history_limit: int = 1000) -> None:
        self.engine = engine
        self.logger = logging.getLogger("ingestion_tracker")
        self._runs: deque[IngestionRun] = deque(maxlen=history_limit)

    @contextmanager
    def track(
        self,
        session_id: str,
        target_table: str,
        metadata: dict[str, Any] | None = None,
    ) -> Iterator[IngestionRun]:
        """Create, yield, and persist an IngestionRun."""
        run = IngestionRun(
            session_id=session_id,
            target_table=target_table,
            metadata=metadata or {},
        )
        self._runs.append(run)
        try:
            with run:
                yield run
        finally:
            self._persist_run(run)

    def _persist_run(self, run: IngestionRun) -> None:
        if self.engine is None:
            return
        try:
            self.engine.execute(
                f"""
                insert into {self.TABLE_NAME}
                    (session_id, target_table, status,
                     pages_fetched, rows_inserted, rows_duplicate, metadata,
                     started_at, completed_at, error_message)
                values
                    (%(session_id)s, %(target_table)s, %(status)s,
                     %(pages_fetched)s, %(rows_inserted)s, %(rows_duplicate)s,
                     %(metadata)s, %(started_at)s, %(completed_at)s,
                     %(error_message)s)
                """,
                {
                    "session_id": run.session_id,
                    "target_table": run.target_table,
                    "status": run.status,
                    "pages_fetched": run.pages_fetched,
                    "rows_inserted": run.rows_inserted,
                    "rows_duplicate": run.rows_duplicate,
                    "metadata": json.dumps(run.metadata, default=str),
                    "started_at": run.started_at,
                    "completed_at": run.completed_at,
                    "error_message": run.error,
                },
            )
        except Exception as e:
            self.logger.error("Failed to persist ingestion run: %s", e)

    def runs_for(self, session_id: str) -> list[IngestionRun]:
        return [r for r in self._runs if r.session_id == session_id]

    @property
    def runs(self) -> list[IngestionRun]:
        return list(self._runs)

    @property
    def last_run(self) -> IngestionRun | None:
        return self._runs[-1] if self._runs else None

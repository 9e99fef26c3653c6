from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass, field, replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Callable

PROGRESS_UPDATED = "progress.updated"
PROGRESS_CLEARED = "progress.cleared"


class Phase(str, Enum):
    STARTING = "starting"
    ANALYZING = "analyzing"
    CREATING_TABLE = "creating_table"
    FETCHING = "fetching"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_PHASES = frozenset({Phase.COMPLETED, Phase.ERROR, Phase.CANCELLED})


@dataclass
class ProgressState:
    """Progress of one ingestion run. Lives in memory only."""

    session_id: str
    phase: Phase = Phase.STARTING
    current_page: int = 0
    total_pages: int | None = None
    fetched_records: int = 0
    total_records: int = 0
    message: str = ""
    error: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    percentage: int = 0
    estimated_time_remaining: int | None = None
    average_page_time: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["phase"] = self.phase.value
        return data


@dataclass
class ProgressEvent:
    name: str
    session_id: str
    state: ProgressState | None = None


Listener = Callable[[ProgressEvent], None]


@dataclass
class _Entry:
    state: ProgressState
    timings: deque = field(default_factory=deque)


class ProgressTracker:
    """
    Session-keyed store of ProgressState.

    One orchestrator owns each session's entry and is its only writer;
    everyone else reads copies. Every change is pushed synchronously to
    subscribed listeners as a ProgressEvent.

    Lifecycle:
        tracker.initialize(session_id)      # STARTING, 0%
        tracker.update(session_id, phase=Phase.FETCHING, current_page=3)
        tracker.mark_completed(session_id, total_records=120, total_pages=6)
        tracker.clear(session_id)           # or let cleanup_expired sweep it
    """

    def __init__(
        self,
        retention_seconds: int = 3600,
        latency_window: int = 10,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.retention = timedelta(seconds=retention_seconds)
        self.latency_window = latency_window
        self._clock = clock or (lambda: datetime.now(UTC))
        self._entries: dict[str, _Entry] = {}
        self._listeners: list[Listener] = []
        self._lock = threading.RLock()
        self.logger = logging.getLogger("progress_tracker")

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a callable that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, name: str, session_id: str, state: ProgressState | None) -> None:
        with self._lock:
            listeners = list(self._listeners)
        event = ProgressEvent(name=name, session_id=session_id, state=state)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                self.logger.exception("Progress listener failed for %s", session_id)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def initialize(self, session_id: str, message: str = "Starting fetch") -> ProgressState:
        state = ProgressState(
            session_id=session_id,
            message=message,
            start_time=self._clock(),
        )
        with self._lock:
            self._entries[session_id] = _Entry(
                state=state, timings=deque(maxlen=self.latency_window)
            )
            snapshot = replace(state)
        self._emit(PROGRESS_UPDATED, session_id, snapshot)
        return snapshot

    def update(self, session_id: str, **changes: Any) -> ProgressState | None:
        """
        Merge *changes* into the session's state.

        Fields not given are left alone. Percentage and remaining time are
        recomputed afterwards. Unknown sessions and terminal entries are
        left untouched.
        """
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is None:
                self.logger.warning("No progress entry for session %s", session_id)
                return None
            if entry.state.is_terminal:
                self.logger.debug(
                    "Ignoring update for finished session %s (%s)",
                    session_id,
                    entry.state.phase.value,
                )
                return replace(entry.state)
            for key, value in changes.items():
                if not hasattr(entry.state, key):
                    raise AttributeError(f"ProgressState has no field {key!r}")
                setattr(entry.state, key, value)
            self._recompute(entry)
            snapshot = replace(entry.state)
        self._emit(PROGRESS_UPDATED, session_id, snapshot)
        return snapshot

    def batch_update(self, updates: dict[str, dict[str, Any]]) -> None:
        for session_id, changes in updates.items():
            self.update(session_id, **changes)

    def record_page_time(self, session_id: str, elapsed_ms: float) -> None:
        """Add one page latency to the sliding window used for the ETA."""
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is None:
                return
            entry.timings.append(elapsed_ms)
            self._recompute(entry)

    def mark_completed(
        self, session_id: str, total_records: int, total_pages: int
    ) -> ProgressState | None:
        return self._finish(
            session_id,
            Phase.COMPLETED,
            total_records=total_records,
            total_pages=total_pages,
            current_page=total_pages,
            percentage=100,
            estimated_time_remaining=0,
            message=f"Fetched {total_records} records from {total_pages} pages",
        )

    def mark_error(self, session_id: str, error: str) -> ProgressState | None:
        return self._finish(session_id, Phase.ERROR, error=error, message=error)

    def mark_cancelled(self, session_id: str) -> ProgressState | None:
        return self._finish(session_id, Phase.CANCELLED, message="Fetch cancelled")

    def _finish(self, session_id: str, phase: Phase, **changes: Any) -> ProgressState | None:
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is None:
                self.logger.warning("No progress entry for session %s", session_id)
                return None
            if entry.state.is_terminal:
                return replace(entry.state)
            for key, value in changes.items():
                setattr(entry.state, key, value)
            entry.state.phase = phase
            entry.state.end_time = self._clock()
            snapshot = replace(entry.state)
        self.logger.info("Session %s finished: %s", session_id, phase.value)
        self._emit(PROGRESS_UPDATED, session_id, snapshot)
        return snapshot

    def clear(self, session_id: str) -> bool:
        with self._lock:
            removed = self._entries.pop(session_id, None) is not None
        if removed:
            self._emit(PROGRESS_CLEARED, session_id, None)
        return removed

    def cleanup_expired(self, now: datetime | None = None) -> int:
        """Drop terminal entries that ended more than the retention window ago."""
        now = now or self._clock()
        with self._lock:
            expired = [
                sid
                for sid, entry in self._entries.items()
                if entry.state.is_terminal
                and entry.state.end_time is not None
                and now - entry.state.end_time > self.retention
            ]
        for sid in expired:
            self.clear(sid)
        if expired:
            self.logger.info("Swept %d expired progress entries", len(expired))
        return len(expired)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_progress(self, session_id: str) -> ProgressState | None:
        with self._lock:
            entry = self._entries.get(session_id)
            return replace(entry.state) if entry else None

    def get_all_active(self) -> list[ProgressState]:
        with self._lock:
            return [
                replace(e.state)
                for e in self._entries.values()
                if not e.state.is_terminal
            ]

    def is_active(self, session_id: str) -> bool:
        with self._lock:
            entry = self._entries.get(session_id)
            return entry is not None and not entry.state.is_terminal

    def get_execution_time(self, session_id: str) -> float | None:
        """Seconds from start to end, or to now while still running."""
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is None or entry.state.start_time is None:
                return None
            end = entry.state.end_time or self._clock()
            return (end - entry.state.start_time).total_seconds()

    def stats(self) -> dict[str, int]:
        with self._lock:
            phases = [e.state.phase for e in self._entries.values()]
        return {
            "total": len(phases),
            "active": sum(1 for p in phases if p not in TERMINAL_PHASES),
            "completed": phases.count(Phase.COMPLETED),
            "failed": phases.count(Phase.ERROR),
            "cancelled": phases.count(Phase.CANCELLED),
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _recompute(entry: _Entry) -> None:
        state = entry.state
        if state.total_pages and state.total_pages > 0:
            pct = round(state.current_page / state.total_pages * 100)
            state.percentage = max(0, min(100, pct))
        if entry.timings:
            avg = sum(entry.timings) / len(entry.timings)
            state.average_page_time = avg
            if state.total_pages:
                remaining = max(state.total_pages - state.current_page, 0)
                state.estimated_time_remaining = round(remaining * avg / 1000)

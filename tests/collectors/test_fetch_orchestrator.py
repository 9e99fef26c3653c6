from __future__ import annotations

from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from requests.exceptions import ConnectionError

from apitable.collectors.config import FetchConfig, FetchConfigStore, FetchSettings
from apitable.collectors.exceptions import (
    HttpStatusError,
    NotFoundError,
    TransientNetworkError,
)
from apitable.collectors.fetch_orchestrator import (
    EMPTY_SAMPLE_MESSAGE,
    FetchOrchestrator,
)
from apitable.collectors.http_client import HttpResponse
from apitable.db.batch_writer import InsertResult
from apitable.db.dynamic_table import TableCreationResult, TableInfo
from apitable.ingest.hashing import content_hash
from apitable.tracking.ingestion_tracker import IngestionTracker
from apitable.tracking.progress import Phase, ProgressTracker
from apitable.tracking.schema_registry import SchemaRegistry

URL = "https://api.example.com/items"

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeEngine:
    """Counts outermost commits and rollbacks of unit_of_work scopes."""

    def __init__(self):
        self.depth = 0
        self.commits = 0
        self.rollbacks = 0

    @contextmanager
    def unit_of_work(self):
        self.depth += 1
        try:
            yield MagicMock()
        except Exception:
            if self.depth == 1:
                self.rollbacks += 1
            raise
        else:
            if self.depth == 1:
                self.commits += 1
        finally:
            self.depth -= 1


class FakeDatabase:
    def __init__(self):
        self.tables: dict[str, object] = {}
        self.rows: dict[str, dict[tuple, dict]] = {}


class FakeTableManager:
    def __init__(self, db: FakeDatabase, fail_create: bool = False):
        self.db = db
        self.fail_create = fail_create
        self.created: list[str] = []

    def create_table(self, descriptor):
        if self.fail_create:
            return TableCreationResult(
                descriptor.table_name, created=False, error="permission denied"
            )
        self.db.tables[descriptor.table_name] = descriptor
        self.db.rows[descriptor.table_name] = {}
        self.created.append(descriptor.table_name)
        return TableCreationResult(
            descriptor.table_name, created=True, fields_created=len(descriptor.fields)
        )

    def get_table_info(self, table_name):
        return TableInfo(table_name=table_name, exists=table_name in self.db.tables)

    def count_session_rows(self, table_name, session_id):
        return sum(1 for sid, _ in self.db.rows.get(table_name, {}) if sid == session_id)

    def cleanup_session_tables(self, session_id):
        for name in [t for t in self.db.tables if t.endswith(session_id)]:
            del self.db.tables[name]
            del self.db.rows[name]


class FailingCountTableManager(FakeTableManager):
    def count_session_rows(self, table_name, session_id):
        raise RuntimeError("connection lost")


class FakeWriter:
    """Deduplicates on (session_id, content hash) like the real unique key."""

    def __init__(self, db: FakeDatabase, fail_on_page: int | None = None):
        self.db = db
        self.fail_on_page = fail_on_page
        self.forgotten: list[str] = []

    def insert_batch(self, table_name, raw_records, session_id, page_number):
        if not raw_records:
            return InsertResult()
        if page_number == self.fail_on_page:
            raise RuntimeError("disk full")
        rows = self.db.rows[table_name]
        result = InsertResult()
        for record in raw_records:
            key = (session_id, content_hash(record))
            if key in rows:
                result.duplicates += 1
            else:
                rows[key] = record
                result.inserted += 1
        return result

    def forget_table(self, table_name):
        self.forgotten.append(table_name)


class FakeHttp:
    """Serves payloads keyed by the requested page number."""

    def __init__(self, pages: dict[int, object], page_field: str = "page"):
        self.pages = pages
        self.page_field = page_field
        self.requested: list[int] = []

    def request(self, url, method="GET", headers=None, query_params=None, body=None,
                timeout_ms=30000, max_retries=3):
        page = (query_params or {}).get(self.page_field)
        if page is None and isinstance(body, dict):
            page = body.get(self.page_field)
        self.requested.append(page)
        payload = self.pages.get(page, [])
        if isinstance(payload, Exception):
            raise payload
        if isinstance(payload, list) and payload and isinstance(payload[0], Exception):
            raise payload.pop(0)
        return HttpResponse(status=200, data=payload)


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=UTC)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


def records(page: int, count: int) -> list[dict]:
    return [{"id": page * 100 + i, "name": f"row {page}-{i}"} for i in range(count)]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def progress():
    return ProgressTracker()


@pytest.fixture
def build(db, progress):
    def _build(pages, writer=None, table_manager=None, **config_kwargs):
        http = FakeHttp(pages)
        config_kwargs.setdefault("page_size", 2)
        config = FetchConfig(session_id="s1", api_url=URL, **config_kwargs)
        store = FetchConfigStore()
        store.register(config)
        orchestrator = FetchOrchestrator(
            FakeEngine(),
            progress=progress,
            http_client=http,
            settings=FetchSettings(page_delay_ms=0, page_retry_delay_ms=0),
            config_store=store,
            table_manager=table_manager or FakeTableManager(db),
            writer=writer or FakeWriter(db),
            schema_registry=SchemaRegistry(),
            tracker=IngestionTracker(),
            sleep=lambda seconds: None,
        )
        return orchestrator, http

    return _build


# ---------------------------------------------------------------------------
# Fetch-all mode
# ---------------------------------------------------------------------------


class TestFetchAll:
    def test_underfull_page_is_the_last(self, build, progress):
        orchestrator, http = build({1: records(1, 2), 2: records(2, 2), 3: records(3, 1)})
        result = orchestrator.execute_fetch("s1")

        assert result.success is True
        assert result.phase == Phase.COMPLETED
        assert result.table_name == "data_s1"
        assert result.total_records == 5
        assert result.total_pages == 3
        assert result.new_records == 5
        assert http.requested == [1, 2, 3]

        state = progress.get_progress("s1")
        assert state.phase == Phase.COMPLETED
        assert state.percentage == 100
        assert state.total_records == 5

    def test_stops_after_consecutive_empty_pages(self, build):
        orchestrator, http = build({1: records(1, 2), 2: records(2, 2)})
        result = orchestrator.execute_fetch("s1")

        assert result.phase == Phase.COMPLETED
        assert http.requested == [1, 2, 3, 4, 5]
        assert result.total_pages == 2
        assert result.total_records == 4

    def test_empty_streak_resets_on_data(self, build):
        orchestrator, http = build(
            {1: records(1, 2), 2: [], 3: [], 4: records(4, 2), 5: records(5, 1)}
        )
        result = orchestrator.execute_fetch("s1")
        assert http.requested == [1, 2, 3, 4, 5]
        assert result.total_pages == 5

    def test_max_pages_caps_the_walk(self, build):
        pages = {p: records(p, 2) for p in range(1, 10)}
        orchestrator, http = build(pages, max_pages=4)
        result = orchestrator.execute_fetch("s1")
        assert http.requested == [1, 2, 3, 4]
        assert result.total_pages == 4

    def test_caller_page_size_drives_underfull_check(self, build):
        orchestrator, http = build(
            {1: records(1, 3), 2: records(2, 2)}, query_params={"size": 3}
        )
        result = orchestrator.execute_fetch("s1")
        assert http.requested == [1, 2]
        assert result.total_records == 5

    def test_phases_in_order(self, build, progress):
        seen = []
        progress.subscribe(
            lambda e: seen.append(e.state.phase)
            if e.state and (not seen or seen[-1] != e.state.phase)
            else None
        )
        orchestrator, _ = build({1: records(1, 2), 2: records(2, 1)})
        orchestrator.execute_fetch("s1")
        assert seen == [
            Phase.STARTING,
            Phase.ANALYZING,
            Phase.CREATING_TABLE,
            Phase.FETCHING,
            Phase.COMPLETED,
        ]


# ---------------------------------------------------------------------------
# Paginated mode
# ---------------------------------------------------------------------------


class TestPaginated:
    def test_walks_the_configured_range(self, build, progress):
        pages = {p: records(p, 2) for p in range(1, 6)}
        orchestrator, http = build(pages, fetch_mode="paginated", start_page=2, end_page=4)
        result = orchestrator.execute_fetch("s1")
        assert http.requested == [2, 3, 4]
        assert result.total_pages == 4
        assert result.total_records == 6

    def test_underfull_pages_do_not_stop_paginated_runs(self, build):
        pages = {1: records(1, 1), 2: records(2, 1), 3: records(3, 1)}
        orchestrator, http = build(pages, fetch_mode="paginated", end_page=3)
        orchestrator.execute_fetch("s1")
        assert http.requested == [1, 2, 3]

    def test_empty_page_stops_early(self, build):
        orchestrator, http = build(
            {1: records(1, 2), 3: records(3, 2)}, fetch_mode="paginated", end_page=3
        )
        result = orchestrator.execute_fetch("s1")
        assert http.requested == [1, 2]
        assert result.total_pages == 1

    def test_single_page_run(self, build, progress):
        orchestrator, http = build({1: records(1, 2)}, fetch_mode="paginated")
        result = orchestrator.execute_fetch("s1")
        assert http.requested == [1]
        assert result.success is True

    def test_total_pages_is_reported_while_fetching(self, build, progress):
        totals = []
        progress.subscribe(
            lambda e: totals.append(e.state.total_pages)
            if e.state and e.state.phase == Phase.FETCHING
            else None
        )
        pages = {p: records(p, 2) for p in range(1, 4)}
        orchestrator, _ = build(pages, fetch_mode="paginated", end_page=3)
        orchestrator.execute_fetch("s1")
        assert set(totals) == {3}


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    def test_empty_first_page_is_an_error(self, build, db, progress):
        orchestrator, _ = build({1: []})
        result = orchestrator.execute_fetch("s1")
        assert result.success is False
        assert result.phase == Phase.ERROR
        assert EMPTY_SAMPLE_MESSAGE in result.error
        assert db.tables == {}
        assert progress.get_progress("s1").phase == Phase.ERROR

    def test_unknown_session_raises(self, build):
        orchestrator, _ = build({})
        with pytest.raises(NotFoundError):
            orchestrator.execute_fetch("nope")

    def test_invalid_config_is_reported(self, build):
        orchestrator, http = build({1: records(1, 1)}, method="TRACE")
        result = orchestrator.execute_fetch("s1")
        assert result.phase == Phase.ERROR
        assert "TRACE" in result.error
        assert http.requested == []

    def test_transient_page_error_is_retried(self, build):
        flaky = [TransientNetworkError("reset")] + records(2, 2)
        orchestrator, http = build({1: records(1, 2), 2: flaky, 3: records(3, 1)})
        result = orchestrator.execute_fetch("s1")
        assert result.success is True
        assert http.requested == [1, 2, 2, 3]
        assert result.total_records == 5

    def test_exhausted_retries_keep_earlier_pages(self, build, db, progress):
        orchestrator, http = build(
            {1: records(1, 2), 2: records(2, 2), 3: TransientNetworkError("timed out")}
        )
        result = orchestrator.execute_fetch("s1")

        assert result.phase == Phase.ERROR
        assert "timed out" in result.error
        assert http.requested == [1, 2, 3, 3, 3]
        assert result.total_pages == 2
        assert result.new_records == 4
        assert len(db.rows["data_s1"]) == 4
        state = progress.get_progress("s1")
        assert state.phase == Phase.ERROR
        assert state.error == "timed out"

    def test_client_errors_are_not_retried(self, build):
        orchestrator, http = build({1: HttpStatusError(403, "forbidden")})
        result = orchestrator.execute_fetch("s1")
        assert result.phase == Phase.ERROR
        assert http.requested == [1]

    def test_unexpected_errors_become_error_results(self, build):
        orchestrator, _ = build({1: ConnectionError("raw")})
        result = orchestrator.execute_fetch("s1")
        assert result.phase == Phase.ERROR
        assert result.error == "raw"

    def test_table_creation_failure(self, build, db):
        manager = FakeTableManager(db, fail_create=True)
        orchestrator, _ = build({1: records(1, 2)}, table_manager=manager)
        result = orchestrator.execute_fetch("s1")
        assert result.phase == Phase.ERROR
        assert "permission denied" in result.error
        assert orchestrator.schema_registry.get("s1") is None

    def test_first_page_failure_rolls_back_table_setup(self, build, db):
        writer = FakeWriter(db, fail_on_page=1)
        orchestrator, _ = build({1: records(1, 2)}, writer=writer)
        result = orchestrator.execute_fetch("s1")
        assert result.phase == Phase.ERROR
        assert orchestrator.engine.rollbacks == 1
        assert orchestrator.engine.commits == 0
        assert orchestrator.schema_registry.get("s1") is None
        assert "data_s1" in writer.forgotten

    def test_run_is_logged_as_failed(self, build):
        orchestrator, _ = build({1: []})
        orchestrator.execute_fetch("s1")
        run = orchestrator.tracker.last_run
        assert run.status == "failed"
        assert run.target_table == "data_s1"

    def test_final_row_count_failure_is_an_error(self, build, db, progress):
        manager = FailingCountTableManager(db)
        orchestrator, _ = build({1: records(1, 1)}, table_manager=manager)
        result = orchestrator.execute_fetch("s1")

        assert result.success is False
        assert result.phase == Phase.ERROR
        assert result.error == "connection lost"
        assert result.new_records == 1
        assert progress.get_progress("s1").phase == Phase.ERROR
        assert orchestrator.tracker.last_run.status == "failed"
        assert orchestrator.cancel_fetch("s1") is False


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    def test_cancel_stops_before_next_page(self, build, db, progress):
        pages = {p: records(p, 2) for p in range(1, 10)}
        orchestrator, http = build(pages)

        def cancel_after_page_two(event):
            if event.state and event.state.current_page == 2:
                orchestrator.cancel_fetch("s1")

        progress.subscribe(cancel_after_page_two)
        result = orchestrator.execute_fetch("s1")

        assert result.phase == Phase.CANCELLED
        assert result.success is False
        assert http.requested == [1, 2]
        assert len(db.rows["data_s1"]) == 4
        assert progress.get_progress("s1").phase == Phase.CANCELLED
        assert orchestrator.tracker.last_run.status == "cancelled"

    def test_cancel_unknown_session(self, build):
        orchestrator, _ = build({})
        assert orchestrator.cancel_fetch("nobody") is False

    def test_cancel_finished_session(self, build):
        orchestrator, _ = build({1: records(1, 1)})
        orchestrator.execute_fetch("s1")
        assert orchestrator.cancel_fetch("s1") is False


# ---------------------------------------------------------------------------
# Re-runs
# ---------------------------------------------------------------------------


class TestResume:
    def test_rerun_reuses_table_and_counts_duplicates(self, build, db):
        pages = {1: records(1, 2), 2: records(2, 1)}
        manager = FakeTableManager(db)
        orchestrator, _ = build(pages, table_manager=manager)

        first = orchestrator.execute_fetch("s1")
        second = orchestrator.execute_fetch("s1")

        assert first.new_records == 3
        assert second.new_records == 0
        assert second.duplicate_records == 3
        assert second.total_records == 3
        assert manager.created == ["data_s1"]

    def test_rerun_after_reset_recreates(self, build, db, progress):
        manager = FakeTableManager(db)
        orchestrator, _ = build({1: records(1, 1)}, table_manager=manager)
        orchestrator.execute_fetch("s1")
        orchestrator.reset_session("s1")

        assert progress.get_progress("s1") is None
        assert orchestrator.schema_registry.get("s1") is None

        result = orchestrator.execute_fetch("s1")
        assert result.new_records == 1
        assert manager.created == ["data_s1", "data_s1"]


# ---------------------------------------------------------------------------
# Preview
# ---------------------------------------------------------------------------


class TestPreview:
    def test_preview_infers_without_writing(self, build, db):
        orchestrator, http = build({1: {"data": records(1, 2)}}, query_params={"page": 1})
        preview = orchestrator.preview("s1", sample_size=1)

        assert preview.success is True
        assert len(preview.records) == 1
        assert list(preview.fields) == ["data_id", "name"]
        assert preview.detection.has_existing_pagination is True
        assert preview.suggested_page_fields == ["page"]
        assert db.tables == {}

    def test_preview_reports_errors(self, build):
        orchestrator, _ = build({1: {"status": "ok"}})
        preview = orchestrator.preview("s1")
        assert preview.success is False
        assert preview.error


# ---------------------------------------------------------------------------
# Progress housekeeping
# ---------------------------------------------------------------------------


class TestProgressHousekeeping:
    def test_expired_entries_are_swept_when_a_run_starts(self, build):
        clock = FakeClock()
        orchestrator, _ = build({1: records(1, 1)})
        orchestrator.progress = ProgressTracker(retention_seconds=3600, clock=clock)
        orchestrator.config_store.register(
            FetchConfig(session_id="s2", api_url=URL, page_size=2)
        )

        orchestrator.execute_fetch("s1")
        clock.advance(2 * 3600)
        orchestrator.execute_fetch("s2")

        assert orchestrator.progress.get_progress("s1") is None
        assert orchestrator.progress.get_progress("s2").phase == Phase.COMPLETED

    def test_recent_entries_survive_the_sweep(self, build):
        clock = FakeClock()
        orchestrator, _ = build({1: records(1, 1)})
        orchestrator.progress = ProgressTracker(retention_seconds=3600, clock=clock)
        orchestrator.config_store.register(
            FetchConfig(session_id="s2", api_url=URL, page_size=2)
        )

        orchestrator.execute_fetch("s1")
        clock.advance(60)
        orchestrator.execute_fetch("s2")

        assert orchestrator.progress.get_progress("s1").phase == Phase.COMPLETED

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from apitable.collectors.config import (
    FetchConfig,
    FetchConfigStore,
    FetchMode,
    FetchSettings,
)
from apitable.collectors.exceptions import (
    ApiTableError,
    StructuralError,
    TableCreationError,
    TransientNetworkError,
)
from apitable.collectors.extraction import extract_records
from apitable.collectors.http_client import HttpClient
from apitable.collectors.pagination import (
    PaginationDetection,
    PaginationDetector,
    build_page_request,
    effective_page_size,
)
from apitable.db.batch_writer import BatchWriter, InsertResult
from apitable.db.dynamic_table import DynamicTableManager, generate_table_name
from apitable.ingest.retry_policy import RetryPolicy
from apitable.ingest.schema_inference import (
    FieldDefinition,
    SchemaDescriptor,
    SchemaInferrer,
)
from apitable.tracking.ingestion_tracker import IngestionRun, IngestionTracker
from apitable.tracking.progress import Phase, ProgressTracker
from apitable.tracking.schema_registry import SchemaRegistry

EMPTY_SAMPLE_MESSAGE = "cannot infer structure from empty response"


@dataclass
class FetchResult:
    success: bool
    message: str
    session_id: str
    phase: Phase
    table_name: str | None = None
    total_records: int = 0
    total_pages: int = 0
    new_records: int = 0
    duplicate_records: int = 0
    error: str | None = None


@dataclass
class PreviewResult:
    success: bool
    session_id: str
    records: list[dict[str, Any]] = field(default_factory=list)
    fields: dict[str, FieldDefinition] = field(default_factory=dict)
    detection: PaginationDetection | None = None
    suggested_page_fields: list[str] = field(default_factory=list)
    error: str | None = None


class _RunCancelled(Exception):
    """Raised inside a run once cancellation has been observed."""


@dataclass
class _RunState:
    session_id: str
    table_name: str
    page_size: int
    detection: PaginationDetection | None = None
    current_page: int = 0
    last_non_empty_page: int = 0
    pages_fetched: int = 0
    fetched_records: int = 0
    new_records: int = 0
    duplicate_records: int = 0

    def add(self, page: int, count: int, result: InsertResult) -> None:
        self.current_page = page
        self.pages_fetched += 1
        self.fetched_records += count
        self.new_records += result.inserted
        self.duplicate_records += result.duplicates
        if count:
            self.last_non_empty_page = page


class FetchOrchestrator:
    """
    Drives one session's ingestion from first request to terminal phase.

        STARTING -> ANALYZING -> CREATING_TABLE -> FETCHING
                 -> COMPLETED | ERROR | CANCELLED

    Pages are fetched strictly in order and each is written as soon as it
    arrives. The first page's insert shares a transaction with table
    creation; every later page commits on its own, so a failure never
    undoes pages already written.

    Usage:
        orchestrator = FetchOrchestrator(engine, progress=tracker)
        orchestrator.config_store.register(FetchConfig(session_id="s1", api_url=url))
        result = orchestrator.execute_fetch("s1")
    """

    def __init__(
        self,
        engine: Any,
        progress: ProgressTracker | None = None,
        http_client: HttpClient | None = None,
        settings: FetchSettings | None = None,
        config_store: FetchConfigStore | None = None,
        table_manager: DynamicTableManager | None = None,
        writer: BatchWriter | None = None,
        schema_registry: SchemaRegistry | None = None,
        tracker: IngestionTracker | None = None,
        detector: PaginationDetector | None = None,
        inferrer: SchemaInferrer | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.engine = engine
        self.settings = settings or FetchSettings()
        self.progress = progress or ProgressTracker(
            retention_seconds=self.settings.progress_retention_s,
            latency_window=self.settings.latency_window,
        )
        self.config_store = config_store or FetchConfigStore(engine=engine)
        self.table_manager = table_manager or DynamicTableManager(engine)
        self.writer = writer or BatchWriter(
            engine,
            self.table_manager,
            chunk_size=self.settings.insert_chunk_size,
            max_text_length=self.settings.max_text_length,
        )
        self.schema_registry = schema_registry or SchemaRegistry(engine=engine)
        self.tracker = tracker or IngestionTracker(engine=engine)
        self.detector = detector or PaginationDetector()
        self.inferrer = inferrer or SchemaInferrer()
        self.logger = logging.getLogger("fetch_orchestrator")

        self._sleep = sleep
        self._http_client = http_client
        self.page_retry = RetryPolicy(
            max_attempts=self.settings.page_retry_attempts,
            is_retryable=lambda e: isinstance(e, TransientNetworkError),
            wait_seconds=self.settings.page_retry_delay_ms / 1000,
            sleep=sleep,
        )

    @property
    def http_client(self) -> HttpClient:
        if self._http_client is None:
            self._http_client = HttpClient()
        return self._http_client

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def execute_fetch(self, session_id: str) -> FetchResult:
        """
        Run a full fetch for *session_id*.

        Raises:
            NotFoundError: no fetch config exists for the session.

        Every other failure is reported through the returned FetchResult
        and the session's ProgressState.
        """
        config = self.config_store.get(session_id)
        return self.run(config)

    def run(self, config: FetchConfig) -> FetchResult:
        session_id = config.session_id
        table_name = generate_table_name(session_id)
        state = _RunState(
            session_id=session_id, table_name=table_name, page_size=config.page_size
        )
        self.progress.cleanup_expired()
        self.progress.initialize(session_id)

        with self.tracker.track(
            session_id,
            table_name,
            metadata={"api_url": config.base_url, "fetch_mode": config.fetch_mode.value},
        ) as run:
            try:
                self._execute(config, state, run)
                return self._complete(state)
            except _RunCancelled:
                run.cancel()
                return self._cancelled_result(state)
            except Exception as e:
                message = str(e) or type(e).__name__
                if not isinstance(e, ApiTableError):
                    self.logger.exception("Fetch for session %s failed", session_id)
                else:
                    self.logger.error("Fetch for session %s failed: %s", session_id, e)
                run.fail(message)
                self.progress.mark_error(session_id, message)
                return FetchResult(
                    success=False,
                    message=f"Fetch failed: {message}",
                    session_id=session_id,
                    phase=Phase.ERROR,
                    table_name=table_name,
                    total_pages=state.last_non_empty_page,
                    new_records=state.new_records,
                    duplicate_records=state.duplicate_records,
                    error=message,
                )

    def _complete(self, state: _RunState) -> FetchResult:
        session_id = state.session_id
        table_name = state.table_name
        total_records = self.table_manager.count_session_rows(table_name, session_id)
        total_pages = state.last_non_empty_page
        self.progress.mark_completed(session_id, total_records, total_pages)
        self.logger.info(
            "Session %s complete: %d pages, %d new, %d duplicate, %d rows total",
            session_id,
            total_pages,
            state.new_records,
            state.duplicate_records,
            total_records,
        )
        return FetchResult(
            success=True,
            message=f"Fetched {state.fetched_records} records from {total_pages} pages",
            session_id=session_id,
            phase=Phase.COMPLETED,
            table_name=table_name,
            total_records=total_records,
            total_pages=total_pages,
            new_records=state.new_records,
            duplicate_records=state.duplicate_records,
        )

    def cancel_fetch(self, session_id: str) -> bool:
        """
        Request cancellation of an active run.

        The run stops before its next page request; a request already in
        flight is allowed to finish. Rows already written stay. Returns
        False when the session has no active run.
        """
        if not self.progress.is_active(session_id):
            return False
        self.progress.mark_cancelled(session_id)
        self.logger.info("Cancellation requested for session %s", session_id)
        return True

    def preview(self, session_id: str, sample_size: int = 10) -> PreviewResult:
        """Fetch the first page and infer its fields without writing anything."""
        config = self.config_store.get(session_id)
        try:
            config.validate()
            detection = self._detect(config)
            records = self._fetch_page(config, detection, config.start_page)
        except ApiTableError as e:
            return PreviewResult(success=False, session_id=session_id, error=str(e))

        return PreviewResult(
            success=True,
            session_id=session_id,
            records=records[:sample_size],
            fields=self.inferrer.infer(records),
            detection=detection,
            suggested_page_fields=self.detector.detect_suggested_page_fields(
                config.merged_query_params, config.body
            ),
        )

    def reset_session(self, session_id: str) -> None:
        """Drop the session's table, schema record and progress entry."""
        self.table_manager.cleanup_session_tables(session_id)
        self.writer.forget_table(generate_table_name(session_id))
        self.schema_registry.delete(session_id)
        self.progress.clear(session_id)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _execute(self, config: FetchConfig, state: _RunState, run: IngestionRun) -> None:
        session_id = state.session_id
        table_name = state.table_name
        config.validate()
        detection = self._detect(config)
        state.detection = detection
        state.page_size = effective_page_size(config, detection)

        # ANALYZING
        self._enter(session_id, Phase.ANALYZING, "Fetching first page to analyze structure")
        first_page = config.start_page
        started = time.monotonic()
        records = self._fetch_page_with_retry(config, detection, first_page)
        if not records:
            raise StructuralError(EMPTY_SAMPLE_MESSAGE)

        # CREATING_TABLE
        self._enter(session_id, Phase.CREATING_TABLE, f"Preparing table {table_name}")
        result = self._prepare_table(session_id, table_name, records, first_page)
        self._page_done(state, run, first_page, records, result, started)

        # FETCHING
        if self._should_stop(config, state, len(records), empty_streak=0):
            return
        self._enter(
            session_id,
            Phase.FETCHING,
            "Fetching pages",
            total_pages=config.last_page if config.fetch_mode == FetchMode.PAGINATED else None,
        )
        self._fetch_remaining(config, state, run)

    def _prepare_table(
        self,
        session_id: str,
        table_name: str,
        records: list[dict[str, Any]],
        page: int,
    ) -> InsertResult:
        """
        Reuse the session's table if it has one, otherwise infer and create
        it. Creation, the schema record and the first page commit together.
        """
        descriptor = self.schema_registry.get(session_id)
        if descriptor is not None and self.table_manager.get_table_info(table_name).exists:
            self.logger.info("Reusing table %s for session %s", table_name, session_id)
            self._check_cancelled(session_id)
            return self.writer.insert_batch(table_name, records, session_id, page)

        if descriptor is None:
            descriptor = self.inferrer.infer_descriptor(session_id, table_name, records)

        self._check_cancelled(session_id)
        try:
            with self.engine.unit_of_work():
                self._create_table(descriptor)
                self.schema_registry.save(descriptor)
                return self.writer.insert_batch(table_name, records, session_id, page)
        except Exception:
            self.schema_registry.invalidate(session_id)
            self.writer.forget_table(table_name)
            raise

    def _create_table(self, descriptor: SchemaDescriptor) -> None:
        result = self.table_manager.create_table(descriptor)
        if not result.created:
            raise TableCreationError(
                f"Could not create table {result.table_name}: {result.error}"
            )
        self.writer.forget_table(descriptor.table_name)

    def _fetch_remaining(
        self, config: FetchConfig, state: _RunState, run: IngestionRun
    ) -> None:
        session_id = config.session_id
        empty_streak = 0
        for page in range(config.start_page + 1, config.last_page + 1):
            self._sleep(self.settings.page_delay_ms / 1000)
            self._check_cancelled(session_id)

            started = time.monotonic()
            records = self._fetch_page_with_retry(config, state.detection, page)
            result = self.writer.insert_batch(
                state.table_name, records, session_id, page
            )
            self._page_done(state, run, page, records, result, started)

            empty_streak = 0 if records else empty_streak + 1
            if self._should_stop(config, state, len(records), empty_streak):
                return

        self.logger.warning(
            "Session %s reached its page limit (%d)", session_id, config.last_page
        )

    def _should_stop(
        self, config: FetchConfig, state: _RunState, count: int, empty_streak: int
    ) -> bool:
        if config.fetch_mode == FetchMode.PAGINATED:
            if count == 0:
                self.logger.info("Page %d was empty; stopping", state.current_page)
                return True
            return state.current_page >= config.last_page
        if empty_streak >= self.settings.max_empty_pages:
            self.logger.info(
                "%d consecutive empty pages; stopping after page %d",
                empty_streak,
                state.current_page,
            )
            return True
        if 0 < count < state.page_size:
            self.logger.info(
                "Page %d returned %d of %d records; treating it as the last",
                state.current_page,
                count,
                state.page_size,
            )
            return True
        return state.current_page >= config.last_page

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------

    def _detect(self, config: FetchConfig) -> PaginationDetection:
        return self.detector.detect(config.merged_query_params, config.body)

    def _fetch_page(
        self, config: FetchConfig, detection: PaginationDetection, page: int
    ) -> list[dict[str, Any]]:
        query, body = build_page_request(config, detection, page)
        response = self.http_client.request(
            config.base_url,
            method=config.method,
            headers=config.headers,
            query_params=query,
            body=body,
            timeout_ms=config.timeout_ms,
            max_retries=config.max_retries,
        )
        return extract_records(response.data, config.data_path)

    def _fetch_page_with_retry(
        self, config: FetchConfig, detection: PaginationDetection, page: int
    ) -> list[dict[str, Any]]:
        return self.page_retry.run(
            lambda p: self._fetch_page(config, detection, p), page
        )

    def _page_done(
        self,
        state: _RunState,
        run: IngestionRun,
        page: int,
        records: list[dict[str, Any]],
        result: InsertResult,
        started: float,
    ) -> None:
        state.add(page, len(records), result)
        run.pages_fetched = state.pages_fetched
        run.rows_inserted = state.new_records
        run.rows_duplicate = state.duplicate_records

        self.logger.info(
            "Page %d: fetched %d records (%d new, %d duplicate)",
            page,
            len(records),
            result.inserted,
            result.duplicates,
        )
        self.progress.record_page_time(
            state.session_id, (time.monotonic() - started) * 1000
        )
        self.progress.update(
            state.session_id,
            current_page=page,
            fetched_records=state.fetched_records,
            total_records=state.new_records,
            message=f"Fetched page {page}",
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _enter(self, session_id: str, phase: Phase, message: str, **changes: Any) -> None:
        self._check_cancelled(session_id)
        self.progress.update(session_id, phase=phase, message=message, **changes)

    def _check_cancelled(self, session_id: str) -> None:
        current = self.progress.get_progress(session_id)
        if current is not None and current.phase == Phase.CANCELLED:
            raise _RunCancelled()

    def _cancelled_result(self, state: _RunState) -> FetchResult:
        self.logger.info(
            "Session %s cancelled after %d pages", state.session_id, state.pages_fetched
        )
        return FetchResult(
            success=False,
            message="Fetch cancelled",
            session_id=state.session_id,
            phase=Phase.CANCELLED,
            table_name=state.table_name,
            total_pages=state.last_non_empty_page,
            new_records=state.new_records,
            duplicate_records=state.duplicate_records,
        )

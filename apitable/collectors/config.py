from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any
from urllib.parse import parse_qsl, urlsplit, urlunsplit

from apitable.collectors.exceptions import NotFoundError, ValidationError

ALLOWED_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")


class FetchMode(str, Enum):
    PAGINATED = "paginated"
    ALL = "all"


class PaginationType(str, Enum):
    PAGE = "page"
    OFFSET = "offset"


@dataclass
class FetchConfig:
    """
    How to call one session's endpoint and walk its pages.

    Attributes:
        session_id:        Session the fetched records belong to.
        api_url:           Endpoint URL. An embedded query string is merged
                           under query_params (explicit params win).
        method:            HTTP verb.
        headers:           Extra request headers.
        query_params:      Query-string parameters sent with every page.
        body:              JSON body for non-GET requests.
        fetch_mode:        PAGINATED walks start_page..end_page; ALL walks
                           until the source runs dry.
        pagination_type:   PAGE writes a page number, OFFSET a row offset.
        page_field:        Page parameter name. None means detect it, then
                           fall back to "page".
        page_size_field:   Page-size parameter name. None means detect it,
                           then fall back to "size".
        page_start_value:  Value the source uses for the first page. None
                           means 1 for PAGE and 0 for OFFSET.
        page_size:         Records requested per page.
        step_size:         Offset increment per page. Defaults to page_size.
        start_page:        First page (1-based) to fetch.
        end_page:          Last page for PAGINATED mode. None means start_page.
        max_pages:         Hard cap on pages per run, for either mode.
        data_path:         Path to the record list inside the response,
                           e.g. "data.items" or "[0].data.rank_list".
        timeout_ms:        Per-request timeout. 0 means unbounded.
        max_retries:       Retries per request inside the HTTP client.
    """

    session_id: str
    api_url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    query_params: dict[str, Any] = field(default_factory=dict)
    body: Any = None
    fetch_mode: FetchMode = FetchMode.ALL
    pagination_type: PaginationType = PaginationType.PAGE
    page_field: str | None = None
    page_size_field: str | None = None
    page_start_value: int | None = None
    page_size: int = 20
    step_size: int | None = None
    start_page: int = 1
    end_page: int | None = None
    max_pages: int = 1000
    data_path: str | None = None
    timeout_ms: int = 30000
    max_retries: int = 3

    def __post_init__(self) -> None:
        self.method = self.method.upper()
        self.fetch_mode = FetchMode(self.fetch_mode)
        self.pagination_type = PaginationType(self.pagination_type)

    @property
    def first_page_value(self) -> int:
        if self.page_start_value is not None:
            return self.page_start_value
        return 0 if self.pagination_type == PaginationType.OFFSET else 1

    @property
    def base_url(self) -> str:
        """api_url with its query string and fragment removed."""
        parts = urlsplit(self.api_url)
        return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))

    @property
    def merged_query_params(self) -> dict[str, Any]:
        """Query params embedded in api_url, overridden by query_params."""
        embedded = dict(parse_qsl(urlsplit(self.api_url).query, keep_blank_values=True))
        return {**embedded, **self.query_params}

    @property
    def last_page(self) -> int:
        """Highest page index this config may fetch."""
        cap = self.start_page + self.max_pages - 1
        if self.fetch_mode == FetchMode.PAGINATED:
            return min(self.end_page or self.start_page, cap)
        return cap

    def validate(self) -> FetchConfig:
        parts = urlsplit(self.api_url or "")
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValidationError(f"Invalid API URL: {self.api_url!r}")
        if self.method not in ALLOWED_METHODS:
            raise ValidationError(f"Unsupported HTTP method: {self.method}")
        if self.page_size <= 0:
            raise ValidationError("page_size must be positive")
        if self.step_size is not None and self.step_size <= 0:
            raise ValidationError("step_size must be positive")
        if self.start_page < 1:
            raise ValidationError("start_page must be >= 1")
        if self.max_pages < 1:
            raise ValidationError("max_pages must be >= 1")
        if self.end_page is not None and self.end_page < self.start_page:
            raise ValidationError(
                f"end_page {self.end_page} is before start_page {self.start_page}"
            )
        if self.timeout_ms < 0:
            raise ValidationError("timeout_ms must be >= 0")
        return self

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FetchConfig:
        """Build from a mapping, ignoring keys that are not config fields."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class FetchSettings:
    """
    Process-wide knobs for the fetch loop.

    Attributes:
        page_delay_ms:          Pause between page requests.
        max_empty_pages:        Consecutive empty pages that end a fetch-all run.
        page_retry_attempts:    Attempts per page on transient network errors.
        page_retry_delay_ms:    Fixed pause between those attempts.
        insert_chunk_size:      Rows per INSERT statement.
        max_text_length:        Longest text value kept, in characters.
        progress_retention_s:   Age after which finished progress entries are swept.
        latency_window:         Page timings kept for the remaining-time estimate.
    """

    page_delay_ms: int = 100
    max_empty_pages: int = 3
    page_retry_attempts: int = 3
    page_retry_delay_ms: int = 2000
    insert_chunk_size: int = 1000
    max_text_length: int = 65535
    progress_retention_s: int = 3600
    latency_window: int = 10

    @classmethod
    def from_env(cls, prefix: str = "APITABLE_") -> FetchSettings:
        """Override defaults from PREFIX_<FIELD_NAME> environment variables."""
        overrides = {}
        for f in fields(cls):
            raw = os.environ.get(f"{prefix}{f.name.upper()}")
            if raw is None:
                continue
            try:
                overrides[f.name] = int(raw)
            except ValueError as e:
                raise ValidationError(
                    f"{prefix}{f.name.upper()} must be an integer, got {raw!r}"
                ) from e
        return replace(cls(), **overrides)


class FetchConfigStore:
    """
    Resolves a session id to its FetchConfig.

    When backed by a PostgresEngine, reads meta.fetch_configs (one row per
    session holding the config as JSON). Without an engine, serves configs
    registered in memory.
    """

    TABLE_NAME = "meta.fetch_configs"

    def __init__(self, engine: Any | None = None) -> None:
        self.engine = engine
        self.logger = logging.getLogger("fetch_config_store")
        self._configs: dict[str, FetchConfig] = {}

    def register(self, config: FetchConfig) -> None:
        self._configs[config.session_id] = config

    def get(self, session_id: str) -> FetchConfig:
        if session_id in self._configs:
            return self._configs[session_id]
        if self.engine is not None:
            df = self.engine.query(
                f"""
                select config
                from {self.TABLE_NAME}
                where session_id = %(session_id)s
                order by updated_at desc
                limit 1
                """,
                {"session_id": session_id},
            )
            if not df.empty:
                raw = df.iloc[0]["config"]
                data = json.loads(raw) if isinstance(raw, str) else dict(raw)
                config = FetchConfig.from_dict({**data, "session_id": session_id})
                self.logger.info("Loaded fetch config for session %s", session_id)
                self._configs[session_id] = config
                return config
        raise NotFoundError(f"No fetch config for session {session_id}")

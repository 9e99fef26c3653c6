from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from apitable.collectors.config import FetchConfig, PaginationType

logger = logging.getLogger(__name__)

PAGE_FIELD_CANDIDATES = [
    "page",
    "pageNum",
    "pageIndex",
    "p",
    "pageNo",
    "current",
    "offset",
]
PAGE_SIZE_FIELD_CANDIDATES = [
    "size",
    "pageSize",
    "limit",
    "_limit",
    "count",
    "rows",
    "per_page",
    "ps",
]
DEFAULT_PAGE_FIELD = "page"
DEFAULT_PAGE_SIZE_FIELD = "size"

QUERY = "query"
BODY = "body"


@dataclass
class PaginationDetection:
    """Which paging convention, if any, a request already carries."""

    has_existing_pagination: bool
    page_field: str = DEFAULT_PAGE_FIELD
    page_size_field: str = DEFAULT_PAGE_SIZE_FIELD
    page_location: str | None = None
    page_size_location: str | None = None
    page_size_value: Any = None
    detected_fields: list[str] = field(default_factory=list)


def _as_mapping(body: Any) -> dict[str, Any]:
    if isinstance(body, dict):
        return body
    if isinstance(body, str) and body.strip().startswith("{"):
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def _find(candidates: list[str], sources: list[tuple[str, dict[str, Any]]]):
    for location, mapping in sources:
        for name in candidates:
            if name in mapping:
                return name, location, mapping[name]
    return None, None, None


class PaginationDetector:
    """Looks for page-number and page-size parameters a caller already set."""

    def detect(
        self, query_params: dict[str, Any] | None, body: Any = None
    ) -> PaginationDetection:
        """
        Scan query params, then the body, for known paging field names.

        The first candidate found wins. Fields that are not found fall
        back to "page" / "size".
        """
        sources = [(QUERY, query_params or {}), (BODY, _as_mapping(body))]
        page_field, page_loc, _ = _find(PAGE_FIELD_CANDIDATES, sources)
        size_field, size_loc, size_value = _find(PAGE_SIZE_FIELD_CANDIDATES, sources)

        detected = [f for f in (page_field, size_field) if f is not None]
        detection = PaginationDetection(
            has_existing_pagination=bool(detected),
            page_field=page_field or DEFAULT_PAGE_FIELD,
            page_size_field=size_field or DEFAULT_PAGE_SIZE_FIELD,
            page_location=page_loc,
            page_size_location=size_loc,
            page_size_value=size_value,
            detected_fields=detected,
        )
        if detection.has_existing_pagination:
            logger.info("Detected existing pagination fields: %s", detected)
        return detection

    def detect_suggested_page_fields(
        self, query_params: dict[str, Any] | None, body: Any = None
    ) -> list[str]:
        """Every page-number candidate present, query params first."""
        suggestions = []
        for mapping in (query_params or {}, _as_mapping(body)):
            for name in PAGE_FIELD_CANDIDATES:
                if name in mapping and name not in suggestions:
                    suggestions.append(name)
        return suggestions


def effective_page_size(config: FetchConfig, detection: PaginationDetection) -> int:
    """A caller-supplied page size wins over the configured one."""
    if not config.page_size_field and detection.page_size_value is not None:
        try:
            value = int(detection.page_size_value)
        except (TypeError, ValueError):
            return config.page_size
        if value > 0:
            return value
    return config.page_size


def page_value(config: FetchConfig, page: int, page_size: int | None = None) -> int:
    """Parameter value for 1-based page index *page*."""
    if config.pagination_type == PaginationType.OFFSET:
        step = config.step_size or page_size or config.page_size
        return config.first_page_value + (page - 1) * step
    return config.first_page_value + (page - 1)


def build_page_request(
    config: FetchConfig, detection: PaginationDetection, page: int
) -> tuple[dict[str, Any], Any]:
    """
    Query params and body for fetching *page*.

    The page field is always written: the configured name, else the
    detected one, else "page". The size field is written under its
    configured or detected name, and the default "size" is only added
    when the request carried no paging convention at all. Fields that
    are not already present go in the body for non-GET requests with a
    JSON-object body, and in the query string otherwise.
    """
    query = dict(config.merged_query_params)
    body = copy.deepcopy(config.body)
    if isinstance(body, str):
        body = _as_mapping(body) or body

    default_location = (
        BODY if config.method != "GET" and isinstance(body, dict) else QUERY
    )

    def assign(name: str, value: Any) -> None:
        if name in query or not isinstance(body, dict):
            query[name] = value
        elif name in body or default_location == BODY:
            body[name] = value
        else:
            query[name] = value

    size = effective_page_size(config, detection)
    assign(
        config.page_field or detection.page_field, page_value(config, page, size)
    )

    size_field = config.page_size_field
    if size_field is None and (
        detection.page_size_location or not detection.has_existing_pagination
    ):
        size_field = detection.page_size_field
    if size_field:
        assign(size_field, size)

    return query, body

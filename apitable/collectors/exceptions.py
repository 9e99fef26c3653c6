from __future__ import annotations


class ApiTableError(Exception):
    """Base class for ingestion failures."""


class ValidationError(ApiTableError):
    """Malformed URL or fetch configuration. Never retried."""


class NotFoundError(ApiTableError):
    """Missing session, fetch configuration, or table."""


class TransientNetworkError(ApiTableError):
    """Timeout, connection reset, or 5xx that outlasted the client's retries."""


class HttpStatusError(ApiTableError):
    """The source answered with a 4xx status."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status


class StructuralError(ApiTableError):
    """Response body could not be turned into a list of records."""


class RangeOrLengthError(ApiTableError):
    """A value violated its destination column's bounds at insert time."""


class TableCreationError(ApiTableError):
    """DDL for a session table failed and was rolled back."""

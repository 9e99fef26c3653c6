from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import requests
from requests.exceptions import ChunkedEncodingError, ConnectionError, Timeout
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from apitable.collectors.exceptions import (
    HttpStatusError,
    StructuralError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)


class ServerError(Exception):
    """5xx or 429 response; retried like a dropped connection."""

    def __init__(self, status: int, reason: str) -> None:
        super().__init__(f"{status} {reason}")
        self.status = status


TRANSIENT_ERRORS = (ConnectionError, Timeout, ChunkedEncodingError, ServerError)


@dataclass
class HttpResponse:
    status: int
    data: Any
    headers: dict[str, str] = field(default_factory=dict)


class HttpClient:
    """
    Thin JSON-over-HTTP client with per-call retry.

    Timeouts, connection resets, 5xx and 429 responses are retried up to
    max_retries times; once exhausted they surface as
    TransientNetworkError. Other 4xx responses raise HttpStatusError at once.
    """

    def __init__(
        self,
        retry_wait_seconds: float = 1.0,
        default_headers: dict[str, str] | None = None,
    ) -> None:
        self.retry_wait_seconds = retry_wait_seconds
        self.logger = logging.getLogger("http_client")

        self._session = requests.Session()
        self._session.headers["Accept"] = "application/json"
        if default_headers:
            self._session.headers.update(default_headers)

    def request(
        self,
        url: str,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        query_params: dict[str, Any] | None = None,
        body: Any = None,
        timeout_ms: int = 30000,
        max_retries: int = 3,
    ) -> HttpResponse:
        """
        Send one request and decode its JSON body.

        Args:
            url:           Absolute URL without a query string.
            method:        HTTP verb.
            headers:       Per-request headers.
            query_params:  Query-string parameters.
            body:          JSON-serializable body, or a pre-encoded string.
            timeout_ms:    Request timeout in milliseconds; 0 means unbounded.
            max_retries:   Retries after the first attempt.

        Returns:
            HttpResponse with status, decoded data and response headers.
        """
        timeout = None if timeout_ms == 0 else timeout_ms / 1000
        retrying = Retrying(
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            stop=stop_after_attempt(max_retries + 1),
            wait=wait_fixed(self.retry_wait_seconds),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            return retrying(
                self._send, url, method.upper(), headers, query_params, body, timeout
            )
        except TRANSIENT_ERRORS as e:
            raise TransientNetworkError(
                f"{method.upper()} {url} failed after {max_retries + 1} attempts: {e}"
            ) from e

    def _send(
        self,
        url: str,
        method: str,
        headers: dict[str, str] | None,
        query_params: dict[str, Any] | None,
        body: Any,
        timeout: float | None,
    ) -> HttpResponse:
        kwargs: dict[str, Any] = {
            "params": query_params or None,
            "headers": headers or None,
            "timeout": timeout,
        }
        if body is not None and method != "GET":
            if isinstance(body, (str, bytes)):
                kwargs["data"] = body
            else:
                kwargs["json"] = body

        self.logger.debug("%s %s  params=%s", method, url, query_params)
        resp = self._session.request(method, url, **kwargs)

        if resp.status_code >= 500 or resp.status_code == 429:
            raise ServerError(resp.status_code, resp.reason or "")
        if resp.status_code >= 400:
            raise HttpStatusError(
                resp.status_code,
                f"{method} {url} returned {resp.status_code}: {resp.text[:200]}",
            )

        if not resp.content:
            data = None
        else:
            try:
                data = resp.json()
            except ValueError as e:
                raise StructuralError(
                    f"{method} {url} returned non-JSON content: {resp.text[:200]}"
                ) from e
        return HttpResponse(status=resp.status_code, data=data, headers=dict(resp.headers))

    def close(self) -> None:
        self._session.close()

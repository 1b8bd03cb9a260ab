"""Gmail API client for listing threads and fetching thread details."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from typing import Any

from googleapiclient.discovery import Resource
from googleapiclient.errors import HttpError

from support_triage.core.exceptions import (
    AuthenticationError,
    ProviderError,
    RateLimitError,
)
from support_triage.core.models import ThreadPage, ThreadStub

logger = logging.getLogger(__name__)


def _status_of(exc: Exception) -> int | None:
    """HTTP status of a googleapiclient error, if it has one."""
    if isinstance(exc, HttpError):
        status = getattr(exc, "status_code", None) or getattr(exc.resp, "status", None)
        try:
            return int(status) if status is not None else None
        except (TypeError, ValueError):
            return None
    return None


def _is_rate_limit_error(exc: Exception) -> bool:
    """Check whether an exception represents a Gmail API 429 rate limit."""
    if _status_of(exc) == 429:
        return True
    error_str = str(exc)
    return "429" in error_str or "rateLimitExceeded" in error_str


def _retry_after(exc: Exception) -> float | None:
    """Read a Retry-After header (seconds) from an HttpError response."""
    resp = getattr(exc, "resp", None)
    if not isinstance(resp, dict):
        return None
    value = resp.get("retry-after")
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def translate_error(exc: Exception, context: str) -> Exception:
    """Map a Gmail API failure onto the Support Triage error taxonomy."""
    status = _status_of(exc)
    if status == 401:
        return AuthenticationError(f"Gmail rejected the access token during {context}: {exc}")
    if _is_rate_limit_error(exc):
        return RateLimitError(
            f"Rate limited during {context}: {exc}", retry_after=_retry_after(exc)
        )
    return ProviderError(f"Failed to {context}: {exc}", status_code=status)


class GmailClient:
    """Thin wrapper around the Gmail API for thread listing and thread fetch."""

    def __init__(
        self,
        service: Resource,
        user_id: str = "me",
        *,
        http_factory: Callable[[], Any] | None = None,
        max_retries: int = 3,
        initial_backoff_seconds: float = 2.0,
        max_backoff_seconds: float = 10.0,
        default_retry_after_seconds: float = 60.0,
    ) -> None:
        self._service = service
        self._user_id = user_id
        self._http_factory = http_factory
        self._max_retries = max_retries
        self._initial_backoff = initial_backoff_seconds
        self._max_backoff = max_backoff_seconds
        self._default_retry_after = default_retry_after_seconds

    def _execute(self, request: Any) -> Any:
        if self._http_factory is not None:
            return request.execute(http=self._http_factory())
        return request.execute()

    def _execute_with_retry(self, request: Any, context: str) -> Any:
        """Execute a single API request with exponential backoff on 429 errors.

        Args:
            request: A googleapiclient HttpRequest object.
            context: Description for log messages (e.g. "list threads").

        Returns:
            The API response dict.

        Raises:
            AuthenticationError: On a 401 from Gmail.
            RateLimitError: When retries are exhausted on 429 errors.
            ProviderError: On any other API error.
        """
        backoff = self._initial_backoff

        for attempt in range(self._max_retries + 1):
            try:
                return self._execute(request)
            except Exception as e:
                if not _is_rate_limit_error(e):
                    raise translate_error(e, context) from e
                if attempt >= self._max_retries:
                    raise RateLimitError(
                        f"Rate limited during {context} after "
                        f"{self._max_retries} retries: {e}",
                        retry_after=_retry_after(e) or self._default_retry_after,
                    ) from e
                sleep_time = min(backoff, self._max_backoff)
                jitter = random.uniform(0, sleep_time)
                logger.warning(
                    "Rate limited during %s (attempt %d/%d), sleeping %.2fs",
                    context, attempt + 1, self._max_retries, jitter,
                )
                time.sleep(jitter)
                backoff = min(backoff * 2, self._max_backoff)

        # Should not be reached, but just in case
        raise RateLimitError(
            f"Rate limited during {context} after {self._max_retries} retries",
            retry_after=self._default_retry_after,
        )

    def list_threads(
        self,
        query: str | None = None,
        page_token: str | None = None,
        max_results: int = 10,
    ) -> ThreadPage:
        """List one page of threads matching a Gmail search query.

        Args:
            query: Gmail search query (e.g. "in:inbox -category:promotions").
            page_token: Token from a previous page, or None for the first page.
            max_results: Page size (1-500).

        Returns:
            ThreadPage with stubs and the next page token.
        """
        kwargs: dict[str, Any] = {
            "userId": self._user_id,
            "maxResults": max_results,
            "includeSpamTrash": False,
        }
        if page_token:
            kwargs["pageToken"] = page_token
        if query:
            kwargs["q"] = query

        request = self._service.users().threads().list(**kwargs)
        response = self._execute_with_retry(request, "list threads")

        stubs = tuple(
            ThreadStub(thread_id=t["id"], snippet=t.get("snippet", ""))
            for t in response.get("threads", [])
            if t.get("id")
        )
        logger.debug("Listed %d threads", len(stubs))
        return ThreadPage(
            threads=stubs,
            next_page_token=response.get("nextPageToken") or None,
            result_size_estimate=int(response.get("resultSizeEstimate", 0) or 0),
        )

    def get_thread(self, thread_id: str, fmt: str = "full") -> dict[str, Any]:
        """Fetch one thread with all its messages.

        Makes a single attempt; retries belong to the batch fetcher.

        Raises:
            AuthenticationError, RateLimitError, ProviderError: On API errors.
        """
        request = self._service.users().threads().get(
            userId=self._user_id, id=thread_id, format=fmt
        )
        try:
            return self._execute(request)
        except Exception as e:
            raise translate_error(e, f"get thread {thread_id}") from e

"""Rate-limited batch fetching: fixed-size concurrent chunks with inter-chunk delay."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import TypeVar

from support_triage.core.exceptions import AuthenticationError

logger = logging.getLogger(__name__)

T = TypeVar("T")
ID = TypeVar("ID")

# A dead token fails every item the same way; retrying or dropping it would hide it.
NON_RETRYABLE: tuple[type[BaseException], ...] = (AuthenticationError,)


def retry_with_backoff(
    operation: Callable[[], T],
    *,
    max_retries: int = 3,
    base_delay_seconds: float = 1.0,
    context: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run an operation, retrying with exponential backoff on failure.

    Args:
        operation: Zero-argument callable to run.
        max_retries: Retries after the first attempt.
        base_delay_seconds: Delay before the first retry; doubles on each retry.
        context: Description for log messages.
        sleep: Sleep function (injectable for tests).

    Returns:
        The operation's return value.

    Raises:
        The last exception once retries are exhausted, or any NON_RETRYABLE
        exception immediately.
    """
    delay = base_delay_seconds
    for attempt in range(max_retries + 1):
        try:
            return operation()
        except NON_RETRYABLE:
            raise
        except Exception as e:
            if attempt >= max_retries:
                raise
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                context, attempt + 1, max_retries + 1, delay, e,
            )
            sleep(delay)
            delay *= 2

    # Unreachable: the loop either returns or raises
    raise RuntimeError(f"{context} exhausted retries")


def chunked(items: Sequence[ID], size: int) -> list[Sequence[ID]]:
    """Split items into consecutive chunks of at most ``size``."""
    if size <= 0:
        raise ValueError(f"batch size must be positive, got {size}")
    return [items[i:i + size] for i in range(0, len(items), size)]


def fetch_all(
    ids: Sequence[ID],
    batch_size: int,
    delay_seconds: float,
    fetch_one: Callable[[ID], T],
    *,
    max_retries: int = 3,
    base_delay_seconds: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    on_error: Callable[[ID, Exception], None] | None = None,
) -> list[T]:
    """Fetch every id in fixed-size concurrent chunks with a delay between chunks.

    Items that fail every retry are logged and dropped, so the result may be
    shorter than ``ids`` and its order is not tied to the input. Callers must
    read identity from the returned items.

    Args:
        ids: Opaque identifiers to fetch.
        batch_size: Number of concurrent fetches per chunk.
        delay_seconds: Pause between chunks (not after the last).
        fetch_one: Fetches a single id.
        max_retries: Per-item retries after the first attempt.
        base_delay_seconds: Per-item initial backoff.
        sleep: Sleep function (injectable for tests).
        on_error: Called with the id and final exception of each dropped item.

    Returns:
        Successfully fetched items.

    Raises:
        AuthenticationError: If any fetch reports the credentials are invalid.
    """
    chunks = chunked(ids, batch_size)
    results: list[T] = []

    def _fetch(item_id: ID) -> T:
        return retry_with_backoff(
            lambda: fetch_one(item_id),
            max_retries=max_retries,
            base_delay_seconds=base_delay_seconds,
            context=f"fetch {item_id}",
            sleep=sleep,
        )

    with ThreadPoolExecutor(max_workers=batch_size) as executor:
        for index, chunk in enumerate(chunks):
            if index > 0 and delay_seconds > 0:
                sleep(delay_seconds)

            futures = [(item_id, executor.submit(_fetch, item_id)) for item_id in chunk]
            succeeded = 0
            for item_id, future in futures:
                try:
                    results.append(future.result())
                    succeeded += 1
                except NON_RETRYABLE:
                    raise
                except Exception as e:
                    logger.error("Dropping %s after %d retries: %s", item_id, max_retries, e)
                    if on_error is not None:
                        on_error(item_id, e)

            logger.debug(
                "Chunk %d/%d: %d/%d fetched", index + 1, len(chunks), succeeded, len(chunk)
            )

    return results

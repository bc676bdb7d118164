"""
Rate limiting utilities for ConnectWise API requests.

Provides a configurable delay between page requests and retry logic for
HTTP 429 responses so long scans do not exhaust the API quota.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar
from datetime import datetime

from msp_sync.core.errors import ConnectWiseClientError

logger = logging.getLogger(__name__)

T = TypeVar('T')


def is_rate_limit_error(error: Exception) -> bool:
    """Check whether an exception signals a rate limit (429 / "too many requests")."""
    if isinstance(error, ConnectWiseClientError) and error.is_rate_limited:
        return True
    error_str = str(error).lower()
    return "rate limit" in error_str or "too many requests" in error_str


class RateLimiter:
    """
    Paces page requests and retries throttled ones.

    A 429 is retried up to ``max_retries`` times, sleeping ``2**attempt``
    seconds in between. Requests per run are counted for the final log line.
    """

    def __init__(self, delay_ms: int = 100, max_retries: int = 3):
        self.delay_ms = delay_ms
        self.max_retries = max_retries
        self.request_count = 0
        self.start_time: datetime | None = None

    async def delay(self) -> None:
        """Sleep ``delay_ms`` before the next page."""
        if self.delay_ms > 0:
            await asyncio.sleep(self.delay_ms / 1000.0)

    def start_tracking(self) -> None:
        """Reset the request count at the start of a run."""
        self.request_count = 0
        self.start_time = datetime.utcnow()

    def record_request(self) -> None:
        self.request_count += 1

    def get_metrics(self) -> dict[str, Any]:
        if self.start_time is None:
            return {
                "request_count": self.request_count,
                "duration_seconds": 0,
                "requests_per_second": 0
            }

        duration = (datetime.utcnow() - self.start_time).total_seconds()
        per_second = self.request_count / duration if duration > 0 else 0

        return {
            "request_count": self.request_count,
            "duration_seconds": round(duration, 2),
            "requests_per_second": round(per_second, 2)
        }

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "request"
    ) -> T:
        """
        Await ``operation()``, calling the factory again after a 429.

        Raises:
            Exception: The last error once retries are exhausted, or any
                other error immediately
        """
        for attempt in range(self.max_retries + 1):
            try:
                result = await operation()
                self.record_request()
                return result
            except Exception as e:
                if is_rate_limit_error(e) and attempt < self.max_retries:
                    backoff_seconds = 2 ** attempt
                    logger.warning(
                        f"Rate limit hit for {operation_name} "
                        f"(attempt {attempt + 1}/{self.max_retries + 1}). "
                        f"Retrying in {backoff_seconds}s..."
                    )
                    await asyncio.sleep(backoff_seconds)
                    continue
                raise

        raise ConnectWiseClientError(f"Failed to execute {operation_name}")


class BatchOperationTracker:
    """Counts written and skipped records of one sync stage."""

    def __init__(self, total_items: int):
        self.total_items = total_items
        self.processed = 0
        self.succeeded = 0
        self.failed = 0
        self.errors: list[str] = []
        self.start_time = datetime.utcnow()

    def record_success(self) -> None:
        self.processed += 1
        self.succeeded += 1

    def record_failure(self, error_msg: str) -> None:
        self.processed += 1
        self.failed += 1
        self.errors.append(error_msg)

    def get_progress(self) -> dict[str, Any]:
        duration = (datetime.utcnow() - self.start_time).total_seconds()
        percent_complete = (self.processed / self.total_items * 100) if self.total_items > 0 else 100

        return {
            "total": self.total_items,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "percent_complete": round(percent_complete, 1),
            "duration_seconds": round(duration, 2),
        }

    def get_summary(self) -> dict[str, Any]:
        """Totals for the stage log line; ``errors`` holds the skip messages."""
        duration = (datetime.utcnow() - self.start_time).total_seconds()

        return {
            "total": self.total_items,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "errors": self.errors,
            "duration_seconds": round(duration, 2)
        }

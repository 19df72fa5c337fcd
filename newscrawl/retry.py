from __future__ import annotations

import logging
import threading
from typing import Dict, Optional

from .backoff import BackoffStrategy
from .errors import ErrorKind, FetchError
from .metrics import MetricsCollector
from .models import RetryDecision


class RetryPolicy:
    """Decides whether a failed fetch is retried, and after how long.

    Keeps a per-URL attempt counter (the retry state). Entries exist only
    while a URL is between attempts; they are dropped as soon as the URL
    succeeds or fails terminally."""

    def __init__(
        self,
        metrics: MetricsCollector,
        backoff: Optional[BackoffStrategy] = None,
        max_retries: int = 3,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        self._metrics = metrics
        self._backoff = backoff or BackoffStrategy()
        self._max_retries = max_retries
        self._logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._state: Dict[str, int] = {}

    @property
    def max_retries(self) -> int:
        return self._max_retries

    @staticmethod
    def kind_of(error: BaseException) -> ErrorKind:
        if isinstance(error, FetchError):
            return error.kind
        if isinstance(error, TimeoutError):
            return ErrorKind.TIMEOUT
        if isinstance(error, ConnectionRefusedError):
            return ErrorKind.CONNECTION_REFUSED
        return ErrorKind.OTHER

    def evaluate(
        self,
        url: str,
        error: BaseException,
        attempt_count: Optional[int] = None,
    ) -> RetryDecision:
        """Record a failure for url and return RETRY(delay) or TERMINAL.

        attempt_count is the number of retries already made for url; when
        omitted it is read from the retry state."""
        kind = self.kind_of(error)
        self._metrics.record_error("fetch")
        with self._lock:
            count = self._state.get(url, 0) if attempt_count is None else attempt_count
            if kind.retryable and count < self._max_retries:
                self._state[url] = count + 1
                delay = self._backoff.get_sleep(count)
                self._logger.debug(
                    "Scheduling retry",
                    extra={"url": url, "kind": kind.value, "retry": count + 1, "delay": delay},
                )
                return RetryDecision.retry(delay)
            self._state.pop(url, None)

        if count > 0:
            self._metrics.record_retry_exhausted()
        self._logger.debug(
            "Fetch failure is terminal",
            extra={"url": url, "kind": kind.value, "retries": count, "retryable": kind.retryable},
        )
        return RetryDecision.terminal()

    def record_success(self, url: str) -> None:
        with self._lock:
            self._state.pop(url, None)

    def forget(self, url: str) -> None:
        """Drop url from the retry state without counting anything."""
        with self._lock:
            self._state.pop(url, None)

    def attempts(self, url: str) -> int:
        with self._lock:
            return self._state.get(url, 0)

    def pending(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._state)

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from .errors import ErrorKind, FetchError
from .models import Page

DEFAULT_USER_AGENT = "newscrawl/1.0 (+https://github.com/newscrawl/newscrawl)"


class BaseFetcher(ABC):
    """Abstract base class defining the common fetch pipeline.

    fetch() validates the URL, performs the request, maps transport failures
    and non-2xx statuses to a FetchError carrying an ErrorKind, and enforces
    the maximum body size. Subclasses only implement the transport calls.
    """

    def __init__(
        self,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = 20.0,
        max_body_size: int = 10 * 1024 * 1024,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self._user_agent = user_agent or DEFAULT_USER_AGENT
        self._timeout = timeout
        self._max_body_size = max_body_size
        self._headers = dict(headers or {})

    def fetch(self, url: str) -> Page:
        self.validate(url)
        start_ms = self._now_ms()
        try:
            response = self.request(url)
        except FetchError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise self._wrap(url, exc) from exc

        status_code = int(getattr(response, "status_code", 0) or 0)
        kind = ErrorKind.from_status(status_code)
        if kind is not None:
            self.close_response(response)
            raise FetchError(url, kind, status_code=status_code)

        try:
            content = self.read_body(url, response)
        except FetchError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise self._wrap(url, exc) from exc
        return Page(
            url=self.final_url(response, url),
            status_code=status_code,
            content=content,
            headers={str(k): str(v) for k, v in (getattr(response, "headers", None) or {}).items()},
            latency_ms=self._now_ms() - start_ms,
        )

    def validate(self, url: str) -> None:
        if not url:
            raise FetchError(url, ErrorKind.INVALID_URL, message="url is required")
        parts = urlsplit(url)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise FetchError(url, ErrorKind.INVALID_URL, message=f"unsupported url: {url}")

    def request_headers(self) -> Dict[str, str]:
        headers = {"User-Agent": self._user_agent}
        headers.update(self._headers)
        return headers

    def check_size(self, url: str, size: int) -> None:
        if self._max_body_size and size > self._max_body_size:
            raise FetchError(
                url,
                ErrorKind.BODY_TOO_LARGE,
                message=f"body of {url} exceeds {self._max_body_size} bytes",
            )

    def stream_body(self, url: str, response: Any, chunk_size: int = 64 * 1024) -> bytes:
        """Read a streamed response in chunks, failing as soon as the size cap is crossed."""
        try:
            try:
                declared = int(response.headers.get("Content-Length") or 0)
            except (TypeError, ValueError):
                declared = 0
            self.check_size(url, declared)
            chunks = []
            size = 0
            for chunk in response.iter_content(chunk_size=chunk_size):
                size += len(chunk)
                self.check_size(url, size)
                chunks.append(chunk)
            return b"".join(chunks)
        finally:
            response.close()

    def _wrap(self, url: str, exc: BaseException) -> FetchError:
        return FetchError(url, self.classify_exception(exc), message=f"{type(exc).__name__}: {exc}")

    @abstractmethod
    def request(self, url: str) -> Any:
        ...

    @abstractmethod
    def read_body(self, url: str, response: Any) -> bytes:
        ...

    @abstractmethod
    def classify_exception(self, exc: BaseException) -> ErrorKind:
        ...

    def close_response(self, response: Any) -> None:
        close = getattr(response, "close", None)
        if callable(close):
            close()

    @staticmethod
    def final_url(response: Any, default: str) -> str:
        return str(getattr(response, "url", "") or default)

    def close(self) -> None:
        """Release transport resources."""

    @staticmethod
    def _now_ms() -> int:
        return int(time.time() * 1000)

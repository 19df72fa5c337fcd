from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Closed set of fetch failure kinds produced by the fetchers.

    The retry policy switches on the kind, never on exception text."""

    TIMEOUT = "timeout"
    TEMPORARY = "temporary"
    TLS_HANDSHAKE = "tls_handshake"
    CONNECTION_REFUSED = "connection_refused"
    SERVER_ERROR = "server_error"
    CLIENT_ERROR = "client_error"
    DNS = "dns"
    INVALID_URL = "invalid_url"
    BODY_TOO_LARGE = "body_too_large"
    OTHER = "other"

    @property
    def retryable(self) -> bool:
        return self in RETRYABLE_KINDS

    @classmethod
    def from_status(cls, status_code: int) -> Optional["ErrorKind"]:
        """Map a non-2xx HTTP status to a kind; None for success codes."""
        if 200 <= status_code < 300:
            return None
        if status_code == 429:
            return cls.TEMPORARY
        if status_code >= 500:
            return cls.SERVER_ERROR
        if status_code >= 400:
            return cls.CLIENT_ERROR
        return cls.OTHER


RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.TIMEOUT,
        ErrorKind.TEMPORARY,
        ErrorKind.TLS_HANDSHAKE,
        ErrorKind.CONNECTION_REFUSED,
        ErrorKind.SERVER_ERROR,
    }
)


class CrawlError(Exception):
    """Base class for every error raised by the crawler."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Flatten into a dict suitable for log payloads."""
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(CrawlError):
    """Raised at construction time for bad source settings or missing dependencies."""


class FetchError(CrawlError):
    """A failed fetch, tagged with the kind of failure."""

    def __init__(
        self,
        url: str,
        kind: ErrorKind,
        status_code: Optional[int] = None,
        message: Optional[str] = None,
    ) -> None:
        self.url = url
        self.kind = kind
        self.status_code = status_code
        if message is None:
            message = f"fetch failed ({kind.value}) for {url}"
            if status_code is not None:
                message += f" (status: {status_code})"
        super().__init__(message, {"url": url, "kind": kind.value, "status_code": status_code})

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class ExtractionError(CrawlError):
    """Base class for failures while turning a document into a record."""


class InvalidDocumentError(ExtractionError):
    def __init__(self, url: str, reason: str) -> None:
        self.url = url
        self.reason = reason
        super().__init__(f"invalid document for {url}: {reason}", {"url": url, "reason": reason})


class MissingFieldError(ExtractionError):
    def __init__(self, field: str, url: str = "") -> None:
        self.field = field
        self.url = url
        super().__init__(f"missing required field: {field}", {"field": field, "url": url})


class CrawlCancelledError(CrawlError):
    """Raised by blocking waits once the crawl has been asked to stop."""

    def __init__(self, message: str = "crawl cancelled") -> None:
        super().__init__(message)


class InvalidTransitionError(CrawlError):
    def __init__(self, url: str, current: str, target: str) -> None:
        super().__init__(
            f"invalid task transition {current} -> {target} for {url}",
            {"url": url, "from": current, "to": target},
        )

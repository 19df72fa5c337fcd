from __future__ import annotations

import socket
from typing import Any, Dict, Iterator, Optional

import requests
from curl_cffi import requests as curl_requests

from .base import DEFAULT_USER_AGENT, BaseFetcher
from .errors import ErrorKind

# libcurl error codes (CURLE_*) surfaced by curl_cffi on exc.code
_CURLE_UNSUPPORTED_PROTOCOL = 1
_CURLE_URL_MALFORMAT = 3
_CURLE_COULDNT_RESOLVE_PROXY = 5
_CURLE_COULDNT_RESOLVE_HOST = 6
_CURLE_COULDNT_CONNECT = 7
_CURLE_HTTP2 = 16
_CURLE_PARTIAL_FILE = 18
_CURLE_OPERATION_TIMEDOUT = 28
_CURLE_SSL_CONNECT_ERROR = 35
_CURLE_GOT_NOTHING = 52
_CURLE_SEND_ERROR = 55
_CURLE_RECV_ERROR = 56
_CURLE_PEER_FAILED_VERIFICATION = 60
_CURLE_HTTP2_STREAM = 92

_CURL_KINDS: Dict[int, ErrorKind] = {
    _CURLE_UNSUPPORTED_PROTOCOL: ErrorKind.INVALID_URL,
    _CURLE_URL_MALFORMAT: ErrorKind.INVALID_URL,
    _CURLE_COULDNT_RESOLVE_PROXY: ErrorKind.DNS,
    _CURLE_COULDNT_RESOLVE_HOST: ErrorKind.DNS,
    _CURLE_COULDNT_CONNECT: ErrorKind.CONNECTION_REFUSED,
    _CURLE_OPERATION_TIMEDOUT: ErrorKind.TIMEOUT,
    _CURLE_SSL_CONNECT_ERROR: ErrorKind.TLS_HANDSHAKE,
    _CURLE_PEER_FAILED_VERIFICATION: ErrorKind.TLS_HANDSHAKE,
    _CURLE_PARTIAL_FILE: ErrorKind.TEMPORARY,
    _CURLE_GOT_NOTHING: ErrorKind.TEMPORARY,
    _CURLE_SEND_ERROR: ErrorKind.TEMPORARY,
    _CURLE_RECV_ERROR: ErrorKind.TEMPORARY,
    _CURLE_HTTP2: ErrorKind.TEMPORARY,
    _CURLE_HTTP2_STREAM: ErrorKind.TEMPORARY,
}


def _exception_chain(exc: BaseException, limit: int = 8) -> Iterator[BaseException]:
    """Yield exc and the exceptions it wraps (cause, context, urllib3 reason, first arg)."""
    seen = set()
    stack = [exc]
    while stack and len(seen) < limit:
        current = stack.pop(0)
        if id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        for nested in (
            current.__cause__,
            current.__context__,
            getattr(current, "reason", None),
            current.args[0] if current.args else None,
        ):
            if isinstance(nested, BaseException):
                stack.append(nested)


def _classify_builtin(exc: BaseException) -> Optional[ErrorKind]:
    if isinstance(exc, (TimeoutError, socket.timeout)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, ConnectionRefusedError):
        return ErrorKind.CONNECTION_REFUSED
    if isinstance(exc, socket.gaierror):
        return ErrorKind.DNS
    return None


class _StreamedResponse:
    """A streamed curl_cffi response and the session it must outlive."""

    def __init__(self, session: Any, response: Any) -> None:
        self._session = session
        self._response = response
        self.status_code = response.status_code
        self.headers = response.headers
        self.url = response.url

    def iter_content(self, chunk_size: int) -> Iterator[bytes]:
        return self._response.iter_content(chunk_size=chunk_size)

    def close(self) -> None:
        try:
            self._response.close()
        finally:
            self._session.close()


class RequestsFetcher(BaseFetcher):
    """Plain HTTP fetcher on top of requests, streaming the body to cap its size."""

    def request(self, url: str) -> Any:
        return requests.get(
            url,
            headers=self.request_headers(),
            timeout=self._timeout,
            stream=True,
            allow_redirects=True,
        )

    def read_body(self, url: str, response: Any) -> bytes:
        return self.stream_body(url, response)

    def classify_exception(self, exc: BaseException) -> ErrorKind:
        if isinstance(exc, requests.exceptions.SSLError):
            return ErrorKind.TLS_HANDSHAKE
        if isinstance(exc, requests.exceptions.Timeout):
            return ErrorKind.TIMEOUT
        if isinstance(
            exc,
            (
                requests.exceptions.InvalidURL,
                requests.exceptions.MissingSchema,
                requests.exceptions.InvalidSchema,
                requests.exceptions.URLRequired,
            ),
        ):
            return ErrorKind.INVALID_URL
        if isinstance(exc, requests.exceptions.ConnectionError):
            for nested in _exception_chain(exc):
                kind = _classify_builtin(nested)
                if kind is not None:
                    return kind
            return ErrorKind.TEMPORARY
        if isinstance(exc, (requests.exceptions.ChunkedEncodingError, requests.exceptions.ContentDecodingError)):
            return ErrorKind.TEMPORARY
        return _classify_builtin(exc) or ErrorKind.OTHER


class CurlFetcher(BaseFetcher):
    """Browser-impersonating fetcher on top of curl_cffi.

    Used for sources that block plain HTTP clients by TLS fingerprint."""

    def __init__(
        self,
        impersonate: str = "chrome120",
        user_agent: str = DEFAULT_USER_AGENT,
        *args,
        **kwargs,
    ) -> None:
        super().__init__(user_agent, *args, **kwargs)
        self._impersonate = impersonate

    def request_headers(self) -> Dict[str, str]:
        # Let the impersonation profile supply its own User-Agent unless one was configured.
        headers = super().request_headers()
        if self._user_agent == DEFAULT_USER_AGENT:
            headers.pop("User-Agent", None)
        return headers

    def request(self, url: str) -> Any:
        session = curl_requests.Session()
        try:
            response = session.request(
                method="GET",
                url=url,
                headers=self.request_headers(),
                impersonate=self._impersonate,
                timeout=self._timeout,
                allow_redirects=True,
                stream=True,
            )
        except Exception:
            session.close()
            raise
        return _StreamedResponse(session, response)

    def read_body(self, url: str, response: Any) -> bytes:
        return self.stream_body(url, response)

    def classify_exception(self, exc: BaseException) -> ErrorKind:
        for nested in _exception_chain(exc):
            code = getattr(nested, "code", None)
            if isinstance(code, int) and code in _CURL_KINDS:
                return _CURL_KINDS[code]
            kind = _classify_builtin(nested)
            if kind is not None:
                return kind
        return ErrorKind.OTHER

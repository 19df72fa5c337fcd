"""Tests for the fetch pipeline and transport error classification."""

import socket
import unittest

import requests

from newscrawl.base import DEFAULT_USER_AGENT, BaseFetcher
from newscrawl.errors import ErrorKind, FetchError
from newscrawl.fetchers import CurlFetcher, RequestsFetcher, _StreamedResponse
from newscrawl.metrics import MetricsCollector
from newscrawl.retry import RetryPolicy


class FakeResponse:
    def __init__(self, status_code=200, content=b"<html></html>", headers=None, url=""):
        self.status_code = status_code
        self.content = content
        self.headers = headers or {}
        self.url = url
        self.closed = False

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i:i + chunk_size]

    def close(self):
        self.closed = True


class BrokenStreamResponse(FakeResponse):
    """Yields one chunk, then the connection drops."""

    def __init__(self, error):
        super().__init__(content=b"<html>")
        self.error = error

    def iter_content(self, chunk_size=1):
        yield self.content
        raise self.error


class CannedRequestsFetcher(RequestsFetcher):
    def __init__(self, response, **kwargs):
        super().__init__(**kwargs)
        self.response = response

    def request(self, url):
        return self.response


class CannedCurlFetcher(CurlFetcher):
    def __init__(self, response, **kwargs):
        super().__init__(**kwargs)
        self.response = response

    def request(self, url):
        return self.response


class StubFetcher(BaseFetcher):
    """Fetcher whose transport returns or raises a canned value."""

    def __init__(self, outcome, **kwargs):
        super().__init__(**kwargs)
        self.outcome = outcome

    def request(self, url):
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome

    def read_body(self, url, response):
        self.check_size(url, len(response.content))
        return response.content

    def classify_exception(self, exc):
        return ErrorKind.TEMPORARY if isinstance(exc, OSError) else ErrorKind.OTHER


class TestBaseFetcher(unittest.TestCase):
    """Verify the shared fetch pipeline."""

    def test_success_builds_page(self):
        response = FakeResponse(headers={"Content-Type": "text/html"}, url="https://example.com/final")
        page = StubFetcher(response).fetch("https://example.com/start")
        self.assertEqual(page.url, "https://example.com/final")
        self.assertEqual(page.status_code, 200)
        self.assertEqual(page.content, b"<html></html>")
        self.assertEqual(page.headers["Content-Type"], "text/html")
        self.assertGreaterEqual(page.latency_ms, 0)

    def test_invalid_url(self):
        for url in ("", "ftp://example.com/", "not a url"):
            with self.assertRaises(FetchError) as ctx:
                StubFetcher(FakeResponse()).fetch(url)
            self.assertEqual(ctx.exception.kind, ErrorKind.INVALID_URL)

    def test_status_codes_map_to_kinds(self):
        cases = {503: ErrorKind.SERVER_ERROR, 404: ErrorKind.CLIENT_ERROR, 429: ErrorKind.TEMPORARY}
        for status, kind in cases.items():
            response = FakeResponse(status_code=status)
            with self.assertRaises(FetchError) as ctx:
                StubFetcher(response).fetch("https://example.com/")
            self.assertEqual(ctx.exception.kind, kind)
            self.assertEqual(ctx.exception.status_code, status)
            self.assertTrue(response.closed)

    def test_transport_errors_are_wrapped(self):
        with self.assertRaises(FetchError) as ctx:
            StubFetcher(OSError("reset")).fetch("https://example.com/")
        self.assertEqual(ctx.exception.kind, ErrorKind.TEMPORARY)
        self.assertTrue(ctx.exception.retryable)
        self.assertIsInstance(ctx.exception.__cause__, OSError)

    def test_body_too_large(self):
        fetcher = StubFetcher(FakeResponse(content=b"<p>" + b"x" * 100), max_body_size=10)
        with self.assertRaises(FetchError) as ctx:
            fetcher.fetch("https://example.com/")
        self.assertEqual(ctx.exception.kind, ErrorKind.BODY_TOO_LARGE)
        self.assertFalse(ctx.exception.retryable)

    def test_user_agent_header(self):
        fetcher = StubFetcher(FakeResponse(), user_agent="bot/2", headers={"Accept": "text/html"})
        self.assertEqual(fetcher.request_headers(), {"User-Agent": "bot/2", "Accept": "text/html"})


class TestRequestsFetcher(unittest.TestCase):
    """Verify requests exceptions map to the right kinds."""

    def setUp(self):
        self.fetcher = RequestsFetcher()

    def test_classification(self):
        cases = [
            (requests.exceptions.SSLError("bad cert"), ErrorKind.TLS_HANDSHAKE),
            (requests.exceptions.ConnectTimeout("slow"), ErrorKind.TIMEOUT),
            (requests.exceptions.ReadTimeout("slow"), ErrorKind.TIMEOUT),
            (requests.exceptions.MissingSchema("no scheme"), ErrorKind.INVALID_URL),
            (requests.exceptions.InvalidURL("bad"), ErrorKind.INVALID_URL),
            (requests.exceptions.ConnectionError(ConnectionRefusedError(111, "refused")), ErrorKind.CONNECTION_REFUSED),
            (requests.exceptions.ConnectionError(socket.gaierror(-2, "unknown host")), ErrorKind.DNS),
            (requests.exceptions.ConnectionError("reset by peer"), ErrorKind.TEMPORARY),
            (requests.exceptions.ChunkedEncodingError("truncated"), ErrorKind.TEMPORARY),
            (ValueError("other"), ErrorKind.OTHER),
        ]
        for exc, kind in cases:
            self.assertEqual(self.fetcher.classify_exception(exc), kind, repr(exc))

    def test_read_body_streams_and_caps(self):
        fetcher = RequestsFetcher(max_body_size=150)
        response = FakeResponse(content=b"a" * 100)
        self.assertEqual(fetcher.read_body("https://example.com/", response), b"a" * 100)
        self.assertTrue(response.closed)

        response = FakeResponse(content=b"a" * 200)
        with self.assertRaises(FetchError):
            fetcher.read_body("https://example.com/", response)
        self.assertTrue(response.closed)

    def test_declared_length_checked_first(self):
        fetcher = RequestsFetcher(max_body_size=10)
        response = FakeResponse(content=b"", headers={"Content-Length": "5000"})
        with self.assertRaises(FetchError) as ctx:
            fetcher.read_body("https://example.com/", response)
        self.assertEqual(ctx.exception.kind, ErrorKind.BODY_TOO_LARGE)

    def test_connection_lost_while_reading_body_is_retryable(self):
        """A drop partway through the body surfaces as a retryable FetchError."""
        response = BrokenStreamResponse(requests.exceptions.ConnectionError("Read timed out."))
        fetcher = CannedRequestsFetcher(response)
        with self.assertRaises(FetchError) as ctx:
            fetcher.fetch("https://example.com/news/1")
        self.assertEqual(ctx.exception.kind, ErrorKind.TEMPORARY)
        self.assertTrue(ctx.exception.retryable)
        self.assertIsInstance(ctx.exception.__cause__, requests.exceptions.ConnectionError)
        self.assertTrue(response.closed)

        policy = RetryPolicy(MetricsCollector())
        self.assertTrue(policy.evaluate("https://example.com/news/1", ctx.exception).should_retry)

    def test_chunked_encoding_error_while_reading_body(self):
        response = BrokenStreamResponse(requests.exceptions.ChunkedEncodingError("truncated"))
        with self.assertRaises(FetchError) as ctx:
            CannedRequestsFetcher(response).fetch("https://example.com/")
        self.assertEqual(ctx.exception.kind, ErrorKind.TEMPORARY)


class CurlLikeError(Exception):
    def __init__(self, message, code):
        super().__init__(message)
        self.code = code


class TestCurlFetcher(unittest.TestCase):
    """Verify libcurl error codes map to the right kinds."""

    def test_classification_by_code(self):
        fetcher = CurlFetcher(impersonate="chrome120")
        cases = {
            6: ErrorKind.DNS,
            7: ErrorKind.CONNECTION_REFUSED,
            28: ErrorKind.TIMEOUT,
            35: ErrorKind.TLS_HANDSHAKE,
            56: ErrorKind.TEMPORARY,
            3: ErrorKind.INVALID_URL,
            999: ErrorKind.OTHER,
        }
        for code, kind in cases.items():
            self.assertEqual(fetcher.classify_exception(CurlLikeError("curl failed", code)), kind, code)

    def test_wrapped_code_is_found(self):
        fetcher = CurlFetcher()
        try:
            try:
                raise CurlLikeError("timed out", 28)
            except CurlLikeError as inner:
                raise RuntimeError("request failed") from inner
        except RuntimeError as outer:
            self.assertEqual(fetcher.classify_exception(outer), ErrorKind.TIMEOUT)

    def test_default_user_agent_left_to_profile(self):
        self.assertNotIn("User-Agent", CurlFetcher().request_headers())
        self.assertEqual(CurlFetcher(user_agent="bot/2").request_headers()["User-Agent"], "bot/2")
        self.assertEqual(RequestsFetcher().request_headers()["User-Agent"], DEFAULT_USER_AGENT)

    def test_read_body_caps_size(self):
        fetcher = CurlFetcher(max_body_size=4)
        with self.assertRaises(FetchError):
            fetcher.read_body("https://example.com/", FakeResponse(content=b"<html>"))

    def test_body_cap_stops_streaming_early(self):
        """The stream is abandoned at the first chunk past the cap."""
        consumed = []

        class CountingResponse(FakeResponse):
            def iter_content(self, chunk_size=1):
                for chunk in super().iter_content(chunk_size=4):
                    consumed.append(chunk)
                    yield chunk

        response = CountingResponse(content=b"x" * 400)
        with self.assertRaises(FetchError) as ctx:
            CurlFetcher(max_body_size=10).read_body("https://example.com/", response)
        self.assertEqual(ctx.exception.kind, ErrorKind.BODY_TOO_LARGE)
        self.assertEqual(len(consumed), 3)
        self.assertTrue(response.closed)

    def test_timeout_while_reading_body(self):
        response = BrokenStreamResponse(CurlLikeError("Operation timed out", 28))
        with self.assertRaises(FetchError) as ctx:
            CannedCurlFetcher(response).fetch("https://example.com/")
        self.assertEqual(ctx.exception.kind, ErrorKind.TIMEOUT)
        self.assertTrue(response.closed)

    def test_streamed_response_closes_session(self):
        class Closable:
            status_code = 200
            headers = {}
            url = "https://example.com/"
            closed = False

            def close(self):
                self.closed = True

        session, inner = Closable(), Closable()
        wrapped = _StreamedResponse(session, inner)
        self.assertEqual(wrapped.status_code, 200)
        wrapped.close()
        self.assertTrue(inner.closed)
        self.assertTrue(session.closed)


if __name__ == "__main__":
    unittest.main()

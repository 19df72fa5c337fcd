"""Tests for the RateLimiter class."""

import threading
import time
import unittest

from newscrawl.errors import ConfigurationError, CrawlCancelledError
from newscrawl.rate_limiter import LimitRule, RateLimiter


class TestRateLimiterSpacing(unittest.TestCase):
    """Verify that the rate limiter spaces dispatches on one rule."""

    def test_acquire_does_not_block_first_call(self):
        """The first acquire() call should return almost immediately."""
        limiter = RateLimiter(default=LimitRule(parallelism=1, delay=1.0))
        start = time.monotonic()
        release = limiter.acquire("example.com")
        elapsed = time.monotonic() - start
        release()
        self.assertLess(elapsed, 0.05)

    def test_acquire_spaces_rapid_calls(self):
        """Three dispatches with a 0.2s delay take at least 0.4s."""
        limiter = RateLimiter(default=LimitRule(parallelism=3, delay=0.2))
        start = time.monotonic()
        releases = [limiter.acquire("example.com") for _ in range(3)]
        elapsed = time.monotonic() - start
        for release in releases:
            release()
        self.assertGreaterEqual(elapsed, 0.39)

    def test_zero_delay_does_not_block(self):
        """No delay and no jitter disables spacing entirely."""
        limiter = RateLimiter(default=LimitRule(parallelism=1))
        start = time.monotonic()
        for _ in range(10):
            limiter.acquire("example.com")()
        self.assertLess(time.monotonic() - start, 0.1)


class TestRateLimiterConcurrency(unittest.TestCase):
    """Verify the per-rule parallelism bound."""

    def test_never_exceeds_parallelism(self):
        limiter = RateLimiter(default=LimitRule(parallelism=2))
        lock = threading.Lock()
        state = {"current": 0, "peak": 0}

        def fetch():
            release = limiter.acquire("news.example.com")
            try:
                with lock:
                    state["current"] += 1
                    state["peak"] = max(state["peak"], state["current"])
                time.sleep(0.02)
                with lock:
                    state["current"] -= 1
            finally:
                release()

        threads = [threading.Thread(target=fetch) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertLessEqual(state["peak"], 2)
        self.assertEqual(limiter.in_flight("news.example.com"), 0)

    def test_release_is_idempotent(self):
        limiter = RateLimiter(default=LimitRule(parallelism=1))
        release = limiter.acquire("example.com")
        release()
        release()
        self.assertEqual(limiter.in_flight("example.com"), 0)

    def test_rules_are_independent(self):
        """A full rule does not block hosts governed by another rule."""
        limiter = RateLimiter(
            rules=[LimitRule(domain_glob="*.slow.com", parallelism=1)],
            default=LimitRule(parallelism=1),
        )
        held = limiter.acquire("www.slow.com")
        start = time.monotonic()
        limiter.acquire("fast.org")()
        self.assertLess(time.monotonic() - start, 0.1)
        held()

    def test_rule_matching(self):
        limiter = RateLimiter(rules=[LimitRule(domain_glob="*.example.com", parallelism=4)])
        self.assertEqual(limiter.rule_for("WWW.Example.com").parallelism, 4)
        self.assertEqual(limiter.rule_for("other.org").domain_glob, "*")
        self.assertEqual(limiter.max_parallelism, 4)


class TestRateLimiterCancellation(unittest.TestCase):
    """Verify that waits are abandoned promptly on cancel."""

    def test_cancel_while_waiting_for_slot(self):
        limiter = RateLimiter(default=LimitRule(parallelism=1))
        held = limiter.acquire("example.com")
        cancel = threading.Event()
        errors = []

        def waiter():
            try:
                limiter.acquire("example.com", cancel)
            except CrawlCancelledError as exc:
                errors.append(exc)

        thread = threading.Thread(target=waiter)
        thread.start()
        time.sleep(0.05)
        cancel.set()
        thread.join(timeout=2)
        self.assertFalse(thread.is_alive())
        self.assertEqual(len(errors), 1)
        held()

    def test_cancel_during_spacing_delay_gives_slot_back(self):
        limiter = RateLimiter(default=LimitRule(parallelism=2, delay=5.0))
        limiter.acquire("example.com")()
        cancel = threading.Event()
        threading.Timer(0.05, cancel.set).start()
        start = time.monotonic()
        with self.assertRaises(CrawlCancelledError):
            limiter.acquire("example.com", cancel)
        self.assertLess(time.monotonic() - start, 2.0)
        self.assertEqual(limiter.in_flight("example.com"), 0)

    def test_already_cancelled(self):
        limiter = RateLimiter()
        cancel = threading.Event()
        cancel.set()
        with self.assertRaises(CrawlCancelledError):
            limiter.acquire("example.com", cancel)


class TestLimitRuleValidation(unittest.TestCase):
    def test_zero_parallelism_rejected(self):
        with self.assertRaises(ConfigurationError):
            RateLimiter(rules=[LimitRule(parallelism=0)])

    def test_negative_delay_rejected(self):
        with self.assertRaises(ConfigurationError):
            LimitRule(delay=-1.0).validate()


if __name__ == "__main__":
    unittest.main()

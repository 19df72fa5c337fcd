"""Tests for data model classes."""

import unittest
from datetime import datetime, timezone

from newscrawl.errors import ConfigurationError, InvalidTransitionError
from newscrawl.models import (
    CrawlTask,
    ExtractedContent,
    FetchAttempt,
    RetryDecision,
    SelectorMap,
    TaskContext,
    TaskState,
)


class TestCrawlTask(unittest.TestCase):
    """Verify CrawlTask creation and immutability."""

    def test_task_is_immutable(self):
        """Frozen dataclass should raise on attribute assignment."""
        task = CrawlTask(url="https://example.com", depth=0, source_id="web")
        with self.assertRaises(AttributeError):
            task.url = "https://other.com"

    def test_fetch_attempt_is_one_based(self):
        task = CrawlTask(url="https://example.com", depth=0, source_id="web")
        with self.assertRaises(ValueError):
            FetchAttempt(task=task, attempt_number=0)


class TestTaskContext(unittest.TestCase):
    """Verify the per-task state machine."""

    def setUp(self):
        self.ctx = TaskContext(task=CrawlTask(url="https://example.com/a", depth=1, source_id="web"))

    def test_starts_pending(self):
        self.assertEqual(self.ctx.state, TaskState.PENDING)
        self.assertEqual(self.ctx.attempts, 0)

    def test_retry_cycle(self):
        """Pending -> Fetching -> Retrying -> Fetching -> Succeeded."""
        first = self.ctx.begin_attempt()
        self.assertEqual(first.attempt_number, 1)
        self.ctx.transition(TaskState.RETRYING)
        second = self.ctx.begin_attempt()
        self.assertEqual(second.attempt_number, 2)
        self.ctx.transition(TaskState.SUCCEEDED)
        self.assertTrue(self.ctx.state.terminal)

    def test_terminal_states_are_final(self):
        self.ctx.begin_attempt()
        self.ctx.transition(TaskState.FAILED)
        with self.assertRaises(InvalidTransitionError):
            self.ctx.transition(TaskState.FETCHING)

    def test_cannot_succeed_without_fetching(self):
        with self.assertRaises(InvalidTransitionError):
            self.ctx.transition(TaskState.SUCCEEDED)


class TestSelectorMap(unittest.TestCase):
    """Verify SelectorMap construction from config dicts."""

    def test_defaults(self):
        selectors = SelectorMap.from_dict(None)
        self.assertEqual(selectors.title, "h1")
        self.assertEqual(selectors.canonical, "link[rel='canonical']")

    def test_from_dict_with_exclude(self):
        selectors = SelectorMap.from_dict({"title": " h2.headline ", "exclude": ".ad"})
        self.assertEqual(selectors.title, "h2.headline")
        self.assertEqual(selectors.exclude, (".ad",))

    def test_unknown_field_rejected(self):
        with self.assertRaises(ConfigurationError):
            SelectorMap.from_dict({"headline": "h1"})

    def test_title_required(self):
        with self.assertRaises(ConfigurationError):
            SelectorMap(title="").validate()


class TestExtractedContent(unittest.TestCase):
    def test_to_dict_serializes_timestamp(self):
        content = ExtractedContent(
            id="abc",
            source="web",
            title="T",
            body="B",
            url="",
            page_url="https://example.com/a",
            published_at=datetime(2024, 3, 20, 10, 0, tzinfo=timezone.utc),
        )
        data = content.to_dict()
        self.assertEqual(data["published_at"], "2024-03-20T10:00:00+00:00")
        self.assertEqual(data["categories"], [])


class TestRetryDecision(unittest.TestCase):
    def test_constructors(self):
        self.assertTrue(RetryDecision.retry(2.0).should_retry)
        self.assertEqual(RetryDecision.retry(2.0).delay, 2.0)
        self.assertFalse(RetryDecision.terminal().should_retry)


if __name__ == "__main__":
    unittest.main()

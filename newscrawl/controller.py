from __future__ import annotations

import logging
import queue
import re
import threading
import time
from typing import Dict, List, Optional, Pattern, Tuple
from urllib.parse import urldefrag, urljoin, urlsplit, urlunsplit

from .backoff import BackoffStrategy
from .base import BaseFetcher
from .classifier import ContentClassifier
from .config import SourceConfig
from .document import parse_page
from .errors import ConfigurationError, CrawlCancelledError, CrawlError, ExtractionError
from .extractor import FieldExtractor
from .factory import FetcherFactory
from .metrics import MetricsCollector
from .models import CrawlTask, MetricsSnapshot, Page, TaskContext, TaskState
from .rate_limiter import RateLimiter
from .retry import RetryPolicy
from .storage import StorageBase

_SKIPPED_LINK_PREFIXES = ("#", "javascript:", "mailto:", "tel:", "data:")
_DEFAULT_PORTS = {"http": 80, "https": 443}


def normalize_url(url: str) -> str:
    """Canonical form used as the dedupe key for visited URLs."""
    parts = urlsplit(url.strip())
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    netloc = host
    if parts.port is not None and parts.port != _DEFAULT_PORTS.get(scheme):
        netloc = f"{host}:{parts.port}"
    if parts.username:
        userinfo = parts.username + (f":{parts.password}" if parts.password else "")
        netloc = f"{userinfo}@{netloc}"
    return urlunsplit((scheme, netloc, parts.path or "/", parts.query, ""))


class CrawlController:
    """Runs one crawl session: traversal bounds, worker pool and the page pipeline.

    Tasks go through a queue consumed by a fixed pool of worker threads, sized
    by the largest parallelism among the source's limit rules. Each worker
    acquires a slot from the rate limiter, fetches, and on success runs
    classify -> extract -> emit -> discover links. Failed fetches go to the
    retry policy; a task due for a retry is parked on a timer and re-queued
    once its backoff has passed, so the worker and the limiter slot are free
    for other tasks meanwhile and attempts for one task never overlap.

    Only stop() halts the crawl. Fetch and extraction failures are contained
    to their task and show up in the logs and the error counters.
    """

    def __init__(
        self,
        sink: StorageBase,
        fetcher: Optional[BaseFetcher] = None,
        metrics: Optional[MetricsCollector] = None,
        factory: Optional[FetcherFactory] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if sink is None:
            raise ConfigurationError("sink is required")
        self._sink = sink
        self._fetcher_override = fetcher
        self._factory = factory or FetcherFactory()
        self._metrics = metrics or MetricsCollector()
        self.logger = logger or logging.getLogger(__name__)
        self._extractor = FieldExtractor(self._metrics, logger=self.logger)

        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._visited: set = set()
        self._pending = 0
        self._queue: "queue.Queue[Optional[TaskContext]]" = queue.Queue()
        self._workers: List[threading.Thread] = []
        self._cancel: Optional[threading.Event] = None
        self._delayed: Dict[int, Tuple[threading.Timer, TaskContext]] = {}
        self._running = False

        self._source: Optional[SourceConfig] = None
        self._fetcher: Optional[BaseFetcher] = None
        self._limiter: Optional[RateLimiter] = None
        self._retry: Optional[RetryPolicy] = None
        self._classifier: Optional[ContentClassifier] = None
        self._domains: frozenset = frozenset()
        self._disallowed: List[Pattern[str]] = []

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def retry_policy(self) -> Optional[RetryPolicy]:
        return self._retry

    @property
    def rate_limiter(self) -> Optional[RateLimiter]:
        return self._limiter

    def get_metrics(self) -> MetricsSnapshot:
        return self._metrics.snapshot()

    def start(self, seed_url: str, source: SourceConfig) -> None:
        """Validate the source, spin up the worker pool and submit the seed URL."""
        if source is None:
            raise ConfigurationError("source config is required")
        source.validate()
        seed_url = (seed_url or source.base_url).strip()
        if not seed_url:
            raise ConfigurationError("base URL cannot be empty")
        if self._running:
            raise CrawlError("crawl already running")

        self._source = source
        self._fetcher = self._fetcher_override or self._factory.create_fetcher(source)
        self._limiter = RateLimiter(source.limit_rules, default=source.default_rule())
        self._retry = RetryPolicy(
            self._metrics,
            BackoffStrategy(source.backoff_unit, source.backoff_multiplier, source.backoff_max),
            max_retries=source.max_retries,
            logger=self.logger,
        )
        self._classifier = ContentClassifier(source.classifier, logger=self.logger)
        self._domains = frozenset(source.domains)
        self._disallowed = [re.compile(p) for p in source.disallowed_url_filters]

        with self._lock:
            self._visited = set()
            self._pending = 0
            self._delayed = {}
        self._queue = queue.Queue()
        self._cancel = threading.Event()
        self._running = True

        seed = CrawlTask(url=seed_url, depth=0, source_id=source.name)
        if not self._admissible(seed):
            self._running = False
            raise ConfigurationError(f"seed URL {seed_url} is outside the allowed domains or filters")

        workers = self._limiter.max_parallelism
        self._workers = [
            threading.Thread(target=self._worker, name=f"newscrawl-worker-{i}", daemon=True)
            for i in range(workers)
        ]
        for worker in self._workers:
            worker.start()

        self.logger.info(
            "Crawl started",
            extra={
                "source": source.name,
                "seed_url": seed_url,
                "max_depth": source.max_depth,
                "workers": workers,
                "allowed_domains": sorted(self._domains),
            },
        )
        self.submit(seed)

    def stop(self) -> None:
        """Ask the crawl to wind down: no new tasks, waiting fetches give up."""
        if self._cancel is None or self._cancel.is_set():
            return
        self.logger.info("Stopping crawl", extra={"source": self._source.name if self._source else ""})
        self._cancel.set()
        with self._lock:
            delayed, self._delayed = list(self._delayed.values()), {}
        for timer, ctx in delayed:
            timer.cancel()
            self._abandon(ctx)
            self._task_done()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every submitted task is terminal; False on timeout."""
        with self._idle:
            done = self._idle.wait_for(lambda: self._pending == 0, timeout=timeout)
        if done:
            self._shutdown_workers()
        return done

    def run(self, seed_url: str, source: SourceConfig) -> MetricsSnapshot:
        """Crawl from seed_url until done or stopped and return the final metrics."""
        self.start(seed_url, source)
        try:
            self.wait()
        except KeyboardInterrupt:
            self.stop()
            self.wait()
        snap = self.get_metrics()
        self.logger.info(
            "Crawl finished",
            extra={
                "source": source.name,
                "processed": snap.processed_count,
                "errors": snap.error_count,
                "errors_by_kind": snap.errors_by_kind,
                "retry_exhausted": snap.retry_exhausted_count,
                "elements": snap.elements_processed,
            },
        )
        return snap

    def submit(self, task: CrawlTask) -> bool:
        """Queue task unless it is out of bounds, already visited or the crawl is stopping."""
        if not self._running or self._cancel is None or self._cancel.is_set():
            return False
        if not self._admissible(task):
            return False

        key = normalize_url(task.url)
        with self._lock:
            if key in self._visited:
                return False
            self._visited.add(key)
            self._pending += 1
        self._queue.put(TaskContext(task=task))
        return True

    def on_link_discovered(self, parent: CrawlTask, raw_link: str, base_url: Optional[str] = None) -> bool:
        link = (raw_link or "").strip()
        if not link or link.lower().startswith(_SKIPPED_LINK_PREFIXES):
            return False
        absolute, _ = urldefrag(urljoin(base_url or parent.url, link))
        if not absolute:
            return False
        child = CrawlTask(url=absolute, depth=parent.depth + 1, source_id=parent.source_id)
        return self.submit(child)

    def on_fetched(self, ctx: TaskContext, page: Optional[Page], error: Optional[BaseException]) -> Optional[float]:
        """Handle the outcome of one attempt; return the retry delay, or None once terminal."""
        url = ctx.task.url
        if error is not None:
            decision = self._retry.evaluate(url, error)
            if decision.should_retry:
                ctx.transition(TaskState.RETRYING)
                self.logger.info(
                    "Retrying fetch",
                    extra={"url": url, "attempt": ctx.attempts, "delay": decision.delay, "error": str(error)},
                )
                return decision.delay
            ctx.error = error
            ctx.transition(TaskState.FAILED)
            self.logger.warning(
                "Fetch failed",
                extra={
                    "url": url,
                    "attempts": ctx.attempts,
                    "status_code": getattr(error, "status_code", None),
                    "kind": getattr(getattr(error, "kind", None), "value", type(error).__name__),
                    "error": str(error),
                },
            )
            return None

        self._retry.record_success(url)
        try:
            self._process_page(ctx, page)
        finally:
            ctx.release_document()
            ctx.transition(TaskState.SUCCEEDED)
        return None

    def _admissible(self, task: CrawlTask) -> bool:
        source = self._source
        if task.depth > source.max_depth:
            self.logger.debug("Skipping URL beyond max depth", extra={"url": task.url, "depth": task.depth})
            return False
        parts = urlsplit(task.url)
        if parts.scheme not in ("http", "https") or not parts.hostname:
            return False
        if parts.hostname.lower() not in self._domains:
            self.logger.debug("Skipping URL on forbidden domain", extra={"url": task.url})
            return False
        for pattern in self._disallowed:
            if pattern.search(task.url):
                self.logger.debug("Skipping disallowed URL", extra={"url": task.url, "filter": pattern.pattern})
                return False
        return True

    def _worker(self) -> None:
        while True:
            ctx = self._queue.get()
            if ctx is None:
                break
            finished = True
            try:
                finished = self._run_task(ctx)
            except Exception as exc:  # noqa: BLE001
                self._metrics.record_error("internal")
                self.logger.exception("Unexpected error while crawling", extra={"url": ctx.task.url})
                ctx.error = exc
            finally:
                if finished:
                    self._task_done()

    def _run_task(self, ctx: TaskContext) -> bool:
        """Run one attempt for ctx; False when the task was parked for a retry."""
        url = ctx.task.url
        if self._cancel.is_set():
            self._abandon(ctx)
            return True
        host = (urlsplit(url).hostname or "").lower()
        try:
            release = self._limiter.acquire(host, self._cancel)
        except CrawlCancelledError:
            self._abandon(ctx)
            return True

        ctx.begin_attempt()
        page: Optional[Page] = None
        error: Optional[BaseException] = None
        try:
            page = self._fetcher.fetch(url)
        except Exception as exc:  # noqa: BLE001
            error = exc
        finally:
            release()

        delay = self.on_fetched(ctx, page, error)
        if delay is None:
            return True
        return not self._schedule_retry(ctx, delay)

    def _schedule_retry(self, ctx: TaskContext, delay: float) -> bool:
        """Re-queue ctx after delay seconds; False if the crawl is stopping."""
        key = id(ctx)
        with self._lock:
            if self._cancel.is_set():
                parked = False
            else:
                timer = threading.Timer(delay, self._requeue, args=(key,))
                timer.daemon = True
                self._delayed[key] = (timer, ctx)
                timer.start()
                parked = True
        if not parked:
            self._abandon(ctx)
        return parked

    def _requeue(self, key: int) -> None:
        with self._lock:
            entry = self._delayed.pop(key, None)
        if entry is not None:
            self._queue.put(entry[1])

    def _abandon(self, ctx: TaskContext) -> None:
        self._retry.forget(ctx.task.url)
        ctx.error = CrawlCancelledError()
        if not ctx.state.terminal:
            ctx.transition(TaskState.FAILED)
        self.logger.debug("Task abandoned, crawl stopping", extra={"url": ctx.task.url})

    def _process_page(self, ctx: TaskContext, page: Page) -> None:
        started = time.monotonic()
        try:
            ctx.document = parse_page(page)
        except ExtractionError as exc:
            self._extraction_failed(ctx, exc)
            return

        ctx.classification = self._classifier.classify(ctx.document)
        if ctx.classification.is_article or self._source.emit_pages:
            self._extract_and_emit(ctx)
        self._metrics.record_processing_time(time.monotonic() - started)

        if ctx.task.depth < self._source.max_depth:
            for link in ctx.document.iter_links():
                self.on_link_discovered(ctx.task, link, base_url=page.url)

    def _extract_and_emit(self, ctx: TaskContext) -> None:
        try:
            content = self._extractor.extract(
                ctx.document,
                self._source.selectors,
                ctx.classification,
                source=self._source.name,
            )
        except ExtractionError as exc:
            self._extraction_failed(ctx, exc)
            return

        ctx.content = content
        self._metrics.record_processed()
        try:
            self._sink.emit(content)
        except Exception as exc:  # noqa: BLE001
            self._metrics.record_error("sink")
            self.logger.error("Sink rejected record", extra={"url": ctx.task.url, "error": str(exc)})
            return
        self.logger.debug(
            "Emitted record",
            extra={"url": ctx.task.url, "title": content.title, "content_type": content.content_type},
        )

    def _extraction_failed(self, ctx: TaskContext, exc: ExtractionError) -> None:
        ctx.error = exc
        self._metrics.record_error("extraction")
        self.logger.warning(
            "Extraction failed",
            extra={"url": ctx.task.url, "error": exc.message, "error_type": type(exc).__name__},
        )

    def _task_done(self) -> None:
        with self._idle:
            self._pending = max(0, self._pending - 1)
            if self._pending == 0:
                self._idle.notify_all()

    def _shutdown_workers(self) -> None:
        workers, self._workers = self._workers, []
        for _ in workers:
            self._queue.put(None)
        for worker in workers:
            if worker is not threading.current_thread():
                worker.join(timeout=5)
        self._running = False

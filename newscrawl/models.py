from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import ConfigurationError, InvalidTransitionError


@dataclass(frozen=True)
class CrawlTask:
    url: str
    depth: int
    source_id: str


@dataclass(frozen=True)
class FetchAttempt:
    task: CrawlTask
    attempt_number: int
    started_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if self.attempt_number < 1:
            raise ValueError("attempt_number is 1-based")


class TaskState(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (TaskState.SUCCEEDED, TaskState.FAILED)


_TRANSITIONS = {
    TaskState.PENDING: {TaskState.FETCHING, TaskState.FAILED},
    TaskState.FETCHING: {TaskState.SUCCEEDED, TaskState.RETRYING, TaskState.FAILED},
    TaskState.RETRYING: {TaskState.FETCHING, TaskState.FAILED},
    TaskState.SUCCEEDED: set(),
    TaskState.FAILED: set(),
}


@dataclass(frozen=True)
class Page:
    """Raw fetch result handed back by a fetcher."""

    url: str
    status_code: int
    content: bytes
    headers: Dict[str, str] = field(default_factory=dict)
    latency_ms: int = 0


@dataclass(frozen=True)
class ClassificationSignals:
    meta_type: str = ""
    schema_type: str = ""
    url_pattern_match: str = ""
    dom_markers: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ClassificationResult:
    is_article: bool
    signals: ClassificationSignals
    reason: str = ""


SELECTOR_FIELDS = (
    "title",
    "body",
    "author",
    "published_at",
    "categories",
    "tags",
    "canonical",
    "container",
)


@dataclass(frozen=True)
class SelectorMap:
    """CSS selectors for each logical field of a source.

    Comma-separated selectors are tried in order. `exclude` lists selectors
    stripped from the body container before its text is read."""

    title: str = "h1"
    body: str = "article p"
    author: str = ""
    published_at: str = "time"
    categories: str = ""
    tags: str = ""
    canonical: str = "link[rel='canonical']"
    container: str = ""
    exclude: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "SelectorMap":
        if not raw:
            return cls()
        unknown = set(raw) - set(SELECTOR_FIELDS) - {"exclude"}
        if unknown:
            raise ConfigurationError(f"unknown selector fields: {', '.join(sorted(unknown))}")
        values: Dict[str, Any] = {}
        for name in SELECTOR_FIELDS:
            if name in raw:
                value = raw[name]
                if value is not None and not isinstance(value, str):
                    raise ConfigurationError(f"selector {name} must be a string")
                values[name] = (value or "").strip()
        if "exclude" in raw:
            exclude = raw["exclude"] or []
            if isinstance(exclude, str):
                exclude = [exclude]
            values["exclude"] = tuple(str(s).strip() for s in exclude if str(s).strip())
        return cls(**values)

    def validate(self) -> None:
        if not self.title:
            raise ConfigurationError("title selector is required")
        if not self.body and not self.container:
            raise ConfigurationError("body or container selector is required")


@dataclass
class ExtractedContent:
    id: str
    source: str
    title: str
    body: str
    url: str
    page_url: str
    published_at: Optional[datetime] = None
    author: str = ""
    categories: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, str] = field(default_factory=dict)
    content_type: str = "article"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["published_at"] = self.published_at.isoformat() if self.published_at else None
        return data


class RetryAction(str, Enum):
    RETRY = "retry"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class RetryDecision:
    action: RetryAction
    delay: float = 0.0

    @classmethod
    def retry(cls, delay: float) -> "RetryDecision":
        return cls(RetryAction.RETRY, delay)

    @classmethod
    def terminal(cls) -> "RetryDecision":
        return cls(RetryAction.TERMINAL, 0.0)

    @property
    def should_retry(self) -> bool:
        return self.action is RetryAction.RETRY


@dataclass(frozen=True)
class MetricsSnapshot:
    processed_count: int
    error_count: int
    elements_processed: int
    retry_exhausted_count: int
    errors_by_kind: Dict[str, int]
    processing_duration: float
    last_processed_time: Optional[float]
    start_time: float


@dataclass
class TaskContext:
    """Per-task state record carried through fetch, classify and extract.

    Owned by one worker at a time, so it needs no locking."""

    task: CrawlTask
    state: TaskState = TaskState.PENDING
    attempts: int = 0
    document: Optional[Any] = None
    classification: Optional[ClassificationResult] = None
    content: Optional[ExtractedContent] = None
    error: Optional[Exception] = None

    def transition(self, target: TaskState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.task.url, self.state.value, target.value)
        self.state = target

    def begin_attempt(self) -> FetchAttempt:
        self.transition(TaskState.FETCHING)
        self.attempts += 1
        return FetchAttempt(task=self.task, attempt_number=self.attempts)

    def release_document(self) -> None:
        """Drop the parsed document once classification and extraction are done."""
        self.document = None

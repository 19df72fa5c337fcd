from __future__ import annotations

import fnmatch
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

from .errors import ConfigurationError, CrawlCancelledError


@dataclass(frozen=True)
class LimitRule:
    """Parallelism and spacing policy for hosts matching a glob."""

    domain_glob: str = "*"
    parallelism: int = 1
    delay: float = 0.0
    random_delay: float = 0.0

    def validate(self) -> None:
        if not self.domain_glob:
            raise ConfigurationError("limit rule domain_glob cannot be empty")
        if self.parallelism < 1:
            raise ConfigurationError("limit rule parallelism must be at least 1")
        if self.delay < 0 or self.random_delay < 0:
            raise ConfigurationError("limit rule delays must be non-negative")

    def matches(self, domain: str) -> bool:
        return fnmatch.fnmatchcase(domain.lower(), self.domain_glob.lower())


class _RuleState:
    def __init__(self, rule: LimitRule) -> None:
        self.rule = rule
        self.cv = threading.Condition(threading.Lock())
        self.active = 0
        self.next_allowed = 0.0


class RateLimiter:
    """Per-domain-rule concurrency and request spacing.

    acquire() blocks the calling thread until the matching rule has a free
    slot and the minimum delay since the previous dispatch on that rule has
    passed. Waiting happens on a condition variable, never in a busy loop, and
    is abandoned promptly when the cancel event is set."""

    _POLL_SECS = 0.25

    def __init__(self, rules: Iterable[LimitRule] = (), default: Optional[LimitRule] = None) -> None:
        self._states: List[_RuleState] = []
        for rule in rules:
            rule.validate()
            self._states.append(_RuleState(rule))
        default = default or LimitRule()
        default.validate()
        self._default = _RuleState(default)

    def rule_for(self, domain: str) -> LimitRule:
        return self._state_for(domain).rule

    def _state_for(self, domain: str) -> _RuleState:
        for state in self._states:
            if state.rule.matches(domain):
                return state
        return self._default

    @property
    def max_parallelism(self) -> int:
        return max([s.rule.parallelism for s in self._states] + [self._default.rule.parallelism])

    def in_flight(self, domain: str) -> int:
        state = self._state_for(domain)
        with state.cv:
            return state.active

    def acquire(self, domain: str, cancel: Optional[threading.Event] = None) -> Callable[[], None]:
        """Block until a fetch to domain may start; return its release callback."""
        state = self._state_for(domain)
        rule = state.rule

        with state.cv:
            while state.active >= rule.parallelism:
                if cancel is not None and cancel.is_set():
                    raise CrawlCancelledError()
                state.cv.wait(timeout=self._POLL_SECS)
            if cancel is not None and cancel.is_set():
                raise CrawlCancelledError()
            state.active += 1

            # Reserve the next dispatch time while holding the lock so two
            # dispatches on one rule are never closer than rule.delay.
            wait_until = 0.0
            if rule.delay > 0 or rule.random_delay > 0:
                spacing = rule.delay + random.uniform(0, rule.random_delay)
                now = time.monotonic()
                wait_until = max(now, state.next_allowed)
                state.next_allowed = wait_until + spacing

        release = self._make_release(state)
        remaining = wait_until - time.monotonic()
        if remaining > 0:
            if cancel is not None:
                if cancel.wait(remaining):
                    release()
                    raise CrawlCancelledError()
            else:
                time.sleep(remaining)
        return release

    @staticmethod
    def _make_release(state: _RuleState) -> Callable[[], None]:
        released = threading.Event()

        def release() -> None:
            with state.cv:
                if released.is_set():
                    return
                released.set()
                state.active = max(0, state.active - 1)
                state.cv.notify_all()

        return release

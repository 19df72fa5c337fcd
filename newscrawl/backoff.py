from __future__ import annotations

from typing import Optional


class BackoffStrategy:
    """Exponential backoff for retry delays.

    Computes sleep duration as unit * multiplier^attempt, where attempt is the
    number of retries already made (0 for the first retry), optionally capped
    at a configurable maximum. With multiplier >= 1 successive delays never
    decrease."""

    def __init__(
        self,
        unit_seconds: float = 1.0,
        multiplier: float = 2.0,
        max_seconds: Optional[float] = None,
    ) -> None:
        if unit_seconds < 0:
            raise ValueError("unit_seconds must be non-negative")
        if multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        self._unit = unit_seconds
        self._multiplier = multiplier
        self._max = max_seconds

    def get_sleep(self, attempt: int) -> float:
        """Calculate the backoff sleep duration in seconds for a given retry attempt."""
        delay = self._unit * (self._multiplier ** max(attempt, 0))
        if self._max is not None:
            delay = min(self._max, delay)
        return delay

from __future__ import annotations

import json
import queue
import threading
import time
from abc import ABC, abstractmethod
from typing import Optional

from .errors import CrawlError
from .models import ExtractedContent


class StorageError(CrawlError):
    """Raised by a sink that cannot accept a record."""


class StorageBase(ABC):
    """Abstract base class for all sinks.

    Subclasses must implement emit() and close(). The crawler never retries
    a failed emit; a sink that wants retries does them itself.
    """

    @abstractmethod
    def emit(self, content: ExtractedContent) -> None:
        """Hand over a single extracted record."""

    @abstractmethod
    def close(self) -> None:
        """Flush pending writes and release resources."""


class JsonlStorage(StorageBase):
    """Stores extracted records as JSON Lines (.jsonl) using a background writer thread."""

    def __init__(self, path: str) -> None:
        self._path = path
        self._queue: queue.Queue[Optional[str]] = queue.Queue()
        self._closed = False
        self._thread = threading.Thread(target=self._writer, daemon=True)
        self._thread.start()

    def emit(self, content: ExtractedContent) -> None:
        """Serialize the record and enqueue it for background writing."""
        if self._closed:
            raise StorageError(f"storage {self._path} is closed")
        record = {"timestamp": time.time(), **content.to_dict()}
        try:
            line = json.dumps(record, ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            raise StorageError(f"cannot serialize record for {content.page_url}: {exc}") from exc
        self._queue.put(line)

    def close(self) -> None:
        """Signal the writer thread to flush and stop."""
        if self._closed:
            return
        self._closed = True
        self._queue.put(None)
        self._thread.join(timeout=5)

    def _writer(self) -> None:
        with open(self._path, "a", encoding="utf-8") as f:
            while True:
                line = self._queue.get()
                if line is None:
                    break
                f.write(line + "\n")
                f.flush()

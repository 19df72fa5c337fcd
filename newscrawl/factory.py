from __future__ import annotations

from typing import Dict

from .base import BaseFetcher
from .config import SourceConfig
from .fetchers import CurlFetcher, RequestsFetcher


class FetcherFactory:
    """Creates the fetcher a source asks for.

    Sources with `impersonate` set get a CurlFetcher using that browser
    profile, everything else a RequestsFetcher. Both are stateless between
    calls, so one instance per source is cached and shared across workers.
    """

    def __init__(self) -> None:
        self._cache: Dict[str, BaseFetcher] = {}

    def create_fetcher(self, source: SourceConfig) -> BaseFetcher:
        if source.name in self._cache:
            return self._cache[source.name]

        options = dict(
            user_agent=source.user_agent,
            timeout=source.request_timeout,
            max_body_size=source.max_body_size,
        )
        if source.impersonate:
            fetcher: BaseFetcher = CurlFetcher(impersonate=source.impersonate, **options)
        else:
            fetcher = RequestsFetcher(**options)

        self._cache[source.name] = fetcher
        return fetcher

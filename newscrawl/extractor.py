"""Selector-driven field extraction.

FieldExtractor turns one ParsedDocument into one ExtractedContent record using
the source's SelectorMap. Missing optional fields come back empty; a missing
title or body raises MissingFieldError and nothing is emitted.

Timestamps are tried against a fixed, ordered list of formats and the first
one that parses wins:

    RFC3339           2024-03-20T10:00:00Z, 2024-03-20T10:00:00.123+02:00
    RFC1123           Wed, 20 Mar 2024 10:00:00 GMT
    RFC1123Z          Wed, 20 Mar 2024 10:00:00 +0000
    ISO without zone  2024-03-20T10:00:00
    plain             2024-03-20 10:00:00

Values without a zone are taken as UTC. An unparseable timestamp is not
fatal: the field stays None and a "timestamp" error is counted.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from bs4 import BeautifulSoup
from bs4.element import Tag

from .document import ParsedDocument
from .errors import MissingFieldError
from .metrics import MetricsCollector
from .models import ClassificationResult, ExtractedContent, SelectorMap

TIMESTAMP_FORMATS: Tuple[Tuple[str, str], ...] = (
    ("RFC3339", "%Y-%m-%dT%H:%M:%S%z"),
    ("RFC3339", "%Y-%m-%dT%H:%M:%S.%f%z"),
    ("RFC1123", "%a, %d %b %Y %H:%M:%S %Z"),
    ("RFC1123Z", "%a, %d %b %Y %H:%M:%S %z"),
    ("ISO", "%Y-%m-%dT%H:%M:%S"),
    ("DATETIME", "%Y-%m-%d %H:%M:%S"),
)


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse value with the first matching format, or return None."""
    value = (value or "").strip()
    if not value:
        return None
    for _, fmt in TIMESTAMP_FORMATS:
        try:
            parsed = datetime.strptime(value, fmt)
        except ValueError:
            continue
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return None


def content_id(url: str) -> str:
    if not url:
        return ""
    return hashlib.sha256(url.encode("utf-8")).hexdigest()


def _text(element: Tag, excludes: Sequence[str] = ()) -> str:
    if excludes:
        element = BeautifulSoup(str(element), "html.parser")
        for selector in excludes:
            for tag in element.select(selector):
                tag.decompose()
    return " ".join(element.get_text(" ", strip=True).split())


class FieldExtractor:
    """Builds ExtractedContent records from parsed documents."""

    def __init__(self, metrics: MetricsCollector, logger: Optional[logging.Logger] = None) -> None:
        self._metrics = metrics
        self.logger = logger or logging.getLogger(__name__)

    def extract(
        self,
        document: ParsedDocument,
        selectors: SelectorMap,
        classification: Optional[ClassificationResult] = None,
        source: str = "",
    ) -> ExtractedContent:
        title = self._title(document, selectors)
        if not title:
            raise MissingFieldError("title", document.url)
        body = self._body(document, selectors)
        if not body:
            raise MissingFieldError("body", document.url)

        is_article = classification.is_article if classification is not None else True
        return ExtractedContent(
            id=content_id(document.url),
            source=source,
            title=title,
            body=body,
            url=self._url(document, selectors),
            page_url=document.url,
            published_at=self._published_at(document, selectors),
            author=self._author(document, selectors),
            categories=self._tokens(document, selectors.categories),
            tags=self._tags(document, selectors),
            metadata=self._metadata(document),
            content_type="article" if is_article else "page",
        )

    def _matched(self, count: int = 1) -> None:
        if count > 0:
            self._metrics.record_elements_processed(count)

    def _first_text(self, document: ParsedDocument, selector: str) -> str:
        element = document.first_match(selector)
        if element is None:
            return ""
        self._matched()
        return _text(element)

    def _title(self, document: ParsedDocument, selectors: SelectorMap) -> str:
        return self._first_text(document, selectors.title) or document.meta("og:title")

    def _body(self, document: ParsedDocument, selectors: SelectorMap) -> str:
        if selectors.container:
            container = document.first_match(selectors.container)
            if container is not None:
                self._matched()
                text = _text(container, selectors.exclude)
                if text:
                    return text

        excluded = {id(tag) for sel in selectors.exclude for tag in document.select(sel)}
        elements = [
            element
            for element in document.all_matches(selectors.body)
            if id(element) not in excluded and not any(id(parent) in excluded for parent in element.parents)
        ]
        self._matched(len(elements))
        parts = [_text(element, selectors.exclude) for element in elements]
        return "\n\n".join(part for part in parts if part)

    def _author(self, document: ParsedDocument, selectors: SelectorMap) -> str:
        return self._first_text(document, selectors.author) or document.meta("article:author")

    def _url(self, document: ParsedDocument, selectors: SelectorMap) -> str:
        element = document.first_match(selectors.canonical)
        if element is not None and element.get("href"):
            self._matched()
            return element["href"].strip()
        return document.meta("og:url")

    def _published_at(self, document: ParsedDocument, selectors: SelectorMap) -> Optional[datetime]:
        raw = ""
        element = document.first_match(selectors.published_at)
        if element is not None:
            self._matched()
            raw = (element.get("datetime") or "").strip() or _text(element)
        if not raw:
            raw = document.meta("article:published_time")
        if not raw:
            return None

        parsed = parse_timestamp(raw)
        if parsed is None:
            self._metrics.record_error("timestamp")
            self.logger.debug("Unparseable timestamp", extra={"url": document.url, "value": raw})
        return parsed

    def _tokens(self, document: ParsedDocument, selector: str) -> List[str]:
        tokens: List[str] = []
        for element in document.all_matches(selector):
            self._matched()
            tokens.extend(element.get_text(" ").split())
        return tokens

    def _tags(self, document: ParsedDocument, selectors: SelectorMap) -> List[str]:
        tags = self._tokens(document, selectors.tags)
        if tags:
            return tags
        keywords = document.meta("keywords", attr="name")
        return [k.strip() for k in keywords.split(",") if k.strip()]

    @staticmethod
    def _metadata(document: ParsedDocument) -> Dict[str, str]:
        metadata: Dict[str, str] = {}
        for tag in document.soup.find_all("meta"):
            content = tag.get("content")
            if content is None:
                continue
            for attr in ("name", "property"):
                key = tag.get(attr)
                if key:
                    metadata[key] = content
        return metadata

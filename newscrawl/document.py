"""Parsed HTML documents and the small query helpers the pipeline needs."""

from __future__ import annotations

from typing import Iterator, List, Optional
from urllib.parse import urlsplit

from bs4 import BeautifulSoup
from bs4.element import Tag

from .errors import InvalidDocumentError
from .models import ClassificationResult, Page


def split_selectors(selector: str) -> List[str]:
    """Split a comma-separated selector list, dropping blanks."""
    return [part.strip() for part in (selector or "").split(",") if part.strip()]


class ParsedDocument:
    """DOM query handle over one fetched page.

    Lives for a single fetch attempt. The classification is stored once and
    can never be replaced."""

    def __init__(self, soup: BeautifulSoup, url: str, status_code: int = 200) -> None:
        self.soup = soup
        self.url = url
        self.status_code = status_code
        self._classification: Optional[ClassificationResult] = None

    @property
    def path(self) -> str:
        return urlsplit(self.url).path or "/"

    @property
    def classification(self) -> Optional[ClassificationResult]:
        return self._classification

    @classification.setter
    def classification(self, result: ClassificationResult) -> None:
        if self._classification is not None:
            raise ValueError(f"document {self.url} is already classified")
        self._classification = result

    def select(self, selector: str) -> List[Tag]:
        if not selector:
            return []
        return self.soup.select(selector)

    def select_one(self, selector: str) -> Optional[Tag]:
        if not selector:
            return None
        return self.soup.select_one(selector)

    def first_match(self, selector: str) -> Optional[Tag]:
        """Return the first element of the first selector in the list that matches anything."""
        for sel in split_selectors(selector):
            element = self.soup.select_one(sel)
            if element is not None:
                return element
        return None

    def all_matches(self, selector: str) -> List[Tag]:
        """Return every element matched by the first selector in the list that matches anything."""
        for sel in split_selectors(selector):
            elements = self.soup.select(sel)
            if elements:
                return elements
        return []

    def meta(self, key: str, attr: str = "property") -> str:
        tag = self.soup.find("meta", attrs={attr: key})
        if tag is None:
            return ""
        return (tag.get("content") or "").strip()

    def has(self, selector: str) -> bool:
        return self.select_one(selector) is not None

    def title_text(self) -> str:
        if self.soup.title and self.soup.title.string:
            return self.soup.title.string.strip()
        return ""

    def iter_links(self) -> Iterator[str]:
        for anchor in self.soup.find_all("a", href=True):
            href = anchor.get("href", "").strip()
            if href:
                yield href


def parse_document(content: bytes, url: str, status_code: int = 200) -> ParsedDocument:
    """Parse raw HTML bytes, failing fast on input that cannot be a document."""
    if not content:
        raise InvalidDocumentError(url, "empty content")
    if b"<" not in content:
        raise InvalidDocumentError(url, "no markup found")
    try:
        soup = BeautifulSoup(content, "html.parser")
    except Exception as exc:  # noqa: BLE001
        raise InvalidDocumentError(url, f"parse error: {exc}") from exc
    return ParsedDocument(soup, url, status_code)


def parse_page(page: Page) -> ParsedDocument:
    return parse_document(page.content, page.url, page.status_code)

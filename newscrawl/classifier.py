from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Tuple

from .document import ParsedDocument
from .errors import ConfigurationError
from .models import ClassificationResult, ClassificationSignals

LISTING_PATTERNS = (
    "/category/",
    "/tag/",
    "/topics/",
    "/search/",
    "/archive/",
    "/author/",
    "/index/",
    "/feed/",
    "/rss/",
)

ARTICLE_PATTERNS = (
    "/article/",
    "/news/",
    "/story/",
    "/opp-beat/",
    "/local-news/",
)

DOM_MARKERS = ("time", ".details")


@dataclass(frozen=True)
class ClassifierPolicy:
    """URL patterns and DOM markers used for article detection.

    When require_dom_marker is off, an article URL pattern alone is enough."""

    listing_patterns: Tuple[str, ...] = LISTING_PATTERNS
    article_patterns: Tuple[str, ...] = ARTICLE_PATTERNS
    dom_markers: Tuple[str, ...] = DOM_MARKERS
    require_dom_marker: bool = True

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "ClassifierPolicy":
        if not raw:
            return cls()
        unknown = set(raw) - {"listing_patterns", "article_patterns", "dom_markers", "require_dom_marker"}
        if unknown:
            raise ConfigurationError(f"unknown classifier fields: {', '.join(sorted(unknown))}")
        values = {}
        for name in ("listing_patterns", "article_patterns", "dom_markers"):
            if name in raw:
                items = raw[name] or []
                if isinstance(items, str):
                    raise ConfigurationError(f"classifier.{name} must be a list")
                values[name] = tuple(str(item) for item in items if str(item))
        if "require_dom_marker" in raw:
            values["require_dom_marker"] = bool(raw["require_dom_marker"])
        return cls(**values)


class ContentClassifier:
    """Decides whether a fetched page is an article.

    Checks run from most to least reliable and the first decisive one wins:
    og:type metadata, schema type metadata, listing URL patterns (which
    override article patterns), then article URL patterns corroborated by a
    DOM marker. Anything else is not an article."""

    def __init__(self, policy: Optional[ClassifierPolicy] = None, logger: Optional[logging.Logger] = None) -> None:
        self.policy = policy or ClassifierPolicy()
        self.logger = logger or logging.getLogger(__name__)

    def classify(self, document: ParsedDocument) -> ClassificationResult:
        """Classify document once; later calls return the cached result."""
        if document.classification is not None:
            return document.classification
        result = self._classify(document)
        document.classification = result
        self.logger.debug(
            "Classified document",
            extra={
                "url": document.url,
                "is_article": result.is_article,
                "reason": result.reason,
                "meta_type": result.signals.meta_type,
                "schema_type": result.signals.schema_type,
            },
        )
        return result

    def _classify(self, document: ParsedDocument) -> ClassificationResult:
        meta_type = document.meta("og:type", attr="property")
        schema_type = document.meta("type", attr="name")

        if meta_type == "article":
            return self._result(True, "meta_type", meta_type, schema_type)
        if "article" in schema_type.lower():
            return self._result(True, "schema_type", meta_type, schema_type)

        path = document.path
        for pattern in self.policy.listing_patterns:
            if pattern in path:
                return self._result(False, "listing_pattern", meta_type, schema_type, pattern)

        for pattern in self.policy.article_patterns:
            if pattern in path:
                markers = tuple(m for m in self.policy.dom_markers if document.has(m))
                if markers or not self.policy.require_dom_marker:
                    return self._result(True, "article_pattern", meta_type, schema_type, pattern, markers)
                return self._result(False, "article_pattern_unconfirmed", meta_type, schema_type, pattern)

        return self._result(False, "default", meta_type, schema_type)

    @staticmethod
    def _result(
        is_article: bool,
        reason: str,
        meta_type: str,
        schema_type: str,
        pattern: str = "",
        markers: Tuple[str, ...] = (),
    ) -> ClassificationResult:
        return ClassificationResult(
            is_article=is_article,
            signals=ClassificationSignals(
                meta_type=meta_type,
                schema_type=schema_type,
                url_pattern_match=pattern,
                dom_markers=markers,
            ),
            reason=reason,
        )

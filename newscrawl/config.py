from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
from urllib.parse import urlsplit

import yaml

from .base import DEFAULT_USER_AGENT
from .classifier import ClassifierPolicy
from .errors import ConfigurationError
from .models import SelectorMap
from .rate_limiter import LimitRule

DEFAULT_MAX_DEPTH = 2
DEFAULT_PARALLELISM = 2
DEFAULT_RATE_LIMIT = 2.0
DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_BODY_SIZE = 10 * 1024 * 1024
DEFAULT_MAX_RETRIES = 3

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|us|ns|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 1e-3, "us": 1e-6, "ns": 1e-9}


def parse_duration(value: Union[str, int, float, None], name: str = "duration") -> float:
    """Convert a duration to seconds.

    Numbers are seconds already; strings use Go-style units ("2s", "500ms",
    "1m30s")."""
    if value is None or value == "":
        return 0.0
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be a duration, got {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip().replace(" ", "")
    try:
        return float(text)
    except ValueError:
        pass
    pos = 0
    total = 0.0
    for match in _DURATION_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ConfigurationError(f"invalid {name}: {value!r}")
    return total


@dataclass(frozen=True)
class SourceConfig:
    """Everything the crawl engine needs to know about one source."""

    name: str
    base_url: str
    max_depth: int = DEFAULT_MAX_DEPTH
    parallelism: int = DEFAULT_PARALLELISM
    rate_limit: float = DEFAULT_RATE_LIMIT
    random_delay: float = 0.0
    user_agent: str = DEFAULT_USER_AGENT
    request_timeout: float = DEFAULT_TIMEOUT
    max_body_size: int = DEFAULT_MAX_BODY_SIZE
    allowed_domains: Tuple[str, ...] = ()
    disallowed_url_filters: Tuple[str, ...] = ()
    selectors: SelectorMap = field(default_factory=SelectorMap)
    max_retries: int = DEFAULT_MAX_RETRIES
    backoff_unit: float = 1.0
    backoff_multiplier: float = 2.0
    backoff_max: Optional[float] = None
    limit_rules: Tuple[LimitRule, ...] = ()
    classifier: ClassifierPolicy = field(default_factory=ClassifierPolicy)
    emit_pages: bool = True
    impersonate: str = ""

    def validate(self) -> None:
        if not self.name:
            raise ConfigurationError("source name is required")
        if not self.base_url:
            raise ConfigurationError("base URL cannot be empty")
        parts = urlsplit(self.base_url)
        if parts.scheme not in ("http", "https"):
            raise ConfigurationError("base URL must include a scheme (http:// or https://)")
        if not parts.hostname:
            raise ConfigurationError("base URL must include a host")
        if self.max_depth < 0:
            raise ConfigurationError("max depth must be greater than or equal to 0")
        if self.parallelism <= 0:
            raise ConfigurationError("parallelism must be greater than 0")
        if self.rate_limit < 0 or self.random_delay < 0:
            raise ConfigurationError("rate limit and random delay must be greater than or equal to 0")
        if self.request_timeout <= 0:
            raise ConfigurationError("timeout must be greater than 0")
        if self.max_body_size < 0:
            raise ConfigurationError("max body size must be greater than or equal to 0")
        if self.max_retries < 0:
            raise ConfigurationError("max retries must be greater than or equal to 0")
        if self.backoff_unit < 0 or self.backoff_multiplier < 1:
            raise ConfigurationError("backoff unit must be >= 0 and multiplier >= 1")
        if not self.user_agent:
            raise ConfigurationError("user agent cannot be empty")
        for pattern in self.disallowed_url_filters:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ConfigurationError(f"invalid disallowed_url_filter {pattern!r}: {exc}") from exc
        for rule in self.limit_rules:
            rule.validate()
        self.selectors.validate()

    @property
    def host(self) -> str:
        return (urlsplit(self.base_url).hostname or "").lower()

    @property
    def domains(self) -> Tuple[str, ...]:
        """Allowed hosts; the base URL's host when none are configured."""
        if self.allowed_domains:
            return tuple(d.lower() for d in self.allowed_domains)
        return (self.host,)

    def default_rule(self) -> LimitRule:
        return LimitRule(
            domain_glob="*",
            parallelism=self.parallelism,
            delay=self.rate_limit,
            random_delay=self.random_delay,
        )

    def with_overrides(self, **changes: Any) -> "SourceConfig":
        changes = {k: v for k, v in changes.items() if v is not None}
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "SourceConfig":
        if not isinstance(raw, Mapping):
            raise ConfigurationError("source entry must be a mapping")
        data = dict(raw)
        base_url = data.pop("base_url", None) or data.pop("url", None) or ""
        name = str(data.pop("name", "") or "")

        values: Dict[str, Any] = {"name": name, "base_url": str(base_url)}
        for key in ("max_depth", "parallelism", "max_body_size", "max_retries"):
            if key in data:
                values[key] = _as_int(data.pop(key), key)
        for key in ("rate_limit", "random_delay", "backoff_unit"):
            if key in data:
                values[key] = parse_duration(data.pop(key), key)
        if "request_timeout" in data or "timeout" in data:
            values["request_timeout"] = parse_duration(
                data.pop("request_timeout", data.pop("timeout", None)), "request_timeout"
            )
        if "backoff_max" in data:
            backoff_max = data.pop("backoff_max")
            values["backoff_max"] = None if backoff_max is None else parse_duration(backoff_max, "backoff_max")
        if "backoff_multiplier" in data:
            values["backoff_multiplier"] = float(data.pop("backoff_multiplier"))
        for key in ("user_agent", "impersonate"):
            if key in data:
                values[key] = str(data.pop(key) or "")
        if "emit_pages" in data:
            values["emit_pages"] = bool(data.pop("emit_pages"))
        for key in ("allowed_domains", "disallowed_url_filters"):
            if key in data:
                values[key] = _as_str_tuple(data.pop(key), key)
        values["selectors"] = SelectorMap.from_dict(data.pop("selectors", None))
        values["classifier"] = ClassifierPolicy.from_dict(data.pop("classifier", None))
        values["limit_rules"] = tuple(_limit_rule(r) for r in data.pop("limit_rules", None) or [])

        if data:
            raise ConfigurationError(f"unknown source fields for {name or base_url}: {', '.join(sorted(data))}")
        source = cls(**values)
        source.validate()
        return source


def _as_int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from exc


def _as_str_tuple(value: Any, name: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        # comma-separated form, as in allow_domains: "a.com,b.com"
        return tuple(part.strip() for part in value.split(",") if part.strip())
    if not isinstance(value, (list, tuple)):
        raise ConfigurationError(f"{name} must be a list")
    return tuple(str(item).strip() for item in value if str(item).strip())


def _limit_rule(raw: Mapping[str, Any]) -> LimitRule:
    if not isinstance(raw, Mapping):
        raise ConfigurationError("limit rule must be a mapping")
    rule = LimitRule(
        domain_glob=str(raw.get("domain_glob", raw.get("domain", "*"))),
        parallelism=_as_int(raw.get("parallelism", 1), "parallelism"),
        delay=parse_duration(raw.get("delay", 0), "delay"),
        random_delay=parse_duration(raw.get("random_delay", 0), "random_delay"),
    )
    rule.validate()
    return rule


def load_sources(path: str) -> List[SourceConfig]:
    """Load and validate every source defined in a YAML file.

    The file holds either a top-level list of sources or a mapping with a
    `sources` list."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as exc:
        raise ConfigurationError(f"source file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"invalid YAML in {path}: {exc}") from exc

    if isinstance(data, Mapping):
        data = data.get("sources")
    if not isinstance(data, list) or not data:
        raise ConfigurationError(f"no sources found in {path}")

    sources = [SourceConfig.from_dict(entry) for entry in data]
    names = [s.name for s in sources]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ConfigurationError(f"duplicate source names: {', '.join(duplicates)}")
    return sources


def find_source(sources: List[SourceConfig], name: str) -> SourceConfig:
    for source in sources:
        if source.name == name:
            return source
    raise ConfigurationError(f"source not found: {name}")

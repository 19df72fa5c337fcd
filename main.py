from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional

import structlog

from newscrawl.config import find_source, load_sources
from newscrawl.controller import CrawlController
from newscrawl.errors import ConfigurationError
from newscrawl.metrics import MetricsCollector
from newscrawl.storage import JsonlStorage


DEFAULT_SOURCES_PATH = "sources.yml"


def build_formatter() -> structlog.stdlib.ProcessorFormatter:
    """Render stdlib records, including their extra= fields, as key=value lines."""
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.ExtraAdder(),
        ],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.KeyValueRenderer(key_order=["timestamp", "level", "logger", "event"]),
        ],
    )


def _setup_logging(verbose: bool) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(build_formatter())
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, handlers=[handler])


def run_crawl(
    sources_path: str,
    source_name: Optional[str],
    results_path: str,
    seed_url: Optional[str] = None,
    max_depth: Optional[int] = None,
) -> int:
    sources = load_sources(sources_path)
    source = find_source(sources, source_name) if source_name else sources[0]
    source = source.with_overrides(max_depth=max_depth)

    metrics = MetricsCollector()
    storage = JsonlStorage(results_path)
    controller = CrawlController(sink=storage, metrics=metrics)
    try:
        snap = controller.run(seed_url or source.base_url, source)
    finally:
        storage.close()

    print(
        f"\nDONE: source={source.name} processed={snap.processed_count} errors={snap.error_count} "
        f"retry_exhausted={snap.retry_exhausted_count} elements={snap.elements_processed} "
        f"duration_s={snap.processing_duration:.2f}"
    )
    for kind, count in sorted(snap.errors_by_kind.items()):
        print(f"  errors[{kind}]={count}")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Crawl a news source and extract articles")
    parser.add_argument("--sources", default=DEFAULT_SOURCES_PATH, help="Path to the sources YAML file")
    parser.add_argument("--source", default=None, help="Name of the source to crawl (default: first)")
    parser.add_argument("--url", default=None, help="Seed URL (default: the source's base URL)")
    parser.add_argument("--results", default="results.jsonl", help="Output JSONL file path")
    parser.add_argument("--max-depth", type=int, default=None, help="Override the source's max depth")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    args = parser.parse_args()
    _setup_logging(args.verbose)

    try:
        code = run_crawl(
            sources_path=args.sources,
            source_name=args.source,
            results_path=args.results,
            seed_url=args.url,
            max_depth=args.max_depth,
        )
    except ConfigurationError as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        code = 2
    sys.exit(code)


if __name__ == "__main__":
    main()

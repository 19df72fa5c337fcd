"""Focused news crawler package.

Provides the crawl engine (traversal, rate governance, retries), article
classification, selector-driven extraction, metrics, fetchers and sinks.

Key modules:
    controller   -- CrawlController: traversal bounds, worker pool, page pipeline
    rate_limiter -- RateLimiter and LimitRule for per-domain parallelism and spacing
    retry        -- RetryPolicy deciding retry vs terminal for failed fetches
    backoff      -- BackoffStrategy for exponential retry delays
    classifier   -- ContentClassifier and ClassifierPolicy (article vs other)
    extractor    -- FieldExtractor turning documents into ExtractedContent
    document     -- ParsedDocument over BeautifulSoup
    metrics      -- MetricsCollector for session counters
    base         -- BaseFetcher abstract class
    fetchers     -- RequestsFetcher and CurlFetcher
    factory      -- FetcherFactory picking a fetcher per source
    config       -- SourceConfig and the YAML source loader
    storage      -- StorageBase and JsonlStorage sinks
    models       -- CrawlTask, TaskContext, ExtractedContent and friends
    errors       -- ErrorKind and the exception hierarchy
"""

"""Prometheus metrics shared by the crawl engine, Graph client and analysis."""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)

CRAWL_BATCHES = Counter(
    "sp5s_crawl_batches_total",
    "Crawl batch cycles executed",
)

CRAWL_FOLDERS = Counter(
    "sp5s_crawl_folders_total",
    "Queue items expanded, by outcome",
    ["outcome"],
)

CRAWL_BATCH_SECONDS = Histogram(
    "sp5s_crawl_batch_seconds",
    "Wall time of one crawl batch cycle",
)

GRAPH_REQUESTS = Counter(
    "sp5s_graph_requests_total",
    "Microsoft Graph responses, by HTTP status",
    ["status"],
)

GRAPH_THROTTLES = Counter(
    "sp5s_graph_throttled_total",
    "Graph 429 responses that triggered a Retry-After wait",
)

SUGGESTIONS_CREATED = Counter(
    "sp5s_suggestions_total",
    "Suggestions persisted after dedup, by source and category",
    ["source", "category"],
)

AI_CHUNK_FAILURES = Counter(
    "sp5s_ai_chunk_failures_total",
    "AI classification chunks that failed and were skipped",
)

__all__ = [
    "CONTENT_TYPE_LATEST",
    "REGISTRY",
    "Counter",
    "Histogram",
    "generate_latest",
    "CRAWL_BATCHES",
    "CRAWL_FOLDERS",
    "CRAWL_BATCH_SECONDS",
    "GRAPH_REQUESTS",
    "GRAPH_THROTTLES",
    "SUGGESTIONS_CREATED",
    "AI_CHUNK_FAILURES",
]

"""Prometheus counters shared by the client components."""

from prometheus_client import CollectorRegistry, Counter

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter("requests_total", "Total BFF requests", registry=CUSTOM_REGISTRY)
ERRORS = Counter("errors_total", "Total BFF errors", registry=CUSTOM_REGISTRY)

STREAMS_STARTED = Counter("streams_started_total", "Chat streams opened", registry=CUSTOM_REGISTRY)
STREAMS_FAILED = Counter("streams_failed_total", "Chat streams ending in an error", registry=CUSTOM_REGISTRY)
STREAMS_CANCELLED = Counter("streams_cancelled_total", "Chat streams stopped by the client", registry=CUSTOM_REGISTRY)

CACHE_HITS = Counter("cache_hits_total", "Session cache reads served from memory", registry=CUSTOM_REGISTRY)
CACHE_FETCHES = Counter("cache_fetches_total", "Session cache fetches sent to the backend", registry=CUSTOM_REGISTRY)
CACHE_FETCH_ERRORS = Counter("cache_fetch_errors_total", "Session cache fetches that gave up", registry=CUSTOM_REGISTRY)

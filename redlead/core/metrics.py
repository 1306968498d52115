"""Prometheus metrics for the cache and the job workers.

Metrics live in the default registry and are served by ``GET /metrics``
on the API process.
"""

from prometheus_client import Counter, Gauge, Histogram

cache_hits = Counter(
    "redlead_cache_hits_total",
    "Total cache hits",
    ["cache_type"],
)

cache_misses = Counter(
    "redlead_cache_misses_total",
    "Total cache misses",
    ["cache_type"],
)

jobs_processed = Counter(
    "redlead_jobs_processed_total",
    "Total jobs processed",
    ["queue", "status"],  # completed / failed
)

job_duration = Histogram(
    "redlead_job_duration_seconds",
    "Job processing duration in seconds",
    ["queue"],
    buckets=[1, 5, 10, 30, 60, 120, 300],
)

active_jobs = Gauge(
    "redlead_active_jobs",
    "Number of currently active jobs",
    ["queue"],
)

circuit_breaker_state = Gauge(
    "redlead_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open, 2=half-open)",
    ["service"],
)


def track_cache_lookup(cache_type: str, hit: bool) -> None:
    if hit:
        cache_hits.labels(cache_type=cache_type).inc()
    else:
        cache_misses.labels(cache_type=cache_type).inc()

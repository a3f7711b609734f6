from __future__ import annotations
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

METRICS_REGISTRY = CollectorRegistry()

BOT_DETECTIONS = Counter(
    "bot_detections_total",
    "User-agents classified as bots",
    ["source"],
    registry=METRICS_REGISTRY,
)
BOT_CACHE_SIZE = Gauge(
    "bot_detection_cache_size",
    "Entries in the remote bot classification cache",
    registry=METRICS_REGISTRY,
)
REPUTATION_REFRESHES = Counter(
    "reputation_refresh_total",
    "IP reputation refreshes by outcome",
    ["outcome"],
    registry=METRICS_REGISTRY,
)
REPUTATION_SOURCE_FAILURES = Counter(
    "reputation_source_failures_total",
    "Failed calls to upstream reputation sources",
    ["source"],
    registry=METRICS_REGISTRY,
)
ACCESS_DENIED = Counter(
    "access_denied_total",
    "Access checks that resolved to an active ban",
    ["subject"],
    registry=METRICS_REGISTRY,
)
REQUEST_LATENCY = Histogram(
    "request_latency_seconds",
    "Request processing time in seconds",
    ["route", "method", "status"],
    registry=METRICS_REGISTRY,
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# pre-create labelled series so they export at zero
for _source in ("local", "remote", "cache"):
    BOT_DETECTIONS.labels(source=_source).inc(0)
for _outcome in ("fresh", "cached", "degraded", "failed"):
    REPUTATION_REFRESHES.labels(outcome=_outcome).inc(0)
for _subject in ("user", "ip"):
    ACCESS_DENIED.labels(subject=_subject).inc(0)
BOT_CACHE_SIZE.set(0)


def get_metrics() -> dict[str, object]:
    return {
        "registry": METRICS_REGISTRY,
        "bot_detections": BOT_DETECTIONS,
        "bot_cache_size": BOT_CACHE_SIZE,
        "refreshes": REPUTATION_REFRESHES,
        "source_failures": REPUTATION_SOURCE_FAILURES,
        "access_denied": ACCESS_DENIED,
        "latency": REQUEST_LATENCY,
    }

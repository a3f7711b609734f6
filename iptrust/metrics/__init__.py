# iptrust/metrics/__init__.py
"""
Thin re-export layer; all collectors live in iptrust.metrics.registry.
"""
from .registry import (
    METRICS_REGISTRY,
    BOT_DETECTIONS,
    BOT_CACHE_SIZE,
    REPUTATION_REFRESHES,
    REPUTATION_SOURCE_FAILURES,
    ACCESS_DENIED,
    REQUEST_LATENCY,
    get_metrics,
)

__all__ = [
    "METRICS_REGISTRY",
    "BOT_DETECTIONS",
    "BOT_CACHE_SIZE",
    "REPUTATION_REFRESHES",
    "REPUTATION_SOURCE_FAILURES",
    "ACCESS_DENIED",
    "REQUEST_LATENCY",
    "get_metrics",
]

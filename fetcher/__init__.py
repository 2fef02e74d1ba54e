"""Fetcher subsystem: attachment downloads and network resilience policies."""

from fetcher.breaker import CircuitBreaker, CircuitState
from fetcher.http import AttachmentDownloader, AttachmentFetchStage
from fetcher.politeness import TokenBucket
from fetcher.retry import NetworkGuard, RetryPolicy

__all__ = [
    "AttachmentDownloader",
    "AttachmentFetchStage",
    "CircuitBreaker",
    "CircuitState",
    "NetworkGuard",
    "RetryPolicy",
    "TokenBucket",
]

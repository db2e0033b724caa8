"""
Risk Result Cache

Keyed, TTL'd, staleness-tracked storage for risk-derived results.

Modules:
- entries: Cache keys, metric families, entry lifecycle and default TTLs
- manager: Single-flight compute, invalidation and serve-stale-on-error
"""

from .entries import (
    CacheEntry,
    CacheKey,
    CacheStatus,
    MetricFamily,
    DEFAULT_TTL_SECONDS,
    ERROR_RETRY_SECONDS,
    MARKET_SCOPE,
    ticker_scope,
)
from .manager import RiskCacheManager

__all__ = [
    'CacheEntry',
    'CacheKey',
    'CacheStatus',
    'MetricFamily',
    'DEFAULT_TTL_SECONDS',
    'ERROR_RETRY_SECONDS',
    'MARKET_SCOPE',
    'ticker_scope',
    'RiskCacheManager',
]

"""Cache keys, entry lifecycle states and per-family TTLs."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class MetricFamily(str, Enum):
    RISK = "risk"
    CORRELATIONS = "correlations"
    ROLLING_BETA = "rolling_beta"
    BETA_FORECAST = "beta_forecast"
    VOLATILITY_FORECAST = "volatility_forecast"
    REGIME = "regime"
    OPTIMIZATION = "optimization"


class CacheStatus(str, Enum):
    FRESH = "fresh"
    STALE = "stale"
    CALCULATING = "calculating"
    ERROR = "error"


HOUR = 3600.0

DEFAULT_TTL_SECONDS: Dict[MetricFamily, float] = {
    MetricFamily.RISK: 4 * HOUR,
    MetricFamily.CORRELATIONS: 24 * HOUR,
    MetricFamily.ROLLING_BETA: 24 * HOUR,
    MetricFamily.BETA_FORECAST: 24 * HOUR,
    MetricFamily.VOLATILITY_FORECAST: 24 * HOUR,
    MetricFamily.REGIME: 24 * HOUR,
    MetricFamily.OPTIMIZATION: 24 * HOUR,
}
ERROR_RETRY_SECONDS = 1 * HOUR

MARKET_SCOPE = "market"


def ticker_scope(ticker: str) -> str:
    """Cache scope for per-ticker families that do not belong to a portfolio."""
    return f"ticker:{ticker.upper()}"


@dataclass(frozen=True)
class CacheKey:
    portfolio_id: str
    metric_family: MetricFamily
    window_days: int = 0
    benchmark: str = ""

    def __str__(self) -> str:
        return f"{self.portfolio_id}/{self.metric_family.value}/{self.window_days}/{self.benchmark}"


@dataclass
class CacheEntry:
    """Mutable record owned by the cache manager.

    ``payload`` survives a failed recompute so callers can be served the
    last good value; ``generation`` increases with every started compute.
    An invalidation that lands while a compute is in flight sets
    ``pending_invalidation`` so the result is stored as stale.
    """

    key: CacheKey
    status: CacheStatus
    payload: Any = None
    calculated_at: Optional[float] = None
    expires_at: Optional[float] = None
    last_error: Optional[str] = None
    retry_count: int = 0
    generation: int = 0
    pending_invalidation: bool = False
    history: deque = field(default_factory=lambda: deque(maxlen=16), repr=False)

    @property
    def has_payload(self) -> bool:
        return self.calculated_at is not None

    def transition(self, status: CacheStatus) -> None:
        self.history.append((self.status, status))
        self.status = status

    def to_dict(self, now: float) -> Dict[str, Any]:
        return {
            "key": str(self.key),
            "status": self.status.value,
            "calculated_at": self.calculated_at,
            "expires_at": self.expires_at,
            "age_seconds": (now - self.calculated_at) if self.calculated_at is not None else None,
            "last_error": self.last_error,
            "retry_count": self.retry_count,
            "generation": self.generation,
        }

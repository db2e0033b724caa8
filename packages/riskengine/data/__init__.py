"""Price providers, provider failure memo and the background recompute scheduler."""

from riskengine.data.failure_cache import FAILURE_TTL_HOURS, FailureCache, FailureInfo, FailureType
from riskengine.data.providers import (
    FallbackPriceProvider,
    InMemoryPriceProvider,
    PriceProvider,
    YahooPriceProvider,
    classify_failure,
    get_returns,
)
from riskengine.data.scheduler import HoldingsEventBus, RecomputeScheduler

__all__ = [
    "FAILURE_TTL_HOURS",
    "FailureCache",
    "FailureInfo",
    "FailureType",
    "FallbackPriceProvider",
    "InMemoryPriceProvider",
    "PriceProvider",
    "YahooPriceProvider",
    "classify_failure",
    "get_returns",
    "HoldingsEventBus",
    "RecomputeScheduler",
]

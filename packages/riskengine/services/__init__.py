"""Risk engine service facade."""

from riskengine.services.risk_service import (
    HoldingsStore,
    InMemoryHoldingsStore,
    InMemoryThresholdStore,
    MarketRegimeModel,
    RiskEngine,
    ThresholdStore,
)

__all__ = [
    "HoldingsStore",
    "InMemoryHoldingsStore",
    "InMemoryThresholdStore",
    "MarketRegimeModel",
    "RiskEngine",
    "ThresholdStore",
]

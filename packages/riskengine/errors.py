"""Error taxonomy and typed results for the risk engine.

Numerical helpers raise ``ValueError`` for malformed input.  The domain
exceptions below describe data conditions the engine degrades around, and
``MetricResult`` lets callers tell "no data" apart from a genuine zero.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, List, Optional, TypeVar

T = TypeVar("T")


class RiskEngineError(Exception):
    """Base class for risk engine failures."""


class InsufficientDataError(RiskEngineError):
    """Fewer observations than a calculation requires."""

    def __init__(self, required: int, available: int, what: str = "observations"):
        self.required = required
        self.available = available
        super().__init__(f"Insufficient data: need {required} {what}, have {available}")


class NonStationaryModelWarning(UserWarning):
    """GARCH persistence >= 1; the fit fell back to EWMA variance."""


class UpstreamProviderFailure(RiskEngineError):
    """Price history could not be fetched for a ticker."""

    def __init__(self, ticker: str, reason: str):
        self.ticker = ticker
        self.reason = reason
        super().__init__(f"Price provider failed for {ticker}: {reason}")


class CacheComputeTimeout(RiskEngineError):
    """A cache recomputation exceeded its maximum duration."""

    def __init__(self, key: object, timeout_seconds: float):
        self.key = key
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Computation for {key} exceeded {timeout_seconds}s")


class InvalidCorrelationInput(RiskEngineError):
    """Fewer than two tickers share enough history to cluster."""


class ResultStatus(str, Enum):
    OK = "ok"
    NO_DATA = "no_data"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class MetricResult(Generic[T]):
    """Outcome of a computation: a value, a degraded value, or no data."""

    status: ResultStatus
    value: Optional[T] = None
    reason: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.status == ResultStatus.NO_DATA and self.value is not None:
            raise ValueError("no_data results must not carry a value")
        if self.status != ResultStatus.NO_DATA and self.value is None:
            raise ValueError(f"{self.status.value} results require a value")

    @classmethod
    def ok(cls, value: T, warnings: Optional[List[str]] = None) -> "MetricResult[T]":
        return cls(ResultStatus.OK, value, None, list(warnings or []))

    @classmethod
    def no_data(cls, reason: str) -> "MetricResult[T]":
        return cls(ResultStatus.NO_DATA, None, reason, [])

    @classmethod
    def degraded(
        cls, value: T, reason: str, warnings: Optional[List[str]] = None
    ) -> "MetricResult[T]":
        return cls(ResultStatus.DEGRADED, value, reason, list(warnings or []))

    @property
    def has_value(self) -> bool:
        return self.value is not None


@dataclass(frozen=True)
class TickerOutcome(Generic[T]):
    """Per-ticker result carried through portfolio aggregation."""

    ticker: str
    result: MetricResult[T]

    @property
    def ok(self) -> bool:
        return self.result.has_value

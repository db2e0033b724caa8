"""
Beta Forecasting Module

Projects a position's rolling beta forward from the longest-window series of
a RollingBetaAnalysis.  Three forecasters are available and blended by the
ensemble:

- mean reversion: beta decays toward 1.0 with a half-life of ~140 days
- exponential smoothing: Holt level + trend over the recent beta path
- linear regression: straight-line trend through the last 30 observations

Confidence bands are 95% and widen with sqrt(day / 30).  Betas are clipped to
[0, 3].  Shifts in the historical beta path are flagged by comparing the mean
of adjacent 30-observation windows.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
import structlog

from ..errors import InsufficientDataError
from .metrics import RollingBetaAnalysis

logger = structlog.get_logger(__name__)

MAX_DAYS_AHEAD = 90
MIN_HISTORY = 60
FULL_HISTORY = 90
CONFIDENCE_LEVEL = 0.95
Z_95 = 1.96

BETA_FLOOR = 0.0
BETA_CAP = 3.0
LONG_RUN_BETA = 1.0
MEAN_REVERSION_DECAY = 0.005

SMOOTHING_LEVEL = 0.3
SMOOTHING_TREND = 0.1
TREND_LOOKBACK = 30

REGIME_WINDOW = 30
REGIME_Z_THRESHOLD = 2.0
REGIME_MIN_STD = 0.01

HIGH_BETA_VOLATILITY = 0.5
RECENT_CHANGE_DAYS = 30


class BetaForecastMethod(str, Enum):
    MEAN_REVERSION = "mean_reversion"
    EXPONENTIAL_SMOOTHING = "exponential_smoothing"
    LINEAR_REGRESSION = "linear_regression"
    ENSEMBLE = "ensemble"


# Per-method band widening relative to the historical beta volatility
BAND_MULTIPLIER = {
    BetaForecastMethod.MEAN_REVERSION: 1.0,
    BetaForecastMethod.EXPONENTIAL_SMOOTHING: 1.2,
    BetaForecastMethod.LINEAR_REGRESSION: 1.3,
}

ENSEMBLE_WEIGHTS = {
    BetaForecastMethod.MEAN_REVERSION: 0.6,
    BetaForecastMethod.EXPONENTIAL_SMOOTHING: 0.3,
    BetaForecastMethod.LINEAR_REGRESSION: 0.1,
}


@dataclass(frozen=True)
class BetaForecastPoint:
    day_offset: int
    date: str
    predicted_beta: float
    lower_bound: float
    upper_bound: float


@dataclass(frozen=True)
class BetaRegimeChange:
    date: str
    beta_before: float
    beta_after: float
    z_score: float
    regime_type: str


@dataclass(frozen=True)
class BetaForecast:
    ticker: str
    benchmark: str
    method: BetaForecastMethod
    current_beta: float
    beta_volatility: float
    points: List[BetaForecastPoint]
    regime_changes: List[BetaRegimeChange] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    confidence_level: float = CONFIDENCE_LEVEL

    def to_dict(self) -> Dict:
        return {
            "ticker": self.ticker,
            "benchmark": self.benchmark,
            "method": self.method.value,
            "current_beta": self.current_beta,
            "beta_volatility": self.beta_volatility,
            "confidence_level": self.confidence_level,
            "points": [asdict(p) for p in self.points],
            "regime_changes": [asdict(c) for c in self.regime_changes],
            "warnings": list(self.warnings),
        }


# ---------------------------------------------------------------------------
# Forecasters
# ---------------------------------------------------------------------------


def _half_widths(beta_volatility: float, days_ahead: int, method: BetaForecastMethod) -> np.ndarray:
    days = np.arange(1, days_ahead + 1, dtype=float)
    return Z_95 * beta_volatility * BAND_MULTIPLIER[method] * np.sqrt(days / 30.0)


def mean_reversion_path(current_beta: float, days_ahead: int) -> np.ndarray:
    """Exponential decay of *current_beta* toward the market beta of 1.0."""
    weight = np.exp(-MEAN_REVERSION_DECAY * np.arange(1, days_ahead + 1))
    return weight * current_beta + (1 - weight) * LONG_RUN_BETA


def exponential_smoothing_path(history: np.ndarray, days_ahead: int) -> np.ndarray:
    """Holt's linear method over the last TREND_LOOKBACK observations."""
    recent = np.asarray(history, dtype=float)[-TREND_LOOKBACK:]
    if len(recent) < 2:
        return np.full(days_ahead, recent[-1] if len(recent) else LONG_RUN_BETA)

    level, trend = recent[0], recent[1] - recent[0]
    for observed in recent[1:]:
        prev_level = level
        level = SMOOTHING_LEVEL * observed + (1 - SMOOTHING_LEVEL) * (level + trend)
        trend = SMOOTHING_TREND * (level - prev_level) + (1 - SMOOTHING_TREND) * trend
    return level + trend * np.arange(1, days_ahead + 1)


def linear_regression_path(history: np.ndarray, days_ahead: int) -> np.ndarray:
    """OLS trend line through the last TREND_LOOKBACK observations, extrapolated."""
    recent = np.asarray(history, dtype=float)[-TREND_LOOKBACK:]
    if len(recent) < 2:
        return np.full(days_ahead, recent[-1] if len(recent) else LONG_RUN_BETA)

    x = np.arange(1, len(recent) + 1, dtype=float)
    slope, intercept = np.polyfit(x, recent, 1)
    return intercept + slope * (len(recent) + np.arange(1, days_ahead + 1))


def _bands(path: np.ndarray, half_width: np.ndarray):
    predicted = np.clip(path, BETA_FLOOR, BETA_CAP)
    lower = np.clip(predicted - half_width, BETA_FLOOR, BETA_CAP)
    upper = np.clip(predicted + half_width, BETA_FLOOR, BETA_CAP)
    return predicted, lower, upper


def forecast_bands(
    history: np.ndarray,
    current_beta: float,
    beta_volatility: float,
    days_ahead: int,
    method: BetaForecastMethod = BetaForecastMethod.ENSEMBLE,
):
    """Predicted beta with lower/upper 95% bands for days 1..days_ahead.

    The ensemble is the weighted mean of the three component forecasts,
    bands included.

    Returns:
        Tuple of three arrays (predicted, lower, upper)
    """
    if method == BetaForecastMethod.ENSEMBLE:
        predicted = np.zeros(days_ahead)
        lower = np.zeros(days_ahead)
        upper = np.zeros(days_ahead)
        for component, weight in ENSEMBLE_WEIGHTS.items():
            p, lo, hi = forecast_bands(history, current_beta, beta_volatility, days_ahead, component)
            predicted += weight * p
            lower += weight * lo
            upper += weight * hi
        return (
            np.clip(predicted, BETA_FLOOR, BETA_CAP),
            np.clip(lower, BETA_FLOOR, BETA_CAP),
            np.clip(upper, BETA_FLOOR, BETA_CAP),
        )

    if method == BetaForecastMethod.MEAN_REVERSION:
        path = mean_reversion_path(current_beta, days_ahead)
    elif method == BetaForecastMethod.EXPONENTIAL_SMOOTHING:
        path = exponential_smoothing_path(history, days_ahead)
    else:
        path = linear_regression_path(history, days_ahead)
    return _bands(path, _half_widths(beta_volatility, days_ahead, method))


# ---------------------------------------------------------------------------
# Regime changes
# ---------------------------------------------------------------------------


def classify_beta_shift(mean_before: float, mean_after: float, std_before: float) -> str:
    change = mean_after - mean_before
    if std_before > 0.3:
        return "high_volatility"
    if abs(change) > 0.5:
        return "structural_break"
    if abs(mean_before - LONG_RUN_BETA) > 0.3 and abs(mean_after - LONG_RUN_BETA) < 0.2:
        return "mean_reversion"
    return "increasing_beta" if change > 0 else "decreasing_beta"


def detect_beta_regime_changes(betas: pd.Series, window: int = REGIME_WINDOW) -> List[BetaRegimeChange]:
    """Flag dates where the next *window* betas differ from the previous
    *window* by more than REGIME_Z_THRESHOLD standard deviations of the
    earlier window.  Windows with near-zero dispersion are skipped.
    """
    values = betas.to_numpy(dtype=float)
    changes: List[BetaRegimeChange] = []
    if len(values) < 2 * window:
        return changes

    for i in range(window, len(values) - window + 1):
        before = values[i - window:i]
        after = values[i:i + window]
        std_before = float(before.std())
        if std_before < REGIME_MIN_STD:
            continue
        mean_before, mean_after = float(before.mean()), float(after.mean())
        z = abs(mean_after - mean_before) / std_before
        if z > REGIME_Z_THRESHOLD:
            changes.append(BetaRegimeChange(
                date=pd.Timestamp(betas.index[i]).strftime("%Y-%m-%d"),
                beta_before=mean_before,
                beta_after=mean_after,
                z_score=z,
                regime_type=classify_beta_shift(mean_before, mean_after, std_before),
            ))
    return changes


# ---------------------------------------------------------------------------
# Forecast
# ---------------------------------------------------------------------------


def forecast_beta(
    analysis: RollingBetaAnalysis,
    days_ahead: int = 30,
    method: BetaForecastMethod = BetaForecastMethod.ENSEMBLE,
    window: Optional[int] = None,
) -> BetaForecast:
    """Forecast beta *days_ahead* business days past the last observation.

    Uses the rolling beta series of *window* (default: the longest window in
    *analysis*).  current_beta and beta_volatility are taken from that series.

    Raises:
        ValueError: If days_ahead is outside 1..MAX_DAYS_AHEAD
        InsufficientDataError: If the beta series has fewer than MIN_HISTORY points
    """
    if not 1 <= days_ahead <= MAX_DAYS_AHEAD:
        raise ValueError(f"days_ahead must be between 1 and {MAX_DAYS_AHEAD}, got {days_ahead}")

    window = window or max(analysis.series)
    betas = analysis.series[window]["beta"].dropna()
    if len(betas) < MIN_HISTORY:
        raise InsufficientDataError(MIN_HISTORY, len(betas), "rolling beta observations")

    current_beta = float(betas.iloc[-1])
    beta_volatility = float(betas.std(ddof=1))
    predicted, lower, upper = forecast_bands(
        betas.to_numpy(dtype=float), current_beta, beta_volatility, days_ahead, method
    )

    last_date = pd.Timestamp(betas.index[-1])
    dates = pd.bdate_range(last_date + pd.offsets.BDay(1), periods=days_ahead)
    points = [
        BetaForecastPoint(
            day_offset=i + 1,
            date=dates[i].strftime("%Y-%m-%d"),
            predicted_beta=float(predicted[i]),
            lower_bound=float(lower[i]),
            upper_bound=float(upper[i]),
        )
        for i in range(days_ahead)
    ]

    changes = detect_beta_regime_changes(betas)
    warnings: List[str] = []
    if beta_volatility > HIGH_BETA_VOLATILITY:
        warnings.append("High beta volatility detected. Forecast confidence may be lower.")
    # a shift is only detectable once a full window follows it
    latest_detectable = pd.Timestamp(betas.index[len(betas) - REGIME_WINDOW])
    cutoff = latest_detectable - pd.Timedelta(days=RECENT_CHANGE_DAYS)
    if any(pd.Timestamp(c.date) > cutoff for c in changes):
        warnings.append(
            f"Recent regime change detected (within last {RECENT_CHANGE_DAYS} days). "
            "Forecast may not reflect new regime."
        )
    if len(betas) < FULL_HISTORY:
        warnings.append(f"Limited historical data ({len(betas)} days). Forecast confidence may be lower.")

    logger.info(
        "beta_forecast: computed",
        ticker=analysis.ticker,
        benchmark=analysis.benchmark,
        method=method.value,
        days_ahead=days_ahead,
        regime_changes=len(changes),
    )
    return BetaForecast(
        ticker=analysis.ticker,
        benchmark=analysis.benchmark,
        method=method,
        current_beta=current_beta,
        beta_volatility=beta_volatility,
        points=points,
        regime_changes=changes,
        warnings=warnings,
    )

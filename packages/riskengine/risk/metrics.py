"""
Risk Metrics Module

Position-level risk statistics computed from a daily return series:
volatility, drawdown, per-benchmark beta, Sharpe, Sortino, parametric VaR,
empirical CVaR and systematic/idiosyncratic decomposition.  Also holds the
portfolio-level primitives (w'Σw volatility, variance contributions, HHI) that
the aggregator and optimizer share.

Units: volatility, returns, drawdown, VaR and CVaR are percentages.  Ratios
and betas are unitless.
"""

from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
import structlog
from scipy import stats

from ..errors import InsufficientDataError, MetricResult
from .returns import ReturnSeries, align_series, trim_to_window

logger = structlog.get_logger(__name__)

TRADING_DAYS = 252
MIN_OBSERVATIONS = 20
VAR_CONFIDENCES = (0.95, 0.99)

# Risk score normalisation points (value that maps to a 100 sub-score)
VOLATILITY_NORM = 50.0
DRAWDOWN_NORM = 50.0
BETA_NORM = 2.0
VAR_NORM = 10.0
RISK_SCORE_WEIGHTS = {"volatility": 0.4, "drawdown": 0.3, "beta": 0.2, "var": 0.1}


@dataclass(frozen=True)
class RiskDecomposition:
    """Annualized variance split (decimal units) from the beta regression."""

    systematic: float
    idiosyncratic: float
    r_squared: float
    systematic_pct: float


@dataclass(frozen=True)
class PositionRiskMetrics:
    ticker: str
    benchmark: str
    window_days: int
    observations: int
    volatility: float
    annualized_return: float
    max_drawdown: float
    beta: Optional[float]
    beta_per_benchmark: Dict[str, Optional[float]]
    sharpe_ratio: Optional[float]
    sortino_ratio: Optional[float]
    downside_deviation: Optional[float]
    var_95: float
    var_99: float
    cvar_95: float
    cvar_99: float
    risk_decomposition: Optional[RiskDecomposition]
    risk_score: float
    risk_level: str

    def to_dict(self) -> Dict:
        return asdict(self)


# ---------------------------------------------------------------------------
# Single-series statistics
# ---------------------------------------------------------------------------


def _as_array(returns) -> np.ndarray:
    if isinstance(returns, ReturnSeries):
        return returns.values
    arr = np.asarray(returns, dtype=float).flatten()
    return arr[~np.isnan(arr)]


def annualized_volatility(returns) -> float:
    """Sample standard deviation (ddof=1) of daily returns, annualized, in %."""
    r = _as_array(returns)
    if len(r) < 2:
        raise ValueError(f"Need at least 2 returns for volatility, got {len(r)}")
    return float(np.std(r, ddof=1) * np.sqrt(TRADING_DAYS) * 100)


def annualized_return(returns) -> float:
    """Mean daily return times 252, in %."""
    r = _as_array(returns)
    if len(r) == 0:
        raise ValueError("Cannot annualize an empty return series")
    return float(np.mean(r) * TRADING_DAYS * 100)


def max_drawdown(prices) -> float:
    """Minimum of price / running peak - 1 over the series, in % (<= 0).

    Args:
        prices: Price or wealth-index levels (not returns)
    """
    p = np.asarray(prices, dtype=float).flatten()
    p = p[~np.isnan(p)]
    if len(p) == 0:
        raise ValueError("Cannot compute drawdown of an empty price series")
    if (p <= 0).any():
        raise ValueError("Prices must be positive to compute drawdown")
    running_peak = np.maximum.accumulate(p)
    drawdowns = p / running_peak - 1.0
    return float(min(drawdowns.min(), 0.0) * 100)


def drawdown_from_returns(series: ReturnSeries) -> float:
    """Max drawdown of the wealth index implied by *series*, starting at 1."""
    wealth = np.concatenate([[1.0], series.wealth_index().to_numpy(dtype=float)])
    return max_drawdown(wealth)


def compute_beta(
    asset: ReturnSeries,
    benchmark: ReturnSeries,
    min_observations: int = MIN_OBSERVATIONS,
) -> Optional[Dict[str, float]]:
    """Regress *asset* on *benchmark* over their intersected dates.

    Returns:
        Dict with beta, alpha (annualized %), r_squared, correlation,
        asset_variance and benchmark_variance (daily), and observations.
        None when the overlap is too short or the benchmark has no variance.
    """
    a, b = align_series(asset, benchmark)
    if len(a) < min_observations:
        logger.info(
            "compute_beta: insufficient overlap",
            ticker=asset.ticker,
            benchmark=benchmark.ticker,
            overlap=len(a),
        )
        return None

    var_b = float(np.var(b, ddof=1))
    if var_b < 1e-14:
        return None
    var_a = float(np.var(a, ddof=1))
    cov_ab = float(np.cov(a, b, ddof=1)[0, 1])

    beta = cov_ab / var_b
    corr = cov_ab / np.sqrt(var_a * var_b) if var_a > 0 else 0.0
    alpha = (np.mean(a) - beta * np.mean(b)) * TRADING_DAYS * 100

    return {
        "beta": float(beta),
        "alpha": float(alpha),
        "r_squared": float(np.clip(corr ** 2, 0.0, 1.0)),
        "correlation": float(np.clip(corr, -1.0, 1.0)),
        "asset_variance": var_a,
        "benchmark_variance": var_b,
        "observations": len(a),
    }


def risk_decomposition(beta_stats: Dict[str, float]) -> RiskDecomposition:
    """Split annualized asset variance into systematic and idiosyncratic parts.

    systematic = beta^2 * Var(benchmark); idiosyncratic = Var(asset) - systematic,
    clamped at zero.
    """
    var_a = beta_stats["asset_variance"] * TRADING_DAYS
    var_b = beta_stats["benchmark_variance"] * TRADING_DAYS
    systematic = beta_stats["beta"] ** 2 * var_b
    idiosyncratic = max(var_a - systematic, 0.0)
    total = systematic + idiosyncratic
    return RiskDecomposition(
        systematic=float(systematic),
        idiosyncratic=float(idiosyncratic),
        r_squared=beta_stats["r_squared"],
        systematic_pct=float(systematic / total * 100) if total > 0 else 0.0,
    )


def sharpe_ratio(
    ann_return_pct: float,
    volatility_pct: float,
    risk_free_rate: float,
) -> Optional[float]:
    """(annualized return - risk-free rate) / volatility; None for zero volatility."""
    if volatility_pct <= 0:
        return None
    return float((ann_return_pct - risk_free_rate * 100) / volatility_pct)


def downside_deviation(returns, mar_annual: float = 0.0) -> Optional[float]:
    """Annualized RMS shortfall below the minimum acceptable return, in %.

    Only returns below the daily MAR contribute.  Returns None when no
    return falls below it.
    """
    r = _as_array(returns)
    mar_daily = mar_annual / TRADING_DAYS
    shortfall = r[r < mar_daily] - mar_daily
    if len(shortfall) == 0:
        return None
    return float(np.sqrt(np.mean(shortfall ** 2)) * np.sqrt(TRADING_DAYS) * 100)


def sortino_ratio(
    ann_return_pct: float,
    downside_dev_pct: Optional[float],
    risk_free_rate: float,
) -> Optional[float]:
    if downside_dev_pct is None or downside_dev_pct <= 0:
        return None
    return float((ann_return_pct - risk_free_rate * 100) / downside_dev_pct)


def value_at_risk(returns, confidence: float = 0.95) -> float:
    """Parametric one-day VaR: mean + z * sigma, in % and never above zero.

    z is the (1 - confidence) quantile of the standard normal, so the 99%
    figure is always at least as extreme as the 95% one.
    """
    if not 0 < confidence < 1:
        raise ValueError(f"Confidence must be between 0 and 1, got {confidence}")
    r = _as_array(returns)
    if len(r) < 2:
        raise ValueError(f"Need at least 2 returns for VaR, got {len(r)}")
    z = stats.norm.ppf(1 - confidence)
    var = np.mean(r) + z * np.std(r, ddof=1)
    return float(min(var, 0.0) * 100)


def conditional_var(returns, confidence: float = 0.95) -> float:
    """Mean of realized returns worse than the parametric VaR, in %.

    When no realized return breaches VaR the parametric expected shortfall
    mean - sigma * phi(z) / (1 - confidence) is used instead.  The result is
    clamped so CVaR <= VaR.
    """
    var_pct = value_at_risk(returns, confidence)
    r = _as_array(returns)
    tail = r[r * 100 < var_pct]
    if len(tail) > 0:
        cvar = float(np.mean(tail) * 100)
    else:
        z = stats.norm.ppf(1 - confidence)
        sigma = np.std(r, ddof=1)
        cvar = float((np.mean(r) - sigma * stats.norm.pdf(z) / (1 - confidence)) * 100)
    return min(cvar, var_pct)


def risk_score(
    volatility: float,
    max_drawdown_pct: float,
    beta: Optional[float],
    var_95: float,
) -> float:
    """Composite 0-100 risk score.

    40% volatility (100 at 50%), 30% |drawdown| (100 at 50%),
    20% |beta| (100 at 2.0), 10% |VaR95| (100 at 10%).  A missing beta
    contributes as a market beta of 1.0.
    """
    vol_component = min(abs(volatility) / VOLATILITY_NORM * 100, 100.0)
    dd_component = min(abs(max_drawdown_pct) / DRAWDOWN_NORM * 100, 100.0)
    beta_component = min(abs(1.0 if beta is None else beta) / BETA_NORM * 100, 100.0)
    var_component = min(abs(var_95) / VAR_NORM * 100, 100.0)

    score = (
        RISK_SCORE_WEIGHTS["volatility"] * vol_component
        + RISK_SCORE_WEIGHTS["drawdown"] * dd_component
        + RISK_SCORE_WEIGHTS["beta"] * beta_component
        + RISK_SCORE_WEIGHTS["var"] * var_component
    )
    return float(min(max(score, 0.0), 100.0))


def risk_level(score: float) -> str:
    if score < 40:
        return "low"
    if score < 70:
        return "moderate"
    return "high"


# ---------------------------------------------------------------------------
# Position risk
# ---------------------------------------------------------------------------


def compute_position_risk(
    series: ReturnSeries,
    benchmarks: Dict[str, ReturnSeries],
    risk_free_rate: float = 0.045,
    window_days: int = 365,
    primary_benchmark: str = "SPY",
    min_observations: int = MIN_OBSERVATIONS,
) -> MetricResult[PositionRiskMetrics]:
    """Compute the full PositionRiskMetrics for one ticker.

    The series is trimmed to the last *window_days* observations.  Each
    benchmark beta is computed independently on its own intersected dates.

    Returns:
        MetricResult that is no_data below *min_observations*, degraded when
        any requested benchmark beta could not be estimated, ok otherwise.
    """
    window = trim_to_window(series, window_days)
    n = len(window)
    if n < min_observations:
        reason = str(InsufficientDataError(min_observations, n))
        logger.info("compute_position_risk: insufficient data", ticker=series.ticker, observations=n)
        return MetricResult.no_data(reason)

    r = window.values
    vol = annualized_volatility(r)
    ann_ret = annualized_return(r)
    dd = drawdown_from_returns(window)

    betas: Dict[str, Optional[float]] = {}
    primary_stats = None
    for name, bench in benchmarks.items():
        bench_window = trim_to_window(bench, window_days)
        beta_stats = compute_beta(window, bench_window, min_observations)
        betas[name] = beta_stats["beta"] if beta_stats else None
        if name == primary_benchmark:
            primary_stats = beta_stats

    dd_dev = downside_deviation(r, risk_free_rate)
    var_95, var_99 = (value_at_risk(r, c) for c in VAR_CONFIDENCES)
    cvar_95, cvar_99 = (conditional_var(r, c) for c in VAR_CONFIDENCES)
    primary_beta = primary_stats["beta"] if primary_stats else None
    score = risk_score(vol, dd, primary_beta, var_95)

    metrics = PositionRiskMetrics(
        ticker=series.ticker,
        benchmark=primary_benchmark,
        window_days=window_days,
        observations=n,
        volatility=vol,
        annualized_return=ann_ret,
        max_drawdown=dd,
        beta=primary_beta,
        beta_per_benchmark=betas,
        sharpe_ratio=sharpe_ratio(ann_ret, vol, risk_free_rate),
        sortino_ratio=sortino_ratio(ann_ret, dd_dev, risk_free_rate),
        downside_deviation=dd_dev,
        var_95=var_95,
        var_99=var_99,
        cvar_95=cvar_95,
        cvar_99=cvar_99,
        risk_decomposition=risk_decomposition(primary_stats) if primary_stats else None,
        risk_score=score,
        risk_level=risk_level(score),
    )

    missing = [name for name, b in betas.items() if b is None]
    if missing:
        return MetricResult.degraded(
            metrics,
            reason="beta unavailable for " + ", ".join(sorted(missing)),
        )
    return MetricResult.ok(metrics)


# ---------------------------------------------------------------------------
# Rolling beta
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RollingBetaAnalysis:
    ticker: str
    benchmark: str
    series: Dict[int, pd.DataFrame] = field(default_factory=dict)
    current_beta: float = 0.0
    beta_volatility: float = 0.0

    def to_dict(self) -> Dict:
        return {
            "ticker": self.ticker,
            "benchmark": self.benchmark,
            "current_beta": self.current_beta,
            "beta_volatility": self.beta_volatility,
            "series": {
                f"beta_{w}d": [
                    {"date": pd.Timestamp(idx).strftime("%Y-%m-%d"), **row}
                    for idx, row in df.to_dict("index").items()
                ]
                for w, df in self.series.items()
            },
        }


def rolling_beta(
    asset: ReturnSeries,
    benchmark: ReturnSeries,
    windows: Tuple[int, ...] = (30, 60, 90),
) -> RollingBetaAnalysis:
    """Rolling OLS beta of *asset* on *benchmark* for each window length.

    Each window yields a DataFrame indexed by date with beta, r_squared and
    alpha (annualized %).  current_beta is the latest value of the longest
    window and beta_volatility the standard deviation of that series.

    Raises:
        InsufficientDataError: If the overlap is shorter than the longest window
    """
    joined = pd.concat([asset.returns, benchmark.returns], axis=1, join="inner").dropna()
    joined.columns = ["asset", "bench"]
    longest = max(windows)
    if len(joined) < longest:
        raise InsufficientDataError(longest, len(joined), "overlapping returns")

    out: Dict[int, pd.DataFrame] = {}
    for w in sorted(windows):
        cov = joined["asset"].rolling(w).cov(joined["bench"])
        var_b = joined["bench"].rolling(w).var()
        corr = joined["asset"].rolling(w).corr(joined["bench"])
        beta = cov / var_b.replace(0.0, np.nan)
        alpha = (
            joined["asset"].rolling(w).mean() - beta * joined["bench"].rolling(w).mean()
        ) * TRADING_DAYS * 100
        df = pd.DataFrame({"beta": beta, "r_squared": corr ** 2, "alpha": alpha}).dropna()
        out[w] = df

    longest_series = out[longest]["beta"]
    analysis = RollingBetaAnalysis(
        ticker=asset.ticker,
        benchmark=benchmark.ticker,
        series=out,
        current_beta=float(longest_series.iloc[-1]),
        beta_volatility=float(longest_series.std(ddof=1)) if len(longest_series) > 1 else 0.0,
    )
    logger.info(
        "rolling_beta: computed",
        ticker=asset.ticker,
        benchmark=benchmark.ticker,
        current_beta=analysis.current_beta,
    )
    return analysis


# ---------------------------------------------------------------------------
# Portfolio primitives
# ---------------------------------------------------------------------------


def portfolio_volatility(weights: np.ndarray, cov: np.ndarray) -> float:
    """sqrt(w' * Sigma * w) in the units of *cov*.

    Raises:
        ValueError: On dimension mismatch or a materially negative variance
    """
    weights = np.asarray(weights, dtype=float).flatten()
    cov = np.asarray(cov, dtype=float)
    if weights.shape[0] != cov.shape[0]:
        raise ValueError(
            f"Weights dimension {weights.shape[0]} doesn't match covariance {cov.shape[0]}"
        )
    port_var = float(weights @ cov @ weights)
    if port_var < -1e-10:
        raise ValueError(
            f"Negative portfolio variance ({port_var:.6e}). "
            "Covariance matrix is not positive semi-definite."
        )
    return float(np.sqrt(max(port_var, 0.0)))


def pct_contribution_to_variance(weights: np.ndarray, cov: np.ndarray) -> np.ndarray:
    """w_i * (Sigma w)_i / (w' Sigma w) * 100; sums to 100."""
    weights = np.asarray(weights, dtype=float).flatten()
    cov = np.asarray(cov, dtype=float)
    if weights.shape[0] != cov.shape[0]:
        raise ValueError(
            f"Weights dimension {weights.shape[0]} doesn't match covariance {cov.shape[0]}"
        )
    port_var = weights @ cov @ weights
    if port_var <= 0:
        logger.warning("pct_contribution_to_variance: zero portfolio variance")
        return np.zeros_like(weights)
    return weights * (cov @ weights) / port_var * 100


def concentration_metrics(weights: np.ndarray, symbols: List[str]) -> Dict:
    """HHI (0-10000), effective position count and the largest position."""
    weights = np.abs(np.asarray(weights, dtype=float).flatten())
    if len(weights) != len(symbols):
        raise ValueError(
            f"Weights length {len(weights)} doesn't match symbols length {len(symbols)}"
        )
    gross = weights.sum()
    if gross == 0:
        return {"hhi": 0.0, "effective_positions": 0.0, "largest_symbol": None, "largest_weight": 0.0}

    w = weights / gross
    hhi = float(np.sum(w ** 2))
    top = int(np.argmax(w))
    return {
        "hhi": hhi * 10000,
        "effective_positions": 1.0 / hhi,
        "largest_symbol": symbols[top],
        "largest_weight": float(w[top] * 100),
    }

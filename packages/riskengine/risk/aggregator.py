"""
Portfolio Risk Aggregation Module

Combines per-position metrics and the correlation matrix into portfolio
risk (full w' Sigma w volatility, weighted beta, composite risk score) and
evaluates regime-adjusted warning/critical thresholds.  Threshold evaluation
never recomputes metrics; it only applies policy to the values it is given.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd
import structlog
from scipy import stats

from ..config import RiskThresholdSettings
from ..errors import MetricResult
from .correlation import diversification_score, weighted_average_correlation
from .covariance import covariance_from_correlation
from .metrics import (
    TRADING_DAYS,
    PositionRiskMetrics,
    concentration_metrics,
    pct_contribution_to_variance,
    portfolio_volatility,
    risk_level,
    risk_score,
)
from .regime import RegimeState, threshold_multiplier

logger = structlog.get_logger(__name__)


class Severity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


# metric name -> True when larger values are worse
THRESHOLD_METRICS: Dict[str, bool] = {
    "volatility": True,
    "beta": True,
    "risk_score": True,
    "drawdown": False,
    "var": False,
}


@dataclass(frozen=True)
class PortfolioPosition:
    ticker: str
    market_value: float


@dataclass(frozen=True)
class ThresholdViolation:
    metric: str
    value: float
    threshold: float
    severity: Severity
    ticker: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "metric": self.metric,
            "value": self.value,
            "threshold": self.threshold,
            "severity": self.severity.value,
            "ticker": self.ticker,
        }


@dataclass(frozen=True)
class PositionContribution:
    ticker: str
    weight: float
    volatility: float
    beta: Optional[float]
    max_drawdown: float
    var_95: float
    risk_score: float
    risk_contribution: float


@dataclass(frozen=True)
class PortfolioSnapshot:
    """Portfolio-level numbers for one weight vector.  Percent units."""

    volatility: float
    beta: Optional[float]
    annualized_return: float
    max_drawdown: float
    var_95: float
    cvar_95: float
    sharpe_ratio: Optional[float]
    risk_score: float
    risk_level: str
    diversification_score: float
    risk_contributions: Dict[str, float]
    largest_position_weight: float


@dataclass(frozen=True, eq=False)
class PortfolioModel:
    """The inputs needed to re-evaluate the portfolio under other weights."""

    tickers: List[str]
    weights: np.ndarray
    metrics: Dict[str, PositionRiskMetrics]
    correlation: pd.DataFrame
    risk_free_rate: float

    @property
    def weight_map(self) -> Dict[str, float]:
        return {t: float(w) for t, w in zip(self.tickers, self.weights)}

    def covariance(self) -> np.ndarray:
        vols = [self.metrics[t].volatility for t in self.tickers]
        corr = self.correlation.reindex(index=self.tickers, columns=self.tickers)
        return covariance_from_correlation(corr, vols)

    def evaluate(self, weights: Optional[Mapping[str, float]] = None) -> PortfolioSnapshot:
        """Portfolio numbers for *weights* (defaults to the current weights)."""
        if weights is None:
            w = self.weights
        else:
            w = np.array([float(weights.get(t, 0.0)) for t in self.tickers])
        total = w.sum()
        if total <= 0:
            raise ValueError("Weights must have a positive sum")
        w = w / total
        return evaluate_portfolio(self.tickers, w, self.metrics, self.correlation, self.risk_free_rate)


@dataclass
class PortfolioRiskWithViolations:
    portfolio_id: str
    window_days: int
    benchmark: str
    snapshot: PortfolioSnapshot
    positions: List[PositionContribution]
    high_correlation_pairs: int
    violations: List[ThresholdViolation]
    thresholds: RiskThresholdSettings
    regime: Optional[RegimeState]
    threshold_multiplier: float
    excluded: List[Dict[str, str]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    correlated_pairs: List[Dict] = field(default_factory=list)
    model: Optional[PortfolioModel] = None

    def to_dict(self) -> Dict:
        s = self.snapshot
        return {
            "portfolio_id": self.portfolio_id,
            "window_days": self.window_days,
            "benchmark": self.benchmark,
            "volatility": s.volatility,
            "beta": s.beta,
            "annualized_return": s.annualized_return,
            "max_drawdown": s.max_drawdown,
            "var_95": s.var_95,
            "cvar_95": s.cvar_95,
            "sharpe_ratio": s.sharpe_ratio,
            "risk_score": s.risk_score,
            "risk_level": s.risk_level,
            "diversification_score": s.diversification_score,
            "largest_position_weight": s.largest_position_weight,
            "high_correlation_pairs": self.high_correlation_pairs,
            "correlated_pairs": [dict(p) for p in self.correlated_pairs],
            "position_count": len(self.positions),
            "positions": [vars(p).copy() for p in self.positions],
            "violations": [v.to_dict() for v in self.violations],
            "thresholds": self.thresholds.model_dump(),
            "regime": self.regime.value if self.regime else None,
            "threshold_multiplier": self.threshold_multiplier,
            "excluded": list(self.excluded),
            "warnings": list(self.warnings),
        }


# ---------------------------------------------------------------------------
# Portfolio math
# ---------------------------------------------------------------------------


def evaluate_portfolio(
    tickers: Sequence[str],
    weights: np.ndarray,
    metrics: Mapping[str, PositionRiskMetrics],
    correlation: pd.DataFrame,
    risk_free_rate: float,
) -> PortfolioSnapshot:
    """Compute portfolio metrics for normalized *weights*.

    Volatility uses Sigma = D C D with D the annualized position
    volatilities, so it is already annualized and in percent.
    """
    tickers = list(tickers)
    w = np.asarray(weights, dtype=float).flatten()
    if len(w) != len(tickers):
        raise ValueError(f"Weights length {len(w)} doesn't match {len(tickers)} tickers")

    rows = [metrics[t] for t in tickers]
    vols = np.array([m.volatility for m in rows])
    corr = correlation.reindex(index=tickers, columns=tickers)
    cov = covariance_from_correlation(corr, vols)

    port_vol = portfolio_volatility(w, cov)
    contributions = pct_contribution_to_variance(w, cov)

    betas = [(wi, m.beta) for wi, m in zip(w, rows) if m.beta is not None]
    beta_weight = sum(wi for wi, _ in betas)
    port_beta = (
        float(sum(wi * b for wi, b in betas) / beta_weight) if beta_weight > 0 else None
    )

    ann_ret = float(np.dot(w, [m.annualized_return for m in rows]))
    dd = float(np.dot(w, [m.max_drawdown for m in rows]))

    daily_mean = ann_ret / TRADING_DAYS
    daily_sigma = port_vol / np.sqrt(TRADING_DAYS)
    z = stats.norm.ppf(0.05)
    var_95 = float(min(daily_mean + z * daily_sigma, 0.0))
    cvar_95 = float(min(daily_mean - daily_sigma * stats.norm.pdf(z) / 0.05, var_95))

    sharpe = (ann_ret - risk_free_rate * 100) / port_vol if port_vol > 0 else None
    score = risk_score(port_vol, dd, port_beta, var_95)

    if len(tickers) > 1:
        avg_corr = weighted_average_correlation(corr, dict(zip(tickers, w)))
    else:
        avg_corr = None
    conc = concentration_metrics(w, tickers)

    return PortfolioSnapshot(
        volatility=port_vol,
        beta=port_beta,
        annualized_return=ann_ret,
        max_drawdown=dd,
        var_95=var_95,
        cvar_95=cvar_95,
        sharpe_ratio=float(sharpe) if sharpe is not None else None,
        risk_score=score,
        risk_level=risk_level(score),
        diversification_score=diversification_score(w, avg_corr),
        risk_contributions={t: float(c) for t, c in zip(tickers, contributions)},
        largest_position_weight=conc["largest_weight"],
    )


# ---------------------------------------------------------------------------
# Thresholds
# ---------------------------------------------------------------------------


def evaluate_thresholds(
    values: Mapping[str, Optional[float]],
    thresholds: RiskThresholdSettings,
    ticker: Optional[str] = None,
) -> List[ThresholdViolation]:
    """Compare realized values against warning/critical pairs.

    A value exactly on a threshold counts as a violation at that level.
    Critical is checked first and suppresses the warning for the same metric.
    """
    violations: List[ThresholdViolation] = []
    for metric, higher_is_worse in THRESHOLD_METRICS.items():
        value = values.get(metric)
        if value is None:
            continue
        warning = getattr(thresholds, f"{metric}_warning")
        critical = getattr(thresholds, f"{metric}_critical")
        if higher_is_worse:
            breached_critical, breached_warning = value >= critical, value >= warning
        else:
            breached_critical, breached_warning = value <= critical, value <= warning

        if breached_critical:
            violations.append(ThresholdViolation(metric, float(value), critical, Severity.CRITICAL, ticker))
        elif breached_warning:
            violations.append(ThresholdViolation(metric, float(value), warning, Severity.WARNING, ticker))
    return violations


def effective_thresholds(
    thresholds: RiskThresholdSettings,
    regime: Optional[RegimeState],
) -> RiskThresholdSettings:
    if regime is None:
        return thresholds
    return thresholds.scaled(threshold_multiplier(regime))


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def aggregate_portfolio(
    portfolio_id: str,
    positions: Sequence[PortfolioPosition],
    position_results: Mapping[str, MetricResult[PositionRiskMetrics]],
    correlation: Optional[pd.DataFrame],
    thresholds: Optional[RiskThresholdSettings] = None,
    regime: Optional[RegimeState] = None,
    risk_free_rate: float = 0.045,
    window_days: int = 365,
    benchmark: str = "SPY",
    correlated_pairs: Optional[Sequence[Dict]] = None,
) -> MetricResult[PortfolioRiskWithViolations]:
    """Aggregate position outcomes into portfolio risk with violations.

    Positions whose metrics are missing are excluded and the remaining
    weights renormalized.  Only when every position is missing is the
    result no_data.
    """
    thresholds = thresholds or RiskThresholdSettings()

    values: Dict[str, float] = {}
    for p in positions:
        values[p.ticker] = values.get(p.ticker, 0.0) + abs(float(p.market_value))

    excluded: List[Dict[str, str]] = []
    included: Dict[str, PositionRiskMetrics] = {}
    for ticker, mv in values.items():
        outcome = position_results.get(ticker)
        if outcome is None or not outcome.has_value:
            reason = outcome.reason if outcome is not None else "no price data"
            excluded.append({"ticker": ticker, "reason": reason or "no data"})
            continue
        if mv <= 0:
            excluded.append({"ticker": ticker, "reason": "zero market value"})
            continue
        included[ticker] = outcome.value

    if not included:
        logger.warning("aggregate_portfolio: no usable positions", portfolio_id=portfolio_id)
        return MetricResult.no_data("No position in the portfolio has usable risk data")

    tickers = sorted(included)
    raw = np.array([values[t] for t in tickers])
    weights = raw / raw.sum()

    warnings: List[str] = []
    if correlation is None:
        correlation = pd.DataFrame(np.eye(len(tickers)), index=tickers, columns=tickers)
        if len(tickers) > 1:
            warnings.append("Correlation matrix unavailable; positions treated as uncorrelated")
    else:
        missing_pairs = correlation.reindex(index=tickers, columns=tickers).isna().to_numpy().sum()
        if missing_pairs:
            warnings.append("Some position pairs lack overlapping history; treated as uncorrelated")

    model = PortfolioModel(
        tickers=tickers,
        weights=weights,
        metrics=included,
        correlation=correlation,
        risk_free_rate=risk_free_rate,
    )
    snapshot = model.evaluate()

    multiplier = threshold_multiplier(regime) if regime is not None else 1.0
    active = effective_thresholds(thresholds, regime)

    violations = evaluate_thresholds(
        {
            "volatility": snapshot.volatility,
            "beta": snapshot.beta,
            "risk_score": snapshot.risk_score,
            "drawdown": snapshot.max_drawdown,
            "var": snapshot.var_95,
        },
        active,
    )
    contributions = []
    for ticker, w in zip(tickers, weights):
        m = included[ticker]
        violations.extend(evaluate_thresholds(
            {
                "volatility": m.volatility,
                "beta": m.beta,
                "risk_score": m.risk_score,
                "drawdown": m.max_drawdown,
                "var": m.var_95,
            },
            active,
            ticker=ticker,
        ))
        contributions.append(PositionContribution(
            ticker=ticker,
            weight=float(w * 100),
            volatility=m.volatility,
            beta=m.beta,
            max_drawdown=m.max_drawdown,
            var_95=m.var_95,
            risk_score=m.risk_score,
            risk_contribution=snapshot.risk_contributions[ticker],
        ))

    held_pairs = [
        dict(p) for p in (correlated_pairs or [])
        if p["ticker_a"] in included and p["ticker_b"] in included
    ]

    if excluded:
        warnings.append(
            "Excluded from aggregate: " + ", ".join(e["ticker"] for e in excluded)
        )

    result = PortfolioRiskWithViolations(
        portfolio_id=portfolio_id,
        window_days=window_days,
        benchmark=benchmark,
        snapshot=snapshot,
        positions=contributions,
        high_correlation_pairs=len(held_pairs),
        violations=violations,
        thresholds=active,
        regime=regime,
        threshold_multiplier=multiplier,
        excluded=excluded,
        warnings=warnings,
        correlated_pairs=held_pairs,
        model=model,
    )
    logger.info(
        "aggregate_portfolio: complete",
        portfolio_id=portfolio_id,
        positions=len(tickers),
        excluded=len(excluded),
        volatility=snapshot.volatility,
        risk_score=snapshot.risk_score,
        violations=len(violations),
    )
    if excluded:
        return MetricResult.degraded(result, reason=f"{len(excluded)} position(s) excluded")
    return MetricResult.ok(result)

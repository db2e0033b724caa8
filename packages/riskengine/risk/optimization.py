"""
Optimization Recommendations

Rule-based scan of an aggregated portfolio.  Each triggered rule proposes
new weights by trimming the offending positions toward a cap and spreading
the excess pro-rata over the rest, then re-evaluates the portfolio under
those weights to project the impact.  Nothing here mutates holdings.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional

import structlog

from .aggregator import PortfolioRiskWithViolations, PortfolioSnapshot

logger = structlog.get_logger(__name__)


class RecommendationType(str, Enum):
    REDUCE_CONCENTRATION = "reduce_concentration"
    REBALANCE_RISK = "rebalance_risk"
    INCREASE_DIVERSIFICATION = "increase_diversification"
    REDUCE_CORRELATION = "reduce_correlation"
    REDUCE_VOLATILITY = "reduce_volatility"
    REDUCE_DRAWDOWN = "reduce_drawdown"


class RecommendationSeverity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    WARNING = "warning"
    INFO = "info"


SEVERITY_RANK = {
    RecommendationSeverity.CRITICAL: 0,
    RecommendationSeverity.HIGH: 1,
    RecommendationSeverity.WARNING: 2,
    RecommendationSeverity.INFO: 3,
}


@dataclass(frozen=True)
class RecommendationPolicy:
    """Rule thresholds, weights and contributions in percent."""

    concentration_warning: float = 15.0
    concentration_high: float = 20.0
    concentration_critical: float = 30.0
    target_weight: float = 15.0
    risk_contribution_limit: float = 20.0
    risk_contribution_high: float = 30.0
    risk_contribution_target: float = 15.0
    diversification_target: float = 7.0
    diversification_high: float = 4.0
    diversification_warning: float = 6.0
    correlation_pair_limit: int = 3
    correlated_trim: float = 0.25


@dataclass(frozen=True)
class PositionAdjustment:
    ticker: str
    current_weight: float
    recommended_weight: float

    @property
    def weight_change(self) -> float:
        return self.recommended_weight - self.current_weight

    @property
    def action(self) -> str:
        if self.weight_change < -1e-9:
            return "sell"
        if self.weight_change > 1e-9:
            return "buy"
        return "hold"

    def to_dict(self) -> Dict:
        return {
            "ticker": self.ticker,
            "current_weight": self.current_weight,
            "recommended_weight": self.recommended_weight,
            "weight_change": self.weight_change,
            "action": self.action,
        }


@dataclass(frozen=True)
class ExpectedImpact:
    risk_score_before: float
    risk_score_after: float
    volatility_before: float
    volatility_after: float
    diversification_before: float
    diversification_after: float
    max_drawdown_before: float
    max_drawdown_after: float
    sharpe_before: Optional[float]
    sharpe_after: Optional[float]

    @property
    def risk_score_change(self) -> float:
        return self.risk_score_after - self.risk_score_before

    @property
    def volatility_change(self) -> float:
        return self.volatility_after - self.volatility_before

    @property
    def diversification_change(self) -> float:
        return self.diversification_after - self.diversification_before

    @classmethod
    def between(cls, before: PortfolioSnapshot, after: PortfolioSnapshot) -> "ExpectedImpact":
        return cls(
            risk_score_before=before.risk_score,
            risk_score_after=after.risk_score,
            volatility_before=before.volatility,
            volatility_after=after.volatility,
            diversification_before=before.diversification_score,
            diversification_after=after.diversification_score,
            max_drawdown_before=before.max_drawdown,
            max_drawdown_after=after.max_drawdown,
            sharpe_before=before.sharpe_ratio,
            sharpe_after=after.sharpe_ratio,
        )

    def to_dict(self) -> Dict:
        return {
            "risk_score_before": self.risk_score_before,
            "risk_score_after": self.risk_score_after,
            "risk_score_change": self.risk_score_change,
            "volatility_before": self.volatility_before,
            "volatility_after": self.volatility_after,
            "volatility_change": self.volatility_change,
            "diversification_before": self.diversification_before,
            "diversification_after": self.diversification_after,
            "diversification_change": self.diversification_change,
            "max_drawdown_before": self.max_drawdown_before,
            "max_drawdown_after": self.max_drawdown_after,
            "sharpe_before": self.sharpe_before,
            "sharpe_after": self.sharpe_after,
        }


@dataclass
class Recommendation:
    id: str
    type: RecommendationType
    severity: RecommendationSeverity
    title: str
    rationale: str
    affected_positions: List[PositionAdjustment]
    suggested_weights: Dict[str, float]
    expected_impact: ExpectedImpact
    suggested_actions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "title": self.title,
            "rationale": self.rationale,
            "affected_positions": [a.to_dict() for a in self.affected_positions],
            "suggested_weights": dict(self.suggested_weights),
            "expected_impact": self.expected_impact.to_dict(),
            "suggested_actions": list(self.suggested_actions),
        }


@dataclass
class AnalysisSummary:
    total_recommendations: int
    critical_issues: int
    high_priority: int
    warnings: int
    overall_health: str
    key_findings: List[str]

    def to_dict(self) -> Dict:
        return vars(self).copy()


@dataclass
class OptimizationReport:
    portfolio_id: str
    current: PortfolioSnapshot
    recommendations: List[Recommendation]
    summary: AnalysisSummary

    def to_dict(self) -> Dict:
        return {
            "portfolio_id": self.portfolio_id,
            "current_metrics": vars(self.current).copy(),
            "recommendations": [r.to_dict() for r in self.recommendations],
            "summary": self.summary.to_dict(),
        }


# ---------------------------------------------------------------------------
# Weight proposals
# ---------------------------------------------------------------------------


def trim_weights(weights: Mapping[str, float], caps: Mapping[str, float]) -> Dict[str, float]:
    """Cap selected weights and redistribute the excess pro-rata.

    Weights are fractions summing to one.  Redistribution repeats until no
    capped ticker exceeds its cap.  When every ticker ends up capped the
    caps are rescaled to sum to one.
    """
    total = sum(weights.values())
    if total <= 0:
        raise ValueError("Weights must have a positive sum")
    free = {t: w / total for t, w in weights.items()}
    fixed: Dict[str, float] = {}

    while True:
        over = [t for t, w in free.items() if t in caps and w > caps[t] + 1e-12]
        if not over:
            break
        for t in over:
            fixed[t] = max(float(caps[t]), 0.0)
            del free[t]
        free_total = sum(free.values())
        remaining = 1.0 - sum(fixed.values())
        if not free or free_total <= 0:
            break
        free = {t: w * remaining / free_total for t, w in free.items()}

    result = {**free, **fixed}
    result_total = sum(result.values())
    if abs(result_total - 1.0) > 1e-9 and result_total > 0:
        result = {t: w / result_total for t, w in result.items()}
    return result


def cap_weights(weights: Mapping[str, float], cap: float) -> Dict[str, float]:
    """Apply one cap to every ticker; falls back to 1/N when N * cap < 1."""
    n = len(weights)
    if n == 0:
        return {}
    effective_cap = max(cap, 1.0 / n)
    return trim_weights(weights, {t: effective_cap for t in weights})


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


class _Builder:
    """Shared state for the rule functions of one analysis."""

    def __init__(self, analysis: PortfolioRiskWithViolations):
        if analysis.model is None:
            raise ValueError("Analysis has no portfolio model to re-evaluate")
        self.analysis = analysis
        self.model = analysis.model
        self.weights = self.model.weight_map
        self.current = analysis.snapshot
        self._counter: Dict[RecommendationType, int] = {}

    def make(
        self,
        rtype: RecommendationType,
        severity: RecommendationSeverity,
        title: str,
        rationale: str,
        proposed: Mapping[str, float],
        actions: List[str],
    ) -> Recommendation:
        self._counter[rtype] = self._counter.get(rtype, 0) + 1
        after = self.model.evaluate(proposed)
        affected = [
            PositionAdjustment(t, self.weights[t] * 100, proposed[t] * 100)
            for t in sorted(self.weights)
            if abs(proposed[t] - self.weights[t]) > 1e-9
        ]
        return Recommendation(
            id=f"{rtype.value.replace('_', '-')}-{self._counter[rtype]}",
            type=rtype,
            severity=severity,
            title=title,
            rationale=rationale,
            affected_positions=affected,
            suggested_weights={t: w * 100 for t, w in proposed.items()},
            expected_impact=ExpectedImpact.between(self.current, after),
            suggested_actions=actions,
        )


def _concentration(b: _Builder, policy: RecommendationPolicy) -> Optional[Recommendation]:
    over = {t: w * 100 for t, w in b.weights.items() if w * 100 > policy.concentration_warning}
    if not over:
        return None
    largest = max(over, key=over.get)
    weight = over[largest]
    if weight > policy.concentration_critical:
        severity = RecommendationSeverity.CRITICAL
    elif weight > policy.concentration_high:
        severity = RecommendationSeverity.HIGH
    else:
        severity = RecommendationSeverity.WARNING

    proposed = cap_weights(b.weights, policy.target_weight / 100)
    names = ", ".join(sorted(over))
    return b.make(
        RecommendationType.REDUCE_CONCENTRATION,
        severity,
        f"High Concentration Risk in {names}",
        f"{largest} represents {weight:.1f}% of the portfolio, above the recommended maximum of "
        f"{policy.target_weight:.0f}%. A decline in a concentrated position has an outsized "
        "impact on total portfolio value.",
        proposed,
        [
            f"Reduce {t} from {over[t]:.1f}% to {proposed[t] * 100:.1f}% of the portfolio"
            for t in sorted(over)
        ] + ["Reinvest proceeds into the remaining, less concentrated positions"],
    )


def _risk_contributors(b: _Builder, policy: RecommendationPolicy) -> Optional[Recommendation]:
    contributions = b.current.risk_contributions
    excessive = {
        t: c for t, c in contributions.items()
        if c > policy.risk_contribution_limit and c > b.weights[t] * 100
    }
    if not excessive:
        return None
    top = max(excessive, key=excessive.get)
    caps = {
        t: b.weights[t] * policy.risk_contribution_target / c
        for t, c in excessive.items()
    }
    proposed = trim_weights(b.weights, caps)
    severity = (
        RecommendationSeverity.HIGH
        if excessive[top] > policy.risk_contribution_high
        else RecommendationSeverity.WARNING
    )
    return b.make(
        RecommendationType.REBALANCE_RISK,
        severity,
        f"{top} Contributing Excessive Risk",
        f"{top} contributes {excessive[top]:.1f}% of total portfolio variance while being "
        f"{b.weights[top] * 100:.1f}% of holdings.",
        proposed,
        [
            f"Reduce {t} by {(1 - proposed[t] / b.weights[t]) * 100:.0f}% to balance risk contribution"
            for t in sorted(excessive)
        ] + ["Consider lower-volatility alternatives in the same sector"],
    )


def _diversification(b: _Builder, policy: RecommendationPolicy) -> Optional[Recommendation]:
    score = b.current.diversification_score
    if score >= policy.diversification_target:
        return None
    if score < policy.diversification_high:
        severity = RecommendationSeverity.HIGH
    elif score < policy.diversification_warning:
        severity = RecommendationSeverity.WARNING
    else:
        severity = RecommendationSeverity.INFO

    n = len(b.weights)
    proposed = cap_weights(b.weights, policy.target_weight / 100)
    if n < 5:
        rationale = (
            f"The portfolio has only {n} positions, which limits diversification "
            f"(score: {score:.1f}/10)."
        )
    else:
        rationale = (
            f"Diversification score is {score:.1f}/10. The {n} positions may be concentrated "
            "in similar or highly correlated assets."
        )
    if n < 10:
        actions = [
            f"Add {10 - n} more positions to reach 10-15 total positions",
            "Focus on assets with low correlation to current holdings",
        ]
    else:
        actions = [
            "Add asset classes with low correlation (bonds, REITs, commodities)",
            "Rebalance concentrated positions",
        ]
    return b.make(
        RecommendationType.INCREASE_DIVERSIFICATION,
        severity,
        "Improve Portfolio Diversification",
        rationale,
        proposed,
        actions,
    )


def _correlation(b: _Builder, policy: RecommendationPolicy) -> Optional[Recommendation]:
    count = b.analysis.high_correlation_pairs
    if count <= policy.correlation_pair_limit:
        return None
    members = sorted({
        t for pair in b.analysis.correlated_pairs
        for t in (pair["ticker_a"], pair["ticker_b"])
        if t in b.weights
    })
    caps = {t: b.weights[t] * (1 - policy.correlated_trim) for t in members}
    proposed = trim_weights(b.weights, caps)
    severity = (
        RecommendationSeverity.HIGH
        if count > 2 * policy.correlation_pair_limit
        else RecommendationSeverity.WARNING
    )
    return b.make(
        RecommendationType.REDUCE_CORRELATION,
        severity,
        "Reduce Highly Correlated Holdings",
        f"{count} position pairs have correlation above the high-correlation threshold; "
        "they tend to fall together.",
        proposed,
        [
            f"Trim correlated holdings ({', '.join(members)}) by {policy.correlated_trim * 100:.0f}%",
            "Add positions with low correlation to the existing clusters",
        ],
    )


def _volatility(b: _Builder, policy: RecommendationPolicy) -> Optional[Recommendation]:
    thresholds = b.analysis.thresholds
    vol = b.current.volatility
    if vol < thresholds.volatility_warning:
        return None
    severity = (
        RecommendationSeverity.CRITICAL
        if vol >= thresholds.volatility_critical
        else RecommendationSeverity.WARNING
    )
    metrics = b.model.metrics
    caps = {
        t: b.weights[t] * vol / metrics[t].volatility
        for t in b.weights
        if metrics[t].volatility > vol
    }
    proposed = trim_weights(b.weights, caps) if caps else dict(b.weights)
    return b.make(
        RecommendationType.REDUCE_VOLATILITY,
        severity,
        "Reduce Portfolio Volatility",
        f"Portfolio volatility of {vol:.1f}% is at or above the "
        f"{thresholds.volatility_warning:.1f}% warning threshold.",
        proposed,
        [f"Reduce {t} (volatility {metrics[t].volatility:.1f}%)" for t in sorted(caps)]
        or ["Add lower-volatility holdings"],
    )


def _drawdown(b: _Builder, policy: RecommendationPolicy) -> Optional[Recommendation]:
    thresholds = b.analysis.thresholds
    dd = b.current.max_drawdown
    if dd > thresholds.drawdown_warning:
        return None
    severity = (
        RecommendationSeverity.CRITICAL
        if dd <= thresholds.drawdown_critical
        else RecommendationSeverity.WARNING
    )
    metrics = b.model.metrics
    caps = {
        t: b.weights[t] * dd / metrics[t].max_drawdown
        for t in b.weights
        if metrics[t].max_drawdown < dd
    }
    proposed = trim_weights(b.weights, caps) if caps else dict(b.weights)
    return b.make(
        RecommendationType.REDUCE_DRAWDOWN,
        severity,
        "Reduce Drawdown Exposure",
        f"Weighted max drawdown of {dd:.1f}% is at or beyond the "
        f"{thresholds.drawdown_warning:.1f}% warning threshold.",
        proposed,
        [f"Reduce {t} (max drawdown {metrics[t].max_drawdown:.1f}%)" for t in sorted(caps)]
        or ["Add holdings with shallower historical drawdowns"],
    )


RULES = (
    _concentration,
    _risk_contributors,
    _diversification,
    _correlation,
    _volatility,
    _drawdown,
)


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def rank_recommendations(recommendations: List[Recommendation]) -> List[Recommendation]:
    """Order by severity, then by the largest projected risk-score reduction."""
    return sorted(
        recommendations,
        key=lambda r: (SEVERITY_RANK[r.severity], r.expected_impact.risk_score_change),
    )


def generate_recommendations(
    analysis: PortfolioRiskWithViolations,
    policy: Optional[RecommendationPolicy] = None,
) -> List[Recommendation]:
    policy = policy or RecommendationPolicy()
    builder = _Builder(analysis)
    found = []
    for rule in RULES:
        rec = rule(builder, policy)
        if rec is not None:
            found.append(rec)
    ranked = rank_recommendations(found)
    logger.info(
        "generate_recommendations: complete",
        portfolio_id=analysis.portfolio_id,
        count=len(ranked),
        types=[r.type.value for r in ranked],
    )
    return ranked


def summarize_recommendations(
    recommendations: List[Recommendation],
    current: PortfolioSnapshot,
) -> AnalysisSummary:
    critical = sum(1 for r in recommendations if r.severity == RecommendationSeverity.CRITICAL)
    high = sum(1 for r in recommendations if r.severity == RecommendationSeverity.HIGH)
    warnings = sum(1 for r in recommendations if r.severity == RecommendationSeverity.WARNING)

    if critical > 0:
        health = "critical"
    elif high > 0:
        health = "poor"
    elif warnings > 1:
        health = "fair"
    elif warnings > 0 or current.diversification_score < 7.0:
        health = "good"
    else:
        health = "excellent"

    findings = []
    if current.largest_position_weight > 20.0:
        findings.append(
            f"Largest position ({current.largest_position_weight:.1f}%) exceeds recommended maximum"
        )
    if current.diversification_score < 6.0:
        findings.append(
            f"Diversification score ({current.diversification_score:.1f}/10) could be improved"
        )
    if current.risk_score > 70.0:
        findings.append("Overall portfolio risk is high")
    if not findings:
        findings.append("Portfolio is well-balanced with no major concerns")

    return AnalysisSummary(
        total_recommendations=len(recommendations),
        critical_issues=critical,
        high_priority=high,
        warnings=warnings,
        overall_health=health,
        key_findings=findings,
    )


def analyze_optimizations(
    analysis: PortfolioRiskWithViolations,
    policy: Optional[RecommendationPolicy] = None,
) -> OptimizationReport:
    """Recommendations plus a health summary for one aggregated portfolio."""
    recommendations = generate_recommendations(analysis, policy)
    return OptimizationReport(
        portfolio_id=analysis.portfolio_id,
        current=analysis.snapshot,
        recommendations=recommendations,
        summary=summarize_recommendations(recommendations, analysis.snapshot),
    )

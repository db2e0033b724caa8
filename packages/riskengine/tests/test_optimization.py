"""
Unit tests for optimization.py - Optimization Recommendations

Tests cover:
- Weight trimming and capping
- Individual recommendation rules and their severities
- Ranking and health summary
"""

import dataclasses

import pytest
import numpy as np
import pandas as pd
from numpy.testing import assert_allclose

from riskengine.errors import MetricResult
from riskengine.risk.aggregator import PortfolioPosition, aggregate_portfolio
from riskengine.risk.optimization import (
    RecommendationPolicy,
    RecommendationSeverity,
    RecommendationType,
    analyze_optimizations,
    cap_weights,
    generate_recommendations,
    rank_recommendations,
    summarize_recommendations,
    trim_weights,
)


def _analysis(make_metrics, weights, correlation=None, correlated_pairs=None, **metric_kwargs):
    tickers = list(weights)
    results = {t: MetricResult.ok(make_metrics(t, **metric_kwargs)) for t in tickers}
    positions = [PortfolioPosition(t, w) for t, w in weights.items()]
    if correlation is None:
        correlation = pd.DataFrame(np.eye(len(tickers)), index=tickers, columns=tickers)
    return aggregate_portfolio(
        'p1', positions, results, correlation, correlated_pairs=correlated_pairs
    ).value


def _by_type(recs, rtype):
    matches = [r for r in recs if r.type == rtype]
    return matches[0] if matches else None


class TestTrimWeights:
    """Tests for trim_weights and cap_weights."""

    def test_excess_redistributed_pro_rata(self):
        result = trim_weights({'A': 0.5, 'B': 0.3, 'C': 0.2}, {'A': 0.15})

        assert_allclose(result['A'], 0.15)
        assert_allclose(result['B'], 0.51)
        assert_allclose(result['C'], 0.34)
        assert_allclose(sum(result.values()), 1.0)

    def test_repeats_until_no_cap_exceeded(self):
        result = cap_weights({'A': 0.5, 'B': 0.3, 'C': 0.1, 'D': 0.1}, 0.3)

        assert all(w <= 0.3 + 1e-12 for w in result.values())
        assert_allclose(sum(result.values()), 1.0)

    def test_cap_below_equal_weight_falls_back(self):
        result = cap_weights({'A': 0.6, 'B': 0.3, 'C': 0.1}, 0.15)
        assert_allclose(list(result.values()), [1 / 3] * 3)

    def test_non_positive_total_raises(self):
        with pytest.raises(ValueError, match="positive sum"):
            trim_weights({'A': 0.0}, {})


class TestRules:
    """Tests for the individual recommendation rules."""

    def test_well_diversified_portfolio_has_none(self, make_metrics):
        analysis = _analysis(make_metrics, {f'T{i}': 100.0 for i in range(10)})
        report = analyze_optimizations(analysis)

        assert report.recommendations == []
        assert report.summary.overall_health == 'excellent'
        assert report.summary.key_findings == ['Portfolio is well-balanced with no major concerns']

    def test_critical_concentration(self, make_metrics):
        weights = {'BIG': 35.0}
        weights.update({f'T{i}': 65.0 / 9 for i in range(9)})
        recs = generate_recommendations(_analysis(make_metrics, weights))

        rec = _by_type(recs, RecommendationType.REDUCE_CONCENTRATION)
        assert rec.severity == RecommendationSeverity.CRITICAL
        assert rec.id == 'reduce-concentration-1'
        assert_allclose(rec.suggested_weights['BIG'], 15.0)
        assert_allclose(sum(rec.suggested_weights.values()), 100.0)
        big = [a for a in rec.affected_positions if a.ticker == 'BIG'][0]
        assert big.action == 'sell'
        assert_allclose(big.weight_change, -20.0)
        assert recs[0] is rec

    @pytest.mark.parametrize('weight, severity', [
        (18.0, RecommendationSeverity.WARNING),
        (25.0, RecommendationSeverity.HIGH),
    ])
    def test_concentration_severity_bands(self, make_metrics, weight, severity):
        weights = {'BIG': weight}
        weights.update({f'T{i}': (100.0 - weight) / 9 for i in range(9)})
        rec = _by_type(
            generate_recommendations(_analysis(make_metrics, weights)),
            RecommendationType.REDUCE_CONCENTRATION,
        )
        assert rec.severity == severity

    def test_few_positions_need_diversification(self, make_metrics):
        recs = generate_recommendations(_analysis(make_metrics, {'A': 1.0, 'B': 1.0, 'C': 1.0}))

        rec = _by_type(recs, RecommendationType.INCREASE_DIVERSIFICATION)
        assert rec.severity == RecommendationSeverity.INFO
        assert 'only 3 positions' in rec.rationale
        assert rec.suggested_actions[0].startswith('Add 7 more positions')

    def test_risk_contributor(self, make_metrics):
        weights = {f'T{i}': 100.0 for i in range(10)}
        analysis = _analysis(make_metrics, weights)
        risky = dataclasses.replace(analysis.model.metrics['T0'], volatility=80.0)
        analysis.model.metrics['T0'] = risky
        analysis = dataclasses.replace(analysis, snapshot=analysis.model.evaluate())

        rec = _by_type(generate_recommendations(analysis), RecommendationType.REBALANCE_RISK)

        assert rec is not None
        assert 'T0' in rec.title
        assert rec.suggested_weights['T0'] < 10.0
        assert rec.expected_impact.volatility_change < 0

    def test_correlated_pairs(self, make_metrics):
        tickers = ['A', 'B', 'C', 'D', 'E', 'F', 'G', 'H', 'I', 'J']
        pairs = [
            {'ticker_a': 'A', 'ticker_b': 'B', 'correlation': 0.9},
            {'ticker_a': 'A', 'ticker_b': 'C', 'correlation': 0.85},
            {'ticker_a': 'B', 'ticker_b': 'C', 'correlation': 0.8},
            {'ticker_a': 'D', 'ticker_b': 'E', 'correlation': 0.75},
        ]
        analysis = _analysis(make_metrics, {t: 1.0 for t in tickers}, correlated_pairs=pairs)

        rec = _by_type(generate_recommendations(analysis), RecommendationType.REDUCE_CORRELATION)

        assert rec.severity == RecommendationSeverity.WARNING
        assert {a.ticker for a in rec.affected_positions if a.action == 'sell'} == set('ABCDE')
        assert_allclose(rec.suggested_weights['A'], 7.5)

    def test_high_volatility_is_critical(self, make_metrics):
        tickers = [f'T{i}' for i in range(10)]
        values = np.full((10, 10), 0.9)
        np.fill_diagonal(values, 1.0)
        corr = pd.DataFrame(values, index=tickers, columns=tickers)
        analysis = _analysis(make_metrics, {t: 1.0 for t in tickers}, correlation=corr, volatility=60.0)

        rec = _by_type(generate_recommendations(analysis), RecommendationType.REDUCE_VOLATILITY)

        assert rec.severity == RecommendationSeverity.CRITICAL
        assert rec.affected_positions == []

    def test_deep_drawdown(self, make_metrics):
        analysis = _analysis(
            make_metrics, {f'T{i}': 1.0 for i in range(10)}, max_drawdown=-25.0
        )
        rec = _by_type(generate_recommendations(analysis), RecommendationType.REDUCE_DRAWDOWN)
        assert rec.severity == RecommendationSeverity.WARNING

    def test_requires_model(self, make_metrics):
        analysis = dataclasses.replace(_analysis(make_metrics, {'A': 1.0, 'B': 1.0}), model=None)
        with pytest.raises(ValueError, match="no portfolio model"):
            generate_recommendations(analysis)

    def test_custom_policy(self, make_metrics):
        analysis = _analysis(make_metrics, {f'T{i}': 100.0 for i in range(10)})
        policy = RecommendationPolicy(diversification_target=9.5)
        recs = generate_recommendations(analysis, policy)
        assert [r.type for r in recs] == [RecommendationType.INCREASE_DIVERSIFICATION]


class TestRankingAndSummary:
    """Tests for rank_recommendations and summarize_recommendations."""

    def test_severity_first(self, make_metrics):
        recs = generate_recommendations(_analysis(make_metrics, {'A': 1.0, 'B': 1.0, 'C': 1.0}))
        ranks = [r.severity for r in rank_recommendations(list(reversed(recs)))]
        assert ranks[0] == RecommendationSeverity.CRITICAL
        assert ranks[-1] == RecommendationSeverity.INFO

    def test_summary_counts_and_findings(self, make_metrics):
        analysis = _analysis(make_metrics, {'A': 1.0, 'B': 1.0, 'C': 1.0})
        report = analyze_optimizations(analysis)
        summary = report.summary

        assert summary.total_recommendations == len(report.recommendations)
        assert summary.critical_issues == 1
        assert summary.overall_health == 'critical'
        assert any('Largest position' in f for f in summary.key_findings)
        assert report.to_dict()['summary']['overall_health'] == 'critical'

    def test_health_fair_with_two_warnings(self, make_metrics):
        analysis = _analysis(make_metrics, {f'T{i}': 1.0 for i in range(10)})
        recs = generate_recommendations(
            _analysis(make_metrics, {f'T{i}': 1.0 for i in range(10)}, max_drawdown=-25.0)
        )
        recs = recs + recs
        assert summarize_recommendations(recs, analysis.snapshot).overall_health == 'fair'

"""
Unit tests for beta_forecast.py - Rolling Beta Forecasting

Tests cover:
- Mean reversion, exponential smoothing and linear trend paths
- Ensemble blending and band clipping
- Beta regime-change detection and classification
- forecast_beta points, warnings and validation
"""

import pytest
import numpy as np
import pandas as pd
from numpy.testing import assert_allclose

from riskengine.errors import InsufficientDataError
from riskengine.risk.beta_forecast import (
    BetaForecastMethod,
    classify_beta_shift,
    detect_beta_regime_changes,
    exponential_smoothing_path,
    forecast_bands,
    forecast_beta,
    linear_regression_path,
    mean_reversion_path,
)
from riskengine.risk.metrics import RollingBetaAnalysis


def _wiggle(n, size=0.05):
    return np.where(np.arange(n) % 2 == 0, size, -size)


def _betas(values, start='2023-01-02'):
    idx = pd.bdate_range(start, periods=len(values))
    return pd.Series(np.asarray(values, dtype=float), index=idx)


def _analysis(values, window=90):
    betas = _betas(values)
    frame = pd.DataFrame({'beta': betas, 'r_squared': 0.5, 'alpha': 0.0})
    return RollingBetaAnalysis(
        ticker='AAPL',
        benchmark='SPY',
        series={window: frame},
        current_beta=float(betas.iloc[-1]),
        beta_volatility=float(betas.std(ddof=1)),
    )


class TestPaths:
    """Tests for the component forecast paths."""

    def test_mean_reversion_decays_toward_one(self):
        path = mean_reversion_path(2.0, 140)

        assert np.all(np.diff(path) < 0)
        assert np.all(path > 1.0)
        assert_allclose(path[-1], 1.0 + np.exp(-0.7))

    def test_mean_reversion_from_below(self):
        path = mean_reversion_path(0.5, 10)
        assert np.all(np.diff(path) > 0)
        assert np.all(path < 1.0)

    def test_linear_trend_extrapolated(self):
        history = 1.0 + 0.01 * np.arange(100)
        path = linear_regression_path(history, 5)
        assert_allclose(path, 2.0 + 0.01 * np.arange(5), rtol=1e-9)

    def test_smoothing_tracks_exact_trend(self):
        history = 1.0 + 0.01 * np.arange(100)
        path = exponential_smoothing_path(history, 5)
        assert_allclose(path, 2.0 + 0.01 * np.arange(5), rtol=1e-9)

    def test_single_observation_is_flat(self):
        assert_allclose(linear_regression_path(np.array([1.3]), 3), 1.3)
        assert_allclose(exponential_smoothing_path(np.array([1.3]), 3), 1.3)


class TestForecastBands:
    """Tests for forecast_bands function."""

    def test_ensemble_weights(self):
        history = np.full(100, 1.5)
        predicted, lower, upper = forecast_bands(history, 1.5, 0.0, 10)

        expected = 0.6 * mean_reversion_path(1.5, 10) + 0.4 * 1.5
        assert_allclose(predicted, expected)
        assert_allclose(lower, predicted)
        assert_allclose(upper, predicted)

    def test_bands_widen_with_horizon(self):
        history = np.full(100, 1.0)
        predicted, lower, upper = forecast_bands(
            history, 1.0, 0.1, 30, BetaForecastMethod.MEAN_REVERSION
        )

        width = upper - lower
        assert np.all(np.diff(width) > 0)
        assert_allclose(width[29], 2 * 1.96 * 0.1)

    def test_bands_clipped(self):
        history = np.full(100, 2.95)
        for method in BetaForecastMethod:
            predicted, lower, upper = forecast_bands(history, 2.95, 0.8, 60, method)

            assert np.all(lower >= 0.0)
            assert np.all(upper <= 3.0)
            assert np.all(lower <= predicted)
            assert np.all(predicted <= upper)


class TestRegimeChanges:
    """Tests for detect_beta_regime_changes and classify_beta_shift."""

    @pytest.mark.parametrize('before, after, std, expected', [
        (1.0, 1.1, 0.35, 'high_volatility'),
        (1.0, 1.6, 0.1, 'structural_break'),
        (1.5, 1.1, 0.1, 'mean_reversion'),
        (1.0, 1.2, 0.05, 'increasing_beta'),
        (1.2, 1.0, 0.05, 'decreasing_beta'),
    ])
    def test_classification(self, before, after, std, expected):
        assert classify_beta_shift(before, after, std) == expected

    def test_step_detected_as_structural_break(self):
        values = np.concatenate([np.full(60, 1.0), np.full(60, 1.8)]) + _wiggle(120)
        betas = _betas(values)

        changes = detect_beta_regime_changes(betas)

        at_step = [c for c in changes if c.date == betas.index[60].strftime('%Y-%m-%d')]
        assert len(at_step) == 1
        change = at_step[0]
        assert change.regime_type == 'structural_break'
        assert_allclose(change.beta_before, 1.0, atol=1e-9)
        assert_allclose(change.beta_after, 1.8, atol=1e-9)
        assert_allclose(change.z_score, 16.0, rtol=1e-9)

    def test_flat_series_has_no_changes(self):
        assert detect_beta_regime_changes(_betas(np.full(120, 1.2))) == []

    def test_short_series_has_no_changes(self):
        assert detect_beta_regime_changes(_betas(1.0 + _wiggle(50))) == []


class TestForecastBeta:
    """Tests for forecast_beta function."""

    def test_points_follow_last_observation(self):
        forecast = forecast_beta(_analysis(1.5 + _wiggle(120, 0.001)), days_ahead=10)

        assert forecast.method == BetaForecastMethod.ENSEMBLE
        assert forecast.confidence_level == 0.95
        assert [p.day_offset for p in forecast.points] == list(range(1, 11))
        last = pd.bdate_range('2023-01-02', periods=120)[-1]
        assert forecast.points[0].date == (last + pd.offsets.BDay(1)).strftime('%Y-%m-%d')
        assert forecast.regime_changes == []
        assert forecast.warnings == []
        for p in forecast.points:
            assert p.lower_bound <= p.predicted_beta <= p.upper_bound

    def test_single_method(self):
        forecast = forecast_beta(
            _analysis(np.full(100, 2.0)), days_ahead=5, method=BetaForecastMethod.MEAN_REVERSION
        )
        assert_allclose(
            [p.predicted_beta for p in forecast.points], mean_reversion_path(2.0, 5)
        )

    def test_limited_history_warns(self):
        forecast = forecast_beta(_analysis(np.full(75, 1.1)))
        assert any('Limited historical data (75 days)' in w for w in forecast.warnings)

    def test_recent_change_and_high_volatility_warn(self):
        values = np.concatenate([np.full(90, 1.0), np.full(30, 2.5)]) + _wiggle(120)
        forecast = forecast_beta(_analysis(values))

        assert forecast.beta_volatility > 0.5
        assert forecast.regime_changes
        assert any('High beta volatility' in w for w in forecast.warnings)
        assert any('Recent regime change' in w for w in forecast.warnings)

    def test_insufficient_history(self):
        with pytest.raises(InsufficientDataError, match="rolling beta observations"):
            forecast_beta(_analysis(np.full(50, 1.0)))

    @pytest.mark.parametrize('days_ahead', [0, 91])
    def test_days_ahead_out_of_range(self, days_ahead):
        with pytest.raises(ValueError, match="days_ahead must be between"):
            forecast_beta(_analysis(np.full(100, 1.0)), days_ahead=days_ahead)

    def test_to_dict(self):
        data = forecast_beta(_analysis(np.full(100, 1.2)), days_ahead=3).to_dict()

        assert data['method'] == 'ensemble'
        assert data['benchmark'] == 'SPY'
        assert len(data['points']) == 3
        assert data['regime_changes'] == []

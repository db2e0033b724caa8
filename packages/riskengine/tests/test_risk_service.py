"""
Integration tests for the RiskEngine service facade.

Runs the full fetch -> compute -> cache path against an in-memory price
provider loaded with the sample price fixture (last date 2024-02-23).
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import date

import pytest

from riskengine.cache import CacheKey, CacheStatus, MetricFamily
from riskengine.config import RiskThresholdSettings, Settings
from riskengine.data.providers import InMemoryPriceProvider
from riskengine.errors import ResultStatus
from riskengine.risk.aggregator import PortfolioPosition
from riskengine.risk.beta_forecast import BetaForecastMethod
from riskengine.risk.regime import RegimeState
from riskengine.services import InMemoryHoldingsStore, InMemoryThresholdStore, RiskEngine

TODAY = date(2024, 2, 23)


@pytest.fixture
def holdings():
    store = InMemoryHoldingsStore()
    store.set_positions(
        'p1',
        [
            PortfolioPosition('AAPL', 40_000.0),
            PortfolioPosition('MSFT', 30_000.0),
            PortfolioPosition('TSLA', 30_000.0),
        ],
        account_id='U1',
    )
    store.set_positions(
        'p2',
        [PortfolioPosition('AAPL', 50_000.0), PortfolioPosition('GHOST', 50_000.0)],
        account_id='U2',
    )
    return store


@pytest.fixture
def engine(sample_prices, holdings, clock):
    executor = ThreadPoolExecutor(max_workers=2)
    settings = Settings(HMM_MAX_ITER=25, WORKER_POOL_SIZE=2)
    yield RiskEngine(
        InMemoryPriceProvider(sample_prices),
        holdings,
        settings=settings,
        now_fn=clock,
        today_fn=lambda: TODAY,
        executor=executor,
    )
    executor.shutdown(wait=True)


class TestPositionRisk:
    """Tests for get_position_risk."""

    @pytest.mark.asyncio
    async def test_position_risk_computed_and_cached(self, engine):
        first = await engine.get_position_risk('AAPL')
        second = await engine.get_position_risk('AAPL')

        assert first.status == ResultStatus.OK
        assert first is second
        m = first.value
        assert m.observations == 299
        assert set(m.beta_per_benchmark) == {'SPY', 'QQQ', 'IWM'}
        assert m.var_99 <= m.var_95 <= 0

    @pytest.mark.asyncio
    async def test_unknown_ticker_is_no_data(self, engine):
        result = await engine.get_position_risk('GHOST')
        assert result.status == ResultStatus.NO_DATA
        assert 'not found' in result.reason

    @pytest.mark.asyncio
    async def test_force_refresh_recomputes(self, engine, clock):
        first = await engine.get_position_risk('AAPL')
        key = CacheKey('ticker:AAPL', MetricFamily.RISK, 365, 'SPY')
        before = engine.cache.get_entry(key).calculated_at

        second = await engine.get_position_risk('AAPL', force_refresh=True)

        assert second is not first
        assert engine.cache.get_entry(key).calculated_at > before


class TestPortfolioRisk:
    """Tests for get_portfolio_risk and correlations."""

    @pytest.mark.asyncio
    async def test_portfolio_risk(self, engine):
        result = await engine.get_portfolio_risk('p1')

        assert result.status == ResultStatus.OK
        report = result.value
        assert [p.ticker for p in report.positions] == ['AAPL', 'MSFT', 'TSLA']
        assert sum(p.weight for p in report.positions) == pytest.approx(100.0)
        assert sum(report.snapshot.risk_contributions.values()) == pytest.approx(100.0)
        assert isinstance(report.regime, RegimeState)
        assert report.to_dict()['portfolio_id'] == 'p1'

    @pytest.mark.asyncio
    async def test_missing_ticker_degrades(self, engine):
        result = await engine.get_portfolio_risk('p2')

        assert result.status == ResultStatus.DEGRADED
        assert [e['ticker'] for e in result.value.excluded] == ['GHOST']
        assert result.value.positions[0].weight == pytest.approx(100.0)

    @pytest.mark.asyncio
    async def test_empty_portfolio(self, engine):
        result = await engine.get_portfolio_risk('nobody')
        assert result.status == ResultStatus.NO_DATA

    @pytest.mark.asyncio
    async def test_custom_thresholds(self, sample_prices, holdings, clock):
        strict = RiskThresholdSettings(volatility_warning=1.0, volatility_critical=2.0)
        thresholds = InMemoryThresholdStore()
        thresholds.set_thresholds('p1', strict)
        engine = RiskEngine(
            InMemoryPriceProvider(sample_prices),
            holdings,
            thresholds=thresholds,
            settings=Settings(HMM_MAX_ITER=10),
            now_fn=clock,
            today_fn=lambda: TODAY,
        )
        try:
            report = (await engine.get_portfolio_risk('p1')).value
        finally:
            await engine.close()

        critical = [v for v in report.violations if v.metric == 'volatility' and v.ticker is None]
        assert critical and critical[0].severity.value == 'critical'

    @pytest.mark.asyncio
    async def test_correlation_matrix(self, engine):
        result = await engine.get_correlation_matrix('p1')

        assert result.status == ResultStatus.OK
        corr = result.value
        assert corr.tickers == ['AAPL', 'MSFT', 'TSLA']
        assert corr.diversification_score is not None

    @pytest.mark.asyncio
    async def test_correlation_with_missing_ticker(self, engine):
        result = await engine.get_correlation_matrix('p2')

        assert result.status == ResultStatus.DEGRADED
        assert 'GHOST' in result.reason


class TestModels:
    """Tests for volatility, rolling beta, beta forecast and regime endpoints."""

    @pytest.mark.asyncio
    async def test_volatility_forecast(self, engine):
        result = await engine.get_volatility_forecast('AAPL', horizon_days=30)

        assert result.status in (ResultStatus.OK, ResultStatus.DEGRADED)
        assert len(result.value.points) == 30

    @pytest.mark.asyncio
    @pytest.mark.parametrize('horizon', [0, 91])
    async def test_volatility_horizon_validated(self, engine, horizon):
        with pytest.raises(ValueError, match="horizon_days"):
            await engine.get_volatility_forecast('AAPL', horizon_days=horizon)

    @pytest.mark.asyncio
    async def test_rolling_beta(self, engine):
        result = await engine.get_rolling_beta('AAPL', 'SPY')

        assert result.status == ResultStatus.OK
        assert set(result.value.series) == {30, 60, 90}

    @pytest.mark.asyncio
    async def test_beta_forecast_cached_by_method(self, engine):
        ensemble = await engine.get_beta_forecast('AAPL', 'SPY', days_ahead=10)
        trend = await engine.get_beta_forecast(
            'AAPL', 'SPY', days_ahead=10, method=BetaForecastMethod.LINEAR_REGRESSION
        )

        assert ensemble.status == ResultStatus.OK
        assert len(ensemble.value.points) == 10
        assert ensemble.value.method == BetaForecastMethod.ENSEMBLE
        assert trend.value.method == BetaForecastMethod.LINEAR_REGRESSION
        assert await engine.get_beta_forecast('AAPL', 'SPY', days_ahead=10) is ensemble

        key = CacheKey('ticker:AAPL', MetricFamily.BETA_FORECAST, 10, 'SPY|ensemble')
        assert engine.cache.get_entry(key).status == CacheStatus.FRESH

    @pytest.mark.asyncio
    async def test_beta_forecast_unknown_ticker(self, engine):
        result = await engine.get_beta_forecast('GHOST')
        assert result.status == ResultStatus.NO_DATA
        assert 'GHOST' in result.reason

    @pytest.mark.asyncio
    @pytest.mark.parametrize('days_ahead', [0, 91])
    async def test_beta_forecast_days_validated(self, engine, days_ahead):
        with pytest.raises(ValueError, match="days_ahead"):
            await engine.get_beta_forecast('AAPL', days_ahead=days_ahead)

    @pytest.mark.asyncio
    async def test_market_regime(self, engine):
        result = await engine.get_market_regime()

        assert result.status == ResultStatus.OK
        probs = result.value.probabilities.as_array()
        assert probs.sum() == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_historical_regime_without_enough_history(self, engine):
        result = await engine.get_market_regime(as_of=date(2023, 6, 30))

        assert result.status == ResultStatus.DEGRADED
        assert result.value.method == 'rule_based'

    @pytest.mark.asyncio
    async def test_regime_forecast(self, engine):
        result = await engine.get_regime_forecast(10)

        assert result.status == ResultStatus.OK
        assert result.value.horizon_days == 10
        assert result.value.probabilities.as_array().sum() == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_optimization_recommendations(self, engine):
        result = await engine.get_optimization_recommendations('p1')

        assert result.has_value
        report = result.value
        assert report.summary.total_recommendations == len(report.recommendations)
        # 40% in one name is critical concentration
        assert report.summary.overall_health == 'critical'


class TestInvalidation:
    """Holdings changes and the recompute cycle."""

    @pytest.mark.asyncio
    async def test_holdings_change_marks_portfolio_stale(self, engine):
        await engine.get_portfolio_risk('p1')
        risk_key = CacheKey('p1', MetricFamily.RISK, 365, 'SPY')
        assert engine.cache.get_entry(risk_key).status == CacheStatus.FRESH

        changed = await engine.handle_holdings_change('U1')

        assert changed == 2
        assert engine.cache.get_entry(risk_key).status == CacheStatus.STALE
        position_key = CacheKey('ticker:AAPL', MetricFamily.RISK, 365, 'SPY')
        assert engine.cache.get_entry(position_key).status == CacheStatus.FRESH

    @pytest.mark.asyncio
    async def test_recompute_cycle_refreshes_stale(self, engine):
        await engine.get_portfolio_risk('p1')
        engine.publish_holdings_change('U1')

        stats = await engine.recompute_stale_entries()

        assert stats['queued'] == 2
        assert stats['recomputed'] == 2
        assert engine.cache_health()['by_status']['stale'] == 0

    @pytest.mark.asyncio
    async def test_background_start_and_close(self, engine):
        engine.start_background()
        await engine.close()
        assert engine.scheduler._task is None

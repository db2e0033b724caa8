"""Risk engine service layer.

Fetches return series from the price provider, runs the pure risk
computations (CPU-heavy fits on a thread pool) and stores every result in
the coherency cache.  All read APIs accept ``force_refresh`` to bypass the
cache; holdings changes invalidate the owning portfolio's entries.
"""

from __future__ import annotations

import asyncio
import functools
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol

import structlog

from ..cache import MARKET_SCOPE, CacheKey, MetricFamily, RiskCacheManager, ticker_scope
from ..config import RiskThresholdSettings, Settings, get_settings
from ..data.providers import PriceProvider, get_returns
from ..data.scheduler import HoldingsEventBus, RecomputeScheduler
from ..errors import (
    InsufficientDataError,
    MetricResult,
    ResultStatus,
    TickerOutcome,
    UpstreamProviderFailure,
)
from ..risk.aggregator import PortfolioPosition, PortfolioRiskWithViolations, aggregate_portfolio
from ..risk.beta_forecast import MAX_DAYS_AHEAD, BetaForecast, BetaForecastMethod, forecast_beta
from ..risk.correlation import CorrelationResult, analyze_correlations
from ..risk.garch import VolatilityForecast, fit_garch, forecast_volatility
from ..risk.metrics import PositionRiskMetrics, RollingBetaAnalysis, compute_position_risk, rolling_beta
from ..risk.optimization import OptimizationReport, RecommendationPolicy, analyze_optimizations
from ..risk.regime import (
    HmmParams,
    RegimeClassification,
    RegimeForecast,
    ensemble_regime,
    fit_hmm,
    forecast_regime,
)
from ..risk.returns import ReturnSeries

logger = structlog.get_logger(__name__)

# Calendar days of history fetched for model fits
GARCH_HISTORY_DAYS = 730
REGIME_HISTORY_DAYS = 1095
ROLLING_BETA_WINDOWS = (30, 60, 90)
BETA_FORECAST_HISTORY_DAYS = 365
BETA_FORECAST_WINDOW = 90


class HoldingsStore(Protocol):
    async def get_positions(self, portfolio_id: str) -> list[PortfolioPosition]: ...

    async def resolve_portfolio(self, account_id: str) -> str | None: ...


class ThresholdStore(Protocol):
    async def get_thresholds(self, portfolio_id: str) -> RiskThresholdSettings: ...


class InMemoryHoldingsStore:
    def __init__(self) -> None:
        self._positions: dict[str, list[PortfolioPosition]] = {}
        self._accounts: dict[str, str] = {}

    def set_positions(
        self,
        portfolio_id: str,
        positions: list[PortfolioPosition],
        account_id: str | None = None,
    ) -> None:
        self._positions[portfolio_id] = list(positions)
        if account_id is not None:
            self._accounts[account_id] = portfolio_id

    def link_account(self, account_id: str, portfolio_id: str) -> None:
        self._accounts[account_id] = portfolio_id

    async def get_positions(self, portfolio_id: str) -> list[PortfolioPosition]:
        return list(self._positions.get(portfolio_id, []))

    async def resolve_portfolio(self, account_id: str) -> str | None:
        return self._accounts.get(account_id)


class InMemoryThresholdStore:
    def __init__(self, default: RiskThresholdSettings | None = None) -> None:
        self._default = default or RiskThresholdSettings()
        self._overrides: dict[str, RiskThresholdSettings] = {}

    def set_thresholds(self, portfolio_id: str, thresholds: RiskThresholdSettings) -> None:
        self._overrides[portfolio_id] = thresholds

    async def get_thresholds(self, portfolio_id: str) -> RiskThresholdSettings:
        return self._overrides.get(portfolio_id, self._default)


@dataclass(frozen=True)
class MarketRegimeModel:
    """Cached regime classification plus the fitted HMM used to forecast it."""

    classification: RegimeClassification
    params: Optional[HmmParams]


def _calendar_span(trading_days: int) -> int:
    return int(math.ceil(trading_days * 365 / 252)) + 10


def _ticker_from_scope(scope: str) -> str:
    return scope.split(":", 1)[1]


class RiskEngine:
    """Facade over the risk computations and their cache."""

    def __init__(
        self,
        provider: PriceProvider,
        holdings: HoldingsStore,
        thresholds: ThresholdStore | None = None,
        settings: Settings | None = None,
        cache: RiskCacheManager | None = None,
        now_fn: Callable[[], float] | None = None,
        today_fn: Callable[[], date] | None = None,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        s = self.settings
        self.provider = provider
        self.holdings = holdings
        self.thresholds = thresholds or InMemoryThresholdStore()
        self.cache = cache or RiskCacheManager(
            now_fn=now_fn,
            timeout_seconds=s.COMPUTE_TIMEOUT_SECONDS,
            ttl_overrides={
                MetricFamily.RISK: s.RISK_CACHE_TTL_HOURS * 3600,
                MetricFamily.CORRELATIONS: s.CORRELATION_CACHE_TTL_HOURS * 3600,
                MetricFamily.ROLLING_BETA: s.ROLLING_BETA_CACHE_TTL_HOURS * 3600,
                MetricFamily.BETA_FORECAST: s.BETA_FORECAST_CACHE_TTL_HOURS * 3600,
                MetricFamily.VOLATILITY_FORECAST: s.VOLATILITY_CACHE_TTL_HOURS * 3600,
                MetricFamily.REGIME: s.REGIME_CACHE_TTL_HOURS * 3600,
                MetricFamily.OPTIMIZATION: s.OPTIMIZATION_CACHE_TTL_HOURS * 3600,
            },
            error_retry_seconds=s.ERROR_RETRY_TTL_HOURS * 3600,
        )
        self._today_fn = today_fn or date.today
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=s.COMPUTE_POOL_SIZE, thread_name_prefix="risk-compute"
        )
        self.events = HoldingsEventBus(self.cache, self.holdings.resolve_portfolio)
        self.scheduler = RecomputeScheduler(
            self.cache, self.recompute_key, workers=s.WORKER_POOL_SIZE, event_bus=self.events
        )
        self._event_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    async def _run_cpu(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args, **kwargs))

    async def _fetch(self, ticker: str, calendar_days: int, end: date | None = None) -> TickerOutcome:
        end = end or self._today_fn()
        start = end - timedelta(days=calendar_days)
        try:
            series = await get_returns(self.provider, ticker, start, end)
        except UpstreamProviderFailure as e:
            logger.warning("returns_fetch_failed", ticker=ticker, reason=e.reason)
            return TickerOutcome(ticker, MetricResult.no_data(e.reason))
        if len(series) == 0:
            return TickerOutcome(ticker, MetricResult.no_data("no returns in window"))
        return TickerOutcome(ticker, MetricResult.ok(series))

    async def _fetch_many(self, tickers: List[str], calendar_days: int, end: date | None = None) -> Dict[str, TickerOutcome]:
        outcomes = await asyncio.gather(*(self._fetch(t, calendar_days, end) for t in tickers))
        return {o.ticker: o for o in outcomes}

    def _window(self, window_days: int | None) -> int:
        return window_days or self.settings.DEFAULT_WINDOW_DAYS

    def _benchmark(self, benchmark: str | None) -> str:
        return (benchmark or self.settings.DEFAULT_BENCHMARK).upper()

    async def _cached(self, key: CacheKey, force_refresh: bool) -> Any:
        return await self.cache.get_or_compute(
            key, lambda: self.recompute_key(key), force_refresh=force_refresh
        )

    async def recompute_key(self, key: CacheKey) -> Any:
        """Compute the payload for any cache key; used by reads and the scheduler."""
        family = key.metric_family
        if family == MetricFamily.RISK:
            if key.portfolio_id.startswith("ticker:"):
                return await self._compute_position_risk(
                    _ticker_from_scope(key.portfolio_id), key.window_days, key.benchmark
                )
            return await self._compute_portfolio_risk(key.portfolio_id, key.window_days, key.benchmark)
        if family == MetricFamily.CORRELATIONS:
            return await self._compute_correlations(key.portfolio_id, key.window_days)
        if family == MetricFamily.VOLATILITY_FORECAST:
            return await self._compute_volatility_forecast(_ticker_from_scope(key.portfolio_id), key.window_days)
        if family == MetricFamily.REGIME:
            benchmark, _, as_of = key.benchmark.partition("@")
            return await self._compute_regime(benchmark, date.fromisoformat(as_of) if as_of else None)
        if family == MetricFamily.OPTIMIZATION:
            return await self._compute_optimization(key.portfolio_id, key.window_days, key.benchmark)
        if family == MetricFamily.ROLLING_BETA:
            return await self._compute_rolling_beta(
                _ticker_from_scope(key.portfolio_id), key.benchmark, key.window_days
            )
        if family == MetricFamily.BETA_FORECAST:
            benchmark, _, method = key.benchmark.partition("|")
            return await self._compute_beta_forecast(
                _ticker_from_scope(key.portfolio_id), benchmark, key.window_days, BetaForecastMethod(method)
            )
        raise ValueError(f"Unknown metric family: {family}")

    # ------------------------------------------------------------------
    # Position risk
    # ------------------------------------------------------------------

    async def get_position_risk(
        self,
        ticker: str,
        window_days: int | None = None,
        benchmark: str | None = None,
        force_refresh: bool = False,
    ) -> MetricResult[PositionRiskMetrics]:
        key = CacheKey(ticker_scope(ticker), MetricFamily.RISK, self._window(window_days), self._benchmark(benchmark))
        return await self._cached(key, force_refresh)

    async def _compute_position_risk(self, ticker: str, window_days: int, benchmark: str) -> MetricResult[PositionRiskMetrics]:
        span = _calendar_span(window_days)
        benchmarks = list(dict.fromkeys([benchmark] + [b.upper() for b in self.settings.BENCHMARKS]))
        outcomes = await self._fetch_many([ticker] + [b for b in benchmarks if b != ticker], span)

        own = outcomes[ticker]
        if not own.ok:
            return MetricResult.no_data(own.result.reason or "no price data")

        bench_series: Dict[str, ReturnSeries] = {}
        for b in benchmarks:
            outcome = outcomes.get(b)
            if b == ticker:
                bench_series[b] = own.result.value
            elif outcome is not None and outcome.ok:
                bench_series[b] = outcome.result.value

        return compute_position_risk(
            own.result.value,
            bench_series,
            risk_free_rate=self.settings.RISK_FREE_RATE,
            window_days=window_days,
            primary_benchmark=benchmark,
            min_observations=self.settings.MIN_OBSERVATIONS,
        )

    # ------------------------------------------------------------------
    # Portfolio risk
    # ------------------------------------------------------------------

    async def get_portfolio_risk(
        self,
        portfolio_id: str,
        window_days: int | None = None,
        benchmark: str | None = None,
        force_refresh: bool = False,
    ) -> MetricResult[PortfolioRiskWithViolations]:
        key = CacheKey(portfolio_id, MetricFamily.RISK, self._window(window_days), self._benchmark(benchmark))
        return await self._cached(key, force_refresh)

    async def _compute_portfolio_risk(
        self, portfolio_id: str, window_days: int, benchmark: str
    ) -> MetricResult[PortfolioRiskWithViolations]:
        positions = await self.holdings.get_positions(portfolio_id)
        if not positions:
            return MetricResult.no_data("Portfolio has no positions")

        tickers = sorted({p.ticker for p in positions})
        gathered = await asyncio.gather(
            *(self.get_position_risk(t, window_days, benchmark) for t in tickers),
            return_exceptions=True,
        )
        results: Dict[str, MetricResult[PositionRiskMetrics]] = {}
        for ticker, result in zip(tickers, gathered):
            if isinstance(result, BaseException):
                logger.error("position_risk_failed", ticker=ticker, error=str(result))
                results[ticker] = MetricResult.no_data(str(result))
            else:
                results[ticker] = result

        correlation = await self.get_correlation_matrix(portfolio_id, window_days)
        corr_value = correlation.value if correlation.has_value else None

        regime = await self.get_market_regime()
        regime_state = regime.value.state if regime.has_value else None

        thresholds = await self.thresholds.get_thresholds(portfolio_id)
        result = aggregate_portfolio(
            portfolio_id,
            positions,
            results,
            corr_value.matrix if corr_value is not None else None,
            thresholds=thresholds,
            regime=regime_state,
            risk_free_rate=self.settings.RISK_FREE_RATE,
            window_days=window_days,
            benchmark=benchmark,
            correlated_pairs=corr_value.high_correlation_pairs if corr_value is not None else None,
        )
        if result.has_value and regime_state is None:
            result.value.warnings.append("Market regime unavailable; thresholds not regime-adjusted")
        return result

    # ------------------------------------------------------------------
    # Correlations
    # ------------------------------------------------------------------

    async def get_correlation_matrix(
        self,
        portfolio_id: str,
        window_days: int | None = None,
        force_refresh: bool = False,
    ) -> MetricResult[CorrelationResult]:
        key = CacheKey(portfolio_id, MetricFamily.CORRELATIONS, self._window(window_days))
        return await self._cached(key, force_refresh)

    async def _compute_correlations(self, portfolio_id: str, window_days: int) -> MetricResult[CorrelationResult]:
        positions = await self.holdings.get_positions(portfolio_id)
        if not positions:
            return MetricResult.no_data("Portfolio has no positions")

        values: Dict[str, float] = {}
        for p in positions:
            values[p.ticker] = values.get(p.ticker, 0.0) + abs(p.market_value)
        outcomes = await self._fetch_many(sorted(values), _calendar_span(window_days))

        series = [o.result.value.tail(window_days) for o in outcomes.values() if o.ok]
        failed = sorted(t for t, o in outcomes.items() if not o.ok)
        if not series:
            return MetricResult.no_data("No price data for any position")

        total = sum(values[s.ticker] for s in series) or 1.0
        weights = {s.ticker: values[s.ticker] / total for s in series}
        result = await self._run_cpu(
            analyze_correlations,
            series,
            weights=weights,
            min_overlap=self.settings.CORRELATION_MIN_OVERLAP,
            high_threshold=self.settings.HIGH_CORRELATION_THRESHOLD,
        )
        if failed:
            reason = f"No price data for: {', '.join(failed)}"
            result.warnings.append(reason)
            return MetricResult.degraded(result, reason)
        return MetricResult.ok(result)

    # ------------------------------------------------------------------
    # Rolling beta
    # ------------------------------------------------------------------

    async def get_rolling_beta(
        self,
        ticker: str,
        benchmark: str | None = None,
        window_days: int | None = None,
        force_refresh: bool = False,
    ) -> MetricResult[RollingBetaAnalysis]:
        key = CacheKey(ticker_scope(ticker), MetricFamily.ROLLING_BETA, self._window(window_days), self._benchmark(benchmark))
        return await self._cached(key, force_refresh)

    async def _compute_rolling_beta(self, ticker: str, benchmark: str, window_days: int) -> MetricResult[RollingBetaAnalysis]:
        outcomes = await self._fetch_many([ticker, benchmark], _calendar_span(window_days))
        for t in (ticker, benchmark):
            if not outcomes[t].ok:
                return MetricResult.no_data(f"{t}: {outcomes[t].result.reason}")
        try:
            analysis = rolling_beta(
                outcomes[ticker].result.value.tail(window_days),
                outcomes[benchmark].result.value.tail(window_days),
                windows=ROLLING_BETA_WINDOWS,
            )
        except InsufficientDataError as e:
            return MetricResult.no_data(str(e))
        return MetricResult.ok(analysis)

    # ------------------------------------------------------------------
    # Beta forecast
    # ------------------------------------------------------------------

    async def get_beta_forecast(
        self,
        ticker: str,
        benchmark: str | None = None,
        days_ahead: int = 30,
        method: BetaForecastMethod = BetaForecastMethod.ENSEMBLE,
        force_refresh: bool = False,
    ) -> MetricResult[BetaForecast]:
        """Forecast the 90-day rolling beta of *ticker* against *benchmark*.

        Raises:
            ValueError: If days_ahead is outside 1..MAX_DAYS_AHEAD
        """
        if not 1 <= days_ahead <= MAX_DAYS_AHEAD:
            raise ValueError(f"days_ahead must be between 1 and {MAX_DAYS_AHEAD}, got {days_ahead}")
        method = BetaForecastMethod(method)
        key = CacheKey(
            ticker_scope(ticker),
            MetricFamily.BETA_FORECAST,
            days_ahead,
            f"{self._benchmark(benchmark)}|{method.value}",
        )
        return await self._cached(key, force_refresh)

    async def _compute_beta_forecast(
        self, ticker: str, benchmark: str, days_ahead: int, method: BetaForecastMethod
    ) -> MetricResult[BetaForecast]:
        outcomes = await self._fetch_many([ticker, benchmark], BETA_FORECAST_HISTORY_DAYS)
        for t in (ticker, benchmark):
            if not outcomes[t].ok:
                return MetricResult.no_data(f"{t}: {outcomes[t].result.reason}")
        try:
            analysis = rolling_beta(
                outcomes[ticker].result.value,
                outcomes[benchmark].result.value,
                windows=(BETA_FORECAST_WINDOW,),
            )
            forecast = forecast_beta(analysis, days_ahead, method)
        except InsufficientDataError as e:
            return MetricResult.no_data(str(e))
        return MetricResult.ok(forecast, warnings=list(forecast.warnings))

    # ------------------------------------------------------------------
    # Volatility forecast
    # ------------------------------------------------------------------

    async def get_volatility_forecast(
        self,
        ticker: str,
        horizon_days: int = 30,
        force_refresh: bool = False,
    ) -> MetricResult[VolatilityForecast]:
        """GARCH(1,1) volatility forecast.

        Raises:
            ValueError: If horizon_days is outside 1..GARCH_MAX_HORIZON
        """
        max_horizon = self.settings.GARCH_MAX_HORIZON
        if not 1 <= horizon_days <= max_horizon:
            raise ValueError(f"horizon_days must be between 1 and {max_horizon}, got {horizon_days}")
        key = CacheKey(ticker_scope(ticker), MetricFamily.VOLATILITY_FORECAST, horizon_days)
        return await self._cached(key, force_refresh)

    async def _compute_volatility_forecast(self, ticker: str, horizon_days: int) -> MetricResult[VolatilityForecast]:
        outcome = await self._fetch(ticker, GARCH_HISTORY_DAYS)
        if not outcome.ok:
            return MetricResult.no_data(outcome.result.reason or "no price data")
        try:
            fit = await self._run_cpu(
                fit_garch,
                outcome.result.value.values,
                ticker=ticker,
                min_observations=self.settings.GARCH_MIN_OBSERVATIONS,
                ewma_lambda=self.settings.EWMA_LAMBDA,
            )
        except InsufficientDataError as e:
            return MetricResult.no_data(str(e))

        forecast = forecast_volatility(fit, horizon_days, max_horizon=self.settings.GARCH_MAX_HORIZON)
        if fit.method != "garch":
            return MetricResult.degraded(
                forecast, "GARCH fit rejected; EWMA variance used", warnings=list(forecast.warnings)
            )
        return MetricResult.ok(forecast, warnings=list(forecast.warnings))

    # ------------------------------------------------------------------
    # Market regime
    # ------------------------------------------------------------------

    def _regime_key(self, as_of: date | None) -> CacheKey:
        benchmark = self.settings.REGIME_BENCHMARK.upper()
        if as_of is not None:
            benchmark = f"{benchmark}@{as_of.isoformat()}"
        return CacheKey(MARKET_SCOPE, MetricFamily.REGIME, 0, benchmark)

    async def _regime_model(self, as_of: date | None, force_refresh: bool) -> MetricResult[MarketRegimeModel]:
        return await self._cached(self._regime_key(as_of), force_refresh)

    async def _compute_regime(self, benchmark: str, as_of: date | None) -> MetricResult[MarketRegimeModel]:
        outcome = await self._fetch(benchmark, REGIME_HISTORY_DAYS, end=as_of)
        if not outcome.ok:
            return MetricResult.no_data(outcome.result.reason or "no benchmark data")
        returns = outcome.result.value.values
        s = self.settings
        if len(returns) < s.REGIME_LOOKBACK_DAYS:
            return MetricResult.no_data(
                f"Need {s.REGIME_LOOKBACK_DAYS} benchmark returns, have {len(returns)}"
            )

        params = None
        warnings = []
        try:
            params = await self._run_cpu(
                fit_hmm,
                returns,
                max_iter=s.HMM_MAX_ITER,
                tol=s.HMM_TOL,
                seed=s.HMM_SEED,
                min_observations=s.HMM_MIN_OBSERVATIONS,
            )
        except InsufficientDataError as e:
            warnings.append(f"HMM not fitted ({e}); rule-based classification only")

        classification = ensemble_regime(returns, params, lookback=s.REGIME_LOOKBACK_DAYS)
        model = MarketRegimeModel(classification, params)
        logger.info(
            "market_regime_classified",
            benchmark=benchmark,
            state=classification.state.value,
            confidence=classification.confidence,
            method=classification.method,
        )
        if params is None:
            return MetricResult.degraded(model, warnings[0], warnings=warnings)
        return MetricResult.ok(model)

    async def get_market_regime(
        self,
        as_of: date | None = None,
        force_refresh: bool = False,
    ) -> MetricResult[RegimeClassification]:
        result = await self._regime_model(as_of, force_refresh)
        if not result.has_value:
            return MetricResult.no_data(result.reason or "no regime data")
        return MetricResult(result.status, result.value.classification, result.reason, list(result.warnings))

    async def get_regime_forecast(
        self,
        horizon_days: int,
        force_refresh: bool = False,
    ) -> MetricResult[RegimeForecast]:
        """Regime probabilities *horizon_days* ahead from the current regime.

        Raises:
            ValueError: If horizon_days is outside 1..30
        """
        result = await self._regime_model(None, force_refresh)
        if not result.has_value:
            return MetricResult.no_data(result.reason or "no regime data")
        model = result.value
        transition = model.params.transition if model.params is not None else None
        forecast = forecast_regime(model.classification.probabilities, horizon_days, transition)
        if transition is None:
            return MetricResult.degraded(forecast, "Default transition matrix used")
        return MetricResult.ok(forecast)

    # ------------------------------------------------------------------
    # Optimization
    # ------------------------------------------------------------------

    async def get_optimization_recommendations(
        self,
        portfolio_id: str,
        window_days: int | None = None,
        benchmark: str | None = None,
        force_refresh: bool = False,
    ) -> MetricResult[OptimizationReport]:
        key = CacheKey(portfolio_id, MetricFamily.OPTIMIZATION, self._window(window_days), self._benchmark(benchmark))
        return await self._cached(key, force_refresh)

    async def _compute_optimization(self, portfolio_id: str, window_days: int, benchmark: str) -> MetricResult[OptimizationReport]:
        risk = await self.get_portfolio_risk(portfolio_id, window_days, benchmark)
        if not risk.has_value:
            return MetricResult.no_data(risk.reason or "no portfolio risk")
        policy = RecommendationPolicy(correlation_pair_limit=self.settings.HIGH_CORRELATION_PAIR_LIMIT)
        report = analyze_optimizations(risk.value, policy)
        if risk.status == ResultStatus.DEGRADED:
            return MetricResult.degraded(report, risk.reason or "portfolio risk degraded")
        return MetricResult.ok(report)

    # ------------------------------------------------------------------
    # Invalidation and background work
    # ------------------------------------------------------------------

    async def handle_holdings_change(self, account_id: str) -> int:
        """Invalidate every cached result of the portfolio owning *account_id*."""
        return await self.events.handle_holdings_change(account_id)

    def publish_holdings_change(self, account_id: str) -> None:
        self.events.publish_holdings_change(account_id)

    async def recompute_stale_entries(self) -> dict[str, Any]:
        return await self.scheduler.recompute_stale_entries()

    def cache_health(self) -> dict[str, Any]:
        return self.cache.health()

    def start_background(self) -> None:
        self.scheduler.start(self.settings.RECOMPUTE_INTERVAL_SECONDS)
        if self._event_task is None or self._event_task.done():
            self._event_task = asyncio.create_task(self.events.run_forever())

    async def close(self) -> None:
        await self.scheduler.stop()
        if self._event_task is not None:
            self._event_task.cancel()
            try:
                await self._event_task
            except asyncio.CancelledError:
                pass
            self._event_task = None
        if self._owns_executor:
            self._executor.shutdown(wait=False)

"""
Shared test fixtures for the risk engine test suite.

Provides consistent test data across all test modules:
- Sample price DataFrames (positions and benchmarks)
- Sample returns with correlation structure, as DataFrame and ReturnSeries
- A simulated GARCH(1,1) return path
- A factory for PositionRiskMetrics and a controllable clock
"""

import pytest
import numpy as np
import pandas as pd

from riskengine.risk.metrics import PositionRiskMetrics, risk_level, risk_score
from riskengine.risk.returns import ReturnSeries


SYMBOLS = ['AAPL', 'GOOGL', 'MSFT', 'TSLA', 'AMZN']
BENCHMARKS = ['SPY', 'QQQ', 'IWM']


@pytest.fixture
def sample_symbols():
    """Standard list of symbols used across tests."""
    return list(SYMBOLS)


@pytest.fixture
def sample_prices():
    """Price frames for 5 symbols and 3 benchmarks over 300 trading days.

    Every symbol loads on a common market factor (the SPY returns) so betas
    and correlations are meaningful.

    Returns:
        Dict[str, pd.DataFrame]: symbol -> DataFrame with date, close, adj_close
    """
    np.random.seed(42)
    dates = pd.bdate_range('2023-01-02', periods=300)
    market = np.random.normal(0.0004, 0.01, len(dates))
    prices = {}

    loadings = {'SPY': 1.0, 'QQQ': 1.2, 'IWM': 1.1}
    for i, sym in enumerate(SYMBOLS):
        loadings[sym] = 0.6 + 0.2 * i

    for i, (sym, beta) in enumerate(loadings.items()):
        noise = 0.0 if sym == 'SPY' else np.random.normal(0, 0.012, len(dates))
        returns = beta * market + noise
        price_series = (100 + i * 20) * np.exp(np.cumsum(returns))
        prices[sym] = pd.DataFrame({
            'date': dates,
            'close': price_series,
            'adj_close': price_series,
        })

    return prices


@pytest.fixture
def sample_returns():
    """Returns matrix (252 x 5) with DatetimeIndex.

    GOOGL and MSFT are correlated with AAPL; TSLA and AMZN are independent.
    """
    np.random.seed(42)
    dates = pd.bdate_range('2023-01-02', periods=252)
    data = np.random.normal(0, 0.02, (len(dates), len(SYMBOLS)))

    data[:, 1] = 0.7 * data[:, 0] + 0.3 * data[:, 1]
    data[:, 2] = 0.5 * data[:, 0] + 0.5 * data[:, 2]

    return pd.DataFrame(data, index=dates, columns=SYMBOLS)


@pytest.fixture
def sample_series(sample_returns):
    """Dict[str, ReturnSeries] built from sample_returns."""
    return {sym: ReturnSeries(sym, sample_returns[sym]) for sym in sample_returns.columns}


@pytest.fixture
def benchmark_series():
    """SPY-like daily returns on the same dates as sample_returns."""
    np.random.seed(7)
    dates = pd.bdate_range('2023-01-02', periods=252)
    return ReturnSeries('SPY', pd.Series(np.random.normal(0.0004, 0.01, len(dates)), index=dates))


@pytest.fixture
def garch_returns():
    """1000 returns simulated from GARCH(1,1) with omega=2e-6, alpha=0.08, beta=0.90."""
    rng = np.random.default_rng(42)
    omega, alpha, beta = 2e-6, 0.08, 0.90
    n = 1000
    var = omega / (1 - alpha - beta)
    out = np.empty(n)
    for t in range(n):
        out[t] = np.sqrt(var) * rng.standard_normal()
        var = omega + alpha * out[t] ** 2 + beta * var
    return out


@pytest.fixture
def regime_returns():
    """600 returns alternating calm-bull, volatile and calm-bear stretches."""
    rng = np.random.default_rng(42)
    blocks = [
        rng.normal(0.0012, 0.006, 150),
        rng.normal(-0.0005, 0.03, 100),
        rng.normal(0.0001, 0.009, 150),
        rng.normal(-0.0015, 0.012, 100),
        rng.normal(0.0012, 0.006, 100),
    ]
    return np.concatenate(blocks)


@pytest.fixture
def make_metrics():
    """Factory for PositionRiskMetrics with sensible defaults."""

    def _make(ticker, volatility=20.0, beta=1.0, max_drawdown=-10.0,
              annualized_return=8.0, var_95=-2.0):
        score = risk_score(volatility, max_drawdown, beta, var_95)
        return PositionRiskMetrics(
            ticker=ticker,
            benchmark='SPY',
            window_days=252,
            observations=252,
            volatility=volatility,
            annualized_return=annualized_return,
            max_drawdown=max_drawdown,
            beta=beta,
            beta_per_benchmark={'SPY': beta},
            sharpe_ratio=(annualized_return - 4.5) / volatility,
            sortino_ratio=None,
            downside_deviation=None,
            var_95=var_95,
            var_99=var_95 * 1.4,
            cvar_95=var_95 * 1.3,
            cvar_99=var_95 * 1.6,
            risk_decomposition=None,
            risk_score=score,
            risk_level=risk_level(score),
        )

    return _make


class Clock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, start=1_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return Clock()

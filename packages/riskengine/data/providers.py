"""Price-series providers.

Providers return daily frames with columns [date, close, adj_close] and
raise UpstreamProviderFailure when a ticker cannot be served.  Network
providers run their blocking client in a worker thread.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import date, timedelta

import pandas as pd
import structlog
import yfinance as yf

from ..errors import UpstreamProviderFailure
from ..risk.returns import ReturnSeries, returns_from_prices
from .failure_cache import FailureCache, FailureType

logger = structlog.get_logger(__name__)

PRICE_COLUMNS = ["date", "close", "adj_close"]


def classify_failure(reason: str) -> FailureType:
    """Map a provider error message onto a failure type."""
    text = reason.lower()
    if "rate limit" in text or "too many requests" in text or "429" in text:
        return FailureType.RATE_LIMITED
    if "not found" in text or "no data" in text or "delisted" in text or "404" in text:
        return FailureType.NOT_FOUND
    return FailureType.API_ERROR


class PriceProvider(ABC):
    """Source of daily close / adjusted close history."""

    name: str = "provider"

    @abstractmethod
    async def get_prices(self, ticker: str, start: date, end: date) -> pd.DataFrame:
        """Return prices for *ticker* with start <= date <= end.

        Raises:
            UpstreamProviderFailure: Ticker unknown, no rows, or transport error
        """
        ...


class InMemoryPriceProvider(PriceProvider):
    """Serves pre-loaded frames; used for tests and offline runs."""

    name = "memory"

    def __init__(self, prices: dict[str, pd.DataFrame] | None = None) -> None:
        self._prices: dict[str, pd.DataFrame] = {}
        for ticker, df in (prices or {}).items():
            self.set_prices(ticker, df)

    def set_prices(self, ticker: str, df: pd.DataFrame) -> None:
        df = df.copy()
        df["date"] = pd.to_datetime(df["date"])
        if "adj_close" not in df.columns:
            df["adj_close"] = df["close"]
        self._prices[ticker.upper()] = df[PRICE_COLUMNS].sort_values("date")

    async def get_prices(self, ticker: str, start: date, end: date) -> pd.DataFrame:
        df = self._prices.get(ticker.upper())
        if df is None:
            raise UpstreamProviderFailure(ticker, "ticker not found")
        mask = (df["date"] >= pd.Timestamp(start)) & (df["date"] <= pd.Timestamp(end))
        window = df.loc[mask].reset_index(drop=True)
        if window.empty:
            raise UpstreamProviderFailure(ticker, "no data in requested range")
        return window


def _fetch_yahoo_data_sync(symbol: str, start_date: date, end_date: date) -> pd.DataFrame | None:
    """Synchronous Yahoo Finance fetch (runs in a worker thread).

    Returns a frame with columns [date, close, adj_close] or None when
    Yahoo returns nothing.
    """
    ticker = yf.Ticker(symbol)
    # yfinance's end bound is exclusive
    df = ticker.history(start=start_date, end=end_date + timedelta(days=1), auto_adjust=False)
    if df.empty:
        return None

    df = df.reset_index()
    col_map = {"Date": "date", "Close": "close"}
    # Handle different yfinance versions for adjusted close
    if "Adj Close" in df.columns:
        col_map["Adj Close"] = "adj_close"
    elif "Adjusted Close" in df.columns:
        col_map["Adjusted Close"] = "adj_close"
    df = df.rename(columns=col_map)

    dates = pd.to_datetime(df["date"])
    if dates.dt.tz is not None:
        dates = dates.dt.tz_localize(None)
    df["date"] = dates.dt.normalize()
    if "adj_close" not in df.columns:
        df["adj_close"] = df["close"]
    return df[PRICE_COLUMNS]


class YahooPriceProvider(PriceProvider):
    name = "yahoo"

    async def get_prices(self, ticker: str, start: date, end: date) -> pd.DataFrame:
        try:
            df = await asyncio.to_thread(_fetch_yahoo_data_sync, ticker, start, end)
        except Exception as e:
            logger.error("yahoo_symbol_error", symbol=ticker, error=str(e), exc_info=True)
            raise UpstreamProviderFailure(ticker, str(e)) from e

        if df is None or df.empty:
            logger.warning("yahoo_no_data", symbol=ticker)
            raise UpstreamProviderFailure(ticker, "no data returned")

        logger.debug(
            "yahoo_fetch_success",
            symbol=ticker,
            rows=len(df),
            start=df["date"].min(),
            end=df["date"].max(),
        )
        return df


class FallbackPriceProvider(PriceProvider):
    """Tries *primary*, then *fallback*, remembering tickers that failed both."""

    name = "fallback"

    def __init__(
        self,
        primary: PriceProvider,
        fallback: PriceProvider | None = None,
        failure_cache: FailureCache | None = None,
    ) -> None:
        self.providers = [p for p in (primary, fallback) if p is not None]
        self.failure_cache = failure_cache if failure_cache is not None else FailureCache()

    async def get_prices(self, ticker: str, start: date, end: date) -> pd.DataFrame:
        cached = self.failure_cache.get(ticker)
        if cached is not None:
            logger.debug(
                "price_fetch_skipped_recent_failure",
                ticker=ticker,
                failure_type=cached.failure_type.value,
            )
            raise UpstreamProviderFailure(ticker, f"recent failure ({cached.failure_type.value})")

        reasons = []
        for provider in self.providers:
            try:
                df = await provider.get_prices(ticker, start, end)
            except UpstreamProviderFailure as e:
                reasons.append(f"{provider.name}: {e.reason}")
                logger.info("price_provider_failed", ticker=ticker, provider=provider.name, reason=e.reason)
                continue
            self.failure_cache.clear(ticker)
            return df

        reason = "; ".join(reasons) or "no providers configured"
        self.failure_cache.record_failure(ticker, classify_failure(reason), reason)
        raise UpstreamProviderFailure(ticker, reason)


async def get_returns(
    provider: PriceProvider,
    ticker: str,
    start: date,
    end: date,
    kind: str = "simple",
) -> ReturnSeries:
    """Fetch prices and convert them to a ReturnSeries."""
    prices = await provider.get_prices(ticker, start, end)
    return returns_from_prices(ticker, prices, kind=kind)

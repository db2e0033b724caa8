"""
Return Series Builder

Pure functions for turning raw daily price history into aligned return series.
Missing trading days are handled by intersecting available dates; prices are
never forward-filled because that fabricates zero returns.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple

import numpy as np
import pandas as pd
import structlog

logger = structlog.get_logger(__name__)

RETURN_KINDS = ("simple", "log")


@dataclass(frozen=True)
class ReturnSeries:
    """Daily returns for one ticker, indexed by strictly increasing dates."""

    ticker: str
    returns: pd.Series
    kind: str = "simple"

    def __post_init__(self):
        if self.kind not in RETURN_KINDS:
            raise ValueError(f"Unknown return kind '{self.kind}'. Must be one of {RETURN_KINDS}")
        index = self.returns.index
        if index.has_duplicates:
            raise ValueError(f"ReturnSeries for {self.ticker} has duplicate dates")
        if not index.is_monotonic_increasing:
            raise ValueError(f"ReturnSeries for {self.ticker} dates are not strictly increasing")

    def __len__(self) -> int:
        return len(self.returns)

    @property
    def dates(self) -> pd.Index:
        return self.returns.index

    @property
    def values(self) -> np.ndarray:
        return self.returns.to_numpy(dtype=float)

    def tail(self, n: int) -> "ReturnSeries":
        return ReturnSeries(self.ticker, self.returns.iloc[-n:], self.kind)

    def wealth_index(self) -> pd.Series:
        """Cumulative growth of 1 unit invested at the start of the series."""
        if self.kind == "log":
            return np.exp(self.returns.cumsum())
        return (1.0 + self.returns).cumprod()


def _price_series(df: pd.DataFrame, price_col: str) -> pd.Series:
    df = df.copy()
    if not pd.api.types.is_datetime64_any_dtype(df["date"]):
        df["date"] = pd.to_datetime(df["date"])
    df = df.drop_duplicates(subset="date", keep="last").set_index("date").sort_index()
    return df[price_col].dropna()


def returns_from_prices(
    ticker: str,
    prices: pd.DataFrame,
    kind: str = "simple",
    price_col: str = "adj_close",
) -> ReturnSeries:
    """Build a ReturnSeries from a provider frame with columns date, close, adj_close.

    Falls back to ``close`` when *price_col* is missing.  Non-positive prices
    are dropped before differencing.

    Raises:
        ValueError: If the frame has no date column or no usable price column
    """
    if prices is None or prices.empty:
        return ReturnSeries(ticker, pd.Series(dtype=float), kind)

    if "date" not in prices.columns:
        raise ValueError(f"Price frame for {ticker} is missing a 'date' column")
    if price_col not in prices.columns:
        if "close" not in prices.columns:
            raise ValueError(f"Price frame for {ticker} has no '{price_col}' or 'close' column")
        price_col = "close"

    p = _price_series(prices, price_col)
    bad = p <= 0
    if bad.any():
        logger.warning(
            "returns_from_prices: dropping non-positive prices",
            ticker=ticker,
            count=int(bad.sum()),
        )
        p = p[~bad]

    if kind == "log":
        r = np.log(p / p.shift(1)).iloc[1:]
    else:
        r = p.pct_change().iloc[1:]

    r = r.replace([np.inf, -np.inf], np.nan).dropna()
    return ReturnSeries(ticker, r.astype(float), kind)


def build_price_matrix(
    prices: Dict[str, pd.DataFrame],
    price_col: str = "adj_close",
    min_history: int = 60,
) -> pd.DataFrame:
    """Build aligned price matrix from dict of symbol -> DataFrame.

    Each DataFrame has columns: date, close, adj_close.  Symbols with fewer
    than *min_history* prices are dropped; the remainder are aligned on the
    intersection of their trading days.

    Returns:
        DataFrame with DatetimeIndex and one column per surviving symbol
    """
    if not prices:
        logger.warning("build_price_matrix: empty prices dict provided")
        return pd.DataFrame()

    series_dict = {}
    dropped: List[Tuple[str, str]] = []

    for symbol, df in prices.items():
        if df is None or df.empty:
            dropped.append((symbol, "empty_dataframe"))
            continue
        if price_col not in df.columns or "date" not in df.columns:
            dropped.append((symbol, "missing_columns"))
            continue

        series = _price_series(df, price_col)
        if len(series) < min_history:
            dropped.append((symbol, f"insufficient_history_{len(series)}_lt_{min_history}"))
            continue
        series_dict[symbol] = series

    if dropped:
        logger.info(
            "build_price_matrix: dropped symbols",
            dropped_count=len(dropped),
            dropped=dropped[:10],
        )

    if not series_dict:
        logger.warning("build_price_matrix: no valid symbols remain after filtering")
        return pd.DataFrame()

    price_matrix = pd.DataFrame(series_dict).dropna()

    short = [c for c in price_matrix.columns if len(price_matrix) < min_history]
    if short:
        logger.info("build_price_matrix: dropping symbols after alignment", symbols=short)
        price_matrix = price_matrix.drop(columns=short)

    logger.info(
        "build_price_matrix: matrix built",
        num_symbols=len(price_matrix.columns),
        num_dates=len(price_matrix),
    )
    return price_matrix


def compute_log_returns(price_matrix: pd.DataFrame) -> pd.DataFrame:
    """Compute log returns ln(P_t / P_{t-1}) from a price matrix.

    Raises:
        ValueError: If zero or negative prices are present
    """
    if price_matrix.empty:
        logger.warning("compute_log_returns: empty price matrix provided")
        return pd.DataFrame()

    if (price_matrix <= 0).any().any():
        counts = (price_matrix <= 0).sum()
        logger.error(
            "compute_log_returns: zero or negative prices detected",
            affected_symbols=counts[counts > 0].to_dict(),
        )
        raise ValueError("Zero or negative prices detected in price matrix")

    return np.log(price_matrix / price_matrix.shift(1)).iloc[1:]


def compute_simple_returns(price_matrix: pd.DataFrame) -> pd.DataFrame:
    """Compute simple returns (P_t - P_{t-1}) / P_{t-1} from a price matrix."""
    if price_matrix.empty:
        logger.warning("compute_simple_returns: empty price matrix provided")
        return pd.DataFrame()

    if (price_matrix == 0).any().any():
        raise ValueError("Zero prices detected in price matrix")

    return price_matrix.pct_change().iloc[1:]


def trim_to_window(returns, window: int):
    """Keep the last *window* observations of a Series, DataFrame or ReturnSeries.

    Shorter inputs are returned whole; callers decide whether the remaining
    length is enough for their statistic.
    """
    if window <= 0:
        raise ValueError(f"window must be positive, got {window}")
    if isinstance(returns, ReturnSeries):
        return returns.tail(window)
    return returns.iloc[-window:]


def align_series(a: ReturnSeries, b: ReturnSeries) -> Tuple[np.ndarray, np.ndarray]:
    """Return the values of *a* and *b* on their common dates."""
    joined = pd.concat([a.returns, b.returns], axis=1, join="inner").dropna()
    return joined.iloc[:, 0].to_numpy(dtype=float), joined.iloc[:, 1].to_numpy(dtype=float)


def align_many(series: Iterable[ReturnSeries]) -> pd.DataFrame:
    """Intersect several ReturnSeries into one DataFrame (columns = tickers)."""
    frames = {s.ticker: s.returns for s in series}
    if not frames:
        return pd.DataFrame()
    return pd.concat(frames, axis=1, join="inner").dropna()


def returns_frame(series: Iterable[ReturnSeries]) -> pd.DataFrame:
    """Outer-join several ReturnSeries, keeping NaN where a ticker has no data."""
    frames = {s.ticker: s.returns for s in series}
    if not frames:
        return pd.DataFrame()
    return pd.concat(frames, axis=1, join="outer").sort_index()

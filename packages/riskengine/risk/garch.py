"""
GARCH Volatility Forecasting Module

GARCH(1,1) fitted by Gaussian quasi-maximum likelihood:

    sigma2_t = omega + alpha * eps2_{t-1} + beta * sigma2_{t-1}

Multi-step forecasts iterate the recursion with eps2 replaced by its
expectation, so the path converges geometrically (rate alpha + beta) to the
long-run variance omega / (1 - alpha - beta).  Fits that fail to converge or
come back non-stationary fall back to an EWMA variance with a warning.

All variances here are daily, in decimal return units.  Reported volatilities
are annualized percentages.
"""

from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

import numpy as np
import structlog
from arch import arch_model
from scipy import stats

from ..errors import InsufficientDataError, NonStationaryModelWarning
from .covariance import ewma_variance
from .returns import ReturnSeries

logger = structlog.get_logger(__name__)

TRADING_DAYS = 252
MIN_OBSERVATIONS = 100
RECOMMENDED_OBSERVATIONS = 252
MAX_HORIZON = 90

Z_80 = float(stats.norm.ppf(0.90))
Z_95 = float(stats.norm.ppf(0.975))

HIGH_PERSISTENCE = 0.95
HIGH_ALPHA = 0.15
ELEVATED_VOL_RATIO = 1.5

# Returns are scaled to percent for estimation; omega scales with the square.
_SCALE = 100.0
_VARIANCE_FLOOR = 1e-12


@dataclass(frozen=True)
class GarchParams:
    omega: float
    alpha: float
    beta: float

    @property
    def persistence(self) -> float:
        return self.alpha + self.beta

    @property
    def is_stationary(self) -> bool:
        return self.omega > 0 and self.alpha >= 0 and self.beta >= 0 and self.persistence < 1

    @property
    def long_run_variance(self) -> Optional[float]:
        if self.persistence >= 1 or self.omega <= 0:
            return None
        return self.omega / (1 - self.persistence)

    def to_dict(self) -> Dict:
        return {
            **asdict(self),
            "persistence": self.persistence,
            "long_run_variance": self.long_run_variance,
        }


@dataclass(frozen=True)
class GarchFit:
    """Fitted variance model for one return series.

    ``current_variance`` is the conditional variance for the next trading
    day, i.e. the starting point of any forecast.
    """

    ticker: str
    params: GarchParams
    method: str
    current_variance: float
    log_likelihood: Optional[float]
    converged: bool
    observations: int
    warnings: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ForecastPoint:
    day_offset: int
    variance: float
    predicted_volatility: float
    lower_80: float
    upper_80: float
    lower_95: float
    upper_95: float


@dataclass(frozen=True)
class VolatilityForecast:
    ticker: str
    horizon_days: int
    method: str
    params: GarchParams
    current_volatility: float
    long_run_volatility: Optional[float]
    points: List[ForecastPoint]
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "ticker": self.ticker,
            "horizon_days": self.horizon_days,
            "method": self.method,
            "params": self.params.to_dict(),
            "current_volatility": self.current_volatility,
            "long_run_volatility": self.long_run_volatility,
            "points": [asdict(p) for p in self.points],
            "warnings": list(self.warnings),
        }


def annualize_variance(variance: float) -> float:
    """Daily variance -> annualized volatility in %."""
    return float(np.sqrt(max(variance, 0.0) * TRADING_DAYS) * 100)


# ---------------------------------------------------------------------------
# Fitting
# ---------------------------------------------------------------------------


def _ewma_fit(
    ticker: str,
    eps: np.ndarray,
    lambd: float,
    warnings: List[str],
) -> GarchFit:
    path = ewma_variance(eps, lambd=lambd)
    params = GarchParams(omega=0.0, alpha=1 - lambd, beta=lambd)
    logger.warning(
        "garch_fallback_ewma",
        ticker=ticker,
        reason=warnings[-1] if warnings else None,
        category=NonStationaryModelWarning.__name__,
    )
    return GarchFit(
        ticker=ticker,
        params=params,
        method="ewma",
        current_variance=float(path[-1]),
        log_likelihood=None,
        converged=False,
        observations=len(eps),
        warnings=warnings,
    )


def fit_garch(
    returns,
    ticker: Optional[str] = None,
    min_observations: int = MIN_OBSERVATIONS,
    ewma_lambda: float = 0.94,
) -> GarchFit:
    """Fit GARCH(1,1) to a daily return series with ``arch``.

    The model is a zero-mean GARCH(1,1) with normal innovations, estimated on
    demeaned returns scaled to percent.

    Args:
        returns: ReturnSeries or 1-D array of daily returns (decimal)
        ticker: Label for logging; taken from the ReturnSeries when omitted
        min_observations: Minimum sample size accepted
        ewma_lambda: Decay used if the fit is rejected

    Returns:
        GarchFit with method "garch", or "ewma" plus a non-stationary warning

    Raises:
        InsufficientDataError: If fewer than *min_observations* returns
    """
    if isinstance(returns, ReturnSeries):
        ticker = ticker or returns.ticker
        r = returns.values
    else:
        r = np.asarray(returns, dtype=float).flatten()
        r = r[~np.isnan(r)]
    ticker = ticker or "unknown"

    if len(r) < min_observations:
        raise InsufficientDataError(min_observations, len(r), "returns for GARCH")

    warnings: List[str] = []
    if len(r) < RECOMMENDED_OBSERVATIONS:
        warnings.append(
            f"Only {len(r)} observations; {RECOMMENDED_OBSERVATIONS} recommended for a stable fit"
        )

    eps = r - r.mean()
    scaled = eps * _SCALE
    if float(np.var(scaled, ddof=1)) <= 0:
        warnings.append("Zero variance return series; GARCH not identifiable")
        return _ewma_fit(ticker, eps, ewma_lambda, warnings)

    try:
        model = arch_model(scaled, mean="Zero", vol="GARCH", p=1, q=1, dist="normal", rescale=False)
        result = model.fit(disp="off", show_warning=False, update_freq=0, options={"maxiter": 500})
    except (ValueError, np.linalg.LinAlgError) as e:
        logger.error("garch_optimizer_error", ticker=ticker, error=str(e))
        warnings.append(f"Optimizer failed: {e}")
        return _ewma_fit(ticker, eps, ewma_lambda, warnings)

    params = GarchParams(
        omega=float(result.params["omega"]) / _SCALE ** 2,
        alpha=float(result.params["alpha[1]"]),
        beta=float(result.params["beta[1]"]),
    )

    if result.convergence_flag != 0:
        warnings.append(f"GARCH optimization did not converge (flag {result.convergence_flag})")
        return _ewma_fit(ticker, eps, ewma_lambda, warnings)
    if not params.is_stationary:
        warnings.append(
            f"Non-stationary GARCH fit (alpha + beta = {params.persistence:.4f} >= 1)"
        )
        return _ewma_fit(ticker, eps, ewma_lambda, warnings)

    next_day = result.forecast(horizon=1, reindex=False).variance.to_numpy()[-1, 0]
    current = float(next_day) / _SCALE ** 2
    warnings.extend(diagnostic_warnings(params, current))

    logger.info(
        "garch_fit_complete",
        ticker=ticker,
        omega=params.omega,
        alpha=params.alpha,
        beta=params.beta,
        persistence=params.persistence,
    )
    return GarchFit(
        ticker=ticker,
        params=params,
        method="garch",
        current_variance=current,
        log_likelihood=float(result.loglikelihood),
        converged=True,
        observations=len(r),
        warnings=warnings,
    )


def diagnostic_warnings(params: GarchParams, current_variance: float) -> List[str]:
    """Human-readable cautions about a stationary fit."""
    out: List[str] = []
    if params.persistence > HIGH_PERSISTENCE:
        out.append(
            f"High volatility persistence ({params.persistence:.3f}); shocks decay slowly"
        )
    if params.alpha > HIGH_ALPHA:
        out.append(f"High shock sensitivity (alpha = {params.alpha:.3f})")
    lr = params.long_run_variance
    if lr is not None and np.sqrt(current_variance) > ELEVATED_VOL_RATIO * np.sqrt(lr):
        out.append(
            f"Current volatility {annualize_variance(current_variance):.1f}% is more than "
            f"{ELEVATED_VOL_RATIO}x the long-run level {annualize_variance(lr):.1f}%"
        )
    return out


# ---------------------------------------------------------------------------
# Forecasting
# ---------------------------------------------------------------------------


def forecast_variance_path(
    params: GarchParams,
    current_variance: float,
    horizon: int,
) -> np.ndarray:
    """Expected daily variance for days 1..horizon.

    Day 1 is *current_variance*; day h is
    LR + (alpha + beta)^(h-1) * (current_variance - LR).  Models without a
    long-run level (EWMA, persistence >= 1) forecast a flat path.
    """
    if horizon < 1:
        raise ValueError(f"Horizon must be >= 1, got {horizon}")
    if current_variance < 0:
        raise ValueError(f"current_variance must be non-negative, got {current_variance}")

    lr = params.long_run_variance
    if lr is None:
        return np.full(horizon, float(current_variance))
    decay = params.persistence ** np.arange(horizon)
    return lr + decay * (current_variance - lr)


def forecast_variance_sd(params: GarchParams, path: np.ndarray) -> np.ndarray:
    """Standard deviation of each forecast variance under normal innovations.

    With v_t = sigma2_t (z_t^2 - 1) and Var(z^2) = 2,
    sigma2_{T+h} - E[sigma2_{T+h}] = sum_j alpha * p^(h-1-j) * v_{T+j}
    for j = 1..h-1, giving Var = 2 alpha^2 sum_j p^(2(h-1-j)) E[sigma2_{T+j}]^2.
    Day 1 is known at forecast time and has zero spread.
    """
    p = params.persistence
    h = len(path)
    var = np.zeros(h)
    for k in range(1, h):
        j = np.arange(1, k + 1)
        weights = p ** (2 * (k - j))
        var[k] = 2 * params.alpha ** 2 * np.sum(weights * path[j - 1] ** 2)
    return np.sqrt(var)


def forecast_volatility(
    fit: GarchFit,
    horizon_days: int,
    max_horizon: int = MAX_HORIZON,
) -> VolatilityForecast:
    """Project annualized volatility with 80% and 95% bands.

    Raises:
        ValueError: If *horizon_days* is outside 1..max_horizon
    """
    if not 1 <= horizon_days <= max_horizon:
        raise ValueError(f"horizon_days must be between 1 and {max_horizon}, got {horizon_days}")

    path = forecast_variance_path(fit.params, fit.current_variance, horizon_days)
    sd = forecast_variance_sd(fit.params, path)

    def band(z: float, sign: int) -> np.ndarray:
        return np.maximum(path + sign * z * sd, _VARIANCE_FLOOR)

    lo80, hi80, lo95, hi95 = band(Z_80, -1), band(Z_80, 1), band(Z_95, -1), band(Z_95, 1)
    points = [
        ForecastPoint(
            day_offset=h + 1,
            variance=float(path[h]),
            predicted_volatility=annualize_variance(path[h]),
            lower_80=annualize_variance(lo80[h]),
            upper_80=annualize_variance(hi80[h]),
            lower_95=annualize_variance(lo95[h]),
            upper_95=annualize_variance(hi95[h]),
        )
        for h in range(horizon_days)
    ]

    lr = fit.params.long_run_variance
    forecast = VolatilityForecast(
        ticker=fit.ticker,
        horizon_days=horizon_days,
        method=fit.method,
        params=fit.params,
        current_volatility=annualize_variance(fit.current_variance),
        long_run_volatility=annualize_variance(lr) if lr is not None else None,
        points=points,
        warnings=list(fit.warnings),
    )
    logger.info(
        "volatility_forecast_generated",
        ticker=fit.ticker,
        horizon_days=horizon_days,
        method=fit.method,
        final_volatility=points[-1].predicted_volatility,
    )
    return forecast

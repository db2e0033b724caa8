"""
Market Regime Detection Module

Four-state Gaussian hidden Markov model over daily benchmark returns, a
volatility/return rule classifier, an ensemble of the two, and matrix-power
regime forecasts.  Fitting is a pure function of its inputs and seed: no
model state lives at module level.

State columns everywhere follow ``REGIME_ORDER``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np
import structlog
from hmmlearn.hmm import GaussianHMM
from sklearn.cluster import KMeans

from ..errors import InsufficientDataError
from .returns import ReturnSeries

logger = structlog.get_logger(__name__)

TRADING_DAYS = 252
MIN_OBSERVATIONS = 252
MAX_FORECAST_HORIZON = 30
VOL_FEATURE_WINDOW = 20
_VARIANCE_FLOOR = 1e-8
_HMM_SCALE = 100.0


class RegimeState(str, Enum):
    BULL = "bull"
    BEAR = "bear"
    HIGH_VOLATILITY = "high_volatility"
    NORMAL = "normal"


REGIME_ORDER: Tuple[RegimeState, ...] = (
    RegimeState.BULL,
    RegimeState.BEAR,
    RegimeState.HIGH_VOLATILITY,
    RegimeState.NORMAL,
)
N_STATES = len(REGIME_ORDER)

REGIME_THRESHOLD_MULTIPLIERS: Dict[RegimeState, float] = {
    RegimeState.BULL: 0.8,
    RegimeState.NORMAL: 1.0,
    RegimeState.BEAR: 1.3,
    RegimeState.HIGH_VOLATILITY: 1.5,
}

# Rows/columns in REGIME_ORDER; used when no fitted model is available.
DEFAULT_TRANSITION_MATRIX = np.array([
    [0.85, 0.05, 0.02, 0.08],
    [0.05, 0.80, 0.10, 0.05],
    [0.10, 0.15, 0.65, 0.10],
    [0.15, 0.10, 0.05, 0.70],
])


def threshold_multiplier(state: RegimeState) -> float:
    """Multiplier applied to every risk threshold while *state* prevails."""
    return REGIME_THRESHOLD_MULTIPLIERS[RegimeState(state)]


def confidence_label(confidence: float) -> str:
    if confidence > 0.7:
        return "high"
    if confidence > 0.5:
        return "medium"
    return "low"


@dataclass(frozen=True)
class RegimeProbabilities:
    bull: float
    bear: float
    high_volatility: float
    normal: float

    def __post_init__(self):
        values = self.as_array()
        if np.any(values < -1e-12):
            raise ValueError(f"Regime probabilities must be non-negative, got {values}")
        if abs(values.sum() - 1.0) > 1e-6:
            raise ValueError(f"Regime probabilities must sum to 1, got {values.sum():.8f}")

    @classmethod
    def from_array(cls, probs) -> "RegimeProbabilities":
        p = np.clip(np.asarray(probs, dtype=float).flatten(), 0.0, None)
        if len(p) != N_STATES:
            raise ValueError(f"Expected {N_STATES} probabilities, got {len(p)}")
        total = p.sum()
        if total <= 0:
            raise ValueError("Regime probabilities sum to zero")
        p = p / total
        return cls(*(float(v) for v in p))

    def as_array(self) -> np.ndarray:
        return np.array([self.bull, self.bear, self.high_volatility, self.normal])

    def most_likely(self) -> RegimeState:
        return REGIME_ORDER[int(np.argmax(self.as_array()))]

    def probability(self, state: RegimeState) -> float:
        return float(self.as_array()[REGIME_ORDER.index(RegimeState(state))])

    def to_dict(self) -> Dict[str, float]:
        return {s.value: float(p) for s, p in zip(REGIME_ORDER, self.as_array())}


@dataclass(frozen=True, eq=False)
class HmmParams:
    """Gaussian HMM with states already ordered as ``REGIME_ORDER``."""

    start_probs: np.ndarray
    transition: np.ndarray
    means: np.ndarray
    variances: np.ndarray
    log_likelihood: float
    n_iter: int
    converged: bool
    observations: int

    def to_dict(self) -> Dict:
        return {
            "start_probs": self.start_probs.tolist(),
            "transition": self.transition.tolist(),
            "means": self.means.tolist(),
            "variances": self.variances.tolist(),
            "log_likelihood": self.log_likelihood,
            "n_iter": self.n_iter,
            "converged": self.converged,
            "observations": self.observations,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "HmmParams":
        return cls(
            start_probs=np.asarray(data["start_probs"], dtype=float),
            transition=np.asarray(data["transition"], dtype=float),
            means=np.asarray(data["means"], dtype=float),
            variances=np.asarray(data["variances"], dtype=float),
            log_likelihood=float(data["log_likelihood"]),
            n_iter=int(data["n_iter"]),
            converged=bool(data["converged"]),
            observations=int(data["observations"]),
        )


@dataclass(frozen=True)
class RegimeClassification:
    state: RegimeState
    probabilities: RegimeProbabilities
    confidence: float
    method: str
    hmm_state: Optional[RegimeState]
    hmm_confidence: Optional[float]
    rule_state: RegimeState
    rule_confidence: float
    agreement: bool
    annualized_return: float
    annualized_volatility: float

    @property
    def threshold_multiplier(self) -> float:
        return threshold_multiplier(self.state)

    def to_dict(self) -> Dict:
        return {
            "state": self.state.value,
            "probabilities": self.probabilities.to_dict(),
            "confidence": self.confidence,
            "confidence_label": confidence_label(self.confidence),
            "method": self.method,
            "hmm_state": self.hmm_state.value if self.hmm_state else None,
            "hmm_confidence": self.hmm_confidence,
            "rule_state": self.rule_state.value,
            "rule_confidence": self.rule_confidence,
            "agreement": self.agreement,
            "annualized_return": self.annualized_return,
            "annualized_volatility": self.annualized_volatility,
            "threshold_multiplier": self.threshold_multiplier,
        }


@dataclass(frozen=True)
class RegimeForecast:
    horizon_days: int
    current_state: RegimeState
    predicted_state: RegimeState
    probabilities: RegimeProbabilities
    transition_probability: float
    confidence: float
    confidence_label: str = field(default="")

    def to_dict(self) -> Dict:
        return {
            "horizon_days": self.horizon_days,
            "current_state": self.current_state.value,
            "predicted_state": self.predicted_state.value,
            "probabilities": self.probabilities.to_dict(),
            "transition_probability": self.transition_probability,
            "confidence": self.confidence,
            "confidence_label": self.confidence_label,
        }


# ---------------------------------------------------------------------------
# Gaussian HMM
# ---------------------------------------------------------------------------


def _as_returns(returns) -> np.ndarray:
    if isinstance(returns, ReturnSeries):
        return returns.values
    r = np.asarray(returns, dtype=float).flatten()
    return r[~np.isnan(r)]


def _gaussian_hmm(
    start: np.ndarray,
    transition: np.ndarray,
    means: np.ndarray,
    variances: np.ndarray,
    **kwargs,
) -> GaussianHMM:
    """GaussianHMM on percent returns, parameters given in decimal units."""
    model = GaussianHMM(
        n_components=N_STATES,
        covariance_type="diag",
        init_params="",
        **kwargs,
    )
    model.startprob_ = np.asarray(start, dtype=float)
    model.transmat_ = np.asarray(transition, dtype=float)
    model.means_ = np.asarray(means, dtype=float).reshape(N_STATES, 1) * _HMM_SCALE
    model.covars_ = np.asarray(variances, dtype=float).reshape(N_STATES, 1) * _HMM_SCALE ** 2
    return model


def _observations(x: np.ndarray) -> np.ndarray:
    return (x * _HMM_SCALE).reshape(-1, 1)


# ---------------------------------------------------------------------------
# Fitting
# ---------------------------------------------------------------------------


def _rolling_abs_mean(x: np.ndarray, window: int) -> np.ndarray:
    csum = np.cumsum(np.abs(x))
    out = np.empty_like(x)
    for t in range(len(x)):
        lo = max(0, t - window + 1)
        out[t] = (csum[t] - (csum[lo - 1] if lo > 0 else 0.0)) / (t - lo + 1)
    return out


def _initial_parameters(x: np.ndarray, seed: int) -> Tuple[np.ndarray, np.ndarray]:
    """Seed state means/variances from k-means over (return, recent |return|)."""
    features = np.column_stack([x, _rolling_abs_mean(x, VOL_FEATURE_WINDOW)])
    std = features.std(axis=0)
    std[std == 0] = 1.0
    features = (features - features.mean(axis=0)) / std

    labels = KMeans(n_clusters=N_STATES, n_init=10, random_state=seed).fit_predict(features)

    overall_var = max(float(np.var(x)), _VARIANCE_FLOOR)
    means = np.empty(N_STATES)
    variances = np.empty(N_STATES)
    for k in range(N_STATES):
        members = x[labels == k]
        if len(members) >= 2:
            means[k] = members.mean()
            variances[k] = max(float(members.var()), overall_var * 1e-3, _VARIANCE_FLOOR)
        else:
            means[k] = np.quantile(x, (k + 0.5) / N_STATES)
            variances[k] = overall_var
    return means, variances


def _label_states(means: np.ndarray, variances: np.ndarray) -> List[int]:
    """Map fitted state indices onto REGIME_ORDER positions.

    Highest variance is HighVolatility; of the rest, highest mean is Bull,
    lowest mean is Bear and the remaining state is Normal.
    """
    high_vol = int(np.argmax(variances))
    rest = sorted((k for k in range(N_STATES) if k != high_vol), key=lambda k: means[k])
    bear, normal, bull = rest[0], rest[1], rest[2]
    return [bull, bear, high_vol, normal]


def fit_hmm(
    returns,
    max_iter: int = 200,
    tol: float = 1e-6,
    seed: int = 42,
    min_observations: int = MIN_OBSERVATIONS,
) -> HmmParams:
    """Fit a 4-state Gaussian HMM by Baum-Welch (hmmlearn).

    Returns are scaled to percent for the EM so the library's covariance
    prior stays negligible; the returned parameters are in decimal units.

    Args:
        returns: ReturnSeries or 1-D array of daily benchmark returns
        max_iter: Maximum EM iterations
        tol: Stop when the log-likelihood improves by less than this
        seed: Seed for the k-means initialisation
        min_observations: Minimum sample size accepted

    Returns:
        HmmParams with states reordered to REGIME_ORDER

    Raises:
        InsufficientDataError: If fewer than *min_observations* returns
    """
    x = _as_returns(returns)
    if len(x) < min_observations:
        raise InsufficientDataError(min_observations, len(x), "returns for HMM training")

    means, variances = _initial_parameters(x, seed)
    start = np.full(N_STATES, 1.0 / N_STATES)
    transition = np.full((N_STATES, N_STATES), 0.15 / (N_STATES - 1))
    np.fill_diagonal(transition, 0.85)

    model = _gaussian_hmm(
        start, transition, means, variances, n_iter=max_iter, tol=tol, random_state=seed
    )
    obs = _observations(x)
    model.fit(obs)

    fitted_means = np.asarray(model.means_).reshape(N_STATES) / _HMM_SCALE
    fitted_vars = np.asarray(model.covars_).reshape(N_STATES) / _HMM_SCALE ** 2
    # density of decimal returns = SCALE * density of percent returns
    ll = float(model.score(obs)) + len(x) * np.log(_HMM_SCALE)
    n_iter = int(model.monitor_.iter)
    converged = bool(model.monitor_.converged)

    order = _label_states(fitted_means, fitted_vars)
    params = HmmParams(
        start_probs=np.asarray(model.startprob_)[order],
        transition=np.asarray(model.transmat_)[np.ix_(order, order)],
        means=fitted_means[order],
        variances=fitted_vars[order],
        log_likelihood=ll,
        n_iter=n_iter,
        converged=converged,
        observations=len(x),
    )
    logger.info(
        "hmm_fit_complete",
        observations=len(x),
        n_iter=n_iter,
        converged=converged,
        log_likelihood=params.log_likelihood,
    )
    if not converged:
        logger.warning("hmm_fit_not_converged", max_iter=max_iter)
    return params


def posterior_probabilities(params: HmmParams, returns) -> np.ndarray:
    """T x 4 smoothed state probabilities, columns in REGIME_ORDER."""
    x = _as_returns(returns)
    if len(x) == 0:
        raise ValueError("Cannot compute posteriors for an empty return series")
    model = _gaussian_hmm(params.start_probs, params.transition, params.means, params.variances)
    return model.predict_proba(_observations(x))


def classify_hmm(params: HmmParams, returns) -> Tuple[RegimeState, RegimeProbabilities]:
    """Regime at the last observation: the state with highest posterior."""
    probs = RegimeProbabilities.from_array(posterior_probabilities(params, returns)[-1])
    return probs.most_likely(), probs


# ---------------------------------------------------------------------------
# Rule-based classifier and ensemble
# ---------------------------------------------------------------------------


def classify_rule_based(
    returns,
    lookback: int = 30,
    bull_vol: float = 20.0,
    bear_vol: float = 25.0,
    high_vol: float = 35.0,
) -> Tuple[RegimeState, float, float, float]:
    """Classify from trailing annualized volatility and return (both in %).

    Returns:
        (state, confidence 0-100, annualized_return, annualized_volatility)

    Raises:
        InsufficientDataError: If fewer than 2 returns in the lookback
    """
    x = _as_returns(returns)[-lookback:]
    if len(x) < 2:
        raise InsufficientDataError(2, len(x), "returns for rule-based regime")

    vol = float(np.std(x, ddof=1) * np.sqrt(TRADING_DAYS) * 100)
    ret = float(np.mean(x) * TRADING_DAYS * 100)

    if vol > high_vol:
        confidence = float(np.clip(75 + (vol - high_vol) / high_vol * 50, 75, 100))
        return RegimeState.HIGH_VOLATILITY, confidence, ret, vol
    if ret > 0 and vol < bull_vol:
        vol_margin = (bull_vol - vol) / bull_vol
        confidence = (vol_margin * 0.6 + min(ret / 10, 1.0) * 0.4) * 100
        return RegimeState.BULL, float(np.clip(confidence, 60, 100)), ret, vol
    if ret < 0 and vol > bear_vol:
        vol_margin = min((vol - bear_vol) / bear_vol, 1.0)
        confidence = (vol_margin * 0.6 + min(abs(ret) / 10, 1.0) * 0.4) * 100
        return RegimeState.BEAR, float(np.clip(confidence, 60, 100)), ret, vol
    return RegimeState.NORMAL, 70.0, ret, vol


def _rule_probabilities(state: RegimeState, confidence: float) -> RegimeProbabilities:
    p = np.full(N_STATES, (1 - confidence) / (N_STATES - 1))
    p[REGIME_ORDER.index(state)] = confidence
    return RegimeProbabilities.from_array(p)


def ensemble_regime(
    returns,
    params: Optional[HmmParams] = None,
    lookback: int = 30,
) -> RegimeClassification:
    """Blend HMM and rule-based classifications.

    Agreement reports the higher of the two confidences; disagreement keeps
    the HMM state and reports the lower confidence.  Without a fitted model
    the rule classifier stands alone.
    """
    rule_state, rule_conf_pct, ann_ret, ann_vol = classify_rule_based(returns, lookback=lookback)
    rule_conf = rule_conf_pct / 100

    if params is None:
        return RegimeClassification(
            state=rule_state,
            probabilities=_rule_probabilities(rule_state, rule_conf),
            confidence=rule_conf,
            method="rule_based",
            hmm_state=None,
            hmm_confidence=None,
            rule_state=rule_state,
            rule_confidence=rule_conf,
            agreement=True,
            annualized_return=ann_ret,
            annualized_volatility=ann_vol,
        )

    hmm_state, probs = classify_hmm(params, returns)
    hmm_conf = probs.probability(hmm_state)
    agreement = hmm_state == rule_state
    confidence = max(hmm_conf, rule_conf) if agreement else min(hmm_conf, rule_conf)

    if not agreement:
        logger.info(
            "regime_ensemble_disagreement",
            hmm_state=hmm_state.value,
            rule_state=rule_state.value,
            confidence=confidence,
        )
    return RegimeClassification(
        state=hmm_state,
        probabilities=probs,
        confidence=float(confidence),
        method="ensemble",
        hmm_state=hmm_state,
        hmm_confidence=hmm_conf,
        rule_state=rule_state,
        rule_confidence=rule_conf,
        agreement=agreement,
        annualized_return=ann_ret,
        annualized_volatility=ann_vol,
    )


# ---------------------------------------------------------------------------
# Forecasting
# ---------------------------------------------------------------------------


def forecast_regime(
    current: RegimeProbabilities,
    horizon_days: int,
    transition: Optional[np.ndarray] = None,
    max_horizon: int = MAX_FORECAST_HORIZON,
) -> RegimeForecast:
    """Project regime probabilities *horizon_days* ahead: p_h = p_0 T^h.

    transition_probability is 1 - P(still in today's most likely state).

    Raises:
        ValueError: If the horizon is outside 1..max_horizon or the
            transition matrix is not row-stochastic
    """
    if not 1 <= horizon_days <= max_horizon:
        raise ValueError(f"horizon_days must be between 1 and {max_horizon}, got {horizon_days}")

    matrix = DEFAULT_TRANSITION_MATRIX if transition is None else np.asarray(transition, dtype=float)
    if matrix.shape != (N_STATES, N_STATES):
        raise ValueError(f"Transition matrix must be {N_STATES}x{N_STATES}, got {matrix.shape}")
    if np.any(matrix < 0) or not np.allclose(matrix.sum(axis=1), 1.0, atol=1e-6):
        raise ValueError("Transition matrix rows must be non-negative and sum to 1")

    future = current.as_array() @ np.linalg.matrix_power(matrix, horizon_days)
    probs = RegimeProbabilities.from_array(future)
    current_state = current.most_likely()
    predicted = probs.most_likely()
    confidence = probs.probability(predicted)

    return RegimeForecast(
        horizon_days=horizon_days,
        current_state=current_state,
        predicted_state=predicted,
        probabilities=probs,
        transition_probability=float(1.0 - probs.probability(current_state)),
        confidence=confidence,
        confidence_label=confidence_label(confidence),
    )


def forecast_regimes(
    current: RegimeProbabilities,
    horizons=(5, 10, 30),
    transition: Optional[np.ndarray] = None,
) -> List[RegimeForecast]:
    return [forecast_regime(current, h, transition) for h in horizons]

"""
Covariance Helpers

EWMA variance (the GARCH fallback), covariance assembly from a correlation
matrix and per-asset volatilities, and PSD repair for pairwise-estimated
matrices.
"""

import numpy as np
import pandas as pd
import structlog

logger = structlog.get_logger(__name__)


def ewma_variance(returns, lambd: float = 0.94, init_window: int = 10) -> np.ndarray:
    """RiskMetrics EWMA variance path: s2_t = lambda * s2_{t-1} + (1 - lambda) * r_t^2.

    Seeded with the sample variance of the first *init_window* observations.

    Args:
        returns: 1-D array of (demeaned) daily returns
        lambd: Decay factor (default 0.94, standard RiskMetrics)
        init_window: Observations used to seed the recursion

    Returns:
        Array of length T + 1: the seed followed by the variance after each
        observation.  The last element is the next-day variance estimate.

    Raises:
        ValueError: If lambda is outside (0, 1) or fewer than 2 observations
    """
    if not 0 < lambd < 1:
        raise ValueError(f"Lambda must be between 0 and 1, got {lambd}")
    r = np.asarray(returns, dtype=float).flatten()
    if len(r) < 2:
        raise ValueError(f"Need at least 2 observations, got {len(r)}")
    if np.isnan(r).any():
        raise ValueError("NaN values detected in returns")

    seed = float(np.var(r[: min(init_window, len(r))], ddof=1))
    path = np.empty(len(r) + 1)
    path[0] = seed
    for t, r_t in enumerate(r):
        path[t + 1] = lambd * path[t] + (1 - lambd) * r_t ** 2
    return path


def nearest_psd(matrix: np.ndarray, label: str = "matrix") -> np.ndarray:
    """Clamp negative eigenvalues to zero and re-symmetrize."""
    m = (np.asarray(matrix, dtype=float) + np.asarray(matrix, dtype=float).T) / 2
    eigenvalues, eigvecs = np.linalg.eigh(m)
    min_eigenvalue = float(np.min(eigenvalues))
    if min_eigenvalue >= -1e-10:
        return m

    logger.warning(
        "nearest_psd: non-PSD matrix, clamping negative eigenvalues",
        label=label,
        min_eigenvalue=min_eigenvalue,
    )
    fixed = eigvecs @ np.diag(np.maximum(eigenvalues, 0.0)) @ eigvecs.T
    return (fixed + fixed.T) / 2


def correlation_to_psd(corr: np.ndarray) -> np.ndarray:
    """Nearest-PSD repair that keeps a unit diagonal."""
    fixed = nearest_psd(corr, label="correlation")
    d = np.sqrt(np.clip(np.diag(fixed), 1e-12, None))
    fixed = fixed / np.outer(d, d)
    np.fill_diagonal(fixed, 1.0)
    return np.clip(fixed, -1.0, 1.0)


def covariance_from_correlation(corr, volatilities) -> np.ndarray:
    """Sigma = D C D, where D = diag(volatilities).

    Missing correlations (NaN) are treated as zero.  The result is made PSD
    so w' Sigma w is never negative.

    Raises:
        ValueError: On shape mismatch
    """
    c = corr.to_numpy(dtype=float) if isinstance(corr, pd.DataFrame) else np.asarray(corr, dtype=float)
    vols = np.asarray(volatilities, dtype=float).flatten()
    if c.shape != (len(vols), len(vols)):
        raise ValueError(
            f"Correlation shape {c.shape} doesn't match {len(vols)} volatilities"
        )
    c = np.where(np.isnan(c), 0.0, c)
    np.fill_diagonal(c, 1.0)
    c = correlation_to_psd(c)
    d = np.diag(vols)
    return d @ c @ d

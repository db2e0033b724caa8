"""
Correlation Analysis Module

Pairwise Pearson correlation across a portfolio's tickers, hierarchical
clustering on correlation distance, high-correlation pair detection and a
correlation-adjusted diversification score.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
import structlog
from scipy.cluster.hierarchy import fcluster, linkage
from scipy.spatial.distance import squareform

from ..errors import InvalidCorrelationInput
from .returns import ReturnSeries, returns_frame

logger = structlog.get_logger(__name__)

MIN_OVERLAP = 20
HIGH_CORRELATION = 0.7
MIN_CLUSTERS = 2
MAX_CLUSTERS = 5


@dataclass(frozen=True)
class AssetCluster:
    cluster_id: int
    tickers: List[str]
    avg_intra_correlation: float

    @property
    def size(self) -> int:
        return len(self.tickers)


@dataclass
class CorrelationResult:
    """Correlation matrix plus everything derived from it.

    ``matrix`` covers every requested ticker; pairs without enough overlap
    are NaN.  ``excluded`` lists tickers left out of clustering.
    """

    matrix: pd.DataFrame
    observations: pd.DataFrame
    excluded: List[str] = field(default_factory=list)
    clusters: List[AssetCluster] = field(default_factory=list)
    inter_cluster_correlations: Dict[str, float] = field(default_factory=dict)
    statistics: Dict[str, Optional[float]] = field(default_factory=dict)
    high_correlation_pairs: List[Dict] = field(default_factory=list)
    diversification_score: Optional[float] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def tickers(self) -> List[str]:
        return list(self.matrix.columns)

    def to_dict(self) -> Dict:
        values = self.matrix.to_numpy(dtype=float)
        return {
            "tickers": self.tickers,
            "matrix": [[None if np.isnan(v) else float(v) for v in row] for row in values],
            "excluded": list(self.excluded),
            "clusters": [
                {
                    "cluster_id": c.cluster_id,
                    "tickers": list(c.tickers),
                    "size": c.size,
                    "avg_intra_correlation": c.avg_intra_correlation,
                }
                for c in self.clusters
            ],
            "inter_cluster_correlations": dict(self.inter_cluster_correlations),
            "statistics": dict(self.statistics),
            "high_correlation_pairs": list(self.high_correlation_pairs),
            "high_correlation_pair_count": len(self.high_correlation_pairs),
            "diversification_score": self.diversification_score,
            "warnings": list(self.warnings),
        }


# ---------------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------------


def pairwise_correlation(
    returns: pd.DataFrame,
    min_overlap: int = MIN_OVERLAP,
) -> pd.DataFrame:
    """Pearson correlation over each pair's intersected dates.

    Args:
        returns: Outer-joined returns (NaN where a ticker has no data)
        min_overlap: Pairs with fewer common dates are NaN

    Returns:
        Symmetric DataFrame with an exact 1.0 diagonal and entries in [-1, 1]
    """
    if returns.shape[1] == 0:
        raise ValueError("Cannot compute correlation from empty returns DataFrame")

    corr = returns.corr(method="pearson", min_periods=max(min_overlap, 2))
    values = corr.to_numpy(dtype=float, copy=True)
    values = np.clip((values + values.T) / 2, -1.0, 1.0)
    np.fill_diagonal(values, 1.0)
    return pd.DataFrame(values, index=corr.index, columns=corr.columns)


def overlap_counts(returns: pd.DataFrame) -> pd.DataFrame:
    """Number of common non-NaN dates for every pair of columns."""
    mask = returns.notna().astype(int)
    return mask.T @ mask


def complete_subset(corr: pd.DataFrame) -> List[str]:
    """Drop tickers with missing correlations until the rest is complete.

    The ticker with the most NaN entries goes first (ties broken by name).
    """
    keep = list(corr.columns)
    while len(keep) > 1:
        sub = corr.loc[keep, keep]
        missing = sub.isna().sum()
        if missing.max() == 0:
            break
        worst = sorted(keep, key=lambda t: (-missing[t], t))[0]
        keep.remove(worst)
    return keep


def off_diagonal(corr: pd.DataFrame) -> np.ndarray:
    values = corr.to_numpy(dtype=float)
    upper = values[np.triu_indices_from(values, k=1)]
    return upper[~np.isnan(upper)]


def correlation_statistics(corr: pd.DataFrame) -> Dict[str, Optional[float]]:
    """Average, max, min and standard deviation of the off-diagonal entries."""
    upper = off_diagonal(corr)
    if len(upper) == 0:
        return {"average": None, "max": None, "min": None, "std": None, "pair_count": 0}
    return {
        "average": float(upper.mean()),
        "max": float(upper.max()),
        "min": float(upper.min()),
        "std": float(upper.std()),
        "pair_count": int(len(upper)),
    }


def high_correlation_pairs(
    corr: pd.DataFrame,
    threshold: float = HIGH_CORRELATION,
) -> List[Dict]:
    """Pairs with |correlation| above *threshold*, sorted by |correlation|."""
    rows, cols = np.triu_indices_from(corr.values, k=1)
    pairs = []
    for i, j in zip(rows, cols):
        value = corr.iloc[i, j]
        if pd.notna(value) and abs(value) > threshold:
            pairs.append({
                "ticker_a": corr.index[i],
                "ticker_b": corr.columns[j],
                "correlation": float(value),
            })
    pairs.sort(key=lambda p: abs(p["correlation"]), reverse=True)
    return pairs


# ---------------------------------------------------------------------------
# Clustering
# ---------------------------------------------------------------------------


def choose_cluster_count(
    heights: np.ndarray,
    n_items: int,
    min_clusters: int = MIN_CLUSTERS,
    max_clusters: int = MAX_CLUSTERS,
) -> int:
    """Elbow heuristic: cut where the next merge jumps furthest.

    Stopping with k clusters means skipping merge index n - k, so its jump
    over merge n - k - 1 measures how unnatural that merge would be.
    """
    upper = min(max_clusters, n_items)
    lower = min(min_clusters, upper)
    best_k, best_gap = lower, -np.inf
    for k in range(lower, upper + 1):
        nxt = heights[n_items - k]
        prev = heights[n_items - k - 1] if n_items - k - 1 >= 0 else 0.0
        gap = nxt - prev
        if gap > best_gap + 1e-12:
            best_k, best_gap = k, gap
    return best_k


def hierarchical_clusters(
    corr: pd.DataFrame,
    min_clusters: int = MIN_CLUSTERS,
    max_clusters: int = MAX_CLUSTERS,
) -> List[AssetCluster]:
    """Average-linkage clustering on distance 1 - |correlation|.

    Every ticker in *corr* lands in exactly one cluster.

    Raises:
        InvalidCorrelationInput: Fewer than 2 tickers, or missing entries
    """
    n = len(corr)
    if n < 2:
        raise InvalidCorrelationInput(f"Need at least 2 tickers to cluster, got {n}")
    if corr.isna().any().any():
        raise InvalidCorrelationInput("Correlation matrix has missing entries")

    distance = 1.0 - np.abs(np.clip(corr.to_numpy(dtype=float), -1.0, 1.0))
    distance = (distance + distance.T) / 2
    np.fill_diagonal(distance, 0.0)
    condensed = squareform(np.maximum(distance, 0.0), checks=False)

    Z = linkage(condensed, method="average")
    k = choose_cluster_count(Z[:, 2], n, min_clusters, max_clusters)
    labels = fcluster(Z, k, criterion="maxclust")

    clusters = []
    for new_id, label in enumerate(sorted(np.unique(labels), key=lambda l: -np.sum(labels == l))):
        members = [corr.index[i] for i in np.where(labels == label)[0]]
        if len(members) > 1:
            sub = corr.loc[members, members].to_numpy(dtype=float)
            avg = float(sub[np.triu_indices_from(sub, k=1)].mean())
        else:
            avg = 1.0
        clusters.append(AssetCluster(cluster_id=new_id, tickers=members, avg_intra_correlation=avg))

    logger.info(
        "hierarchical_clusters: clustering complete",
        num_clusters=len(clusters),
        cluster_sizes=[c.size for c in clusters],
    )
    return clusters


def inter_cluster_correlations(corr: pd.DataFrame, clusters: Sequence[AssetCluster]) -> Dict[str, float]:
    """Mean cross-correlation for every pair of clusters, keyed "i-j"."""
    out: Dict[str, float] = {}
    for a in range(len(clusters)):
        for b in range(a + 1, len(clusters)):
            block = corr.loc[clusters[a].tickers, clusters[b].tickers].to_numpy(dtype=float)
            block = block[~np.isnan(block)]
            if len(block):
                out[f"{clusters[a].cluster_id}-{clusters[b].cluster_id}"] = float(block.mean())
    return out


# ---------------------------------------------------------------------------
# Diversification
# ---------------------------------------------------------------------------


def effective_positions(weights) -> float:
    """1 / sum(w_i^2) on normalized absolute weights."""
    w = np.abs(np.asarray(weights, dtype=float).flatten())
    total = w.sum()
    if total <= 0:
        raise ValueError("Weights must have a positive sum")
    w = w / total
    return float(1.0 / np.sum(w ** 2))


def diversification_score(weights, avg_correlation: Optional[float]) -> float:
    """Correlation-adjusted diversification on a 0-10 scale.

    N_adj = N_eff / (1 + (N_eff - 1) * rho), with rho the average pairwise
    correlation floored at zero; score = 10 * (1 - 1 / N_adj).  A single
    position, or perfectly correlated holdings, score 0.  For fixed weights
    the score never rises as rho rises.
    """
    n_eff = effective_positions(weights)
    rho = 0.0 if avg_correlation is None or np.isnan(avg_correlation) else float(avg_correlation)
    rho = min(max(rho, 0.0), 1.0)
    n_adj = n_eff / (1.0 + (n_eff - 1.0) * rho)
    return float(np.clip(10.0 * (1.0 - 1.0 / n_adj), 0.0, 10.0))


def weighted_average_correlation(corr: pd.DataFrame, weights: Optional[Dict[str, float]] = None) -> Optional[float]:
    """Average off-diagonal correlation, weighted by w_i * w_j when given."""
    tickers = list(corr.columns)
    values = corr.to_numpy(dtype=float)
    num = den = 0.0
    for i in range(len(tickers)):
        for j in range(i + 1, len(tickers)):
            if np.isnan(values[i, j]):
                continue
            w = 1.0 if weights is None else abs(weights.get(tickers[i], 0.0) * weights.get(tickers[j], 0.0))
            num += w * values[i, j]
            den += w
    if den == 0:
        return None
    return float(num / den)


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


def analyze_correlations(
    series: Sequence[ReturnSeries],
    weights: Optional[Dict[str, float]] = None,
    min_overlap: int = MIN_OVERLAP,
    high_threshold: float = HIGH_CORRELATION,
) -> CorrelationResult:
    """Full correlation analysis for a set of return series.

    Clustering problems are recorded as warnings; the pairwise matrix is
    always returned.
    """
    frame = returns_frame(series)
    corr = pairwise_correlation(frame, min_overlap)
    counts = overlap_counts(frame)

    usable = complete_subset(corr)
    excluded = [t for t in corr.columns if t not in usable]
    result = CorrelationResult(
        matrix=corr,
        observations=counts,
        excluded=excluded,
        statistics=correlation_statistics(corr),
        high_correlation_pairs=high_correlation_pairs(corr, high_threshold),
    )
    if excluded:
        result.warnings.append(
            f"Insufficient overlapping history for clustering: {', '.join(excluded)}"
        )
        logger.warning("analyze_correlations: excluded tickers", tickers=excluded)

    sub = corr.loc[usable, usable]
    try:
        result.clusters = hierarchical_clusters(sub)
        result.inter_cluster_correlations = inter_cluster_correlations(sub, result.clusters)
    except InvalidCorrelationInput as e:
        result.warnings.append(f"Clustering skipped: {e}")
        logger.info("analyze_correlations: clustering skipped", reason=str(e))

    if weights:
        held = {t: w for t, w in weights.items() if t in corr.columns}
        if held:
            avg = weighted_average_correlation(corr.loc[list(held), list(held)], held)
            result.diversification_score = diversification_score(list(held.values()), avg)

    logger.info(
        "analyze_correlations: complete",
        num_tickers=len(corr),
        num_clusters=len(result.clusters),
        high_pairs=len(result.high_correlation_pairs),
    )
    return result

"""
Portfolio Risk Analytics

Pure computation modules operating on pandas Series/DataFrames and numpy
arrays.  No I/O and no caching; see riskengine.services for orchestration.

Modules:
- returns: Return series construction and alignment
- metrics: Per-position volatility, drawdown, beta, Sharpe/Sortino, VaR/CVaR
- covariance: EWMA variance and covariance assembly
- beta_forecast: Rolling beta projection and beta regime-change detection
- garch: GARCH(1,1) fitting and volatility forecasts
- regime: 4-state HMM and rule-based market regime detection
- correlation: Correlation matrix, clustering, diversification score
- aggregator: Portfolio risk and threshold violations
- optimization: Rule-based rebalancing recommendations
"""

# Returns module
from .returns import (
    ReturnSeries,
    returns_from_prices,
    build_price_matrix,
    compute_log_returns,
    compute_simple_returns,
    trim_to_window,
    align_series,
    align_many,
    returns_frame,
)

# Metrics module
from .metrics import (
    PositionRiskMetrics,
    RiskDecomposition,
    RollingBetaAnalysis,
    compute_position_risk,
    compute_beta,
    value_at_risk,
    conditional_var,
    risk_score,
    rolling_beta,
    portfolio_volatility,
    pct_contribution_to_variance,
    concentration_metrics,
)

# Covariance module
from .covariance import (
    ewma_variance,
    covariance_from_correlation,
)

# Beta forecast module
from .beta_forecast import (
    BetaForecastMethod,
    BetaForecastPoint,
    BetaRegimeChange,
    BetaForecast,
    forecast_beta,
    detect_beta_regime_changes,
)

# GARCH module
from .garch import (
    GarchParams,
    GarchFit,
    VolatilityForecast,
    fit_garch,
    forecast_variance_path,
    forecast_volatility,
)

# Regime module
from .regime import (
    RegimeState,
    RegimeProbabilities,
    RegimeClassification,
    RegimeForecast,
    HmmParams,
    REGIME_THRESHOLD_MULTIPLIERS,
    fit_hmm,
    classify_hmm,
    classify_rule_based,
    ensemble_regime,
    forecast_regime,
    forecast_regimes,
    threshold_multiplier,
)

# Correlation module
from .correlation import (
    AssetCluster,
    CorrelationResult,
    analyze_correlations,
    pairwise_correlation,
    hierarchical_clusters,
    diversification_score,
)

# Aggregation module
from .aggregator import (
    PortfolioPosition,
    PortfolioRiskWithViolations,
    ThresholdViolation,
    aggregate_portfolio,
    evaluate_thresholds,
)

# Optimization module
from .optimization import (
    Recommendation,
    RecommendationPolicy,
    OptimizationReport,
    generate_recommendations,
    summarize_recommendations,
    analyze_optimizations,
)

__all__ = [
    # Returns
    'ReturnSeries',
    'returns_from_prices',
    'build_price_matrix',
    'compute_log_returns',
    'compute_simple_returns',
    'trim_to_window',
    'align_series',
    'align_many',
    'returns_frame',
    # Metrics
    'PositionRiskMetrics',
    'RiskDecomposition',
    'RollingBetaAnalysis',
    'compute_position_risk',
    'compute_beta',
    'value_at_risk',
    'conditional_var',
    'risk_score',
    'rolling_beta',
    'portfolio_volatility',
    'pct_contribution_to_variance',
    'concentration_metrics',
    # Covariance
    'ewma_variance',
    'covariance_from_correlation',
    # Beta forecast
    'BetaForecastMethod',
    'BetaForecastPoint',
    'BetaRegimeChange',
    'BetaForecast',
    'forecast_beta',
    'detect_beta_regime_changes',
    # GARCH
    'GarchParams',
    'GarchFit',
    'VolatilityForecast',
    'fit_garch',
    'forecast_variance_path',
    'forecast_volatility',
    # Regime
    'RegimeState',
    'RegimeProbabilities',
    'RegimeClassification',
    'RegimeForecast',
    'HmmParams',
    'REGIME_THRESHOLD_MULTIPLIERS',
    'fit_hmm',
    'classify_hmm',
    'classify_rule_based',
    'ensemble_regime',
    'forecast_regime',
    'forecast_regimes',
    'threshold_multiplier',
    # Correlation
    'AssetCluster',
    'CorrelationResult',
    'analyze_correlations',
    'pairwise_correlation',
    'hierarchical_clusters',
    'diversification_score',
    # Aggregation
    'PortfolioPosition',
    'PortfolioRiskWithViolations',
    'ThresholdViolation',
    'aggregate_portfolio',
    'evaluate_thresholds',
    # Optimization
    'Recommendation',
    'RecommendationPolicy',
    'OptimizationReport',
    'generate_recommendations',
    'summarize_recommendations',
    'analyze_optimizations',
]

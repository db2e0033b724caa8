"""Configuration for the risk engine loaded from environment variables."""

from __future__ import annotations

from typing import List

from pydantic import BaseModel, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Risk engine configuration.

    All fields are loaded from environment variables (or a local ``.env``
    file).  Every field has a default suitable for daily-frequency analytics,
    so a bare environment yields a working engine.
    """

    RISK_FREE_RATE: float = 0.045  # annual, decimal
    DEFAULT_WINDOW_DAYS: int = 365
    DEFAULT_BENCHMARK: str = "SPY"
    BENCHMARKS: List[str] = ["SPY", "QQQ", "IWM"]

    MIN_OBSERVATIONS: int = 20
    CORRELATION_MIN_OVERLAP: int = 20
    HIGH_CORRELATION_THRESHOLD: float = 0.7
    HIGH_CORRELATION_PAIR_LIMIT: int = 3

    GARCH_MIN_OBSERVATIONS: int = 100
    GARCH_MAX_HORIZON: int = 90
    EWMA_LAMBDA: float = 0.94

    HMM_MIN_OBSERVATIONS: int = 252
    HMM_MAX_ITER: int = 200
    HMM_TOL: float = 1e-6
    HMM_SEED: int = 42
    REGIME_LOOKBACK_DAYS: int = 30
    REGIME_BENCHMARK: str = "SPY"

    RISK_CACHE_TTL_HOURS: float = 4
    CORRELATION_CACHE_TTL_HOURS: float = 24
    ROLLING_BETA_CACHE_TTL_HOURS: float = 24
    BETA_FORECAST_CACHE_TTL_HOURS: float = 24
    VOLATILITY_CACHE_TTL_HOURS: float = 24
    REGIME_CACHE_TTL_HOURS: float = 24
    OPTIMIZATION_CACHE_TTL_HOURS: float = 24
    ERROR_RETRY_TTL_HOURS: float = 1

    COMPUTE_TIMEOUT_SECONDS: float = 60
    WORKER_POOL_SIZE: int = 4
    COMPUTE_POOL_SIZE: int = 2
    RECOMPUTE_INTERVAL_SECONDS: int = 300

    LOG_LEVEL: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


def get_settings() -> Settings:
    """Return a Settings instance built from the current environment."""
    return Settings()


class RiskThresholdSettings(BaseModel):
    """Per-portfolio warning/critical threshold pairs.

    Volatility and VaR-style metrics are expressed in percent.  Drawdown and
    VaR thresholds are negative: a *lower* number is more severe, so the
    critical value must not exceed the warning value.
    """

    volatility_warning: float = 30.0
    volatility_critical: float = 50.0
    drawdown_warning: float = -20.0
    drawdown_critical: float = -35.0
    beta_warning: float = 1.5
    beta_critical: float = 2.0
    risk_score_warning: float = 60.0
    risk_score_critical: float = 80.0
    var_warning: float = -5.0
    var_critical: float = -10.0

    @model_validator(mode="after")
    def _check_severity_order(self) -> "RiskThresholdSettings":
        for name in ("volatility", "beta", "risk_score"):
            warning = getattr(self, f"{name}_warning")
            critical = getattr(self, f"{name}_critical")
            if warning > critical:
                raise ValueError(
                    f"{name}_warning ({warning}) must not exceed {name}_critical ({critical})"
                )
        for name in ("drawdown", "var"):
            warning = getattr(self, f"{name}_warning")
            critical = getattr(self, f"{name}_critical")
            if warning < critical:
                raise ValueError(
                    f"{name}_warning ({warning}) must not be below {name}_critical ({critical})"
                )
        return self

    def scaled(self, multiplier: float) -> "RiskThresholdSettings":
        """Return a copy with every threshold multiplied by *multiplier*."""
        if multiplier <= 0:
            raise ValueError(f"multiplier must be positive, got {multiplier}")
        data = {k: v * multiplier for k, v in self.model_dump().items()}
        return RiskThresholdSettings(**data)

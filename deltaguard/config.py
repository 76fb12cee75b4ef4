"""Engine settings from the environment.

All env vars are prefixed with ``DELTAGUARD_``. A ``.env`` file in the
working directory is read first without overriding real variables.
Numbers that are real-valued (volatility, prices) are given as decimal
strings and converted to scaled integers here, at the boundary.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

from deltaguard.circuit_breaker import BreakerConfig
from deltaguard.errors import InvalidInput, InvalidInputReason
from deltaguard.fixed_point import SCALE, to_scaled
from deltaguard.prediction_cache import PredictionCacheConfig
from deltaguard.predictor import PredictorConfig
from deltaguard.volatility import MIN_DATA_POINTS, VolatilityConfig

_PREFIX = "DELTAGUARD_"


def _as_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


def _as_scaled(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return to_scaled(value.strip())


@dataclass(frozen=True)
class EngineSettings:
    """Settings for the prediction engine.

    Scaled fields (``max_volatility``, ``max_price``) are read from the
    environment as decimals, e.g. ``DELTAGUARD_MAX_VOLATILITY=10``.
    """

    # ── Volatility estimation ──────────────────────────────────────
    history_capacity: int = 60
    min_data_points: int = MIN_DATA_POINTS
    outlier_threshold_bp: int = 3000
    outlier_lookback: int = 5
    outlier_penalty_bp: int = 500
    max_outlier_penalty_bp: int = 5000
    full_confidence_points: int = 30
    min_update_interval_seconds: int = 3600
    estimate_max_age_seconds: int = 86_400
    periods_per_year: int = 365      # 0 = infer from observation spacing
    use_ewma: bool = False
    ewma_lambda_bp: int = 9400
    max_volatility: int = 10 * SCALE
    breaker_trip_threshold: int = 3
    override_confidence_bp: int = 7000

    # ── Prediction ─────────────────────────────────────────────────
    cache_ttl_seconds: int = 600
    cache_max_entries: int = 1024
    min_horizon_seconds: int = 3600
    max_horizon_seconds: int = 365 * 86_400
    max_bound_ratio: int = 100
    max_price: int = 10**36 * SCALE
    max_price_impact_bp: int = 5000

    # ── Feed ───────────────────────────────────────────────────────
    feed_max_age_seconds: int = 3600

    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.history_capacity < MIN_DATA_POINTS:
            raise InvalidInput(
                InvalidInputReason.INVALID_SETTING,
                f"history_capacity {self.history_capacity} below {MIN_DATA_POINTS}",
            )
        if self.min_horizon_seconds > self.max_horizon_seconds:
            raise InvalidInput(
                InvalidInputReason.INVALID_SETTING,
                "min_horizon_seconds exceeds max_horizon_seconds",
            )

    def volatility_config(self) -> VolatilityConfig:
        return VolatilityConfig(
            capacity=self.history_capacity,
            min_data_points=self.min_data_points,
            outlier_threshold_bp=self.outlier_threshold_bp,
            outlier_lookback=self.outlier_lookback,
            outlier_penalty_bp=self.outlier_penalty_bp,
            max_outlier_penalty_bp=self.max_outlier_penalty_bp,
            full_confidence_points=self.full_confidence_points,
            min_update_interval_seconds=self.min_update_interval_seconds,
            estimate_max_age_seconds=self.estimate_max_age_seconds,
            periods_per_year=self.periods_per_year,
            use_ewma=self.use_ewma,
            ewma_lambda_bp=self.ewma_lambda_bp,
            max_volatility=self.max_volatility,
            breaker_trip_threshold=self.breaker_trip_threshold,
            override_confidence_bp=self.override_confidence_bp,
        )

    def breaker_config(self, name: str = "volatility") -> BreakerConfig:
        return BreakerConfig(
            name=name,
            ceiling=self.max_volatility,
            trip_threshold=self.breaker_trip_threshold,
        )

    def predictor_config(self) -> PredictorConfig:
        return PredictorConfig(
            min_horizon_seconds=self.min_horizon_seconds,
            max_horizon_seconds=self.max_horizon_seconds,
            max_bound_ratio=self.max_bound_ratio,
            max_price=self.max_price,
            max_price_impact_bp=self.max_price_impact_bp,
        )

    def cache_config(self) -> PredictionCacheConfig:
        return PredictionCacheConfig(
            ttl_seconds=self.cache_ttl_seconds,
            max_entries=self.cache_max_entries,
        )


def load_settings() -> EngineSettings:
    load_dotenv(override=False)

    def _env(name: str) -> str | None:
        return os.getenv(_PREFIX + name)

    defaults = EngineSettings()
    return EngineSettings(
        history_capacity=_as_int(_env("HISTORY_CAPACITY"), defaults.history_capacity),
        min_data_points=_as_int(_env("MIN_DATA_POINTS"), defaults.min_data_points),
        outlier_threshold_bp=_as_int(_env("OUTLIER_THRESHOLD_BP"), defaults.outlier_threshold_bp),
        outlier_lookback=_as_int(_env("OUTLIER_LOOKBACK"), defaults.outlier_lookback),
        outlier_penalty_bp=_as_int(_env("OUTLIER_PENALTY_BP"), defaults.outlier_penalty_bp),
        max_outlier_penalty_bp=_as_int(
            _env("MAX_OUTLIER_PENALTY_BP"), defaults.max_outlier_penalty_bp
        ),
        full_confidence_points=_as_int(
            _env("FULL_CONFIDENCE_POINTS"), defaults.full_confidence_points
        ),
        min_update_interval_seconds=_as_int(
            _env("MIN_UPDATE_INTERVAL_SECONDS"), defaults.min_update_interval_seconds
        ),
        estimate_max_age_seconds=_as_int(
            _env("ESTIMATE_MAX_AGE_SECONDS"), defaults.estimate_max_age_seconds
        ),
        periods_per_year=_as_int(_env("PERIODS_PER_YEAR"), defaults.periods_per_year),
        use_ewma=_as_bool(_env("USE_EWMA"), defaults.use_ewma),
        ewma_lambda_bp=_as_int(_env("EWMA_LAMBDA_BP"), defaults.ewma_lambda_bp),
        max_volatility=_as_scaled(_env("MAX_VOLATILITY"), defaults.max_volatility),
        breaker_trip_threshold=_as_int(
            _env("BREAKER_TRIP_THRESHOLD"), defaults.breaker_trip_threshold
        ),
        override_confidence_bp=_as_int(
            _env("OVERRIDE_CONFIDENCE_BP"), defaults.override_confidence_bp
        ),
        cache_ttl_seconds=_as_int(_env("CACHE_TTL_SECONDS"), defaults.cache_ttl_seconds),
        cache_max_entries=_as_int(_env("CACHE_MAX_ENTRIES"), defaults.cache_max_entries),
        min_horizon_seconds=_as_int(_env("MIN_HORIZON_SECONDS"), defaults.min_horizon_seconds),
        max_horizon_seconds=_as_int(_env("MAX_HORIZON_SECONDS"), defaults.max_horizon_seconds),
        max_bound_ratio=_as_int(_env("MAX_BOUND_RATIO"), defaults.max_bound_ratio),
        max_price=_as_scaled(_env("MAX_PRICE"), defaults.max_price),
        max_price_impact_bp=_as_int(_env("MAX_PRICE_IMPACT_BP"), defaults.max_price_impact_bp),
        feed_max_age_seconds=_as_int(
            _env("FEED_MAX_AGE_SECONDS"), defaults.feed_max_age_seconds
        ),
        log_level=os.getenv(_PREFIX + "LOG_LEVEL", defaults.log_level),
    )

"""Annualized volatility from a noisy price stream.

Observations go into a fixed-capacity ring buffer. Each one is checked
against the mean of the last few accepted prices first, so a single
corrupted or manipulated print is rejected instead of distorting the
whole estimate.

A recompute turns the buffer into log returns, takes the sample variance
(Bessel-corrected) or an exponentially weighted variance, annualizes the
square root, and caps it through the volatility circuit breaker. The
result is an immutable ``VolatilityEstimate`` that replaces the previous
one wholesale.

Usage::

    est = VolatilityEstimator(VolatilityConfig(periods_per_year=365))
    for ts, price in daily_closes:
        est.record_observation(price, ts)
    est.recompute_volatility(now=ts)
    snapshot = est.get_volatility(now=ts)
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional

from deltaguard.circuit_breaker import BreakerConfig, VolatilityCircuitBreaker
from deltaguard.errors import (
    InsufficientData,
    InvalidInput,
    InvalidInputReason,
    OutlierRejected,
    UpdateTooFrequent,
)
from deltaguard.fixed_point import (
    BASIS_POINTS,
    SCALE,
    abs_value,
    clamp,
    div,
    format_scaled,
    ln,
    mul,
    sqrt,
)

LOGGER = logging.getLogger(__name__)

SECONDS_PER_YEAR = 365 * 86_400

# Fewer points than this cannot support a meaningful sample variance.
MIN_DATA_POINTS = 7


class EstimatorState(str, Enum):
    INSUFFICIENT_DATA = "insufficient_data"
    ESTIMATING = "estimating"
    STALE = "stale"


class EstimateSource(str, Enum):
    COMPUTED = "computed"
    OVERRIDE = "override"


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VolatilityConfig:
    """Configuration for a volatility estimator.

    Parameters
    ----------
    capacity:
        Ring buffer size. Minimum 7. Default 60.
    min_data_points:
        Observations required before a recompute. Default 7.
    outlier_threshold_bp:
        Reject an observation deviating more than this from the recent
        mean. Default 3000 (30%).
    outlier_lookback:
        Number of recent accepted observations forming the reference
        mean. Default 5.
    outlier_penalty_bp:
        Confidence subtracted per outlier seen in the sample window.
        Default 500.
    max_outlier_penalty_bp:
        Cap on the total outlier penalty. Default 5000 (50%).
    full_confidence_points:
        Sample size at which the size factor reaches 100%; confidence
        scales linearly below it. Default 30.
    min_update_interval_seconds:
        Minimum spacing between recomputes. Default 3600.
    estimate_max_age_seconds:
        Estimates older than this are reported stale. Default 86400.
    periods_per_year:
        Observation periods per year for annualization. 0 infers it
        from the mean spacing of the buffered timestamps. Default 365.
    use_ewma:
        Weight recent returns more heavily. Default False.
    ewma_lambda_bp:
        EWMA decay per period in basis points. Default 9400 (0.94).
    max_volatility:
        Annualized ceiling, scaled. Default 10.0 (1000%).
    breaker_trip_threshold:
        Consecutive capped recomputes before the breaker opens.
    override_confidence_bp:
        Confidence reported while the manual override is active.
    """

    capacity: int = 60
    min_data_points: int = MIN_DATA_POINTS
    outlier_threshold_bp: int = 3000
    outlier_lookback: int = 5
    outlier_penalty_bp: int = 500
    max_outlier_penalty_bp: int = 5000
    full_confidence_points: int = 30
    min_update_interval_seconds: int = 3600
    estimate_max_age_seconds: int = 86_400
    periods_per_year: int = 365
    use_ewma: bool = False
    ewma_lambda_bp: int = 9400
    max_volatility: int = 10 * SCALE
    breaker_trip_threshold: int = 3
    override_confidence_bp: int = 7000


# ---------------------------------------------------------------------------
# Values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PriceObservation:
    price: int
    timestamp: int
    valid: bool = True


@dataclass(frozen=True)
class VolatilityEstimate:
    """Immutable volatility snapshot."""

    value: int            # Annualized, scaled
    confidence: int       # Basis points 0..10000
    data_points: int
    is_stale: bool
    computed_at: int
    source: EstimateSource = EstimateSource.COMPUTED
    capped: bool = False


# ---------------------------------------------------------------------------
# Ring buffer
# ---------------------------------------------------------------------------


class PriceHistory:
    """Fixed-capacity ring buffer of observations.

    ``current_index`` is the next slot to write. Until the buffer wraps,
    the chronological order is ``slots[:current_index]``; afterwards it
    starts at ``current_index``.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < MIN_DATA_POINTS:
            raise InvalidInput(
                InvalidInputReason.INVALID_SETTING,
                f"capacity {capacity} below minimum {MIN_DATA_POINTS}",
            )
        self._slots: List[Optional[PriceObservation]] = [None] * capacity
        self._current_index = 0
        self._is_full = False

    @property
    def capacity(self) -> int:
        return len(self._slots)

    @property
    def is_full(self) -> bool:
        return self._is_full

    def __len__(self) -> int:
        return self.capacity if self._is_full else self._current_index

    def append(self, observation: PriceObservation) -> None:
        self._slots[self._current_index] = observation
        self._current_index = (self._current_index + 1) % self.capacity
        if self._current_index == 0:
            self._is_full = True

    def chronological(self) -> List[PriceObservation]:
        if self._is_full:
            ordered = self._slots[self._current_index:] + self._slots[:self._current_index]
        else:
            ordered = self._slots[:self._current_index]
        return [obs for obs in ordered if obs is not None]

    def latest(self, count: int) -> List[PriceObservation]:
        if count <= 0:
            return []
        return self.chronological()[-count:]

    def last(self) -> Optional[PriceObservation]:
        if len(self) == 0:
            return None
        return self._slots[(self._current_index - 1) % self.capacity]

    def clear(self) -> None:
        self._slots = [None] * self.capacity
        self._current_index = 0
        self._is_full = False


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


def log_returns(prices: List[int]) -> List[int]:
    """``ln(P[i+1] / P[i])`` for consecutive prices, scaled."""
    return [ln(div(prices[i + 1], prices[i])) for i in range(len(prices) - 1)]


def sample_variance(values: List[int]) -> int:
    """Bessel-corrected variance (divides by ``n - 1``)."""
    n = len(values)
    if n < 2:
        raise InsufficientData(n, 2)
    mean = sum(values) // n if sum(values) >= 0 else -((-sum(values)) // n)
    squared = sum(mul(v - mean, v - mean) for v in values)
    return squared // (n - 1)


def ewma_variance(values: List[int], lambda_bp: int) -> int:
    """Exponentially weighted variance; the newest value has weight 1.

    Weights decay by ``lambda`` per step back in time and are normalized
    to sum to one.
    """
    n = len(values)
    if n < 2:
        raise InsufficientData(n, 2)
    total = sum(values)
    mean = total // n if total >= 0 else -((-total) // n)
    weight = SCALE
    weighted = 0
    weight_sum = 0
    for v in reversed(values):
        weighted += mul(weight, mul(v - mean, v - mean))
        weight_sum += weight
        weight = weight * lambda_bp // BASIS_POINTS
    return div(weighted, weight_sum)


# ---------------------------------------------------------------------------
# Estimator
# ---------------------------------------------------------------------------


class VolatilityEstimator:
    """Tracks one price series and produces volatility estimates.

    States: ``INSUFFICIENT_DATA`` until the first successful recompute,
    ``ESTIMATING`` while the estimate is fresh, ``STALE`` once it has
    outlived ``estimate_max_age_seconds`` with no observation since.
    A new observation moves a stale series back to ``ESTIMATING``.

    Writers (observations, recomputes, operator settings) are serialized
    by a per-series lock. Readers get immutable snapshots.
    """

    def __init__(
        self,
        config: VolatilityConfig | None = None,
        series: str = "default",
        breaker: VolatilityCircuitBreaker | None = None,
    ) -> None:
        self._config = config or VolatilityConfig()
        self._validate_config(self._config)
        self._series = series
        self._lock = threading.RLock()
        self._history = PriceHistory(self._config.capacity)
        self._breaker = breaker or VolatilityCircuitBreaker(
            BreakerConfig(
                name=f"volatility:{series}",
                ceiling=self._config.max_volatility,
                trip_threshold=self._config.breaker_trip_threshold,
            )
        )
        self._estimate: Optional[VolatilityEstimate] = None
        self._last_recompute_at: Optional[int] = None
        self._rejections: Deque[int] = deque(maxlen=self._config.capacity)
        self._override_value: Optional[int] = None
        self._override_enabled = False
        self._override_set_at = 0

    @property
    def series(self) -> str:
        return self._series

    @property
    def config(self) -> VolatilityConfig:
        return self._config

    @property
    def breaker(self) -> VolatilityCircuitBreaker:
        return self._breaker

    @property
    def data_points(self) -> int:
        return len(self._history)

    @property
    def override_enabled(self) -> bool:
        return self._override_enabled

    def observations(self) -> List[PriceObservation]:
        with self._lock:
            return self._history.chronological()

    # -------------------------------------------------------------------
    # Writers
    # -------------------------------------------------------------------

    def record_observation(self, price: int, timestamp: int | None = None) -> PriceObservation:
        """Append a price, or raise ``OutlierRejected`` leaving state intact."""
        ts = timestamp if timestamp is not None else int(time.time())
        if price <= 0:
            raise InvalidInput(
                InvalidInputReason.INVALID_OBSERVATION, f"price {price} must be positive"
            )

        with self._lock:
            last = self._history.last()
            if last is not None and ts <= last.timestamp:
                raise InvalidInput(
                    InvalidInputReason.INVALID_OBSERVATION,
                    f"timestamp {ts} not after last observation {last.timestamp}",
                )

            recent = self._history.latest(self._config.outlier_lookback)
            if recent:
                reference = sum(o.price for o in recent) // len(recent)
                deviation_bp = abs_value(price - reference) * BASIS_POINTS // reference
                if deviation_bp > self._config.outlier_threshold_bp:
                    self._rejections.append(ts)
                    LOGGER.warning(
                        "Volatility[%s]: outlier rejected price=%s mean=%s deviation=%dbp",
                        self._series,
                        format_scaled(price),
                        format_scaled(reference),
                        deviation_bp,
                    )
                    raise OutlierRejected(
                        price=price,
                        reference=reference,
                        deviation_bp=deviation_bp,
                        threshold_bp=self._config.outlier_threshold_bp,
                    )

            observation = PriceObservation(price=price, timestamp=ts)
            self._history.append(observation)
            return observation

    def recompute_volatility(self, now: int | None = None) -> VolatilityEstimate:
        """Replace the current estimate with one computed from the buffer."""
        ts = now if now is not None else int(time.time())
        with self._lock:
            if self._last_recompute_at is not None:
                elapsed = ts - self._last_recompute_at
                interval = self._config.min_update_interval_seconds
                if elapsed < interval:
                    raise UpdateTooFrequent(interval - elapsed)

            observations = self._history.chronological()
            count = len(observations)
            if count < self._config.min_data_points:
                raise InsufficientData(count, self._config.min_data_points)

            returns = log_returns([o.price for o in observations])
            if self._config.use_ewma:
                variance = ewma_variance(returns, self._config.ewma_lambda_bp)
            else:
                variance = sample_variance(returns)

            periods = self._periods_per_year(observations)
            raw = mul(sqrt(variance), sqrt(periods * SCALE))
            value, capped = self._breaker.check(raw, ts)

            outliers = self._outliers_in_window(observations[0].timestamp)
            confidence = self._confidence(count, outliers)
            if capped:
                confidence //= 2

            estimate = VolatilityEstimate(
                value=value,
                confidence=confidence,
                data_points=count,
                is_stale=False,
                computed_at=ts,
                capped=capped,
            )
            self._estimate = estimate
            self._last_recompute_at = ts

        LOGGER.info(
            "Volatility[%s]: recomputed %s annualized (points=%d outliers=%d confidence=%dbp%s)",
            self._series,
            format_scaled(value),
            count,
            outliers,
            confidence,
            " CAPPED" if capped else "",
        )
        return estimate

    # -------------------------------------------------------------------
    # Readers
    # -------------------------------------------------------------------

    def get_volatility(self, now: int | None = None) -> VolatilityEstimate:
        """Current estimate; flags staleness instead of blocking."""
        ts = now if now is not None else int(time.time())
        with self._lock:
            if self._override_enabled and self._override_value is not None:
                return VolatilityEstimate(
                    value=self._override_value,
                    confidence=self._config.override_confidence_bp,
                    data_points=len(self._history),
                    is_stale=False,
                    computed_at=self._override_set_at,
                    source=EstimateSource.OVERRIDE,
                )
            estimate = self._estimate
            if estimate is None:
                raise InsufficientData(len(self._history), self._config.min_data_points)

        if ts - estimate.computed_at > self._config.estimate_max_age_seconds:
            LOGGER.debug(
                "Volatility[%s]: estimate from %d is stale at %d",
                self._series,
                estimate.computed_at,
                ts,
            )
            return replace(estimate, is_stale=True)
        return estimate

    def state(self, now: int | None = None) -> EstimatorState:
        ts = now if now is not None else int(time.time())
        with self._lock:
            estimate = self._estimate
            last = self._history.last()
        if estimate is None:
            return EstimatorState.INSUFFICIENT_DATA
        if ts - estimate.computed_at <= self._config.estimate_max_age_seconds:
            return EstimatorState.ESTIMATING
        if last is not None and last.timestamp > estimate.computed_at:
            return EstimatorState.ESTIMATING
        return EstimatorState.STALE

    def can_recompute(self, now: int | None = None) -> bool:
        ts = now if now is not None else int(time.time())
        with self._lock:
            if len(self._history) < self._config.min_data_points:
                return False
            if self._last_recompute_at is None:
                return True
            return ts - self._last_recompute_at >= self._config.min_update_interval_seconds

    # -------------------------------------------------------------------
    # Operator controls
    # -------------------------------------------------------------------

    def set_manual_override(self, value: int, now: int | None = None) -> None:
        if value <= 0 or value > self._config.max_volatility:
            raise InvalidInput(
                InvalidInputReason.INVALID_SETTING,
                f"override volatility {value} outside (0, {self._config.max_volatility}]",
            )
        with self._lock:
            self._override_value = value
            self._override_set_at = now if now is not None else int(time.time())
        LOGGER.info("Volatility[%s]: manual override set to %s", self._series, format_scaled(value))

    def set_override_enabled(self, enabled: bool) -> None:
        with self._lock:
            if enabled and self._override_value is None:
                raise InvalidInput(
                    InvalidInputReason.INVALID_SETTING,
                    "set an override value before enabling it",
                )
            self._override_enabled = enabled
        LOGGER.info("Volatility[%s]: manual override %s", self._series, "ON" if enabled else "OFF")

    def set_outlier_threshold(self, threshold_bp: int) -> None:
        if threshold_bp <= 0:
            raise InvalidInput(
                InvalidInputReason.INVALID_SETTING, f"outlier threshold {threshold_bp}bp"
            )
        with self._lock:
            self._config = replace(self._config, outlier_threshold_bp=threshold_bp)
        LOGGER.info("Volatility[%s]: outlier threshold now %dbp", self._series, threshold_bp)

    def set_update_interval(self, seconds: int) -> None:
        if seconds < 0:
            raise InvalidInput(InvalidInputReason.INVALID_SETTING, f"update interval {seconds}s")
        with self._lock:
            self._config = replace(self._config, min_update_interval_seconds=seconds)
        LOGGER.info("Volatility[%s]: update interval now %ds", self._series, seconds)

    def reset_history(self) -> None:
        """Drop all observations and the current estimate."""
        with self._lock:
            self._history.clear()
            self._rejections.clear()
            self._estimate = None
            self._last_recompute_at = None
        LOGGER.warning("Volatility[%s]: history reset", self._series)

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------

    @staticmethod
    def _validate_config(config: VolatilityConfig) -> None:
        if config.min_data_points < MIN_DATA_POINTS:
            raise InvalidInput(
                InvalidInputReason.INVALID_SETTING,
                f"min_data_points {config.min_data_points} below {MIN_DATA_POINTS}",
            )
        if config.capacity < config.min_data_points:
            raise InvalidInput(
                InvalidInputReason.INVALID_SETTING,
                f"capacity {config.capacity} below min_data_points {config.min_data_points}",
            )
        if not 0 < config.ewma_lambda_bp < BASIS_POINTS:
            raise InvalidInput(
                InvalidInputReason.INVALID_SETTING, f"ewma lambda {config.ewma_lambda_bp}bp"
            )
        if config.full_confidence_points <= 0:
            raise InvalidInput(
                InvalidInputReason.INVALID_SETTING,
                f"full_confidence_points {config.full_confidence_points}",
            )

    def _periods_per_year(self, observations: List[PriceObservation]) -> int:
        if self._config.periods_per_year > 0:
            return self._config.periods_per_year
        span = observations[-1].timestamp - observations[0].timestamp
        mean_interval = max(1, span // (len(observations) - 1))
        return max(1, SECONDS_PER_YEAR // mean_interval)

    def _outliers_in_window(self, window_start: int) -> int:
        return sum(1 for ts in self._rejections if ts >= window_start)

    def _confidence(self, count: int, outliers: int) -> int:
        full = self._config.full_confidence_points
        base = BASIS_POINTS if count >= full else BASIS_POINTS * count // full
        penalty = min(outliers * self._config.outlier_penalty_bp, self._config.max_outlier_penalty_bp)
        return clamp(base - penalty, 0, BASIS_POINTS)


# ---------------------------------------------------------------------------
# Multiple series
# ---------------------------------------------------------------------------


class VolatilityBook:
    """One estimator per price series, created on first use.

    *breaker_config* maps a breaker name to its config; without it each
    estimator builds its breaker from the volatility config.
    """

    def __init__(
        self,
        config: VolatilityConfig | None = None,
        breaker_config: Callable[[str], BreakerConfig] | None = None,
    ) -> None:
        self._config = config or VolatilityConfig()
        self._breaker_config = breaker_config
        self._lock = threading.Lock()
        self._estimators: Dict[str, VolatilityEstimator] = {}

    def get(self, series: str) -> VolatilityEstimator:
        with self._lock:
            estimator = self._estimators.get(series)
            if estimator is None:
                breaker = None
                if self._breaker_config is not None:
                    breaker = VolatilityCircuitBreaker(self._breaker_config(f"volatility:{series}"))
                estimator = VolatilityEstimator(self._config, series=series, breaker=breaker)
                self._estimators[series] = estimator
                LOGGER.info("VolatilityBook: tracking series %s", series)
            return estimator

    def __contains__(self, series: str) -> bool:
        with self._lock:
            return series in self._estimators

    def series(self) -> List[str]:
        with self._lock:
            return sorted(self._estimators)

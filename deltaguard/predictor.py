"""Impermanent-loss predictor.

Answers "what loss should this range position expect over the horizon,
and how sure are we?" for a price range ``[lower, upper]``.

The range bounds are treated as knock-out barriers on a log-normal
price process. For a barrier ``K``::

    d2 = (ln(S/K) - sigma^2 t / 2) / (sigma sqrt(t))

The probability of finishing below the lower barrier is ``N(-d2_lower)``
and above the upper barrier ``N(d2_upper)``. Their sum is the exit
probability. The loss given exit is the closed-form IL at each barrier,
averaged with equal weight. Probability and magnitude both come from
the same volatility input.

The equal weighting is a simplification: a density-weighted average
would weight each barrier by its own exit mass.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Protocol

from deltaguard.errors import InvalidInput, InvalidInputReason, InvalidVolatility
from deltaguard.fixed_point import (
    BASIS_POINTS,
    SCALE,
    abs_value,
    apply_basis_points,
    clamp,
    div,
    format_scaled,
    ln,
    min_value,
    mul,
    normal_cdf,
    sqrt,
    to_basis_points,
)
from deltaguard.prediction_cache import PredictionCache, prediction_key
from deltaguard.price_encoding import index_to_price
from deltaguard.volatility import SECONDS_PER_YEAR, VolatilityEstimate

LOGGER = logging.getLogger(__name__)

DAY = 86_400


class VolatilitySource(Protocol):
    def get_volatility(self, now: int | None = None) -> VolatilityEstimate: ...


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PredictorConfig:
    """Configuration for the IL predictor.

    Parameters
    ----------
    min_horizon_seconds, max_horizon_seconds:
        Accepted horizon range. Default 1 hour to 365 days.
    max_bound_ratio:
        Bounds must lie within ``[price / ratio, price * ratio]``.
        Default 100.
    max_price:
        Largest accepted current price, scaled.
    max_price_impact_bp:
        Cap on single-trade price impact. Default 5000 (50%).
    stale_penalty_bp:
        Confidence reduction for a stale volatility estimate.
    long_horizon_seconds, very_long_horizon_seconds:
        Horizons beyond these each apply ``horizon_penalty_bp``.
    edge_distance_bp:
        Price within this distance of a barrier applies
        ``edge_penalty_bp``.
    """

    min_horizon_seconds: int = 3600
    max_horizon_seconds: int = 365 * DAY
    max_bound_ratio: int = 100
    max_price: int = 10**36 * SCALE
    max_price_impact_bp: int = 5000
    stale_penalty_bp: int = 3000
    long_horizon_seconds: int = 30 * DAY
    very_long_horizon_seconds: int = 90 * DAY
    horizon_penalty_bp: int = 1000
    edge_distance_bp: int = 1000
    edge_penalty_bp: int = 1500


# ---------------------------------------------------------------------------
# Values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PredictionRequest:
    current_price: int
    lower_bound: int
    upper_bound: int
    horizon_seconds: int

    def __post_init__(self) -> None:
        if self.lower_bound >= self.upper_bound:
            raise InvalidInput(
                InvalidInputReason.INVERTED_BOUNDS,
                f"lower {self.lower_bound} >= upper {self.upper_bound}",
            )

    def cache_key(self) -> str:
        return prediction_key(
            self.current_price, self.lower_bound, self.upper_bound, self.horizon_seconds
        )


@dataclass(frozen=True)
class PredictionResult:
    expected_il: int        # Basis points
    exit_probability: int   # Basis points 0..10000
    confidence: int         # Basis points 0..10000
    volatility: int         # Annualized, scaled, as used
    computed_at: int


@dataclass(frozen=True)
class PredictionEvent:
    request: PredictionRequest
    result: PredictionResult


@dataclass(frozen=True)
class PerturbationResult:
    price_impact_bp: int
    new_price: int
    exits_range: bool
    il_bp: int


# ---------------------------------------------------------------------------
# Closed-form IL
# ---------------------------------------------------------------------------


def impermanent_loss(price_ratio: int) -> int:
    """``|2 sqrt(r) / (1 + r) - 1|`` as a scaled fraction."""
    if price_ratio < 0:
        raise InvalidInput(InvalidInputReason.ZERO_PRICE, f"price ratio {price_ratio}")
    pool_value = div(2 * sqrt(price_ratio), SCALE + price_ratio)
    return abs_value(pool_value - SCALE)


def calculate_realized_il(initial_price: int, current_price: int) -> int:
    """Exact IL in basis points for a move from *initial* to *current*."""
    if initial_price <= 0 or current_price <= 0:
        raise InvalidInput(
            InvalidInputReason.ZERO_PRICE,
            f"prices must be positive (initial={initial_price}, current={current_price})",
        )
    return to_basis_points(impermanent_loss(div(current_price, initial_price)))


# ---------------------------------------------------------------------------
# Exit probability
# ---------------------------------------------------------------------------


def horizon_in_years(horizon_seconds: int) -> int:
    return horizon_seconds * SCALE // SECONDS_PER_YEAR


def d2(current_price: int, barrier: int, volatility: int, years: int) -> int:
    sigma_sqrt_t = mul(volatility, sqrt(years))
    if sigma_sqrt_t == 0:
        raise InvalidVolatility(f"volatility {volatility} too small to resolve over horizon")
    half_variance = mul(mul(volatility, volatility), years) // 2
    return div(ln(div(current_price, barrier)) - half_variance, sigma_sqrt_t)


def exit_probability(
    current_price: int,
    lower_bound: int,
    upper_bound: int,
    volatility: int,
    horizon_seconds: int,
) -> int:
    """Probability (scaled) that price ends outside ``[lower, upper]``."""
    if volatility <= 0:
        raise InvalidVolatility(f"volatility must be positive, got {volatility}")
    years = horizon_in_years(horizon_seconds)
    below = SCALE - normal_cdf(d2(current_price, lower_bound, volatility, years))
    above = normal_cdf(d2(current_price, upper_bound, volatility, years))
    return clamp(below + above, 0, SCALE)


# ---------------------------------------------------------------------------
# Predictor
# ---------------------------------------------------------------------------


class ILPredictor:
    """Expected-loss service over a volatility source and a result cache.

    ``predict`` only reads: the volatility snapshot is immutable and the
    cache serializes its own writes, so concurrent callers need no
    coordination.
    """

    def __init__(
        self,
        volatility: VolatilitySource,
        config: PredictorConfig | None = None,
        cache: PredictionCache | None = None,
    ) -> None:
        self._volatility = volatility
        self._config = config or PredictorConfig()
        self._cache = cache if cache is not None else PredictionCache()
        self._listeners: List[Callable[[PredictionEvent], None]] = []

    @property
    def config(self) -> PredictorConfig:
        return self._config

    @property
    def cache(self) -> PredictionCache:
        return self._cache

    def add_listener(self, listener: Callable[[PredictionEvent], None]) -> None:
        self._listeners.append(listener)

    def predict(
        self,
        current_price: int,
        lower_bound: int,
        upper_bound: int,
        horizon_seconds: int,
        now: int | None = None,
    ) -> PredictionResult:
        request = PredictionRequest(current_price, lower_bound, upper_bound, horizon_seconds)
        return self.predict_request(request, now=now)

    def predict_for_indices(
        self,
        current_price: int,
        lower_index: int,
        upper_index: int,
        horizon_seconds: int,
        now: int | None = None,
    ) -> PredictionResult:
        """``predict`` for a range given as venue price-range indices."""
        if lower_index >= upper_index:
            raise InvalidInput(
                InvalidInputReason.INVERTED_BOUNDS,
                f"lower index {lower_index} >= upper index {upper_index}",
            )
        request = PredictionRequest(
            current_price,
            index_to_price(lower_index),
            index_to_price(upper_index),
            horizon_seconds,
        )
        return self.predict_request(request, now=now)

    def predict_request(self, request: PredictionRequest, now: int | None = None) -> PredictionResult:
        ts = now if now is not None else int(time.time())
        self.validate(request)

        key = request.cache_key()
        cached = self._cache.get(key, now=ts)
        if cached is not None:
            return cached

        estimate = self._volatility.get_volatility(ts)
        if estimate.value <= 0:
            raise InvalidVolatility(f"volatility estimate is {estimate.value}")

        result = self._compute(request, estimate, ts)
        self._cache.store(key, result, now=ts)

        LOGGER.info(
            "ILPredictor: price=%s range=[%s, %s] horizon=%dd vol=%s -> "
            "exit=%dbp expected_il=%dbp confidence=%dbp",
            format_scaled(request.current_price, 2),
            format_scaled(request.lower_bound, 2),
            format_scaled(request.upper_bound, 2),
            request.horizon_seconds // DAY,
            format_scaled(estimate.value, 4),
            result.exit_probability,
            result.expected_il,
            result.confidence,
        )
        event = PredictionEvent(request=request, result=result)
        for listener in list(self._listeners):
            listener(event)
        return result

    def predict_from_perturbation(
        self,
        current_price: int,
        lower_bound: int,
        upper_bound: int,
        price_delta: int,
        liquidity_depth: int,
    ) -> PerturbationResult:
        """Pre-trade check: would one trade of *price_delta* leave the range?

        Impact is ``|delta| / depth`` capped at ``max_price_impact_bp``;
        the sign of *price_delta* gives the direction of the move.
        """
        if current_price <= 0:
            raise InvalidInput(InvalidInputReason.ZERO_PRICE, f"price {current_price}")
        if lower_bound <= 0 or upper_bound <= 0:
            raise InvalidInput(InvalidInputReason.ZERO_BOUND)
        if lower_bound >= upper_bound:
            raise InvalidInput(
                InvalidInputReason.INVERTED_BOUNDS, f"lower {lower_bound} >= upper {upper_bound}"
            )
        if liquidity_depth <= 0:
            raise InvalidInput(InvalidInputReason.ZERO_LIQUIDITY, f"depth {liquidity_depth}")

        max_impact = self._config.max_price_impact_bp * SCALE // BASIS_POINTS
        impact = min_value(abs_value(price_delta) * SCALE // liquidity_depth, max_impact)
        move = mul(current_price, impact)
        new_price = current_price + move if price_delta >= 0 else current_price - move

        exits = new_price < lower_bound or new_price > upper_bound
        il_bp = calculate_realized_il(current_price, new_price) if exits else 0
        if exits:
            LOGGER.warning(
                "ILPredictor: trade of %s moves price %s -> %s outside [%s, %s] (il=%dbp)",
                format_scaled(price_delta, 2),
                format_scaled(current_price, 2),
                format_scaled(new_price, 2),
                format_scaled(lower_bound, 2),
                format_scaled(upper_bound, 2),
                il_bp,
            )
        return PerturbationResult(
            price_impact_bp=to_basis_points(impact),
            new_price=new_price,
            exits_range=exits,
            il_bp=il_bp,
        )

    def validate(self, request: PredictionRequest) -> None:
        cfg = self._config
        price = request.current_price
        if price <= 0:
            raise InvalidInput(InvalidInputReason.ZERO_PRICE, f"price {price}")
        if price > cfg.max_price:
            raise InvalidInput(
                InvalidInputReason.PRICE_OUT_OF_RANGE, f"price {price} above {cfg.max_price}"
            )
        if request.lower_bound <= 0 or request.upper_bound <= 0:
            raise InvalidInput(
                InvalidInputReason.ZERO_BOUND,
                f"bounds [{request.lower_bound}, {request.upper_bound}]",
            )
        if (
            request.lower_bound * cfg.max_bound_ratio < price
            or request.upper_bound > price * cfg.max_bound_ratio
        ):
            raise InvalidInput(
                InvalidInputReason.BOUND_RATIO_OUT_OF_RANGE,
                f"bounds must lie within {cfg.max_bound_ratio}x of the price",
            )
        if request.horizon_seconds < cfg.min_horizon_seconds:
            raise InvalidInput(
                InvalidInputReason.HORIZON_TOO_SHORT,
                f"{request.horizon_seconds}s < {cfg.min_horizon_seconds}s",
            )
        if request.horizon_seconds > cfg.max_horizon_seconds:
            raise InvalidInput(
                InvalidInputReason.HORIZON_TOO_LONG,
                f"{request.horizon_seconds}s > {cfg.max_horizon_seconds}s",
            )

    def _compute(
        self,
        request: PredictionRequest,
        estimate: VolatilityEstimate,
        now: int,
    ) -> PredictionResult:
        price = request.current_price
        probability = exit_probability(
            price,
            request.lower_bound,
            request.upper_bound,
            estimate.value,
            request.horizon_seconds,
        )
        il_lower = impermanent_loss(div(request.lower_bound, price))
        il_upper = impermanent_loss(div(request.upper_bound, price))
        average_il = (il_lower + il_upper) // 2

        return PredictionResult(
            expected_il=to_basis_points(mul(probability, average_il)),
            exit_probability=to_basis_points(probability),
            confidence=self._confidence(request, estimate),
            volatility=estimate.value,
            computed_at=now,
        )

    def _confidence(self, request: PredictionRequest, estimate: VolatilityEstimate) -> int:
        cfg = self._config
        confidence = estimate.confidence
        if estimate.is_stale:
            confidence = apply_basis_points(confidence, BASIS_POINTS - cfg.stale_penalty_bp)
        if request.horizon_seconds > cfg.long_horizon_seconds:
            confidence = apply_basis_points(confidence, BASIS_POINTS - cfg.horizon_penalty_bp)
        if request.horizon_seconds > cfg.very_long_horizon_seconds:
            confidence = apply_basis_points(confidence, BASIS_POINTS - cfg.horizon_penalty_bp)
        if self._near_barrier(request):
            confidence = apply_basis_points(confidence, BASIS_POINTS - cfg.edge_penalty_bp)
        return clamp(confidence, 0, BASIS_POINTS)

    def _near_barrier(self, request: PredictionRequest) -> bool:
        price = request.current_price
        threshold = self._config.edge_distance_bp
        for barrier in (request.lower_bound, request.upper_bound):
            if abs_value(price - barrier) * BASIS_POINTS // price < threshold:
                return True
        return False

"""Analysis helpers for the simulator and the rebalancing layer.

Everything here except ``simulate_il_over_time`` stays in fixed point.
The Monte Carlo sampler draws log-normal prices with numpy; it is a
what-if tool for people, not an input to any prediction.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import List, Tuple

import numpy as np

from deltaguard.errors import InvalidInput, InvalidInputReason, MathDomainError
from deltaguard.fixed_point import (
    BASIS_POINTS,
    SCALE,
    apply_basis_points,
    div,
    from_basis_points,
    max_value,
    min_value,
    mul,
    sqrt,
    to_basis_points,
)
from deltaguard.predictor import impermanent_loss

LOGGER = logging.getLogger(__name__)

DAYS_PER_YEAR = 365


# ---------------------------------------------------------------------------
# IL curve
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CurvePoint:
    ratio_bp: int   # Price ratio, 10000 = unchanged
    price: int      # Scaled
    il_bp: int


def il_curve(
    initial_price: int,
    points: int = 25,
    min_ratio_bp: int = 2000,
    max_ratio_bp: int = 50_000,
) -> List[CurvePoint]:
    """IL at evenly spaced price ratios from *min_ratio_bp* to *max_ratio_bp*."""
    if initial_price <= 0:
        raise InvalidInput(InvalidInputReason.ZERO_PRICE, f"price {initial_price}")
    if points < 2 or not 0 < min_ratio_bp < max_ratio_bp:
        raise InvalidInput(
            InvalidInputReason.INVALID_SETTING,
            f"points={points} ratios=[{min_ratio_bp}, {max_ratio_bp}]",
        )
    curve = []
    span = max_ratio_bp - min_ratio_bp
    for i in range(points):
        ratio_bp = min_ratio_bp + span * i // (points - 1)
        ratio = from_basis_points(ratio_bp)
        curve.append(
            CurvePoint(
                ratio_bp=ratio_bp,
                price=mul(initial_price, ratio),
                il_bp=to_basis_points(impermanent_loss(ratio)),
            )
        )
    return curve


def il_to_price_ratio(il_bp: int) -> Tuple[int, int]:
    """The two price ratios (below and above 1) that produce *il_bp*.

    Solves ``1 - L = 2s / (1 + s^2)`` for ``s = sqrt(r)``. The roots are
    reciprocal, so the ratios are too.
    """
    if not 0 <= il_bp < BASIS_POINTS:
        raise MathDomainError(f"IL of {il_bp}bp has no finite price ratio")
    a = SCALE - from_basis_points(il_bp)
    discriminant = sqrt(SCALE - mul(a, a))
    s_low = div(SCALE - discriminant, a)
    s_high = div(SCALE + discriminant, a)
    return mul(s_low, s_low), mul(s_high, s_high)


# ---------------------------------------------------------------------------
# Range recommendation and risk
# ---------------------------------------------------------------------------


class RangeStrategy(str, Enum):
    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


# (lower, upper) multipliers in basis points of the current price.
_STRATEGY_MULTIPLIERS = {
    RangeStrategy.CONSERVATIVE: (8500, 11_500),
    RangeStrategy.MODERATE: (7500, 13_300),
    RangeStrategy.AGGRESSIVE: (6000, 16_700),
}

# The lower bound never goes below 5% of the price.
_MAX_LOWER_DISTANCE = from_basis_points(9500)


@dataclass(frozen=True)
class RangeRecommendation:
    strategy: RangeStrategy
    lower: int
    upper: int


def recommend_range(
    price: int,
    volatility: int,
    strategy: RangeStrategy | str = RangeStrategy.MODERATE,
) -> RangeRecommendation:
    """Range around *price*, wider for more volatile assets.

    Both distances from the price scale by ``1 + (vol - 0.5) / 2``, so a
    50% volatility asset gets the base multipliers.
    """
    if price <= 0:
        raise InvalidInput(InvalidInputReason.ZERO_PRICE, f"price {price}")
    if volatility < 0:
        raise InvalidInput(InvalidInputReason.INVALID_SETTING, f"volatility {volatility}")
    strategy = RangeStrategy(strategy)
    lower_bp, upper_bp = _STRATEGY_MULTIPLIERS[strategy]

    adjustment = max_value(SCALE + (volatility - SCALE // 2) // 2, SCALE // 4)
    lower_distance = min_value(
        mul(from_basis_points(BASIS_POINTS - lower_bp), adjustment), _MAX_LOWER_DISTANCE
    )
    upper_distance = mul(from_basis_points(upper_bp - BASIS_POINTS), adjustment)

    return RangeRecommendation(
        strategy=strategy,
        lower=price - mul(price, lower_distance),
        upper=price + mul(price, upper_distance),
    )


class RiskLevel(str, Enum):
    SAFE = "safe"
    MODERATE = "moderate"
    HIGH = "high"
    CRITICAL = "critical"


def risk_level(expected_il_bp: int) -> RiskLevel:
    if expected_il_bp < 200:
        return RiskLevel.SAFE
    if expected_il_bp < 500:
        return RiskLevel.MODERATE
    if expected_il_bp < 1000:
        return RiskLevel.HIGH
    return RiskLevel.CRITICAL


# ---------------------------------------------------------------------------
# Fees, PnL and the stay-or-move decision
# ---------------------------------------------------------------------------


def project_fee_earnings(deposit: int, fee_apy_bp: int, days: int) -> int:
    """Simple (non-compounding) fee income on *deposit* over *days*, scaled."""
    if days < 0:
        raise InvalidInput(InvalidInputReason.INVALID_SETTING, f"days {days}")
    return deposit * fee_apy_bp * days // (BASIS_POINTS * DAYS_PER_YEAR)


@dataclass(frozen=True)
class NetPnL:
    fees: int       # Scaled
    il_loss: int    # Scaled
    net: int        # Scaled, signed
    net_apy_bp: int


def net_pnl(deposit: int, fee_apy_bp: int, il_bp: int, days: int) -> NetPnL:
    if deposit <= 0:
        raise InvalidInput(InvalidInputReason.ZERO_LIQUIDITY, f"deposit {deposit}")
    if days <= 0:
        raise InvalidInput(InvalidInputReason.INVALID_SETTING, f"days {days}")
    fees = project_fee_earnings(deposit, fee_apy_bp, days)
    il_loss = apply_basis_points(deposit, il_bp)
    net = fees - il_loss
    annualized = net * BASIS_POINTS * DAYS_PER_YEAR
    period = deposit * days
    net_apy_bp = annualized // period if annualized >= 0 else -((-annualized) // period)
    return NetPnL(fees=fees, il_loss=il_loss, net=net, net_apy_bp=net_apy_bp)


@dataclass(frozen=True)
class RebalanceDecision:
    should_rebalance: bool
    net_return_bp: int
    threshold_bp: int
    recommendation: str


def rebalance_decision(
    fee_apy_bp: int,
    expected_il_bp: int,
    safe_yield_bp: int = 350,
    margin_bp: int = 200,
) -> RebalanceDecision:
    """Stay deployed only while fees net of expected IL beat the safe yield plus a margin."""
    net_return_bp = fee_apy_bp - expected_il_bp
    threshold_bp = safe_yield_bp + margin_bp
    should_rebalance = net_return_bp < threshold_bp
    if should_rebalance:
        recommendation = (
            f"Move to safe yield ({safe_yield_bp / 100:.2f}% APY): net LP return "
            f"{net_return_bp / 100:.2f}% is below the {threshold_bp / 100:.2f}% threshold."
        )
    else:
        recommendation = (
            f"Stay deployed: net LP return {net_return_bp / 100:.2f}% beats safe yield "
            f"by {(net_return_bp - safe_yield_bp) / 100:.2f}%."
        )
    return RebalanceDecision(
        should_rebalance=should_rebalance,
        net_return_bp=net_return_bp,
        threshold_bp=threshold_bp,
        recommendation=recommendation,
    )


# ---------------------------------------------------------------------------
# Monte Carlo
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SimulationStep:
    day: int
    avg_il_bp: float
    max_il_bp: float
    min_il_bp: float
    exit_fraction: float  # Share of paths outside [lower, upper]


def simulate_il_over_time(
    price: int,
    lower: int,
    upper: int,
    volatility: int,
    days: int,
    simulations: int = 1000,
    seed: int | None = None,
    steps: int = 20,
) -> List[SimulationStep]:
    """Sample log-normal prices at up to *steps* + 1 days from 0 to *days*.

    Each step draws ``simulations`` independent terminal prices with zero
    drift in price (log drift ``-sigma^2 t / 2``).
    """
    if price <= 0:
        raise InvalidInput(InvalidInputReason.ZERO_PRICE, f"price {price}")
    if lower >= upper:
        raise InvalidInput(InvalidInputReason.INVERTED_BOUNDS, f"lower {lower} >= upper {upper}")
    if days <= 0 or simulations <= 0 or steps <= 0:
        raise InvalidInput(
            InvalidInputReason.INVALID_SETTING,
            f"days={days} simulations={simulations} steps={steps}",
        )

    rng = np.random.default_rng(seed)
    sigma = volatility / SCALE
    lower_ratio = lower / price
    upper_ratio = upper / price
    stride = max(1, math.ceil(days / steps))

    results: List[SimulationStep] = []
    for day in range(0, days + 1, stride):
        t = day / DAYS_PER_YEAR
        log_returns = rng.normal(-0.5 * sigma * sigma * t, sigma * math.sqrt(t), simulations)
        ratios = np.exp(log_returns)
        il = np.abs(2.0 * np.sqrt(ratios) / (1.0 + ratios) - 1.0) * BASIS_POINTS
        outside = (ratios < lower_ratio) | (ratios > upper_ratio)
        results.append(
            SimulationStep(
                day=day,
                avg_il_bp=float(np.mean(il)),
                max_il_bp=float(np.max(il)),
                min_il_bp=float(np.min(il)),
                exit_fraction=float(np.mean(outside)),
            )
        )

    LOGGER.debug(
        "simulate_il_over_time: %d steps x %d paths (seed=%s)", len(results), simulations, seed
    )
    return results

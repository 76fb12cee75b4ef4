"""Typed errors raised by the prediction engine.

Every failure is raised where it is detected and carries the values
needed to act on it. Nothing in the core catches these: callers decide
whether to wait, accumulate more data, or fix their inputs.
"""

from __future__ import annotations

from enum import Enum


class DeltaGuardError(Exception):
    """Base class for all engine errors."""


# ---------------------------------------------------------------------------
# Math kernel
# ---------------------------------------------------------------------------


class MathDomainError(DeltaGuardError, ValueError):
    """Input lies outside the domain of a fixed-point function."""


class MathOverflowError(DeltaGuardError, OverflowError):
    """Result would not fit the fixed-point representation."""


# ---------------------------------------------------------------------------
# Caller-correctable input errors
# ---------------------------------------------------------------------------


class InvalidInputReason(str, Enum):
    ZERO_PRICE = "zero_price"
    PRICE_OUT_OF_RANGE = "price_out_of_range"
    ZERO_BOUND = "zero_bound"
    INVERTED_BOUNDS = "inverted_bounds"
    BOUND_RATIO_OUT_OF_RANGE = "bound_ratio_out_of_range"
    HORIZON_TOO_SHORT = "horizon_too_short"
    HORIZON_TOO_LONG = "horizon_too_long"
    ZERO_LIQUIDITY = "zero_liquidity"
    INVALID_OBSERVATION = "invalid_observation"
    INVALID_SETTING = "invalid_setting"


class InvalidInput(DeltaGuardError, ValueError):
    """A request violated one of the input constraints."""

    def __init__(self, reason: InvalidInputReason, message: str = "") -> None:
        self.reason = reason
        super().__init__(f"{reason.value}: {message}" if message else reason.value)


class InvalidVolatility(DeltaGuardError, ValueError):
    """Volatility of zero makes the exit-probability model degenerate."""


# ---------------------------------------------------------------------------
# Data-integrity and rate errors
# ---------------------------------------------------------------------------


class OutlierRejected(DeltaGuardError):
    """Observation deviated too far from the recent accepted mean."""

    def __init__(
        self,
        price: int,
        reference: int,
        deviation_bp: int,
        threshold_bp: int,
    ) -> None:
        self.price = price
        self.reference = reference
        self.deviation_bp = deviation_bp
        self.threshold_bp = threshold_bp
        super().__init__(
            f"price {price} deviates {deviation_bp}bp from recent mean "
            f"{reference} (threshold {threshold_bp}bp)"
        )


class UpdateTooFrequent(DeltaGuardError):
    """Recompute requested before the minimum update interval elapsed."""

    def __init__(self, seconds_remaining: int) -> None:
        self.seconds_remaining = seconds_remaining
        super().__init__(f"next recompute allowed in {seconds_remaining}s")


class InsufficientData(DeltaGuardError):
    """Not enough observations for a meaningful estimate."""

    def __init__(self, have: int, need: int) -> None:
        self.have = have
        self.need = need
        super().__init__(f"have {have} observations, need {need}")


class StalePriceError(DeltaGuardError):
    """Price feed returned a tick older than the configured bound."""

    def __init__(self, age_seconds: int, max_age_seconds: int) -> None:
        self.age_seconds = age_seconds
        self.max_age_seconds = max_age_seconds
        super().__init__(
            f"latest price is {age_seconds}s old (max {max_age_seconds}s)"
        )


class EnginePaused(DeltaGuardError):
    """Operator has paused the engine."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"engine paused: {reason}" if reason else "engine paused")

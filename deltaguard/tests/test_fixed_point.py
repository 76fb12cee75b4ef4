"""Tests for the fixed-point math kernel."""

from __future__ import annotations

import math
from decimal import Decimal
from unittest import mock

import numpy as np
import pytest

from deltaguard import fixed_point
from deltaguard.errors import MathDomainError, MathOverflowError
from deltaguard.fixed_point import (
    EXP_MAX_INPUT,
    HALF_SCALE,
    LN2,
    SCALE,
    clamp,
    div,
    exp,
    format_scaled,
    from_basis_points,
    ln,
    max_value,
    min_value,
    mul,
    normal_cdf,
    sqrt,
    to_basis_points,
    to_scaled,
)

S = SCALE


# ---------------------------------------------------------------------------
# Arithmetic
# ---------------------------------------------------------------------------


class TestArithmetic:
    def test_mul(self) -> None:
        assert mul(2 * S, 3 * S) == 6 * S
        assert mul(-S, HALF_SCALE) == -HALF_SCALE

    def test_mul_truncates_toward_zero(self) -> None:
        assert mul(1, 1) == 0
        assert mul(-1, 1) == 0
        assert mul(-3, S // 2) == -1

    def test_div(self) -> None:
        assert div(S, 3 * S) == 333_333_333_333_333_333
        assert div(-S, 3 * S) == -333_333_333_333_333_333
        assert div(6 * S, 2 * S) == 3 * S

    def test_div_by_zero(self) -> None:
        with pytest.raises(MathDomainError):
            div(S, 0)

    def test_min_max(self) -> None:
        assert min_value(3, -2) == -2
        assert max_value(3, -2) == 3

    def test_clamp(self) -> None:
        assert clamp(15, 0, 10) == 10
        assert clamp(-5, 0, 10) == 0
        assert clamp(7, 0, 10) == 7

    def test_clamp_inverted_bounds(self) -> None:
        with pytest.raises(MathDomainError):
            clamp(5, 10, 0)


# ---------------------------------------------------------------------------
# Conversions
# ---------------------------------------------------------------------------


class TestConversions:
    def test_to_scaled(self) -> None:
        assert to_scaled(2) == 2 * S
        assert to_scaled("1.5") == 1_500_000_000_000_000_000
        assert to_scaled(Decimal("0.1")) == 10**17
        assert to_scaled("-1.5") == -1_500_000_000_000_000_000

    def test_to_scaled_truncates(self) -> None:
        assert to_scaled("0.0000000000000000019") == 1

    def test_to_scaled_refuses_float(self) -> None:
        with pytest.raises(TypeError):
            to_scaled(1.5)  # type: ignore[arg-type]
        with pytest.raises(TypeError):
            to_scaled(True)

    def test_to_scaled_rejects_garbage(self) -> None:
        with pytest.raises(ValueError):
            to_scaled("abc")
        with pytest.raises(ValueError):
            to_scaled("inf")

    def test_format_scaled(self) -> None:
        assert format_scaled(1_234_567_000_000_000_000) == "1.234567"
        assert format_scaled(-HALF_SCALE, 2) == "-0.50"
        assert format_scaled(7 * S, 0) == "7"

    def test_basis_points(self) -> None:
        assert to_basis_points(HALF_SCALE) == 5000
        assert from_basis_points(2500) == S // 4

    def test_basis_points_round_half_away_from_zero(self) -> None:
        assert to_basis_points(5 * 10**13) == 1
        assert to_basis_points(-5 * 10**13) == -1
        assert to_basis_points(4 * 10**13) == 0


# ---------------------------------------------------------------------------
# ln
# ---------------------------------------------------------------------------


class TestLn:
    def test_ln_one_is_exactly_zero(self) -> None:
        assert ln(S) == 0

    def test_ln_two(self) -> None:
        assert abs(ln(2 * S) - LN2) < 100

    def test_domain(self) -> None:
        with pytest.raises(MathDomainError):
            ln(0)
        with pytest.raises(MathDomainError):
            ln(-S)

    @pytest.mark.parametrize("x", ["0.001", "0.5", "0.9999", "1.5", "10", "12345.678", "1000000"])
    def test_matches_reference(self, x: str) -> None:
        expected = float(np.log(float(x)))
        assert abs(ln(to_scaled(x)) / S - expected) < 1e-12

    def test_sign(self) -> None:
        assert ln(S // 2) < 0
        assert ln(3 * S) > 0


# ---------------------------------------------------------------------------
# sqrt
# ---------------------------------------------------------------------------


class TestSqrt:
    def test_zero(self) -> None:
        assert sqrt(0) == 0

    def test_exact_squares(self) -> None:
        assert sqrt(4 * S) == 2 * S
        assert sqrt(S) == S
        assert sqrt(S // 4) == S // 2

    def test_sqrt_two_floor(self) -> None:
        assert sqrt(2 * S) == 1_414_213_562_373_095_048

    def test_negative(self) -> None:
        with pytest.raises(MathDomainError):
            sqrt(-1)

    @pytest.mark.parametrize("x", ["0.0001", "0.3", "2", "17.25", "98765.4321"])
    def test_square_round_trip(self, x: str) -> None:
        value = to_scaled(x)
        root = sqrt(value)
        assert abs(mul(root, root) - value) / value < 1e-12


# ---------------------------------------------------------------------------
# exp
# ---------------------------------------------------------------------------


class TestExp:
    def test_exp_zero(self) -> None:
        assert exp(0) == S

    def test_exp_ln2_is_two(self) -> None:
        assert exp(LN2) == 2 * S

    def test_exp_one(self) -> None:
        assert abs(exp(S) / S - math.e) < 1e-12

    def test_negative_inverts(self) -> None:
        product = mul(exp(3 * S), exp(-3 * S))
        assert abs(product - S) < 10**4

    def test_overflow(self) -> None:
        with pytest.raises(MathOverflowError):
            exp(EXP_MAX_INPUT + 1)

    def test_running_total_checked_against_ceiling(self) -> None:
        with mock.patch.object(fixed_point, "MAX_SCALED", 10 * S):
            assert abs(exp(2 * S) / S - math.exp(2)) < 1e-12
            with pytest.raises(MathOverflowError):
                exp(3 * S)

    def test_underflow_to_zero(self) -> None:
        assert exp(-43 * S) == 0

    @pytest.mark.parametrize("x", ["-5", "-1", "0.5", "3", "20", "88.7"])
    def test_ln_exp_round_trip(self, x: str) -> None:
        value = to_scaled(x)
        assert abs(ln(exp(value)) - value) / abs(value) < 1e-9

    @pytest.mark.parametrize("x", ["-2.5", "0.1", "4", "30"])
    def test_matches_reference(self, x: str) -> None:
        expected = float(np.exp(float(x)))
        assert abs(exp(to_scaled(x)) / S - expected) / expected < 1e-12


# ---------------------------------------------------------------------------
# normal CDF
# ---------------------------------------------------------------------------


def _reference_cdf(x: float) -> float:
    return 0.5 * (1.0 + math.erf(x / math.sqrt(2.0)))


class TestNormalCdf:
    def test_half_at_zero(self) -> None:
        assert normal_cdf(0) == HALF_SCALE

    def test_saturation(self) -> None:
        assert normal_cdf(10 * S) == S
        assert normal_cdf(11 * S) == S
        assert normal_cdf(-10 * S) == 0
        assert normal_cdf(-25 * S) == 0

    @pytest.mark.parametrize("x", ["0.001", "0.5", "1", "1.96", "3.2", "7.5"])
    def test_symmetry(self, x: str) -> None:
        value = to_scaled(x)
        assert normal_cdf(value) + normal_cdf(-value) == S

    def test_monotone(self) -> None:
        grid = [to_scaled(str(Decimal(k) / 4)) for k in range(-32, 33)]
        values = [normal_cdf(x) for x in grid]
        assert all(a <= b for a, b in zip(values, values[1:]))

    @pytest.mark.parametrize("x", [-3.0, -1.5, -0.5, 0.25, 1.0, 1.96, 3.0])
    def test_accuracy(self, x: float) -> None:
        got = normal_cdf(to_scaled(repr(x))) / S
        assert abs(got - _reference_cdf(x)) < 1e-7

    def test_range(self) -> None:
        for k in range(-12, 13):
            value = normal_cdf(k * S)
            assert 0 <= value <= S

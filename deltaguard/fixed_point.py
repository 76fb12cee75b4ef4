"""Deterministic fixed-point math kernel.

Every real number in the engine is a plain ``int`` carrying an implicit
scale of ``SCALE = 10**18`` (a "scaled value"). The functions here give
bit-for-bit identical results on every platform because no native
floating point is involved anywhere.

Error bounds (relative, over the ranges the engine uses):

- ``ln``: range-reduced into [0.5, 2], then the atanh series
  ``2*(z + z^3/3 + z^5/5 + ...)`` with ``z = (y-1)/(y+1)``, |z| <= 1/3.
  Terms shrink by at least 9x each step, so the series reaches the
  1e-18 resolution in about 20 terms. Error ~1e-17.
- ``exp``: range-reduced by ``ln(2)`` into [0, ln 2), Taylor series
  ``sum r^i/i!``, then shifted back. Error ~1e-16 relative.
- ``sqrt``: Babylonian iteration on ``x * SCALE``; exact floor.
- ``normal_cdf``: Abramowitz & Stegun 26.2.17, absolute error < 7.5e-8.

Domain and overflow guards raise typed errors instead of saturating.
The only intentional saturation is ``normal_cdf`` beyond +/-10.
"""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal, InvalidOperation

from deltaguard.errors import MathDomainError, MathOverflowError

SCALE = 10**18
HALF_SCALE = SCALE // 2
BASIS_POINTS = 10_000

# Largest value the representation admits (signed 256-bit).
MAX_SCALED = 2**255 - 1

LN2 = 693_147_180_559_945_309

# e^130 * 1e18 still fits in MAX_SCALED; below e^-42 the result is < 1 unit.
EXP_MAX_INPUT = 130 * SCALE
EXP_MIN_INPUT = -42 * SCALE

LN_MAX_TERMS = 40
EXP_MAX_TERMS = 40

CDF_CLAMP = 10 * SCALE

# Abramowitz & Stegun 26.2.17 coefficients.
_CDF_P = 231_641_900_000_000_000
_CDF_B1 = 319_381_530_000_000_000
_CDF_B2 = -356_563_782_000_000_000
_CDF_B3 = 1_781_477_937_000_000_000
_CDF_B4 = -1_821_255_978_000_000_000
_CDF_B5 = 1_330_274_429_000_000_000
_INV_SQRT_2PI = 398_942_280_401_432_678


# ---------------------------------------------------------------------------
# Arithmetic helpers
# ---------------------------------------------------------------------------


def _tdiv(numerator: int, denominator: int) -> int:
    """Integer division truncating toward zero."""
    quotient = abs(numerator) // abs(denominator)
    if (numerator < 0) != (denominator < 0):
        return -quotient
    return quotient


def mul(a: int, b: int) -> int:
    """Scaled product ``a * b``."""
    return _tdiv(a * b, SCALE)


def div(a: int, b: int) -> int:
    """Scaled quotient ``a / b``."""
    if b == 0:
        raise MathDomainError("division by zero")
    return _tdiv(a * SCALE, b)


def abs_value(x: int) -> int:
    return -x if x < 0 else x


def min_value(a: int, b: int) -> int:
    return a if a <= b else b


def max_value(a: int, b: int) -> int:
    return a if a >= b else b


def clamp(x: int, lower: int, upper: int) -> int:
    if lower > upper:
        raise MathDomainError(f"clamp bounds inverted: {lower} > {upper}")
    return max_value(lower, min_value(x, upper))


# ---------------------------------------------------------------------------
# Conversions
# ---------------------------------------------------------------------------


def to_scaled(value: int | str | Decimal) -> int:
    """Parse an integer, decimal string or ``Decimal`` into a scaled value.

    Digits beyond 18 decimals are truncated. Floats are refused so that
    binary rounding never leaks into the kernel.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise TypeError(f"expected int, str or Decimal, got {type(value).__name__}")
    if isinstance(value, int):
        return value * SCALE
    try:
        parsed = Decimal(value)
    except InvalidOperation as exc:
        raise ValueError(f"not a decimal number: {value!r}") from exc
    if not parsed.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return int((parsed * SCALE).to_integral_value(rounding=ROUND_DOWN))


def format_scaled(x: int, places: int = 6) -> str:
    """Render a scaled value as a decimal string, truncated to *places*."""
    sign = "-" if x < 0 else ""
    whole, frac = divmod(abs_value(x), SCALE)
    if places <= 0:
        return f"{sign}{whole}"
    digits = str(frac).rjust(18, "0")[:places]
    return f"{sign}{whole}.{digits}"


def to_basis_points(x: int) -> int:
    """Scaled fraction to basis points, rounding half away from zero."""
    magnitude = (abs_value(x) * BASIS_POINTS + HALF_SCALE) // SCALE
    return -magnitude if x < 0 else magnitude


def from_basis_points(bp: int) -> int:
    return bp * SCALE // BASIS_POINTS


def apply_basis_points(x: int, bp: int) -> int:
    """``x * bp / 10000`` truncated toward zero."""
    return _tdiv(x * bp, BASIS_POINTS)


# ---------------------------------------------------------------------------
# Transcendentals
# ---------------------------------------------------------------------------


def ln(x: int) -> int:
    """Natural logarithm of a positive scaled value."""
    if x <= 0:
        raise MathDomainError(f"ln undefined for {x}")

    y = x
    power = 0
    upper = 2 * SCALE
    lower = HALF_SCALE
    while y > upper:
        y >>= 1
        power += 1
    while y < lower:
        y <<= 1
        power -= 1

    z = div(y - SCALE, y + SCALE)
    z_squared = mul(z, z)
    total = z
    term = z
    for i in range(1, LN_MAX_TERMS):
        term = mul(term, z_squared)
        contribution = _tdiv(term, 2 * i + 1)
        if contribution == 0:
            break
        total += contribution

    return 2 * total + power * LN2


def sqrt(x: int) -> int:
    """Square root of a non-negative scaled value (floor)."""
    if x < 0:
        raise MathDomainError(f"sqrt undefined for {x}")
    if x == 0:
        return 0

    n = x * SCALE
    z = (n + 1) // 2
    y = n
    while z < y:
        y = z
        z = (n // z + z) // 2
    return y


def exp(x: int) -> int:
    """Exponential of a signed scaled value.

    Raises ``MathOverflowError`` above ``EXP_MAX_INPUT``; returns 0 below
    ``EXP_MIN_INPUT`` where the result is smaller than one unit.
    """
    if x > EXP_MAX_INPUT:
        raise MathOverflowError(f"exp input {x} above ceiling {EXP_MAX_INPUT}")
    if x < EXP_MIN_INPUT:
        return 0
    if x < 0:
        return SCALE * SCALE // exp(-x)

    k = x // LN2
    r = x - k * LN2

    total = SCALE
    term = SCALE
    for i in range(1, EXP_MAX_TERMS + 1):
        term = term * r // (i * SCALE)
        if term == 0:
            break
        total += term
        if total > MAX_SCALED >> k:
            raise MathOverflowError(f"exp({x}) exceeds representation")

    result = total << k
    if result > MAX_SCALED:
        raise MathOverflowError(f"exp({x}) exceeds representation")
    return result


def normal_cdf(x: int) -> int:
    """Standard normal CDF of a signed scaled value, in [0, SCALE].

    Exactly ``HALF_SCALE`` at zero. Saturates to 0 / ``SCALE`` beyond
    +/-10, where the true tail is below 1e-23. Negative inputs go through
    ``N(-x) = 1 - N(x)`` so the function is symmetric to the last unit.
    """
    if x == 0:
        return HALF_SCALE
    if x >= CDF_CLAMP:
        return SCALE
    if x <= -CDF_CLAMP:
        return 0

    ax = abs_value(x)
    t = div(SCALE, SCALE + mul(_CDF_P, ax))

    poly = _CDF_B5
    for coefficient in (_CDF_B4, _CDF_B3, _CDF_B2, _CDF_B1):
        poly = coefficient + mul(t, poly)
    poly = mul(t, poly)

    density = mul(_INV_SQRT_2PI, exp(-(mul(ax, ax) // 2)))
    tail = clamp(mul(density, poly), 0, HALF_SCALE)

    return SCALE - tail if x > 0 else tail

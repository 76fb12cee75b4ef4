"""Price-range index codec.

The liquidity venue encodes a price level as an integer index ``i`` with
``price(i) = 1.0001 ** i``: each step is one basis point of price. The
rest of the engine works in scaled values, so this module converts both
ways using the fixed-point kernel only.

``index_to_price`` is strictly increasing over ``[MIN_INDEX, MAX_INDEX]``
and ``price_to_index`` returns the largest index whose price does not
exceed the input, so ``price_to_index(index_to_price(i)) == i`` for every
index in the domain.

``MAX_INDEX`` matches the venue's own upper bound. ``MIN_INDEX`` sits at
a price of ~1e-12, the point below which neighbouring indices can no
longer be told apart at 18 decimals.
"""

from __future__ import annotations

from deltaguard.errors import InvalidInput, InvalidInputReason, MathDomainError
from deltaguard.fixed_point import BASIS_POINTS, SCALE, exp, ln

MIN_INDEX = -276_324
MAX_INDEX = 887_272

# ln(1.0001) at 36 decimals.
_LN_INDEX_BASE_36 = 99_995_000_333_308_335_333_166_680_951_130
_EXTRA_PRECISION = 10**18

_Q96 = 2**96


def _check_index(index: int) -> None:
    if index < MIN_INDEX or index > MAX_INDEX:
        raise MathDomainError(f"index {index} outside [{MIN_INDEX}, {MAX_INDEX}]")


def _exponent_for(index: int) -> int:
    """``index * ln(1.0001)`` as a scaled value, truncated toward zero."""
    product = index * _LN_INDEX_BASE_36
    if product < 0:
        return -((-product) // _EXTRA_PRECISION)
    return product // _EXTRA_PRECISION


def index_to_price(index: int) -> int:
    """Scaled price for a price-range index."""
    _check_index(index)
    return exp(_exponent_for(index))


MIN_PRICE = index_to_price(MIN_INDEX)
MAX_PRICE = index_to_price(MAX_INDEX)


def price_to_index(price: int) -> int:
    """Largest index whose price is ``<= price``."""
    if price < MIN_PRICE or price > MAX_PRICE:
        raise MathDomainError(f"price {price} outside encodable range")

    estimate = ln(price) * _EXTRA_PRECISION
    if estimate < 0:
        index = -((-estimate) // _LN_INDEX_BASE_36)
    else:
        index = estimate // _LN_INDEX_BASE_36
    index = max(MIN_INDEX, min(MAX_INDEX, index))

    # The estimate is off by at most one step; settle on the floor.
    while index > MIN_INDEX and index_to_price(index) > price:
        index -= 1
    while index < MAX_INDEX and index_to_price(index + 1) <= price:
        index += 1
    return index


def range_width_basis_points(lower_index: int, upper_index: int) -> int:
    """Width of ``[lower, upper]`` in basis points of the lower price."""
    if lower_index >= upper_index:
        raise InvalidInput(
            InvalidInputReason.INVERTED_BOUNDS,
            f"lower index {lower_index} >= upper index {upper_index}",
        )
    lower_price = index_to_price(lower_index)
    upper_price = index_to_price(upper_index)
    return (upper_price - lower_price) * BASIS_POINTS // lower_price


def align_index(index: int, spacing: int) -> int:
    """Round *index* down to the nearest multiple of the venue's spacing."""
    if spacing <= 0:
        raise InvalidInput(InvalidInputReason.INVALID_SETTING, f"spacing {spacing}")
    return (index // spacing) * spacing


def sqrt_price_x96_to_price(
    sqrt_price_x96: int,
    decimals0: int = 18,
    decimals1: int = 18,
) -> int:
    """Venue Q64.96 square-root price to a scaled token1-per-token0 price.

    ``price = (sqrtPriceX96 / 2**96) ** 2 * 10 ** (decimals0 - decimals1)``
    """
    if sqrt_price_x96 <= 0:
        raise MathDomainError(f"sqrt price {sqrt_price_x96} must be positive")
    numerator = sqrt_price_x96 * sqrt_price_x96 * SCALE
    denominator = _Q96 * _Q96
    shift = decimals0 - decimals1
    if shift >= 0:
        numerator *= 10**shift
    else:
        denominator *= 10 ** (-shift)
    return numerator // denominator

"""Interest accrual math - daily interest and excess over the rate cap

All amounts are token amounts in the asset's smallest unit (wei for WETH).
Arithmetic runs in a local Decimal context wide enough for uint256 values so
18-decimal assets never lose precision.
"""

import math
from decimal import ROUND_DOWN, Context, Decimal, localcontext
from typing import Iterable, Tuple, Union

from capguard.domain.exceptions import InvalidAmountError, InvalidRateError

Number = Union[int, Decimal]

BPS_DENOMINATOR = Decimal(10_000)
DAYS_PER_YEAR = Decimal(365)
DEFAULT_MAX_RATE_BPS = 100_000  # 1000% APR

_CONTEXT = Context(prec=78)


def validate_rate_bps(rate_bps: Number, max_bps: int = DEFAULT_MAX_RATE_BPS) -> int:
    """
    Check that a rate is a whole number of basis points within [0, max_bps].

    Raises:
        InvalidRateError: negative, fractional, non-numeric or above max_bps
    """
    if isinstance(rate_bps, bool) or not isinstance(rate_bps, (int, Decimal)):
        raise InvalidRateError(f"Rate must be an integer number of bps, got {rate_bps!r}")

    if isinstance(rate_bps, Decimal):
        if not rate_bps.is_finite() or rate_bps != rate_bps.to_integral_value():
            raise InvalidRateError(f"Rate must be an integer number of bps, got {rate_bps}")
        rate_bps = int(rate_bps)

    if rate_bps < 0:
        raise InvalidRateError(f"Rate cannot be negative: {rate_bps} bps")
    if rate_bps > max_bps:
        raise InvalidRateError(f"Rate {rate_bps} bps exceeds upper bound of {max_bps} bps")

    return rate_bps


def _validate_principal(principal: Number) -> Decimal:
    if isinstance(principal, bool) or not isinstance(principal, (int, Decimal)):
        raise InvalidAmountError(f"Principal must be an integer token amount, got {principal!r}")
    if principal < 0:
        raise InvalidAmountError(f"Principal cannot be negative: {principal}")
    return Decimal(principal)


def bps_to_fraction(rate_bps: Number) -> Decimal:
    """Convert basis points to a fraction (800 -> 0.08)"""
    with localcontext(_CONTEXT):
        return Decimal(rate_bps) / BPS_DENOMINATOR


def daily_interest(principal: Number, annual_rate_bps: Number, max_bps: int = DEFAULT_MAX_RATE_BPS) -> Decimal:
    """
    Interest accrued in one day at a simple annual rate.

    daily = principal * (bps / 10000) / 365

    Example:
        1,200,000 at 800 bps -> 263.0136986...
    """
    amount = _validate_principal(principal)
    rate = validate_rate_bps(annual_rate_bps, max_bps)

    with localcontext(_CONTEXT):
        return amount * (Decimal(rate) / BPS_DENOMINATOR) / DAYS_PER_YEAR


def excess_interest(
    principal: Number,
    actual_rate_bps: Number,
    cap_rate_bps: Number,
    max_bps: int = DEFAULT_MAX_RATE_BPS,
) -> Decimal:
    """
    Portion of one day's interest charged above the rate cap.

    Zero when the actual rate is at or below the cap, otherwise the difference
    between interest at the actual rate and interest at the cap.

    Example:
        1,200,000 at 1820 bps with a 1000 bps cap -> 269.5890410...
    """
    actual = validate_rate_bps(actual_rate_bps, max_bps)
    cap = validate_rate_bps(cap_rate_bps, max_bps)

    if actual <= cap:
        _validate_principal(principal)
        return Decimal(0)

    with localcontext(_CONTEXT):
        return daily_interest(principal, actual, max_bps) - daily_interest(principal, cap, max_bps)


def weighted_rate(positions: Iterable[Tuple[Number, Number]]) -> Decimal:
    """
    Principal-weighted average rate in bps across (principal, rate_bps) pairs.

    Returns 0 for an empty set and when the total principal is zero.
    """
    total_principal = Decimal(0)
    weighted_sum = Decimal(0)

    with localcontext(_CONTEXT):
        for principal, rate_bps in positions:
            amount = _validate_principal(principal)
            rate = validate_rate_bps(rate_bps)
            total_principal += amount
            weighted_sum += amount * rate

        if total_principal == 0:
            return Decimal(0)

        return weighted_sum / total_principal


def to_smallest_unit(amount: Decimal) -> int:
    """Truncate a computed amount to a whole token unit (never rounds up)"""
    with localcontext(_CONTEXT):
        return int(amount.quantize(Decimal(1), rounding=ROUND_DOWN))


def apy_to_apr_bps(apy: float) -> int:
    """
    Convert a borrow APY fraction to APR basis points.

    Assumes continuous compounding: APR = ln(1 + APY). Non-positive or NaN
    input yields 0.
    """
    if apy is None or math.isnan(apy) or apy <= 0:
        return 0
    return round(math.log1p(apy) * 10_000)

"""
Conversions between liquidity and token amounts for concentrated positions.

For a range [lower, upper] with square-root prices sa < sb and current sc:

- below range (current tick < lower): all token A,  a = L * (sb - sa) / (sa * sb)
- above range (current tick >= upper): all token B, b = L * (sb - sa)
- in range: a = L * (sb - sc) / (sc * sb), b = L * (sc - sa)

Square-root prices are Q64.64 integers throughout.
"""

from .tick_math import Q64, check_tick_range, tick_to_sqrt_price_x64


def _div(numerator: int, denominator: int, round_up: bool) -> int:
    quotient, remainder = divmod(numerator, denominator)
    if round_up and remainder:
        quotient += 1
    return quotient


def get_amount_a_delta(
    sqrt_price_lower: int, sqrt_price_upper: int, liquidity: int, round_up: bool = False
) -> int:
    """Token A needed to move `liquidity` between two square-root prices."""
    if sqrt_price_lower > sqrt_price_upper:
        sqrt_price_lower, sqrt_price_upper = sqrt_price_upper, sqrt_price_lower
    if sqrt_price_lower == 0:
        return 0
    numerator = (liquidity * (sqrt_price_upper - sqrt_price_lower)) << 64
    denominator = sqrt_price_upper * sqrt_price_lower
    return _div(numerator, denominator, round_up)


def get_amount_b_delta(
    sqrt_price_lower: int, sqrt_price_upper: int, liquidity: int, round_up: bool = False
) -> int:
    """Token B needed to move `liquidity` between two square-root prices."""
    if sqrt_price_lower > sqrt_price_upper:
        sqrt_price_lower, sqrt_price_upper = sqrt_price_upper, sqrt_price_lower
    return _div(liquidity * (sqrt_price_upper - sqrt_price_lower), Q64, round_up)


def amounts_for_liquidity(
    liquidity: int,
    lower_tick: int,
    upper_tick: int,
    current_tick: int,
    round_up: bool = False,
    sqrt_price_x64: int | None = None,
) -> tuple[int, int]:
    """Token amounts represented by `liquidity` over a tick range.

    Args:
        liquidity: Position liquidity
        lower_tick: Lower tick bound
        upper_tick: Upper tick bound
        current_tick: Pool's current tick
        round_up: Round amounts up (deposits) instead of down (withdrawals)
        sqrt_price_x64: Exact current square-root price; derived from
            `current_tick` when omitted

    Returns:
        (amount_a, amount_b)

    Raises:
        InvalidRange: If lower_tick >= upper_tick
        OutOfRange: If a tick is outside the tick domain
    """
    check_tick_range(lower_tick, upper_tick)
    if liquidity < 0:
        raise ValueError(f"Liquidity must be non-negative, got {liquidity}")

    sqrt_lower = tick_to_sqrt_price_x64(lower_tick)
    sqrt_upper = tick_to_sqrt_price_x64(upper_tick)

    if current_tick < lower_tick:
        return get_amount_a_delta(sqrt_lower, sqrt_upper, liquidity, round_up), 0
    if current_tick >= upper_tick:
        return 0, get_amount_b_delta(sqrt_lower, sqrt_upper, liquidity, round_up)

    sqrt_current = (
        sqrt_price_x64 if sqrt_price_x64 is not None else tick_to_sqrt_price_x64(current_tick)
    )
    sqrt_current = min(max(sqrt_current, sqrt_lower), sqrt_upper)
    amount_a = get_amount_a_delta(sqrt_current, sqrt_upper, liquidity, round_up)
    amount_b = get_amount_b_delta(sqrt_lower, sqrt_current, liquidity, round_up)
    return amount_a, amount_b


def liquidity_for_amounts(
    amount_a: int,
    amount_b: int,
    lower_tick: int,
    upper_tick: int,
    current_tick: int,
    sqrt_price_x64: int | None = None,
) -> int:
    """Largest liquidity that `amount_a` and `amount_b` can fund over a range.

    Inside the range both tokens are needed, so the result is limited by
    whichever side runs out first.

    Raises:
        InvalidRange: If lower_tick >= upper_tick
        OutOfRange: If a tick is outside the tick domain
    """
    check_tick_range(lower_tick, upper_tick)
    if amount_a < 0 or amount_b < 0:
        raise ValueError("Token amounts must be non-negative")

    sqrt_lower = tick_to_sqrt_price_x64(lower_tick)
    sqrt_upper = tick_to_sqrt_price_x64(upper_tick)

    if current_tick < lower_tick:
        return _liquidity_from_a(amount_a, sqrt_lower, sqrt_upper)
    if current_tick >= upper_tick:
        return _liquidity_from_b(amount_b, sqrt_lower, sqrt_upper)

    sqrt_current = (
        sqrt_price_x64 if sqrt_price_x64 is not None else tick_to_sqrt_price_x64(current_tick)
    )
    sqrt_current = min(max(sqrt_current, sqrt_lower), sqrt_upper)
    if sqrt_current == sqrt_lower:
        return _liquidity_from_a(amount_a, sqrt_current, sqrt_upper)
    if sqrt_current == sqrt_upper:
        return _liquidity_from_b(amount_b, sqrt_lower, sqrt_current)
    return min(
        _liquidity_from_a(amount_a, sqrt_current, sqrt_upper),
        _liquidity_from_b(amount_b, sqrt_lower, sqrt_current),
    )


def _liquidity_from_a(amount_a: int, sqrt_lower: int, sqrt_upper: int) -> int:
    return (amount_a * sqrt_lower * sqrt_upper) // ((sqrt_upper - sqrt_lower) << 64)


def _liquidity_from_b(amount_b: int, sqrt_lower: int, sqrt_upper: int) -> int:
    return (amount_b << 64) // (sqrt_upper - sqrt_lower)

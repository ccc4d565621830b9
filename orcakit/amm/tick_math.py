"""
Tick and price conversion for concentrated-liquidity pools.

Whirlpools store prices as Q64.64 square roots:

- price = 1.0001^tick (token B per token A, raw units)
- sqrt_price_x64 = sqrt(price) * 2^64
- usable ticks are multiples of the pool's tick spacing
"""

from decimal import ROUND_HALF_UP, Decimal, localcontext

from ..core.errors import InvalidRange, OutOfRange

Q64 = 2**64

MIN_TICK = -443636
MAX_TICK = 443636
MIN_SQRT_PRICE_X64 = 4295048016
MAX_SQRT_PRICE_X64 = 79226673515401279992447579055

# Enough digits for 128-bit integers squared.
DECIMAL_PRECISION = 80

_TICK_BASE = Decimal("1.0001")


def check_tick(tick: int) -> None:
    """Raise OutOfRange unless MIN_TICK <= tick <= MAX_TICK."""
    if tick < MIN_TICK or tick > MAX_TICK:
        raise OutOfRange(f"Tick {tick} out of bounds [{MIN_TICK}, {MAX_TICK}]")


def check_tick_range(lower_tick: int, upper_tick: int, tick_spacing: int = 1) -> None:
    """Validate a position range.

    Raises:
        InvalidRange: If lower >= upper or a bound is not spacing-aligned
        OutOfRange: If a bound is outside the tick domain
    """
    if lower_tick >= upper_tick:
        raise InvalidRange(
            f"Lower tick {lower_tick} must be below upper tick {upper_tick}"
        )
    if lower_tick % tick_spacing or upper_tick % tick_spacing:
        raise InvalidRange(
            f"Ticks [{lower_tick}, {upper_tick}] not aligned to spacing {tick_spacing}"
        )
    check_tick(lower_tick)
    check_tick(upper_tick)


def tick_to_sqrt_price_x64(tick: int) -> int:
    """Calculate the Q64.64 square-root price at a tick.

    Computes sqrt(1.0001^-|tick|) in Q128.128 from precomputed powers, inverts
    it for positive ticks and shifts down to Q64.64.

    Args:
        tick: Tick index

    Returns:
        sqrt_price_x64

    Raises:
        OutOfRange: If the tick is outside [MIN_TICK, MAX_TICK]
    """
    check_tick(tick)
    abs_tick = abs(tick)

    ratio = 0xFFFCB933BD6FAD37AA2D162D1A594001 if abs_tick & 0x1 else 1 << 128
    if abs_tick & 0x2:
        ratio = (ratio * 0xFFF97272373D413259A46990580E213A) >> 128
    if abs_tick & 0x4:
        ratio = (ratio * 0xFFF2E50F5F656932EF12357CF3C7FDCC) >> 128
    if abs_tick & 0x8:
        ratio = (ratio * 0xFFE5CACA7E10E4E61C3624EAA0941CD0) >> 128
    if abs_tick & 0x10:
        ratio = (ratio * 0xFFCB9843D60F6159C9DB58835C926644) >> 128
    if abs_tick & 0x20:
        ratio = (ratio * 0xFF973B41FA98C081472E6896DFB254C0) >> 128
    if abs_tick & 0x40:
        ratio = (ratio * 0xFF2EA16466C96A3843EC78B326B52861) >> 128
    if abs_tick & 0x80:
        ratio = (ratio * 0xFE5DEE046A99A2A811C461F1969C3053) >> 128
    if abs_tick & 0x100:
        ratio = (ratio * 0xFCBE86C7900A88AEDCFFC83B479AA3A4) >> 128
    if abs_tick & 0x200:
        ratio = (ratio * 0xF987A7253AC413176F2B074CF7815E54) >> 128
    if abs_tick & 0x400:
        ratio = (ratio * 0xF3392B0822B70005940C7A398E4B70F3) >> 128
    if abs_tick & 0x800:
        ratio = (ratio * 0xE7159475A2C29B7443B29C7FA6E889D9) >> 128
    if abs_tick & 0x1000:
        ratio = (ratio * 0xD097F3BDFD2022B8845AD8F792AA5825) >> 128
    if abs_tick & 0x2000:
        ratio = (ratio * 0xA9F746462D870FDF8A65DC1F90E061E5) >> 128
    if abs_tick & 0x4000:
        ratio = (ratio * 0x70D869A156D2A1B890BB3DF62BAF32F7) >> 128
    if abs_tick & 0x8000:
        ratio = (ratio * 0x31BE135F97D08FD981231505542FCFA6) >> 128
    if abs_tick & 0x10000:
        ratio = (ratio * 0x9AA508B5B7A84E1C677DE54F3E99BC9) >> 128
    if abs_tick & 0x20000:
        ratio = (ratio * 0x5D6AF8DEDB81196699C329225EE604) >> 128
    if abs_tick & 0x40000:
        ratio = (ratio * 0x2216E584F5FA1EA926041BEDFE98) >> 128

    if tick > 0:
        ratio = ((1 << 256) - 1) // ratio

    return ratio >> 64


def sqrt_price_x64_to_price(sqrt_price_x64: int) -> Decimal:
    """Convert a Q64.64 square-root price to a price (token B per token A)."""
    if sqrt_price_x64 <= 0:
        raise OutOfRange(f"Square-root price must be positive, got {sqrt_price_x64}")
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        root = Decimal(sqrt_price_x64) / Decimal(Q64)
        return +(root * root)


def tick_to_price(tick: int) -> Decimal:
    """Price at a tick."""
    return sqrt_price_x64_to_price(tick_to_sqrt_price_x64(tick))


def price_to_tick(price: Decimal | int | str, tick_spacing: int = 1) -> int:
    """Convert a price to the nearest spacing-aligned tick.

    Args:
        price: Token B per token A, raw units
        tick_spacing: Pool tick spacing

    Returns:
        Tick index, a multiple of `tick_spacing`

    Raises:
        OutOfRange: If the price is not positive or maps outside the tick domain
        ValueError: If the tick spacing is not positive
    """
    if tick_spacing <= 0:
        raise ValueError(f"Tick spacing must be positive, got {tick_spacing}")
    price = Decimal(str(price)) if not isinstance(price, Decimal) else price
    if price <= 0:
        raise OutOfRange(f"Price must be positive, got {price}")

    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        raw_tick = price.ln() / _TICK_BASE.ln()
        steps = (raw_tick / tick_spacing).quantize(Decimal(1), rounding=ROUND_HALF_UP)

    tick = int(steps) * tick_spacing
    check_tick(tick)
    return tick

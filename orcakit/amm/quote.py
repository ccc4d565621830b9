"""
Swap quoting for the three pool curves.

All variants charge the fee on the input amount, then price the remainder:

- standard: constant product x * y = k
- stable: two-coin StableSwap invariant with amplification
- concentrated: walk initialized ticks, swapping within each liquidity segment
"""

from dataclasses import dataclass
from decimal import ROUND_CEILING, Decimal, localcontext

from ..core.errors import InsufficientLiquidity, ZeroOutput
from ..core.types import PoolSnapshot, PoolVariant
from .liquidity import get_amount_a_delta, get_amount_b_delta
from .tick_math import (
    DECIMAL_PRECISION,
    MAX_SQRT_PRICE_X64,
    MIN_SQRT_PRICE_X64,
    sqrt_price_x64_to_price,
    tick_to_sqrt_price_x64,
)

N_COINS = 2
MAX_NEWTON_ITERATIONS = 256


@dataclass(frozen=True)
class SwapQuote:
    """Result of pricing an input against a snapshot."""

    output_amount: int
    fee_amount: int
    price_impact_pct: float


def quote_swap(
    variant: PoolVariant, snapshot: PoolSnapshot, input_mint: str, input_amount: int
) -> SwapQuote:
    """Price `input_amount` of `input_mint` against a pool snapshot.

    Args:
        variant: Curve to price with
        snapshot: Pool state
        input_mint: Mint of the token being sold
        input_amount: Raw input amount

    Returns:
        SwapQuote with output, fee and price impact in percent

    Raises:
        ValueError: If the mint is not in the pool
        ZeroOutput: If the input amount is not positive
        InsufficientLiquidity: If the pool cannot fill the input
    """
    if input_amount <= 0:
        raise ZeroOutput(f"Input amount must be positive, got {input_amount}")
    a_to_b = snapshot.is_input_a(input_mint)
    fee_amount = _fee_for(input_amount, snapshot.fee_rate)
    net_input = input_amount - fee_amount

    if variant == PoolVariant.STANDARD:
        output, spot = _quote_constant_product(snapshot, a_to_b, net_input)
    elif variant == PoolVariant.STABLE:
        output, spot = _quote_stable(snapshot, a_to_b, net_input)
    elif variant == PoolVariant.CONCENTRATED:
        output, spot = _quote_concentrated(snapshot, a_to_b, net_input)
    else:
        raise ValueError(f"Unknown pool variant: {variant}")

    return SwapQuote(
        output_amount=output,
        fee_amount=fee_amount,
        price_impact_pct=_price_impact_pct(net_input, output, spot),
    )


def _fee_for(amount: int, fee_rate: Decimal) -> int:
    fee = (Decimal(amount) * fee_rate).to_integral_value(rounding=ROUND_CEILING)
    return min(int(fee), amount)


def _price_impact_pct(net_input: int, output: int, spot: Decimal) -> float:
    """Shortfall of the realized rate against the pre-trade spot rate."""
    if net_input <= 0 or spot <= 0:
        return 0.0
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        impact = 1 - Decimal(output) / (Decimal(net_input) * spot)
    return max(float(impact * 100), 0.0)


# Constant product


def _quote_constant_product(
    snapshot: PoolSnapshot, a_to_b: bool, net_input: int
) -> tuple[int, Decimal]:
    reserve_in, reserve_out = (
        (snapshot.reserve_a, snapshot.reserve_b)
        if a_to_b
        else (snapshot.reserve_b, snapshot.reserve_a)
    )
    if reserve_in <= 0 or reserve_out <= 0:
        raise InsufficientLiquidity(f"Pool {snapshot.address} has an empty reserve")

    output = (net_input * reserve_out) // (reserve_in + net_input)
    spot = Decimal(reserve_out) / Decimal(reserve_in)
    return output, spot


# StableSwap


def compute_d(amp: int, reserve_a: int, reserve_b: int) -> int:
    """Solve the StableSwap invariant D for two balances by Newton iteration.

    Raises:
        InsufficientLiquidity: If the iteration does not converge
    """
    total = reserve_a + reserve_b
    if total == 0:
        return 0
    if reserve_a == 0 or reserve_b == 0:
        raise InsufficientLiquidity("Stable pool has an empty reserve")

    leverage = amp * N_COINS
    d = total
    for _ in range(MAX_NEWTON_ITERATIONS):
        d_product = d * d // (reserve_a * N_COINS) * d // (reserve_b * N_COINS)
        d_prev = d
        d = (leverage * total + d_product * N_COINS) * d // (
            (leverage - 1) * d + (N_COINS + 1) * d_product
        )
        if abs(d - d_prev) <= 1:
            return d
    raise InsufficientLiquidity("StableSwap invariant did not converge")


def compute_new_balance(amp: int, new_source: int, d: int) -> int:
    """Solve the destination balance that keeps D fixed after a deposit.

    Raises:
        InsufficientLiquidity: If the iteration does not converge
    """
    leverage = amp * N_COINS
    c = d * d // (new_source * N_COINS) * d // (leverage * N_COINS)
    b = new_source + d // leverage
    y = d
    for _ in range(MAX_NEWTON_ITERATIONS):
        y_prev = y
        y = (y * y + c) // (2 * y + b - d)
        if abs(y - y_prev) <= 1:
            return y
    raise InsufficientLiquidity("StableSwap balance did not converge")


def stable_spot_price(amp: int, reserve_a: int, reserve_b: int) -> Decimal:
    """Marginal token B per token A on the StableSwap curve."""
    if reserve_a <= 0 or reserve_b <= 0:
        return Decimal(0)
    d = compute_d(amp, reserve_a, reserve_b)
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        leverage = Decimal(amp * N_COINS)
        d_cubed = Decimal(d) ** 3
        x = Decimal(reserve_a)
        y = Decimal(reserve_b)
        dx = leverage + d_cubed / (4 * x * x * y)
        dy = leverage + d_cubed / (4 * x * y * y)
        return +(dx / dy)


def _quote_stable(
    snapshot: PoolSnapshot, a_to_b: bool, net_input: int
) -> tuple[int, Decimal]:
    reserve_in, reserve_out = (
        (snapshot.reserve_a, snapshot.reserve_b)
        if a_to_b
        else (snapshot.reserve_b, snapshot.reserve_a)
    )
    if reserve_in <= 0 or reserve_out <= 0:
        raise InsufficientLiquidity(f"Pool {snapshot.address} has an empty reserve")
    if snapshot.amp <= 0:
        raise InsufficientLiquidity(f"Pool {snapshot.address} has no amplification")

    spot_ab = stable_spot_price(snapshot.amp, snapshot.reserve_a, snapshot.reserve_b)
    spot = spot_ab if a_to_b else Decimal(1) / spot_ab
    if net_input == 0:
        return 0, spot

    d = compute_d(snapshot.amp, reserve_in, reserve_out)
    new_out = compute_new_balance(snapshot.amp, reserve_in + net_input, d)
    output = max(reserve_out - new_out, 0)
    if output >= reserve_out:
        raise InsufficientLiquidity(f"Pool {snapshot.address} cannot fill {net_input}")
    return output, spot


# Concentrated liquidity


def _next_sqrt_price_from_a(sqrt_price: int, liquidity: int, amount: int) -> int:
    """Price after adding token A (price moves down), rounded up."""
    numerator = (liquidity << 64) * sqrt_price
    denominator = (liquidity << 64) + amount * sqrt_price
    return -(-numerator // denominator)


def _next_sqrt_price_from_b(sqrt_price: int, liquidity: int, amount: int) -> int:
    """Price after adding token B (price moves up), rounded down."""
    return sqrt_price + (amount << 64) // liquidity


def _quote_concentrated(
    snapshot: PoolSnapshot, a_to_b: bool, net_input: int
) -> tuple[int, Decimal]:
    """Walk initialized ticks in the swap direction, filling segment by segment.

    A snapshot with no coverage at all assumes the active liquidity spans the
    whole price domain. Otherwise the walk stops at the edge of the loaded
    coverage, and an empty coverage (current tick array not initialized)
    cannot be quoted.
    """
    if snapshot.tick_coverage is not None:
        low, high = snapshot.tick_coverage
        if low > high:
            raise InsufficientLiquidity(
                f"Pool {snapshot.address} has no initialized tick array at the current price"
            )

    sqrt_price = snapshot.sqrt_price_x64
    liquidity = snapshot.liquidity
    price = sqrt_price_x64_to_price(sqrt_price)
    spot = price if a_to_b else Decimal(1) / price

    current = snapshot.tick_current_index
    if a_to_b:
        crossings = sorted(
            (t for t in snapshot.ticks if t.tick_index <= current),
            key=lambda t: t.tick_index,
            reverse=True,
        )
    else:
        crossings = sorted(
            (t for t in snapshot.ticks if t.tick_index > current),
            key=lambda t: t.tick_index,
        )

    if snapshot.tick_coverage is None:
        edge_sqrt_price = MIN_SQRT_PRICE_X64 if a_to_b else MAX_SQRT_PRICE_X64
    else:
        low, high = snapshot.tick_coverage
        edge_sqrt_price = tick_to_sqrt_price_x64(low if a_to_b else high)

    remaining = net_input
    output = 0
    index = 0
    while remaining > 0:
        next_tick = crossings[index] if index < len(crossings) else None
        target = (
            tick_to_sqrt_price_x64(next_tick.tick_index)
            if next_tick is not None
            else edge_sqrt_price
        )
        if (a_to_b and target >= sqrt_price) or (not a_to_b and target <= sqrt_price):
            target = sqrt_price

        if liquidity > 0 and target != sqrt_price:
            if a_to_b:
                max_in = get_amount_a_delta(target, sqrt_price, liquidity, round_up=True)
            else:
                max_in = get_amount_b_delta(sqrt_price, target, liquidity, round_up=True)

            if remaining < max_in:
                if a_to_b:
                    new_sqrt = _next_sqrt_price_from_a(sqrt_price, liquidity, remaining)
                    output += get_amount_b_delta(new_sqrt, sqrt_price, liquidity)
                else:
                    new_sqrt = _next_sqrt_price_from_b(sqrt_price, liquidity, remaining)
                    output += get_amount_a_delta(sqrt_price, new_sqrt, liquidity)
                remaining = 0
                break

            remaining -= max_in
            if a_to_b:
                output += get_amount_b_delta(target, sqrt_price, liquidity)
            else:
                output += get_amount_a_delta(sqrt_price, target, liquidity)

        sqrt_price = target
        if remaining == 0:
            break
        if next_tick is None:
            raise InsufficientLiquidity(
                f"Pool {snapshot.address} ran out of liquidity with {remaining} unfilled"
            )

        # Crossing downward removes the tick's net liquidity, upward adds it.
        if a_to_b:
            liquidity -= next_tick.liquidity_net
        else:
            liquidity += next_tick.liquidity_net
        if liquidity < 0:
            raise InsufficientLiquidity(
                f"Pool {snapshot.address} has inconsistent tick liquidity"
            )
        index += 1

    return output, spot


def spot_price(snapshot: PoolSnapshot) -> Decimal:
    """Token B per token A implied by the snapshot's curve."""
    if snapshot.variant == PoolVariant.CONCENTRATED:
        return sqrt_price_x64_to_price(snapshot.sqrt_price_x64)
    if snapshot.variant == PoolVariant.STABLE:
        return stable_spot_price(snapshot.amp, snapshot.reserve_a, snapshot.reserve_b)
    if snapshot.reserve_a <= 0:
        return Decimal(0)
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        return Decimal(snapshot.reserve_b) / Decimal(snapshot.reserve_a)


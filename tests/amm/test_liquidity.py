"""Tests for liquidity and token amount conversion."""

import pytest

from orcakit.amm.liquidity import (
    amounts_for_liquidity,
    get_amount_a_delta,
    get_amount_b_delta,
    liquidity_for_amounts,
)
from orcakit.amm.tick_math import Q64, tick_to_sqrt_price_x64
from orcakit.core.errors import InvalidRange

LIQUIDITY = 10**12


class TestAmountDeltas:
    """Test single-side amount deltas."""

    def test_rounding(self):
        """Rounding up never yields less than rounding down."""
        lower = tick_to_sqrt_price_x64(-10)
        upper = tick_to_sqrt_price_x64(10)
        down = get_amount_a_delta(lower, upper, 12345)
        up = get_amount_a_delta(lower, upper, 12345, round_up=True)
        assert up - down in (0, 1)

    def test_order_independent(self):
        lower = tick_to_sqrt_price_x64(-10)
        upper = tick_to_sqrt_price_x64(10)
        assert get_amount_b_delta(lower, upper, LIQUIDITY) == get_amount_b_delta(
            upper, lower, LIQUIDITY
        )

    def test_b_delta_at_unit_price(self):
        """Moving L across one unit of sqrt price costs L of token B."""
        assert get_amount_b_delta(Q64, 2 * Q64, 500) == 500


class TestAmountsForLiquidity:
    """Test the token split of a position."""

    def test_in_range_uses_both_tokens(self):
        """A range straddling the current tick holds both tokens."""
        amount_a, amount_b = amounts_for_liquidity(LIQUIDITY, -1000, 1000, 0)
        assert amount_a > 0
        assert amount_b > 0

    def test_symmetric_range_at_unit_price(self):
        """At price 1, a symmetric range holds roughly equal amounts."""
        amount_a, amount_b = amounts_for_liquidity(LIQUIDITY, -1000, 1000, 0)
        assert abs(amount_a - amount_b) / amount_a < 1e-3

    def test_above_range_is_all_token_b(self):
        """Once price is above the range, token A is zero."""
        amount_a, amount_b = amounts_for_liquidity(LIQUIDITY, -1000, 1000, 2000)
        assert amount_a == 0
        assert amount_b > 0

    def test_below_range_is_all_token_a(self):
        amount_a, amount_b = amounts_for_liquidity(LIQUIDITY, -1000, 1000, -2000)
        assert amount_a > 0
        assert amount_b == 0

    def test_continuous_at_lower_bound(self):
        """Just inside the lower bound matches just below it."""
        inside = amounts_for_liquidity(LIQUIDITY, -1000, 1000, -1000)
        below = amounts_for_liquidity(LIQUIDITY, -1000, 1000, -1001)
        assert inside == below

    def test_continuous_at_upper_bound(self):
        """Approaching the upper bound from inside converges to the above-range split."""
        sqrt_upper = tick_to_sqrt_price_x64(1000)
        inside = amounts_for_liquidity(
            LIQUIDITY, -1000, 1000, 999, sqrt_price_x64=sqrt_upper
        )
        above = amounts_for_liquidity(LIQUIDITY, -1000, 1000, 1000)
        assert inside == above

    def test_amounts_shrink_towards_the_bound(self):
        """Token A held falls steadily as price rises through the range."""
        holdings = [
            amounts_for_liquidity(LIQUIDITY, -1000, 1000, tick)[0]
            for tick in (-1000, -500, 0, 500, 999)
        ]
        assert holdings == sorted(holdings, reverse=True)

    def test_round_up_covers_round_down(self):
        down = amounts_for_liquidity(LIQUIDITY, -1000, 1000, 0)
        up = amounts_for_liquidity(LIQUIDITY, -1000, 1000, 0, round_up=True)
        assert up[0] >= down[0]
        assert up[1] >= down[1]

    def test_invalid_range(self):
        with pytest.raises(InvalidRange):
            amounts_for_liquidity(LIQUIDITY, 1000, -1000, 0)

    def test_negative_liquidity(self):
        with pytest.raises(ValueError):
            amounts_for_liquidity(-1, -1000, 1000, 0)


class TestLiquidityForAmounts:
    """Test the liquidity a deposit can fund."""

    def test_deposit_never_exceeds_budget(self):
        """The funded liquidity needs no more than the amounts supplied."""
        liquidity = liquidity_for_amounts(1_000_000, 1_000_000, -1000, 1000, 0)
        amount_a, amount_b = amounts_for_liquidity(liquidity, -1000, 1000, 0)
        assert liquidity > 0
        assert amount_a <= 1_000_000
        assert amount_b <= 1_000_000

    def test_limited_by_scarcer_token(self):
        """In range, the smaller side caps liquidity."""
        balanced = liquidity_for_amounts(1_000_000, 1_000_000, -1000, 1000, 0)
        starved = liquidity_for_amounts(1_000_000, 10, -1000, 1000, 0)
        assert starved < balanced

    def test_above_range_uses_token_b_only(self):
        assert liquidity_for_amounts(0, 1_000_000, -1000, 1000, 2000) > 0
        assert liquidity_for_amounts(1_000_000, 0, -1000, 1000, 2000) == 0

    def test_below_range_uses_token_a_only(self):
        assert liquidity_for_amounts(1_000_000, 0, -1000, 1000, -2000) > 0
        assert liquidity_for_amounts(0, 1_000_000, -1000, 1000, -2000) == 0

    def test_negative_amounts(self):
        with pytest.raises(ValueError):
            liquidity_for_amounts(-1, 0, -1000, 1000, 0)

"""Core data types for pools, positions, quotes and analytics."""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field, model_validator

from .errors import InvalidRange


class PoolVariant(str, Enum):
    """Pricing curve used by a pool."""

    CONCENTRATED = "concentrated"
    STANDARD = "standard"
    STABLE = "stable"


class TickLiquidity(BaseModel):
    """Initialized tick with the net liquidity change when crossed upward."""

    model_config = {"frozen": True}

    tick_index: int = Field(description="Tick index")
    liquidity_net: int = Field(description="Signed liquidity delta")


class PoolSnapshot(BaseModel):
    """Decoded pool state at a point in time."""

    model_config = {"frozen": True}

    address: str = Field(description="Pool account address")
    program_id: str = Field(description="Owning program")
    variant: PoolVariant = Field(description="Pricing curve")
    token_mint_a: str = Field(description="Token A mint")
    token_mint_b: str = Field(description="Token B mint")
    token_vault_a: str = Field(description="Pool vault holding token A")
    token_vault_b: str = Field(description="Pool vault holding token B")
    price: Decimal = Field(description="Token B per token A, raw units")
    fee_rate: Decimal = Field(description="Swap fee as a fraction of input")
    liquidity: int = Field(default=0, description="Active liquidity")
    reserve_a: int = Field(default=0, description="Token A reserve")
    reserve_b: int = Field(default=0, description="Token B reserve")
    sqrt_price_x64: int = Field(default=0, description="Q64.64 square-root price")
    tick_current_index: int = Field(default=0, description="Current tick")
    tick_spacing: int = Field(default=1, description="Tick spacing")
    amp: int = Field(default=0, description="Stable-swap amplification")
    fee_growth_global_a: int = Field(default=0, description="Fee growth A, Q64.64")
    fee_growth_global_b: int = Field(default=0, description="Fee growth B, Q64.64")
    ticks: tuple[TickLiquidity, ...] = Field(
        default=(), description="Initialized ticks around the current price"
    )
    tick_coverage: tuple[int, int] | None = Field(
        default=None,
        description=(
            "Lowest and highest tick covered by loaded tick arrays"
            " (empty when high < low)"
        ),
    )
    pool_mint: str | None = Field(default=None, description="LP mint (token-swap)")
    fee_account: str | None = Field(default=None, description="Fee account (token-swap)")
    authority: str | None = Field(default=None, description="Swap authority (token-swap)")
    timestamp: datetime = Field(description="Snapshot timestamp")

    @property
    def is_concentrated(self) -> bool:
        return self.variant == PoolVariant.CONCENTRATED

    def is_input_a(self, input_mint: str) -> bool:
        """Return True when `input_mint` is token A, False when token B.

        Raises:
            ValueError: If the mint does not belong to this pool
        """
        if input_mint == self.token_mint_a:
            return True
        if input_mint == self.token_mint_b:
            return False
        raise ValueError(f"Token {input_mint} not in pool {self.address}")

    def other_mint(self, mint: str) -> str:
        return self.token_mint_b if self.is_input_a(mint) else self.token_mint_a


class LiquidityPosition(BaseModel):
    """Liquidity position in a concentrated-liquidity pool."""

    pool_address: str = Field(description="Pool address")
    owner: str = Field(description="Position owner")
    position_mint: str = Field(description="Position NFT mint")
    position_address: str = Field(description="Position account (PDA)")
    tick_lower_index: int = Field(description="Lower tick bound")
    tick_upper_index: int = Field(description="Upper tick bound")
    tick_spacing: int = Field(default=1, ge=1, description="Pool tick spacing")
    liquidity: int = Field(default=0, ge=0, description="Position liquidity")
    token_a_amount: int = Field(default=0, description="Token A at current price")
    token_b_amount: int = Field(default=0, description="Token B at current price")
    fee_owed_a: int = Field(default=0, description="Accrued token A fees")
    fee_owed_b: int = Field(default=0, description="Accrued token B fees")

    @model_validator(mode="after")
    def _check_range(self) -> "LiquidityPosition":
        if self.tick_lower_index >= self.tick_upper_index:
            raise InvalidRange(
                f"Lower tick {self.tick_lower_index} must be below "
                f"upper tick {self.tick_upper_index}"
            )
        if (
            self.tick_lower_index % self.tick_spacing
            or self.tick_upper_index % self.tick_spacing
        ):
            raise InvalidRange(
                f"Ticks [{self.tick_lower_index}, {self.tick_upper_index}] "
                f"not aligned to spacing {self.tick_spacing}"
            )
        return self

    @property
    def is_closed(self) -> bool:
        return self.liquidity == 0

    def with_liquidity(
        self, liquidity: int, token_a_amount: int, token_b_amount: int
    ) -> "LiquidityPosition":
        """Return the position after a liquidity change."""
        return self.model_copy(
            update={
                "liquidity": liquidity,
                "token_a_amount": token_a_amount,
                "token_b_amount": token_b_amount,
            }
        )


class TradeQuote(BaseModel):
    """Swap quote derived from a single pool snapshot."""

    model_config = {"frozen": True}

    pool_address: str = Field(description="Quoted pool")
    input_mint: str = Field(description="Input token mint")
    output_mint: str = Field(description="Output token mint")
    input_amount: int = Field(description="Input amount, raw units")
    output_amount: int = Field(description="Expected output amount, raw units")
    fee_amount: int = Field(default=0, description="Fee charged on input")
    price_impact_pct: float = Field(description="Price impact in percent")
    ts: datetime = Field(description="Quote timestamp")


class TradeConfig(BaseModel):
    """Slippage and retry settings for a swap."""

    model_config = {"frozen": True}

    slippage_tolerance: float = Field(
        default=0.005, ge=0, lt=1, description="Slippage as a fraction (0.005 = 0.5%)"
    )
    max_iterations: int = Field(default=3, ge=1, description="Maximum quote attempts")
    retry_delay_seconds: float = Field(
        default=0.0, ge=0, description="Pause before re-quoting"
    )


class LiquidityConfig(TradeConfig):
    """Slippage and retry settings for liquidity changes."""


class PriceSample(BaseModel):
    """Price observed for a pool at a point in time."""

    model_config = {"frozen": True}

    pool_address: str = Field(description="Pool address")
    price: Decimal = Field(description="Token B per token A")
    timestamp: datetime = Field(description="Sample timestamp")


class Kline(BaseModel):
    """Open/high/low/close bar for a fixed interval."""

    model_config = {"frozen": True}

    pool_address: str = Field(description="Pool address")
    start: datetime = Field(description="Interval start")
    interval_seconds: int = Field(description="Interval length in seconds")
    open: Decimal = Field(description="First price in interval")
    high: Decimal = Field(description="Highest price in interval")
    low: Decimal = Field(description="Lowest price in interval")
    close: Decimal = Field(description="Last price in interval")
    sample_count: int = Field(description="Samples in interval")


class PoolHealth(BaseModel):
    """Composite pool health over a trailing window."""

    model_config = {"frozen": True}

    pool_address: str = Field(description="Pool address")
    liquidity: int = Field(description="Latest liquidity")
    volume_24h: Decimal = Field(description="Inferred volume in token A units")
    fee_growth: int = Field(description="Fee-growth accumulator delta (A + B)")
    health_score: float = Field(ge=0, le=100, description="Score in [0, 100]")
    sample_count: int = Field(description="Snapshots in window")
    window_start: datetime = Field(description="Oldest snapshot in window")
    window_end: datetime = Field(description="Newest snapshot in window")


class PriceUpdateEvent(BaseModel):
    """Price move that crossed the monitor threshold."""

    model_config = {"frozen": True}

    pool_address: str = Field(description="Pool address")
    old_price: Decimal = Field(description="Last notified price")
    new_price: Decimal = Field(description="Current price")
    change_percent: float = Field(description="Signed change in percent")
    timestamp: datetime = Field(description="Snapshot timestamp")

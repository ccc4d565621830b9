"""
Decoders for raw pool, tick-array, position and token account bytes.

Pure functions: callers fetch bytes through the transport and pass them in.
Malformed input raises ValueError.
"""

import hashlib
import math
import struct
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from solders.pubkey import Pubkey

from ..amm.quote import stable_spot_price
from ..amm.tick_math import sqrt_price_x64_to_price
from ..core.types import PoolSnapshot, PoolVariant, TickLiquidity
from .addresses import TICK_ARRAY_SIZE, swap_authority


def account_discriminator(name: str) -> bytes:
    """Anchor account discriminator: first 8 bytes of sha256("account:<Name>")."""
    return hashlib.sha256(f"account:{name}".encode()).digest()[:8]


WHIRLPOOL_DISCRIMINATOR = account_discriminator("Whirlpool")
TICK_ARRAY_DISCRIMINATOR = account_discriminator("TickArray")
POSITION_DISCRIMINATOR = account_discriminator("Position")

WHIRLPOOL_SIZE = 653
TOKEN_SWAP_SIZE = 324
TOKEN_ACCOUNT_SIZE = 165
POSITION_SIZE = 216
TICK_SIZE = 113
TICK_ARRAY_SIZE_BYTES = 8 + 4 + TICK_ARRAY_SIZE * TICK_SIZE + 32

# Whirlpool fee_rate is in hundredths of a basis point
WHIRLPOOL_FEE_DENOMINATOR = 1_000_000

# Token-swap curve types
CURVE_CONSTANT_PRODUCT = 0
CURVE_STABLE = 2


def _u16(data: bytes, offset: int) -> int:
    return struct.unpack_from("<H", data, offset)[0]


def _i32(data: bytes, offset: int) -> int:
    return struct.unpack_from("<i", data, offset)[0]


def _u64(data: bytes, offset: int) -> int:
    return struct.unpack_from("<Q", data, offset)[0]


def _u128(data: bytes, offset: int) -> int:
    return int.from_bytes(data[offset : offset + 16], "little")


def _i128(data: bytes, offset: int) -> int:
    return int.from_bytes(data[offset : offset + 16], "little", signed=True)


def _pubkey(data: bytes, offset: int) -> str:
    return str(Pubkey.from_bytes(data[offset : offset + 32]))


def _require(data: bytes, size: int, discriminator: bytes | None, kind: str) -> None:
    if len(data) < size:
        raise ValueError(f"{kind} account too short: {len(data)} bytes, need {size}")
    if discriminator is not None and data[:8] != discriminator:
        raise ValueError(f"Not a {kind} account: discriminator mismatch")


def is_whirlpool(data: bytes) -> bool:
    return len(data) >= WHIRLPOOL_SIZE and data[:8] == WHIRLPOOL_DISCRIMINATOR


def decode_whirlpool(
    address: str,
    data: bytes,
    program_id: str,
    timestamp: datetime,
    ticks: tuple[TickLiquidity, ...] = (),
    tick_coverage: tuple[int, int] | None = None,
) -> PoolSnapshot:
    """Decode a Whirlpool account into a concentrated-liquidity snapshot.

    Args:
        address: Pool account address
        data: Raw account bytes
        program_id: Whirlpool program id
        timestamp: Snapshot time
        ticks: Initialized ticks from the surrounding tick arrays
        tick_coverage: Tick span covered by those arrays

    Returns:
        PoolSnapshot with variant CONCENTRATED

    Raises:
        ValueError: If the data is not a Whirlpool account
    """
    _require(data, WHIRLPOOL_SIZE, WHIRLPOOL_DISCRIMINATOR, "Whirlpool")

    sqrt_price_x64 = _u128(data, 65)
    if sqrt_price_x64 == 0:
        raise ValueError(f"Whirlpool {address} has a zero square-root price")

    return PoolSnapshot(
        address=address,
        program_id=program_id,
        variant=PoolVariant.CONCENTRATED,
        tick_spacing=_u16(data, 41),
        fee_rate=Decimal(_u16(data, 45)) / WHIRLPOOL_FEE_DENOMINATOR,
        liquidity=_u128(data, 49),
        sqrt_price_x64=sqrt_price_x64,
        tick_current_index=_i32(data, 81),
        token_mint_a=_pubkey(data, 101),
        token_vault_a=_pubkey(data, 133),
        fee_growth_global_a=_u128(data, 165),
        token_mint_b=_pubkey(data, 181),
        token_vault_b=_pubkey(data, 213),
        fee_growth_global_b=_u128(data, 245),
        price=sqrt_price_x64_to_price(sqrt_price_x64),
        ticks=ticks,
        tick_coverage=tick_coverage,
        timestamp=timestamp,
    )


@dataclass(frozen=True)
class TickArray:
    """Initialized ticks from one tick array account."""

    start_tick_index: int
    whirlpool: str
    ticks: tuple[TickLiquidity, ...]

    def end_tick_index(self, tick_spacing: int) -> int:
        return self.start_tick_index + TICK_ARRAY_SIZE * tick_spacing - 1


def decode_tick_array(data: bytes, tick_spacing: int) -> TickArray:
    """Decode a tick array, keeping only initialized ticks."""
    _require(data, TICK_ARRAY_SIZE_BYTES, TICK_ARRAY_DISCRIMINATOR, "TickArray")
    start = _i32(data, 8)

    ticks = []
    for i in range(TICK_ARRAY_SIZE):
        offset = 12 + i * TICK_SIZE
        if data[offset]:
            ticks.append(
                TickLiquidity(
                    tick_index=start + i * tick_spacing,
                    liquidity_net=_i128(data, offset + 1),
                )
            )

    whirlpool = _pubkey(data, 12 + TICK_ARRAY_SIZE * TICK_SIZE)
    return TickArray(start_tick_index=start, whirlpool=whirlpool, ticks=tuple(ticks))


@dataclass(frozen=True)
class PositionAccount:
    """Decoded Whirlpool position account."""

    address: str
    whirlpool: str
    position_mint: str
    liquidity: int
    tick_lower_index: int
    tick_upper_index: int
    fee_owed_a: int
    fee_owed_b: int


def decode_position(address: str, data: bytes) -> PositionAccount:
    _require(data, POSITION_SIZE, POSITION_DISCRIMINATOR, "Position")
    return PositionAccount(
        address=address,
        whirlpool=_pubkey(data, 8),
        position_mint=_pubkey(data, 40),
        liquidity=_u128(data, 72),
        tick_lower_index=_i32(data, 88),
        tick_upper_index=_i32(data, 92),
        fee_owed_a=_u64(data, 112),
        fee_owed_b=_u64(data, 136),
    )


@dataclass(frozen=True)
class TokenAccount:
    """SPL token account fields needed for reserves and position discovery."""

    mint: str
    owner: str
    amount: int


def decode_token_account(data: bytes) -> TokenAccount:
    _require(data, TOKEN_ACCOUNT_SIZE, None, "Token")
    return TokenAccount(
        mint=_pubkey(data, 0), owner=_pubkey(data, 32), amount=_u64(data, 64)
    )


@dataclass(frozen=True)
class TokenSwapState:
    """Token-swap pool account before reserves are attached."""

    address: str
    program_id: str
    bump_seed: int
    token_program_id: str
    token_vault_a: str
    token_vault_b: str
    pool_mint: str
    token_mint_a: str
    token_mint_b: str
    fee_account: str
    fee_rate: Decimal
    variant: PoolVariant
    amp: int

    @property
    def authority(self) -> str:
        return str(swap_authority(self.address, self.bump_seed, self.program_id))


def decode_token_swap(address: str, data: bytes, program_id: str) -> TokenSwapState:
    """Decode a token-swap pool account.

    Raises:
        ValueError: If the account is uninitialized, truncated or uses a
            curve other than constant product or stable
    """
    _require(data, TOKEN_SWAP_SIZE, None, "Token-swap")
    if not data[1]:
        raise ValueError(f"Token-swap pool {address} is not initialized")

    trade_num, trade_den, owner_num, owner_den = struct.unpack_from("<4Q", data, 227)
    fee_rate = Decimal(0)
    if trade_den:
        fee_rate += Decimal(trade_num) / Decimal(trade_den)
    if owner_den:
        fee_rate += Decimal(owner_num) / Decimal(owner_den)

    curve_type = data[291]
    if curve_type == CURVE_CONSTANT_PRODUCT:
        variant, amp = PoolVariant.STANDARD, 0
    elif curve_type == CURVE_STABLE:
        variant, amp = PoolVariant.STABLE, _u64(data, 292)
    else:
        raise ValueError(f"Unsupported token-swap curve type {curve_type}")

    return TokenSwapState(
        address=address,
        program_id=program_id,
        bump_seed=data[2],
        token_program_id=_pubkey(data, 3),
        token_vault_a=_pubkey(data, 35),
        token_vault_b=_pubkey(data, 67),
        pool_mint=_pubkey(data, 99),
        token_mint_a=_pubkey(data, 131),
        token_mint_b=_pubkey(data, 163),
        fee_account=_pubkey(data, 195),
        fee_rate=fee_rate,
        variant=variant,
        amp=amp,
    )


def token_swap_snapshot(
    state: TokenSwapState, reserve_a: int, reserve_b: int, timestamp: datetime
) -> PoolSnapshot:
    """Combine a decoded token-swap pool with its vault balances."""
    if state.variant == PoolVariant.STABLE:
        price = stable_spot_price(state.amp, reserve_a, reserve_b)
    elif reserve_a > 0:
        price = Decimal(reserve_b) / Decimal(reserve_a)
    else:
        price = Decimal(0)

    return PoolSnapshot(
        address=state.address,
        program_id=state.program_id,
        variant=state.variant,
        token_mint_a=state.token_mint_a,
        token_mint_b=state.token_mint_b,
        token_vault_a=state.token_vault_a,
        token_vault_b=state.token_vault_b,
        price=price,
        fee_rate=state.fee_rate,
        liquidity=math.isqrt(reserve_a * reserve_b),
        reserve_a=reserve_a,
        reserve_b=reserve_b,
        amp=state.amp,
        pool_mint=state.pool_mint,
        fee_account=state.fee_account,
        authority=state.authority,
        timestamp=timestamp,
    )

"""
Instruction builders for Whirlpool and token-swap programs.

Whirlpool is an Anchor program: instruction data starts with
sha256("global:<name>")[:8] followed by Borsh-encoded arguments.
"""

import hashlib
import struct

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from ..amm.tick_math import MAX_SQRT_PRICE_X64, MIN_SQRT_PRICE_X64
from ..core.types import PoolSnapshot
from ..data.addresses import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    RENT_SYSVAR_ID,
    SYSTEM_PROGRAM_ID,
    TICK_ARRAY_SIZE,
    TOKEN_PROGRAM_ID,
    as_pubkey,
    associated_token_address,
    oracle_address,
    position_address,
    tick_array_address,
    tick_array_start_index,
)

U64_MAX = 2**64 - 1
U128_MAX = 2**128 - 1

TOKEN_SWAP_SWAP_TAG = 1
CREATE_ATA_IDEMPOTENT_TAG = 1


def instruction_discriminator(name: str) -> bytes:
    """Anchor instruction discriminator for a snake_case method name."""
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


def _u64(value: int) -> bytes:
    if not 0 <= value <= U64_MAX:
        raise ValueError(f"Value {value} does not fit in u64")
    return struct.pack("<Q", value)


def _u128(value: int) -> bytes:
    if not 0 <= value <= U128_MAX:
        raise ValueError(f"Value {value} does not fit in u128")
    return value.to_bytes(16, "little")


def _i32(value: int) -> bytes:
    return struct.pack("<i", value)


def _meta(pubkey: str | Pubkey, is_signer: bool = False, is_writable: bool = False):
    return AccountMeta(as_pubkey(pubkey), is_signer=is_signer, is_writable=is_writable)


def create_associated_token_account_idempotent(
    payer: Pubkey, owner: str | Pubkey, mint: str | Pubkey
) -> Instruction:
    """Create the owner's associated token account unless it already exists."""
    return Instruction(
        ASSOCIATED_TOKEN_PROGRAM_ID,
        bytes([CREATE_ATA_IDEMPOTENT_TAG]),
        [
            _meta(payer, is_signer=True, is_writable=True),
            _meta(associated_token_address(owner, mint), is_writable=True),
            _meta(owner),
            _meta(mint),
            _meta(SYSTEM_PROGRAM_ID),
            _meta(TOKEN_PROGRAM_ID),
        ],
    )


def swap_tick_arrays(snapshot: PoolSnapshot, a_to_b: bool) -> list[Pubkey]:
    """The three tick arrays a Whirlpool swap may traverse, in swap direction."""
    ticks_in_array = TICK_ARRAY_SIZE * snapshot.tick_spacing
    start = tick_array_start_index(snapshot.tick_current_index, snapshot.tick_spacing)
    step = -ticks_in_array if a_to_b else ticks_in_array
    return [
        tick_array_address(snapshot.address, start + i * step, snapshot.program_id)
        for i in range(3)
    ]


def whirlpool_swap(
    snapshot: PoolSnapshot,
    owner: Pubkey,
    input_mint: str,
    amount_in: int,
    min_amount_out: int,
) -> Instruction:
    """Exact-input Whirlpool swap with a minimum output bound.

    Args:
        snapshot: Pool the swap executes against
        owner: Token owner and signer
        input_mint: Mint being sold
        amount_in: Exact input amount
        min_amount_out: Smallest acceptable output

    Returns:
        Whirlpool `swap` instruction
    """
    a_to_b = snapshot.is_input_a(input_mint)
    tick_arrays = swap_tick_arrays(snapshot, a_to_b)
    sqrt_price_limit = MIN_SQRT_PRICE_X64 if a_to_b else MAX_SQRT_PRICE_X64

    data = (
        instruction_discriminator("swap")
        + _u64(amount_in)
        + _u64(min_amount_out)
        + _u128(sqrt_price_limit)
        + bytes([1])  # amount_specified_is_input
        + bytes([1 if a_to_b else 0])
    )
    accounts = [
        _meta(TOKEN_PROGRAM_ID),
        _meta(owner, is_signer=True),
        _meta(snapshot.address, is_writable=True),
        _meta(associated_token_address(owner, snapshot.token_mint_a), is_writable=True),
        _meta(snapshot.token_vault_a, is_writable=True),
        _meta(associated_token_address(owner, snapshot.token_mint_b), is_writable=True),
        _meta(snapshot.token_vault_b, is_writable=True),
        *(_meta(address, is_writable=True) for address in tick_arrays),
        _meta(oracle_address(snapshot.address, snapshot.program_id)),
    ]
    return Instruction(as_pubkey(snapshot.program_id), data, accounts)


def token_swap_swap(
    snapshot: PoolSnapshot,
    owner: Pubkey,
    input_mint: str,
    amount_in: int,
    min_amount_out: int,
) -> Instruction:
    """Token-swap (standard or stable curve) swap instruction."""
    a_to_b = snapshot.is_input_a(input_mint)
    output_mint = snapshot.other_mint(input_mint)
    pool_source, pool_destination = (
        (snapshot.token_vault_a, snapshot.token_vault_b)
        if a_to_b
        else (snapshot.token_vault_b, snapshot.token_vault_a)
    )
    if snapshot.authority is None or snapshot.pool_mint is None:
        raise ValueError(f"Pool {snapshot.address} is missing token-swap accounts")

    data = bytes([TOKEN_SWAP_SWAP_TAG]) + _u64(amount_in) + _u64(min_amount_out)
    accounts = [
        _meta(snapshot.address),
        _meta(snapshot.authority),
        _meta(owner, is_signer=True),
        _meta(associated_token_address(owner, input_mint), is_writable=True),
        _meta(pool_source, is_writable=True),
        _meta(pool_destination, is_writable=True),
        _meta(associated_token_address(owner, output_mint), is_writable=True),
        _meta(snapshot.pool_mint, is_writable=True),
        _meta(snapshot.fee_account, is_writable=True),
        _meta(TOKEN_PROGRAM_ID),
    ]
    return Instruction(as_pubkey(snapshot.program_id), data, accounts)


def open_position(
    snapshot: PoolSnapshot,
    owner: Pubkey,
    position_mint: Pubkey,
    tick_lower_index: int,
    tick_upper_index: int,
) -> Instruction:
    """Open a position NFT for a tick range."""
    program_id = as_pubkey(snapshot.program_id)
    position, position_bump = Pubkey.find_program_address(
        [b"position", bytes(position_mint)], program_id
    )
    data = (
        instruction_discriminator("open_position")
        + bytes([position_bump])
        + _i32(tick_lower_index)
        + _i32(tick_upper_index)
    )
    accounts = [
        _meta(owner, is_signer=True, is_writable=True),  # funder
        _meta(owner),
        _meta(position, is_writable=True),
        _meta(position_mint, is_signer=True, is_writable=True),
        _meta(associated_token_address(owner, position_mint), is_writable=True),
        _meta(snapshot.address),
        _meta(TOKEN_PROGRAM_ID),
        _meta(SYSTEM_PROGRAM_ID),
        _meta(RENT_SYSVAR_ID),
        _meta(ASSOCIATED_TOKEN_PROGRAM_ID),
    ]
    return Instruction(program_id, data, accounts)


def _modify_liquidity_accounts(
    snapshot: PoolSnapshot,
    owner: Pubkey,
    position_mint: str | Pubkey,
    tick_lower_index: int,
    tick_upper_index: int,
) -> list[AccountMeta]:
    spacing = snapshot.tick_spacing
    lower_array = tick_array_address(
        snapshot.address,
        tick_array_start_index(tick_lower_index, spacing),
        snapshot.program_id,
    )
    upper_array = tick_array_address(
        snapshot.address,
        tick_array_start_index(tick_upper_index, spacing),
        snapshot.program_id,
    )
    return [
        _meta(snapshot.address, is_writable=True),
        _meta(TOKEN_PROGRAM_ID),
        _meta(owner, is_signer=True),
        _meta(position_address(position_mint, snapshot.program_id), is_writable=True),
        _meta(associated_token_address(owner, position_mint)),
        _meta(associated_token_address(owner, snapshot.token_mint_a), is_writable=True),
        _meta(associated_token_address(owner, snapshot.token_mint_b), is_writable=True),
        _meta(snapshot.token_vault_a, is_writable=True),
        _meta(snapshot.token_vault_b, is_writable=True),
        _meta(lower_array, is_writable=True),
        _meta(upper_array, is_writable=True),
    ]


def increase_liquidity(
    snapshot: PoolSnapshot,
    owner: Pubkey,
    position_mint: str | Pubkey,
    tick_lower_index: int,
    tick_upper_index: int,
    liquidity: int,
    token_max_a: int,
    token_max_b: int,
) -> Instruction:
    """Deposit `liquidity`, spending at most the given token amounts."""
    data = (
        instruction_discriminator("increase_liquidity")
        + _u128(liquidity)
        + _u64(token_max_a)
        + _u64(token_max_b)
    )
    accounts = _modify_liquidity_accounts(
        snapshot, owner, position_mint, tick_lower_index, tick_upper_index
    )
    return Instruction(as_pubkey(snapshot.program_id), data, accounts)


def decrease_liquidity(
    snapshot: PoolSnapshot,
    owner: Pubkey,
    position_mint: str | Pubkey,
    tick_lower_index: int,
    tick_upper_index: int,
    liquidity: int,
    token_min_a: int,
    token_min_b: int,
) -> Instruction:
    """Withdraw `liquidity`, receiving at least the given token amounts."""
    data = (
        instruction_discriminator("decrease_liquidity")
        + _u128(liquidity)
        + _u64(token_min_a)
        + _u64(token_min_b)
    )
    accounts = _modify_liquidity_accounts(
        snapshot, owner, position_mint, tick_lower_index, tick_upper_index
    )
    return Instruction(as_pubkey(snapshot.program_id), data, accounts)


def collect_fees(
    snapshot: PoolSnapshot, owner: Pubkey, position_mint: str | Pubkey
) -> Instruction:
    accounts = [
        _meta(snapshot.address),
        _meta(owner, is_signer=True),
        _meta(position_address(position_mint, snapshot.program_id), is_writable=True),
        _meta(associated_token_address(owner, position_mint)),
        _meta(associated_token_address(owner, snapshot.token_mint_a), is_writable=True),
        _meta(snapshot.token_vault_a, is_writable=True),
        _meta(associated_token_address(owner, snapshot.token_mint_b), is_writable=True),
        _meta(snapshot.token_vault_b, is_writable=True),
        _meta(TOKEN_PROGRAM_ID),
    ]
    return Instruction(
        as_pubkey(snapshot.program_id),
        instruction_discriminator("collect_fees"),
        accounts,
    )


def close_position(
    snapshot: PoolSnapshot, owner: Pubkey, position_mint: str | Pubkey
) -> Instruction:
    """Burn the position NFT and reclaim rent to the owner."""
    accounts = [
        _meta(owner, is_signer=True),
        _meta(owner, is_writable=True),  # receiver
        _meta(position_address(position_mint, snapshot.program_id), is_writable=True),
        _meta(position_mint, is_writable=True),
        _meta(associated_token_address(owner, position_mint), is_writable=True),
        _meta(TOKEN_PROGRAM_ID),
    ]
    return Instruction(
        as_pubkey(snapshot.program_id),
        instruction_discriminator("close_position"),
        accounts,
    )

"""Program-derived addresses used by Whirlpool and token-swap pools."""

from solders.pubkey import Pubkey

SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
RENT_SYSVAR_ID = Pubkey.from_string("SysvarRent111111111111111111111111111111111")
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string(
    "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
)

TICK_ARRAY_SIZE = 88


def as_pubkey(value: str | Pubkey) -> Pubkey:
    return value if isinstance(value, Pubkey) else Pubkey.from_string(value)


def associated_token_address(
    owner: str | Pubkey,
    mint: str | Pubkey,
    token_program_id: Pubkey = TOKEN_PROGRAM_ID,
    associated_token_program_id: Pubkey = ASSOCIATED_TOKEN_PROGRAM_ID,
) -> Pubkey:
    """Associated token account of `owner` for `mint`."""
    address, _ = Pubkey.find_program_address(
        [bytes(as_pubkey(owner)), bytes(token_program_id), bytes(as_pubkey(mint))],
        associated_token_program_id,
    )
    return address


def position_address(position_mint: str | Pubkey, program_id: str | Pubkey) -> Pubkey:
    """Position account derived from its NFT mint."""
    address, _ = Pubkey.find_program_address(
        [b"position", bytes(as_pubkey(position_mint))], as_pubkey(program_id)
    )
    return address


def tick_array_start_index(tick_index: int, tick_spacing: int) -> int:
    """First tick of the array containing `tick_index`."""
    ticks_in_array = TICK_ARRAY_SIZE * tick_spacing
    return (tick_index // ticks_in_array) * ticks_in_array


def tick_array_address(
    whirlpool: str | Pubkey, start_tick_index: int, program_id: str | Pubkey
) -> Pubkey:
    """Tick array account for the array starting at `start_tick_index`."""
    address, _ = Pubkey.find_program_address(
        [
            b"tick_array",
            bytes(as_pubkey(whirlpool)),
            str(start_tick_index).encode("utf-8"),
        ],
        as_pubkey(program_id),
    )
    return address


def oracle_address(whirlpool: str | Pubkey, program_id: str | Pubkey) -> Pubkey:
    address, _ = Pubkey.find_program_address(
        [b"oracle", bytes(as_pubkey(whirlpool))], as_pubkey(program_id)
    )
    return address


def swap_authority(
    pool: str | Pubkey, bump_seed: int, program_id: str | Pubkey
) -> Pubkey:
    """Token-swap pool authority, derived from the pool address and stored bump."""
    return Pubkey.create_program_address(
        [bytes(as_pubkey(pool)), bytes([bump_seed])], as_pubkey(program_id)
    )

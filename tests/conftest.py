"""Shared fixtures: an in-memory ledger, a recording signer and account builders."""

import math
import struct
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from orcakit.amm.tick_math import sqrt_price_x64_to_price, tick_to_sqrt_price_x64
from orcakit.core.errors import AccountNotFound
from orcakit.core.transactions import SignedTransaction
from orcakit.core.types import PoolSnapshot, PoolVariant
from orcakit.data.addresses import TICK_ARRAY_SIZE
from orcakit.data.pool_reader import (
    POSITION_DISCRIMINATOR,
    POSITION_SIZE,
    TICK_ARRAY_DISCRIMINATOR,
    TICK_ARRAY_SIZE_BYTES,
    TICK_SIZE,
    TOKEN_ACCOUNT_SIZE,
    TOKEN_SWAP_SIZE,
    WHIRLPOOL_DISCRIMINATOR,
    WHIRLPOOL_SIZE,
)

WHIRLPOOL_PROGRAM = "whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc"
TOKEN_SWAP_PROGRAM = "9W959DqEETiGZocYWCQPaJ6sBmUzgfxXfqGeTEdp3aQP"
TOKEN_PROGRAM = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def addr(n: int) -> str:
    """Deterministic base58 address for small integers."""
    return str(Pubkey.from_bytes(bytes([n]) * 32))


class FakeTransport:
    """In-memory ledger implementing the transport protocol."""

    def __init__(self) -> None:
        self.accounts: dict[str, bytes] = {}
        self.owners: dict[str, str] = {}
        self.token_accounts: dict[str, list[tuple[str, bytes]]] = {}
        self.blockhash = str(Hash.default())

        # Queued outcomes; None means success. When empty, the default is used.
        self.simulation_results: list[Exception | None] = []
        self.default_simulation_error: Exception | None = None
        self.submit_results: list[Exception | None] = []

        self.fetch_calls: list[str] = []
        self.simulated: list[SignedTransaction] = []
        self.submitted: list[SignedTransaction] = []

    def add_account(self, address: str, data: bytes, owner: str | None = None) -> None:
        self.accounts[address] = data
        if owner is not None:
            self.owners[address] = owner

    async def fetch_account(self, address: str) -> bytes:
        self.fetch_calls.append(address)
        if address not in self.accounts:
            raise AccountNotFound(address)
        return self.accounts[address]

    async def get_program_accounts(self, program_id, filters):
        matches = []
        for address, data in self.accounts.items():
            if self.owners.get(address) != program_id:
                continue
            if all(_filter_matches(data, f) for f in filters):
                matches.append((address, data))
        return matches

    async def get_token_accounts_by_owner(self, owner, program_id):
        return list(self.token_accounts.get(owner, []))

    async def get_latest_blockhash(self) -> str:
        return self.blockhash

    async def simulate_transaction(self, signed: SignedTransaction) -> None:
        self.simulated.append(signed)
        if self.simulation_results:
            error = self.simulation_results.pop(0)
        else:
            error = self.default_simulation_error
        if error is not None:
            raise error

    async def submit_transaction(self, signed: SignedTransaction) -> str:
        if self.submit_results:
            error = self.submit_results.pop(0)
            if error is not None:
                raise error
        self.submitted.append(signed)
        return f"sig{len(self.submitted)}"


def _filter_matches(data: bytes, spec: dict) -> bool:
    if "dataSize" in spec:
        return len(data) == spec["dataSize"]
    memcmp = spec["memcmp"]
    expected = bytes(Pubkey.from_string(memcmp["bytes"]))
    offset = memcmp["offset"]
    return data[offset : offset + len(expected)] == expected


class FakeSigner:
    """Signer that records what it was asked to sign."""

    def __init__(self) -> None:
        self.signed = []

    def sign(self, unsigned, key):
        self.signed.append(unsigned)
        return SignedTransaction(
            raw=b"signed", signature=f"fake{len(self.signed)}", kind=unsigned.kind
        )


class AccountBuilder:
    """Raw account bytes laid out the way the on-chain programs store them."""

    addr = staticmethod(addr)

    @staticmethod
    def whirlpool(
        mint_a: str,
        mint_b: str,
        vault_a: str,
        vault_b: str,
        tick: int = 0,
        tick_spacing: int = 8,
        fee_rate: int = 3000,
        liquidity: int = 10**12,
        sqrt_price_x64: int | None = None,
        fee_growth_a: int = 0,
        fee_growth_b: int = 0,
    ) -> bytes:
        data = bytearray(WHIRLPOOL_SIZE)
        data[0:8] = WHIRLPOOL_DISCRIMINATOR
        struct.pack_into("<H", data, 41, tick_spacing)
        struct.pack_into("<H", data, 45, fee_rate)
        data[49:65] = liquidity.to_bytes(16, "little")
        if sqrt_price_x64 is None:
            sqrt_price_x64 = tick_to_sqrt_price_x64(tick)
        data[65:81] = sqrt_price_x64.to_bytes(16, "little")
        struct.pack_into("<i", data, 81, tick)
        data[101:133] = bytes(Pubkey.from_string(mint_a))
        data[133:165] = bytes(Pubkey.from_string(vault_a))
        data[165:181] = fee_growth_a.to_bytes(16, "little")
        data[181:213] = bytes(Pubkey.from_string(mint_b))
        data[213:245] = bytes(Pubkey.from_string(vault_b))
        data[245:261] = fee_growth_b.to_bytes(16, "little")
        return bytes(data)

    @staticmethod
    def token_swap(
        pool: str,
        mint_a: str,
        mint_b: str,
        vault_a: str,
        vault_b: str,
        pool_mint: str,
        fee_account: str,
        program_id: str = TOKEN_SWAP_PROGRAM,
        trade_fee: tuple[int, int] = (25, 10000),
        owner_fee: tuple[int, int] = (5, 10000),
        curve_type: int = 0,
        amp: int = 0,
        initialized: bool = True,
    ) -> bytes:
        _, bump = Pubkey.find_program_address(
            [bytes(Pubkey.from_string(pool))], Pubkey.from_string(program_id)
        )
        data = bytearray(TOKEN_SWAP_SIZE)
        data[0] = 1
        data[1] = 1 if initialized else 0
        data[2] = bump
        data[3:35] = bytes(Pubkey.from_string(TOKEN_PROGRAM))
        data[35:67] = bytes(Pubkey.from_string(vault_a))
        data[67:99] = bytes(Pubkey.from_string(vault_b))
        data[99:131] = bytes(Pubkey.from_string(pool_mint))
        data[131:163] = bytes(Pubkey.from_string(mint_a))
        data[163:195] = bytes(Pubkey.from_string(mint_b))
        data[195:227] = bytes(Pubkey.from_string(fee_account))
        struct.pack_into("<4Q", data, 227, *trade_fee, *owner_fee)
        data[291] = curve_type
        struct.pack_into("<Q", data, 292, amp)
        return bytes(data)

    @staticmethod
    def token_account(mint: str, owner: str, amount: int) -> bytes:
        data = bytearray(TOKEN_ACCOUNT_SIZE)
        data[0:32] = bytes(Pubkey.from_string(mint))
        data[32:64] = bytes(Pubkey.from_string(owner))
        struct.pack_into("<Q", data, 64, amount)
        return bytes(data)

    @staticmethod
    def tick_array(
        whirlpool: str, start: int, tick_spacing: int, initialized: dict[int, int]
    ) -> bytes:
        """`initialized` maps tick index to liquidity_net."""
        data = bytearray(TICK_ARRAY_SIZE_BYTES)
        data[0:8] = TICK_ARRAY_DISCRIMINATOR
        struct.pack_into("<i", data, 8, start)
        for tick_index, liquidity_net in initialized.items():
            slot = (tick_index - start) // tick_spacing
            offset = 12 + slot * TICK_SIZE
            data[offset] = 1
            data[offset + 1 : offset + 17] = liquidity_net.to_bytes(
                16, "little", signed=True
            )
        end = 12 + TICK_ARRAY_SIZE * TICK_SIZE
        data[end : end + 32] = bytes(Pubkey.from_string(whirlpool))
        return bytes(data)

    @staticmethod
    def position(
        whirlpool: str,
        position_mint: str,
        liquidity: int,
        lower: int,
        upper: int,
        fee_owed_a: int = 0,
        fee_owed_b: int = 0,
    ) -> bytes:
        data = bytearray(POSITION_SIZE)
        data[0:8] = POSITION_DISCRIMINATOR
        data[8:40] = bytes(Pubkey.from_string(whirlpool))
        data[40:72] = bytes(Pubkey.from_string(position_mint))
        data[72:88] = liquidity.to_bytes(16, "little")
        struct.pack_into("<i", data, 88, lower)
        struct.pack_into("<i", data, 92, upper)
        struct.pack_into("<Q", data, 112, fee_owed_a)
        struct.pack_into("<Q", data, 136, fee_owed_b)
        return bytes(data)


def build_snapshot(variant: PoolVariant = PoolVariant.STANDARD, **overrides) -> PoolSnapshot:
    """Snapshot with consistent defaults for the chosen curve."""
    fields = {
        "address": addr(10),
        "variant": variant,
        "token_mint_a": addr(1),
        "token_mint_b": addr(2),
        "token_vault_a": addr(3),
        "token_vault_b": addr(4),
        "fee_rate": Decimal("0.003"),
        "timestamp": BASE_TIME,
    }
    if variant == PoolVariant.CONCENTRATED:
        tick = overrides.get("tick_current_index", 0)
        sqrt_price = overrides.get("sqrt_price_x64", tick_to_sqrt_price_x64(tick))
        fields.update(
            program_id=WHIRLPOOL_PROGRAM,
            tick_current_index=tick,
            sqrt_price_x64=sqrt_price,
            tick_spacing=8,
            liquidity=10**12,
        )
        fields["price"] = sqrt_price_x64_to_price(sqrt_price)
    else:
        reserve_a = overrides.get("reserve_a", 1_000_000)
        reserve_b = overrides.get("reserve_b", 2_000_000)
        fields.update(
            program_id=TOKEN_SWAP_PROGRAM,
            reserve_a=reserve_a,
            reserve_b=reserve_b,
            liquidity=math.isqrt(reserve_a * reserve_b),
            amp=100 if variant == PoolVariant.STABLE else 0,
            pool_mint=addr(6),
            fee_account=addr(7),
            authority=addr(5),
        )
        fields["price"] = (
            Decimal(reserve_b) / Decimal(reserve_a) if reserve_a else Decimal(0)
        )
    fields.update(overrides)
    return PoolSnapshot(**fields)


@pytest.fixture
def transport():
    """Empty in-memory ledger."""
    return FakeTransport()


@pytest.fixture
def signer():
    return FakeSigner()


@pytest.fixture
def keypair():
    return Keypair()


@pytest.fixture
def accounts():
    """Builder for raw account bytes and deterministic addresses."""
    return AccountBuilder()


@pytest.fixture
def make_snapshot():
    """Factory for pool snapshots; keyword overrides replace defaults."""
    return build_snapshot


@pytest.fixture
def clock():
    """Clock returning BASE_TIME plus one second per call."""
    state = {"calls": 0}

    def now():
        state["calls"] += 1
        return BASE_TIME + timedelta(seconds=state["calls"])

    return now

"""Fetches pool, tick-array and position accounts through the ledger transport."""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog

from ..core.errors import AccountNotFound, PoolNotFound
from ..core.interfaces import LedgerTransport
from ..core.types import PoolSnapshot, TickLiquidity
from .addresses import (
    TICK_ARRAY_SIZE,
    position_address,
    tick_array_address,
    tick_array_start_index,
)
from .pool_reader import (
    TOKEN_SWAP_SIZE,
    WHIRLPOOL_SIZE,
    PositionAccount,
    decode_position,
    decode_tick_array,
    decode_token_account,
    decode_token_swap,
    decode_whirlpool,
    is_whirlpool,
    token_swap_snapshot,
)

logger = structlog.get_logger(__name__)

# Whirlpool mint offsets, token-swap mint offsets
WHIRLPOOL_MINT_A_OFFSET = 101
WHIRLPOOL_MINT_B_OFFSET = 181
TOKEN_SWAP_MINT_A_OFFSET = 131
TOKEN_SWAP_MINT_B_OFFSET = 163

# Arrays fetched on each side of the current one
TICK_ARRAY_NEIGHBORS = 1


@dataclass(frozen=True)
class OwnedPosition:
    """A position account together with its NFT holder."""

    owner: str
    account: PositionAccount


class PoolLoader:
    """Reads pools and positions from the ledger into snapshots."""

    def __init__(
        self,
        transport: LedgerTransport,
        whirlpool_program_id: str,
        token_swap_program_id: str,
        token_program_id: str,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self.transport = transport
        self.whirlpool_program_id = whirlpool_program_id
        self.token_swap_program_id = token_swap_program_id
        self.token_program_id = token_program_id
        self.now_fn = now_fn or (lambda: datetime.now(timezone.utc))

    async def fetch_snapshot(self, pool_address: str) -> PoolSnapshot:
        """Fetch and decode a pool of any variant.

        Raises:
            AccountNotFound: If the pool or one of its vaults does not exist
            ValueError: If the account is neither a Whirlpool nor a token-swap pool
        """
        data = await self.transport.fetch_account(pool_address)
        timestamp = self.now_fn()

        if is_whirlpool(data):
            snapshot = decode_whirlpool(
                pool_address, data, self.whirlpool_program_id, timestamp
            )
            ticks, coverage = await self._fetch_ticks(snapshot)
            return snapshot.model_copy(update={"ticks": ticks, "tick_coverage": coverage})

        if len(data) == TOKEN_SWAP_SIZE:
            state = decode_token_swap(pool_address, data, self.token_swap_program_id)
            vault_a = decode_token_account(
                await self.transport.fetch_account(state.token_vault_a)
            )
            vault_b = decode_token_account(
                await self.transport.fetch_account(state.token_vault_b)
            )
            return token_swap_snapshot(state, vault_a.amount, vault_b.amount, timestamp)

        raise ValueError(
            f"Account {pool_address} is not a supported pool ({len(data)} bytes)"
        )

    async def _fetch_ticks(
        self, snapshot: PoolSnapshot
    ) -> tuple[tuple[TickLiquidity, ...], tuple[int, int]]:
        """Load the current tick array and its neighbors.

        Coverage is the contiguous span of loaded arrays around the current
        one; missing arrays end it. Without a current array the coverage
        is empty (high below low).
        """
        spacing = snapshot.tick_spacing
        span = TICK_ARRAY_SIZE * spacing
        current_start = tick_array_start_index(snapshot.tick_current_index, spacing)

        loaded: dict[int, tuple[TickLiquidity, ...]] = {}
        for offset in range(-TICK_ARRAY_NEIGHBORS, TICK_ARRAY_NEIGHBORS + 1):
            start = current_start + offset * span
            address = tick_array_address(snapshot.address, start, snapshot.program_id)
            try:
                data = await self.transport.fetch_account(str(address))
            except AccountNotFound:
                continue
            loaded[start] = decode_tick_array(data, spacing).ticks

        if current_start not in loaded:
            logger.debug(
                "Current tick array not initialized",
                pool=snapshot.address,
                start_tick_index=current_start,
            )
            return (), (current_start, current_start - 1)

        low = current_start
        while low - span in loaded:
            low -= span
        high = current_start
        while high + span in loaded:
            high += span

        ticks = tuple(
            tick
            for start in sorted(loaded)
            if low <= start <= high
            for tick in loaded[start]
        )
        return ticks, (low, high + span - 1)

    async def find_pools(self, mint_a: str, mint_b: str) -> list[PoolSnapshot]:
        """All pools trading the pair, deepest liquidity first.

        Raises:
            PoolNotFound: If no pool trades the pair
        """
        candidates: list[str] = []
        for first, second in ((mint_a, mint_b), (mint_b, mint_a)):
            whirlpools = await self.transport.get_program_accounts(
                self.whirlpool_program_id,
                [
                    {"dataSize": WHIRLPOOL_SIZE},
                    {"memcmp": {"offset": WHIRLPOOL_MINT_A_OFFSET, "bytes": first}},
                    {"memcmp": {"offset": WHIRLPOOL_MINT_B_OFFSET, "bytes": second}},
                ],
            )
            swaps = await self.transport.get_program_accounts(
                self.token_swap_program_id,
                [
                    {"dataSize": TOKEN_SWAP_SIZE},
                    {"memcmp": {"offset": TOKEN_SWAP_MINT_A_OFFSET, "bytes": first}},
                    {"memcmp": {"offset": TOKEN_SWAP_MINT_B_OFFSET, "bytes": second}},
                ],
            )
            candidates.extend(address for address, _ in whirlpools + swaps)

        snapshots = []
        for address in candidates:
            try:
                snapshots.append(await self.fetch_snapshot(address))
            except (AccountNotFound, ValueError) as e:
                logger.warning("Skipping unreadable pool", pool=address, error=str(e))

        if not snapshots:
            raise PoolNotFound(mint_a, mint_b)

        snapshots.sort(key=lambda s: s.liquidity, reverse=True)
        logger.info(
            "Pools discovered",
            mint_a=mint_a,
            mint_b=mint_b,
            count=len(snapshots),
            best=snapshots[0].address,
        )
        return snapshots

    async def fetch_positions(self, owner: str) -> list[OwnedPosition]:
        """Positions whose NFT the owner holds.

        Position NFTs are token accounts holding exactly one unit; mints
        without a position account are ignored.
        """
        token_accounts = await self.transport.get_token_accounts_by_owner(
            owner, self.token_program_id
        )
        positions = []
        for _, data in token_accounts:
            account = decode_token_account(data)
            if account.amount != 1:
                continue
            address = str(position_address(account.mint, self.whirlpool_program_id))
            try:
                position_data = await self.transport.fetch_account(address)
            except AccountNotFound:
                continue
            try:
                positions.append(
                    OwnedPosition(owner=owner, account=decode_position(address, position_data))
                )
            except ValueError as e:
                logger.debug("Skipping undecodable position", position=address, error=str(e))
        return positions

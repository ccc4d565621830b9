"""
Execution engine: turns swap and liquidity intents into confirmed transactions.

Each operation runs as an explicit state machine:

    QUOTING -> BUILDING -> SUBMITTING -> CONFIRMED
        ^                      |
        +---- RETRYING <-------+   (stale price or thin liquidity)

Any state may move to FAILED. `ExecutionRun.step()` performs exactly one
transition so each one can be exercised on its own.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from enum import Enum
from typing import Any

import structlog
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from ..amm.liquidity import amounts_for_liquidity, liquidity_for_amounts
from ..amm.quote import quote_swap
from ..amm.tick_math import check_tick_range
from ..core.errors import (
    InsufficientLiquidity,
    OrcaError,
    SlippageExceeded,
    TransactionRejected,
    UnsupportedPoolVariant,
    ZeroOutput,
)
from ..core.interfaces import LedgerTransport, SnapshotFetcher, TxnSigner
from ..core.transactions import UnsignedTransaction
from ..core.types import (
    LiquidityPosition,
    PoolSnapshot,
    PoolVariant,
    TradeConfig,
    TradeQuote,
)
from ..data.addresses import position_address
from . import instructions

logger = structlog.get_logger(__name__)


class ExecutionState(str, Enum):
    QUOTING = "quoting"
    BUILDING = "building"
    SUBMITTING = "submitting"
    RETRYING = "retrying"
    CONFIRMED = "confirmed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({ExecutionState.CONFIRMED, ExecutionState.FAILED})


def min_with_slippage(amount: int, slippage: float) -> int:
    """floor(amount * (1 - slippage))"""
    factor = Decimal(1) - Decimal(str(slippage))
    return int((Decimal(amount) * factor).to_integral_value(rounding=ROUND_FLOOR))


def max_with_slippage(amount: int, slippage: float) -> int:
    """ceil(amount * (1 + slippage))"""
    factor = Decimal(1) + Decimal(str(slippage))
    return int((Decimal(amount) * factor).to_integral_value(rounding=ROUND_CEILING))


@dataclass(frozen=True)
class LiquidityQuote:
    """Liquidity and token amounts for a position change at one snapshot."""

    liquidity: int
    token_a: int
    token_b: int


class OperationPlan:
    """What an execution run quotes, builds and reports for one operation."""

    kind = "operation"

    def __init__(self, pool_address: str) -> None:
        self.pool_address = pool_address

    def validate(self) -> None:
        """Check arguments before any snapshot is fetched."""

    def quote(self, snapshot: PoolSnapshot) -> Any:
        raise NotImplementedError

    def build(
        self, snapshot: PoolSnapshot, quote: Any, owner: Pubkey, slippage: float
    ) -> UnsignedTransaction:
        raise NotImplementedError

    def output(
        self, snapshot: PoolSnapshot, quote: Any, unsigned: UnsignedTransaction
    ) -> Any:
        """Value attached to a confirmed result."""
        return None


class SwapPlan(OperationPlan):
    """Exact-input swap through a single pool."""

    kind = "swap"

    def __init__(
        self, pool_address: str, input_mint: str, output_mint: str, amount: int
    ) -> None:
        super().__init__(pool_address)
        self.input_mint = input_mint
        self.output_mint = output_mint
        self.amount = amount

    def validate(self) -> None:
        if self.amount <= 0:
            raise ZeroOutput(f"Swap amount must be positive, got {self.amount}")
        if self.input_mint == self.output_mint:
            raise ValueError("Input and output mints must differ")

    def quote(self, snapshot: PoolSnapshot) -> TradeQuote:
        if snapshot.other_mint(self.input_mint) != self.output_mint:
            raise ValueError(
                f"Token {self.output_mint} not in pool {snapshot.address}"
            )
        result = quote_swap(snapshot.variant, snapshot, self.input_mint, self.amount)
        if result.output_amount == 0:
            raise ZeroOutput(
                f"Swapping {self.amount} of {self.input_mint} yields nothing"
            )
        return TradeQuote(
            pool_address=snapshot.address,
            input_mint=self.input_mint,
            output_mint=self.output_mint,
            input_amount=self.amount,
            output_amount=result.output_amount,
            fee_amount=result.fee_amount,
            price_impact_pct=result.price_impact_pct,
            ts=snapshot.timestamp,
        )

    def build(
        self, snapshot: PoolSnapshot, quote: TradeQuote, owner: Pubkey, slippage: float
    ) -> UnsignedTransaction:
        min_output = min_with_slippage(quote.output_amount, slippage)
        if snapshot.variant == PoolVariant.CONCENTRATED:
            swap_ix = instructions.whirlpool_swap(
                snapshot, owner, self.input_mint, self.amount, min_output
            )
        else:
            swap_ix = instructions.token_swap_swap(
                snapshot, owner, self.input_mint, self.amount, min_output
            )
        return UnsignedTransaction(
            kind=self.kind,
            payer=owner,
            instructions=(
                instructions.create_associated_token_account_idempotent(
                    owner, owner, self.output_mint
                ),
                swap_ix,
            ),
            metadata={
                "expected_output": quote.output_amount,
                "min_output": min_output,
            },
        )


class AddLiquidityPlan(OperationPlan):
    """Open a position over a tick range and fund it."""

    kind = "add_liquidity"

    def __init__(
        self,
        pool: PoolSnapshot,
        amount_a: int,
        amount_b: int,
        lower_tick: int,
        upper_tick: int,
        mint_factory: Callable[[], Keypair] = Keypair,
    ) -> None:
        super().__init__(pool.address)
        self.pool = pool
        self.amount_a = amount_a
        self.amount_b = amount_b
        self.lower_tick = lower_tick
        self.upper_tick = upper_tick
        self.mint_factory = mint_factory

    def validate(self) -> None:
        if self.pool.variant != PoolVariant.CONCENTRATED:
            raise UnsupportedPoolVariant(
                f"Positions require a concentrated pool, got {self.pool.variant.value}"
            )
        check_tick_range(self.lower_tick, self.upper_tick, self.pool.tick_spacing)
        if self.amount_a < 0 or self.amount_b < 0:
            raise ValueError("Token amounts must be non-negative")

    def quote(self, snapshot: PoolSnapshot) -> LiquidityQuote:
        liquidity = liquidity_for_amounts(
            self.amount_a,
            self.amount_b,
            self.lower_tick,
            self.upper_tick,
            snapshot.tick_current_index,
            sqrt_price_x64=snapshot.sqrt_price_x64,
        )
        if liquidity == 0:
            raise ZeroOutput(
                f"Amounts {self.amount_a}/{self.amount_b} fund no liquidity "
                f"in [{self.lower_tick}, {self.upper_tick}]"
            )
        token_a, token_b = amounts_for_liquidity(
            liquidity,
            self.lower_tick,
            self.upper_tick,
            snapshot.tick_current_index,
            round_up=True,
            sqrt_price_x64=snapshot.sqrt_price_x64,
        )
        return LiquidityQuote(liquidity=liquidity, token_a=token_a, token_b=token_b)

    def build(
        self,
        snapshot: PoolSnapshot,
        quote: LiquidityQuote,
        owner: Pubkey,
        slippage: float,
    ) -> UnsignedTransaction:
        position_mint = self.mint_factory()
        token_max_a = max_with_slippage(quote.token_a, slippage)
        token_max_b = max_with_slippage(quote.token_b, slippage)
        return UnsignedTransaction(
            kind=self.kind,
            payer=owner,
            instructions=(
                instructions.open_position(
                    snapshot,
                    owner,
                    position_mint.pubkey(),
                    self.lower_tick,
                    self.upper_tick,
                ),
                instructions.increase_liquidity(
                    snapshot,
                    owner,
                    position_mint.pubkey(),
                    self.lower_tick,
                    self.upper_tick,
                    quote.liquidity,
                    token_max_a,
                    token_max_b,
                ),
            ),
            extra_signers=(position_mint,),
            metadata={
                "owner": str(owner),
                "position_mint": str(position_mint.pubkey()),
                "token_min_a": min_with_slippage(quote.token_a, slippage),
                "token_min_b": min_with_slippage(quote.token_b, slippage),
                "token_max_a": token_max_a,
                "token_max_b": token_max_b,
            },
        )

    def output(
        self,
        snapshot: PoolSnapshot,
        quote: LiquidityQuote,
        unsigned: UnsignedTransaction,
    ) -> LiquidityPosition:
        position_mint = unsigned.metadata["position_mint"]
        return LiquidityPosition(
            pool_address=snapshot.address,
            owner=unsigned.metadata["owner"],
            position_mint=position_mint,
            position_address=str(position_address(position_mint, snapshot.program_id)),
            tick_lower_index=self.lower_tick,
            tick_upper_index=self.upper_tick,
            tick_spacing=snapshot.tick_spacing,
            liquidity=quote.liquidity,
            token_a_amount=quote.token_a,
            token_b_amount=quote.token_b,
        )


class RemoveLiquidityPlan(OperationPlan):
    """Withdraw all liquidity from a position, collect its fees and close it."""

    kind = "remove_liquidity"

    def __init__(self, position: LiquidityPosition) -> None:
        super().__init__(position.pool_address)
        self.position = position

    def validate(self) -> None:
        if self.position.liquidity == 0:
            raise ZeroOutput(f"Position {self.position.position_mint} has no liquidity")

    def quote(self, snapshot: PoolSnapshot) -> LiquidityQuote:
        if snapshot.variant != PoolVariant.CONCENTRATED:
            raise UnsupportedPoolVariant(
                f"Positions require a concentrated pool, got {snapshot.variant.value}"
            )
        token_a, token_b = amounts_for_liquidity(
            self.position.liquidity,
            self.position.tick_lower_index,
            self.position.tick_upper_index,
            snapshot.tick_current_index,
            sqrt_price_x64=snapshot.sqrt_price_x64,
        )
        return LiquidityQuote(
            liquidity=self.position.liquidity, token_a=token_a, token_b=token_b
        )

    def build(
        self,
        snapshot: PoolSnapshot,
        quote: LiquidityQuote,
        owner: Pubkey,
        slippage: float,
    ) -> UnsignedTransaction:
        mint = self.position.position_mint
        lower = self.position.tick_lower_index
        upper = self.position.tick_upper_index
        token_min_a = min_with_slippage(quote.token_a, slippage)
        token_min_b = min_with_slippage(quote.token_b, slippage)
        return UnsignedTransaction(
            kind=self.kind,
            payer=owner,
            instructions=(
                instructions.create_associated_token_account_idempotent(
                    owner, owner, snapshot.token_mint_a
                ),
                instructions.create_associated_token_account_idempotent(
                    owner, owner, snapshot.token_mint_b
                ),
                instructions.decrease_liquidity(
                    snapshot,
                    owner,
                    mint,
                    lower,
                    upper,
                    quote.liquidity,
                    token_min_a,
                    token_min_b,
                ),
                instructions.collect_fees(snapshot, owner, mint),
                instructions.close_position(snapshot, owner, mint),
            ),
            metadata={
                "position_mint": mint,
                "token_min_a": token_min_a,
                "token_min_b": token_min_b,
                "token_max_a": max_with_slippage(quote.token_a, slippage),
                "token_max_b": max_with_slippage(quote.token_b, slippage),
            },
        )

    def output(
        self,
        snapshot: PoolSnapshot,
        quote: LiquidityQuote,
        unsigned: UnsignedTransaction,
    ) -> LiquidityPosition:
        return self.position.with_liquidity(0, 0, 0)


@dataclass
class ExecutionResult:
    """Outcome of one operation, kept for inspection."""

    kind: str
    state: ExecutionState
    attempts: int
    history: list[ExecutionState] = field(default_factory=list)
    signature: str | None = None
    quote: Any = None
    output: Any = None
    error: Exception | None = None
    submissions: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def confirmed(self) -> bool:
        return self.state == ExecutionState.CONFIRMED

    def raise_for_error(self) -> str:
        """Return the signature, or raise the error that ended the run."""
        if self.error is not None:
            raise self.error
        if self.signature is None:
            raise RuntimeError(f"{self.kind} finished without a signature")
        return self.signature


class ExecutionRun:
    """State machine for a single operation."""

    def __init__(
        self,
        plan: OperationPlan,
        fetch_snapshot: SnapshotFetcher,
        transport: LedgerTransport,
        signer: TxnSigner,
        key: Keypair,
        config: TradeConfig,
        preflight: bool = True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self.plan = plan
        self.fetch_snapshot = fetch_snapshot
        self.transport = transport
        self.signer = signer
        self.key = key
        self.config = config
        self.preflight = preflight
        self.sleep = sleep
        self.now_fn = now_fn or (lambda: datetime.now(timezone.utc))

        self.state = ExecutionState.QUOTING
        self.attempts = 1
        self.history = [ExecutionState.QUOTING]
        self.snapshot: PoolSnapshot | None = None
        self.quote: Any = None
        self.unsigned: UnsignedTransaction | None = None
        self.signature: str | None = None
        self.output: Any = None
        self.error: Exception | None = None
        self.last_error: Exception | None = None
        self.submissions = 0
        self.started_at = self.now_fn()

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    def _transition(self, state: ExecutionState) -> ExecutionState:
        logger.debug(
            "Execution transition",
            kind=self.plan.kind,
            from_state=self.state.value,
            to_state=state.value,
            attempt=self.attempts,
        )
        self.state = state
        self.history.append(state)
        return state

    def _fail(self, error: Exception) -> ExecutionState:
        self.error = error
        logger.warning(
            "Execution failed",
            kind=self.plan.kind,
            attempts=self.attempts,
            error=str(error),
            error_type=type(error).__name__,
        )
        return self._transition(ExecutionState.FAILED)

    def _retry_or_fail(self, error: Exception) -> ExecutionState:
        self.last_error = error
        if self.attempts < self.config.max_iterations:
            logger.info(
                "Retrying with a fresh quote",
                kind=self.plan.kind,
                attempt=self.attempts,
                max_iterations=self.config.max_iterations,
                reason=str(error),
            )
            return self._transition(ExecutionState.RETRYING)
        if isinstance(error, TransactionRejected):
            return self._fail(SlippageExceeded(self.attempts, error))
        return self._fail(error)

    async def step(self) -> ExecutionState:
        """Perform one state transition and return the new state."""
        if self.state == ExecutionState.QUOTING:
            return await self._step_quoting()
        if self.state == ExecutionState.BUILDING:
            return self._step_building()
        if self.state == ExecutionState.SUBMITTING:
            return await self._step_submitting()
        if self.state == ExecutionState.RETRYING:
            return await self._step_retrying()
        return self.state

    async def _step_quoting(self) -> ExecutionState:
        try:
            self.plan.validate()
            self.snapshot = await self.fetch_snapshot(self.plan.pool_address)
            self.quote = self.plan.quote(self.snapshot)
        except InsufficientLiquidity as e:
            return self._retry_or_fail(e)
        except (OrcaError, ValueError) as e:
            return self._fail(e)
        return self._transition(ExecutionState.BUILDING)

    def _step_building(self) -> ExecutionState:
        try:
            self.unsigned = self.plan.build(
                self.snapshot,
                self.quote,
                self.key.pubkey(),
                self.config.slippage_tolerance,
            )
        except (OrcaError, ValueError) as e:
            return self._fail(e)
        return self._transition(ExecutionState.SUBMITTING)

    async def _step_submitting(self) -> ExecutionState:
        try:
            blockhash = await self.transport.get_latest_blockhash()
        except OrcaError as e:
            return self._fail(e)

        try:
            signed = self.signer.sign(self.unsigned.with_blockhash(blockhash), self.key)
        except Exception as e:
            # Signing failures end the run
            return self._fail(e)

        try:
            if self.preflight:
                await self.transport.simulate_transaction(signed)
            self.submissions += 1
            self.signature = await self.transport.submit_transaction(signed)
        except TransactionRejected as e:
            if e.stale_price:
                return self._retry_or_fail(e)
            return self._fail(e)
        except OrcaError as e:
            return self._fail(e)

        self.output = self.plan.output(self.snapshot, self.quote, self.unsigned)
        logger.info(
            "Execution confirmed",
            kind=self.plan.kind,
            signature=self.signature,
            attempts=self.attempts,
        )
        return self._transition(ExecutionState.CONFIRMED)

    async def _step_retrying(self) -> ExecutionState:
        if self.config.retry_delay_seconds > 0:
            await self.sleep(self.config.retry_delay_seconds)
        self.attempts += 1
        self.snapshot = None
        self.quote = None
        self.unsigned = None
        return self._transition(ExecutionState.QUOTING)

    async def run(self) -> ExecutionResult:
        """Step until CONFIRMED or FAILED."""
        while not self.done:
            await self.step()
        return self.result()

    def result(self) -> ExecutionResult:
        return ExecutionResult(
            kind=self.plan.kind,
            state=self.state,
            attempts=self.attempts,
            history=list(self.history),
            signature=self.signature,
            quote=self.quote,
            output=self.output,
            error=self.error,
            submissions=self.submissions,
            started_at=self.started_at,
            finished_at=self.now_fn() if self.done else None,
        )


class ExecutionEngine:
    """Runs operation plans against a transport and signer."""

    def __init__(
        self,
        transport: LedgerTransport,
        signer: TxnSigner,
        fetch_snapshot: SnapshotFetcher,
        preflight: bool = True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self.transport = transport
        self.signer = signer
        self.fetch_snapshot = fetch_snapshot
        self.preflight = preflight
        self.sleep = sleep
        self.now_fn = now_fn

    def start(
        self, plan: OperationPlan, key: Keypair, config: TradeConfig
    ) -> ExecutionRun:
        """Create a run positioned at QUOTING without stepping it."""
        return ExecutionRun(
            plan,
            self.fetch_snapshot,
            self.transport,
            self.signer,
            key,
            config,
            preflight=self.preflight,
            sleep=self.sleep,
            now_fn=self.now_fn,
        )

    async def execute(
        self, plan: OperationPlan, key: Keypair, config: TradeConfig
    ) -> ExecutionResult:
        logger.info(
            "Executing operation",
            kind=plan.kind,
            pool=plan.pool_address,
            slippage=config.slippage_tolerance,
            max_iterations=config.max_iterations,
        )
        return await self.start(plan, key, config).run()

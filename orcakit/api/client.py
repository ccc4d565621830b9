"""Caller-facing client wiring pool reads, execution, analytics and monitoring."""

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import structlog
from solders.keypair import Keypair

from ..amm.liquidity import amounts_for_liquidity
from ..config.settings import ClientSettings
from ..core.interfaces import LedgerTransport, PriceCallback, TxnSigner
from ..core.types import (
    Kline,
    LiquidityConfig,
    LiquidityPosition,
    PoolHealth,
    PoolSnapshot,
    PriceSample,
    TradeConfig,
    TradeQuote,
)
from ..data.pool_loader import PoolLoader
from ..exec.engine import (
    AddLiquidityPlan,
    ExecutionEngine,
    ExecutionResult,
    OperationPlan,
    RemoveLiquidityPlan,
    SwapPlan,
)
from ..exec.signers import KeypairSigner
from ..exec.transport import RpcTransport
from ..metrics.aggregator import MetricsRegistry
from ..monitor.price_monitor import MonitorHandle, PriceMonitor, start_monitor

logger = structlog.get_logger(__name__)


class OrcaClient:
    """Async client for Orca pools on Solana."""

    def __init__(
        self,
        transport: LedgerTransport,
        signer: TxnSigner | None = None,
        settings: ClientSettings | None = None,
        registry: MetricsRegistry | None = None,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize OrcaClient.

        Args:
            transport: Ledger transport
            signer: Transaction signer (KeypairSigner when omitted)
            settings: Client settings (defaults plus environment when omitted)
            registry: Metrics registry shared with monitors
            now_fn: Clock for snapshot timestamps
        """
        self.settings = settings or ClientSettings()
        self.transport = transport
        self.signer = signer or KeypairSigner()
        self.now_fn = now_fn or (lambda: datetime.now(timezone.utc))
        self.registry = registry or MetricsRegistry(
            max_samples=self.settings.max_samples_per_pool,
            health_window=timedelta(hours=self.settings.health_window_hours),
        )
        self.loader = PoolLoader(
            transport,
            whirlpool_program_id=self.settings.whirlpool_program_id,
            token_swap_program_id=self.settings.token_swap_program_id,
            token_program_id=self.settings.token_program_id,
            now_fn=self.now_fn,
        )
        self.engine = ExecutionEngine(
            transport,
            self.signer,
            self.get_pool_state,
            preflight=self.settings.preflight_simulate,
            now_fn=self.now_fn,
        )
        self.last_execution: ExecutionResult | None = None
        self._pair_cache: dict[frozenset[str], str] = {}
        self._monitors: list[MonitorHandle] = []

    @classmethod
    def from_settings(cls, settings: ClientSettings) -> "OrcaClient":
        """Build a client talking JSON-RPC to `settings.rpc_url`."""
        return cls(RpcTransport.from_settings(settings), settings=settings)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        """Stop monitors and release the transport."""
        for handle in self._monitors:
            await handle.shutdown()
        self._monitors.clear()
        aclose = getattr(self.transport, "aclose", None)
        if aclose is not None:
            await aclose()

    # Pool state and quotes

    async def get_pool_state(self, pool_address: str) -> PoolSnapshot:
        return await self.loader.fetch_snapshot(pool_address)

    async def quote_swap(
        self, pool_address: str, input_mint: str, amount: int
    ) -> TradeQuote:
        """Quote an exact-input swap against the pool's current state.

        Raises:
            ValueError: If the mint is not in the pool
            ZeroOutput: If the amount is not positive or rounds to nothing
            InsufficientLiquidity: If the pool cannot fill the input
        """
        snapshot = await self.get_pool_state(pool_address)
        plan = SwapPlan(
            pool_address, input_mint, snapshot.other_mint(input_mint), amount
        )
        plan.validate()
        return plan.quote(snapshot)

    async def find_pools(self, mint_a: str, mint_b: str) -> list[str]:
        """Pools trading the pair, deepest liquidity first."""
        snapshots = await self.loader.find_pools(mint_a, mint_b)
        self._pair_cache[frozenset((mint_a, mint_b))] = snapshots[0].address
        return [s.address for s in snapshots]

    async def resolve_pool(self, mint_a: str, mint_b: str) -> str:
        """Deepest pool for the pair, cached after the first lookup."""
        key = frozenset((mint_a, mint_b))
        if key not in self._pair_cache:
            await self.find_pools(mint_a, mint_b)
        return self._pair_cache[key]

    async def get_token_price(self, base_mint: str, quote_mint: str) -> Decimal:
        """Price of one unit of `base_mint` in `quote_mint` (raw units).

        Raises:
            PoolNotFound: If no pool trades the pair
        """
        snapshot = await self.get_pool_state(
            await self.resolve_pool(base_mint, quote_mint)
        )
        if snapshot.is_input_a(base_mint):
            return snapshot.price
        if snapshot.price == 0:
            return Decimal(0)
        return Decimal(1) / snapshot.price

    # Execution

    def _trade_config(self, config: TradeConfig | None) -> TradeConfig:
        if config is not None:
            return config
        return TradeConfig(
            slippage_tolerance=self.settings.default_slippage_tolerance,
            max_iterations=self.settings.default_max_iterations,
            retry_delay_seconds=self.settings.retry_delay_seconds,
        )

    async def _execute(
        self, plan: OperationPlan, key: Keypair, config: TradeConfig
    ) -> str:
        result = await self.engine.execute(plan, key, config)
        self.last_execution = result
        return result.raise_for_error()

    async def swap(
        self,
        key: Keypair,
        input_mint: str,
        output_mint: str,
        amount: int,
        config: TradeConfig | None = None,
        pool_address: str | None = None,
    ) -> str:
        """Swap `amount` of `input_mint` for `output_mint`.

        Args:
            key: Payer and token owner
            input_mint: Mint being sold
            output_mint: Mint being bought
            amount: Exact input amount
            config: Slippage and retry settings
            pool_address: Pool to trade through; the deepest pool for the
                pair when omitted

        Returns:
            Transaction signature

        Raises:
            SlippageExceeded: If every attempt was rejected for slippage
            PoolNotFound: If no pool trades the pair
        """
        if pool_address is None:
            pool_address = await self.resolve_pool(input_mint, output_mint)
        plan = SwapPlan(pool_address, input_mint, output_mint, amount)
        return await self._execute(plan, key, self._trade_config(config))

    async def add_liquidity(
        self,
        key: Keypair,
        pool_snapshot: PoolSnapshot,
        amount_a: int,
        amount_b: int,
        lower_tick: int,
        upper_tick: int,
        config: LiquidityConfig | None = None,
    ) -> str:
        """Open a position over [lower_tick, upper_tick] and deposit into it.

        The created position is available as `last_execution.output`.

        Raises:
            InvalidRange: If the range is reversed or misaligned
            ZeroOutput: If the amounts fund no liquidity
        """
        plan = AddLiquidityPlan(pool_snapshot, amount_a, amount_b, lower_tick, upper_tick)
        return await self._execute(plan, key, self._trade_config(config))

    async def remove_liquidity(
        self,
        key: Keypair,
        position: LiquidityPosition,
        config: LiquidityConfig | None = None,
    ) -> str:
        """Withdraw everything from a position, collect fees and close it."""
        plan = RemoveLiquidityPlan(position)
        return await self._execute(plan, key, self._trade_config(config))

    async def get_liquidity_positions(self, owner: str) -> list[LiquidityPosition]:
        """Positions held by `owner`, valued at current pool prices."""
        owned = await self.loader.fetch_positions(owner)
        pools: dict[str, PoolSnapshot] = {}
        positions = []
        for item in owned:
            account = item.account
            if account.whirlpool not in pools:
                pools[account.whirlpool] = await self.get_pool_state(account.whirlpool)
            pool = pools[account.whirlpool]
            token_a, token_b = amounts_for_liquidity(
                account.liquidity,
                account.tick_lower_index,
                account.tick_upper_index,
                pool.tick_current_index,
                sqrt_price_x64=pool.sqrt_price_x64,
            )
            positions.append(
                LiquidityPosition(
                    pool_address=account.whirlpool,
                    owner=item.owner,
                    position_mint=account.position_mint,
                    position_address=account.address,
                    tick_lower_index=account.tick_lower_index,
                    tick_upper_index=account.tick_upper_index,
                    tick_spacing=pool.tick_spacing,
                    liquidity=account.liquidity,
                    token_a_amount=token_a,
                    token_b_amount=token_b,
                    fee_owed_a=account.fee_owed_a,
                    fee_owed_b=account.fee_owed_b,
                )
            )
        logger.info("Positions loaded", owner=owner, count=len(positions))
        return positions

    # Analytics and monitoring

    def _active_monitor(self, pool_address: str) -> MonitorHandle | None:
        for handle in self._monitors:
            if handle.pool_address == pool_address and handle.running:
                return handle
        return None

    async def monitor_price_changes(
        self,
        pool_address: str,
        threshold_percent: float,
        callback: PriceCallback,
        interval_seconds: float | None = None,
    ) -> MonitorHandle:
        """Start polling a pool and invoke `callback` on threshold crossings.

        The monitor is the only writer of the pool's sample buffer, so a pool
        can have one running monitor at a time.

        Raises:
            ValueError: If a monitor is already running for the pool
        """
        if self._active_monitor(pool_address) is not None:
            raise ValueError(f"Pool {pool_address} is already being monitored")
        monitor = PriceMonitor(
            pool_address,
            self.get_pool_state,
            self.registry,
            callback,
            threshold_percent,
            interval_seconds=interval_seconds or self.settings.poll_interval_seconds,
            error_backoff_seconds=self.settings.monitor_error_backoff_seconds,
            max_consecutive_errors=self.settings.monitor_max_consecutive_errors,
        )
        handle = start_monitor(monitor)
        self._monitors.append(handle)
        return handle

    async def get_price_history(
        self, pool_address: str, limit: int | None = None
    ) -> list[PriceSample]:
        return self.registry.price_history(pool_address, limit)

    async def calculate_moving_average(self, pool_address: str, window: int) -> Decimal:
        return self.registry.moving_average(pool_address, window)

    async def get_kline_data(
        self, pool_address: str, interval_seconds: int, count: int
    ) -> list[Kline]:
        return self.registry.klines(pool_address, interval_seconds, count)

    async def monitor_pool_health(self, pool_address: str) -> PoolHealth:
        """Score the pool over the health window.

        Records a fresh snapshot first, unless a running monitor already feeds
        the pool's samples.
        """
        if self._active_monitor(pool_address) is None:
            snapshot = await self.get_pool_state(pool_address)
            self.registry.record(snapshot)
        return self.registry.pool_health(pool_address)

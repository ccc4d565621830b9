"""
Per-pool snapshot buffers and the analytics derived from them.

A MetricsRegistry keeps one bounded, timestamp-ordered buffer per pool.
Readers always work on a copy of the buffer, so a monitor appending
concurrently never changes what a reader is iterating over.
"""

import math
from collections import deque
from datetime import datetime, timedelta
from decimal import Decimal, localcontext

import structlog

from ..core.errors import InsufficientSamples
from ..core.types import Kline, PoolHealth, PoolSnapshot, PoolVariant, PriceSample

logger = structlog.get_logger(__name__)

DEFAULT_MAX_SAMPLES = 1000
DEFAULT_HEALTH_WINDOW = timedelta(hours=24)

MIN_KLINE_INTERVAL_SECONDS = 1
MAX_KLINE_INTERVAL_SECONDS = 86_400
MAX_KLINE_COUNT = 500

# Health score normalizers and weights
LIQUIDITY_SCALE = 1e6
VOLUME_SCALE = 1e3
FEE_GROWTH_SCALE = 1e6
COMPONENT_CAP = 10.0
LIQUIDITY_WEIGHT = 0.5
VOLUME_WEIGHT = 0.3
FEE_WEIGHT = 0.2


def health_score(liquidity: int, volume: Decimal, fee_growth: int) -> float:
    """Composite score in [0, 100]; non-decreasing in every input."""
    liquidity_score = min(COMPONENT_CAP, math.log1p(max(liquidity, 0) / LIQUIDITY_SCALE))
    volume_score = min(COMPONENT_CAP, math.log1p(max(float(volume), 0.0) / VOLUME_SCALE))
    fee_score = min(COMPONENT_CAP, math.log1p(max(fee_growth, 0) / FEE_GROWTH_SCALE))
    score = (
        liquidity_score * LIQUIDITY_WEIGHT
        + volume_score * VOLUME_WEIGHT
        + fee_score * FEE_WEIGHT
    ) * 10.0
    return max(0.0, min(100.0, score))


def build_klines(
    pool_address: str,
    samples: list[PriceSample],
    interval_seconds: int,
    count: int,
) -> list[Kline]:
    """Bucket samples into fixed-width bars aligned to the first sample.

    Empty buckets are skipped. Returns the most recent `count` bars, oldest
    first.
    """
    if not samples:
        return []

    anchor = samples[0].timestamp
    bars: list[Kline] = []
    bucket: list[PriceSample] = []
    bucket_index = 0

    def close_bucket() -> None:
        prices = [s.price for s in bucket]
        bars.append(
            Kline(
                pool_address=pool_address,
                start=anchor + timedelta(seconds=bucket_index * interval_seconds),
                interval_seconds=interval_seconds,
                open=prices[0],
                high=max(prices),
                low=min(prices),
                close=prices[-1],
                sample_count=len(prices),
            )
        )

    for sample in samples:
        index = int((sample.timestamp - anchor).total_seconds() // interval_seconds)
        if bucket and index != bucket_index:
            close_bucket()
            bucket = []
        bucket_index = index
        bucket.append(sample)
    close_bucket()

    return bars[-count:]


def _window_volume(snapshots: list[PoolSnapshot]) -> Decimal:
    """Traded volume in token A inferred from consecutive snapshots."""
    volume = Decimal(0)
    with localcontext() as ctx:
        ctx.prec = 60
        for prev, cur in zip(snapshots, snapshots[1:]):
            if cur.variant == PoolVariant.CONCENTRATED:
                if cur.fee_rate <= 0:
                    continue
                delta_a = max(cur.fee_growth_global_a - prev.fee_growth_global_a, 0)
                delta_b = max(cur.fee_growth_global_b - prev.fee_growth_global_b, 0)
                fees_a = Decimal((delta_a * prev.liquidity) >> 64)
                fees_b = Decimal((delta_b * prev.liquidity) >> 64)
                if cur.price > 0:
                    fees_a += fees_b / cur.price
                volume += fees_a / cur.fee_rate
            else:
                delta_a = cur.reserve_a - prev.reserve_a
                delta_b = cur.reserve_b - prev.reserve_b
                # A swap moves the reserves in opposite directions
                if delta_a * delta_b >= 0:
                    continue
                if delta_a > 0 or cur.price <= 0:
                    volume += Decimal(abs(delta_a))
                else:
                    volume += Decimal(abs(delta_b)) / cur.price
    return volume


def _window_fee_growth(snapshots: list[PoolSnapshot]) -> int:
    total = 0
    for prev, cur in zip(snapshots, snapshots[1:]):
        total += max(cur.fee_growth_global_a - prev.fee_growth_global_a, 0)
        total += max(cur.fee_growth_global_b - prev.fee_growth_global_b, 0)
    return total


class PoolMetrics:
    """Bounded snapshot buffer for one pool."""

    def __init__(self, pool_address: str, max_samples: int = DEFAULT_MAX_SAMPLES):
        self.pool_address = pool_address
        self._snapshots: deque[PoolSnapshot] = deque(maxlen=max_samples)

    def __len__(self) -> int:
        return len(self._snapshots)

    @property
    def last_timestamp(self) -> datetime | None:
        return self._snapshots[-1].timestamp if self._snapshots else None

    def append(self, snapshot: PoolSnapshot) -> bool:
        """Append a snapshot unless it is not newer than the last one."""
        last = self.last_timestamp
        if last is not None and snapshot.timestamp <= last:
            return False
        self._snapshots.append(snapshot)
        return True

    def snapshots(self) -> list[PoolSnapshot]:
        return list(self._snapshots)

    def samples(self) -> list[PriceSample]:
        return [
            PriceSample(pool_address=s.address, price=s.price, timestamp=s.timestamp)
            for s in self._snapshots
        ]


class MetricsRegistry:
    """Price history and pool analytics for every recorded pool."""

    def __init__(
        self,
        max_samples: int = DEFAULT_MAX_SAMPLES,
        health_window: timedelta = DEFAULT_HEALTH_WINDOW,
    ) -> None:
        if max_samples < 1:
            raise ValueError(f"max_samples must be at least 1, got {max_samples}")
        self.max_samples = max_samples
        self.health_window = health_window
        self._pools: dict[str, PoolMetrics] = {}

    def pools(self) -> list[str]:
        return list(self._pools)

    def _buffer(self, pool_address: str) -> PoolMetrics | None:
        return self._pools.get(pool_address)

    def record(self, snapshot: PoolSnapshot) -> bool:
        """Record a snapshot.

        Returns:
            True if kept, False if discarded as out of order
        """
        buffer = self._pools.get(snapshot.address)
        if buffer is None:
            buffer = PoolMetrics(snapshot.address, self.max_samples)
            self._pools[snapshot.address] = buffer

        kept = buffer.append(snapshot)
        if not kept:
            logger.debug(
                "Discarded out-of-order snapshot",
                pool=snapshot.address,
                timestamp=snapshot.timestamp.isoformat(),
                last_timestamp=buffer.last_timestamp.isoformat(),
            )
        return kept

    def snapshots(self, pool_address: str) -> list[PoolSnapshot]:
        buffer = self._buffer(pool_address)
        return buffer.snapshots() if buffer else []

    def price_history(
        self, pool_address: str, limit: int | None = None
    ) -> list[PriceSample]:
        """Most recent samples, oldest first.

        Args:
            pool_address: Pool to read
            limit: Maximum samples to return; all when None

        Raises:
            ValueError: If limit is not positive
        """
        if limit is not None and limit < 1:
            raise ValueError(f"limit must be at least 1, got {limit}")
        buffer = self._buffer(pool_address)
        samples = buffer.samples() if buffer else []
        return samples[-limit:] if limit is not None else samples

    def moving_average(self, pool_address: str, window: int) -> Decimal:
        """Mean price over the most recent `window` samples.

        Raises:
            ValueError: If window is not positive
            InsufficientSamples: If fewer than `window` samples exist
        """
        if window < 1:
            raise ValueError(f"window must be at least 1, got {window}")
        samples = self.price_history(pool_address)
        if len(samples) < window:
            raise InsufficientSamples(pool_address, window, len(samples))
        recent = samples[-window:]
        with localcontext() as ctx:
            ctx.prec = 60
            return sum((s.price for s in recent), Decimal(0)) / window

    def klines(
        self, pool_address: str, interval_seconds: int, count: int
    ) -> list[Kline]:
        """OHLC bars over the recorded samples.

        Raises:
            ValueError: If interval or count is outside the supported range
        """
        if not MIN_KLINE_INTERVAL_SECONDS <= interval_seconds <= MAX_KLINE_INTERVAL_SECONDS:
            raise ValueError(
                f"interval_seconds must be within [{MIN_KLINE_INTERVAL_SECONDS}, "
                f"{MAX_KLINE_INTERVAL_SECONDS}], got {interval_seconds}"
            )
        if not 1 <= count <= MAX_KLINE_COUNT:
            raise ValueError(f"count must be within [1, {MAX_KLINE_COUNT}], got {count}")
        return build_klines(
            pool_address, self.price_history(pool_address), interval_seconds, count
        )

    def pool_health(self, pool_address: str) -> PoolHealth:
        """Health over the trailing window ending at the newest snapshot.

        Raises:
            InsufficientSamples: If no snapshot has been recorded
        """
        snapshots = self.snapshots(pool_address)
        if not snapshots:
            raise InsufficientSamples(pool_address, 1, 0)

        latest = snapshots[-1]
        cutoff = latest.timestamp - self.health_window
        window = [s for s in snapshots if s.timestamp >= cutoff]

        volume = _window_volume(window)
        fee_growth = _window_fee_growth(window)
        score = health_score(latest.liquidity, volume, fee_growth)

        logger.debug(
            "Pool health computed",
            pool=pool_address,
            samples=len(window),
            liquidity=latest.liquidity,
            volume=str(volume),
            score=round(score, 2),
        )

        return PoolHealth(
            pool_address=pool_address,
            liquidity=latest.liquidity,
            volume_24h=volume,
            fee_growth=fee_growth,
            health_score=score,
            sample_count=len(window),
            window_start=window[0].timestamp,
            window_end=latest.timestamp,
        )

    def clear(self, pool_address: str) -> None:
        self._pools.pop(pool_address, None)

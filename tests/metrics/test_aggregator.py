"""Tests for per-pool metrics and analytics."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from orcakit.core.errors import InsufficientSamples
from orcakit.core.types import PoolVariant
from orcakit.metrics.aggregator import MetricsRegistry, build_klines, health_score

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def registry():
    return MetricsRegistry()


@pytest.fixture
def record_prices(registry, make_snapshot):
    """Record one standard-pool snapshot per (second offset, price)."""

    def record(points, address=None):
        for offset, price in points:
            fields = {"price": Decimal(str(price)), "timestamp": T0 + timedelta(seconds=offset)}
            if address is not None:
                fields["address"] = address
            registry.record(make_snapshot(**fields))

    return record


class TestRecording:
    """Test buffer ordering and bounds."""

    def test_out_of_order_discarded(self, registry, make_snapshot):
        """Snapshots not newer than the last one are dropped."""
        assert registry.record(make_snapshot(timestamp=T0 + timedelta(seconds=10)))
        assert not registry.record(make_snapshot(timestamp=T0 + timedelta(seconds=5)))
        assert not registry.record(make_snapshot(timestamp=T0 + timedelta(seconds=10)))
        assert len(registry.price_history(make_snapshot().address)) == 1

    def test_bounded_buffer(self, make_snapshot):
        """Oldest samples are evicted past the per-pool limit."""
        registry = MetricsRegistry(max_samples=3)
        for i in range(5):
            registry.record(
                make_snapshot(price=Decimal(i), timestamp=T0 + timedelta(seconds=i))
            )
        history = registry.price_history(make_snapshot().address)
        assert [s.price for s in history] == [Decimal(2), Decimal(3), Decimal(4)]

    def test_pools_are_independent(self, registry, record_prices, accounts):
        record_prices([(0, 1), (1, 2)], address=accounts.addr(20))
        record_prices([(0, 5)], address=accounts.addr(21))

        assert len(registry.price_history(accounts.addr(20))) == 2
        assert len(registry.price_history(accounts.addr(21))) == 1
        assert sorted(registry.pools()) == sorted([accounts.addr(20), accounts.addr(21)])

    def test_clear(self, registry, record_prices, make_snapshot):
        record_prices([(0, 1)])
        registry.clear(make_snapshot().address)
        assert registry.price_history(make_snapshot().address) == []

    def test_invalid_max_samples(self):
        with pytest.raises(ValueError):
            MetricsRegistry(max_samples=0)


class TestPriceHistory:
    def test_limit_returns_most_recent(self, registry, record_prices, make_snapshot):
        record_prices([(0, 1), (1, 2), (2, 3)])
        history = registry.price_history(make_snapshot().address, limit=2)
        assert [s.price for s in history] == [Decimal(2), Decimal(3)]

    def test_unknown_pool_is_empty(self, registry):
        assert registry.price_history("Unknown111") == []

    def test_invalid_limit(self, registry):
        with pytest.raises(ValueError):
            registry.price_history("Unknown111", limit=0)


class TestMovingAverage:
    """Test moving averages."""

    def test_identical_prices(self, registry, record_prices, make_snapshot):
        """N identical samples average to exactly that price."""
        record_prices([(i, "1.2345") for i in range(7)])
        average = registry.moving_average(make_snapshot().address, 7)
        assert average == Decimal("1.2345")

    def test_uses_most_recent_window(self, registry, record_prices, make_snapshot):
        record_prices([(0, 100), (1, 1), (2, 2), (3, 3)])
        assert registry.moving_average(make_snapshot().address, 3) == Decimal(2)

    def test_not_enough_samples(self, registry, record_prices, make_snapshot):
        record_prices([(0, 1), (1, 2)])
        with pytest.raises(InsufficientSamples) as exc_info:
            registry.moving_average(make_snapshot().address, 3)
        assert exc_info.value.required == 3
        assert exc_info.value.available == 2

    def test_invalid_window(self, registry):
        with pytest.raises(ValueError):
            registry.moving_average("Unknown111", 0)


class TestKlines:
    """Test OHLC bars."""

    POINTS = [(0, 1), (10, 3), (20, 2), (30, 4), (40, 6), (50, 5), (60, 7)]

    def test_bars(self, registry, record_prices, make_snapshot):
        record_prices(self.POINTS)
        bars = registry.klines(make_snapshot().address, 30, 10)

        assert [(b.open, b.high, b.low, b.close) for b in bars] == [
            (Decimal(1), Decimal(3), Decimal(1), Decimal(2)),
            (Decimal(4), Decimal(6), Decimal(4), Decimal(5)),
            (Decimal(7), Decimal(7), Decimal(7), Decimal(7)),
        ]
        assert [b.sample_count for b in bars] == [3, 3, 1]
        assert [b.start for b in bars] == [
            T0,
            T0 + timedelta(seconds=30),
            T0 + timedelta(seconds=60),
        ]

    def test_count_keeps_latest(self, registry, record_prices, make_snapshot):
        record_prices(self.POINTS)
        bars = registry.klines(make_snapshot().address, 30, 2)
        assert [b.open for b in bars] == [Decimal(4), Decimal(7)]

    def test_deterministic(self, registry, record_prices, make_snapshot):
        """Repeated queries over the same buffer give the same bars."""
        record_prices(self.POINTS)
        address = make_snapshot().address
        assert registry.klines(address, 20, 5) == registry.klines(address, 20, 5)

    def test_empty_buckets_skipped(self, registry, record_prices, make_snapshot):
        record_prices([(0, 1), (95, 2)])
        bars = registry.klines(make_snapshot().address, 30, 10)
        assert [b.start for b in bars] == [T0, T0 + timedelta(seconds=90)]

    def test_unknown_pool(self, registry):
        assert registry.klines("Unknown111", 60, 10) == []

    @pytest.mark.parametrize("interval,count", [(0, 10), (86_401, 10), (60, 0), (60, 501)])
    def test_invalid_arguments(self, registry, interval, count):
        with pytest.raises(ValueError):
            registry.klines("Unknown111", interval, count)

    def test_build_klines_empty(self):
        assert build_klines("Pool", [], 60, 10) == []


class TestHealthScore:
    """Test the composite score."""

    def test_bounds(self):
        assert health_score(0, Decimal(0), 0) == 0.0
        assert health_score(10**40, Decimal(10**40), 10**40) == 100.0

    @pytest.mark.parametrize(
        "low,high",
        [
            ((10**6, Decimal(10), 0), (10**9, Decimal(10), 0)),
            ((10**6, Decimal(10), 0), (10**6, Decimal(10**6), 0)),
            ((10**6, Decimal(10), 0), (10**6, Decimal(10), 10**9)),
        ],
    )
    def test_monotonic(self, low, high):
        """Raising any one input never lowers the score."""
        assert health_score(*high) > health_score(*low)

    def test_negative_inputs_clamped(self):
        assert health_score(-5, Decimal(-5), -5) == 0.0


class TestPoolHealth:
    """Test pool health over the trailing window."""

    def test_standard_pool_volume(self, registry, make_snapshot):
        """Opposite reserve moves count as traded volume in token A."""
        registry.record(make_snapshot(reserve_a=1_000_000, reserve_b=2_000_000, timestamp=T0))
        registry.record(
            make_snapshot(
                reserve_a=1_010_000,
                reserve_b=1_980_400,
                timestamp=T0 + timedelta(minutes=1),
            )
        )
        # Deposits move both reserves the same way and are not volume
        registry.record(
            make_snapshot(
                reserve_a=1_020_000,
                reserve_b=2_000_000,
                timestamp=T0 + timedelta(minutes=2),
            )
        )

        health = registry.pool_health(make_snapshot().address)

        assert health.volume_24h == Decimal(10_000)
        assert health.sample_count == 3
        assert 0 < health.health_score <= 100

    def test_concentrated_volume_from_fee_growth(self, registry, make_snapshot):
        """Fee growth divided by the fee rate recovers volume."""
        liquidity = 2**64
        registry.record(
            make_snapshot(
                PoolVariant.CONCENTRATED,
                liquidity=liquidity,
                fee_rate=Decimal("0.003"),
                fee_growth_global_a=0,
                timestamp=T0,
            )
        )
        registry.record(
            make_snapshot(
                PoolVariant.CONCENTRATED,
                liquidity=liquidity,
                fee_rate=Decimal("0.003"),
                fee_growth_global_a=30,
                timestamp=T0 + timedelta(minutes=1),
            )
        )

        health = registry.pool_health(make_snapshot(PoolVariant.CONCENTRATED).address)

        assert health.volume_24h == Decimal(10_000)
        assert health.fee_growth == 30

    def test_window_excludes_old_samples(self, make_snapshot):
        registry = MetricsRegistry(health_window=timedelta(hours=1))
        for minutes in (0, 90, 120):
            registry.record(make_snapshot(timestamp=T0 + timedelta(minutes=minutes)))

        health = registry.pool_health(make_snapshot().address)

        assert health.sample_count == 2
        assert health.window_start == T0 + timedelta(minutes=90)

    def test_single_sample(self, registry, make_snapshot):
        registry.record(make_snapshot())
        health = registry.pool_health(make_snapshot().address)
        assert health.volume_24h == 0
        assert health.liquidity == make_snapshot().liquidity

    def test_no_samples(self, registry):
        with pytest.raises(InsufficientSamples):
            registry.pool_health("Unknown111")

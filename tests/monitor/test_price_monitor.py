"""Tests for the price monitor."""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from orcakit.core.errors import TransportError
from orcakit.metrics.aggregator import MetricsRegistry
from orcakit.monitor.price_monitor import PriceChangeDetector, PriceMonitor, start_monitor

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class PriceFeed:
    """Snapshot fetcher replaying a price sequence, then holding the last one."""

    def __init__(self, make_snapshot, prices):
        self.make_snapshot = make_snapshot
        self.prices = [Decimal(str(p)) for p in prices]
        self.calls = 0

    async def __call__(self, pool_address):
        index = min(self.calls, len(self.prices) - 1)
        self.calls += 1
        return self.make_snapshot(
            price=self.prices[index], timestamp=T0 + timedelta(seconds=self.calls)
        )


def make_monitor(fetch, callback, threshold=1.0, **kwargs):
    return PriceMonitor(
        "Pool111", fetch, MetricsRegistry(), callback, threshold, **kwargs
    )


class TestPriceChangeDetector:
    """Test threshold detection."""

    def test_fires_on_cumulative_move(self):
        """100 -> 100.5 stays quiet, 101.2 crosses 1% from the reference."""
        detector = PriceChangeDetector("Pool111", 1.0)
        events = [
            detector.observe(Decimal(p), T0)
            for p in ("100", "100.5", "101.2")
        ]

        assert events[0] is None
        assert events[1] is None
        assert events[2] is not None
        assert events[2].old_price == Decimal(100)
        assert events[2].new_price == Decimal("101.2")
        assert events[2].change_percent == pytest.approx(1.2)

    def test_reference_moves_after_event(self):
        detector = PriceChangeDetector("Pool111", 1.0)
        detector.observe(Decimal(100), T0)
        detector.observe(Decimal(102), T0)

        assert detector.reference_price == Decimal(102)
        assert detector.observe(Decimal("102.5"), T0) is None

    def test_downward_moves(self):
        detector = PriceChangeDetector("Pool111", 1.0)
        detector.observe(Decimal(100), T0)
        event = detector.observe(Decimal(98), T0)
        assert event.change_percent == pytest.approx(-2.0)

    def test_negative_threshold(self):
        with pytest.raises(ValueError):
            PriceChangeDetector("Pool111", -1.0)


class TestPollOnce:
    """Test a single monitor cycle."""

    @pytest.mark.asyncio
    async def test_callback_fires_once(self, make_snapshot):
        """Only the transition to 101.2 is notified."""
        received = []
        feed = PriceFeed(make_snapshot, [100, 100.5, 101.2])
        monitor = make_monitor(feed, received.append)

        for _ in range(3):
            await monitor.poll_once()

        assert [e.new_price for e in received] == [Decimal("101.2")]
        assert monitor.notifications == 1

    @pytest.mark.asyncio
    async def test_snapshots_recorded(self, make_snapshot):
        feed = PriceFeed(make_snapshot, [100, 101])
        monitor = make_monitor(feed, lambda event: None)

        await monitor.poll_once()
        await monitor.poll_once()

        history = monitor.registry.price_history(make_snapshot().address)
        assert [s.price for s in history] == [Decimal(100), Decimal(101)]

    @pytest.mark.asyncio
    async def test_async_callback(self, make_snapshot):
        received = []

        async def callback(event):
            received.append(event)

        monitor = make_monitor(PriceFeed(make_snapshot, [100, 105]), callback)
        await monitor.poll_once()
        await monitor.poll_once()

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_callback_failure_isolated(self, make_snapshot):
        """A raising callback does not break the cycle."""

        def callback(event):
            raise RuntimeError("handler bug")

        monitor = make_monitor(PriceFeed(make_snapshot, [100, 105]), callback)
        await monitor.poll_once()
        event = await monitor.poll_once()

        assert event is not None
        assert monitor.notifications == 1

    @pytest.mark.asyncio
    async def test_no_notification_after_stop(self, make_snapshot):
        received = []
        monitor = make_monitor(PriceFeed(make_snapshot, [100, 105]), received.append)
        await monitor.poll_once()

        monitor.request_stop()
        await monitor.poll_once()

        assert received == []

    @pytest.mark.asyncio
    async def test_stale_snapshot_ignored(self, make_snapshot):
        """A snapshot older than the last recorded one neither records nor notifies."""
        received = []
        feed = iter(
            make_snapshot(price=Decimal(p), timestamp=T0 + timedelta(seconds=s))
            for p, s in ((100, 1), (102, 3), (100, 2))
        )

        async def fetch(pool_address):
            return next(feed)

        monitor = make_monitor(fetch, received.append)
        for _ in range(3):
            await monitor.poll_once()

        assert [e.timestamp for e in received] == [T0 + timedelta(seconds=3)]
        assert monitor.detector.reference_price == Decimal(102)
        assert len(monitor.registry.price_history(make_snapshot().address)) == 2

    def test_invalid_interval(self, make_snapshot):
        with pytest.raises(ValueError):
            make_monitor(PriceFeed(make_snapshot, [1]), print, interval_seconds=0)


class TestRunLoop:
    """Test the polling loop."""

    @pytest.mark.asyncio
    async def test_stops_after_consecutive_errors(self):
        calls = []

        async def failing(pool_address):
            calls.append(pool_address)
            raise TransportError("node down")

        monitor = make_monitor(
            failing,
            lambda event: None,
            interval_seconds=0.01,
            error_backoff_seconds=0,
            max_consecutive_errors=3,
        )

        await asyncio.wait_for(monitor.run(), timeout=2)

        assert len(calls) == 3
        assert monitor.consecutive_errors == 3

    @pytest.mark.asyncio
    async def test_recovers_after_error(self, make_snapshot):
        """A success resets the error count."""
        feed = PriceFeed(make_snapshot, [100])
        state = {"calls": 0}

        async def flaky(pool_address):
            state["calls"] += 1
            if state["calls"] == 1:
                raise TransportError("blip")
            return await feed(pool_address)

        monitor = make_monitor(
            flaky, lambda event: None, interval_seconds=0.01, error_backoff_seconds=0.01
        )
        handle = start_monitor(monitor)
        await asyncio.sleep(0.1)
        await handle.shutdown()

        assert feed.calls >= 1
        assert monitor.consecutive_errors == 0

    @pytest.mark.asyncio
    async def test_shutdown_stops_events(self, make_snapshot):
        """No callbacks arrive once shutdown returns."""
        received = []
        prices = [100 + 2 * i for i in range(1000)]
        monitor = make_monitor(
            PriceFeed(make_snapshot, prices), received.append, interval_seconds=0.01
        )

        handle = start_monitor(monitor)
        await asyncio.sleep(0.1)
        await handle.shutdown()
        delivered = len(received)
        await asyncio.sleep(0.05)

        assert not handle.running
        assert delivered > 0
        assert len(received) == delivered

    @pytest.mark.asyncio
    async def test_events_in_timestamp_order(self, make_snapshot):
        received = []
        prices = [100 + 2 * i for i in range(1000)]
        monitor = make_monitor(
            PriceFeed(make_snapshot, prices), received.append, interval_seconds=0.01
        )

        handle = start_monitor(monitor)
        await asyncio.sleep(0.1)
        await handle.shutdown()

        timestamps = [e.timestamp for e in received]
        assert timestamps == sorted(timestamps)

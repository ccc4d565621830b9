"""Polling price monitor with threshold notifications and cooperative shutdown."""

import asyncio
import inspect
from datetime import datetime
from decimal import Decimal

import structlog

from ..core.interfaces import PriceCallback, SnapshotFetcher
from ..core.types import PriceUpdateEvent
from ..metrics.aggregator import MetricsRegistry

logger = structlog.get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 10.0
DEFAULT_ERROR_BACKOFF_SECONDS = 30.0
DEFAULT_MAX_CONSECUTIVE_ERRORS = 5


class PriceChangeDetector:
    """Compares each price with the last notified one.

    The first observation only seeds the reference price.
    """

    def __init__(self, pool_address: str, threshold_percent: float) -> None:
        if threshold_percent < 0:
            raise ValueError(
                f"threshold_percent must be non-negative, got {threshold_percent}"
            )
        self.pool_address = pool_address
        self.threshold_percent = threshold_percent
        self.reference_price: Decimal | None = None

    def observe(self, price: Decimal, timestamp: datetime) -> PriceUpdateEvent | None:
        """Return an event when the move since the last notification crosses the threshold."""
        if self.reference_price is None or self.reference_price == 0:
            self.reference_price = price
            return None

        old_price = self.reference_price
        change_percent = float((price - old_price) / old_price * 100)
        if abs(change_percent) < self.threshold_percent:
            return None

        self.reference_price = price
        return PriceUpdateEvent(
            pool_address=self.pool_address,
            old_price=old_price,
            new_price=price,
            change_percent=change_percent,
            timestamp=timestamp,
        )


class PriceMonitor:
    """Polls one pool, records snapshots and notifies on threshold crossings."""

    def __init__(
        self,
        pool_address: str,
        fetch_snapshot: SnapshotFetcher,
        registry: MetricsRegistry,
        callback: PriceCallback,
        threshold_percent: float,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        error_backoff_seconds: float = DEFAULT_ERROR_BACKOFF_SECONDS,
        max_consecutive_errors: int = DEFAULT_MAX_CONSECUTIVE_ERRORS,
    ) -> None:
        """Initialize PriceMonitor.

        Args:
            pool_address: Pool to watch
            fetch_snapshot: Fetches a fresh snapshot for the pool
            registry: Receives every fetched snapshot
            callback: Plain or coroutine function taking a PriceUpdateEvent
            threshold_percent: Minimum absolute move, in percent, to notify
            interval_seconds: Pause between successful polls
            error_backoff_seconds: Pause after a failed poll
            max_consecutive_errors: Failed polls in a row before giving up
        """
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")
        self.pool_address = pool_address
        self.fetch_snapshot = fetch_snapshot
        self.registry = registry
        self.callback = callback
        self.detector = PriceChangeDetector(pool_address, threshold_percent)
        self.interval_seconds = interval_seconds
        self.error_backoff_seconds = error_backoff_seconds
        self.max_consecutive_errors = max_consecutive_errors

        self.consecutive_errors = 0
        self.cycles = 0
        self.notifications = 0
        self._stop = asyncio.Event()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def request_stop(self) -> None:
        self._stop.set()

    async def poll_once(self) -> PriceUpdateEvent | None:
        """Fetch, record and compare once; notify unless a stop was requested.

        Snapshots the registry discards as out of order are not compared.
        """
        snapshot = await self.fetch_snapshot(self.pool_address)
        if not self.registry.record(snapshot):
            return None
        event = self.detector.observe(snapshot.price, snapshot.timestamp)
        if event is not None and not self._stop.is_set():
            await self._notify(event)
        return event

    async def _notify(self, event: PriceUpdateEvent) -> None:
        self.notifications += 1
        logger.info(
            "Price change detected",
            pool=self.pool_address,
            old_price=str(event.old_price),
            new_price=str(event.new_price),
            change_percent=round(event.change_percent, 4),
        )
        try:
            result = self.callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(
                "Price callback failed",
                pool=self.pool_address,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def _wait(self, seconds: float) -> None:
        """Sleep unless a stop is requested first."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> None:
        """Poll until stopped or until too many consecutive failures."""
        logger.info(
            "Starting price monitor",
            pool=self.pool_address,
            threshold_percent=self.detector.threshold_percent,
            interval_seconds=self.interval_seconds,
        )
        while not self._stop.is_set():
            try:
                await self.poll_once()
                self.consecutive_errors = 0
                delay = self.interval_seconds
            except Exception as e:
                self.consecutive_errors += 1
                logger.warning(
                    "Price monitor poll failed",
                    pool=self.pool_address,
                    error=str(e),
                    error_type=type(e).__name__,
                    consecutive_errors=self.consecutive_errors,
                )
                if self.consecutive_errors >= self.max_consecutive_errors:
                    logger.error(
                        "Price monitor giving up",
                        pool=self.pool_address,
                        consecutive_errors=self.consecutive_errors,
                    )
                    break
                delay = self.error_backoff_seconds
            self.cycles += 1
            await self._wait(delay)

        logger.info("Price monitor stopped", pool=self.pool_address, cycles=self.cycles)


class MonitorHandle:
    """Handle to a running monitor task."""

    def __init__(self, monitor: PriceMonitor, task: asyncio.Task) -> None:
        self.monitor = monitor
        self.task = task

    @property
    def pool_address(self) -> str:
        return self.monitor.pool_address

    @property
    def running(self) -> bool:
        return not self.task.done()

    async def shutdown(self) -> None:
        """Request a stop and wait for the in-flight cycle to finish."""
        self.monitor.request_stop()
        await self.task


def start_monitor(monitor: PriceMonitor) -> MonitorHandle:
    """Run a monitor as a task on the current event loop."""
    task = asyncio.create_task(
        monitor.run(), name=f"price-monitor-{monitor.pool_address}"
    )
    return MonitorHandle(monitor, task)

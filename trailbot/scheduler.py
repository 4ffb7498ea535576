"""Periodic monitor that drives the engine's tick.

The first tick runs immediately on start, then every ``interval_seconds``.
Tick exceptions are logged; the loop keeps running.
"""
import asyncio
from typing import Optional

from .engine import PositionLifecycleEngine, TickReport
from .logging_setup import logger


class MonitorScheduler:
    """Run ``engine.tick()`` on a fixed interval until stopped.

    Usage:
        scheduler = MonitorScheduler(engine, interval_seconds=600)
        await scheduler.start()
        ...
        await scheduler.stop()

    or as ``async with MonitorScheduler(engine):``.
    """

    def __init__(self, engine: PositionLifecycleEngine, interval_seconds: float = 600.0):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.engine = engine
        self.interval = interval_seconds
        self.tick_count = 0
        self.last_report: Optional[TickReport] = None
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background loop; a second call is a no-op."""
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name="trailbot-monitor")
        logger.info(f"Monitor started | interval={self.interval}s")

    async def stop(self) -> None:
        """Signal the loop to stop and wait for an in-flight tick to finish."""
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("Monitor stopped")

    async def run_once(self) -> TickReport:
        """Run a single tick, logging instead of raising."""
        self.tick_count += 1
        try:
            report = await self.engine.tick()
        except Exception:
            logger.exception(f"Tick {self.tick_count} failed")
            report = TickReport()
        self.last_report = report
        return report

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

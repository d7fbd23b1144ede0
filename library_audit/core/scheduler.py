"""
Clocks and interval tickers for periodic telemetry work
"""

import asyncio
import heapq
import itertools
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class SystemClock:
    """Wall clock backed by the event loop"""

    def now(self) -> datetime:
        return datetime.now()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class ManualClock:
    """
    Virtual clock for tests.

    Time only moves when advance() is awaited; sleepers whose deadline is
    reached are woken in deadline order.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 10, 10, 0, 0)
        self._sleepers: List[Tuple[datetime, int, asyncio.Future]] = []
        self._counter = itertools.count()

    def now(self) -> datetime:
        return self._now

    def set(self, moment: datetime) -> None:
        self._now = moment

    async def sleep(self, seconds: float) -> None:
        future = asyncio.get_running_loop().create_future()
        deadline = self._now + timedelta(seconds=seconds)
        heapq.heappush(self._sleepers, (deadline, next(self._counter), future))
        await future

    async def advance(self, seconds: float) -> None:
        target = self._now + timedelta(seconds=seconds)

        while self._sleepers and self._sleepers[0][0] <= target:
            deadline, _, future = heapq.heappop(self._sleepers)
            if future.done():
                continue
            self._now = max(self._now, deadline)
            future.set_result(None)
            # Let the woken task run until its next suspension point
            for _ in range(5):
                await asyncio.sleep(0)

        self._now = target


class Ticker:
    """Runs an async callback every `interval` seconds until stopped"""

    def __init__(self, name: str, interval: float,
                 callback: Callable[[], Awaitable[None]], clock=None):
        self.name = name
        self.interval = interval
        self.callback = callback
        self.clock = clock or SystemClock()
        self.run_count = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"ticker:{self.name}")

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            await self.clock.sleep(self.interval)
            try:
                await self.callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Ticker '{self.name}' callback failed: {e}")
            self.run_count += 1


class Scheduler:
    """Owns a set of named tickers sharing one clock"""

    def __init__(self, clock=None):
        self.clock = clock or SystemClock()
        self._tickers: Dict[str, Ticker] = {}

    def every(self, name: str, interval: float, callback: Callable[[], Awaitable[None]]) -> Ticker:
        if name in self._tickers:
            raise ValueError(f"Ticker already registered: {name}")
        ticker = Ticker(name, interval, callback, self.clock)
        self._tickers[name] = ticker
        return ticker

    def get(self, name: str) -> Optional[Ticker]:
        return self._tickers.get(name)

    def start(self) -> None:
        for ticker in self._tickers.values():
            ticker.start()

    async def stop(self) -> None:
        """Cancel every ticker and wait for them to finish"""
        for ticker in self._tickers.values():
            await ticker.stop()

    @property
    def running(self) -> bool:
        return any(t.running for t in self._tickers.values())

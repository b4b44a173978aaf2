from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional, TypeVar

from loguru import logger

from ..services.orchestrator import ScoreOrchestrator

T = TypeVar("T")


class TickLoop:
    """Drives an orchestrator from an asyncio task at a fixed frame rate.

    Every access to the orchestrator from request handlers goes through
    :meth:`run` or :meth:`run_in_thread` so ticks and mutations never
    interleave. Work that may synthesize clips runs in a worker thread.
    """

    def __init__(self, orchestrator: ScoreOrchestrator, tick_hz: float = 60.0) -> None:
        self._orchestrator = orchestrator
        self._interval = 1.0 / max(1.0, float(tick_hz))
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task[None]] = None
        self._ticks = 0

    @property
    def orchestrator(self) -> ScoreOrchestrator:
        return self._orchestrator

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def ticks(self) -> int:
        return self._ticks

    async def run(self, action: Callable[[ScoreOrchestrator], T]) -> T:
        async with self._lock:
            return action(self._orchestrator)

    async def run_async(self, action: Callable[[ScoreOrchestrator], Awaitable[T]]) -> T:
        async with self._lock:
            return await action(self._orchestrator)

    async def run_in_thread(self, action: Callable[[ScoreOrchestrator], T]) -> T:
        """Like :meth:`run` for calls that may synthesize clips; keeps the event loop free."""

        async with self._lock:
            return await asyncio.to_thread(action, self._orchestrator)

    async def step(self, delta_seconds: float) -> None:
        # Tier changes synthesize clips on cache misses.
        async with self._lock:
            await asyncio.to_thread(self._orchestrator.tick, delta_seconds)
            self._ticks += 1

    def start(self) -> None:
        if self.running:
            return
        if not self._orchestrator.started:
            self._orchestrator.start()
        self._task = asyncio.create_task(self._loop())
        logger.info("Tick loop started at {:.1f} Hz", 1.0 / self._interval)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Tick loop stopped after {} ticks", self._ticks)

    async def _loop(self) -> None:
        previous = time.perf_counter()
        while True:
            await asyncio.sleep(self._interval)
            now = time.perf_counter()
            try:
                await self.step(now - previous)
            except Exception:  # noqa: BLE001
                logger.exception("Score tick failed")
            previous = now

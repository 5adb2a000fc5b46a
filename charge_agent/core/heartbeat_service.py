import asyncio
from typing import Awaitable, Callable, Optional

from charge_agent.core.logging_config import logger

HeartbeatTick = Callable[[bool], Awaitable[bool]]


class HeartbeatService:
    """Self-rearming heartbeat.

    Each cycle is armed, sleeps for the interval, then awaits its own write
    before the next cycle is armed. The offline flag is sampled when the
    cycle is armed.
    """

    def __init__(
        self,
        tick: HeartbeatTick,
        is_offline: Callable[[], bool],
        interval: float = 60,
    ):
        self._tick = tick
        self._is_offline = is_offline
        self._interval = interval
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Heartbeat started (interval: {self._interval}s)")

    async def stop(self):
        if not self._running:
            return

        logger.info("Stopping heartbeat loop.")
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self):
        while self._running:
            armed_offline = self._is_offline()
            await asyncio.sleep(self._interval)

            if not self._running:
                break

            try:
                await self._tick(armed_offline)
            except Exception:
                logger.exception("Heartbeat error")

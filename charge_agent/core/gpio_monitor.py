# charge_agent/core/gpio_monitor.py

import asyncio
import logging
from typing import Callable, Optional

from charge_agent.infrastructure.gpio.gpio_controller import GPIOController

logging = logging.getLogger(__name__)


class CableMonitor:
    """Subscribes to detector edges and watches the detector line for faults."""

    def __init__(
        self,
        controller: GPIOController,
        on_edge: Callable[[bool], None],
        on_fault: Callable[[BaseException], None],
        interval: float = 0.5,
    ):
        self._controller = controller
        self._on_edge = on_edge
        self._on_fault = on_fault
        self._interval = interval
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._task is not None:
            return

        self._controller.subscribe_edges(self._on_edge)
        self._task = asyncio.create_task(self._loop())
        logging.info("Cable monitor started")

    async def stop(self) -> None:
        if self._task is None:
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                self._controller.read_detector()
            except Exception as e:
                logging.exception(f"Cable detector error: {e}")
                self._on_fault(e)
                return

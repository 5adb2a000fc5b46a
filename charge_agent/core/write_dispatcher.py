import asyncio
import logging
from collections import deque
from functools import partial
from typing import Awaitable, Callable, List, Optional

from charge_agent.core.clock import Clock, now_ms
from charge_agent.domain.events.write_events import WriteFailure

logger = logging.getLogger(__name__)

FailureListener = Callable[[WriteFailure], None]


class WriteDispatcher:
    """Runs outbound writes as background tasks and reports their failures.

    Writes are not awaited by the caller. A failed write is logged, kept in a
    bounded history and passed to every registered listener.
    """

    def __init__(self, clock: Clock = now_ms, history: int = 100):
        self._clock = clock
        self._pending: set[asyncio.Task] = set()
        self._failures: deque[WriteFailure] = deque(maxlen=history)
        self._listeners: List[FailureListener] = []

    @property
    def failures(self) -> List[WriteFailure]:
        return list(self._failures)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def add_listener(self, listener: FailureListener) -> None:
        self._listeners.append(listener)

    def dispatch(self, label: str, operation: Awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(operation)
        self._pending.add(task)
        task.add_done_callback(partial(self._on_done, label))
        return task

    def _on_done(self, label: str, task: asyncio.Task) -> None:
        self._pending.discard(task)

        if task.cancelled():
            logger.warning("Write cancelled | label=%s", label)
            return

        error = task.exception()
        if error is None:
            logger.debug("Write completed | label=%s", label)
            return

        self.report(label, error)

    def report(self, label: str, error: BaseException) -> WriteFailure:
        failure = WriteFailure(label=label, error=error, at=self._clock())
        self._failures.append(failure)

        logger.error(
            "Write failed | label=%s error=%s",
            label,
            error,
            exc_info=(type(error), error, error.__traceback__),
        )

        for listener in list(self._listeners):
            try:
                listener(failure)
            except Exception:
                logger.exception("Write failure listener error | label=%s", label)

        return failure

    async def drain(self, timeout: Optional[float] = None) -> bool:
        if not self._pending:
            return True

        _, pending = await asyncio.wait(set(self._pending), timeout=timeout)
        if pending:
            logger.warning("%s write(s) still pending after drain timeout", len(pending))
            return False
        return True

    async def cancel_all(self) -> None:
        tasks = list(self._pending)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

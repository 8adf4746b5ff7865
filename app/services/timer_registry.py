import asyncio
from typing import Awaitable, Callable

from app.logging_config import get_logger

logger = get_logger("timer_registry")

TimerCallback = Callable[[], Awaitable[None]]


class InactivityTimerRegistry:
    """In-process inactivity timers, at most one per key (user id).

    Timers do not survive a restart; the maintenance worker's timeout sweep
    closes whatever they miss.
    """

    def __init__(self) -> None:
        self._timers: dict[str, asyncio.Task] = {}

    def arm(self, key: str, delay_seconds: float, callback: TimerCallback) -> None:
        """Start (or replace) the timer for ``key``."""
        self.disarm(key)
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.create_task(self._run(key, delay_seconds, callback))

    def disarm(self, key: str) -> bool:
        task = self._timers.pop(key, None)
        if task is None:
            return False
        if not task.done():
            task.cancel()
        return True

    def is_armed(self, key: str) -> bool:
        task = self._timers.get(key)
        return task is not None and not task.done()

    def cancel_all(self) -> None:
        for key in list(self._timers):
            self.disarm(key)

    def __len__(self) -> int:
        return sum(1 for task in self._timers.values() if not task.done())

    async def _run(self, key: str, delay_seconds: float, callback: TimerCallback) -> None:
        try:
            await asyncio.sleep(delay_seconds)
        except asyncio.CancelledError:
            return

        # Unregister before firing so the callback may re-arm or disarm freely
        if self._timers.get(key) is asyncio.current_task():
            del self._timers[key]

        try:
            await callback()
        except Exception as exc:
            logger.error(
                "Inactivity timer callback failed",
                extra={"context": {"key": key, "error": str(exc)}},
                exc_info=True,
            )

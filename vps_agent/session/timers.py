import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger("vps-agent.session.timers")

Callback = Callable[[], Awaitable[None]]


class Timer:
    """
    Cancellable one-shot timer backed by an asyncio task.
    The callback runs inside the timer task, so cancelling the timer also
    cancels a callback that is already running.
    """

    def __init__(self, delay: float, callback: Callback, name: str = "timer"):
        self.delay = delay
        self.name = name
        self._callback = callback
        self._task: Optional[asyncio.Task] = asyncio.create_task(self._run(), name=name)

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        await asyncio.sleep(self.delay)
        try:
            await self._callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Timer '{self.name}' callback failed: {e}", exc_info=True)

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            # A callback may cancel its own timer; the task must keep running to finish the transition
            if self._task is not asyncio.current_task():
                self._task.cancel()
        self._task = None


class PeriodicTimer(Timer):
    """
    Fires every `interval` seconds, measured from the end of the previous
    callback, so a slow callback delays the next tick instead of stacking up.
    `first_delay` overrides the wait before the first tick (0 fires at once).
    """

    def __init__(self, delay: float, callback: Callback, name: str = "timer", first_delay: Optional[float] = None):
        self.first_delay = delay if first_delay is None else first_delay
        super().__init__(delay, callback, name)

    async def _run(self) -> None:
        wait = self.first_delay
        while True:
            await asyncio.sleep(wait)
            wait = self.delay
            try:
                await self._callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Timer '{self.name}' callback failed: {e}", exc_info=True)

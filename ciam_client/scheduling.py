"""
Cancellable one-shot timers on the asyncio event loop.
"""

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class CancellableTimer:
    """
    One-shot timer whose cancellation always wins over a pending fire.

    The callback runs on the event loop thread. Once cancel() has returned the
    callback will not run, even if its deadline has already passed and the
    loop has it queued.
    """

    def __init__(self, delay: float, callback: Callable[[], None], name: str = "timer"):
        self.delay = delay
        self.name = name
        self._callback = callback
        self._cancelled = False
        self._fired = False
        self._handle: Optional[asyncio.TimerHandle] = asyncio.get_running_loop().call_later(delay, self._fire)
        logger.debug(f"Timer {name} scheduled in {delay:.2f}s")

    def _fire(self) -> None:
        if self._cancelled:
            return
        self._fired = True
        self._handle = None
        try:
            self._callback()
        except Exception as e:
            logger.error(f"Error in timer {self.name} callback: {e}")

    def cancel(self) -> bool:
        """
        Cancel the timer. Idempotent.

        Returns:
            True if this call prevented the callback from running
        """
        if self._cancelled or self._fired:
            return False
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        logger.debug(f"Timer {self.name} cancelled")
        return True

    @property
    def active(self) -> bool:
        return not self._cancelled and not self._fired

    @property
    def fired(self) -> bool:
        return self._fired


async def cancel_task(task: Optional[asyncio.Task]) -> None:
    """Cancel ``task`` and wait for it to finish, unless it is the calling task."""
    if task is None or task.done():
        return
    task.cancel()
    if task is asyncio.current_task():
        return
    try:
        await task
    except asyncio.CancelledError:
        pass

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from fieldday.constants import APP_NAME

LOGGER = logging.getLogger(APP_NAME)


class Debouncer:
    """Coalesces bursts of ``trigger()`` calls into one callback run.

    Each trigger re-arms a single timer on the running loop; the callback runs
    ``delay`` seconds after the last trigger.
    """

    def __init__(self, delay: float, callback: Callable[[], Awaitable[Any]]) -> None:
        self.delay = delay
        self._callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def trigger(self) -> None:
        self.cancel()
        self._handle = asyncio.get_running_loop().call_later(self.delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    async def flush(self) -> None:
        """Run a pending callback now instead of waiting for the timer."""
        if self._handle is None:
            if self._task is not None:
                await self._task
            return
        self.cancel()
        await self._run()

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    def _fire(self) -> None:
        self._handle = None
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        try:
            await self._callback()
        except Exception as exc:
            LOGGER.exception("debounced callback failed: %s", exc)

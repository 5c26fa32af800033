"""Periodic liveness updates for a running job."""
import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class Heartbeat:
    """
    Background task that calls ``beat`` every ``interval`` seconds.

    Use as an async context manager; the task is cancelled on exit whether
    the body succeeded or raised. A failed beat is logged and the loop keeps
    going.
    """

    def __init__(self, beat: Callable[[], Awaitable[object]], interval: float, label: str = ""):
        self.beat = beat
        self.interval = interval
        self.label = label
        self.beats = 0
        self._task = None

    async def __aenter__(self) -> "Heartbeat":
        self._task = asyncio.create_task(self._run())
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        # asyncio.wait does not raise the heartbeat task's cancellation,
        # only one aimed at the caller
        await asyncio.wait({self._task})
        self._task = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.beat()
                self.beats += 1
            except Exception as e:
                logger.warning(f"⚠️ Heartbeat update failed {self.label}: {e}")

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Optional

from utils import logger


class QueueTimeout(Exception):
    """A caller stopped waiting on a queued operation after its deadline."""


@dataclass
class QueuedRequest:
    operation: Callable[[], Awaitable[Any]]
    future: asyncio.Future


def _discard_outcome(future: asyncio.Future) -> None:
    # Abandoned by its caller; read the exception so asyncio does not warn about it.
    if not future.cancelled():
        future.exception()


class RequestSerializer:
    """
    Runs submitted operations one at a time, in submission order, with a fixed
    cooldown between the end of one operation and the start of the next.

    The cooldown applies after failures too. A failing operation's exception is
    delivered only to its own caller; the queue keeps draining.
    """

    def __init__(self, cooldown_seconds: float = 0.5, name: str = "requests"):
        if cooldown_seconds < 0:
            raise ValueError("cooldown_seconds must be >= 0")
        self.cooldown_seconds = cooldown_seconds
        self.name = name
        self._queue: Deque[QueuedRequest] = deque()
        self._drain_task: Optional[asyncio.Task] = None
        self._ready_at: float = 0.0
        self._busy = False
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def busy(self) -> bool:
        return self._busy

    async def submit(self, operation: Callable[[], Awaitable[Any]], timeout: Optional[float] = None) -> Any:
        """Queue `operation` and wait for its outcome."""
        if self._closed:
            raise RuntimeError(f"{self.name} serializer closed")
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._queue.append(QueuedRequest(operation, future))
        logger.debug("Queued %s request (pending=%s)", self.name, len(self._queue))
        self._ensure_draining(loop)

        if timeout is None:
            return await future
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout)
        except asyncio.TimeoutError:
            future.add_done_callback(_discard_outcome)
            logger.warning("%s request abandoned after %.1fs", self.name, timeout)
            raise QueueTimeout(f"{self.name} request timed out after {timeout}s")

    def _ensure_draining(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = loop.create_task(self._drain())

    async def _drain(self) -> None:
        loop = asyncio.get_running_loop()
        while self._queue:
            wait = self._ready_at - loop.time()
            if wait > 0:
                await asyncio.sleep(wait)
            item = self._queue.popleft()
            self._busy = True
            try:
                result = await item.operation()
            except asyncio.CancelledError:
                if not item.future.done():
                    item.future.cancel()
                raise
            except Exception as exc:
                logger.warning("%s request failed: %s", self.name, exc)
                if not item.future.done():
                    item.future.set_exception(exc)
            else:
                if not item.future.done():
                    item.future.set_result(result)
            finally:
                self._busy = False
                self._ready_at = loop.time() + self.cooldown_seconds

    async def close(self) -> None:
        self._closed = True
        task = self._drain_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        while self._queue:
            item = self._queue.popleft()
            if not item.future.done():
                item.future.set_exception(RuntimeError(f"{self.name} serializer closed"))
        self._drain_task = None

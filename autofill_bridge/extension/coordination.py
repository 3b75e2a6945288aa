"""Single delivery context for completions.

Every completion produced by the bridge is handed back on the event loop that
owns the :class:`Coordinator`, no matter which thread produced the underlying
event. Callers therefore get a single-threaded programming model.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Coordinator:
    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self.loop = loop or asyncio.get_running_loop()

    def is_coordination_thread(self) -> bool:
        try:
            return asyncio.get_running_loop() is self.loop
        except RuntimeError:
            return False

    def deliver(self, callback: Callable[..., Any], *args: Any) -> None:
        """Schedule ``callback(*args)`` on the coordination loop."""
        self.loop.call_soon_threadsafe(callback, *args)

    async def resume(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` and continue on the coordination loop.

        Only a ``concurrent.futures.Future`` completed by a worker thread needs
        bridging; coroutines and asyncio futures are awaited directly.
        """
        if isinstance(awaitable, concurrent.futures.Future):
            return await asyncio.wrap_future(awaitable, loop=self.loop)
        return await awaitable

    def submit(
        self,
        coro: Awaitable[T],
        completion: Callable[[T], Any],
    ) -> concurrent.futures.Future:
        """Run ``coro`` on the coordination loop and hand its result to ``completion`` there.

        Safe to call from any thread. Exceptions escaping ``coro`` are
        programming errors; they are logged and re-raised through the
        returned future rather than passed to ``completion``.
        """

        async def runner() -> T:
            result = await coro
            completion(result)
            return result

        future = asyncio.run_coroutine_threadsafe(runner(), self.loop)

        def _log_failure(done: concurrent.futures.Future) -> None:
            if done.cancelled():
                return
            exc = done.exception()
            if exc is not None:
                logger.error("coordinated_task_failed reason=%r", exc)

        future.add_done_callback(_log_failure)
        return future

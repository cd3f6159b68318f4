"""Deadline and interrupt handling for page fetches and pacing delays."""
from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import OperationCancelled

T = TypeVar("T")


class CancelScope:
    """An optional deadline plus an interrupt flag.

    Long-running loops call :meth:`check` once per page and route every
    suspension point through :meth:`run` or :meth:`sleep`, which raise
    :class:`OperationCancelled` as soon as the deadline passes or
    :meth:`cancel` is called.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._deadline = None if timeout is None else clock() + timeout
        self._interrupted = False
        self._event: Optional[asyncio.Event] = None

    def cancel(self) -> None:
        """Interrupt the scope; safe to call from a signal handler on the loop thread."""
        self._interrupted = True
        if self._event is not None:
            self._event.set()

    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    @property
    def reason(self) -> Optional[str]:
        if self._interrupted:
            return "interrupted"
        if self._deadline is not None and self._clock() >= self._deadline:
            return "timed out"
        return None

    @property
    def cancelled(self) -> bool:
        return self.reason is not None

    def check(self) -> None:
        reason = self.reason
        if reason is not None:
            raise OperationCancelled(reason)

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the deadline or an interrupt fires first."""
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.check()
        if self._event is None:
            self._event = asyncio.Event()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter},
                timeout=self.remaining(),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        if task in done:
            return task.result()
        raise OperationCancelled(self.reason or "timed out")

    async def sleep(self, seconds: float) -> None:
        """Cancellable pacing delay."""
        if seconds <= 0:
            self.check()
            return
        await self.run(asyncio.sleep(seconds))

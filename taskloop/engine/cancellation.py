"""Explicit cancellation token threaded through every adapter call."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

from .errors import TaskAbortedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Single abort signal for one task session.

    Adapter calls go through guard(), which races the call against
    the signal. Once cancelled the token stays cancelled.
    """

    def __init__(self, task_id: str) -> None:
        self._task_id = task_id
        self._event = asyncio.Event()
        self._reason = "aborted by user"

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "aborted by user") -> None:
        if not self._event.is_set():
            self._reason = reason
            logger.info("Task %s cancellation requested: %s", self._task_id[:8], reason)
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TaskAbortedError(self._task_id, self._reason)

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await awaitable unless the token fires first.

        On cancellation the inner call is cancelled and
        TaskAbortedError is raised.
        """
        if self._event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise TaskAbortedError(self._task_id, self._reason)
        call = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {call, waiter}, return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            call.cancel()
            waiter.cancel()
            raise
        if call in done:
            waiter.cancel()
            return call.result()
        call.cancel()
        try:
            await call
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.debug("Cancelled adapter call raised while unwinding", exc_info=True)
        raise TaskAbortedError(self._task_id, self._reason)

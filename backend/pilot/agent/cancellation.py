from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

from pilot.agent.errors import Cancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation flag for one run of a session.

    Tokens are single-use: once cancelled they stay cancelled, and the
    session installs a new one when it needs to keep going.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> bool:
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable* unless the token is cancelled first.

        On cancellation the inner task is cancelled and Cancelled is raised.
        Work running in a thread cannot be interrupted; it finishes in the
        background and its result is dropped.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise Cancelled(self.reason or "cancelled")
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task.done() and not self.cancelled:
            return task.result()

        task.cancel()
        task.add_done_callback(_drain)
        raise Cancelled(self.reason or "cancelled")


def _drain(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Discarded failure from cancelled call: %s", exc)

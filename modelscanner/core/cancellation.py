"""Cooperative cancellation signal for a single invocation.

Every blocking step of an invocation (the download, each task, each
callback report) is awaited through :meth:`CancellationToken.run`, which
races the step against the token.  When the token fires first, the step's
task is cancelled and allowed to unwind, so ``async with`` blocks close
their responses and file handles, and :class:`ProcessingCancelled` is
raised in the caller.

Usage::

    token = CancellationToken()
    body = await token.run(client.get(url))

    # from another thread (e.g. a Celery signal handler)
    token.cancel_threadsafe(loop)
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from modelscanner.core.errors import ProcessingCancelled

T = TypeVar("T")


class CancellationToken:
    """Wraps an :class:`asyncio.Event` that signals cancellation."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Request cancellation.  Must be called from the token's event loop."""
        self._event.set()

    def cancel_threadsafe(self, loop: asyncio.AbstractEventLoop) -> None:
        """Request cancellation from a thread other than *loop*'s."""
        loop.call_soon_threadsafe(self._event.set)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ProcessingCancelled()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable*, or stop it when the token fires.

        Raises:
            ProcessingCancelled: If the token fires before *awaitable*
                completes (or had already fired).
        """
        work = asyncio.ensure_future(awaitable)
        if self._event.is_set():
            work.cancel()
            await asyncio.gather(work, return_exceptions=True)
            raise ProcessingCancelled()

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            work.cancel()
            raise
        finally:
            waiter.cancel()

        if work.done():
            return work.result()

        work.cancel()
        # Let the step run its own cleanup before surfacing the cancellation.
        await asyncio.gather(work, return_exceptions=True)
        raise ProcessingCancelled()

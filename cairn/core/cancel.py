import asyncio
from collections.abc import Awaitable
from contextlib import suppress
from typing import TypeVar

T = TypeVar("T")


class TurnCancelled(Exception):
    def __init__(self, reason: str = "cancelled"):
        super().__init__(reason)
        self.reason = reason


class CancelToken:
    """Cancellation signal scoped to one turn.

    Every suspension point of a turn (provider stream reads, permission
    prompts, tool execution) races against the same token.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise TurnCancelled(self.reason or "cancelled")


async def race(aw: Awaitable[T], token: CancelToken | None) -> T:
    """Await `aw` unless the token fires first; then cancel it and raise TurnCancelled."""
    if token is None:
        return await aw
    if token.cancelled:
        if asyncio.iscoroutine(aw):
            aw.close()
        raise TurnCancelled(token.reason or "cancelled")

    task = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task.done():
        return task.result()

    task.cancel()
    with suppress(asyncio.CancelledError):
        await task
    raise TurnCancelled(token.reason or "cancelled")

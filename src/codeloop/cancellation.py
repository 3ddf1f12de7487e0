from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from codeloop.errors import OperationCancelled

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation flag checked at every suspension point.

    Child tokens are cancelled together with their parent, but cancelling a
    child leaves the parent untouched. Background jobs get a fresh token so an
    interrupt of the foreground turn does not reach them.
    """

    def __init__(self, parent: CancellationToken | None = None):
        self._event = asyncio.Event()
        self._reason = ""
        self._children: list[CancellationToken] = []
        if parent is not None:
            parent._children.append(self)
            if parent.is_cancelled:
                self.cancel(parent.reason)

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        for child in self._children:
            child.cancel(reason)

    def child(self) -> CancellationToken:
        return CancellationToken(parent=self)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self._reason or "Operation cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        On cancellation the inner task is cancelled and ``OperationCancelled``
        is raised. An already-cancelled token closes a coroutine it was handed
        without starting it.
        """
        if self._event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise OperationCancelled(self._reason or "Operation cancelled")
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise
        if task in done:
            waiter.cancel()
            return task.result()

        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, Exception):
            pass
        raise OperationCancelled(self._reason or "Operation cancelled")

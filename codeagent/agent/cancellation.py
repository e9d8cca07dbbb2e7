"""Cooperative cancellation with an explicit reason.

A run owns one ``CancellationToken``. Every network call derives a child
token and arms its own deadline on it, so a deadline can only ever mark the
child with ``CancelReason.TIMEOUT`` while a stop request from the user marks
the whole tree with ``CancelReason.USER``. ``USER`` always overrides
``TIMEOUT``: a stop that lands after the deadline still reads as a stop.
"""

from __future__ import annotations

import asyncio
import enum
import weakref
from typing import Awaitable, TypeVar

from codeagent.agent.errors import RequestTimeout, UserCancelled

T = TypeVar("T")


class CancelReason(str, enum.Enum):
    USER = "user"
    TIMEOUT = "timeout"


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: CancelReason | None = None
        self._children: weakref.WeakSet[CancellationToken] = weakref.WeakSet()

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> CancelReason | None:
        return self._reason

    def cancel(self, reason: CancelReason = CancelReason.USER) -> None:
        if self._reason is CancelReason.USER:
            return
        if self._reason is CancelReason.TIMEOUT and reason is CancelReason.TIMEOUT:
            return
        self._reason = reason
        self._event.set()
        for child in list(self._children):
            # Anything arriving from above is external to the child
            child.cancel(CancelReason.USER)

    def child(self) -> CancellationToken:
        token = CancellationToken()
        if self.cancelled:
            token.cancel(CancelReason.USER)
        else:
            self._children.add(token)
        return token

    async def wait(self) -> CancelReason:
        await self._event.wait()
        assert self._reason is not None
        return self._reason

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise UserCancelled()


async def run_with_deadline(
    aw: Awaitable[T],
    token: CancellationToken | None,
    timeout: float,
) -> T:
    """Await ``aw`` unless the deadline elapses or ``token`` is cancelled.

    Raises ``UserCancelled`` when the caller cancelled and ``RequestTimeout``
    when only the local deadline fired.
    """
    scope = token.child() if token is not None else CancellationToken()
    if scope.cancelled:
        if asyncio.iscoroutine(aw):
            aw.close()
        raise UserCancelled()

    loop = asyncio.get_running_loop()
    deadline = loop.call_later(timeout, scope.cancel, CancelReason.TIMEOUT)
    request = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(scope.wait())
    try:
        done, _ = await asyncio.wait(
            {request, waiter}, return_when=asyncio.FIRST_COMPLETED
        )
    except BaseException:
        request.cancel()
        raise
    finally:
        deadline.cancel()
        waiter.cancel()

    if request in done:
        return request.result()

    request.cancel()
    await asyncio.gather(request, return_exceptions=True)

    if scope.reason is CancelReason.USER:
        raise UserCancelled()
    raise RequestTimeout(timeout)

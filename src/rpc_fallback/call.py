"""Call handles and the cancellation primitive.

Every stub invocation returns a :class:`CallHandle` immediately. The handle
owns one :class:`AbortController` whose :class:`AbortSignal` is passed to the
transport, so an in-flight exchange can be interrupted.

Cancellation is best-effort and single-shot: the first ``cancel()`` on a
pending call aborts the controller once, cancels the exchange task, and
delivers a :class:`~rpc_fallback.exceptions.CallCancelledError` through the
callback. Whether the underlying HTTP request actually stopped depends on the
transport honouring the signal.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import TYPE_CHECKING, Any

from rpc_fallback.exceptions import CallCancelledError

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger("rpc_fallback")


class AbortSignal:
    """Read side of an :class:`AbortController`, observed by transports."""

    def __init__(self) -> None:
        self._aborted = False
        self._event: asyncio.Event | None = None
        self._listeners: list[Callable[[], None]] = []

    @property
    def aborted(self) -> bool:
        return self._aborted

    def add_listener(self, listener: Callable[[], None]) -> None:
        """Register *listener* to run when the signal fires.

        Runs immediately if the signal has already fired.
        """
        if self._aborted:
            listener()
        else:
            self._listeners.append(listener)

    async def wait(self) -> None:
        """Suspend until the signal fires."""
        if self._aborted:
            return
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()

    def _fire(self) -> None:
        self._aborted = True
        if self._event is not None:
            self._event.set()
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            listener()


class AbortController:
    """Cancellation primitive for one exchange."""

    def __init__(self) -> None:
        self.signal = AbortSignal()

    def abort(self) -> None:
        """Fire the signal. Later calls are no-ops."""
        if not self.signal.aborted:
            self.signal._fire()


class CallState(enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CallHandle:
    """One in-flight invocation of a stub method.

    The callback fires at most once. Completion through :meth:`complete`
    after the handle was cancelled is ignored.

    Args:
        controller: Cancellation primitive bound to this call's exchange.
        callback: Error-first callback ``callback(error, response)``.
        method: RPC method name, used in the cancellation message.
    """

    def __init__(
        self,
        controller: AbortController,
        callback: Callable[[BaseException | None, Any], None],
        method: str = "",
    ) -> None:
        self._controller = controller
        self._callback = callback
        self._method = method
        self._state = CallState.PENDING
        self._task: asyncio.Task[None] | None = None
        self._finished = asyncio.Event()

    @property
    def state(self) -> CallState:
        return self._state

    @property
    def done(self) -> bool:
        return self._state is not CallState.PENDING

    @property
    def signal(self) -> AbortSignal:
        return self._controller.signal

    def attach(self, task: asyncio.Task[None]) -> None:
        """Bind the asyncio task running this call's exchange."""
        self._task = task

    def cancel(self) -> None:
        """Request cancellation of the call.

        Aborts the bound controller exactly once and delivers a
        ``CallCancelledError`` through the callback. Calling ``cancel()``
        again, or after the call completed, does nothing.
        """
        if self._state is not CallState.PENDING:
            return
        self._state = CallState.CANCELLED
        logger.debug("Cancelling call %s", self._method)
        self._controller.abort()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._deliver(CallCancelledError(self._method), None)

    def complete(self, error: BaseException | None, response: Any = None) -> bool:
        """Deliver the terminal result of the exchange.

        Args:
            error: Failure to report, or ``None`` on success.
            response: Decoded response message on success.

        Returns:
            ``True`` if the callback fired, ``False`` if the call had already
            reached a terminal state.
        """
        if self._state is not CallState.PENDING:
            return False
        self._state = CallState.COMPLETED
        self._deliver(error, response)
        return True

    async def wait(self) -> None:
        """Suspend until the callback has fired."""
        await self._finished.wait()

    def _deliver(self, error: BaseException | None, response: Any) -> None:
        try:
            self._callback(error, response)
        finally:
            self._finished.set()

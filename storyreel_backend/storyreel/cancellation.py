"""Cooperative cancellation shared by every stage of a production run."""
import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

from .errors import OperationCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancelToken:
    """A one-shot cancellation signal.

    ``guard`` races an awaitable against the signal. When the signal wins, the
    inner task is cancelled and awaited, so anything it holds through
    ``async with`` (semaphore permits, subprocesses, HTTP connections) is
    released before ``OperationCancelled`` reaches the caller.
    """

    def __init__(self):
        self._event: Optional[asyncio.Event] = None
        self._cancelled = False
        self.reason: Optional[str] = None

    def _get_event(self) -> asyncio.Event:
        # Created lazily so the token can be built outside a running loop.
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        return self._event

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self.reason = reason
        if self._event is not None:
            self._event.set()
        logger.info(f"Cancellation requested: {reason}")

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelled(f"Operation cancelled: {self.reason}")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        if self._cancelled:
            # Close coroutine objects so they are not reported as never awaited.
            close = getattr(awaitable, "close", None)
            if close is not None:
                close()
            self.raise_if_cancelled()

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._get_event().wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            await asyncio.gather(task, waiter, return_exceptions=True)
            raise

        if task.done():
            waiter.cancel()
            await asyncio.gather(waiter, return_exceptions=True)
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        self.raise_if_cancelled()
        raise OperationCancelled()

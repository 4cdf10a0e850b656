"""
Cooperative cancellation for the sync pipeline.

A single CancellationToken is threaded through every suspending call. Code
checks it at loop boundaries (start of an account, start of a message batch)
instead of relying on exceptions thrown mid-operation, so in-flight network
or disk operations are allowed to finish.
"""

import asyncio
import threading

from .errors import OperationCancelledError


class CancellationToken:
    """
    Thread-safe cancellation flag.

    cancel() may be called from a signal handler or another thread; waiters
    on the event loop are woken through call_soon_threadsafe.
    """

    def __init__(self) -> None:
        self._cancelled = threading.Event()
        self._waiters = []
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled.is_set():
                return
            self._cancelled.set()
            waiters, self._waiters = self._waiters, []

        for loop, future in waiters:
            loop.call_soon_threadsafe(_resolve, future)

    def raise_if_cancelled(self) -> None:
        if self._cancelled.is_set():
            raise OperationCancelledError()

    async def wait(self) -> None:
        """Suspend until cancel() is called."""
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        with self._lock:
            if self._cancelled.is_set():
                return
            self._waiters.append((loop, future))
        try:
            await future
        finally:
            with self._lock:
                if (loop, future) in self._waiters:
                    self._waiters.remove((loop, future))


def _resolve(future: asyncio.Future) -> None:
    if not future.done():
        future.set_result(None)

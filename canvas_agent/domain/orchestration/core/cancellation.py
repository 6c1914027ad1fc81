import asyncio
from typing import Awaitable, Optional, TypeVar

from ...errors import OperationCancelled


T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation signal shared by a run and its callers"""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "Cancelled by caller"):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self):
        await self._event.wait()


async def run_with_deadline(
    awaitable: Awaitable[T],
    timeout: Optional[float],
    cancel_token: Optional[CancellationToken] = None,
) -> T:
    """Await a collaborator call bounded by a deadline and the cancellation token.

    Raises ``asyncio.TimeoutError`` when the deadline passes and
    ``OperationCancelled`` when the token fires first. The call is cancelled
    in both cases.
    """
    if cancel_token is not None and cancel_token.cancelled:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise OperationCancelled(cancel_token.reason)

    call = asyncio.ensure_future(awaitable)
    watchers = {call}
    watcher = None
    if cancel_token is not None:
        watcher = asyncio.ensure_future(cancel_token.wait())
        watchers.add(watcher)

    try:
        done, _ = await asyncio.wait(watchers, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        call.cancel()
        raise
    finally:
        if watcher is not None and not watcher.done():
            watcher.cancel()

    if call in done:
        return call.result()

    call.cancel()
    # Outcome of the abandoned call is discarded
    try:
        await call
    except (asyncio.CancelledError, Exception):
        pass

    if watcher is not None and watcher in done:
        raise OperationCancelled(cancel_token.reason)
    raise asyncio.TimeoutError(f"Call did not finish within {timeout}s")

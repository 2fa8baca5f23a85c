"""
Cooperative cancellation for agent turns.

A token is handed to the agent stream and checked on every chunk. Cancelling it also
fires the callbacks the backend registered (typically terminating the agent process),
so a stalled stream is abandoned promptly.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, List, Optional

from agentbridge.config.constants import LOGGER_NAME

logger = logging.getLogger(LOGGER_NAME)

REASON_SUPERSEDED = "superseded"
REASON_PAUSED = "paused"
REASON_RESET = "reset"
REASON_COMPACTION = "compaction"


class TurnCancelled(Exception):
    """Raised inside a turn when its token has been cancelled."""

    def __init__(self, reason: Optional[str] = None):
        super().__init__(reason or "cancelled")
        self.reason = reason


class CancellationToken:
    """One-shot cancellation signal with an attached reason."""

    def __init__(self):
        self._event = asyncio.Event()
        self._callbacks: List[Callable[[], Any]] = []
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = REASON_SUPERSEDED) -> bool:
        """
        Request cancellation.

        Returns:
            bool: False if the token was already cancelled
        """
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Cancellation callback failed: {e}", exc_info=True)
        return True

    def add_callback(self, callback: Callable[[], Any]) -> None:
        """Run ``callback`` on cancellation, immediately if already cancelled."""
        if self._event.is_set():
            callback()
        else:
            self._callbacks.append(callback)

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TurnCancelled(self.reason)


async def next_or_cancel(iterator: AsyncIterator[Any], token: CancellationToken) -> Any:
    """
    Await the next item of ``iterator`` unless ``token`` is cancelled first.

    Raises:
        StopAsyncIteration: When the iterator is exhausted
        TurnCancelled: When the token fires before the next item arrives
    """
    token.raise_if_cancelled()
    next_item = asyncio.ensure_future(iterator.__anext__())
    cancel_wait = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            {next_item, cancel_wait}, return_when=asyncio.FIRST_COMPLETED
        )
    except BaseException:
        next_item.cancel()
        raise
    finally:
        cancel_wait.cancel()

    if next_item in done:
        return next_item.result()

    next_item.cancel()
    await asyncio.wait({next_item})
    if not next_item.cancelled():
        # Consume whatever the abandoned chunk produced so it is not reported later
        next_item.exception()
    raise TurnCancelled(token.reason)

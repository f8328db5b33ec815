"""Per-attempt cooperative cancellation"""

import asyncio
from typing import Optional

from ..exceptions import TransferCancelled


class CancelToken:
    """
    Cancellation signal for one transfer attempt
    Workers check it around every suspension point; a new attempt
    always gets a new token.
    """

    def __init__(self):
        self.reason: Optional[str] = None
        self._event: Optional[asyncio.Event] = None

    @property
    def cancelled(self) -> bool:
        return self.reason is not None

    def cancel(self, reason: str = "cancelled"):
        if self.reason is None:
            self.reason = reason
        if self._event is not None:
            self._event.set()

    def raise_if_cancelled(self):
        if self.reason is not None:
            raise TransferCancelled(self.reason)

    async def sleep(self, seconds: float) -> bool:
        """Sleep unless cancelled first. Returns False if cancelled."""
        if self.cancelled:
            return False
        if seconds <= 0:
            await asyncio.sleep(0)
            return not self.cancelled
        if self._event is None:
            self._event = asyncio.Event()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        return not self.cancelled

"""Bounded pool of in-flight async operations"""

import asyncio
from typing import Awaitable, Callable, Iterable, Optional, Set, TypeVar
import logging

from .cancel import CancelToken

logger = logging.getLogger(__name__)

T = TypeVar('T')


async def run_bounded(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[None]],
    concurrency: Callable[[], int],
    cancel: CancelToken,
    poll_interval: float = 0.05,
    before_start: Optional[Callable[[], Awaitable[None]]] = None,
):
    """
    Drain `items` through `worker` with at most concurrency() in flight.

    The limit is re-read on every admission cycle. `before_start` runs
    before every start except the first. Admission stops once `cancel` is
    signalled; work already in flight is awaited either way. The first
    worker exception cancels the token and is re-raised after everything
    has settled.
    """
    work = list(items)
    cursor = 0
    active: Set[asyncio.Task] = set()
    errors = []

    def settle(task: asyncio.Task):
        active.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            if not errors:
                errors.append(exc)
            cancel.cancel(f"worker failed: {exc}")

    try:
        while cursor < len(work) or active:
            if cancel.cancelled and cursor < len(work):
                cursor = len(work)  # stop admitting
                continue

            limit = max(1, concurrency())
            if cursor < len(work) and len(active) < limit:
                if cursor > 0 and before_start is not None:
                    await before_start()
                    if cancel.cancelled:
                        continue
                    # slots may have been taken by a config change meanwhile
                    if len(active) >= max(1, concurrency()):
                        continue
                item = work[cursor]
                cursor += 1
                task = asyncio.ensure_future(worker(item))
                active.add(task)
                task.add_done_callback(settle)
                continue

            await asyncio.sleep(poll_interval)
    finally:
        if active:
            await asyncio.gather(*list(active), return_exceptions=True)

    if errors:
        raise errors[0]

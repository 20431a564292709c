"""
feed.py - Inbound transfer feeds.

The reconciler does not care how transfers arrive. A TransferFeed yields
ChainTransfers; FeedConsumer pulls from one and hands each transfer to
ChainReconciler.handle_transfer.

  - QueueFeed:   push adapter; the REST webhook puts transfers on it
  - PollingFeed: pull adapter; calls a fetch function with a block cursor and
                 only moves the cursor once a whole batch has been handled,
                 so a crash re-delivers rather than skips (at-least-once)
"""

import asyncio
import logging
from collections import Counter
from typing import TYPE_CHECKING, AsyncIterator, Awaitable, Callable, List, Optional

from tokensale.reconciler import ChainTransfer

if TYPE_CHECKING:
    from tokensale.reconciler import ChainReconciler

logger = logging.getLogger("feed")

FetchTransfers = Callable[[int], Awaitable[List[dict]]]


class TransferFeed:
    """Source of chain transfers."""

    def stream(self) -> AsyncIterator[ChainTransfer]:
        raise NotImplementedError


class QueueFeed(TransferFeed):
    def __init__(self, maxsize: int = 10000):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def push(self, transfer: ChainTransfer) -> bool:
        try:
            self._queue.put_nowait(transfer)
        except asyncio.QueueFull:
            logger.warning("Transfer queue full, refusing %s", transfer.tx_hash)
            return False
        return True

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def join(self):
        await self._queue.join()

    async def stream(self) -> AsyncIterator[ChainTransfer]:
        while True:
            transfer = await self._queue.get()
            try:
                yield transfer
            finally:
                self._queue.task_done()


class PollingFeed(TransferFeed):
    def __init__(self, fetch: FetchTransfers, interval: float = 5.0, start_block: int = 0):
        self._fetch = fetch
        self.interval = interval
        self.cursor = start_block

    async def poll_once(self) -> List[ChainTransfer]:
        """Fetch transfers at or after the cursor, ordered by block."""
        raw = await self._fetch(self.cursor)
        transfers = []
        for item in raw:
            try:
                transfers.append(ChainTransfer.from_dict(item))
            except (TypeError, ValueError) as exc:
                logger.warning("Skipping malformed transfer %r: %s", item, exc)
        transfers.sort(key=lambda t: t.block_number)
        return transfers

    async def stream(self) -> AsyncIterator[ChainTransfer]:
        while True:
            try:
                batch = await self.poll_once()
            except Exception:
                logger.exception("Polling for transfers from block %d failed", self.cursor)
                batch = []
            for transfer in batch:
                yield transfer
            if batch:
                self.cursor = max(self.cursor, batch[-1].block_number + 1)
            await asyncio.sleep(self.interval)


class FeedConsumer:
    """Drives the reconciler from a feed; a failing transfer is logged and skipped."""

    def __init__(self, reconciler: "ChainReconciler", feed: TransferFeed):
        self._reconciler = reconciler
        self.feed = feed
        self.outcomes: Counter = Counter()
        self.errors = 0
        self._task: Optional[asyncio.Task] = None

    async def run(self):
        async for transfer in self.feed.stream():
            await self.consume(transfer)

    async def consume(self, transfer: ChainTransfer):
        try:
            outcome = await self._reconciler.handle_transfer(transfer)
        except Exception:
            self.errors += 1
            logger.exception("Reconciling %s failed", transfer.tx_hash)
            return None
        self.outcomes[outcome.value] += 1
        return outcome

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self.run())
            logger.info("Feed consumer started (%s)", type(self.feed).__name__)

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Feed consumer stopped")

    def stats(self) -> dict:
        return {"outcomes": dict(self.outcomes), "errors": self.errors}

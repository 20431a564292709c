"""
notifications.py - Outbound ledger events.

Engines publish LedgerEvents through a NotificationPort after their
transaction commits. The NotificationDispatcher queues them and hands each
one to every registered sink from a background task, so a ledger commit
never waits on delivery and a failing sink cannot undo a committed change.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Protocol

from tokensale.states import Severity

logger = logging.getLogger("notify")

DEFAULT_QUEUE_SIZE = 1000


class EventType(str, Enum):
    ACCOUNT_CREDITED = "account_credited"
    WITHDRAWAL_STATE_CHANGED = "withdrawal_state_changed"
    COMMISSION_PAID = "commission_paid"
    SUSPICIOUS_TRANSFER_FLAGGED = "suspicious_transfer_flagged"
    TRANSFER_OBSERVED = "transfer_observed"


@dataclass
class LedgerEvent:
    type: EventType
    account_id: Optional[str]
    amount: Decimal
    message: str
    severity: Severity = Severity.LOW
    data: dict = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "account_id": self.account_id,
            "amount": str(self.amount),
            "message": self.message,
            "severity": self.severity.value,
            "data": self.data,
            "timestamp": self.timestamp,
        }


class NotificationPort(Protocol):
    def publish(self, event: LedgerEvent) -> None:
        """Hand off an event without blocking; must not raise on delivery problems."""


Sink = Callable[[LedgerEvent], Awaitable[None]]


class NotificationDispatcher:
    """Bounded queue plus one worker task fanning events out to sinks."""

    def __init__(self, sinks: Optional[List[Sink]] = None, maxsize: int = DEFAULT_QUEUE_SIZE):
        self._sinks: List[Sink] = list(sinks or [])
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._task: Optional[asyncio.Task] = None
        self.delivered = 0
        self.dropped = 0
        self.failed = 0

    def add_sink(self, sink: Sink):
        self._sinks.append(sink)

    def publish(self, event: LedgerEvent):
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Notification queue full, dropping %s for %s", event.type.value, event.account_id)

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def drain(self):
        """Wait until every queued event has been handed to the sinks."""
        await self._queue.join()

    async def _run(self):
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()

    async def _deliver(self, event: LedgerEvent):
        for sink in self._sinks:
            try:
                await sink(event)
                self.delivered += 1
            except Exception:
                self.failed += 1
                logger.exception("Sink %r failed for %s", sink, event.type.value)


_LEVELS = {
    Severity.LOW: logging.INFO,
    Severity.MEDIUM: logging.INFO,
    Severity.HIGH: logging.WARNING,
    Severity.CRITICAL: logging.ERROR,
}


class LoggingSink:
    """Writes every event to the `notify` logger, louder for higher severities."""

    async def __call__(self, event: LedgerEvent):
        logger.log(
            _LEVELS[event.severity],
            "[%s] %s account=%s amount=%s: %s",
            event.severity.value, event.type.value, event.account_id, event.amount, event.message,
        )

"""Transfer feeds, the feed consumer and the notification dispatcher."""

import asyncio
import logging
from decimal import Decimal

import pytest

from tokensale.feed import FeedConsumer, PollingFeed, QueueFeed
from tokensale.notifications import EventType, LedgerEvent, LoggingSink, NotificationDispatcher
from tokensale.reconciler import ChainTransfer, TransferOutcome
from tokensale.states import Severity

pytestmark = pytest.mark.asyncio


def event(account_id="acct-1", severity=Severity.LOW):
    return LedgerEvent(EventType.ACCOUNT_CREDITED, account_id, Decimal("1"), "credited", severity=severity)


class StubReconciler:
    def __init__(self, fail_on=()):
        self.seen = []
        self._fail_on = set(fail_on)

    async def handle_transfer(self, transfer):
        if transfer.tx_hash in self._fail_on:
            raise RuntimeError("boom")
        self.seen.append(transfer.tx_hash)
        return TransferOutcome.PROCESSED


# ── QueueFeed / FeedConsumer ────────────────────────────────────────────────

class TestQueueFeed:

    async def test_consumer_drains_queue(self):
        feed = QueueFeed()
        reconciler = StubReconciler()
        consumer = FeedConsumer(reconciler, feed)
        consumer.start()
        try:
            for i in range(3):
                assert feed.push(ChainTransfer(f"0x{i}", "0xa", "0xb", 1))
            await asyncio.wait_for(feed.join(), timeout=5)
        finally:
            await consumer.stop()
        assert reconciler.seen == ["0x0", "0x1", "0x2"]
        assert consumer.stats() == {"outcomes": {"processed": 3}, "errors": 0}

    async def test_push_refused_when_full(self):
        feed = QueueFeed(maxsize=1)
        assert feed.push(ChainTransfer("0x1", "0xa", "0xb", 1))
        assert not feed.push(ChainTransfer("0x2", "0xa", "0xb", 1))
        assert feed.pending == 1

    async def test_failing_transfer_does_not_stop_consumer(self):
        reconciler = StubReconciler(fail_on={"0xbad"})
        consumer = FeedConsumer(reconciler, QueueFeed())
        assert await consumer.consume(ChainTransfer("0xbad", "0xa", "0xb", 1)) is None
        assert await consumer.consume(ChainTransfer("0xgood", "0xa", "0xb", 1)) is TransferOutcome.PROCESSED
        assert consumer.errors == 1
        assert reconciler.seen == ["0xgood"]


# ── PollingFeed ─────────────────────────────────────────────────────────────

class TestPollingFeed:

    async def test_poll_once_orders_and_skips_malformed(self):
        calls = []

        async def fetch(from_block):
            calls.append(from_block)
            return [
                {"hash": "0xb", "from": "0xa", "to": "0xc", "value": "5", "blockNumber": 9},
                {"from": "0xa", "to": "0xc", "value": "5"},
                {"hash": "0xa", "from": "0xa", "to": "0xc", "value": "0x10", "blockNumber": 4},
            ]

        feed = PollingFeed(fetch, interval=0, start_block=3)
        batch = await feed.poll_once()
        assert calls == [3]
        assert [t.tx_hash for t in batch] == ["0xa", "0xb"]
        assert batch[0].value == 16

    async def test_cursor_moves_after_batch(self):
        blocks = {1: [{"hash": "0x1", "from": "0xa", "to": "0xc", "value": "1", "blockNumber": 1}]}
        requested = []

        async def fetch(from_block):
            requested.append(from_block)
            return blocks.pop(1, []) if from_block <= 1 else []

        feed = PollingFeed(fetch, interval=0, start_block=0)
        stream = feed.stream()
        first = await stream.__anext__()
        assert first.tx_hash == "0x1"
        # Cursor only moves once the consumer asks for more
        assert feed.cursor == 0
        task = asyncio.ensure_future(stream.__anext__())
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert feed.cursor == 2
        assert requested[0] == 0
        assert 2 in requested


# ── NotificationDispatcher ──────────────────────────────────────────────────

class TestDispatcher:

    async def test_delivers_to_every_sink(self):
        received_a, received_b = [], []

        async def sink_a(ev):
            received_a.append(ev)

        async def sink_b(ev):
            received_b.append(ev)

        dispatcher = NotificationDispatcher([sink_a])
        dispatcher.add_sink(sink_b)
        dispatcher.start()
        try:
            dispatcher.publish(event())
            await asyncio.wait_for(dispatcher.drain(), timeout=5)
        finally:
            await dispatcher.stop()
        assert len(received_a) == len(received_b) == 1
        assert dispatcher.delivered == 2

    async def test_failing_sink_is_isolated(self):
        received = []

        async def broken(ev):
            raise RuntimeError("sink down")

        async def working(ev):
            received.append(ev)

        dispatcher = NotificationDispatcher([broken, working])
        dispatcher.start()
        try:
            dispatcher.publish(event())
            dispatcher.publish(event())
            await asyncio.wait_for(dispatcher.drain(), timeout=5)
        finally:
            await dispatcher.stop()
        assert len(received) == 2
        assert dispatcher.failed == 2
        assert dispatcher.delivered == 2

    async def test_full_queue_drops(self):
        dispatcher = NotificationDispatcher([], maxsize=1)
        dispatcher.publish(event())
        dispatcher.publish(event())
        assert dispatcher.dropped == 1

    async def test_publish_never_blocks_without_worker(self):
        dispatcher = NotificationDispatcher([])
        for _ in range(10):
            dispatcher.publish(event())
        assert dispatcher.dropped == 0

    async def test_event_to_dict(self):
        data = event(severity=Severity.HIGH).to_dict()
        assert data["type"] == "account_credited"
        assert data["amount"] == "1"
        assert data["severity"] == "high"


class TestLoggingSink:

    async def test_logs_high_severity_as_warning(self, caplog):
        with caplog.at_level(logging.INFO, logger="notify"):
            await LoggingSink()(event(severity=Severity.HIGH))
            await LoggingSink()(event(severity=Severity.LOW))
        levels = [r.levelno for r in caplog.records if r.name == "notify"]
        assert levels == [logging.WARNING, logging.INFO]

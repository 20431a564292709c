"""
ws.py - Live ledger event stream for the admin dashboard.

EventStream is registered as a notification sink, so the dispatcher awaits
it with every committed LedgerEvent and it fans the event out as a JSON
frame to each subscribed socket. Subscribers are admins only; the route in
routers/ws.py checks credentials before handing a socket over to serve().
"""

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, List, Optional

from fastapi import WebSocket, WebSocketDisconnect

from tokensale.notifications import LedgerEvent

logger = logging.getLogger("ws")

MAX_SUBSCRIBERS = 200
SEND_TIMEOUT = 2.0

Snapshot = Callable[[], Awaitable[dict]]


def frame(kind: str, data: Any) -> str:
    return json.dumps({"type": kind, "data": data, "ts": time.time()}, default=str)


class EventStream:
    def __init__(self, snapshot: Optional[Snapshot] = None):
        self._subscribers: List[WebSocket] = []
        self._snapshot = snapshot

    async def __call__(self, event: LedgerEvent):
        await self.publish(frame("ledger_event", event.to_dict()))

    async def publish(self, message: str):
        targets = list(self._subscribers)
        if not targets:
            return
        results = await asyncio.gather(
            *(asyncio.wait_for(ws.send_text(message), timeout=SEND_TIMEOUT) for ws in targets),
            return_exceptions=True,
        )
        for ws, result in zip(targets, results):
            if isinstance(result, Exception):
                self._drop(ws)
                logger.info("Dropped unresponsive subscriber: %r", result)

    def _drop(self, ws: WebSocket):
        if ws in self._subscribers:
            self._subscribers.remove(ws)

    async def serve(self, ws: WebSocket):
        """Accept the socket, send a status snapshot, then hold it until the peer goes away."""
        await ws.accept()
        if len(self._subscribers) >= MAX_SUBSCRIBERS:
            logger.warning("Event stream full (%d subscribers)", MAX_SUBSCRIBERS)
            await ws.close(code=1013, reason="Too many subscribers")
            return
        self._subscribers.append(ws)
        logger.info("Event stream subscriber joined (%d open)", len(self._subscribers))
        try:
            if self._snapshot is not None:
                try:
                    await ws.send_text(frame("snapshot", await self._snapshot()))
                except WebSocketDisconnect:
                    raise
                except Exception:
                    logger.exception("Status snapshot failed")
            # Inbound frames are ignored; reading only detects the disconnect.
            while True:
                await ws.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            self._drop(ws)
            logger.info("Event stream subscriber left (%d open)", len(self._subscribers))

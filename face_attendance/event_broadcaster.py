"""
WebSocket fan-out of pipeline progress events.

Clients subscribe per identity at /ws/progress/{identity_id}. The pipeline
emits without waiting: events go into a bounded queue drained by a pump task,
and are dropped when the queue is full.
"""
import asyncio
import json
import logging
from typing import Dict, Optional, Set

from fastapi import WebSocket

from face_attendance.config import PROGRESS_QUEUE_SIZE
from face_attendance.progress import ProgressEvent

logger = logging.getLogger(__name__)


class WebSocketProgressBroker:
    """ProgressSink that broadcasts events to WebSocket subscribers of an identity."""

    def __init__(self, queue_size: int = PROGRESS_QUEUE_SIZE):
        self.channels: Dict[str, Set[WebSocket]] = {}
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._pump: Optional[asyncio.Task] = None
        self.dropped = 0

    async def connect(self, key: str, ws: WebSocket):
        await ws.accept()
        self.channels.setdefault(key, set()).add(ws)
        logger.info(f"Progress subscriber connected for {key}")

    def disconnect(self, key: str, ws: WebSocket):
        subscribers = self.channels.get(key)
        if subscribers is None:
            return
        subscribers.discard(ws)
        if not subscribers:
            self.channels.pop(key, None)

    def emit(self, event: ProgressEvent) -> None:
        if event.identity_id is None or event.identity_id not in self.channels:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.debug(f"Progress queue full, dropped {event.status} for {event.identity_id}")

    async def broadcast(self, key: str, data: dict):
        dead = []
        message = json.dumps(data)
        for ws in list(self.channels.get(key, set())):
            try:
                await ws.send_text(message)
            except Exception:
                dead.append(ws)
        for ws in dead:
            self.disconnect(key, ws)

    async def _run(self):
        while True:
            event = await self._queue.get()
            try:
                await self.broadcast(event.identity_id, event.to_dict())
            except Exception as e:
                logger.debug(f"Progress broadcast failed: {e}")
            finally:
                self._queue.task_done()

    def start(self):
        if self._pump is None or self._pump.done():
            self._pump = asyncio.create_task(self._run())

    async def stop(self):
        if self._pump is None:
            return
        self._pump.cancel()
        try:
            await self._pump
        except asyncio.CancelledError:
            pass
        self._pump = None

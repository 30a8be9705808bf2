import asyncio
import json
import logging
from typing import Any, Dict, List, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class NotificationBus:
    """Broadcasts dispatch events to every connected websocket client.

    ``emit`` is fire-and-forget: it schedules the broadcast on the running
    event loop and returns immediately, so it must be called from code running
    inside that loop (async routes, scheduler tasks).
    """

    def __init__(self):
        self.active: List[WebSocket] = []
        self._tasks: Set[asyncio.Task] = set()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active:
            self.active.remove(websocket)

    async def broadcast(self, message: Dict[str, Any]):
        data = json.dumps(message, default=str)
        for ws in list(self.active):
            try:
                await ws.send_text(data)
            except Exception as e:
                logger.warning("Dropping websocket after failed send: %s", e)
                self.disconnect(ws)

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; %s event dropped: %s", event, payload)
            return
        task = loop.create_task(self.broadcast({"type": event, "data": payload}))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self):
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

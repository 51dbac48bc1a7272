# ws_manager.py
"""
Live status stream for ``/ws/events``.

A client may watch everything or pin itself to one order/parcel id; the
event bus hands every committed event to ``broadcast``.
"""
from typing import Dict, Optional

from fastapi import WebSocket

from idelivery.config import get_logger

logger = get_logger("idelivery.ws")


class EventStream:
    def __init__(self):
        self.watchers: Dict[WebSocket, Optional[str]] = {}

    async def connect(self, websocket: WebSocket, entity_id: Optional[str] = None):
        await websocket.accept()
        self.watchers[websocket] = entity_id
        scope = entity_id or "all entities"
        logger.info(f"[WS] Watcher joined for {scope} ({len(self.watchers)} watching)")

    def disconnect(self, websocket: WebSocket):
        self.watchers.pop(websocket, None)
        logger.info(f"[WS] Watcher left ({len(self.watchers)} watching)")

    def wants(self, websocket: WebSocket, event: dict) -> bool:
        entity_id = self.watchers.get(websocket)
        return entity_id is None or event.get("data", {}).get("entity_id") == entity_id

    async def broadcast(self, event: dict) -> int:
        """Push ``event`` to matching watchers; returns how many got it. Broken sockets are dropped."""
        delivered = 0
        dead = []
        for ws in list(self.watchers):
            if not self.wants(ws, event):
                continue
            try:
                await ws.send_json(event)
                delivered += 1
            except Exception as e:
                logger.warning(f"[WS] Dropping watcher after failed {event.get('type')} push: {e}")
                dead.append(ws)

        for ws in dead:
            self.disconnect(ws)
        return delivered


manager = EventStream()

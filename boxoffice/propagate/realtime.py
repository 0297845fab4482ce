from __future__ import annotations
from typing import Any, Dict, Set

import structlog
from fastapi import WebSocket

log = structlog.get_logger(__name__)


class Broadcaster:
    """Connected websocket observers.

    Delivery is at-most-once with no persistence: observers that are offline
    miss the event and re-fetch on reconnect.
    """

    def __init__(self) -> None:
        self._connections: Set[WebSocket] = set()

    @property
    def count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._connections.add(websocket)
        log.info("websocket_connected", observers=self.count)

    def disconnect(self, websocket: WebSocket) -> None:
        self._connections.discard(websocket)
        log.info("websocket_disconnected", observers=self.count)

    async def broadcast(self, event: str, payload: Dict[str, Any]) -> int:
        """Send to every observer; returns how many received it."""
        message = {"event": event, "data": payload}
        delivered = 0
        # copy: disconnect() mutates the set
        for websocket in list(self._connections):
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception as e:
                log.warning("websocket_send_error", event_name=event,
                            error=str(e))
                self.disconnect(websocket)
        return delivered

    async def close(self) -> None:
        for websocket in list(self._connections):
            try:
                await websocket.close()
            except Exception as e:
                log.debug("websocket_close_error", error=str(e))
            self._connections.discard(websocket)

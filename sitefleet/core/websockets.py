from typing import List
from fastapi import WebSocket

from .events import SiteStatusChanged
from .constants import EventType


class ConnectionManager:
    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

    async def broadcast_event(self, event_type: str, data: dict = None):
        """
        Sends a generic JSON signal to every connected dashboard.
        """
        payload = {"type": event_type}
        if data:
            payload.update(data)

        # Iterate over a copy, the list shrinks when a send fails
        for connection in self.active_connections[:]:
            try:
                await connection.send_json(payload)
            except Exception:
                self.disconnect(connection)

    async def on_status_changed(self, event: SiteStatusChanged):
        """EventBus subscriber forwarding monitor transitions to dashboards."""
        await self.broadcast_event(EventType.SITE_STATUS_CHANGED.value, event.to_dict())

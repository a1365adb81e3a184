from typing import Dict, List
from fastapi import WebSocket
import logging

logger = logging.getLogger(__name__)

class ConnectionManager:
    def __init__(self):
        # Map channel -> open dashboard sockets
        self.active_connections: Dict[str, List[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, channel: str):
        await websocket.accept()
        self.active_connections.setdefault(channel, []).append(websocket)
        logger.info("WebSocket connected on channel %s (%d open)", channel, len(self.active_connections[channel]))

    def disconnect(self, websocket: WebSocket, channel: str):
        sockets = self.active_connections.get(channel, [])
        if websocket in sockets:
            sockets.remove(websocket)
            logger.info("WebSocket disconnected from channel %s", channel)
        if not sockets:
            self.active_connections.pop(channel, None)

    def count(self, channel: str) -> int:
        return len(self.active_connections.get(channel, []))

    async def broadcast(self, message: dict, channel: str):
        """Send to every socket on the channel, dropping the ones that fail."""
        for websocket in list(self.active_connections.get(channel, [])):
            try:
                await websocket.send_json(message)
            except Exception as e:
                logger.warning("Dropping WebSocket on channel %s: %s", channel, e)
                self.disconnect(websocket, channel)

manager = ConnectionManager()

"""WebSocket fan-out of stream status events."""

import logging
from typing import Dict, Optional, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Tracks WebSocket clients and the streams each one follows.

    A client with no stream filter receives every event.
    """

    def __init__(self):
        self.client_ids: Dict[WebSocket, str] = {}
        self.stream_filters: Dict[WebSocket, Set[str]] = {}

    @property
    def connection_count(self) -> int:
        return len(self.client_ids)

    async def connect(self, websocket: WebSocket, client_id: str):
        """Accept a connection and start sending it all events.

        Args:
            websocket: WebSocket connection.
            client_id: Client identifier used in logs.
        """
        await websocket.accept()
        self.client_ids[websocket] = client_id
        self.stream_filters[websocket] = set()
        logger.info(f"WebSocket client {client_id} connected ({self.connection_count} total)")

    def disconnect(self, websocket: WebSocket):
        client_id = self.client_ids.pop(websocket, None)
        self.stream_filters.pop(websocket, None)
        if client_id is not None:
            logger.info(f"WebSocket client {client_id} disconnected")

    def follow(self, websocket: WebSocket, stream_id: str):
        """Restrict a client to events of the streams it follows."""
        if websocket in self.stream_filters:
            self.stream_filters[websocket].add(stream_id)

    def unfollow(self, websocket: WebSocket, stream_id: str):
        if websocket in self.stream_filters:
            self.stream_filters[websocket].discard(stream_id)

    def wants(self, websocket: WebSocket, stream_id: Optional[str]) -> bool:
        followed = self.stream_filters.get(websocket)
        if followed is None:
            return False
        return not followed or stream_id is None or stream_id in followed

    async def send_personal_message(self, message: dict, websocket: WebSocket):
        """Send a message to one client, dropping it if the send fails.

        Args:
            message: JSON-serializable message.
            websocket: Target connection.
        """
        try:
            await websocket.send_json(message)
        except Exception as e:
            logger.error(f"Error sending to WebSocket client {self.client_ids.get(websocket)}: {e}")
            self.disconnect(websocket)

    async def broadcast(self, message: dict):
        """Send an event to every client following its stream.

        Args:
            message: Event with an optional ``stream_id`` key.
        """
        stream_id = message.get("stream_id")
        for websocket in list(self.client_ids):
            if self.wants(websocket, stream_id):
                await self.send_personal_message(message, websocket)

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Set
from uuid import uuid4

from fastapi import WebSocket

logger = logging.getLogger(__name__)


@dataclass
class ConnectionInfo:
    """Metadata describing a single WebSocket connection."""

    id: str
    websocket: WebSocket
    identity: Optional[str] = None

    async def send_json(self, message: Dict[str, Any]) -> None:
        """Proxy to the underlying WebSocket send_json method."""
        await self.websocket.send_json(message)


class WebSocketManager:
    def __init__(self):
        # Key: room_id, Value: {connection_id: ConnectionInfo}
        self.active_connections: Dict[str, Dict[str, ConnectionInfo]] = {}
        self._pending: Set[asyncio.Task] = set()

    async def connect(
        self,
        websocket: WebSocket,
        room_id: str,
        *,
        identity: Optional[str] = None,
    ) -> str:
        """Add a new WebSocket connection for a room and return its id."""
        await websocket.accept()
        return self.register(websocket, room_id, identity=identity)

    def register(
        self,
        websocket: WebSocket,
        room_id: str,
        *,
        identity: Optional[str] = None,
    ) -> str:
        connection_id = str(uuid4())
        room_connections = self.active_connections.setdefault(room_id, {})
        room_connections[connection_id] = ConnectionInfo(
            id=connection_id,
            websocket=websocket,
            identity=identity,
        )
        logger.debug(
            "WebSocket connected: room_id=%s connection_id=%s identity=%s",
            room_id,
            connection_id,
            identity,
        )
        return connection_id

    def disconnect(self, room_id: str, connection_id: str) -> None:
        """Remove a WebSocket connection for a room."""
        room_connections = self.active_connections.get(room_id)
        if not room_connections:
            return

        if connection_id in room_connections:
            room_connections.pop(connection_id, None)
            logger.debug(
                "WebSocket disconnected: room_id=%s connection_id=%s",
                room_id,
                connection_id,
            )

        if not room_connections:
            self.active_connections.pop(room_id, None)

    def publish(
        self,
        room_id: str,
        recipients: Sequence[str],
        message: Dict[str, Any],
    ) -> None:
        """Schedule one send per recipient connection without waiting on any of them."""
        wanted = set(recipients)
        room_connections = self.active_connections.get(room_id, {})
        targets = [
            connection
            for connection in list(room_connections.values())
            if connection.identity in wanted
        ]
        if not targets:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "No running event loop; dropping %s for room_id=%s",
                message.get("type"),
                room_id,
            )
            return
        for connection in targets:
            task = loop.create_task(self._deliver(room_id, connection, message))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _deliver(
        self,
        room_id: str,
        connection: ConnectionInfo,
        message: Dict[str, Any],
    ) -> None:
        try:
            await connection.send_json(message)
        except Exception:  # pragma: no cover - depends on network
            logger.debug(
                "Dropping unreachable connection: room_id=%s connection_id=%s",
                room_id,
                connection.id,
            )
            self.disconnect(room_id, connection.id)

    async def flush(self) -> None:
        """Wait for every scheduled send to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def send_personal_message(
        self,
        room_id: str,
        connection_id: str,
        message: Dict[str, Any],
    ) -> None:
        """Send a message to a specific connection in a room."""
        connection = self.active_connections.get(room_id, {}).get(connection_id)
        if not connection:
            return
        try:
            await connection.send_json(message)
        except Exception:  # pragma: no cover - depends on network
            self.disconnect(room_id, connection_id)

    def active_identities(self, room_id: str) -> Dict[str, ConnectionInfo]:
        """Return the active connection metadata for a room."""
        return self.active_connections.get(room_id, {}).copy()

    def connection_count(self, room_id: str, identity: str) -> int:
        return sum(
            1
            for connection in self.active_connections.get(room_id, {}).values()
            if connection.identity == identity
        )


# Create a singleton instance
websocket_manager = WebSocketManager()

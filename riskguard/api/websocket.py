"""WebSocket connection manager for real-time alert broadcasting."""
from __future__ import annotations

import logging
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Manages WebSocket connections for real-time risk alert streaming.

    Each connection is registered under the tenant it subscribed for; a
    broadcast only reaches the connections of the alert's tenant.
    """

    def __init__(self) -> None:
        self.active_connections: dict[WebSocket, str] = {}

    async def connect(self, websocket: WebSocket, tenant_id: str) -> None:
        """Accept and register a new WebSocket connection.

        Args:
            websocket: The incoming WebSocket connection to accept.
            tenant_id: Tenant whose alerts the client receives.
        """
        await websocket.accept()
        self.active_connections[websocket] = tenant_id
        logger.info("WebSocket connected for tenant %s. Total: %d", tenant_id, len(self.active_connections))

    def disconnect(self, websocket: WebSocket) -> None:
        self.active_connections.pop(websocket, None)
        logger.info("WebSocket disconnected. Total: %d", len(self.active_connections))

    async def broadcast(self, message: dict[str, Any]) -> None:
        """Send an alert payload to every client of the alert's tenant.

        Automatically cleans up connections that fail to receive the message.

        Args:
            message: Alert payload carrying a ``tenant_id`` key.
        """
        tenant_id = message.get("tenant_id")
        disconnected: list[WebSocket] = []
        for connection, subscribed in list(self.active_connections.items()):
            if subscribed != tenant_id:
                continue
            try:
                await connection.send_json({"type": "alert", "data": message})
            except Exception:  # noqa: BLE001
                disconnected.append(connection)
        for conn in disconnected:
            self.disconnect(conn)


manager = ConnectionManager()

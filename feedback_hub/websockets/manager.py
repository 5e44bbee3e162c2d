"""
WebSocket connection manager for real-time student notifications.

Keeps the process-local routing table from user identity to live
connections. Bindings are ephemeral; a restart drops all of them.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Set
from uuid import uuid4

from fastapi import WebSocket

from feedback_hub.api.metrics import websocket_connections

logger = logging.getLogger(__name__)


def notification_message(message: str, timestamp: Optional[datetime] = None) -> dict:
    """Client payload for a notification event."""
    timestamp = timestamp or datetime.now(timezone.utc)
    return {
        "type": "event",
        "event": "notification",
        "data": {"message": message, "timestamp": timestamp.isoformat()},
    }


class ConnectionManager:
    """
    Manages WebSocket connections and per-user routing.

    Features:
    - Connection lifecycle management
    - Per-user bindings (one user, many tabs/devices)
    - Fanout of notification events to every connection of a user
    - Broken connections are dropped on send failure
    """

    def __init__(self):
        # Active connections by connection_id
        self._connections: Dict[str, WebSocket] = {}

        # User bindings: user_id -> set of connection_ids
        self._user_connections: Dict[str, Set[str]] = {}

        # Reverse index: connection_id -> set of user_ids
        self._connection_users: Dict[str, Set[str]] = {}

        logger.info("ConnectionManager initialized")

    async def connect(self, websocket: WebSocket) -> str:
        """
        Accept a new WebSocket connection.

        Args:
            websocket: The WebSocket connection

        Returns:
            connection_id: Unique identifier for this connection
        """
        await websocket.accept()

        connection_id = str(uuid4())
        self._connections[connection_id] = websocket
        self._connection_users[connection_id] = set()
        websocket_connections.set(len(self._connections))

        logger.info(
            f"WebSocket connected: {connection_id}, "
            f"total connections: {len(self._connections)}"
        )
        return connection_id

    def join(self, connection_id: str, user_id: str) -> bool:
        """
        Bind a connection to a user identity.

        Returns:
            False if the connection is unknown
        """
        if connection_id not in self._connections:
            return False

        user_id = str(user_id)
        self._user_connections.setdefault(user_id, set()).add(connection_id)
        self._connection_users[connection_id].add(user_id)

        logger.info(f"Connection {connection_id} joined user {user_id}")
        return True

    def leave(self, connection_id: str, user_id: str) -> None:
        """Unbind a connection from a user identity."""
        user_id = str(user_id)
        bound = self._user_connections.get(user_id)
        if bound is not None:
            bound.discard(connection_id)
            if not bound:
                del self._user_connections[user_id]
        users = self._connection_users.get(connection_id)
        if users is not None:
            users.discard(user_id)

    async def disconnect(self, connection_id: str) -> None:
        """
        Remove a connection and all of its bindings.

        Args:
            connection_id: Connection to remove
        """
        if connection_id not in self._connections:
            return

        for user_id in list(self._connection_users.get(connection_id, ())):
            self.leave(connection_id, user_id)

        del self._connections[connection_id]
        self._connection_users.pop(connection_id, None)
        websocket_connections.set(len(self._connections))

        logger.info(
            f"WebSocket disconnected: {connection_id}, "
            f"remaining connections: {len(self._connections)}"
        )

    async def send_message(self, connection_id: str, message: dict) -> bool:
        """
        Send a message to a specific connection.

        Returns:
            True if the message was handed to the socket
        """
        websocket = self._connections.get(connection_id)
        if websocket is None:
            logger.warning(f"Cannot send to unknown connection: {connection_id}")
            return False

        try:
            await websocket.send_json(message)
            return True
        except Exception as e:
            logger.error(f"Failed to send message to {connection_id}: {e}")
            await self.disconnect(connection_id)
            return False

    async def publish(self, user_id: str, message: str, timestamp: Optional[datetime] = None) -> int:
        """
        Push a notification to every live connection of a user.

        Returns:
            Number of connections delivered to (0 when the user has none)
        """
        connection_ids = list(self._user_connections.get(str(user_id), ()))
        if not connection_ids:
            logger.debug(f"No live connections for user {user_id}")
            return 0

        payload = notification_message(message, timestamp)
        results = await asyncio.gather(
            *(self.send_message(conn_id, payload) for conn_id in connection_ids),
            return_exceptions=True,
        )
        delivered = sum(1 for r in results if r is True)

        logger.debug(f"Notification to user {user_id}: {delivered}/{len(connection_ids)} delivered")
        return delivered

    def connections_for(self, user_id: str) -> Set[str]:
        return set(self._user_connections.get(str(user_id), ()))

    def get_stats(self) -> dict:
        """
        Get connection statistics.

        Returns:
            Statistics dictionary
        """
        return {
            "total_connections": len(self._connections),
            "users_with_connections": len(self._user_connections),
            "connections_by_user": {
                user_id: len(conn_ids)
                for user_id, conn_ids in self._user_connections.items()
            },
        }

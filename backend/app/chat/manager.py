"""WebSocket connection manager: the transport under the fanout router.

The manager owns the live WebSocket objects keyed by a backend-assigned
connection id and delivers the fanout router's deliveries to them.

Key features:
    - Backend-assigned connection ids (never client-provided)
    - Concurrent delivery across connections with asyncio.gather()
    - Deliveries to one connection are sent in order
    - Failed sends are logged and swallowed; the rest of a fanout continues
    - Automatic dead connection cleanup

Thread Safety:
    This implementation is designed for async/await usage with a single event
    loop. It is NOT thread-safe for concurrent access from multiple threads.
"""
import asyncio
import logging
import uuid
from typing import Dict, Iterable, List

from fastapi import WebSocket

from .schemas import Delivery

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Maps connection ids to WebSockets and sends outbound events."""

    def __init__(self) -> None:
        # connection_id -> live WebSocket
        self.active_connections: Dict[str, WebSocket] = {}

    async def connect(self, websocket: WebSocket) -> str:
        """Accept a WebSocket and assign it a connection id.

        Args:
            websocket: The WebSocket connection to accept.

        Returns:
            The backend-generated connection id.
        """
        await websocket.accept()
        connection_id = str(uuid.uuid4())
        self.active_connections[connection_id] = websocket
        logger.info(f"[WS] Connection {connection_id} accepted ({len(self.active_connections)} live)")
        return connection_id

    def disconnect(self, connection_id: str) -> None:
        """Forget a connection. Unknown ids are ignored."""
        if self.active_connections.pop(connection_id, None) is not None:
            logger.info(f"[WS] Connection {connection_id} removed ({len(self.active_connections)} live)")

    def is_connected(self, connection_id: str) -> bool:
        return connection_id in self.active_connections

    async def deliver(self, deliveries: Iterable[Delivery]) -> int:
        """Send deliveries to their connections.

        Deliveries are grouped per connection and each group is sent in order;
        groups are sent concurrently. Stale connection ids are skipped.

        Args:
            deliveries: Outbound events produced by the fanout router.

        Returns:
            Number of deliveries that were sent successfully.
        """
        grouped: Dict[str, List[dict]] = {}
        for delivery in deliveries:
            grouped.setdefault(delivery.connectionId, []).append(delivery.to_wire())
        if not grouped:
            return 0

        connection_ids = list(grouped)
        results = await asyncio.gather(
            *[self._send_all(conn_id, grouped[conn_id]) for conn_id in connection_ids],
            return_exceptions=True
        )

        sent = 0
        failed_connections = []
        for conn_id, result in zip(connection_ids, results):
            if isinstance(result, int):
                sent += result
                if result < len(grouped[conn_id]):
                    failed_connections.append(conn_id)
            else:
                failed_connections.append(conn_id)
        self._cleanup_connections(failed_connections)
        return sent

    async def _send_all(self, connection_id: str, messages: List[dict]) -> int:
        websocket = self.active_connections.get(connection_id)
        if websocket is None:
            logger.debug(f"Skipping delivery to stale connection {connection_id}")
            return 0
        sent = 0
        for message in messages:
            if not await self._safe_send(websocket, message):
                break
            sent += 1
        return sent

    async def _safe_send(self, connection: WebSocket, message: dict) -> bool:
        """Send a message to a WebSocket connection with error handling.

        Returns:
            True if successful, False if connection failed.
        """
        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False

    def _cleanup_connections(self, failed_connections: List[str]) -> None:
        for conn_id in failed_connections:
            if conn_id in self.active_connections:
                del self.active_connections[conn_id]
                logger.debug(f"Removed dead connection {conn_id}")

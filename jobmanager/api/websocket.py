"""
WebSocket connection manager for real-time job updates.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from uuid import UUID

from fastapi import WebSocket, WebSocketDisconnect

from jobmanager.types.events import JobProgressEvent, WebSocketMessage, WorkerStatusEvent

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class ConnectionInfo:
    """
    Information about a WebSocket connection.

    A connection with no subscriptions receives every job event. Once it
    subscribes to specific jobs it only receives events for those jobs.
    Worker status events always go to every connection.
    """

    websocket: WebSocket
    subscribed_jobs: set[UUID] = field(default_factory=set)

    def wants_job(self, job_id: UUID) -> bool:
        return not self.subscribed_jobs or job_id in self.subscribed_jobs


class WebSocketManager:
    """
    Manager for WebSocket connections.

    Handles connection lifecycle and message broadcasting
    for real-time job progress and worker status updates.
    """

    def __init__(self):
        """Initialize the WebSocket manager."""
        self._connections: list[ConnectionInfo] = []
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> ConnectionInfo:
        """
        Accept a new WebSocket connection.

        Args:
            websocket: The WebSocket connection.

        Returns:
            ConnectionInfo for the new connection.
        """
        await websocket.accept()

        connection = ConnectionInfo(websocket=websocket)
        async with self._lock:
            self._connections.append(connection)

        logger.info("WebSocket connected", extra={"connections": len(self._connections)})
        return connection

    async def disconnect(self, connection: ConnectionInfo) -> None:
        """
        Handle WebSocket disconnection.

        Args:
            connection: The connection to remove.
        """
        async with self._lock:
            if connection in self._connections:
                self._connections.remove(connection)

        logger.info("WebSocket disconnected", extra={"connections": len(self._connections)})

    async def subscribe_to_job(self, connection: ConnectionInfo, job_id: UUID) -> None:
        connection.subscribed_jobs.add(job_id)

    async def unsubscribe_from_job(self, connection: ConnectionInfo, job_id: UUID) -> None:
        connection.subscribed_jobs.discard(job_id)

    async def broadcast(
        self,
        message: WebSocketMessage,
        job_id: UUID | None = None,
    ) -> None:
        """
        Send a message to every interested connection.

        Connections that fail to receive are dropped.

        Args:
            message: The message to broadcast.
            job_id: The job the message is about, used for subscription filtering.
        """
        async with self._lock:
            connections = [
                c for c in self._connections if job_id is None or c.wants_job(job_id)
            ]

        if not connections:
            return

        message_json = message.model_dump_json()

        disconnected = []
        for connection in connections:
            try:
                await connection.websocket.send_text(message_json)
            except Exception as e:
                logger.warning(f"Failed to send WebSocket message: {e}")
                disconnected.append(connection)

        for connection in disconnected:
            await self.disconnect(connection)

    async def broadcast_job_event(self, event: JobProgressEvent) -> None:
        await self.broadcast(WebSocketMessage.from_job_event(event), job_id=event.job_id)

    async def broadcast_worker_event(self, event: WorkerStatusEvent) -> None:
        await self.broadcast(WebSocketMessage.from_worker_event(event))

    def get_connection_count(self) -> int:
        """Get the number of active connections."""
        return len(self._connections)


class WebSocketNotifier:
    """Notifier that pushes events to the API's WebSocket clients."""

    def __init__(self, manager: WebSocketManager | None = None):
        self._manager = manager or get_ws_manager()

    async def notify_job_progress(self, event: JobProgressEvent) -> None:
        await self._manager.broadcast_job_event(event)

    async def notify_worker_status(self, event: WorkerStatusEvent) -> None:
        await self._manager.broadcast_worker_event(event)


# Global WebSocket manager instance
_ws_manager: WebSocketManager | None = None


def get_ws_manager() -> WebSocketManager:
    """Get or create the WebSocket manager instance."""
    global _ws_manager
    if _ws_manager is None:
        _ws_manager = WebSocketManager()
    return _ws_manager


async def websocket_handler(websocket: WebSocket) -> None:
    """
    Handle a WebSocket connection for job updates.

    Clients may send ``{"action": "subscribe" | "unsubscribe", "job_id": ...}``
    to narrow the job events they receive, and ``{"action": "ping"}``.

    Args:
        websocket: The WebSocket connection.
    """
    manager = get_ws_manager()
    connection = await manager.connect(websocket)

    try:
        while True:
            data = await websocket.receive_text()

            try:
                message = json.loads(data)
                action = message.get("action")

                if action == "subscribe":
                    job_id = UUID(message["job_id"])
                    await manager.subscribe_to_job(connection, job_id)
                    await websocket.send_json({"type": "subscribed", "job_id": str(job_id)})

                elif action == "unsubscribe":
                    job_id = UUID(message["job_id"])
                    await manager.unsubscribe_from_job(connection, job_id)
                    await websocket.send_json({"type": "unsubscribed", "job_id": str(job_id)})

                elif action == "ping":
                    await websocket.send_json({"type": "pong"})

                else:
                    await websocket.send_json(
                        {"type": "error", "message": f"Unknown action: {action}"}
                    )

            except (json.JSONDecodeError, ValueError, KeyError, TypeError, AttributeError) as e:
                await websocket.send_json({"type": "error", "message": f"Invalid message: {e}"})

    except WebSocketDisconnect:
        await manager.disconnect(connection)

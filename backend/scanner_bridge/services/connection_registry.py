"""Connected WebSocket clients"""
import asyncio
import logging
import uuid
from typing import Coroutine, Dict, Optional, Set

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from scanner_bridge.schemas.scanner import EventType
from scanner_bridge.services.protocol import encode_event

logger = logging.getLogger(__name__)


class ClientConnection:
    """A single WebSocket client.

    Sends are serialized with a lock so events reach the client in the order
    they were emitted, even when a scan task and the receive loop send at the
    same time.
    """

    def __init__(self, websocket: WebSocket, client_id: Optional[str] = None):
        self.websocket = websocket
        self.client_id = client_id or str(uuid.uuid4())
        self.closed = False
        self._send_lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

    async def send_event(self, event_type: EventType, **payload) -> bool:
        """Send one event. Returns False if the client is already gone."""
        if self.closed:
            logger.debug(f"Dropping {event_type.value} event for closed client {self.client_id}")
            return False

        message = encode_event(event_type, **payload)
        async with self._send_lock:
            if self.closed or self.websocket.application_state != WebSocketState.CONNECTED:
                logger.debug(f"Dropping {event_type.value} event for closed client {self.client_id}")
                return False
            try:
                await self.websocket.send_text(message)
            except Exception as e:
                logger.warning(f"Failed to send {event_type.value} to client {self.client_id}: {e}")
                self.closed = True
                return False
        return True

    def spawn(self, coro: Coroutine) -> asyncio.Task:
        """Run ``coro`` in the background for as long as the connection lives."""
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background task for client {self.client_id} failed: {task.exception()}")

    async def close(self) -> None:
        self.closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)


class ConnectionRegistry:
    """Maps client ids to live connections"""

    def __init__(self):
        self._connections: Dict[str, ClientConnection] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, client_id: str) -> bool:
        return client_id in self._connections

    def register(self, websocket: WebSocket) -> ClientConnection:
        connection = ClientConnection(websocket)
        while connection.client_id in self._connections:
            connection.client_id = str(uuid.uuid4())
        self._connections[connection.client_id] = connection
        return connection

    def get(self, client_id: str) -> Optional[ClientConnection]:
        return self._connections.get(client_id)

    async def unregister(self, client_id: str) -> Optional[ClientConnection]:
        connection = self._connections.pop(client_id, None)
        if connection is not None:
            await connection.close()
        return connection


connection_registry = ConnectionRegistry()

"""
Scanner Bridge WebSocket endpoint
"""
import asyncio
import logging
from typing import Set

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from scanner_bridge.core.config import settings
from scanner_bridge.core.origins import is_origin_allowed
from scanner_bridge.schemas.scanner import EventType
from scanner_bridge.services.connection_registry import connection_registry
from scanner_bridge.services.device_discovery import device_discovery
from scanner_bridge.services.job_controller import job_controller
from scanner_bridge.services.protocol import ProtocolHandler

router = APIRouter()
logger = logging.getLogger(__name__)

protocol_handler = ProtocolHandler(job_controller, device_discovery)
_release_tasks: Set[asyncio.Task] = set()


@router.websocket("/")
async def scanner_socket(websocket: WebSocket):
    """Bidirectional scanner session for a single client."""
    origin = websocket.headers.get("origin")
    if not is_origin_allowed(origin, settings.allowed_origins):
        logger.warning(f"Rejected connection from origin {origin}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    connection = connection_registry.register(websocket)
    client_id = connection.client_id
    logger.info(f"Client connected: {client_id}")

    try:
        await connection.send_event(
            EventType.CONNECTED,
            clientId=client_id,
            message="Scanner Bridge connected successfully",
        )
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", status.WS_1000_NORMAL_CLOSURE))

            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            await protocol_handler.handle_message(connection, raw)
    except WebSocketDisconnect:
        logger.info(f"Client disconnected: {client_id}")
    except Exception as exc:
        logger.exception(f"WebSocket error for {client_id}: {exc}")
    finally:
        # No events can reach the client any more; cancel silently
        connection.closed = True
        release = asyncio.create_task(release_client(client_id))
        _release_tasks.add(release)
        release.add_done_callback(_release_tasks.discard)
        await asyncio.shield(release)


async def release_client(client_id: str) -> None:
    """Cancel the client's scan and forget the connection.

    Runs in its own task so that cancelling the socket handler cannot leave
    the scanner process running or the connection registered.
    """
    try:
        await job_controller.cancel_scan(client_id)
    finally:
        await connection_registry.unregister(client_id)

"""JSON message codec and command dispatch for the Scanner Bridge protocol.

Every inbound frame is a JSON object with a ``type`` discriminator. Problems
with a single message are reported back to the sending client as an
``error`` event and never affect other clients.
"""
import json
import logging
from typing import Any, Dict, Union

from pydantic import ValidationError

from scanner_bridge.schemas.scanner import CommandType, EventType, ScanSettings
from scanner_bridge.services.job_controller import ScanInProgressError

logger = logging.getLogger(__name__)


class ProtocolError(ValueError):
    """Malformed or unsupported client message"""


def decode_message(raw: Union[str, bytes]) -> Dict[str, Any]:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            raise ProtocolError("Message is not valid UTF-8 text")

    try:
        message = json.loads(raw)
    except ValueError as e:
        raise ProtocolError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ProtocolError("Message must be a JSON object")
    return message


def encode_event(event_type: EventType, **payload: Any) -> str:
    return json.dumps({"type": event_type.value, **payload})


def format_validation_error(error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "settings"
        problems.append(f"{location}: {item.get('msg')}")
    return "Invalid scan settings: " + "; ".join(problems)


class ProtocolHandler:
    """Routes decoded commands to the job controller and device discovery"""

    def __init__(self, jobs, discovery):
        self.jobs = jobs
        self.discovery = discovery

    async def handle_message(self, connection, raw: Union[str, bytes]) -> None:
        try:
            message = decode_message(raw)
            await self.dispatch(connection, message)
        except ValidationError as e:
            await connection.send_event(EventType.ERROR, message=format_validation_error(e))
        except (ProtocolError, ScanInProgressError) as e:
            await connection.send_event(EventType.ERROR, message=str(e))
        except Exception as e:
            logger.exception(f"Error processing message from {connection.client_id}: {e}")
            await connection.send_event(EventType.ERROR, message=str(e))

    async def dispatch(self, connection, message: Dict[str, Any]) -> None:
        message_type = message.get("type")
        logger.info(f"Received: {message_type} from {connection.client_id}")

        if not isinstance(message_type, str) or message_type not in CommandType._value2member_map_:
            raise ProtocolError(f"Unknown command: {message_type}")

        command = CommandType(message_type)
        if command is CommandType.DISCOVER:
            await connection.send_event(EventType.DISCOVERING)
            connection.spawn(self._discover(connection))
        elif command is CommandType.SCAN:
            await self._scan(connection, message.get("settings"))
        elif command is CommandType.CANCEL:
            await self.jobs.cancel_scan(connection.client_id)
            await connection.send_event(EventType.CANCELLED)
        elif command is CommandType.PING:
            await connection.send_event(EventType.PONG)

    async def _discover(self, connection) -> None:
        scanners = await self.discovery.discover_scanners()
        await connection.send_event(
            EventType.SCANNERS,
            scanners=[scanner.model_dump() for scanner in scanners],
        )

    async def _scan(self, connection, raw_settings: Any) -> None:
        if raw_settings is None:
            raw_settings = {}
        if not isinstance(raw_settings, dict):
            raise ProtocolError("Scan settings must be a JSON object")

        scan_settings = ScanSettings.model_validate(raw_settings)
        await self.jobs.start_scan(connection.client_id, scan_settings, connection.send_event)

"""
Pydantic schemas for the Scanner Bridge WebSocket protocol
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

TEST_SCANNER_ID = "test:scanner"


class CommandType(str, Enum):
    """Inbound message types"""
    DISCOVER = "discover"
    SCAN = "scan"
    CANCEL = "cancel"
    PING = "ping"


class EventType(str, Enum):
    """Outbound message types"""
    CONNECTED = "connected"
    DISCOVERING = "discovering"
    SCANNERS = "scanners"
    SCANNING = "scanning"
    PROGRESS = "progress"
    SCANNED = "scanned"
    CANCELLED = "cancelled"
    PONG = "pong"
    ERROR = "error"


class JobState(str, Enum):
    """Scan job lifecycle"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED})


class ScanSettings(BaseModel):
    """Settings sent by the client with a ``scan`` command.

    Colour mode and paper size are kept as free strings; unknown values fall back
    to ``Color`` and ``letter`` when the command line is built.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    scanner_id: Optional[str] = Field(None, alias="scannerId", description="SANE device id")
    color_mode: Optional[str] = Field("color", alias="colorMode", description="color, grayscale or bw")
    resolution: float = Field(300, gt=0, le=9600, description="Resolution in DPI")
    paper_size: Optional[str] = Field("letter", alias="paperSize", description="letter, legal, a4 or a3")
    duplex: bool = Field(False, description="Scan both sides (not supported by every backend)")

    @property
    def is_test_device(self) -> bool:
        return self.scanner_id == TEST_SCANNER_ID


class ScannerDevice(BaseModel):
    """Scanner reported by device discovery"""
    id: str
    name: str
    driver: str

    @classmethod
    def from_device_id(cls, device_id: str, description: str) -> "ScannerDevice":
        return cls(id=device_id, name=description.strip(), driver=device_id.split(":", 1)[0])


TEST_SCANNER = ScannerDevice(id=TEST_SCANNER_ID, name="Test Scanner (Development)", driver="test")

"""Process adapter for the SANE ``scanimage`` command.

Builds the command line for a scan request, runs ``scanimage`` as an asyncio
subprocess and turns its output into progress values:

* stdout is only a heartbeat. Every chunk read moves a counter up by
  ``HEARTBEAT_STEP`` until it reaches ``HEARTBEAT_CAP``.
* stderr is split into lines (``scanimage --progress`` separates them with
  carriage returns) and any ``Progress: N%`` line is reported as-is.

Both streams are merged into a single async iterator that finishes once the
process has closed both of them.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import shlex
import time
from pathlib import Path
from typing import AsyncIterator, List, Optional, Tuple, Union

from scanner_bridge.core.config import settings
from scanner_bridge.schemas.scanner import ScanSettings

logger = logging.getLogger(__name__)

# Paper dimensions in millimetres (width, height)
PAPER_DIMENSIONS = {
    "letter": (215.9, 279.4),
    "legal": (215.9, 355.6),
    "a4": (210.0, 297.0),
    "a3": (297.0, 420.0),
}
DEFAULT_PAPER_SIZE = "letter"

COLOR_MODES = {
    "color": "Color",
    "grayscale": "Gray",
    "bw": "Lineart",
}
DEFAULT_COLOR_MODE = "Color"

OUTPUT_FORMAT = "png"

HEARTBEAT_STEP = 10
HEARTBEAT_CAP = 90
PROGRESS_RE = re.compile(r"Progress: (\d+(?:\.\d+)?)%")
LINE_SPLIT_RE = re.compile(r"[\r\n]")
READ_CHUNK_SIZE = 4096


def paper_dimensions(paper_size: Optional[str]) -> Tuple[float, float]:
    """Return (width, height) in mm, falling back to letter for unknown sizes."""
    key = (paper_size or "").strip().lower()
    return PAPER_DIMENSIONS.get(key, PAPER_DIMENSIONS[DEFAULT_PAPER_SIZE])


def scan_mode(color_mode: Optional[str]) -> str:
    key = (color_mode or "").strip().lower()
    return COLOR_MODES.get(key, DEFAULT_COLOR_MODE)


def _format_mm(value: float) -> str:
    return f"{value:g}"


def build_scan_args(scan_settings: ScanSettings, output_file: Union[str, Path]) -> List[str]:
    """Build the ``scanimage`` argument list for a scan request."""
    width, height = paper_dimensions(scan_settings.paper_size)

    args = [
        f"--format={OUTPUT_FORMAT}",
        f"--resolution={scan_settings.resolution:g}",
        "-x", _format_mm(width),
        "-y", _format_mm(height),
        f"--output-file={output_file}",
    ]

    if scan_settings.scanner_id and not scan_settings.is_test_device:
        args.insert(0, f"--device={scan_settings.scanner_id}")

    args.append(f"--mode={scan_mode(scan_settings.color_mode)}")
    return args


def build_output_path(scans_dir: Union[str, Path], client_id: str) -> Path:
    """Return ``<scans_dir>/scan_<client_id>_<epoch millis>.png``."""
    directory = Path(scans_dir)
    directory.mkdir(parents=True, exist_ok=True)
    return directory / f"scan_{client_id}_{int(time.time() * 1000)}.{OUTPUT_FORMAT}"


def parse_progress_line(line: str) -> Optional[int]:
    match = PROGRESS_RE.search(line)
    if not match:
        return None
    return int(float(match.group(1)))


class ScanProcess:
    """A single ``scanimage`` invocation"""

    def __init__(self, args: List[str], binary: Optional[str] = None, spawn=None):
        self.args = list(args)
        self.binary = binary or settings.SCANIMAGE_BINARY
        self.process: Optional[asyncio.subprocess.Process] = None
        self._spawn = spawn or asyncio.create_subprocess_exec
        self._heartbeat = 0

    @property
    def command(self) -> List[str]:
        return [self.binary, *self.args]

    @property
    def command_line(self) -> str:
        return " ".join(shlex.quote(part) for part in self.command)

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode if self.process is not None else None

    async def start(self) -> None:
        """Spawn the process. ``OSError`` propagates when it cannot be started."""
        logger.info(f"Starting scan: {self.command_line}")
        self.process = await self._spawn(
            *self.command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

    async def progress(self) -> AsyncIterator[int]:
        """Yield progress values until stdout and stderr are both closed."""
        if self.process is None:
            raise RuntimeError("Scan process has not been started")

        queue: asyncio.Queue = asyncio.Queue()
        readers = [
            asyncio.create_task(self._read_heartbeat(self.process.stdout, queue)),
            asyncio.create_task(self._read_diagnostics(self.process.stderr, queue)),
        ]
        remaining = len(readers)
        try:
            while remaining:
                value = await queue.get()
                if value is None:
                    remaining -= 1
                    continue
                yield value
        finally:
            for reader in readers:
                reader.cancel()
            await asyncio.gather(*readers, return_exceptions=True)

    async def wait(self) -> int:
        if self.process is None:
            raise RuntimeError("Scan process has not been started")
        return await self.process.wait()

    async def terminate(self, grace: Optional[float] = None) -> Optional[int]:
        """Send SIGTERM, escalate to SIGKILL after ``grace`` seconds.

        Returns the exit code, or None when the process was never started.
        """
        if self.process is None:
            return None
        if self.process.returncode is not None:
            return self.process.returncode

        grace = settings.TERMINATE_GRACE if grace is None else grace
        try:
            self.process.terminate()
        except ProcessLookupError:
            return await self.process.wait()

        try:
            return await asyncio.wait_for(self.process.wait(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning(f"scanimage (pid {self.process.pid}) ignored SIGTERM for {grace}s, killing")
            with contextlib.suppress(ProcessLookupError):
                self.process.kill()
            return await self.process.wait()

    async def _read_heartbeat(self, stream: Optional[asyncio.StreamReader], queue: asyncio.Queue) -> None:
        try:
            if stream is None:
                return
            while True:
                chunk = await stream.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                if self._heartbeat < HEARTBEAT_CAP:
                    self._heartbeat = min(self._heartbeat + HEARTBEAT_STEP, HEARTBEAT_CAP)
                    queue.put_nowait(self._heartbeat)
        finally:
            queue.put_nowait(None)

    async def _read_diagnostics(self, stream: Optional[asyncio.StreamReader], queue: asyncio.Queue) -> None:
        try:
            if stream is None:
                return
            pending = ""
            while True:
                chunk = await stream.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                pending += chunk.decode("utf-8", errors="replace")
                *lines, pending = LINE_SPLIT_RE.split(pending)
                for line in lines:
                    self._handle_diagnostic_line(line, queue)
            if pending:
                self._handle_diagnostic_line(pending, queue)
        finally:
            queue.put_nowait(None)

    def _handle_diagnostic_line(self, line: str, queue: asyncio.Queue) -> None:
        line = line.strip()
        if not line:
            return
        logger.debug(f"Scanner output: {line}")
        value = parse_progress_line(line)
        if value is not None:
            queue.put_nowait(value)

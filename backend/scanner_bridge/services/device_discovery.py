"""Device Discovery Service"""
import asyncio
import contextlib
import logging
import re
from typing import List, Optional

from scanner_bridge.core.config import settings
from scanner_bridge.schemas.scanner import TEST_SCANNER, ScannerDevice

logger = logging.getLogger(__name__)

# device `epson2:libusb:001:004' is a Epson GT-1500 flatbed scanner
DEVICE_LINE_RE = re.compile(r"device [`']([^']+)' is a (.+)")


def parse_scanner_list(output: str) -> List[ScannerDevice]:
    """Parse ``scanimage -L`` output into scanner descriptors."""
    scanners = []
    for line in output.splitlines():
        match = DEVICE_LINE_RE.search(line)
        if match:
            scanners.append(ScannerDevice.from_device_id(match.group(1), match.group(2)))
    return scanners


class DeviceDiscovery:
    """Lists SANE scanners attached to the host"""

    def __init__(
        self,
        binary: Optional[str] = None,
        timeout: Optional[float] = None,
        production: Optional[bool] = None,
        spawn=None,
    ):
        self.binary = binary or settings.SCANIMAGE_BINARY
        self.timeout = settings.DISCOVERY_TIMEOUT if timeout is None else timeout
        self.production = settings.is_production if production is None else production
        self._spawn = spawn or asyncio.create_subprocess_exec

    async def discover_scanners(self) -> List[ScannerDevice]:
        """Discover connected scanners.

        Failures are logged and produce an empty list. Outside production an
        empty list is replaced by the built-in test scanner.
        """
        output = await self._list_devices()
        scanners = parse_scanner_list(output)

        if not scanners and not self.production:
            scanners.append(TEST_SCANNER.model_copy())

        logger.info(f"Found {len(scanners)} scanner(s)")
        return scanners

    async def _list_devices(self) -> str:
        try:
            process = await self._spawn(
                self.binary,
                "-L",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"Scanner discovery error: unable to run {self.binary}: {e}")
            return ""

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"Scanner discovery timed out after {self.timeout}s")
            return ""
        finally:
            # Timed out or cancelled while scanimage was still listing
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        if process.returncode != 0:
            # scanimage may still list some devices before failing
            logger.error(
                f"Scanner discovery error (exit code {process.returncode}): "
                f"{stderr.decode('utf-8', errors='replace').strip()}"
            )
        return stdout.decode("utf-8", errors="replace")


device_discovery = DeviceDiscovery()

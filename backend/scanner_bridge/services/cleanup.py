"""Delayed removal of temporary scan files"""
import asyncio
import logging
from pathlib import Path
from typing import Dict, Optional, Union

from scanner_bridge.core.config import settings

logger = logging.getLogger(__name__)


def remove_file(path: Union[str, Path]) -> bool:
    """Delete ``path`` if it still exists. Returns True when a file was removed."""
    try:
        Path(path).unlink()
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.error(f"Failed to remove scan file {path}: {e}")
        return False
    logger.debug(f"Removed scan file {path}")
    return True


class CleanupScheduler:
    """Deletes delivered scan files after a grace period"""

    def __init__(self, delay: Optional[float] = None):
        self.delay = settings.CLEANUP_DELAY if delay is None else delay
        self._pending: Dict[Path, asyncio.Task] = {}

    @property
    def pending(self) -> int:
        return len(self._pending)

    def schedule(self, path: Union[str, Path], delay: Optional[float] = None) -> asyncio.Task:
        """Remove ``path`` after ``delay`` seconds (defaults to the configured delay)."""
        path = Path(path)
        existing = self._pending.pop(path, None)
        if existing is not None:
            existing.cancel()

        task = asyncio.create_task(self._remove_later(path, self.delay if delay is None else delay))
        self._pending[path] = task
        return task

    async def _remove_later(self, path: Path, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            remove_file(path)
        finally:
            if self._pending.get(path) is asyncio.current_task():
                del self._pending[path]

    async def shutdown(self) -> None:
        """Cancel pending timers and remove their files immediately."""
        pending = list(self._pending.items())
        self._pending.clear()
        for path, task in pending:
            task.cancel()
        await asyncio.gather(*(task for _, task in pending), return_exceptions=True)
        for path, _ in pending:
            remove_file(path)
        if pending:
            logger.info(f"Removed {len(pending)} pending scan file(s) on shutdown")


cleanup_scheduler = CleanupScheduler()

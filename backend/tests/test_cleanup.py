import asyncio
import os
import sys
import tempfile
import unittest
from pathlib import Path

# Ensure the backend directory is on the import path
CURRENT_DIR = os.path.dirname(os.path.abspath(__file__))
BACKEND_DIR = os.path.abspath(os.path.join(CURRENT_DIR, ".."))
if BACKEND_DIR not in sys.path:
    sys.path.insert(0, BACKEND_DIR)

from scanner_bridge.services.cleanup import CleanupScheduler, remove_file  # noqa: E402


class CleanupSchedulerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.scan_file = Path(tmp.name) / "scan_client_1.png"
        self.scan_file.write_bytes(b"PNGDATA")

    async def test_file_removed_after_delay(self):
        scheduler = CleanupScheduler(delay=0.05)

        task = scheduler.schedule(self.scan_file)
        self.assertTrue(self.scan_file.exists())
        self.assertEqual(scheduler.pending, 1)

        await task

        self.assertFalse(self.scan_file.exists())
        self.assertEqual(scheduler.pending, 0)

    async def test_already_deleted_file_is_not_an_error(self):
        scheduler = CleanupScheduler(delay=0.01)
        self.scan_file.unlink()

        await scheduler.schedule(self.scan_file)

        self.assertFalse(remove_file(self.scan_file))

    async def test_rescheduling_replaces_pending_timer(self):
        scheduler = CleanupScheduler(delay=60)

        first = scheduler.schedule(self.scan_file)
        second = scheduler.schedule(self.scan_file, delay=0.01)
        await second
        await asyncio.sleep(0)

        self.assertTrue(first.cancelled())
        self.assertFalse(self.scan_file.exists())
        self.assertEqual(scheduler.pending, 0)

    async def test_shutdown_flushes_pending_files(self):
        scheduler = CleanupScheduler(delay=60)
        scheduler.schedule(self.scan_file)

        await scheduler.shutdown()

        self.assertFalse(self.scan_file.exists())
        self.assertEqual(scheduler.pending, 0)


if __name__ == "__main__":
    unittest.main()

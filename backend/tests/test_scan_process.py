import os
import sys
import tempfile
import unittest
from pathlib import Path

from pydantic import ValidationError

# Ensure the backend directory is on the import path
CURRENT_DIR = os.path.dirname(os.path.abspath(__file__))
BACKEND_DIR = os.path.abspath(os.path.join(CURRENT_DIR, ".."))
for path in (BACKEND_DIR, CURRENT_DIR):
    if path not in sys.path:
        sys.path.insert(0, path)

from fake_process import FakeProcess, FakeSpawn  # noqa: E402
from scanner_bridge.schemas.scanner import ScanSettings  # noqa: E402
from scanner_bridge.services.scan_process import (  # noqa: E402
    ScanProcess,
    build_output_path,
    build_scan_args,
    paper_dimensions,
    parse_progress_line,
    scan_mode,
)


class BuildScanArgsTests(unittest.TestCase):
    def test_a4_dimensions_and_device(self):
        scan_settings = ScanSettings(scannerId="epson2:libusb:001:004", paperSize="a4", resolution=600)

        args = build_scan_args(scan_settings, "/tmp/scans/out.png")

        self.assertEqual(
            args,
            [
                "--device=epson2:libusb:001:004",
                "--format=png",
                "--resolution=600",
                "-x", "210",
                "-y", "297",
                "--output-file=/tmp/scans/out.png",
                "--mode=Color",
            ],
        )

    def test_fractional_resolution_is_passed_through(self):
        args = build_scan_args(ScanSettings(resolution=299.5), "out.png")
        self.assertIn("--resolution=299.5", args)

        with self.assertRaises(ValidationError):
            ScanSettings(resolution=0)

    def test_unknown_paper_size_falls_back_to_letter(self):
        args = build_scan_args(ScanSettings(paperSize="tabloid"), "out.png")

        self.assertEqual(args[args.index("-x") + 1], "215.9")
        self.assertEqual(args[args.index("-y") + 1], "279.4")
        self.assertEqual(paper_dimensions(None), (215.9, 279.4))
        self.assertEqual(paper_dimensions("LEGAL"), (215.9, 355.6))
        self.assertEqual(paper_dimensions("a3"), (297.0, 420.0))

    def test_device_omitted_for_default_and_test_scanner(self):
        for scanner_id in (None, "", "test:scanner"):
            args = build_scan_args(ScanSettings(scannerId=scanner_id), "out.png")
            self.assertFalse(any(arg.startswith("--device=") for arg in args), scanner_id)

    def test_color_mode_mapping(self):
        self.assertEqual(scan_mode("color"), "Color")
        self.assertEqual(scan_mode("grayscale"), "Gray")
        self.assertEqual(scan_mode("bw"), "Lineart")
        self.assertEqual(scan_mode("sepia"), "Color")
        self.assertEqual(scan_mode(None), "Color")
        args = build_scan_args(ScanSettings(colorMode="bw"), "out.png")
        self.assertEqual(args[-1], "--mode=Lineart")

    def test_output_path_layout(self):
        with tempfile.TemporaryDirectory() as tmp:
            scans_dir = Path(tmp) / "scans"
            path = build_output_path(scans_dir, "client-1")

            self.assertTrue(scans_dir.is_dir())
            self.assertEqual(path.parent, scans_dir)
            self.assertRegex(path.name, r"^scan_client-1_\d{13}\.png$")

    def test_progress_line_parsing(self):
        self.assertEqual(parse_progress_line("Progress: 42%"), 42)
        self.assertEqual(parse_progress_line("Progress: 12.7%"), 12)
        self.assertIsNone(parse_progress_line("Scanning page 1"))


class ScanProcessTests(unittest.IsolatedAsyncioTestCase):
    async def collect(self, process):
        return [value async for value in process.progress()]

    async def test_spawns_binary_with_args(self):
        spawn = FakeSpawn()
        process = ScanProcess(["--format=png"], binary="/usr/bin/scanimage", spawn=spawn)

        await process.start()
        await self.collect(process)

        self.assertEqual(spawn.calls, [("/usr/bin/scanimage", "--format=png")])
        self.assertEqual(await process.wait(), 0)

    async def test_stdout_heartbeat_is_capped_at_90(self):
        chunks = [b"x" * 16] * 12
        process = ScanProcess([], spawn=FakeSpawn(lambda command: FakeProcess(stdout=chunks)))

        await process.start()
        values = await self.collect(process)

        self.assertEqual(values, [10, 20, 30, 40, 50, 60, 70, 80, 90])

    async def test_stderr_progress_lines(self):
        stderr = [b"Progress: 12.5%\r", b"Progress: 55.0%\rProgress: 80", b".1%\nscanimage: done\n"]
        process = ScanProcess([], spawn=FakeSpawn(lambda command: FakeProcess(stderr=stderr)))

        await process.start()
        values = await self.collect(process)

        self.assertEqual(values, [12, 55, 80])

    async def test_streams_are_merged(self):
        process = ScanProcess(
            [],
            spawn=FakeSpawn(
                lambda command: FakeProcess(stdout=[b"a", b"b"], stderr=[b"Progress: 35%\n"])
            ),
        )

        await process.start()
        values = await self.collect(process)

        self.assertEqual(sorted(values), [10, 20, 35])

    async def test_terminate_waits_for_exit(self):
        spawn = FakeSpawn(lambda command: FakeProcess(hang=True))
        process = ScanProcess([], spawn=spawn)
        await process.start()

        code = await process.terminate(grace=1)

        self.assertEqual(code, -15)
        self.assertEqual(spawn.processes[0].signals, ["SIGTERM"])

    async def test_terminate_escalates_to_kill(self):
        spawn = FakeSpawn(lambda command: FakeProcess(hang=True, ignore_sigterm=True))
        process = ScanProcess([], spawn=spawn)
        await process.start()

        code = await process.terminate(grace=0.05)

        self.assertEqual(code, -9)
        self.assertEqual(spawn.processes[0].signals, ["SIGTERM", "SIGKILL"])

    async def test_terminate_is_noop_when_not_running(self):
        process = ScanProcess([], spawn=FakeSpawn())
        self.assertIsNone(await process.terminate(grace=0.05))

        await process.start()
        await self.collect(process)
        await process.wait()

        self.assertEqual(await process.terminate(grace=0.05), 0)
        self.assertEqual(process.process.signals, [])

    async def test_spawn_failure_propagates(self):
        process = ScanProcess([], spawn=FakeSpawn(error=FileNotFoundError("scanimage")))

        with self.assertRaises(OSError):
            await process.start()


if __name__ == "__main__":
    unittest.main()

"""
Scan Job Controller
Owns the per-connection job registry and drives each scan job through its
lifecycle: pending -> running -> completed | failed | cancelled
"""
import asyncio
import base64
import logging
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Union

from scanner_bridge.core.config import settings
from scanner_bridge.schemas.scanner import EventType, JobState, ScanSettings, TERMINAL_STATES
from scanner_bridge.services.cleanup import CleanupScheduler, cleanup_scheduler, remove_file
from scanner_bridge.services.scan_process import ScanProcess, build_output_path, build_scan_args

logger = logging.getLogger(__name__)

EmitFn = Callable[..., Awaitable[None]]

# 1x1 grey PNG returned by the test scanner
PLACEHOLDER_IMAGE = (
    "data:image/png;base64,"
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)
TEST_SCAN_FILENAME = "test_scan.png"
SIMULATION_STEPS = range(0, 101, 10)


class ScanInProgressError(Exception):
    """Raised when a client already owns an active scan job"""


class ScanJob:
    """One scan request from acceptance to its terminal event.

    Every event for the job goes through this object, which guarantees that
    progress never decreases and that at most one terminal event is sent.
    """

    def __init__(
        self,
        client_id: str,
        scan_settings: ScanSettings,
        output_file: Path,
        backend: "JobBackend",
        emit: EmitFn,
    ):
        self.client_id = client_id
        self.settings = scan_settings
        self.output_file = output_file
        self.backend = backend
        self.state = JobState.PENDING
        self.progress = 0
        self.created_at = datetime.utcnow()
        self.finished_at: Optional[datetime] = None
        self.task: Optional[asyncio.Task] = None
        self._emit = emit

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def start(self) -> None:
        if self.state is JobState.PENDING:
            self.state = JobState.RUNNING

    async def report_progress(self, value: Union[int, float]) -> None:
        if self.finished:
            return
        value = max(0, min(100, int(value)))
        if value < self.progress:
            return
        self.progress = value
        await self._emit(EventType.PROGRESS, progress=value)

    async def complete(self, image: str, filename: str) -> bool:
        if not self._finish(JobState.COMPLETED):
            return False
        self.progress = 100
        logger.info(f"Scan complete for client {self.client_id}: {filename}")
        await self._emit(EventType.SCANNED, image=image, filename=filename)
        return True

    async def fail(self, message: str) -> bool:
        if not self._finish(JobState.FAILED):
            return False
        logger.error(f"Scan failed for client {self.client_id}: {message}")
        await self._emit(EventType.ERROR, message=message)
        return True

    def mark_cancelled(self) -> bool:
        return self._finish(JobState.CANCELLED)

    def _finish(self, state: JobState) -> bool:
        if self.finished:
            return False
        self.state = state
        self.finished_at = datetime.utcnow()
        return True


class JobBackend:
    """Strategy that produces the events of a scan job"""

    kind = "base"

    async def run(self, job: ScanJob) -> None:
        raise NotImplementedError

    async def stop(self) -> None:
        """Release anything the backend still holds. Must be safe to call twice."""


class SimulatedBackend(JobBackend):
    """Fake scanner used when no hardware is attached"""

    kind = "simulated"

    def __init__(self, step_delay: Optional[float] = None):
        self.step_delay = settings.SIMULATION_STEP_DELAY if step_delay is None else step_delay

    async def run(self, job: ScanJob) -> None:
        for value in SIMULATION_STEPS:
            await asyncio.sleep(self.step_delay)
            await job.report_progress(value)
        await job.complete(PLACEHOLDER_IMAGE, TEST_SCAN_FILENAME)


class ProcessBackend(JobBackend):
    """Runs ``scanimage`` and delivers the resulting image"""

    kind = "process"

    def __init__(
        self,
        process: ScanProcess,
        cleanup: CleanupScheduler,
        terminate_grace: Optional[float] = None,
    ):
        self.process = process
        self.cleanup = cleanup
        self.terminate_grace = settings.TERMINATE_GRACE if terminate_grace is None else terminate_grace

    async def run(self, job: ScanJob) -> None:
        try:
            await self.process.start()
        except OSError as e:
            logger.error(f"Scan process error: {e}")
            await job.fail(f"Scanner error: {e}")
            return

        async for value in self.process.progress():
            await job.report_progress(value)

        code = await self.process.wait()
        output_file = job.output_file

        if code == 0 and output_file.exists():
            image_data = await asyncio.to_thread(output_file.read_bytes)
            encoded = base64.b64encode(image_data).decode("ascii")
            await job.report_progress(100)
            if await job.complete(f"data:image/png;base64,{encoded}", output_file.name):
                # Give slow clients time to fetch the image before it disappears
                self.cleanup.schedule(output_file)
            else:
                remove_file(output_file)
        else:
            await job.fail(f"Scan failed with exit code {code}")
            remove_file(output_file)

    async def stop(self) -> None:
        await self.process.terminate(self.terminate_grace)


class JobRegistry:
    """Active scan jobs keyed by client id, at most one per client"""

    def __init__(self):
        self._jobs: Dict[str, ScanJob] = {}

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, client_id: str) -> bool:
        return client_id in self._jobs

    def get(self, client_id: str) -> Optional[ScanJob]:
        return self._jobs.get(client_id)

    def add(self, job: ScanJob) -> None:
        if job.client_id in self._jobs:
            raise ScanInProgressError(f"Client {job.client_id} already has an active scan")
        self._jobs[job.client_id] = job

    def discard(self, job: ScanJob) -> bool:
        """Remove ``job`` if it is still the registered job for its client."""
        if self._jobs.get(job.client_id) is job:
            del self._jobs[job.client_id]
            return True
        return False

    def client_ids(self) -> List[str]:
        return list(self._jobs)

    def clear(self) -> None:
        self._jobs.clear()


class JobController:
    """Starts, supervises and cancels scan jobs"""

    def __init__(
        self,
        registry: Optional[JobRegistry] = None,
        cleanup: Optional[CleanupScheduler] = None,
        scans_dir: Optional[Union[str, Path]] = None,
        scanner_binary: Optional[str] = None,
        scan_timeout: Optional[float] = None,
        terminate_grace: Optional[float] = None,
        simulation_delay: Optional[float] = None,
        spawn=None,
    ):
        self.registry = registry or JobRegistry()
        self.cleanup = cleanup or cleanup_scheduler
        self.scans_dir = Path(scans_dir or settings.SCANS_DIR)
        self.scanner_binary = scanner_binary or settings.SCANIMAGE_BINARY
        self.scan_timeout = settings.SCAN_TIMEOUT if scan_timeout is None else scan_timeout
        self.terminate_grace = settings.TERMINATE_GRACE if terminate_grace is None else terminate_grace
        self.simulation_delay = settings.SIMULATION_STEP_DELAY if simulation_delay is None else simulation_delay
        self._spawn = spawn

    @property
    def active_jobs(self) -> int:
        return len(self.registry)

    def get_job(self, client_id: str) -> Optional[ScanJob]:
        return self.registry.get(client_id)

    def _create_backend(self, scan_settings: ScanSettings, output_file: Path) -> JobBackend:
        if scan_settings.is_test_device:
            return SimulatedBackend(self.simulation_delay)

        process = ScanProcess(
            build_scan_args(scan_settings, output_file),
            binary=self.scanner_binary,
            spawn=self._spawn,
        )
        return ProcessBackend(process, self.cleanup, self.terminate_grace)

    async def start_scan(self, client_id: str, scan_settings: ScanSettings, emit: EmitFn) -> ScanJob:
        """
        Register and start a scan job for a client

        Args:
            client_id: Connection the job belongs to
            scan_settings: Validated scan settings
            emit: Coroutine used to send events to the client

        Returns:
            The running ScanJob

        Raises:
            ScanInProgressError: the client already has a job that has not finished
        """
        if client_id in self.registry:
            raise ScanInProgressError("A scan is already in progress")

        output_file = build_output_path(self.scans_dir, client_id)
        backend = self._create_backend(scan_settings, output_file)
        job = ScanJob(client_id, scan_settings, output_file, backend, emit)
        self.registry.add(job)

        if scan_settings.duplex:
            logger.info(f"Duplex requested by client {client_id}; scanimage is run in simplex mode")

        logger.info(f"Scan job for client {client_id} using {backend.kind} backend")
        try:
            await emit(EventType.SCANNING, message="Scan started...")
        except Exception:
            self.registry.discard(job)
            raise

        job.task = asyncio.create_task(self._run(job))
        return job

    async def _run(self, job: ScanJob) -> None:
        job.start()
        try:
            if self.scan_timeout and self.scan_timeout > 0:
                await asyncio.wait_for(job.backend.run(job), timeout=self.scan_timeout)
            else:
                await job.backend.run(job)
        except asyncio.TimeoutError:
            logger.error(f"Scan for client {job.client_id} exceeded {self.scan_timeout}s")
            await job.backend.stop()
            remove_file(job.output_file)
            await job.fail(f"Scan timed out after {self.scan_timeout:g} seconds")
        except Exception as e:
            logger.exception(f"Error running scan for client {job.client_id}: {e}")
            await job.backend.stop()
            remove_file(job.output_file)
            await job.fail(f"Scanner error: {e}")
        finally:
            # cancel_scan releases cancelled jobs once the process is gone
            if job.state is not JobState.CANCELLED:
                self.registry.discard(job)

    async def cancel_scan(self, client_id: str) -> bool:
        """
        Cancel the active job of a client

        The scanner process is signalled first, then the job task is stopped.
        The registry slot is released last, even if this call is interrupted.

        Returns:
            True if the client had a job
        """
        job = self.registry.get(client_id)
        if job is None:
            return False

        cancelled = job.mark_cancelled()
        try:
            await job.backend.stop()
            if job.task is not None and not job.task.done() and job.task is not asyncio.current_task():
                job.task.cancel()
                await asyncio.wait({job.task})
            # The task may have spawned the process after the first stop
            await job.backend.stop()
            if cancelled:
                remove_file(job.output_file)
        finally:
            self.registry.discard(job)

        logger.info(f"Scan cancelled for client: {client_id}")
        return True

    async def shutdown(self) -> None:
        """Cancel every active job"""
        client_ids = self.registry.client_ids()
        for client_id in client_ids:
            try:
                await self.cancel_scan(client_id)
            except Exception as e:
                logger.error(f"Failed to cancel scan for client {client_id}: {e}")
        self.registry.clear()
        if client_ids:
            logger.info(f"Cancelled {len(client_ids)} active scan(s)")


job_controller = JobController()

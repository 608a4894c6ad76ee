"""
Backfill job controller: start, pause, status and list.

Every operation returns a ControllerResult and never raises. Runs are
launched on background daemon threads; ``start`` returns as soon as the
job record is queued.
"""

import threading
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from .backfill import BackfillEngine
from .database import RESUMABLE_STATUSES, BackfillStatus
from .logger import StructuredLogger, get_logger
from .schema import validate_backfill_request
from .storage import JobStore

Launcher = Callable[[str], bool]


@dataclass
class ControllerResult:
    success: bool
    message: str
    job_id: Optional[str] = None
    status: Optional[str] = None
    action: Optional[str] = None
    job: Optional[Dict[str, Any]] = None
    jobs: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "success": self.success,
            "message": self.message,
            "job_id": self.job_id,
            "status": self.status,
            "action": self.action,
        }
        if self.job is not None:
            data["job"] = self.job
        if self.jobs:
            data["jobs"] = self.jobs
        return data


class BackfillController:
    """Public entry points in front of the backfill engine.

    ``launcher`` receives a job id and must start the run without
    blocking. It returns False when a run for that job is already in
    flight and nothing new was started. By default each run gets its own
    daemon thread.
    """

    def __init__(
        self,
        job_store: JobStore,
        engine: BackfillEngine,
        logger: Optional[StructuredLogger] = None,
        launcher: Optional[Launcher] = None,
    ):
        self.job_store = job_store
        self.engine = engine
        self.logger = logger or get_logger()
        self._launch = launcher or self._launch_thread
        self._workers: Dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    def start(self, range_start: date, range_end: date, token_scope: int) -> ControllerResult:
        """Create a job for the window, or resume the existing one."""
        errors = validate_backfill_request(range_start, range_end, token_scope)
        if errors:
            return ControllerResult(success=False, message="; ".join(errors), action="rejected")

        try:
            existing = self.job_store.find_job_by_window(range_start, range_end, token_scope)
            if existing is None:
                try:
                    job = self.job_store.create_job(range_start, range_end, token_scope)
                except IntegrityError:
                    # Another caller created this window between lookup and insert.
                    existing = self.job_store.find_job_by_window(range_start, range_end, token_scope)
                    if existing is None:
                        raise
                else:
                    self.logger.info(
                        "Backfill job created",
                        job_id=job.id,
                        date_range_start=range_start.isoformat(),
                        date_range_end=range_end.isoformat(),
                        token_scope=token_scope,
                    )
                    self._launch(job.id)
                    return ControllerResult(
                        success=True,
                        message="Backfill started",
                        job_id=job.id,
                        status=BackfillStatus.QUEUED.value,
                        action="started",
                    )

            return self._start_existing(existing)
        except Exception as e:
            self.logger.error("Backfill start failed", error=str(e),
                              date_range_start=str(range_start), date_range_end=str(range_end))
            return ControllerResult(success=False, message=f"Failed to start backfill: {e}", action="error")

    def _start_existing(self, job, retry: bool = True) -> ControllerResult:
        if job.status == BackfillStatus.COMPLETE:
            self.logger.info("Backfill already complete", job_id=job.id)
            return ControllerResult(success=True, message="Backfill already completed", job_id=job.id,
                                    status=job.status.value, action="already_complete")

        if job.status == BackfillStatus.RUNNING:
            self.logger.info("Backfill already running", job_id=job.id)
            return self._already_running(job.id, job.status)

        if job.status == BackfillStatus.QUEUED:
            # A queued job with no worker here was orphaned (crash before the run began).
            if self._launch(job.id):
                self.logger.warning("Relaunching orphaned queued backfill", job_id=job.id)
                return ControllerResult(success=True, message="Backfill resumed", job_id=job.id,
                                        status=job.status.value, action="resumed")
            self.logger.info("Backfill already queued", job_id=job.id)
            return ControllerResult(success=True, message="Backfill already queued", job_id=job.id,
                                    status=job.status.value, action="already_queued")

        if job.status in RESUMABLE_STATUSES:
            if not self.job_store.transition_job(job.id, RESUMABLE_STATUSES, BackfillStatus.QUEUED):
                # Status changed underneath us; decide again on the fresh record.
                fresh = self.job_store.find_job_by_id(job.id)
                if retry and fresh is not None:
                    return self._start_existing(fresh, retry=False)
                return ControllerResult(success=False, message="Backfill status changed, try again",
                                        job_id=job.id, action="error")

            self.logger.info("Resuming backfill job", job_id=job.id, previous_status=job.status.value)
            if not self._launch(job.id):
                # The previous run is still winding down and picks the job back up itself.
                return self._already_running(job.id, BackfillStatus.QUEUED)
            return ControllerResult(success=True, message="Backfill resumed", job_id=job.id,
                                    status=BackfillStatus.QUEUED.value, action="resumed")

        return ControllerResult(success=False, message=f"Unknown job status: {job.status}",
                                job_id=job.id, action="rejected")

    @staticmethod
    def _already_running(job_id: str, status: BackfillStatus) -> ControllerResult:
        return ControllerResult(success=True, message="Backfill already in progress", job_id=job_id,
                                status=status.value, action="already_running")

    def pause(self, job_id: str) -> ControllerResult:
        """Request a cooperative pause; it takes effect at the next token boundary."""
        try:
            job = self.job_store.find_job_by_id(job_id)
            if job is None:
                return ControllerResult(success=False, message="Job not found", job_id=job_id, action="rejected")

            if job.status != BackfillStatus.RUNNING:
                return self._cannot_pause(job_id, job.status)

            if not self.job_store.transition_job(job_id, [BackfillStatus.RUNNING], BackfillStatus.PAUSED):
                # The run finished (or was paused) between the read and the write.
                current = self.job_store.get_job(job_id)
                return self._cannot_pause(job_id, current.status)

            self.logger.info("Backfill pause requested", job_id=job_id)
            return ControllerResult(
                success=True,
                message="Pause requested; job will stop after current token",
                job_id=job_id,
                status=BackfillStatus.PAUSED.value,
                action="pause_requested",
            )
        except Exception as e:
            self.logger.error("Backfill pause failed", job_id=job_id, error=str(e))
            return ControllerResult(success=False, message=f"Failed to pause backfill: {e}",
                                    job_id=job_id, action="error")

    @staticmethod
    def _cannot_pause(job_id: str, status: BackfillStatus) -> ControllerResult:
        return ControllerResult(
            success=False,
            message=f"Cannot pause job with status: {status.value}",
            job_id=job_id,
            status=status.value,
            action="rejected",
        )

    def status(self, job_id: str) -> ControllerResult:
        try:
            job = self.job_store.find_job_by_id(job_id)
        except Exception as e:
            self.logger.error("Backfill status lookup failed", job_id=job_id, error=str(e))
            return ControllerResult(success=False, message=f"Failed to load backfill job: {e}",
                                    job_id=job_id, action="error")
        if job is None:
            return ControllerResult(success=False, message="Job not found", job_id=job_id, action="rejected")
        return ControllerResult(success=True, message="OK", job_id=job.id, status=job.status.value,
                                job=job.to_dict())

    def list_jobs(self) -> ControllerResult:
        try:
            jobs = self.job_store.list_jobs()
        except Exception as e:
            self.logger.error("Backfill job listing failed", error=str(e))
            return ControllerResult(success=False, message=f"Failed to list backfill jobs: {e}", action="error")
        return ControllerResult(success=True, message=f"{len(jobs)} job(s)", jobs=[job.to_dict() for job in jobs])

    def wait(self, job_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the job's background run ends. Returns False on timeout."""
        with self._lock:
            worker = self._workers.get(job_id)
        if worker is None:
            return True
        worker.join(timeout)
        return not worker.is_alive()

    def run_safely(self, job_id: str) -> None:
        """
        Run a job, logging and containing any error the engine raises.

        A job resumed while its run was stopping at a pause is run again
        on the same worker.
        """
        try:
            while True:
                result = self.engine.run(job_id)
                self.logger.info("Background backfill completed", job_id=job_id, status=result.status.value)
                if not self._rerun_requested(job_id, result):
                    break
                self.logger.info("Backfill resumed while stopping; running again", job_id=job_id)
        except Exception as e:
            self.logger.critical("Background backfill aborted", job_id=job_id,
                                 error_type=type(e).__name__, error=str(e))
            self._park_aborted_job(job_id)
            with self._lock:
                self._workers.pop(job_id, None)

    def _rerun_requested(self, job_id: str, result) -> bool:
        # Deregistering under the lock means start() either sees this worker
        # (and leaves the QUEUED job to it) or launches a fresh one.
        with self._lock:
            if result.status == BackfillStatus.PAUSED:
                current = self.job_store.find_job_by_id(job_id)
                if current is not None and current.status == BackfillStatus.QUEUED:
                    return True
            self._workers.pop(job_id, None)
            return False

    def _park_aborted_job(self, job_id: str) -> None:
        # PAUSED keeps the job resumable through start(); FAILED only follows a full pass.
        try:
            self.job_store.transition_job(
                job_id, [BackfillStatus.QUEUED, BackfillStatus.RUNNING], BackfillStatus.PAUSED
            )
        except Exception as e:
            self.logger.critical("Could not park aborted backfill job", job_id=job_id, error=str(e))

    def _launch_thread(self, job_id: str) -> bool:
        with self._lock:
            if job_id in self._workers:
                self.logger.info("Backfill worker already registered", job_id=job_id)
                return False
            worker = threading.Thread(
                target=self.run_safely,
                args=(job_id,),
                name=f"backfill-{job_id[:8]}",
                daemon=True,
            )
            self._workers[job_id] = worker
        worker.start()
        return True

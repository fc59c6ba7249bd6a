"""Background job processing for SiteFoundry.

Long-running ingestion runs (whole sitemaps) execute as asyncio tasks
tracked by an in-memory ``JobManager``. Every job owns a
``CancellationToken`` so it can be stopped over the API.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Any
from dataclasses import dataclass, asdict, field

from services.shared.concurrency import CancellationToken

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """Job status enumeration."""
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {JobStatus.DONE, JobStatus.FAILED, JobStatus.CANCELLED}

DEFAULT_RETENTION = timedelta(days=7)
DEFAULT_MAX_FINISHED_JOBS = 1000


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class JobRecord:
    """Job record for tracking job state."""
    id: str
    type: str
    status: JobStatus
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    def add_log(self, message: str):
        """Add a log message with timestamp."""
        self.logs.append(f"[{_now().isoformat()}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data['status'] = self.status.value
        for name in ('created_at', 'started_at', 'completed_at'):
            if data[name]:
                data[name] = data[name].isoformat()
        return data


JobHandler = Callable[[JobRecord, CancellationToken], Awaitable[Optional[Dict[str, Any]]]]


class JobManager:
    """Runs registered job handlers as asyncio tasks.

    Finished records are kept for ``retention`` and at most
    ``max_finished_jobs`` of them are held; older ones are evicted.
    """

    def __init__(self, retention: timedelta = DEFAULT_RETENTION,
                 max_finished_jobs: int = DEFAULT_MAX_FINISHED_JOBS):
        self.retention = retention
        self.max_finished_jobs = max_finished_jobs
        self.job_handlers: Dict[str, JobHandler] = {}
        self._jobs: Dict[str, JobRecord] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._tokens: Dict[str, CancellationToken] = {}

    def register_handler(self, job_type: str, handler: JobHandler):
        """Register a job handler coroutine function."""
        self.job_handlers[job_type] = handler
        logger.info(f"Registered handler for job type: {job_type}")

    async def enqueue_job(self, job_type: str, parameters: Optional[Dict[str, Any]] = None) -> str:
        """Create a job and start it in the background."""
        if job_type not in self.job_handlers:
            raise ValueError(f"No handler registered for job type: {job_type}")

        job_id = str(uuid.uuid4())
        record = JobRecord(
            id=job_id,
            type=job_type,
            status=JobStatus.QUEUED,
            created_at=_now(),
            parameters=parameters or {}
        )
        record.add_log("Job queued")
        self._jobs[job_id] = record
        self._evict_finished()
        self._tokens[job_id] = CancellationToken()
        self._tasks[job_id] = asyncio.create_task(self._execute_job(job_id))

        logger.info(f"Enqueued job {job_id} of type {job_type}")
        return job_id

    async def get_job_status(self, job_id: str) -> Optional[JobRecord]:
        return self._jobs.get(job_id)

    async def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> List[JobRecord]:
        """List jobs newest first, optionally filtered by status."""
        jobs = [job for job in self._jobs.values() if status is None or job.status == status]
        jobs.sort(key=lambda x: x.created_at, reverse=True)
        return jobs[:limit]

    async def cancel_job(self, job_id: str) -> Optional[JobRecord]:
        """Request cancellation. Returns None for an unknown job.

        The job keeps running until its handler observes the token and
        returns its partial result.
        """
        record = self._jobs.get(job_id)
        if record is None:
            return None
        if record.status in TERMINAL_STATUSES:
            return record
        token = self._tokens.get(job_id)
        if token is not None:
            token.cancel(f"job {job_id} cancelled by request")
        record.add_log("Cancellation requested")
        return record

    async def wait_for(self, job_id: str) -> Optional[JobRecord]:
        """Wait until a job finishes."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self._jobs.get(job_id)

    async def _execute_job(self, job_id: str):
        record = self._jobs[job_id]
        token = self._tokens[job_id]
        handler = self.job_handlers[record.type]

        record.status = JobStatus.RUNNING
        record.started_at = _now()
        record.add_log("Job started")

        try:
            record.result = await handler(record, token)
            if token.cancelled:
                record.status = JobStatus.CANCELLED
                record.add_log("Job cancelled")
            else:
                record.status = JobStatus.DONE
                record.add_log("Job completed successfully")
        except asyncio.CancelledError:
            record.status = JobStatus.CANCELLED
            record.add_log("Job task cancelled")
            raise
        except Exception as e:
            record.status = JobStatus.FAILED
            record.error = str(e)
            record.add_log(f"Job failed: {e}")
            logger.error(f"Job {job_id} failed: {e}")
        finally:
            record.completed_at = _now()
            self._tasks.pop(job_id, None)
            self._tokens.pop(job_id, None)

    def _evict_finished(self):
        """Drop finished records past retention, then the oldest over the cap."""
        finished = sorted(
            (job for job in self._jobs.values() if job.status in TERMINAL_STATUSES and job.completed_at),
            key=lambda job: job.completed_at
        )
        cutoff = _now() - self.retention
        overflow = len(finished) - self.max_finished_jobs
        for position, job in enumerate(finished):
            if job.completed_at < cutoff or position < overflow:
                del self._jobs[job.id]
                logger.debug(f"Evicted finished job {job.id}")

    async def shutdown(self):
        """Cancel running jobs and wait for their tasks to end."""
        for token in self._tokens.values():
            token.cancel("shutdown")
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Job manager shutdown complete")

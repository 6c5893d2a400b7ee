"""In-memory, bounded-concurrency job queue for stable-study processing."""
import asyncio
import enum
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from prometheus_client import Counter, Gauge

logger = logging.getLogger(__name__)

JOBS_TOTAL = Counter("dcm_intake_jobs_total", "Stable-study jobs by terminal status", ["status"])
JOBS_ACTIVE = Gauge("dcm_intake_jobs_active", "Stable-study jobs currently executing")

JOB_KIND = "process-stable-study"


class JobStatus(str, enum.Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass
class Job:
    id: int
    payload: dict[str, Any]
    kind: str = JOB_KIND
    status: JobStatus = JobStatus.WAITING
    progress: int = 0
    result: Optional[dict] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @property
    def request_id(self) -> Optional[str]:
        return self.payload.get("request_id")

    def set_progress(self, value: int) -> None:
        self.progress = max(0, min(100, int(value)))


JobProcessor = Callable[[Job], Awaitable[Optional[dict]]]


class JobQueue:
    """FIFO admission of waiting jobs, at most ``concurrency`` active at once.

    The scheduler loop runs as an asyncio task only while there is work and is
    restarted by the next ``enqueue``.
    """

    def __init__(
        self,
        processor: JobProcessor,
        concurrency: int = 10,
        idle_interval: float = 0.1,
        retention_seconds: Optional[float] = 3600,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.processor = processor
        self.concurrency = concurrency
        self.idle_interval = idle_interval
        self.retention_seconds = retention_seconds

        self._jobs: dict[int, Job] = {}
        self._active: set[int] = set()
        self._tasks: set[asyncio.Task] = set()
        self._ids = itertools.count(1)
        self._scheduler: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and not self._scheduler.done()

    @property
    def active_count(self) -> int:
        return len(self._active)

    def enqueue(self, payload: dict[str, Any]) -> Job:
        self._evict_finished()
        job = Job(id=next(self._ids), payload=payload)
        self._jobs[job.id] = job
        logger.info("Job %d queued (%s)", job.id, payload.get("orthanc_study_id"))

        if not self.is_running:
            self._scheduler = asyncio.create_task(self._run())
        return job

    def get_job(self, job_id: int) -> Optional[Job]:
        return self._jobs.get(job_id)

    def get_job_by_request_id(self, request_id: str) -> Optional[Job]:
        for job in self._jobs.values():
            if job.request_id == request_id:
                return job
        return None

    def stats(self) -> dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        for job in self._jobs.values():
            counts[job.status.value] += 1
        counts["concurrency"] = self.concurrency
        return counts

    async def drain(self) -> None:
        """Wait until every queued job has reached a terminal state."""
        while self.is_running:
            await asyncio.shield(self._scheduler)

    def _waiting(self) -> list[Job]:
        # dicts preserve insertion order, so this is arrival order
        return [job for job in self._jobs.values() if job.status is JobStatus.WAITING]

    async def _run(self) -> None:
        logger.info("Job queue scheduler started")
        while self._waiting() or self._active:
            for job in self._waiting():
                if len(self._active) >= self.concurrency:
                    break
                self._admit(job)
            await asyncio.sleep(self.idle_interval)
        logger.info("Job queue scheduler stopped")

    def _admit(self, job: Job) -> None:
        job.status = JobStatus.ACTIVE
        self._active.add(job.id)
        JOBS_ACTIVE.inc()
        task = asyncio.create_task(self._execute(job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _execute(self, job: Job) -> None:
        logger.info("Processing job %d", job.id)
        try:
            job.result = await self.processor(job)
            job.status = JobStatus.COMPLETED
            logger.info("Job %d completed", job.id)
        except Exception as exc:
            job.error = str(exc) or exc.__class__.__name__
            job.status = JobStatus.FAILED
            logger.error("Job %d failed: %s", job.id, job.error, exc_info=True)
        finally:
            job.finished_at = datetime.now(timezone.utc)
            self._active.discard(job.id)
            JOBS_ACTIVE.dec()
            JOBS_TOTAL.labels(status=job.status.value).inc()

    def _evict_finished(self) -> None:
        if self.retention_seconds is None:
            return
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.retention_seconds)
        expired = [
            job_id for job_id, job in self._jobs.items()
            if job.status in TERMINAL_STATUSES and job.finished_at and job.finished_at < cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]
        if expired:
            logger.debug("Evicted %d finished jobs", len(expired))

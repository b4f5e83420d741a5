"""
In-Memory Job Queue

Volatile backend with the same contract and ordering as the Redis backend.
Pending ids live in a deque, job records in a dict, both guarded by one
asyncio.Condition so dequeue can wait for work without polling.
"""
import asyncio
import logging
import time
import uuid
from collections import deque
from typing import Deque, Dict, List, Optional

from .errors import InvalidTransitionError, JobNotFoundError, JobValidationError
from .job import Job, JobResult, JobStatus, utcnow
from .job_queue import (
    CANCEL_FROM,
    FAIL_FROM,
    LEASE_EXPIRED_ERROR,
    REQUEUE_FROM,
    allowed_sources,
    validate_for_enqueue,
)

logger = logging.getLogger(__name__)


class InMemoryJobQueue:
    def __init__(self, lease_seconds: float = 300.0):
        self.lease_seconds = lease_seconds
        self._condition = asyncio.Condition()
        self._pending: Deque[str] = deque()
        self._jobs: Dict[str, Job] = {}
        self._leases: Dict[str, float] = {}

    async def enqueue(self, job: Job) -> str:
        validate_for_enqueue(job)
        async with self._condition:
            job_id = job.id or str(uuid.uuid4())
            if job_id in self._jobs:
                raise JobValidationError(f"Job {job_id} already exists")
            now = utcnow()
            self._jobs[job_id] = job.model_copy(
                update={
                    "id": job_id,
                    "status": JobStatus.PENDING,
                    "result": None,
                    "updated_at": now,
                },
                deep=True,
            )
            self._pending.append(job_id)
            self._condition.notify()
        logger.info(f"Job {job_id} enqueued")
        return job_id

    async def dequeue(self, timeout: float) -> Optional[Job]:
        async with self._condition:
            if not self._pending:
                try:
                    await asyncio.wait_for(
                        self._condition.wait_for(lambda: bool(self._pending)),
                        timeout,
                    )
                except asyncio.TimeoutError:
                    return None
            job_id = self._pending.popleft()
            job = self._jobs[job_id]
            self._enter(job, JobStatus.RUNNING, utcnow())
            logger.info(f"Job {job_id} dequeued and started")
            return job.model_copy(deep=True)

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with self._condition:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    async def update_status(self, job_id: str, status: JobStatus) -> None:
        status = JobStatus(status)
        async with self._condition:
            job = self._require(job_id)
            if status is JobStatus.COMPLETED or job.status not in allowed_sources(status):
                raise InvalidTransitionError(job_id, job.status.value, status.value)
            self._leave(job)
            self._enter(job, status, utcnow())
        logger.info(f"Job {job_id} status updated to {status.value}")

    async def complete_job(self, job_id: str, result: JobResult) -> None:
        async with self._condition:
            job = self._require(job_id)
            if job.status is not JobStatus.RUNNING:
                raise InvalidTransitionError(job_id, job.status.value, JobStatus.COMPLETED.value)
            self._leave(job)
            self._enter(job, JobStatus.COMPLETED, utcnow())
            job.result = result.model_copy()
            job.error = None
        logger.info(
            f"Job {job_id} completed: report={result.report_id} "
            f"passed={result.success_count} failed={result.fail_count}"
        )

    async def fail_job(self, job_id: str, message: str, retryable: bool) -> JobStatus:
        async with self._condition:
            job = self._require(job_id)
            if job.status not in FAIL_FROM:
                raise InvalidTransitionError(job_id, job.status.value, JobStatus.FAILED.value)
            status = self._fail(job, message, retryable)
        logger.warning(f"Job {job_id} failed ({status.value}): {message}")
        return status

    async def requeue(self, job_id: str) -> None:
        async with self._condition:
            job = self._require(job_id)
            if job.status not in REQUEUE_FROM:
                raise InvalidTransitionError(job_id, job.status.value, JobStatus.PENDING.value)
            job.retry_count = 0
            job.error = None
            job.completed_at = None
            self._leave(job)
            self._enter(job, JobStatus.PENDING, utcnow())
        logger.info(f"Job {job_id} requeued")

    async def cancel_job(self, job_id: str) -> None:
        async with self._condition:
            job = self._require(job_id)
            if job.status not in CANCEL_FROM:
                raise InvalidTransitionError(job_id, job.status.value, JobStatus.CANCELLED.value)
            self._leave(job)
            self._enter(job, JobStatus.CANCELLED, utcnow())
        logger.info(f"Job {job_id} cancelled")

    async def delete_job(self, job_id: str) -> None:
        async with self._condition:
            job = self._require(job_id)
            self._leave(job)
            del self._jobs[job_id]
        logger.info(f"Job {job_id} deleted")

    async def queue_length(self) -> int:
        async with self._condition:
            return len(self._pending)

    async def list_jobs_by_user(self, user_id: str, limit: int) -> List[Job]:
        async with self._condition:
            jobs = [job for job in self._jobs.values() if job.user_id == user_id]
            jobs.sort(key=lambda j: j.created_at, reverse=True)
            return [job.model_copy(deep=True) for job in jobs[:limit]]

    async def heartbeat(self, job_id: str) -> bool:
        async with self._condition:
            job = self._jobs.get(job_id)
            if job is None or job.status is not JobStatus.RUNNING:
                return False
            self._leases[job_id] = time.time() + self.lease_seconds
            return True

    async def recover_stalled(self, now: Optional[float] = None) -> List[str]:
        now = time.time() if now is None else now
        recovered = []
        async with self._condition:
            expired = [job_id for job_id, deadline in self._leases.items() if deadline <= now]
            for job_id in expired:
                job = self._jobs[job_id]
                self._fail(job, LEASE_EXPIRED_ERROR, retryable=True)
                recovered.append(job_id)
        if recovered:
            logger.warning(f"Recovered {len(recovered)} stalled job(s): {recovered}")
        return recovered

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _fail(self, job: Job, message: str, retryable: bool) -> JobStatus:
        self._leave(job)
        job.error = message
        if retryable and job.retry_count < job.max_retries:
            job.retry_count += 1
            self._enter(job, JobStatus.PENDING, utcnow())
        else:
            self._enter(job, JobStatus.DEAD, utcnow())
        return job.status

    def _leave(self, job: Job) -> None:
        """Drop the job from the pending ordering and the lease table."""
        if job.status is JobStatus.PENDING and job.id in self._pending:
            self._pending.remove(job.id)
        self._leases.pop(job.id, None)

    def _enter(self, job: Job, status: JobStatus, now) -> None:
        job.status = status
        job.updated_at = now
        if status is JobStatus.PENDING:
            job.started_at = None
            self._pending.append(job.id)
            self._condition.notify()
        elif status is JobStatus.RUNNING:
            job.started_at = now
            self._leases[job.id] = time.time() + self.lease_seconds
        elif status.is_terminal:
            job.completed_at = now

    async def close(self) -> None:
        """Nothing to release; state dies with the instance."""

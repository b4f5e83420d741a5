"""
Job Queue Interface

The capability set shared by the Redis and in-memory backends, plus the
status transition table both of them enforce.
"""
from typing import Dict, FrozenSet, List, Optional, Protocol, runtime_checkable

from .errors import JobValidationError
from .job import Job, JobResult, JobStatus

LEASE_EXPIRED_ERROR = "lease expired"

# Allowed status changes. FAILED is transient: fail_job resolves it to
# PENDING or DEAD in the same step.
TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
        JobStatus.PENDING,
    }),
    JobStatus.FAILED: frozenset({JobStatus.PENDING, JobStatus.DEAD}),
    JobStatus.DEAD: frozenset({JobStatus.PENDING}),
    JobStatus.CANCELLED: frozenset({JobStatus.PENDING}),
    JobStatus.COMPLETED: frozenset(),
}

REQUEUE_FROM = frozenset({JobStatus.FAILED, JobStatus.DEAD, JobStatus.CANCELLED})
CANCEL_FROM = frozenset({JobStatus.PENDING, JobStatus.RUNNING})
FAIL_FROM = frozenset({JobStatus.RUNNING, JobStatus.FAILED})


def allowed_sources(target: JobStatus) -> List[JobStatus]:
    """Statuses from which ``target`` may be reached."""
    return [source for source, targets in TRANSITIONS.items() if target in targets]


def validate_for_enqueue(job: Job) -> None:
    if not job.test_cases:
        raise JobValidationError("Job must contain at least one test case")


@runtime_checkable
class JobQueue(Protocol):
    """Queue backend contract. All operations are safe under concurrent callers."""

    async def enqueue(self, job: Job) -> str:
        ...

    async def dequeue(self, timeout: float) -> Optional[Job]:
        ...

    async def get_job(self, job_id: str) -> Optional[Job]:
        ...

    async def update_status(self, job_id: str, status: JobStatus) -> None:
        ...

    async def complete_job(self, job_id: str, result: JobResult) -> None:
        ...

    async def fail_job(self, job_id: str, message: str, retryable: bool) -> JobStatus:
        ...

    async def requeue(self, job_id: str) -> None:
        ...

    async def cancel_job(self, job_id: str) -> None:
        ...

    async def delete_job(self, job_id: str) -> None:
        ...

    async def queue_length(self) -> int:
        ...

    async def list_jobs_by_user(self, user_id: str, limit: int) -> List[Job]:
        ...

    async def heartbeat(self, job_id: str) -> bool:
        ...

    async def recover_stalled(self, now: Optional[float] = None) -> List[str]:
        ...

    async def close(self) -> None:
        ...


def create_job_queue(settings, redis_client=None) -> JobQueue:
    """Build the backend selected by ``settings.queue_backend``."""
    if settings.queue_backend == "memory":
        from .memory_queue import InMemoryJobQueue
        return InMemoryJobQueue(lease_seconds=settings.job_lease_seconds)

    from redis.asyncio import Redis
    from .redis_queue import RedisJobQueue

    if redis_client is None:
        redis_client = Redis.from_url(settings.redis_url, decode_responses=True)
    return RedisJobQueue(
        redis_client,
        key_prefix=settings.redis_key_prefix,
        lease_seconds=settings.job_lease_seconds,
    )

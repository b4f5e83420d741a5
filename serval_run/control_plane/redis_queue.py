"""
Redis Job Queue

Durable backend. Key layout under ``key_prefix`` (default ``serval:jobs``):

- ``<prefix>:pending``          list of pending ids (RPUSH tail, pop head)
- ``<prefix>:processing``       list of ids handed off but not yet claimed
- ``<prefix>:running``          sorted set of running ids scored by lease deadline
- ``<prefix>:job:<id>``         hash holding the flat job record
- ``<prefix>:by_user:<user>``   sorted set of a user's job ids scored by creation time

Every state change is a single Lua script, so readers never observe a half
applied transition and two workers can never claim the same id.
"""
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from .errors import (
    InvalidTransitionError,
    JobNotFoundError,
    JobValidationError,
    QueueBackendError,
)
from .job import Job, JobResult, JobStatus, utcnow
from .job_queue import (
    CANCEL_FROM,
    LEASE_EXPIRED_ERROR,
    REQUEUE_FROM,
    allowed_sources,
    validate_for_enqueue,
)

logger = logging.getLogger(__name__)

_FAIL_FUNCTION = """
local function fail(job_key, pending_key, job_id, now, message, retryable)
    local retries = tonumber(redis.call('HGET', job_key, 'retry_count'))
    local max_retries = tonumber(redis.call('HGET', job_key, 'max_retries'))
    redis.call('HSET', job_key, 'error', message, 'updated_at', now)
    if retryable and retries < max_retries then
        redis.call('HSET', job_key, 'status', 'pending', 'retry_count', tostring(retries + 1))
        redis.call('HDEL', job_key, 'started_at')
        redis.call('RPUSH', pending_key, job_id)
        return 'pending'
    end
    redis.call('HSET', job_key, 'status', 'dead', 'completed_at', now)
    return 'dead'
end
"""

# KEYS: pending, job hash, user index
# ARGV: job id, creation score, field/value pairs...
ENQUEUE_SCRIPT = """
if redis.call('EXISTS', KEYS[2]) == 1 then
    return 0
end
for i = 3, #ARGV, 2 do
    redis.call('HSET', KEYS[2], ARGV[i], ARGV[i + 1])
end
redis.call('RPUSH', KEYS[1], ARGV[1])
redis.call('ZADD', KEYS[3], ARGV[2], ARGV[1])
return 1
"""

# KEYS: processing, job hash, running
# ARGV: job id, now, lease deadline
CLAIM_SCRIPT = """
if redis.call('LREM', KEYS[1], 1, ARGV[1]) == 0 then
    return 0
end
if redis.call('HGET', KEYS[2], 'status') ~= 'pending' then
    return 0
end
redis.call('HSET', KEYS[2], 'status', 'running', 'started_at', ARGV[2], 'updated_at', ARGV[2])
redis.call('ZADD', KEYS[3], ARGV[3], ARGV[1])
return redis.call('HGETALL', KEYS[2])
"""

# KEYS: job hash, running
# ARGV: job id, now, result json
COMPLETE_SCRIPT = """
local status = redis.call('HGET', KEYS[1], 'status')
if not status then
    return 'missing'
end
if status ~= 'running' then
    return 'invalid:' .. status
end
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('HDEL', KEYS[1], 'error')
redis.call('HSET', KEYS[1], 'status', 'completed', 'result', ARGV[3],
           'completed_at', ARGV[2], 'updated_at', ARGV[2])
return 'ok'
"""

# KEYS: job hash, running, pending
# ARGV: job id, now, message, retryable flag
FAIL_SCRIPT = _FAIL_FUNCTION + """
local status = redis.call('HGET', KEYS[1], 'status')
if not status then
    return 'missing'
end
if status ~= 'running' and status ~= 'failed' then
    return 'invalid:' .. status
end
redis.call('ZREM', KEYS[2], ARGV[1])
return fail(KEYS[1], KEYS[3], ARGV[1], ARGV[2], ARGV[3], ARGV[4] == '1')
"""

# KEYS: job hash, pending, running
# ARGV: job id, now, target status, lease deadline, reset flag, allowed sources...
TRANSITION_SCRIPT = """
local status = redis.call('HGET', KEYS[1], 'status')
if not status then
    return 'missing'
end
local allowed = false
for i = 6, #ARGV do
    if ARGV[i] == status then
        allowed = true
    end
end
if not allowed then
    return 'invalid:' .. status
end
if status == 'pending' then
    redis.call('LREM', KEYS[2], 0, ARGV[1])
elseif status == 'running' then
    redis.call('ZREM', KEYS[3], ARGV[1])
end
if ARGV[5] == '1' then
    redis.call('HSET', KEYS[1], 'retry_count', '0')
    redis.call('HDEL', KEYS[1], 'error', 'completed_at')
end
local target = ARGV[3]
redis.call('HSET', KEYS[1], 'status', target, 'updated_at', ARGV[2])
if target == 'pending' then
    redis.call('HDEL', KEYS[1], 'started_at')
    redis.call('RPUSH', KEYS[2], ARGV[1])
elseif target == 'running' then
    redis.call('HSET', KEYS[1], 'started_at', ARGV[2])
    redis.call('ZADD', KEYS[3], ARGV[4], ARGV[1])
elseif target == 'dead' or target == 'cancelled' then
    redis.call('HSET', KEYS[1], 'completed_at', ARGV[2])
end
return 'ok'
"""

# KEYS: job hash, pending, running, processing
# ARGV: job id, user index prefix
DELETE_SCRIPT = """
local user_id = redis.call('HGET', KEYS[1], 'user_id')
if not user_id then
    return 'missing'
end
redis.call('LREM', KEYS[2], 0, ARGV[1])
redis.call('LREM', KEYS[4], 0, ARGV[1])
redis.call('ZREM', KEYS[3], ARGV[1])
redis.call('ZREM', ARGV[2] .. user_id, ARGV[1])
redis.call('DEL', KEYS[1])
return 'ok'
"""

# KEYS: job hash, running
# ARGV: job id, lease deadline
HEARTBEAT_SCRIPT = """
if redis.call('HGET', KEYS[1], 'status') ~= 'running' then
    return 0
end
redis.call('ZADD', KEYS[2], ARGV[2], ARGV[1])
return 1
"""

# KEYS: running, processing, pending
# ARGV: now score, now, job key prefix, message
RECOVER_SCRIPT = _FAIL_FUNCTION + """
local recovered = {}
local expired = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
for _, job_id in ipairs(expired) do
    local job_key = ARGV[3] .. job_id
    redis.call('ZREM', KEYS[1], job_id)
    if redis.call('HGET', job_key, 'status') == 'running' then
        fail(job_key, KEYS[3], job_id, ARGV[2], ARGV[4], true)
        table.insert(recovered, job_id)
    end
end
local in_flight = redis.call('LRANGE', KEYS[2], 0, -1)
for _, job_id in ipairs(in_flight) do
    redis.call('LREM', KEYS[2], 0, job_id)
    if redis.call('HGET', ARGV[3] .. job_id, 'status') == 'pending' then
        redis.call('RPUSH', KEYS[3], job_id)
        table.insert(recovered, job_id)
    end
end
return recovered
"""


def encode_job(job: Job) -> Dict[str, str]:
    """Flatten a job into the hash layout stored under ``<prefix>:job:<id>``."""
    fields = {
        "id": job.id,
        "user_id": job.user_id,
        "level": job.level.value,
        "target_config": job.target_config.model_dump_json(),
        "test_cases": json.dumps([case.model_dump(mode="json") for case in job.test_cases]),
        "status": job.status.value,
        "retry_count": str(job.retry_count),
        "max_retries": str(job.max_retries),
        "created_at": job.created_at.isoformat(),
        "updated_at": job.updated_at.isoformat(),
    }
    if job.report_id:
        fields["report_id"] = job.report_id
    if job.result is not None:
        fields["result"] = job.result.model_dump_json()
    if job.error is not None:
        fields["error"] = job.error
    if job.started_at is not None:
        fields["started_at"] = job.started_at.isoformat()
    if job.completed_at is not None:
        fields["completed_at"] = job.completed_at.isoformat()
    return fields


def decode_job(fields: Dict[str, str]) -> Job:
    data = dict(fields)
    try:
        for key in ("target_config", "test_cases", "result"):
            if key in data:
                data[key] = json.loads(data[key])
        return Job.model_validate(data)
    except ValueError as e:
        raise QueueBackendError(f"Corrupt job record {data.get('id')}: {e}") from e


class RedisJobQueue:
    def __init__(
        self,
        redis_client: redis.Redis,
        key_prefix: str = "serval:jobs",
        lease_seconds: float = 300.0,
    ):
        self.redis = redis_client
        self.lease_seconds = lease_seconds
        self.pending_key = f"{key_prefix}:pending"
        self.processing_key = f"{key_prefix}:processing"
        self.running_key = f"{key_prefix}:running"
        self.job_prefix = f"{key_prefix}:job:"
        self.user_prefix = f"{key_prefix}:by_user:"

        self._enqueue = redis_client.register_script(ENQUEUE_SCRIPT)
        self._claim = redis_client.register_script(CLAIM_SCRIPT)
        self._complete = redis_client.register_script(COMPLETE_SCRIPT)
        self._fail = redis_client.register_script(FAIL_SCRIPT)
        self._transition = redis_client.register_script(TRANSITION_SCRIPT)
        self._delete = redis_client.register_script(DELETE_SCRIPT)
        self._heartbeat = redis_client.register_script(HEARTBEAT_SCRIPT)
        self._recover = redis_client.register_script(RECOVER_SCRIPT)

    def _job_key(self, job_id: str) -> str:
        return f"{self.job_prefix}{job_id}"

    def _user_key(self, user_id: str) -> str:
        return f"{self.user_prefix}{user_id}"

    def _lease_deadline(self) -> float:
        return time.time() + self.lease_seconds

    @asynccontextmanager
    async def _redis_errors(self, operation: str):
        try:
            yield
        except RedisError as e:
            logger.error(f"Redis error during {operation}: {e}")
            raise QueueBackendError(f"Redis error during {operation}: {e}") from e

    @staticmethod
    def _check_reply(job_id: str, reply, requested: JobStatus) -> None:
        if reply == "missing":
            raise JobNotFoundError(job_id)
        if isinstance(reply, str) and reply.startswith("invalid:"):
            raise InvalidTransitionError(job_id, reply.split(":", 1)[1], requested.value)

    async def enqueue(self, job: Job) -> str:
        """Store the job record and append its id to the pending list."""
        validate_for_enqueue(job)
        job_id = job.id or str(uuid.uuid4())
        stored = job.model_copy(
            update={"id": job_id, "status": JobStatus.PENDING, "result": None, "updated_at": utcnow()}
        )
        args: List[str] = [job_id, str(stored.created_at.timestamp())]
        for field, value in encode_job(stored).items():
            args.extend((field, value))

        async with self._redis_errors("enqueue"):
            created = await self._enqueue(
                keys=[self.pending_key, self._job_key(job_id), self._user_key(job.user_id)],
                args=args,
            )
        if not created:
            raise JobValidationError(f"Job {job_id} already exists")

        logger.info(f"Job {job_id} enqueued")
        return job_id

    async def dequeue(self, timeout: float) -> Optional[Job]:
        """
        Block up to ``timeout`` seconds for the head of the pending list.

        The id is moved to the processing list by BLMOVE and then claimed by a
        script that only succeeds while the job is still pending, so stale
        ids (cancelled or deleted meanwhile) are skipped.
        """
        deadline = time.monotonic() + timeout
        while True:
            wait = max(deadline - time.monotonic(), 0.01)
            async with self._redis_errors("dequeue"):
                job_id = await self.redis.blmove(
                    self.pending_key, self.processing_key, wait, "LEFT", "RIGHT"
                )
                if job_id is None:
                    return None
                reply = await self._claim(
                    keys=[self.processing_key, self._job_key(job_id), self.running_key],
                    args=[job_id, utcnow().isoformat(), self._lease_deadline()],
                )
            if reply:
                fields = dict(zip(reply[::2], reply[1::2]))
                logger.info(f"Job {job_id} dequeued and started")
                return decode_job(fields)

            logger.debug(f"Skipped stale queue entry {job_id}")
            if time.monotonic() >= deadline:
                return None

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with self._redis_errors("get_job"):
            fields = await self.redis.hgetall(self._job_key(job_id))
        if not fields:
            return None
        return decode_job(fields)

    async def update_status(self, job_id: str, status: JobStatus) -> None:
        status = JobStatus(status)
        if status is JobStatus.COMPLETED:
            current = await self.get_job(job_id)
            if current is None:
                raise JobNotFoundError(job_id)
            raise InvalidTransitionError(job_id, current.status.value, status.value)
        await self._apply_transition(job_id, status, allowed_sources(status))
        logger.info(f"Job {job_id} status updated to {status.value}")

    async def complete_job(self, job_id: str, result: JobResult) -> None:
        async with self._redis_errors("complete_job"):
            reply = await self._complete(
                keys=[self._job_key(job_id), self.running_key],
                args=[job_id, utcnow().isoformat(), result.model_dump_json()],
            )
        self._check_reply(job_id, reply, JobStatus.COMPLETED)
        logger.info(
            f"Job {job_id} completed: report={result.report_id} "
            f"passed={result.success_count} failed={result.fail_count}"
        )

    async def fail_job(self, job_id: str, message: str, retryable: bool) -> JobStatus:
        """Retry (tail of the pending list, retry_count + 1) or mark dead, atomically."""
        async with self._redis_errors("fail_job"):
            reply = await self._fail(
                keys=[self._job_key(job_id), self.running_key, self.pending_key],
                args=[job_id, utcnow().isoformat(), message, "1" if retryable else "0"],
            )
        self._check_reply(job_id, reply, JobStatus.FAILED)
        status = JobStatus(reply)
        logger.warning(f"Job {job_id} failed ({status.value}): {message}")
        return status

    async def requeue(self, job_id: str) -> None:
        await self._apply_transition(job_id, JobStatus.PENDING, REQUEUE_FROM, reset=True)
        logger.info(f"Job {job_id} requeued")

    async def cancel_job(self, job_id: str) -> None:
        await self._apply_transition(job_id, JobStatus.CANCELLED, CANCEL_FROM)
        logger.info(f"Job {job_id} cancelled")

    async def delete_job(self, job_id: str) -> None:
        async with self._redis_errors("delete_job"):
            reply = await self._delete(
                keys=[self._job_key(job_id), self.pending_key, self.running_key, self.processing_key],
                args=[job_id, self.user_prefix],
            )
        if reply == "missing":
            raise JobNotFoundError(job_id)
        logger.info(f"Job {job_id} deleted")

    async def queue_length(self) -> int:
        async with self._redis_errors("queue_length"):
            return int(await self.redis.llen(self.pending_key))

    async def list_jobs_by_user(self, user_id: str, limit: int) -> List[Job]:
        if limit <= 0:
            return []
        async with self._redis_errors("list_jobs_by_user"):
            job_ids = await self.redis.zrevrange(self._user_key(user_id), 0, limit - 1)
            pipe = self.redis.pipeline(transaction=False)
            for job_id in job_ids:
                pipe.hgetall(self._job_key(job_id))
            records = await pipe.execute() if job_ids else []
        # Ids trimmed from the index by retention may outlive their records.
        return [decode_job(fields) for fields in records if fields]

    async def heartbeat(self, job_id: str) -> bool:
        async with self._redis_errors("heartbeat"):
            renewed = await self._heartbeat(
                keys=[self._job_key(job_id), self.running_key],
                args=[job_id, self._lease_deadline()],
            )
        return bool(renewed)

    async def recover_stalled(self, now: Optional[float] = None) -> List[str]:
        """Return expired-lease and orphaned hand-off jobs to the pending list."""
        now = time.time() if now is None else now
        async with self._redis_errors("recover_stalled"):
            recovered = await self._recover(
                keys=[self.running_key, self.processing_key, self.pending_key],
                args=[now, utcnow().isoformat(), self.job_prefix, LEASE_EXPIRED_ERROR],
            )
        recovered = list(recovered or [])
        if recovered:
            logger.warning(f"Recovered {len(recovered)} stalled job(s): {recovered}")
        return recovered

    async def _apply_transition(self, job_id: str, target: JobStatus, sources, reset: bool = False) -> None:
        async with self._redis_errors(f"transition to {target.value}"):
            reply = await self._transition(
                keys=[self._job_key(job_id), self.pending_key, self.running_key],
                args=[
                    job_id,
                    utcnow().isoformat(),
                    target.value,
                    self._lease_deadline(),
                    "1" if reset else "0",
                    *[source.value for source in sources],
                ],
            )
        self._check_reply(job_id, reply, target)

    async def close(self) -> None:
        await self.redis.aclose()

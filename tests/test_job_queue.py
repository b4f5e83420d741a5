import asyncio
import time
from datetime import datetime, timedelta, timezone

import pytest

from serval_run.control_plane.errors import (
    InvalidTransitionError,
    JobNotFoundError,
    JobValidationError,
)
from serval_run.control_plane.job import JobResult, JobStatus
from serval_run.control_plane.job_queue import LEASE_EXPIRED_ERROR, JobQueue

from tests.factories import make_job


async def running_job(queue, **kwargs):
    job_id = await queue.enqueue(make_job(**kwargs))
    job = await queue.dequeue(1)
    assert job.id == job_id
    return job


class TestEnqueue:
    async def test_backend_satisfies_interface(self, queue):
        assert isinstance(queue, JobQueue)

    async def test_assigns_id_and_pending_status(self, queue):
        job_id = await queue.enqueue(make_job())

        stored = await queue.get_job(job_id)
        assert stored.id == job_id
        assert stored.status == JobStatus.PENDING
        assert stored.retry_count == 0
        assert stored.result is None
        assert await queue.queue_length() == 1

    async def test_keeps_given_id(self, queue):
        job_id = await queue.enqueue(make_job(id="job-fixed"))
        assert job_id == "job-fixed"

    async def test_rejects_empty_test_cases(self, queue):
        with pytest.raises(JobValidationError):
            await queue.enqueue(make_job(test_cases=[]))
        assert await queue.queue_length() == 0

    async def test_rejects_duplicate_id(self, queue):
        await queue.enqueue(make_job(id="job-1"))
        with pytest.raises(JobValidationError):
            await queue.enqueue(make_job(id="job-1"))
        assert await queue.queue_length() == 1

    async def test_round_trips_payload(self, queue):
        job = make_job(cases=3, report_id="report-1", max_retries=5)
        job_id = await queue.enqueue(job)

        stored = await queue.get_job(job_id)
        assert [c.model_dump() for c in stored.test_cases] == [c.model_dump() for c in job.test_cases]
        assert stored.target_config.model_dump() == job.target_config.model_dump()
        assert stored.report_id == "report-1"
        assert stored.max_retries == 5


class TestDequeue:
    async def test_fifo_order(self, queue):
        ids = [await queue.enqueue(make_job()) for _ in range(3)]

        dequeued = [(await queue.dequeue(1)).id for _ in range(3)]
        assert dequeued == ids
        assert await queue.queue_length() == 0

    async def test_marks_running(self, queue):
        job = await running_job(queue)

        assert job.status == JobStatus.RUNNING
        assert job.started_at is not None
        assert (await queue.get_job(job.id)).status == JobStatus.RUNNING

    async def test_concurrent_dequeuers_get_distinct_jobs(self, queue):
        ids = {await queue.enqueue(make_job()) for _ in range(10)}

        jobs = await asyncio.gather(*(queue.dequeue(1) for _ in range(10)))

        delivered = [job.id for job in jobs]
        assert len(delivered) == len(set(delivered))
        assert set(delivered) == ids

    async def test_skips_cancelled_job(self, queue):
        first = await queue.enqueue(make_job())
        second = await queue.enqueue(make_job())
        await queue.cancel_job(first)

        job = await queue.dequeue(1)
        assert job.id == second


class TestCompletion:
    async def test_complete_running_job(self, queue):
        job = await running_job(queue)
        result = JobResult(report_id="r-1", success_count=2, fail_count=1)

        await queue.complete_job(job.id, result)

        stored = await queue.get_job(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.result.model_dump() == result.model_dump()
        assert stored.completed_at is not None

    async def test_complete_requires_running(self, queue):
        job_id = await queue.enqueue(make_job())
        with pytest.raises(InvalidTransitionError):
            await queue.complete_job(job_id, JobResult(report_id="r-1"))

    async def test_complete_missing_job(self, queue):
        with pytest.raises(JobNotFoundError):
            await queue.complete_job("nope", JobResult(report_id="r-1"))


class TestFailure:
    async def test_retryable_failure_goes_back_to_tail(self, queue):
        job = await running_job(queue)
        other = await queue.enqueue(make_job())

        status = await queue.fail_job(job.id, "boom", retryable=True)

        assert status == JobStatus.PENDING
        stored = await queue.get_job(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.retry_count == 1
        assert stored.error == "boom"
        assert (await queue.dequeue(1)).id == other
        assert (await queue.dequeue(1)).id == job.id

    async def test_exhausted_retries_mark_dead(self, queue):
        job = await running_job(queue, max_retries=1)
        await queue.fail_job(job.id, "first", retryable=True)
        await queue.dequeue(1)

        status = await queue.fail_job(job.id, "second", retryable=True)

        assert status == JobStatus.DEAD
        stored = await queue.get_job(job.id)
        assert stored.status == JobStatus.DEAD
        assert stored.retry_count == 1
        assert stored.error == "second"
        assert await queue.queue_length() == 0

    async def test_non_retryable_failure_is_dead(self, queue):
        job = await running_job(queue)

        status = await queue.fail_job(job.id, "bad job", retryable=False)

        assert status == JobStatus.DEAD
        assert (await queue.get_job(job.id)).retry_count == 0

    async def test_fail_pending_job_is_refused(self, queue):
        job_id = await queue.enqueue(make_job())
        with pytest.raises(InvalidTransitionError):
            await queue.fail_job(job_id, "boom", retryable=True)


class TestCancelAndRequeue:
    async def test_cancel_pending_removes_from_queue(self, queue):
        job_id = await queue.enqueue(make_job())

        await queue.cancel_job(job_id)

        assert (await queue.get_job(job_id)).status == JobStatus.CANCELLED
        assert await queue.queue_length() == 0

    async def test_cancel_running(self, queue):
        job = await running_job(queue)
        await queue.cancel_job(job.id)
        assert (await queue.get_job(job.id)).status == JobStatus.CANCELLED
        with pytest.raises(InvalidTransitionError):
            await queue.complete_job(job.id, JobResult(report_id="r-1"))

    async def test_cancel_terminal_is_refused(self, queue):
        job = await running_job(queue)
        await queue.complete_job(job.id, JobResult(report_id="r-1"))
        with pytest.raises(InvalidTransitionError):
            await queue.cancel_job(job.id)

    async def test_requeue_dead_resets_retries(self, queue):
        job = await running_job(queue, max_retries=0)
        await queue.fail_job(job.id, "boom", retryable=True)

        await queue.requeue(job.id)

        stored = await queue.get_job(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.retry_count == 0
        assert stored.error is None
        assert stored.completed_at is None
        assert await queue.queue_length() == 1

    async def test_requeue_cancelled(self, queue):
        job_id = await queue.enqueue(make_job())
        await queue.cancel_job(job_id)
        await queue.requeue(job_id)
        assert (await queue.dequeue(1)).id == job_id

    @pytest.mark.parametrize("finish", ["pending", "completed"])
    async def test_requeue_refused(self, queue, finish):
        if finish == "pending":
            job_id = await queue.enqueue(make_job())
        else:
            job_id = (await running_job(queue)).id
            await queue.complete_job(job_id, JobResult(report_id="r-1"))
        with pytest.raises(InvalidTransitionError):
            await queue.requeue(job_id)


class TestStatusAndLookup:
    async def test_get_missing_job(self, queue):
        assert await queue.get_job("missing") is None

    async def test_update_status_follows_transition_table(self, queue):
        job_id = await queue.enqueue(make_job())

        await queue.update_status(job_id, JobStatus.CANCELLED)

        assert (await queue.get_job(job_id)).status == JobStatus.CANCELLED
        assert await queue.queue_length() == 0

    async def test_update_status_to_running_claims_job(self, queue):
        job_id = await queue.enqueue(make_job())
        await queue.update_status(job_id, JobStatus.RUNNING)
        assert await queue.queue_length() == 0
        assert await queue.heartbeat(job_id)

    async def test_update_status_refuses_completed(self, queue):
        job = await running_job(queue)
        with pytest.raises(InvalidTransitionError):
            await queue.update_status(job.id, JobStatus.COMPLETED)

    async def test_failed_status_resolved_by_fail_job(self, queue):
        job = await running_job(queue)
        await queue.update_status(job.id, JobStatus.FAILED)

        status = await queue.fail_job(job.id, "boom", retryable=True)

        assert status == JobStatus.PENDING

    async def test_update_status_missing_job(self, queue):
        with pytest.raises(JobNotFoundError):
            await queue.update_status("missing", JobStatus.CANCELLED)

    async def test_delete_job(self, queue):
        job_id = await queue.enqueue(make_job(user_id="u-del"))

        await queue.delete_job(job_id)

        assert await queue.get_job(job_id) is None
        assert await queue.queue_length() == 0
        assert await queue.list_jobs_by_user("u-del", 10) == []
        with pytest.raises(JobNotFoundError):
            await queue.delete_job(job_id)

    async def test_list_jobs_by_user_most_recent_first(self, queue):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        ids = [
            await queue.enqueue(make_job(user_id="alice", created_at=start + timedelta(minutes=i)))
            for i in range(3)
        ]
        await queue.enqueue(make_job(user_id="bob"))

        jobs = await queue.list_jobs_by_user("alice", 10)
        assert [job.id for job in jobs] == list(reversed(ids))

        limited = await queue.list_jobs_by_user("alice", 2)
        assert [job.id for job in limited] == [ids[2], ids[1]]


class TestLeases:
    async def test_heartbeat_only_for_running_jobs(self, queue):
        job_id = await queue.enqueue(make_job())
        assert not await queue.heartbeat(job_id)

        job = await queue.dequeue(1)
        assert job.id == job_id
        assert await queue.heartbeat(job_id)

        await queue.complete_job(job_id, JobResult(report_id="r", success_count=1, fail_count=0))
        assert not await queue.heartbeat(job_id)

    async def test_recover_expired_lease(self, queue):
        job = await running_job(queue)

        assert await queue.recover_stalled() == []
        recovered = await queue.recover_stalled(now=time.time() + 3600)

        assert recovered == [job.id]
        stored = await queue.get_job(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.retry_count == 1
        assert stored.error == LEASE_EXPIRED_ERROR
        assert (await queue.dequeue(1)).id == job.id

    async def test_recover_expired_lease_without_retries_left(self, queue):
        job = await running_job(queue, max_retries=0)

        await queue.recover_stalled(now=time.time() + 3600)

        assert (await queue.get_job(job.id)).status == JobStatus.DEAD

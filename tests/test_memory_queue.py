import asyncio

from serval_run.control_plane.job import JobStatus
from serval_run.control_plane.memory_queue import InMemoryJobQueue

from tests.factories import make_job


class TestBlockingDequeue:
    async def test_times_out_on_empty_queue(self, memory_queue):
        loop = asyncio.get_running_loop()
        started = loop.time()

        assert await memory_queue.dequeue(0.05) is None
        assert loop.time() - started >= 0.04

    async def test_wakes_up_on_enqueue(self, memory_queue):
        waiter = asyncio.create_task(memory_queue.dequeue(5))
        await asyncio.sleep(0.01)
        assert not waiter.done()

        job_id = await memory_queue.enqueue(make_job())

        job = await asyncio.wait_for(waiter, 1)
        assert job.id == job_id
        assert job.status == JobStatus.RUNNING

    async def test_waiting_consumers_share_work(self, memory_queue):
        consumers = [asyncio.create_task(memory_queue.dequeue(1)) for _ in range(5)]
        await asyncio.sleep(0.01)
        ids = {await memory_queue.enqueue(make_job()) for _ in range(3)}

        results = await asyncio.gather(*consumers)

        delivered = [job.id for job in results if job is not None]
        assert sorted(delivered) == sorted(ids)
        assert results.count(None) == 2


class TestIsolation:
    async def test_instances_do_not_share_state(self):
        first = InMemoryJobQueue()
        second = InMemoryJobQueue()
        await first.enqueue(make_job())

        assert await first.queue_length() == 1
        assert await second.queue_length() == 0

    async def test_returned_jobs_are_copies(self, memory_queue):
        job_id = await memory_queue.enqueue(make_job())

        copy = await memory_queue.get_job(job_id)
        copy.error = "mutated outside"

        assert (await memory_queue.get_job(job_id)).error is None

"""
Worker Loop

Drains the job queue one job at a time. While a job executes, a heartbeat
task keeps its lease alive; stalled jobs of crashed workers are returned to
the queue by periodic lease recovery.
"""
import asyncio
import logging
import socket
import time
import uuid
from contextlib import suppress
from typing import Optional

from .errors import InvalidTransitionError, JobNotFoundError, ServalError
from .executor import TestExecutor
from .job import Job, JobStatus
from .job_queue import JobQueue

logger = logging.getLogger(__name__)

DEQUEUE_ERROR_BACKOFF = 1.0


class Worker:
    def __init__(
        self,
        queue: JobQueue,
        executor: TestExecutor,
        worker_id: Optional[str] = None,
        dequeue_timeout: float = 5.0,
        lease_seconds: float = 300.0,
        recovery_interval: float = 30.0,
    ):
        self.queue = queue
        self.executor = executor
        self.worker_id = worker_id or f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
        self.dequeue_timeout = dequeue_timeout
        self.heartbeat_interval = max(lease_seconds / 3, 0.05)
        self.recovery_interval = recovery_interval
        self.processed = 0

        self._shutdown_event = asyncio.Event()
        self._last_recovery: Optional[float] = None

    def stop(self) -> None:
        """Ask the loop to exit once the in-flight job, if any, is finished."""
        if not self._shutdown_event.is_set():
            logger.info(f"Worker {self.worker_id} stopping")
        self._shutdown_event.set()

    @property
    def stopping(self) -> bool:
        return self._shutdown_event.is_set()

    async def run(self) -> None:
        """Start a worker that processes jobs from queue."""
        logger.info(f"Starting worker {self.worker_id}")

        while not self._shutdown_event.is_set():
            await self._maybe_recover()
            try:
                job = await self.queue.dequeue(self.dequeue_timeout)
            except ServalError as e:
                logger.error(f"Worker {self.worker_id} dequeue error: {e}")
                await self._sleep(DEQUEUE_ERROR_BACKOFF)
                continue

            # A job claimed while stop() was being called is still ours to finish.
            if job is not None:
                await self.process(job)

        logger.info(f"Worker {self.worker_id} stopped after {self.processed} job(s)")

    async def process(self, job: Job) -> None:
        """Execute one running job and report its outcome to the queue."""
        logger.info(f"Worker {self.worker_id} processing job {job.id} (attempt {job.retry_count + 1})")
        heartbeat = asyncio.create_task(self._heartbeat(job.id))
        try:
            outcome = await self.executor.execute(job)
        except ServalError as e:
            await self._fail(job, str(e), e.retryable)
            return
        except Exception as e:
            logger.error(f"Job {job.id} crashed: {e!r}", exc_info=True)
            await self._fail(job, f"{type(e).__name__}: {e}", retryable=True)
            return
        finally:
            heartbeat.cancel()
            with suppress(asyncio.CancelledError):
                await heartbeat
            self.processed += 1

        if outcome.status is JobStatus.CANCELLED:
            logger.info(f"Job {job.id} stopped on cancel request")
            return

        try:
            await self.queue.complete_job(job.id, outcome.result)
        except (InvalidTransitionError, JobNotFoundError) as e:
            # Cancelled or deleted while the last case was running.
            logger.warning(f"Job {job.id} finished but could not be completed: {e}")
        except ServalError as e:
            logger.error(f"Job {job.id} finished but completion was not stored: {e}")

    async def _fail(self, job: Job, message: str, retryable: bool) -> None:
        try:
            status = await self.queue.fail_job(job.id, message, retryable)
        except (InvalidTransitionError, JobNotFoundError) as e:
            logger.warning(f"Job {job.id} failed but its status could not be updated: {e}")
            return
        except ServalError as e:
            logger.error(f"Job {job.id} failed and the failure was not stored: {e}")
            return

        if status is JobStatus.PENDING:
            logger.warning(f"Job {job.id} will retry: {message}")
        else:
            logger.error(f"Job {job.id} is dead: {message}")

    async def _heartbeat(self, job_id: str) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                alive = await self.queue.heartbeat(job_id)
            except ServalError as e:
                logger.warning(f"Heartbeat for job {job_id} failed: {e}")
                continue
            if not alive:
                return

    async def _maybe_recover(self) -> None:
        now = time.monotonic()
        if self._last_recovery is not None and now - self._last_recovery < self.recovery_interval:
            return
        self._last_recovery = now
        try:
            await self.queue.recover_stalled()
        except ServalError as e:
            logger.error(f"Worker {self.worker_id} lease recovery failed: {e}")

    async def _sleep(self, seconds: float) -> None:
        """Sleep, waking early on shutdown."""
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._shutdown_event.wait(), seconds)

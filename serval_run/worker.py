"""
Serval Run Worker

Long-running process that drains the job queue. Stops on SIGINT/SIGTERM
after finishing the job in hand.
"""
import asyncio
import signal
from typing import Optional

import structlog

from .config import ServalSettings, get_settings
from .control_plane.executor import TestExecutor
from .control_plane.job_queue import create_job_queue
from .control_plane.result_handler import ResultHandler
from .control_plane.worker_loop import Worker
from .database import Database
from .logging_setup import setup_logging

logger = structlog.get_logger(__name__)


def build_worker(settings: ServalSettings, queue, db: Database, client=None) -> Worker:
    executor = TestExecutor(
        queue,
        ResultHandler(db),
        concurrency=settings.worker_concurrency,
        client=client,
    )
    return Worker(
        queue,
        executor,
        dequeue_timeout=settings.worker_dequeue_timeout,
        lease_seconds=settings.job_lease_seconds,
        recovery_interval=settings.recovery_interval_seconds,
    )


async def run_worker(settings: Optional[ServalSettings] = None) -> None:
    settings = settings or get_settings()
    if settings.queue_backend == "memory":
        logger.warning(
            "memory_queue_in_standalone_worker",
            note="jobs submitted to the API process are not visible here",
        )

    db = Database(settings)
    queue = create_job_queue(settings)
    await db.init_models()
    worker = build_worker(settings, queue, db)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.stop)

    logger.info("worker_starting", worker_id=worker.worker_id, backend=settings.queue_backend)
    try:
        await worker.run()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await queue.close()
        await db.dispose()
        logger.info("worker_stopped", worker_id=worker.worker_id, processed=worker.processed)


def main() -> None:
    settings = get_settings()
    setup_logging(settings.log_level)
    asyncio.run(run_worker(settings))


if __name__ == "__main__":
    main()

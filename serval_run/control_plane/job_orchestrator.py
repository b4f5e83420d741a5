import logging
import uuid
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .errors import JobNotFoundError, JobValidationError
from .executor import check_level, prepare_request
from .job import Job, JobLevel, JobStatus, TargetConfig, TestCase
from .job_queue import JobQueue, validate_for_enqueue
from .planner import TestRunRequest, build_plan
from .result_handler import ResultHandler

logger = logging.getLogger(__name__)


class JobOrchestrator:
    """
    Producer side of the job queue.

    Validates submitted work, provisions its report and enqueues it; every
    read or control operation is scoped to the calling user.
    """

    def __init__(
        self,
        queue: JobQueue,
        result_handler: ResultHandler,
        default_max_retries: int = 3,
        default_timeout: float = 30.0,
    ):
        self.queue = queue
        self.result_handler = result_handler
        self.default_max_retries = default_max_retries
        self.default_timeout = default_timeout

    async def submit_job(
        self,
        user_id: str,
        level: JobLevel,
        target_config: TargetConfig,
        test_cases: List[TestCase],
        max_retries: Optional[int] = None,
    ) -> Job:
        """
        Validate, provision a report for, and enqueue a job.

        Every request is resolved here once so that a malformed job is
        rejected before it reaches a worker.

        Args:
            user_id: Owner of the job
            level: scenario, api or collection
            target_config: Request template shared by the cases
            test_cases: Cases to execute, in order
            max_retries: Retry budget, defaults to the configured one

        Returns:
            The enqueued job
        """
        try:
            job = Job(
                id=str(uuid.uuid4()),
                user_id=user_id,
                level=level,
                target_config=target_config,
                test_cases=test_cases,
                max_retries=self.default_max_retries if max_retries is None else max_retries,
            )
        except ValidationError as e:
            raise JobValidationError(str(e)) from e

        validate_for_enqueue(job)
        check_level(job)
        response_ids = [case.response_id for case in job.test_cases]
        if len(set(response_ids)) != len(response_ids):
            raise JobValidationError("Test case response ids must be unique within a job")
        for case in job.test_cases:
            prepare_request(job.target_config, case)

        report = await self.result_handler.provision_report(
            expected_count=len(job.test_cases),
            level=job.level,
            job_id=job.id,
            user_id=user_id,
        )
        job.report_id = report.id

        await self.queue.enqueue(job)
        logger.info(
            f"Submitted {job.level.value} job {job.id} for user {user_id} "
            f"with {len(job.test_cases)} case(s), report {report.id}"
        )
        return job

    async def submit_plan(self, user_id: str, run: TestRunRequest) -> Job:
        """Expand a scenario, api or collection run and submit it."""
        target_config, test_cases = build_plan(run, default_timeout=self.default_timeout)
        return await self.submit_job(
            user_id=user_id,
            level=run.level,
            target_config=target_config,
            test_cases=test_cases,
            max_retries=run.max_retries,
        )

    async def get_job(self, user_id: str, job_id: str) -> Job:
        """Get a job owned by ``user_id``; other users' jobs do not exist for them."""
        job = await self.queue.get_job(job_id)
        if job is None or job.user_id != user_id:
            raise JobNotFoundError(job_id)
        return job

    async def list_jobs(self, user_id: str, limit: int = 20) -> List[Job]:
        return await self.queue.list_jobs_by_user(user_id, limit)

    async def cancel_job(self, user_id: str, job_id: str) -> Job:
        await self.get_job(user_id, job_id)
        await self.queue.cancel_job(job_id)
        return await self.get_job(user_id, job_id)

    async def requeue_job(self, user_id: str, job_id: str) -> Job:
        await self.get_job(user_id, job_id)
        await self.queue.requeue(job_id)
        return await self.get_job(user_id, job_id)

    async def delete_job(self, user_id: str, job_id: str) -> None:
        await self.get_job(user_id, job_id)
        await self.queue.delete_job(job_id)

    async def queue_length(self) -> int:
        return await self.queue.queue_length()

    async def get_report(self, user_id: str, report_id: str):
        report = await self.result_handler.get_report(report_id)
        if report is None or report.user_id != user_id:
            return None
        return report

    async def get_job_status(self, user_id: str, job_id: str) -> Dict[str, Any]:
        """Get detailed job status, including report progress."""
        job = await self.get_job(user_id, job_id)

        report = None
        if job.report_id:
            report = await self.result_handler.get_report(job.report_id)

        progress = 0.0
        if report is not None and report.expected_count:
            progress = round(min(report.response_count / report.expected_count, 1.0) * 100, 2)
        elif job.status is JobStatus.COMPLETED:
            progress = 100.0

        return {
            "job_id": job.id,
            "status": job.status.value,
            "level": job.level.value,
            "progress": progress,
            "retry_count": job.retry_count,
            "max_retries": job.max_retries,
            "result": job.result.model_dump() if job.result else None,
            "error": job.error,
            "created_at": job.created_at,
            "started_at": job.started_at,
            "completed_at": job.completed_at,
            "report": report.model_dump() if report is not None else None,
        }

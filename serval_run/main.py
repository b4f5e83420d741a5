"""
Serval Run API

FastAPI application for submitting test runs and following their jobs.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import List, Optional

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import ServalSettings, get_settings
from .control_plane.errors import (
    InvalidTransitionError,
    JobNotFoundError,
    JobValidationError,
    ServalError,
)
from .control_plane.job import Job, JobLevel, TargetConfig, TestCase
from .control_plane.job_orchestrator import JobOrchestrator
from .control_plane.job_queue import JobQueue, create_job_queue
from .control_plane.planner import TestRunRequest
from .control_plane.result_handler import ResultHandler
from .database import Database
from .logging_setup import setup_logging

logger = structlog.get_logger(__name__)


class SubmitJobRequest(BaseModel):
    level: JobLevel = JobLevel.SCENARIO
    target_config: TargetConfig
    test_cases: List[TestCase]
    max_retries: Optional[int] = Field(default=None, ge=0)


ERROR_STATUS = {
    JobNotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    JobValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


def job_payload(job: Job) -> dict:
    return job.model_dump(mode="json", exclude={"test_cases"}) | {"test_case_count": len(job.test_cases)}


def create_app(
    settings: Optional[ServalSettings] = None,
    queue: Optional[JobQueue] = None,
    database: Optional[Database] = None,
) -> FastAPI:
    """
    Build the API application.

    ``queue`` and ``database`` default to the ones described by
    ``settings``; tests pass their own.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        FastAPI lifespan: startup and shutdown.

        - Initialize database tables
        - Create orchestrator
        - Start the embedded worker when enabled
        - Cleanup on shutdown
        """
        logger.info("serval_api_starting", backend=settings.queue_backend)
        db = database or Database(settings)
        job_queue = queue or create_job_queue(settings)
        await db.init_models()

        app.state.orchestrator = JobOrchestrator(
            job_queue,
            ResultHandler(db),
            default_max_retries=settings.job_max_retries,
            default_timeout=settings.default_request_timeout,
        )

        worker = None
        worker_task = None
        if settings.api_embedded_worker:
            from .worker import build_worker

            worker = build_worker(settings, job_queue, db)
            worker_task = asyncio.create_task(worker.run())
            logger.info("embedded_worker_started", worker_id=worker.worker_id)

        logger.info("serval_api_ready", embedded_worker=worker is not None)
        yield

        logger.info("serval_api_shutting_down")
        if worker is not None:
            worker.stop()
            await worker_task
        if queue is None:
            await job_queue.close()
        if database is None:
            await db.dispose()
        logger.info("serval_api_stopped")

    app = FastAPI(
        title="Serval Run API",
        description="""
    Asynchronous HTTP API test execution.

    ## Features

    * **Test runs**: Submit scenario, API or collection runs as queued jobs
    * **Job Management**: Follow, cancel, requeue and delete jobs
    * **Reports**: Pass/fail counters and pass rate per run

    ## Identity

    Callers identify themselves with the `X-User-Id` header; authentication
    happens in front of this service.
    """,
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.exception_handler(ServalError)
    async def serval_error_handler(request: Request, exc: ServalError):
        code = next(
            (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)),
            status.HTTP_503_SERVICE_UNAVAILABLE,
        )
        if code >= 500:
            logger.error("request_failed", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=code, content={"detail": str(exc)})

    def get_orchestrator(request: Request) -> JobOrchestrator:
        """Dependency to get orchestrator instance."""
        orchestrator = getattr(request.app.state, "orchestrator", None)
        if orchestrator is None:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Orchestrator not initialized",
            )
        return orchestrator

    def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
        if not x_user_id:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing X-User-Id header",
            )
        return x_user_id

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": "serval-run",
            "queue_backend": settings.queue_backend,
            "embedded_worker": settings.api_embedded_worker,
        }

    @app.post("/api/v1/jobs", status_code=status.HTTP_201_CREATED)
    async def create_job(
        body: SubmitJobRequest,
        user_id: str = Depends(get_user_id),
        orch: JobOrchestrator = Depends(get_orchestrator),
    ):
        """
        Submit explicit test cases as one job.

        Returns:
            The queued job and its report id
        """
        job = await orch.submit_job(
            user_id=user_id,
            level=body.level,
            target_config=body.target_config,
            test_cases=body.test_cases,
            max_retries=body.max_retries,
        )
        logger.info("job_submitted", job_id=job.id, user_id=user_id, cases=len(job.test_cases))
        return job_payload(job)

    @app.post("/api/v1/test-runs", status_code=status.HTTP_201_CREATED)
    async def create_test_run(
        body: TestRunRequest,
        user_id: str = Depends(get_user_id),
        orch: JobOrchestrator = Depends(get_orchestrator),
    ):
        """Submit a scenario, API or collection run."""
        job = await orch.submit_plan(user_id, body)
        logger.info("test_run_submitted", job_id=job.id, level=job.level.value, cases=len(job.test_cases))
        return job_payload(job)

    @app.get("/api/v1/jobs")
    async def list_jobs(
        limit: int = Query(default=20, ge=1, le=100),
        user_id: str = Depends(get_user_id),
        orch: JobOrchestrator = Depends(get_orchestrator),
    ):
        jobs = await orch.list_jobs(user_id, limit)
        return {"jobs": [job_payload(job) for job in jobs], "count": len(jobs)}

    @app.get("/api/v1/jobs/{job_id}")
    async def get_job_status(
        job_id: str,
        user_id: str = Depends(get_user_id),
        orch: JobOrchestrator = Depends(get_orchestrator),
    ):
        """Get job status, progress and report counters."""
        return await orch.get_job_status(user_id, job_id)

    @app.post("/api/v1/jobs/{job_id}/cancel")
    async def cancel_job(
        job_id: str,
        user_id: str = Depends(get_user_id),
        orch: JobOrchestrator = Depends(get_orchestrator),
    ):
        job = await orch.cancel_job(user_id, job_id)
        return job_payload(job)

    @app.post("/api/v1/jobs/{job_id}/requeue")
    async def requeue_job(
        job_id: str,
        user_id: str = Depends(get_user_id),
        orch: JobOrchestrator = Depends(get_orchestrator),
    ):
        job = await orch.requeue_job(user_id, job_id)
        return job_payload(job)

    @app.delete("/api/v1/jobs/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_job(
        job_id: str,
        user_id: str = Depends(get_user_id),
        orch: JobOrchestrator = Depends(get_orchestrator),
    ):
        await orch.delete_job(user_id, job_id)

    @app.get("/api/v1/queue/stats")
    async def get_queue_stats(orch: JobOrchestrator = Depends(get_orchestrator)):
        """Get queue statistics."""
        return {"pending": await orch.queue_length(), "backend": settings.queue_backend}

    @app.get("/api/v1/reports/{report_id}")
    async def get_report(
        report_id: str,
        user_id: str = Depends(get_user_id),
        orch: JobOrchestrator = Depends(get_orchestrator),
    ):
        report = await orch.get_report(user_id, report_id)
        if report is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Report {report_id} not found",
            )
        return report.model_dump(mode="json")

    return app


app = create_app()


def main() -> None:
    import uvicorn

    settings = get_settings()
    setup_logging(settings.log_level)
    uvicorn.run(
        "serval_run.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


if __name__ == "__main__":
    main()

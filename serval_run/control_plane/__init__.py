"""
Control Plane Core

Job records, queue backends, the test executor, result handling and the
worker loop.
"""

from .errors import (
    InvalidTransitionError,
    JobNotFoundError,
    JobValidationError,
    QueueBackendError,
    ResultStoreError,
    ServalError,
)
from .executor import TestExecutor
from .job import Job, JobLevel, JobResult, JobStatus, TargetConfig, TestCase
from .job_orchestrator import JobOrchestrator
from .job_queue import JobQueue, create_job_queue
from .memory_queue import InMemoryJobQueue
from .redis_queue import RedisJobQueue
from .result_handler import ResultHandler
from .worker_loop import Worker

__all__ = [
    "InMemoryJobQueue",
    "InvalidTransitionError",
    "Job",
    "JobLevel",
    "JobNotFoundError",
    "JobOrchestrator",
    "JobQueue",
    "JobResult",
    "JobStatus",
    "JobValidationError",
    "QueueBackendError",
    "RedisJobQueue",
    "ResultHandler",
    "ResultStoreError",
    "ServalError",
    "TargetConfig",
    "TestCase",
    "TestExecutor",
    "Worker",
    "create_job_queue",
]

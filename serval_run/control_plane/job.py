"""
Job Records

Queue payload types: the Job submitted to the queue, its target
configuration, the test cases it expands to, and the completion result.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, PyEnum):
    """Job lifecycle status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD = "dead"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.DEAD, JobStatus.CANCELLED)


class JobLevel(str, PyEnum):
    """How many test cases a job spans."""
    SCENARIO = "scenario"
    API = "api"
    COLLECTION = "collection"


class TargetConfig(BaseModel):
    """Request template shared by every test case of a job."""
    method: str = "GET"
    domain: str
    endpoint: str = "/"
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float = 30.0
    body: Optional[Any] = None


class TestCase(BaseModel):
    """
    One (scenario, example row) pair executed as a single request.

    ``method``, ``endpoint``, ``headers`` and ``body`` override the job's
    target config for this case; api and collection level jobs use them to
    address several endpoints from one job.
    """
    __test__ = False

    response_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    api_id: str
    scenario_id: str
    example_index: int = 0
    params: Dict[str, Any] = Field(default_factory=dict)
    expected_status: int
    expected_body: Optional[Any] = None
    method: Optional[str] = None
    endpoint: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    body: Optional[Any] = None


class JobResult(BaseModel):
    """Result payload stored on a completed job."""
    report_id: str
    success_count: int = 0
    fail_count: int = 0


class Job(BaseModel):
    """Unit of asynchronous test-execution work."""
    id: Optional[str] = None
    user_id: str
    level: JobLevel = JobLevel.SCENARIO
    report_id: Optional[str] = None
    target_config: TargetConfig
    test_cases: List[TestCase] = Field(default_factory=list)
    status: JobStatus = JobStatus.PENDING
    retry_count: int = 0
    max_retries: int = 3
    result: Optional[JobResult] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_retry_budget(self) -> "Job":
        if self.max_retries < 0:
            raise ValueError("max_retries must not be negative")
        if not 0 <= self.retry_count <= self.max_retries:
            raise ValueError("retry_count must be between 0 and max_retries")
        return self

"""
Control Plane Data Models

Report and Response tables written by the result handler. A report is
provisioned with the number of responses it expects and is finished once
that many responses have been recorded.
"""
import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Boolean, Column, DateTime, JSON
from sqlmodel import Field, SQLModel

from .job import utcnow


class Report(SQLModel, table=True):
    """
    Aggregate outcome of one job.

    ``response_count``, ``success_count`` and ``fail_count`` are only ever
    changed with in-database increments.
    """
    __tablename__ = "reports"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    job_id: Optional[str] = Field(default=None, index=True, description="Job that fills this report")
    user_id: Optional[str] = Field(default=None, index=True)
    report_level: str = Field(default="scenario", description="scenario, api or collection")
    report_type: Optional[str] = Field(default=None)
    expected_count: int = Field(description="Number of responses provisioned for the report")
    response_count: int = Field(default=0)
    success_count: int = Field(default=0)
    fail_count: int = Field(default=0)
    pass_rate: Optional[float] = Field(default=None, description="Percentage, two decimals")
    finished: bool = Field(default=False, index=True)
    calculated: bool = Field(default=False)
    created_at: datetime = Field(
        default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    finished_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )


class ResponseRecord(SQLModel, table=True):
    """One test case outcome. ``id`` is the test case's ``response_id``."""
    __tablename__ = "responses"

    id: str = Field(primary_key=True)
    report_id: str = Field(foreign_key="reports.id", index=True)
    api_id: str = Field(index=True)
    scenario_id: str = Field(index=True)
    example_index: int
    response_data: Optional[Any] = Field(default=None, sa_column=Column(JSON, nullable=True))
    response_status: int = Field(default=0, description="0 when no response was received")
    passed: bool = Field(sa_column=Column("pass", Boolean, nullable=False))
    error_message: Optional[str] = Field(default=None)
    request_time: datetime = Field(
        default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    request_duration_ms: Optional[int] = Field(default=None)

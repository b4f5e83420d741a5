"""
Result Handler

Persists per-test-case outcomes and keeps the owning report's counters.
Counters are bumped with in-database increments, and the report is marked
finished by a conditional update, so parallel test cases of one job can
record concurrently without losing counts or finishing twice.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import select

from .errors import JobValidationError, ResultStoreError
from .job import JobLevel, TestCase, utcnow
from .models import Report, ResponseRecord

logger = logging.getLogger(__name__)


@dataclass
class CaseOutcome:
    """What happened when one test case was executed."""
    passed: bool
    status_code: int = 0
    body: Optional[Any] = None
    error_message: Optional[str] = None
    duration_ms: int = 0
    request_time: datetime = field(default_factory=utcnow)


class ResultHandler:
    """
    Records test case outcomes against a report.

    Uses the relational store as the single source of truth; every method
    opens its own session.
    """

    def __init__(self, db):
        """
        Initialize result handler.

        Args:
            db: Database instance (not just engine)
        """
        self.db = db

    async def provision_report(
        self,
        expected_count: int,
        level: JobLevel = JobLevel.SCENARIO,
        job_id: Optional[str] = None,
        report_type: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Report:
        """
        Create an empty report expecting ``expected_count`` responses.

        Args:
            expected_count: Number of test cases the job will record
            level: Job level the report aggregates
            job_id: Optional job reference
            report_type: Free-form report type label
            user_id: Owner of the job

        Returns:
            The stored Report
        """
        if expected_count < 1:
            raise JobValidationError("A report must expect at least one response")
        report = Report(
            job_id=job_id,
            user_id=user_id,
            report_level=JobLevel(level).value,
            report_type=report_type or JobLevel(level).value,
            expected_count=expected_count,
        )
        try:
            async with self.db.session() as session:
                session.add(report)
                await session.commit()
                await session.refresh(report)
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Error provisioning report: {e}")
            raise ResultStoreError(f"Could not provision report: {e}") from e

        logger.info(f"Provisioned report {report.id} expecting {expected_count} responses")
        return report

    async def record(self, report_id: str, case: TestCase, outcome: CaseOutcome) -> bool:
        """
        Persist one outcome and bump the report counters.

        Recording is idempotent per ``case.response_id``: a case recorded by
        an earlier attempt of the same job is not counted twice.

        Args:
            report_id: Report the outcome belongs to
            case: The executed test case
            outcome: Result of executing it

        Returns:
            True if the outcome was recorded, False if it already was
        """
        row = ResponseRecord(
            id=case.response_id,
            report_id=report_id,
            api_id=case.api_id,
            scenario_id=case.scenario_id,
            example_index=case.example_index,
            response_data=outcome.body,
            response_status=outcome.status_code,
            passed=outcome.passed,
            error_message=outcome.error_message,
            request_time=outcome.request_time,
            request_duration_ms=outcome.duration_ms,
        )
        try:
            async with self.db.session() as session:
                session.add(row)
                try:
                    await session.flush()
                except IntegrityError:
                    await session.rollback()
                    existing = await session.get(ResponseRecord, case.response_id)
                    if existing is not None:
                        if existing.report_id != report_id:
                            raise JobValidationError(
                                f"Response {case.response_id} belongs to report {existing.report_id}"
                            )
                        logger.info(
                            f"Response {case.response_id} already recorded for report {report_id}"
                        )
                        return False
                    raise JobValidationError(f"Report {report_id} does not exist")

                statement = (
                    update(Report)
                    .where(Report.id == report_id)
                    .values(
                        response_count=Report.response_count + 1,
                        success_count=Report.success_count + (1 if outcome.passed else 0),
                        fail_count=Report.fail_count + (0 if outcome.passed else 1),
                    )
                    .returning(
                        Report.response_count,
                        Report.expected_count,
                        Report.success_count,
                        Report.fail_count,
                    )
                    .execution_options(synchronize_session=False)
                )
                counters = (await session.execute(statement)).one_or_none()
                if counters is None:
                    await session.rollback()
                    raise JobValidationError(f"Report {report_id} does not exist")

                if counters.response_count >= counters.expected_count:
                    await self._finish(session, report_id, counters.success_count, counters.fail_count)
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Error recording response {case.response_id}: {e}")
            raise ResultStoreError(f"Could not record response for report {report_id}: {e}") from e

        return True

    async def _finish(self, session, report_id: str, success_count: int, fail_count: int) -> None:
        total = success_count + fail_count
        pass_rate = round(success_count * 100 / total, 2) if total else 0.0
        result = await session.execute(
            update(Report)
            .where(Report.id == report_id, Report.finished.is_(False))
            .values(finished=True, calculated=True, pass_rate=pass_rate, finished_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(
                f"Report {report_id} finished: passed={success_count} "
                f"failed={fail_count} pass_rate={pass_rate}"
            )

    async def get_report(self, report_id: str) -> Optional[Report]:
        try:
            async with self.db.session() as session:
                return await session.get(Report, report_id)
        except (SQLAlchemyError, OSError) as e:
            raise ResultStoreError(f"Could not load report {report_id}: {e}") from e

    async def is_report_complete(self, report_id: str) -> bool:
        """Whether the recorded response count reached the provisioned total."""
        report = await self.get_report(report_id)
        if report is None:
            return False
        return report.response_count >= report.expected_count

    async def list_responses(self, report_id: str) -> List[ResponseRecord]:
        try:
            async with self.db.session() as session:
                result = await session.execute(
                    select(ResponseRecord)
                    .where(ResponseRecord.report_id == report_id)
                    .order_by(ResponseRecord.scenario_id, ResponseRecord.example_index)
                )
                return list(result.scalars().all())
        except (SQLAlchemyError, OSError) as e:
            raise ResultStoreError(f"Could not list responses for report {report_id}: {e}") from e

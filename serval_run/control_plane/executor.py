"""
Test Executor

Turns a dequeued job into HTTP requests. Every test case is resolved into a
concrete request before anything is sent, then the cases run with bounded
parallelism and each outcome is handed to the result handler.

Outcome semantics:
- COMPLETED: every case ran, whether it passed or failed
- CANCELLED: a cancel request was observed between cases
- JobValidationError: the job cannot be executed (never retried)
- QueueBackendError / ResultStoreError: infrastructure fault (retried)
"""
import asyncio
import logging
import time
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from .errors import JobValidationError
from .job import Job, JobLevel, JobResult, JobStatus, TargetConfig, TestCase
from .result_handler import CaseOutcome, ResultHandler
from .substitution import substitute, substitute_all

logger = logging.getLogger(__name__)

SUPPORTED_METHODS = frozenset({"GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"})
BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})


@dataclass
class PreparedRequest:
    """A test case with every placeholder resolved."""
    case: TestCase
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[Any] = None


@dataclass
class ExecutionResult:
    status: JobStatus
    result: JobResult
    executed: int = 0
    skipped: int = 0


def json_contains(actual: Any, expected: Any) -> bool:
    """
    Subset comparison of two JSON values.

    Objects match when every expected key is present with a matching value;
    arrays match when each expected item matches some actual item; anything
    else compares by equality.
    """
    if isinstance(expected, dict):
        if not isinstance(actual, dict):
            return False
        return all(
            key in actual and json_contains(actual[key], value)
            for key, value in expected.items()
        )
    if isinstance(expected, list):
        if not isinstance(actual, list):
            return False
        return all(
            any(json_contains(item, wanted) for item in actual)
            for wanted in expected
        )
    # JSON booleans are not numbers.
    if isinstance(expected, bool) or isinstance(actual, bool):
        return type(actual) is type(expected) and actual == expected
    return actual == expected


def check_level(job: Job) -> None:
    """Reject jobs whose cases do not fit the declared level."""
    level = JobLevel(job.level)
    if level is JobLevel.COLLECTION:
        return
    api_ids = {case.api_id for case in job.test_cases}
    if len(api_ids) > 1:
        raise JobValidationError(
            f"{level.value} level job spans several APIs: {', '.join(sorted(api_ids))}"
        )
    if level is JobLevel.SCENARIO:
        scenario_ids = {case.scenario_id for case in job.test_cases}
        if len(scenario_ids) > 1:
            raise JobValidationError(
                f"scenario level job spans several scenarios: {', '.join(sorted(scenario_ids))}"
            )


def prepare_request(target: TargetConfig, case: TestCase) -> PreparedRequest:
    """
    Resolve one test case against the job's target config.

    Per-case overrides win over the target config; headers are merged.
    Methods that carry a body send the body template, or the example
    parameters when no template is given.

    Raises:
        JobValidationError: unsupported method or unresolved placeholder
    """
    method = (case.method or target.method).upper()
    if method not in SUPPORTED_METHODS:
        raise JobValidationError(f"Unsupported HTTP method: {method}")

    endpoint = case.endpoint if case.endpoint is not None else target.endpoint
    path = substitute(endpoint, case.params)
    headers = substitute_all({**target.headers, **(case.headers or {})}, case.params)

    body = None
    if method in BODY_METHODS:
        template = case.body if case.body is not None else target.body
        if template is not None:
            body = substitute_all(template, case.params)
        elif case.params:
            body = dict(case.params)

    return PreparedRequest(
        case=case,
        method=method,
        url=f"{target.domain.rstrip('/')}{path}",
        headers=headers,
        body=body,
    )


def evaluate_response(case: TestCase, response: httpx.Response) -> CaseOutcome:
    """Compare a response with the case's expectations."""
    body = None
    decoded = False
    if response.content:
        try:
            body = response.json()
            decoded = True
        except ValueError:
            body = None

    if response.status_code != case.expected_status:
        return CaseOutcome(
            passed=False,
            status_code=response.status_code,
            body=body,
            error_message=f"Expected status {case.expected_status}, got {response.status_code}",
        )

    if case.expected_body is not None:
        if not decoded:
            return CaseOutcome(
                passed=False,
                status_code=response.status_code,
                error_message="Response body is not valid JSON",
            )
        if not json_contains(body, case.expected_body):
            return CaseOutcome(
                passed=False,
                status_code=response.status_code,
                body=body,
                error_message=(
                    f"Response body does not match expected. "
                    f"Expected: {case.expected_body}, Got: {body}"
                ),
            )

    return CaseOutcome(passed=True, status_code=response.status_code, body=body)


class TestExecutor:
    """
    Executes jobs against their target APIs.

    Responsibilities:
    1. Validate the job and resolve every request up front
    2. Send requests with at most ``concurrency`` in flight
    3. Stop starting new cases once the job is cancelled
    4. Record each outcome through the result handler
    """
    __test__ = False

    def __init__(
        self,
        queue,
        result_handler: ResultHandler,
        concurrency: int = 4,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.queue = queue
        self.result_handler = result_handler
        self.concurrency = concurrency
        self._client = client

    async def execute(self, job: Job) -> ExecutionResult:
        """
        Run every test case of ``job``.

        Args:
            job: A job in RUNNING state with a provisioned report

        Returns:
            ExecutionResult with COMPLETED or CANCELLED status
        """
        if not job.report_id:
            raise JobValidationError(f"Job {job.id} has no report to record into")
        if not job.test_cases:
            raise JobValidationError(f"Job {job.id} has no test cases")
        check_level(job)
        requests = [prepare_request(job.target_config, case) for case in job.test_cases]

        # Cases recorded by an earlier attempt are not sent again.
        recorded = {row.id for row in await self.result_handler.list_responses(job.report_id)}
        todo = [request for request in requests if request.case.response_id not in recorded]
        if recorded:
            logger.info(
                f"Job {job.id} resuming: {len(requests) - len(todo)} of "
                f"{len(requests)} cases already recorded"
            )

        cancelled = asyncio.Event()
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(request: PreparedRequest) -> bool:
            async with semaphore:
                if cancelled.is_set() or await self._is_cancelled(job):
                    cancelled.set()
                    return False
                outcome = await self._send(client, request, job.target_config.timeout_seconds)
                await self.result_handler.record(job.report_id, request.case, outcome)
                return True

        logger.info(f"Executing job {job.id}: {len(todo)} case(s), concurrency {self.concurrency}")
        async with self._client_scope() as client:
            results = await asyncio.gather(*(run(r) for r in todo), return_exceptions=True)

        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            for error in errors[1:]:
                logger.error(f"Job {job.id} case error: {error!r}")
            raise errors[0]

        executed = sum(1 for r in results if r)
        report = await self.result_handler.get_report(job.report_id)
        if report is None:
            raise JobValidationError(f"Report {job.report_id} does not exist")
        result = JobResult(
            report_id=job.report_id,
            success_count=report.success_count,
            fail_count=report.fail_count,
        )

        if cancelled.is_set():
            logger.info(f"Job {job.id} cancelled after {executed} case(s)")
            return ExecutionResult(JobStatus.CANCELLED, result, executed, len(todo) - executed)
        return ExecutionResult(JobStatus.COMPLETED, result, executed, len(requests) - len(todo))

    async def _is_cancelled(self, job: Job) -> bool:
        if self.queue is None or job.id is None:
            return False
        current = await self.queue.get_job(job.id)
        return current is None or current.status is JobStatus.CANCELLED

    async def _send(
        self,
        client: httpx.AsyncClient,
        request: PreparedRequest,
        timeout: float,
    ) -> CaseOutcome:
        started = time.perf_counter()
        try:
            response = await client.request(
                request.method,
                request.url,
                headers=request.headers or None,
                json=request.body,
                timeout=timeout,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            logger.warning(f"Request {request.method} {request.url} failed: {e!r}")
            return CaseOutcome(
                passed=False,
                error_message=f"HTTP request failed: {e!r}",
                duration_ms=elapsed_ms,
            )

        outcome = evaluate_response(request.case, response)
        outcome.duration_ms = int((time.perf_counter() - started) * 1000)
        return outcome

    def _client_scope(self):
        if self._client is not None:
            return nullcontext(self._client)
        return httpx.AsyncClient(
            limits=httpx.Limits(max_connections=self.concurrency),
            follow_redirects=True,
        )


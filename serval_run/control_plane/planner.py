"""
Test Run Planner

Expands scenario, API and collection definitions into the flat test case
list a job carries. An API owns its method, endpoint and headers; each of
its scenarios owns a request body template and example rows, and every
example row becomes one test case.
"""
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, model_validator

from .errors import JobValidationError
from .job import JobLevel, TargetConfig, TestCase


class ExampleDefinition(BaseModel):
    """One row of a scenario's examples table."""
    params: Dict[str, Any] = Field(default_factory=dict)
    expected_status: int = 200
    expected_body: Optional[Any] = None


class ScenarioDefinition(BaseModel):
    id: str
    name: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None
    examples: List[ExampleDefinition] = Field(default_factory=list)


class ApiDefinition(BaseModel):
    id: str
    name: Optional[str] = None
    method: str = "GET"
    endpoint: str = "/"
    headers: Dict[str, str] = Field(default_factory=dict)
    scenarios: List[ScenarioDefinition] = Field(default_factory=list)


class CollectionDefinition(BaseModel):
    id: str
    name: Optional[str] = None
    apis: List[ApiDefinition] = Field(default_factory=list)


class TestRunRequest(BaseModel):
    """
    A test run against one environment.

    ``api`` is required for scenario and api level runs, ``scenario_id``
    picks the scenario for a scenario level run, and ``collection`` is
    required for collection level runs.
    """
    __test__ = False

    level: JobLevel
    domain: str
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    auth_token: Optional[str] = None
    custom_headers: Dict[str, str] = Field(default_factory=dict)
    api: Optional[ApiDefinition] = None
    scenario_id: Optional[str] = None
    collection: Optional[CollectionDefinition] = None
    max_retries: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _check_target(self) -> "TestRunRequest":
        if self.level is JobLevel.COLLECTION:
            if self.collection is None:
                raise ValueError("collection level runs need a collection")
        elif self.api is None:
            raise ValueError(f"{self.level.value} level runs need an api")
        if self.level is JobLevel.SCENARIO and not self.scenario_id:
            raise ValueError("scenario level runs need a scenario_id")
        return self


def scenario_cases(api: ApiDefinition, scenario: ScenarioDefinition) -> List[TestCase]:
    headers = {**api.headers, **scenario.headers}
    return [
        TestCase(
            api_id=api.id,
            scenario_id=scenario.id,
            example_index=index,
            params=example.params,
            expected_status=example.expected_status,
            expected_body=example.expected_body,
            method=api.method,
            endpoint=api.endpoint,
            headers=headers or None,
            body=scenario.body,
        )
        for index, example in enumerate(scenario.examples)
    ]


def api_cases(api: ApiDefinition) -> List[TestCase]:
    cases: List[TestCase] = []
    for scenario in api.scenarios:
        cases.extend(scenario_cases(api, scenario))
    return cases


def collection_cases(collection: CollectionDefinition) -> List[TestCase]:
    cases: List[TestCase] = []
    for api in collection.apis:
        cases.extend(api_cases(api))
    return cases


def build_plan(run: TestRunRequest, default_timeout: float = 30.0) -> Tuple[TargetConfig, List[TestCase]]:
    """
    Build the target config and test cases for a test run.

    Args:
        run: The requested test run
        default_timeout: Request timeout when the run does not set one

    Returns:
        (target_config, test_cases)

    Raises:
        JobValidationError: unknown scenario or nothing to run
    """
    headers = dict(run.custom_headers)
    if run.auth_token:
        headers["Authorization"] = f"Bearer {run.auth_token}"
    target = TargetConfig(
        domain=run.domain,
        headers=headers,
        timeout_seconds=run.timeout_seconds or default_timeout,
    )

    if run.level is JobLevel.SCENARIO:
        scenario = next((s for s in run.api.scenarios if s.id == run.scenario_id), None)
        if scenario is None:
            raise JobValidationError(f"Scenario {run.scenario_id} not found in API {run.api.id}")
        cases = scenario_cases(run.api, scenario)
        if not cases:
            raise JobValidationError(f"Scenario {scenario.id} has no examples")
    elif run.level is JobLevel.API:
        cases = api_cases(run.api)
        if not cases:
            raise JobValidationError(f"No scenarios with examples found for API {run.api.id}")
    else:
        cases = collection_cases(run.collection)
        if not cases:
            raise JobValidationError(f"Collection {run.collection.id} has nothing to run")

    if run.level is not JobLevel.COLLECTION:
        target.method = run.api.method
        target.endpoint = run.api.endpoint
    return target, cases

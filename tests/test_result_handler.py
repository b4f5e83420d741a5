import asyncio

import pytest

from serval_run.control_plane.errors import JobValidationError
from serval_run.control_plane.job import JobLevel
from serval_run.control_plane.result_handler import CaseOutcome

from tests.factories import make_case


class TestProvisioning:
    async def test_provision_report(self, result_handler):
        report = await result_handler.provision_report(3, JobLevel.API, job_id="job-1", user_id="u1")

        stored = await result_handler.get_report(report.id)
        assert stored.expected_count == 3
        assert stored.report_level == "api"
        assert stored.user_id == "u1"
        assert stored.response_count == 0
        assert not stored.finished

    async def test_provision_requires_cases(self, result_handler):
        with pytest.raises(JobValidationError):
            await result_handler.provision_report(0)


class TestRecording:
    async def test_finishes_report_with_pass_rate(self, result_handler):
        report = await result_handler.provision_report(2)

        await result_handler.record(report.id, make_case(index=0), CaseOutcome(passed=True, status_code=200))
        assert not await result_handler.is_report_complete(report.id)
        await result_handler.record(
            report.id,
            make_case(index=1),
            CaseOutcome(passed=False, status_code=404, error_message="Expected status 200, got 404"),
        )

        stored = await result_handler.get_report(report.id)
        assert stored.response_count == 2
        assert stored.success_count == 1
        assert stored.fail_count == 1
        assert stored.pass_rate == 50.0
        assert stored.finished and stored.calculated
        assert stored.finished_at is not None
        assert await result_handler.is_report_complete(report.id)

    async def test_pass_rate_rounded_to_two_decimals(self, result_handler):
        report = await result_handler.provision_report(3)
        for index, passed in enumerate([True, False, False]):
            await result_handler.record(report.id, make_case(index=index), CaseOutcome(passed=passed))

        assert (await result_handler.get_report(report.id)).pass_rate == 33.33

    async def test_partial_report_is_not_finished(self, result_handler):
        report = await result_handler.provision_report(3)
        await result_handler.record(report.id, make_case(), CaseOutcome(passed=True))

        stored = await result_handler.get_report(report.id)
        assert stored.response_count == 1
        assert not stored.finished
        assert stored.pass_rate is None

    async def test_same_case_is_counted_once(self, result_handler):
        report = await result_handler.provision_report(2)
        case = make_case()

        assert await result_handler.record(report.id, case, CaseOutcome(passed=True))
        assert not await result_handler.record(report.id, case, CaseOutcome(passed=False))

        stored = await result_handler.get_report(report.id)
        assert stored.response_count == 1
        assert stored.success_count == 1

    async def test_response_id_from_another_report_is_rejected(self, result_handler):
        first = await result_handler.provision_report(1)
        second = await result_handler.provision_report(1)
        case = make_case()
        await result_handler.record(first.id, case, CaseOutcome(passed=True))

        with pytest.raises(JobValidationError):
            await result_handler.record(second.id, case, CaseOutcome(passed=True))

    async def test_unknown_report(self, result_handler):
        with pytest.raises(JobValidationError):
            await result_handler.record("missing", make_case(), CaseOutcome(passed=True))
        assert await result_handler.list_responses("missing") == []

    async def test_concurrent_records_are_not_lost(self, result_handler):
        report = await result_handler.provision_report(20)
        cases = [make_case(index=i) for i in range(20)]

        await asyncio.gather(*(
            result_handler.record(report.id, case, CaseOutcome(passed=case.example_index % 4 != 0))
            for case in cases
        ))

        stored = await result_handler.get_report(report.id)
        assert stored.response_count == 20
        assert stored.success_count == 15
        assert stored.fail_count == 5
        assert stored.pass_rate == 75.0
        assert stored.finished

    async def test_list_responses(self, result_handler):
        report = await result_handler.provision_report(2)
        await result_handler.record(
            report.id, make_case(index=1), CaseOutcome(passed=True, status_code=200, body={"ok": True})
        )
        await result_handler.record(report.id, make_case(index=0), CaseOutcome(passed=False, status_code=500))

        rows = await result_handler.list_responses(report.id)

        assert [row.example_index for row in rows] == [0, 1]
        assert rows[1].response_data == {"ok": True}
        assert rows[1].passed is True
        assert rows[0].response_status == 500

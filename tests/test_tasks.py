"""
PaySettle - Celery Task Tests

The async bodies of the payroll tasks, driven against the test database.
Results must be plain JSON-serializable dicts.
"""

import json
from uuid import UUID, uuid4

from paysettle.services.pay_run_service import PayRunService
from paysettle.tasks.payroll_tasks import _generate_pay_run, _process_pay_run

from conftest import create_payable_employee


class TestGeneratePayRunTask:

    async def test_generate_then_duplicate(self, session_factory, db_session, period):
        await create_payable_employee(db_session, "EMP-001", period)

        result = await _generate_pay_run(period.month, period.year, session_factory=session_factory)

        assert result["status"] == "generated"
        assert result["pay_run_code"] == "PR-2025-03-01"
        assert result["total_employees"] == 1
        assert result["total_net_pay"] == "98000.00"
        assert result["skipped"] == 0
        json.dumps(result)

        again = await _generate_pay_run(period.month, period.year, session_factory=session_factory)

        assert again["status"] == "error"
        assert again["code"] == "DUPLICATE_PERIOD"
        json.dumps(again)

    async def test_no_employees(self, session_factory, period):
        result = await _generate_pay_run(period.month, period.year, session_factory=session_factory)

        assert result["status"] == "error"
        assert result["code"] == "NO_ELIGIBLE_EMPLOYEES"


class TestProcessPayRunTask:

    async def test_process_approved_run(self, session_factory, db_session, period):
        await create_payable_employee(db_session, "EMP-001", period)
        generated = await _generate_pay_run(period.month, period.year, session_factory=session_factory)
        await PayRunService(db_session).approve_pay_run(UUID(generated["pay_run_id"]), approver_id=uuid4())

        result = await _process_pay_run(
            generated["pay_run_id"], str(uuid4()), "2025-03-31", session_factory=session_factory,
        )

        assert result == {
            "status": "processed",
            "pay_run_id": generated["pay_run_id"],
            "succeeded": 1,
            "failed": [],
        }

    async def test_draft_run_is_refused(self, session_factory, db_session, period):
        await create_payable_employee(db_session, "EMP-001", period)
        generated = await _generate_pay_run(period.month, period.year, session_factory=session_factory)

        result = await _process_pay_run(
            generated["pay_run_id"], str(uuid4()), "2025-03-31", session_factory=session_factory,
        )

        assert result["status"] == "error"
        assert result["code"] == "INVALID_TRANSITION"

    async def test_unknown_run(self, session_factory):
        result = await _process_pay_run(str(uuid4()), str(uuid4()), "2025-03-31", session_factory=session_factory)

        assert result["code"] == "PAY_RUN_NOT_FOUND"

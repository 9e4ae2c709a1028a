from datetime import date
from decimal import Decimal

import pytest

from payroll_api.common.errors import NotFoundError, StateError, ValidationError
from payroll_api.models.payroll.pay_run import EmployeePayrollDetail
from payroll_api.services import compensation_service, penalty_service, run_lifecycle

from conftest import JUNE_END, JUNE_START

D = Decimal


def _net(run, emp):
    return EmployeePayrollDetail.query.filter_by(run_id=run.id, employee_id=emp.id).one().net_pay


def test_create_item_validates(factory):
    c = factory.standard_setup()
    e = factory.employee(c, 9000)
    item = compensation_service.create_item(e.id, "signing_bonus", "1500.005")
    assert item.status == "pending"
    assert item.kind == "SIGNING_BONUS"
    assert item.amount == D("1500.01")

    with pytest.raises(ValidationError):
        compensation_service.create_item(e.id, "GIFT", 10)
    with pytest.raises(ValidationError):
        compensation_service.create_item(e.id, "SIGNING_BONUS", 0)
    with pytest.raises(NotFoundError):
        compensation_service.create_item(9999, "SIGNING_BONUS", 10)


def test_approve_recomputes_the_draft_run(factory):
    c = factory.standard_setup()
    e = factory.employee(c, 15000, hr_event="NEW_HIRE")
    other = factory.employee(c, 9000)
    item = factory.item(e, "SIGNING_BONUS", 5000)
    run = run_lifecycle.create_run(c.id, JUNE_START, JUNE_END)
    assert _net(run, e) == D("16200.00")

    item, runs = compensation_service.approve_item(item.id, actor_id=None, note="offer letter")
    assert item.status == "approved"
    assert item.decision_note == "offer letter"
    assert runs == [run.id]
    assert _net(run, e) == D("20700.00")

    run = run_lifecycle.get_run(run.id)
    assert run.total_net_pay == D("20700.00") + _net(run, other)


def test_decisions_are_idempotent_but_final(factory):
    c = factory.standard_setup()
    e = factory.employee(c, 9000)
    item = factory.item(e, "TERMINATION_BENEFIT", 5000)
    run_lifecycle.create_run(c.id, JUNE_START, JUNE_END)

    compensation_service.reject_item(item.id, note="duplicate")
    again, runs = compensation_service.reject_item(item.id)
    assert again.status == "rejected"
    assert runs == []

    with pytest.raises(StateError) as ei:
        compensation_service.approve_item(item.id)
    assert ei.value.current_state == "rejected"


def test_published_runs_are_not_recomputed(factory):
    c = factory.standard_setup()
    e = factory.employee(c, 9000)
    run = run_lifecycle.create_run(c.id, JUNE_START, JUNE_END)
    run_lifecycle.publish(run.id)
    before = _net(run, e)

    item = factory.item(e, "SIGNING_BONUS", 1000)
    _, runs = compensation_service.approve_item(item.id)
    assert runs == []
    assert _net(run, e) == before


def test_edit_only_while_pending(factory):
    c = factory.standard_setup()
    e = factory.employee(c, 9000)
    item = factory.item(e, "SIGNING_BONUS", 1000)

    item = compensation_service.edit_item(item.id, amount="1200", scheduled_payment_date=date(2025, 7, 1))
    assert item.amount == D("1200.00")
    assert item.scheduled_payment_date == date(2025, 7, 1)
    item = compensation_service.edit_item(item.id, clear_schedule=True)
    assert item.scheduled_payment_date is None
    with pytest.raises(ValidationError):
        compensation_service.edit_item(item.id)

    compensation_service.approve_item(item.id)
    with pytest.raises(StateError):
        compensation_service.edit_item(item.id, amount=5)


def test_bulk_approve_reports_each_item(factory):
    c = factory.standard_setup()
    e = factory.employee(c, 9000)
    a = factory.item(e, "SIGNING_BONUS", 1000)
    b = factory.item(e, "TERMINATION_BENEFIT", 2000, status="rejected")

    results = compensation_service.bulk_approve([a.id, b.id, 9999])
    assert [r["ok"] for r in results] == [True, False, False]
    assert results[0]["status"] == "approved"
    assert results[1]["code"] == "INVALID_STATE"
    assert results[2]["code"] == "NOT_FOUND"


def test_penalty_lands_in_the_draft_run(factory):
    c = factory.standard_setup()
    e = factory.employee(c, 9000)
    run = run_lifecycle.create_run(c.id, JUNE_START, JUNE_END)

    line = penalty_service.add_penalty(e.id, "Late return of equipment", "150")
    assert line.amount == D("150.00")
    assert _net(run, e) == D("10650.00")
    assert [l.id for l in penalty_service.list_penalties(e.id, include_settled=False)] == [line.id]

    with pytest.raises(ValidationError):
        penalty_service.add_penalty(e.id, " ", 10)

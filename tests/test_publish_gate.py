from datetime import date
from decimal import Decimal

import pytest

from payroll_api.common.errors import (
    ConfirmationRequired, ForbiddenError, PublishBlocked, StateError, ValidationError,
)
from payroll_api.extensions import db
from payroll_api.models.payroll.compensation import CompensationItem
from payroll_api.models.payroll.pay_run import EmployeePayrollDetail, Payslip
from payroll_api.models.payroll.penalty import PenaltyLine
from payroll_api.services import compensation_service, run_aggregator, run_lifecycle, run_review
from payroll_api.services.run_aggregator import compensation_inputs, penalty_inputs

from conftest import JUNE_END, JUNE_START

D = Decimal


def _slip(run, emp):
    return Payslip.query.filter_by(run_id=run.id, employee_id=emp.id).one()


def test_pending_item_blocks_publish_until_decided(factory):
    c = factory.standard_setup()
    e = factory.employee(c, 9000)
    item = factory.item(e, "SIGNING_BONUS", 1000)
    run = run_lifecycle.create_run(c.id, JUNE_START, JUNE_END)

    gate = run_lifecycle.evaluate_publish_gate(run)
    assert gate.blocked
    assert gate.violations == {"pending_compensation_items": [e.id]}

    with pytest.raises(PublishBlocked) as ei:
        run_lifecycle.publish(run.id)
    assert ei.value.violations == {"pending_compensation_items": [e.id]}
    assert run_lifecycle.get_run(run.id).status == "draft"

    compensation_service.approve_item(item.id)
    run = run_lifecycle.publish(run.id)
    assert run.status == "published"
    assert run.total_gross == D("13000.00")


def test_item_scheduled_after_the_period_does_not_block(factory):
    c = factory.standard_setup()
    e = factory.employee(c, 9000)
    factory.item(e, "SIGNING_BONUS", 1000, scheduled=date(2025, 8, 1))
    run = run_lifecycle.create_run(c.id, JUNE_START, JUNE_END)
    assert not run_lifecycle.evaluate_publish_gate(run).blocked


def test_negative_net_blocks_until_corrected(factory):
    c = factory.company()
    factory.tax_rule("0.10")
    e = factory.employee(c, 5000)
    factory.penalty(e, "Equipment damage", 6000)
    run = run_lifecycle.create_run(c.id, JUNE_START, JUNE_END)
    assert run.total_net_pay == D("-1500.00")

    with pytest.raises(PublishBlocked) as ei:
        run_lifecycle.publish(run.id, confirm_bank_warnings=True, confirm_open_exceptions=True)
    assert ei.value.violations == {"negative_net_pay": [e.id]}

    detail = run_review.create_adjustment(run.id, e.id, "bonus", "2000", "Retention bonus")
    assert detail.net_pay == D("300.00")

    # the penalty still exceeds half of gross
    with pytest.raises(ConfirmationRequired) as ei:
        run_lifecycle.publish(run.id)
    assert ei.value.warnings == {"unresolved_exceptions": [e.id]}

    run = run_lifecycle.publish(run.id, confirm_open_exceptions=True)
    assert run.status == "published"


def test_missing_bank_needs_confirmation_and_stays_unpaid(factory):
    c = factory.standard_setup()
    ok_emp = factory.employee(c, 9000)
    no_bank = factory.employee(c, 9000, bank=None)
    specialist = factory.user("specialist@acme.test", ["payroll_specialist"])
    manager = factory.user("manager@acme.test", ["payroll_manager"])
    run = run_lifecycle.create_run(c.id, JUNE_START, JUNE_END)

    with pytest.raises(ConfirmationRequired) as ei:
        run_lifecycle.publish(run.id, specialist.id, confirm_bank_warnings=True)
    assert ei.value.warnings == {"unresolved_exceptions": [no_bank.id]}
    with pytest.raises(ConfirmationRequired) as ei:
        run_lifecycle.publish(run.id, specialist.id, confirm_open_exceptions=True)
    assert ei.value.warnings == {"missing_bank_details": [no_bank.id]}

    run = run_lifecycle.publish(run.id, specialist.id, confirm_bank_warnings=True, confirm_open_exceptions=True)
    assert run.published_by == specialist.id
    assert _slip(run, ok_emp).frozen_at is not None

    with pytest.raises(ForbiddenError):
        run_lifecycle.approve_run(run.id, specialist.id)
    run = run_lifecycle.approve_run(run.id, manager.id)
    assert run.status == "approved"
    assert run.approved_by == manager.id

    run = run_lifecycle.mark_processed(run.id, manager.id)
    assert run.status == "processed"
    assert run.payment_status == "processed"
    assert _slip(run, ok_emp).payment_status == "paid"
    assert _slip(run, no_bank).payment_status == "pending"
    assert [h.action for h in run_lifecycle.history(run.id)] == ["create", "publish", "approve", "process"]


def test_publish_refused_outside_draft(factory):
    c = factory.standard_setup()
    factory.employee(c, 9000)
    run = run_lifecycle.create_run(c.id, JUNE_START, JUNE_END)
    run_lifecycle.publish(run.id)
    with pytest.raises(StateError) as ei:
        run_lifecycle.publish(run.id)
    assert ei.value.current_state == "published"
    with pytest.raises(StateError):
        run_lifecycle.mark_processed(run.id, None)


def test_return_to_draft_reopens_editing(factory):
    c = factory.standard_setup()
    e = factory.employee(c, 9000)
    run = run_lifecycle.create_run(c.id, JUNE_START, JUNE_END)
    run_lifecycle.publish(run.id)

    with pytest.raises(StateError):
        run_review.create_adjustment(run.id, e.id, "bonus", "100", "Late fix")

    run = run_lifecycle.reject_run(run.id, None, reason="Missing overtime")
    assert run.status == "draft"
    assert run.published_by is None
    assert _slip(run, e).frozen_at is None

    detail = run_review.create_adjustment(run.id, e.id, "bonus", "100", "Overtime")
    assert detail.bonus == D("100.00")


def test_final_rejection_needs_a_reason(factory):
    c = factory.standard_setup()
    factory.employee(c, 9000)
    run = run_lifecycle.create_run(c.id, JUNE_START, JUNE_END)
    with pytest.raises(ValidationError):
        run_lifecycle.reject_run(run.id, None, reason="  ", final=True)
    run = run_lifecycle.reject_run(run.id, None, reason="Wrong period", final=True)
    assert run.status == "rejected"
    assert run.rejection_reason == "Wrong period"
    with pytest.raises(StateError):
        run_lifecycle.cancel_run(run.id, None)


def test_processing_consumes_items_and_penalties(factory):
    c = factory.standard_setup()
    a = factory.employee(c, 9000)
    b = factory.employee(c, 11000)
    item = factory.item(a, "TERMINATION_BENEFIT", 5000, status="approved")
    later = factory.item(a, "SIGNING_BONUS", 700, status="approved", scheduled=date(2025, 7, 15))
    line = factory.penalty(a, "Late", 150)
    run = run_lifecycle.create_run(c.id, JUNE_START, JUNE_END)
    run_lifecycle.publish(run.id)
    run_lifecycle.approve_run(run.id, None)

    with pytest.raises(ValidationError):
        run_lifecycle.mark_processed(run.id, None, failed_employee_ids=[9999])

    run = run_lifecycle.mark_processed(run.id, None, failed_employee_ids=[b.id])
    assert run.payment_status == "failed"
    assert _slip(run, a).payment_status == "paid"
    assert _slip(run, b).payment_status == "failed"

    assert db.session.get(CompensationItem, item.id).paid_run_id == run.id
    assert db.session.get(CompensationItem, later.id).paid_run_id is None
    assert db.session.get(PenaltyLine, line.id).settled_run_id == run.id

    july = run_lifecycle.create_run(c.id, date(2025, 7, 1), date(2025, 7, 31))
    assert [i.item_id for i in compensation_inputs(a.id, july)] == [later.id]
    assert penalty_inputs(a.id, july) == []


def test_publish_between_a_write_and_its_totals_refresh(factory, monkeypatch):
    c = factory.standard_setup()
    e = factory.employee(c, 9000)
    run = run_lifecycle.create_run(c.id, JUNE_START, JUNE_END)
    refresh = run_aggregator.recompute_aggregate
    published = []

    # the adjustment has committed its detail; publish gets the run lock first
    def publish_first(run_id):
        published.append(run_lifecycle.publish(run_id))
        return refresh(run_id)

    monkeypatch.setattr(run_aggregator, "recompute_aggregate", publish_first)
    run_review.create_adjustment(run.id, e.id, "bonus", 100, "late bonus")

    run = published[0]
    detail = EmployeePayrollDetail.query.filter_by(run_id=run.id, employee_id=e.id).one()
    assert run.status == "published"
    assert detail.bonus == D("100.00")
    assert run.total_gross == detail.gross_salary
    assert run.total_net_pay == detail.net_pay
    run_aggregator.verify_run_totals(run)

from decimal import Decimal

import pytest

from payroll_api.common.errors import StateError, ValidationError
from payroll_api.extensions import db
from payroll_api.models.payroll.run_exception import PayrollException
from payroll_api.services import exception_service, run_aggregator, run_lifecycle
from payroll_api.services.employee_snapshot import primary_bank_account
from payroll_api.services.run_aggregator import recompute

from conftest import JUNE_END, JUNE_START


def _setup(factory):
    c = factory.standard_setup()
    e = factory.employee(c, 9000, bank=None)
    factory.employee(c, 9000)
    run = run_lifecycle.create_run(c.id, JUNE_START, JUNE_END)
    return run, e


def test_details_show_what_needs_fixing(factory):
    run, e = _setup(factory)
    info = exception_service.exception_details(run.id, e.id)
    assert [x.type for x in info["exceptions"]] == ["MISSING_BANK_DETAILS"]
    assert info["requires_bank_details"] is True
    assert info["bank_details"]["status"] == "missing"


def test_resolution_needs_a_note(factory):
    run, e = _setup(factory)
    with pytest.raises(ValidationError):
        exception_service.resolve_employee_exceptions(run.id, e.id, "   ")
    assert len(exception_service.list_exceptions(run.id, "unresolved")) == 1


def test_bad_bank_details_are_refused(factory):
    run, e = _setup(factory)
    with pytest.raises(ValidationError):
        exception_service.resolve_employee_exceptions(
            run.id, e.id, "fixed", bank_details={"bank_name": "CIB", "account_number": "1"})


def test_resolving_with_bank_details_recomputes_and_sticks(factory):
    run, e = _setup(factory)
    assert run.exception_count == 1

    detail = exception_service.resolve_employee_exceptions(
        run.id, e.id, "Employee sent bank letter",
        bank_details={"bank_name": "NBE", "bank_account_number": "5550001112"})

    assert detail.bank_status == "valid"
    assert primary_bank_account(e.id).account_number == "5550001112"
    exc = PayrollException.query.filter_by(run_id=run.id, employee_id=e.id).one()
    assert exc.status == "resolved"
    assert exc.resolution_note == "Employee sent bank letter"
    assert run_lifecycle.get_run(run.id).exception_count == 0
    assert exception_service.list_exceptions(run.id, "unresolved") == []

    # nothing left to resolve
    resolved_at = exc.resolved_at
    exception_service.resolve_employee_exceptions(run.id, e.id, "again")
    assert db.session.get(PayrollException, exc.id).resolved_at == resolved_at

    run = run_lifecycle.publish(run.id)
    assert run.status == "published"


def test_resolved_exception_is_not_raised_again(factory):
    run, e = _setup(factory)
    exception_service.resolve_employee_exceptions(run.id, e.id, "Paid by cheque this month")

    # still no bank account; the resolution holds through later recomputes
    recompute(run.id, e.id)
    rows = PayrollException.query.filter_by(run_id=run.id, employee_id=e.id).all()
    assert [(x.type, x.status) for x in rows] == [("MISSING_BANK_DETAILS", "resolved")]
    assert run_lifecycle.get_run(run.id).exception_count == 0


def test_start_review_moves_open_to_in_progress(factory):
    run, e = _setup(factory)
    exc = exception_service.list_exceptions(run.id, "open")[0]
    exc = exception_service.start_review(run.id, exc.id, "calling HR")
    assert exc.status == "in_progress"
    assert run_lifecycle.get_run(run.id).exception_count == 1
    with pytest.raises(StateError):
        exception_service.start_review(run.id, exc.id, "again")
    with pytest.raises(ValidationError):
        exception_service.list_exceptions(run.id, "closed")


def test_resolving_in_a_published_run_only_refreshes_bank_status(factory):
    run, e = _setup(factory)
    run_lifecycle.publish(run.id, confirm_bank_warnings=True, confirm_open_exceptions=True)
    net_before = Decimal(str(exception_service.exception_details(run.id, e.id)["detail"].net_pay))

    detail = exception_service.resolve_employee_exceptions(
        run.id, e.id, "late bank letter", bank_details={"bank_name": "NBE", "account_number": "5550001112"})
    assert detail.bank_status == "valid"
    assert detail.net_pay == net_before
    assert run_lifecycle.get_run(run.id).status == "published"


def test_failed_resolution_keeps_bank_account_and_exception(factory, monkeypatch):
    run, e = _setup(factory)

    def failing_recompute(run, employee_id):
        raise RuntimeError("recompute failed")

    monkeypatch.setattr(run_aggregator, "recompute_in_session", failing_recompute)
    with pytest.raises(RuntimeError):
        exception_service.resolve_employee_exceptions(
            run.id, e.id, "Employee sent bank letter",
            bank_details={"bank_name": "NBE", "account_number": "5550001112"})

    assert primary_bank_account(e.id) is None
    rows = PayrollException.query.filter_by(run_id=run.id, employee_id=e.id).all()
    assert [(x.type, x.status) for x in rows] == [("MISSING_BANK_DETAILS", "open")]
    assert run_lifecycle.get_run(run.id).exception_count == 1

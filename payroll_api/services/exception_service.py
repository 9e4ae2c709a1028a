"""Review flow for payroll exceptions: list, details, start review, resolve."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, Optional

from payroll_api.extensions import db
from payroll_api.common.errors import NotFoundError, StateError, ValidationError
from payroll_api.models.employee import Employee
from payroll_api.models.employee_bank import EmployeeBankAccount
from payroll_api.models.payroll.pay_run import EmployeePayrollDetail, OPEN_RUN_STATUSES
from payroll_api.models.payroll.run_exception import EXCEPTION_STATUSES, PayrollException, UNRESOLVED
from payroll_api.services import run_aggregator
from payroll_api.services.employee_snapshot import (
    BANK_VALID, bank_status_for, clean_str, primary_bank_account,
)
from payroll_api.services.locks import employee_lock
from payroll_api.services.run_lifecycle import get_run

log = logging.getLogger(__name__)

BANK_EXCEPTION_TYPES = ("MISSING_BANK_DETAILS", "INVALID_BANK_DETAILS")


def _note(note) -> str:
    n = clean_str(note)
    if not n:
        raise ValidationError("A non-empty note is required")
    return n


def list_exceptions(run_id: int, status: Optional[str] = None) -> List[PayrollException]:
    get_run(run_id)
    q = PayrollException.query.filter(PayrollException.run_id == run_id)
    if status:
        if status == "unresolved":
            q = q.filter(PayrollException.status.in_(UNRESOLVED))
        elif status in EXCEPTION_STATUSES:
            q = q.filter(PayrollException.status == status)
        else:
            raise ValidationError(f"status must be one of {', '.join(EXCEPTION_STATUSES)} or 'unresolved'")
    return q.order_by(PayrollException.employee_id.asc(), PayrollException.id.asc()).all()


def exception_details(run_id: int, employee_id: int) -> Dict:
    """Exceptions of one employee plus the bank details a resolver would correct."""
    run = get_run(run_id)
    detail = EmployeePayrollDetail.query.filter_by(run_id=run_id, employee_id=employee_id).first()
    if detail is None:
        raise NotFoundError(f"Employee {employee_id} is not part of run {run.run_code}")
    rows = (PayrollException.query
            .filter_by(run_id=run_id, employee_id=employee_id)
            .order_by(PayrollException.id.asc())
            .all())
    bank = primary_bank_account(employee_id)
    requires_bank = any(e.type in BANK_EXCEPTION_TYPES and e.is_unresolved for e in rows)
    return {
        "run": run,
        "detail": detail,
        "exceptions": rows,
        "requires_bank_details": requires_bank,
        "bank_details": {
            "bank_name": bank.bank_name if bank else None,
            "account_number": bank.account_number if bank else None,
            "iban": bank.iban if bank else None,
            "swift_code": bank.swift_code if bank else None,
            "status": bank_status_for(bank.bank_name, bank.account_number) if bank else "missing",
        },
    }


def start_review(run_id: int, exception_id: int, note, actor_id: Optional[int] = None) -> PayrollException:
    note = _note(note)
    run = get_run(run_id)
    exc = PayrollException.query.filter_by(id=exception_id, run_id=run_id).first()
    if exc is None:
        raise NotFoundError(f"Exception {exception_id} not found in run {run.run_code}")
    if exc.status != "open":
        raise StateError(f"Exception {exception_id} is {exc.status}; only open exceptions can be picked up",
                         current_state=exc.status)
    exc.status = "in_progress"
    exc.review_note = note
    exc.reviewed_by = actor_id
    db.session.commit()
    return exc


def _validated_bank_details(bank_details: Dict) -> Dict:
    if not isinstance(bank_details, dict):
        raise ValidationError("bank_details must be an object")
    out = {
        "bank_name": clean_str(bank_details.get("bank_name")),
        "account_number": clean_str(bank_details.get("account_number") or bank_details.get("bank_account_number")),
        "iban": clean_str(bank_details.get("iban")),
        "swift_code": clean_str(bank_details.get("swift_code")),
    }
    if bank_status_for(out["bank_name"], out["account_number"]) != BANK_VALID:
        raise ValidationError("bank_details need a bank name and a well-formed account number",
                              {"bank_details": out})
    return out


def _store_bank_details(employee_id: int, values: Dict) -> EmployeeBankAccount:
    bank = primary_bank_account(employee_id)
    if bank is None:
        bank = EmployeeBankAccount(employee_id=employee_id, is_primary=True)
        db.session.add(bank)
    else:
        bank.is_primary = True
        bank.updated_at = datetime.utcnow()
    for k, v in values.items():
        if v is not None or k in ("bank_name", "account_number"):
            setattr(bank, k, v)
    return bank


def resolve_employee_exceptions(run_id: int, employee_id: int, note, actor_id: Optional[int] = None,
                                bank_details: Optional[Dict] = None) -> EmployeePayrollDetail:
    """
    Resolve every unresolved exception of one employee in one transaction,
    optionally correcting their primary bank account. In a draft run the
    employee is recomputed; later states only refresh the detail's bank status.
    """
    note = _note(note)
    values = _validated_bank_details(bank_details) if bank_details is not None else None
    if db.session.get(Employee, employee_id) is None:
        raise NotFoundError(f"Employee {employee_id} not found")

    with employee_lock(run_id, employee_id):
        try:
            run = run_aggregator.lock_run_for_write(run_id, allowed=OPEN_RUN_STATUSES)
            detail = EmployeePayrollDetail.query.filter_by(run_id=run_id, employee_id=employee_id).first()
            if detail is None:
                raise NotFoundError(f"Employee {employee_id} is not part of run {run.run_code}")

            pending = run_aggregator.unresolved_exceptions(run_id, employee_id)
            if not pending and values is None:
                db.session.rollback()
                return detail

            if values is not None:
                _store_bank_details(employee_id, values)

            now = datetime.utcnow()
            for exc in pending:
                exc.status = "resolved"
                exc.resolution_note = note
                exc.resolved_by = actor_id
                exc.resolved_at = now
            db.session.flush()

            if run.status == "draft":
                detail = run_aggregator.recompute_in_session(run, employee_id)
            elif values is not None:
                detail.bank_status = bank_status_for(values["bank_name"], values["account_number"])
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    run_aggregator.recompute_aggregate(run_id)
    log.info("run %s employee %s: %d exception(s) resolved by %s", run_id, employee_id, len(pending), actor_id)
    return db.session.get(EmployeePayrollDetail, detail.id)

"""Draft review: the specialist's view of a draft run and ad-hoc adjustments."""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Dict, List, Optional

from payroll_api.extensions import db
from payroll_api.common.errors import NotFoundError, ValidationError
from payroll_api.models.employee import Employee
from payroll_api.models.payroll.adjustments import ADJUSTMENT_KINDS, RunAdjustment
from payroll_api.models.payroll.pay_run import EmployeePayrollDetail
from payroll_api.models.payroll.run_exception import PayrollException
from payroll_api.services import run_aggregator
from payroll_api.services.employee_snapshot import clean_str
from payroll_api.services.locks import employee_lock
from payroll_api.services.pay_engine import money
from payroll_api.services.run_lifecycle import get_run, pending_items_for_run

log = logging.getLogger(__name__)


def create_adjustment(run_id: int, employee_id: int, kind: str, amount, reason,
                      actor_id: Optional[int] = None) -> EmployeePayrollDetail:
    """Record a bonus/deduction/benefit correction on a draft run and recompute that employee."""
    kind = (kind or "").strip().lower()
    if kind not in ADJUSTMENT_KINDS:
        raise ValidationError(f"kind must be one of {', '.join(ADJUSTMENT_KINDS)}")
    try:
        amt = Decimal(str(amount))
    except ArithmeticError:
        raise ValidationError(f"amount {amount!r} is not a number")
    if not amt.is_finite() or amt <= 0:
        raise ValidationError("amount must be > 0")
    reason = clean_str(reason)
    if not reason:
        raise ValidationError("A reason is required for every adjustment")
    if db.session.get(Employee, employee_id) is None:
        raise NotFoundError(f"Employee {employee_id} not found")

    with employee_lock(run_id, employee_id):
        try:
            run = run_aggregator.lock_run_for_write(run_id)
            if EmployeePayrollDetail.query.filter_by(run_id=run_id, employee_id=employee_id).first() is None:
                raise NotFoundError(f"Employee {employee_id} is not part of run {run.run_code}")
            db.session.add(RunAdjustment(
                run_id=run_id, employee_id=employee_id, kind=kind,
                amount=money(amt), reason=reason, created_by=actor_id,
            ))
            db.session.flush()
            detail = run_aggregator.recompute_in_session(run, employee_id)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    run_aggregator.recompute_aggregate(run_id)
    log.info("run %s employee %s: %s adjustment %s by %s", run_id, employee_id, kind, amt, actor_id)
    return db.session.get(EmployeePayrollDetail, detail.id)


def list_adjustments(run_id: int, employee_id: Optional[int] = None) -> List[RunAdjustment]:
    get_run(run_id)
    q = RunAdjustment.query.filter_by(run_id=run_id)
    if employee_id is not None:
        q = q.filter_by(employee_id=employee_id)
    return q.order_by(RunAdjustment.id.asc()).all()


def get_run_draft(run_id: int) -> Dict:
    run = get_run(run_id)
    details = (EmployeePayrollDetail.query
               .filter_by(run_id=run_id)
               .order_by(EmployeePayrollDetail.employee_id.asc())
               .all())
    exceptions: Dict[int, List[PayrollException]] = {}
    for exc in (PayrollException.query.filter_by(run_id=run_id)
                .order_by(PayrollException.id.asc()).all()):
        exceptions.setdefault(exc.employee_id, []).append(exc)

    with_exceptions = sum(1 for eid, rows in exceptions.items() if any(e.is_unresolved for e in rows))
    return {
        "run": run,
        "statistics": {
            "totalEmployees": run.employee_count,
            "withExceptions": with_exceptions,
            "totalGross": run.total_gross,
            "totalDeductions": run.total_deductions,
            "totalNet": run.total_net_pay,
        },
        "employees": [{"detail": d, "exceptions": exceptions.get(d.employee_id, [])} for d in details],
        "pending_items": pending_items_for_run(run, [d.employee_id for d in details]),
    }

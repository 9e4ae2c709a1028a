"""Per-employee penalty ledger."""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import List, Optional

from payroll_api.extensions import db
from payroll_api.common.errors import NotFoundError, ValidationError
from payroll_api.models.employee import Employee
from payroll_api.models.payroll.penalty import EmployeePenalty, PenaltyLine
from payroll_api.services import run_aggregator
from payroll_api.services.compensation_service import draft_run_ids_for
from payroll_api.services.employee_snapshot import clean_str
from payroll_api.services.locks import employee_locks
from payroll_api.services.pay_engine import money

log = logging.getLogger(__name__)


def _employee(employee_id: int) -> Employee:
    emp = db.session.get(Employee, employee_id)
    if emp is None:
        raise NotFoundError(f"Employee {employee_id} not found")
    return emp


def list_penalties(employee_id: int, include_settled: bool = True) -> List[PenaltyLine]:
    _employee(employee_id)
    q = (PenaltyLine.query
         .join(EmployeePenalty, EmployeePenalty.id == PenaltyLine.penalty_id)
         .filter(EmployeePenalty.employee_id == employee_id))
    if not include_settled:
        q = q.filter(PenaltyLine.settled_run_id.is_(None))
    return q.order_by(PenaltyLine.id.asc()).all()


def add_penalty(employee_id: int, reason, amount, actor_id: Optional[int] = None) -> PenaltyLine:
    """Append a line; draft runs holding the employee pick it up immediately."""
    reason = clean_str(reason)
    if not reason:
        raise ValidationError("reason is required")
    try:
        amt = Decimal(str(amount))
    except ArithmeticError:
        raise ValidationError(f"amount {amount!r} is not a number")
    if not amt.is_finite() or amt <= 0:
        raise ValidationError("amount must be > 0")
    _employee(employee_id)

    run_ids = draft_run_ids_for(employee_id)
    recomputed = []
    with employee_locks((rid, employee_id) for rid in run_ids):
        try:
            header = EmployeePenalty.query.filter_by(employee_id=employee_id).first()
            if header is None:
                header = EmployeePenalty(employee_id=employee_id)
                db.session.add(header)
                db.session.flush()
            line = PenaltyLine(penalty_id=header.id, reason=reason,
                               amount=money(amt), created_by=actor_id)
            db.session.add(line)
            db.session.flush()

            for rid in run_ids:
                run = run_aggregator.lock_run_for_write(rid, allowed=("draft", "published", "approved"))
                if run.status != "draft":
                    continue
                run_aggregator.recompute_in_session(run, employee_id)
                recomputed.append(rid)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    for rid in recomputed:
        run_aggregator.recompute_aggregate(rid)
    log.info("penalty %s (%s) added for employee %s; recomputed runs %s", line.id, amt, employee_id, recomputed)
    return line

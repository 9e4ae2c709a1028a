"""
Compensation items (signing bonuses, termination/resignation benefits).

Approving or rejecting an item recomputes the employee in every draft run that
contains them, under the same per-(run, employee) locks publish takes, so the
decision and the recompute land together or not at all.
"""
from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from payroll_api.extensions import db
from payroll_api.common.errors import APIError, NotFoundError, StateError, ValidationError
from payroll_api.models.employee import Employee
from payroll_api.models.payroll.compensation import (
    COMPENSATION_KINDS, COMPENSATION_STATUSES, CompensationItem,
)
from payroll_api.models.payroll.pay_run import EmployeePayrollDetail, PayrollRun
from payroll_api.services import run_aggregator
from payroll_api.services.locks import employee_locks
from payroll_api.services.pay_engine import money

log = logging.getLogger(__name__)


def _positive_amount(amount) -> Decimal:
    try:
        d = Decimal(str(amount))
    except ArithmeticError:
        raise ValidationError(f"amount {amount!r} is not a number")
    if not d.is_finite() or d <= 0:
        raise ValidationError("amount must be > 0")
    return money(d)


def get_item(item_id: int) -> CompensationItem:
    item = db.session.get(CompensationItem, item_id)
    if item is None:
        raise NotFoundError(f"Compensation item {item_id} not found")
    return item


def draft_run_ids_for(employee_id: int) -> List[int]:
    rows = (db.session.query(PayrollRun.id)
            .join(EmployeePayrollDetail, EmployeePayrollDetail.run_id == PayrollRun.id)
            .filter(EmployeePayrollDetail.employee_id == employee_id)
            .filter(PayrollRun.status == "draft")
            .order_by(PayrollRun.id.asc())
            .all())
    return [r[0] for r in rows]


def create_item(employee_id: int, kind: str, amount, scheduled_payment_date: Optional[date] = None,
                source_ref: Optional[str] = None, actor_id: Optional[int] = None) -> CompensationItem:
    """New items start `pending`; they hold up publish until decided."""
    kind = (kind or "").strip().upper()
    if kind not in COMPENSATION_KINDS:
        raise ValidationError(f"kind must be one of {', '.join(COMPENSATION_KINDS)}")
    amt = _positive_amount(amount)
    if db.session.get(Employee, employee_id) is None:
        raise NotFoundError(f"Employee {employee_id} not found")

    item = CompensationItem(
        employee_id=employee_id,
        kind=kind,
        amount=amt,
        status="pending",
        scheduled_payment_date=scheduled_payment_date,
        source_ref=(source_ref or "").strip() or None,
        created_by=actor_id,
    )
    db.session.add(item)
    db.session.commit()
    log.info("compensation item %s created: %s %s for employee %s", item.id, kind, amt, employee_id)
    return item


def list_items(status: Optional[str] = None, kind: Optional[str] = None, employee_id: Optional[int] = None):
    q = CompensationItem.query
    if status:
        if status not in COMPENSATION_STATUSES:
            raise ValidationError(f"status must be one of {', '.join(COMPENSATION_STATUSES)}")
        q = q.filter(CompensationItem.status == status)
    if kind:
        q = q.filter(CompensationItem.kind == kind.upper())
    if employee_id is not None:
        q = q.filter(CompensationItem.employee_id == employee_id)
    return q.order_by(CompensationItem.id.desc())


def _decide(item_id: int, target: str, actor_id: Optional[int], note: Optional[str]) -> Tuple[CompensationItem, List[int]]:
    item = get_item(item_id)
    employee_id = item.employee_id
    run_ids = draft_run_ids_for(employee_id)
    recomputed: List[int] = []

    with employee_locks((rid, employee_id) for rid in run_ids):
        try:
            item = (CompensationItem.query
                    .filter(CompensationItem.id == item_id)
                    .with_for_update()
                    .populate_existing()
                    .first())
            if item.status == target:
                db.session.rollback()
                return item, []
            if item.status != "pending":
                raise StateError(f"Compensation item {item_id} is already {item.status}",
                                 current_state=item.status)

            item.status = target
            item.decided_by = actor_id
            item.decided_at = datetime.utcnow()
            item.decision_note = (note or "").strip() or None
            item.updated_at = item.decided_at
            db.session.flush()

            for rid in run_ids:
                run = run_aggregator.lock_run_for_write(rid, allowed=("draft", "published", "approved"))
                # published meanwhile: its frozen figures are left alone
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
    log.info("compensation item %s %s by %s; recomputed runs %s", item_id, target, actor_id, recomputed)
    return get_item(item_id), recomputed


def approve_item(item_id: int, actor_id: Optional[int] = None, note: Optional[str] = None):
    return _decide(item_id, "approved", actor_id, note)


def reject_item(item_id: int, actor_id: Optional[int] = None, note: Optional[str] = None):
    return _decide(item_id, "rejected", actor_id, note)


def edit_item(item_id: int, amount=None, scheduled_payment_date: Optional[date] = None,
              clear_schedule: bool = False) -> CompensationItem:
    """Only pending items can change; pending items never reach a computation."""
    item = get_item(item_id)
    if item.status != "pending":
        raise StateError(f"Compensation item {item_id} is {item.status}; only pending items can be edited",
                         current_state=item.status)
    if amount is None and scheduled_payment_date is None and not clear_schedule:
        raise ValidationError("Nothing to edit: provide amount and/or scheduled_payment_date")
    if amount is not None:
        item.amount = _positive_amount(amount)
    if scheduled_payment_date is not None:
        item.scheduled_payment_date = scheduled_payment_date
    elif clear_schedule:
        item.scheduled_payment_date = None
    item.updated_at = datetime.utcnow()
    db.session.commit()
    return item


def _bulk(item_ids: Sequence[int], fn, actor_id, note) -> List[Dict]:
    results = []
    for item_id in item_ids:
        try:
            item, runs = fn(item_id, actor_id, note)
            results.append({"id": item_id, "ok": True, "status": item.status, "recomputed_runs": runs})
        except APIError as e:
            results.append({"id": item_id, "ok": False, "code": e.code, "message": e.message})
    return results


def bulk_approve(item_ids: Sequence[int], actor_id: Optional[int] = None, note: Optional[str] = None):
    return _bulk(item_ids, approve_item, actor_id, note)


def bulk_reject(item_ids: Sequence[int], actor_id: Optional[int] = None, note: Optional[str] = None):
    return _bulk(item_ids, reject_item, actor_id, note)

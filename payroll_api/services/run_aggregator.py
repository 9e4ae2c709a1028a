"""
Populates payroll runs: one detail + payslip + exception set per employee, and
the run-level totals derived from them.

Run totals are only ever written by `refresh_totals` (inside a transaction
that holds the run lock) and `recompute_aggregate`. Both derive them from the
details through `aggregate_totals`.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from flask import current_app
from sqlalchemy.orm.exc import StaleDataError

from payroll_api.extensions import db
from payroll_api.common.errors import InvariantViolation, NotFoundError, StateError
from payroll_api.models.employee import Employee
from payroll_api.models.payroll.adjustments import RunAdjustment
from payroll_api.models.payroll.compensation import CompensationItem
from payroll_api.models.payroll.config import TaxRule
from payroll_api.models.payroll.pay_run import EmployeePayrollDetail, PayrollRun
from payroll_api.models.payroll.penalty import EmployeePenalty, PenaltyLine
from payroll_api.models.payroll.run_exception import PayrollException, UNRESOLVED
from payroll_api.services import exception_detector
from payroll_api.services.config_scope import pay_config_for
from payroll_api.services.employee_snapshot import EmployeeSnapshot, build_snapshot
from payroll_api.services.locks import employee_lock, run_lock
from payroll_api.services.pay_engine import (
    AdjustmentInput, CompensationInput, PayComputation, PenaltyInput, ZERO, compute_pay,
)
from payroll_api.services.payslip_service import detail_totals, payslip_totals, write_payslip

log = logging.getLogger(__name__)


# ---------- partitioning ----------

def partition_employees(employees: Sequence[Employee], group_by: Optional[str] = None) -> "OrderedDict":
    """
    Split a roster into run partitions. group_by=None -> a single partition keyed None;
    group_by="department" -> one partition per department id (None for unassigned).
    """
    parts: "OrderedDict[Optional[int], List[Employee]]" = OrderedDict()
    if group_by is None:
        parts[None] = list(employees)
        return parts
    if group_by != "department":
        raise ValueError(f"unsupported group_by {group_by!r}")
    for e in sorted(employees, key=lambda x: (x.department_id is None, x.department_id or 0, x.id)):
        parts.setdefault(e.department_id, []).append(e)
    return parts


# ---------- engine inputs ----------

def compensation_inputs(employee_id: int, run: PayrollRun) -> List[CompensationInput]:
    """Items due in the run window: unscheduled or scheduled on/before period end, not paid by another run."""
    q = (CompensationItem.query
         .filter(CompensationItem.employee_id == employee_id)
         .filter((CompensationItem.scheduled_payment_date.is_(None))
                 | (CompensationItem.scheduled_payment_date <= run.period_end))
         .filter((CompensationItem.paid_run_id.is_(None)) | (CompensationItem.paid_run_id == run.id))
         .order_by(CompensationItem.id.asc()))
    return [CompensationInput(kind=i.kind, amount=Decimal(str(i.amount)), status=i.status, item_id=i.id)
            for i in q.all()]


def penalty_inputs(employee_id: int, run: PayrollRun) -> List[PenaltyInput]:
    q = (PenaltyLine.query
         .join(EmployeePenalty, EmployeePenalty.id == PenaltyLine.penalty_id)
         .filter(EmployeePenalty.employee_id == employee_id)
         .filter((PenaltyLine.settled_run_id.is_(None)) | (PenaltyLine.settled_run_id == run.id))
         .order_by(PenaltyLine.id.asc()))
    return [PenaltyInput(reason=l.reason, amount=Decimal(str(l.amount)), line_id=l.id) for l in q.all()]


def adjustment_inputs(employee_id: int, run: PayrollRun) -> List[AdjustmentInput]:
    q = (RunAdjustment.query
         .filter_by(run_id=run.id, employee_id=employee_id)
         .order_by(RunAdjustment.id.asc()))
    return [AdjustmentInput(kind=a.kind, amount=Decimal(str(a.amount)), reason=a.reason, adjustment_id=a.id)
            for a in q.all()]


def _penalty_threshold() -> Decimal:
    return Decimal(str(current_app.config.get("PAYROLL_PENALTY_THRESHOLD",
                                              exception_detector.DEFAULT_PENALTY_THRESHOLD)))


def _default_working_days() -> int:
    return int(current_app.config.get("PAYROLL_DEFAULT_WORKING_DAYS", 22))


def _run_tax_rule(run: PayrollRun) -> Optional[TaxRule]:
    return db.session.get(TaxRule, run.tax_rule_id) if run.tax_rule_id else None


def compute_for(run: PayrollRun, snapshot: EmployeeSnapshot) -> PayComputation:
    config = pay_config_for(run.company_id, snapshot.department_id, run.period_end, tax_rule=_run_tax_rule(run))
    return compute_pay(
        snapshot,
        compensation_inputs(snapshot.employee_id, run),
        penalty_inputs(snapshot.employee_id, run),
        config,
        adjustment_inputs(snapshot.employee_id, run),
    )


# ---------- exceptions ----------

def sync_exceptions(run: PayrollRun, detail: EmployeePayrollDetail,
                    findings: Iterable[exception_detector.Finding]) -> List[PayrollException]:
    """
    Reconcile stored exceptions for one employee with fresh findings:
    - unresolved records whose condition no longer fires are dropped
    - a still-firing condition keeps its record (flagged_at unchanged, message refreshed)
    - a resolved record of the same type stays resolved and is not re-raised
    - new conditions get an `open` record
    """
    findings = list(findings)
    by_type = {f.type: f for f in findings}
    existing = PayrollException.query.filter_by(run_id=run.id, employee_id=detail.employee_id).all()

    seen = set()
    for exc in existing:
        f = by_type.get(exc.type)
        if exc.status == "resolved":
            seen.add(exc.type)
            continue
        if f is None or exc.type in seen:
            db.session.delete(exc)
            continue
        exc.severity = f.severity
        exc.message = f.message
        exc.detail_id = detail.id
        seen.add(exc.type)

    for f in findings:
        if f.type in seen:
            continue
        db.session.add(PayrollException(
            run_id=run.id,
            employee_id=detail.employee_id,
            detail_id=detail.id,
            type=f.type,
            severity=f.severity,
            message=f.message,
            status="open",
        ))
        seen.add(f.type)

    db.session.flush()
    return (PayrollException.query
            .filter_by(run_id=run.id, employee_id=detail.employee_id)
            .order_by(PayrollException.id.asc())
            .all())


# ---------- per-employee write ----------

def _apply(detail: EmployeePayrollDetail, comp: PayComputation, snap: EmployeeSnapshot):
    detail.base_salary = comp.base_salary
    detail.allowances_total = comp.allowances_total
    detail.signing_bonus = comp.signing_bonus
    detail.termination_benefit = comp.termination_benefit
    detail.bonus = comp.bonus
    detail.benefit = comp.benefit
    detail.gross_salary = comp.gross_salary
    detail.tax_rate = comp.tax_rate
    detail.tax_amount = comp.tax_amount
    detail.penalty_total = comp.penalty_total
    detail.adjustment_deductions = comp.adjustment_deductions
    detail.deductions_total = comp.deductions_total
    detail.net_pay = comp.net_pay
    detail.bank_status = snap.bank_status
    detail.hr_event = snap.hr_event
    detail.working_days = snap.working_days
    detail.absent_days = snap.absent_days
    detail.overtime_hours = snap.overtime_hours
    detail.calc_meta = dict(comp.inputs)
    detail.computed_at = datetime.utcnow()


def write_employee(run: PayrollRun, emp: Employee) -> EmployeePayrollDetail:
    """
    Compute and stage (flush, no commit) one employee's detail, payslip and exceptions.
    The computation completes before anything is written.
    """
    snap = build_snapshot(emp, run.period_start, run.period_end, _default_working_days())
    comp = compute_for(run, snap)

    detail = EmployeePayrollDetail.query.filter_by(run_id=run.id, employee_id=emp.id).first()
    if detail is None:
        detail = EmployeePayrollDetail(run_id=run.id, employee_id=emp.id)
        db.session.add(detail)
    elif detail.frozen_at is not None:
        raise StateError("Payroll detail is frozen", current_state=run.status,
                         payload={"employee_id": emp.id})
    _apply(detail, comp, snap)
    db.session.flush()

    slip = write_payslip(run, detail, comp)
    db.session.flush()
    # compare the stored rows, not the in-memory computation
    db.session.refresh(detail)
    db.session.refresh(slip)

    findings = exception_detector.detect(comp, snap, _penalty_threshold(),
                                         payslip_totals(slip), detail_totals(detail))
    sync_exceptions(run, detail, findings)
    return detail


def build_run(run: PayrollRun, employees: Sequence[Employee]) -> PayrollRun:
    """Populate a fresh draft run. Caller owns the transaction; nothing is committed here."""
    if run.status != "draft":
        raise StateError("Only draft runs can be built", current_state=run.status)
    for emp in employees:
        write_employee(run, emp)
    refresh_totals(run)
    log.info("built payroll run %s: %d employees", run.run_code, len(employees))
    return run


def lock_run_for_write(run_id: int, allowed=("draft",)) -> PayrollRun:
    """Load the run with a shared row lock; writers coexist, publish (FOR UPDATE) excludes them."""
    run = (db.session.query(PayrollRun)
           .filter(PayrollRun.id == run_id)
           .with_for_update(read=True)
           .populate_existing()
           .first())
    if run is None:
        raise NotFoundError(f"Payroll run {run_id} not found")
    if run.status not in allowed:
        raise StateError(f"Run {run.run_code} is {run.status}; action requires {', '.join(allowed)}",
                         current_state=run.status)
    return run


def recompute_in_session(run: PayrollRun, employee_id: int) -> EmployeePayrollDetail:
    """Recompute one employee inside the caller's transaction and lock."""
    if run.status != "draft":
        raise StateError("Details can only be recomputed while the run is draft", current_state=run.status)
    detail = (EmployeePayrollDetail.query
              .filter_by(run_id=run.id, employee_id=employee_id)
              .with_for_update()
              .first())
    if detail is None:
        raise NotFoundError(f"Employee {employee_id} is not part of run {run.run_code}")
    emp = db.session.get(Employee, employee_id)
    return write_employee(run, emp)


def recompute(run_id: int, employee_id: int) -> EmployeePayrollDetail:
    """Recompute exactly one employee of a draft run, then refresh the run totals."""
    with employee_lock(run_id, employee_id):
        try:
            run = lock_run_for_write(run_id)
            detail = recompute_in_session(run, employee_id)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
    recompute_aggregate(run_id)
    return db.session.get(EmployeePayrollDetail, detail.id)


# ---------- aggregates ----------

def aggregate_totals_from(details: Iterable[EmployeePayrollDetail], unresolved_employee_ids: Iterable[int]) -> Dict:
    """Pure: run totals from a set of details."""
    count = 0
    gross = deductions = net = ZERO
    for d in details:
        count += 1
        gross += Decimal(str(d.gross_salary))
        deductions += Decimal(str(d.deductions_total))
        net += Decimal(str(d.net_pay))
    return {
        "employee_count": count,
        "exception_count": len(set(unresolved_employee_ids)),
        "total_gross": gross,
        "total_deductions": deductions,
        "total_net_pay": net,
    }


def aggregate_totals(run_id: int) -> Dict:
    details = EmployeePayrollDetail.query.filter_by(run_id=run_id).all()
    unresolved = [row[0] for row in
                  db.session.query(PayrollException.employee_id)
                  .filter(PayrollException.run_id == run_id,
                          PayrollException.status.in_(UNRESOLVED))
                  .distinct()
                  .all()]
    return aggregate_totals_from(details, unresolved)


def _store_totals(run: PayrollRun, totals: Dict):
    for k, v in totals.items():
        setattr(run, k, v)


def refresh_totals(run: PayrollRun) -> Dict:
    """Re-derive totals inside the caller's transaction. Caller holds the run lock."""
    totals = aggregate_totals(run.id)
    _store_totals(run, totals)
    return totals


def recompute_aggregate(run_id: int) -> PayrollRun:
    """
    Re-derive run totals from the committed details in a short transaction of its own.
    Retries when the run's version moved underneath (another writer got there first).
    """
    attempts = int(current_app.config.get("PAYROLL_AGGREGATE_RETRIES", 3))
    with run_lock(run_id):
        for attempt in range(1, attempts + 1):
            try:
                run = db.session.get(PayrollRun, run_id, populate_existing=True)
                if run is None:
                    raise NotFoundError(f"Payroll run {run_id} not found")
                _store_totals(run, aggregate_totals(run_id))
                run.updated_at = datetime.utcnow()
                db.session.commit()
                return run
            except StaleDataError:
                db.session.rollback()
                log.warning("run %s aggregate raced a concurrent writer (attempt %d/%d)", run_id, attempt, attempts)
        raise InvariantViolation("Run totals could not be refreshed", {"run_id": run_id, "attempts": attempts})


def verify_run_totals(run: PayrollRun) -> Dict:
    """Raise InvariantViolation if stored totals disagree with the details. Never auto-corrects."""
    expected = aggregate_totals(run.id)
    mismatched = {}
    for k, v in expected.items():
        stored = getattr(run, k)
        if isinstance(v, Decimal):
            stored = Decimal(str(stored or 0))
        if stored != v:
            mismatched[k] = {"stored": str(stored), "expected": str(v)}
    if mismatched:
        raise InvariantViolation(f"Run {run.run_code} totals do not reconcile with its details",
                                 {"run_id": run.id, "mismatched": mismatched})
    return expected


def unresolved_exceptions(run_id: int, employee_id: Optional[int] = None) -> List[PayrollException]:
    q = PayrollException.query.filter(PayrollException.run_id == run_id,
                                      PayrollException.status.in_(UNRESOLVED))
    if employee_id is not None:
        q = q.filter(PayrollException.employee_id == employee_id)
    return q.order_by(PayrollException.id.asc()).all()


def run_employee_ids(run_id: int) -> List[int]:
    return [row[0] for row in
            db.session.query(EmployeePayrollDetail.employee_id)
            .filter(EmployeePayrollDetail.run_id == run_id)
            .order_by(EmployeePayrollDetail.employee_id.asc())
            .all()]

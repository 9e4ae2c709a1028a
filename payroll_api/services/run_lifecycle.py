"""
Payroll run state machine and publish gate.

    draft ──publish──> published ──approve──> approved ──process──> processed
      │                  │  │
      │                  │  └─reject (return)──> draft
      └──cancel/reject───┴────cancel/reject────> cancelled / rejected
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, List, Optional, Sequence

from payroll_api.extensions import db
from payroll_api.common.errors import (
    ConfirmationRequired, ForbiddenError, NotFoundError, PublishBlocked, StateError, ValidationError,
)
from payroll_api.models.master import Company, Department
from payroll_api.models.payroll.compensation import CompensationItem
from payroll_api.models.payroll.pay_run import (
    EmployeePayrollDetail, OPEN_RUN_STATUSES, PayrollRun, PayrollRunHistory, Payslip,
)
from payroll_api.models.payroll.penalty import PenaltyLine
from payroll_api.services import run_aggregator
from payroll_api.services.config_scope import resolve_tax_rule
from payroll_api.services.employee_snapshot import employees_for_period
from payroll_api.services.locks import employee_locks, run_lock
from payroll_api.services.payslip_service import freeze_payslips

log = logging.getLogger(__name__)

# action -> (allowed from-states, to-state)
TRANSITIONS = {
    "publish": (("draft",), "published"),
    "approve": (("published",), "approved"),
    "return": (("published",), "draft"),
    "reject": (("draft", "published"), "rejected"),
    "cancel": (("draft", "published"), "cancelled"),
    "process": (("approved",), "processed"),
}


def _ensure_transition(run: PayrollRun, action: str) -> str:
    allowed, target = TRANSITIONS[action]
    if run.status not in allowed:
        raise StateError(
            f"Run {run.run_code} in status '{run.status}' cannot {action} (allowed: {', '.join(allowed)})",
            current_state=run.status,
        )
    return target


def _record(run: PayrollRun, action: str, from_status: str, actor_id: Optional[int],
            note: Optional[str] = None, meta: Optional[dict] = None):
    db.session.add(PayrollRunHistory(
        run_id=run.id, action=action, from_status=from_status, to_status=run.status,
        actor_id=actor_id, note=note, meta=meta,
    ))


def get_run(run_id: int) -> PayrollRun:
    run = db.session.get(PayrollRun, run_id)
    if run is None:
        raise NotFoundError(f"Payroll run {run_id} not found")
    return run


# ---------- creation ----------

def next_run_code(year: int) -> str:
    prefix = f"PR-{year}-"
    codes = (db.session.query(PayrollRun.run_code)
             .filter(PayrollRun.run_code.like(f"{prefix}%"))
             .all())
    # numeric max: "PR-2025-999" sorts after "PR-2025-1000" as text
    seq = max((int(code.rsplit("-", 1)[1]) for (code,) in codes), default=0) + 1
    return f"{prefix}{seq:03d}"


def open_run_conflicts(employee_ids: Sequence[int], period_start: date, period_end: date) -> Dict[int, str]:
    """employee_id -> run_code for employees already in an open run overlapping the window."""
    if not employee_ids:
        return {}
    rows = (db.session.query(EmployeePayrollDetail.employee_id, PayrollRun.run_code)
            .join(PayrollRun, PayrollRun.id == EmployeePayrollDetail.run_id)
            .filter(EmployeePayrollDetail.employee_id.in_(list(employee_ids)))
            .filter(PayrollRun.status.in_(OPEN_RUN_STATUSES))
            .filter(PayrollRun.period_start <= period_end)
            .filter(PayrollRun.period_end >= period_start)
            .all())
    return {eid: code for eid, code in rows}


def create_runs(company_id: int, period_start: date, period_end: date,
                employee_ids: Optional[List[int]] = None,
                department_id: Optional[int] = None,
                group_by: Optional[str] = None,
                specialist_id: Optional[int] = None,
                entity: Optional[str] = None) -> List[PayrollRun]:
    """
    Create one draft run (or one per department with group_by="department") and
    populate it. All-or-nothing: any configuration or validation failure leaves
    no run behind.
    """
    if period_end < period_start:
        raise ValidationError("period_end must be >= period_start")
    if db.session.get(Company, company_id) is None:
        raise NotFoundError(f"Company {company_id} not found")
    if group_by not in (None, "department"):
        raise ValidationError("group_by must be 'department' or omitted")

    employees = employees_for_period(company_id, period_start, period_end, employee_ids, department_id)
    if employee_ids:
        missing = sorted(set(employee_ids) - {e.id for e in employees})
        if missing:
            raise ValidationError("Some employees are not on the roster for this period",
                                  {"employee_ids": missing})
    if not employees:
        raise ValidationError("No employees on the roster for this period")

    conflicts = open_run_conflicts([e.id for e in employees], period_start, period_end)
    if conflicts:
        raise StateError("Employees already belong to an open run for this period",
                         payload={"conflicts": {str(k): v for k, v in conflicts.items()}})

    parts = run_aggregator.partition_employees(employees, group_by)
    runs: List[PayrollRun] = []
    try:
        for dept_id, members in parts.items():
            scope_dept = dept_id if dept_id is not None else department_id
            rule = resolve_tax_rule(company_id, scope_dept, period_end)
            label = entity
            if label is None and scope_dept is not None:
                dept = db.session.get(Department, scope_dept)
                label = dept.name if dept else None
            run = PayrollRun(
                run_code=next_run_code(period_end.year),
                company_id=company_id,
                department_id=scope_dept,
                entity=label,
                period_start=period_start,
                period_end=period_end,
                status="draft",
                payment_status="pending",
                tax_rule_id=rule.id,
                tax_rate=rule.rate,
                specialist_id=specialist_id,
            )
            db.session.add(run)
            db.session.flush()
            run_aggregator.build_run(run, members)
            _record(run, "create", None, specialist_id, meta={"employees": len(members)})
            runs.append(run)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    for run in runs:
        log.info("payroll run %s created (%s..%s, entity=%s)", run.run_code, period_start, period_end, run.entity)
    return runs


def create_run(company_id: int, period_start: date, period_end: date, **kw) -> PayrollRun:
    kw.pop("group_by", None)
    return create_runs(company_id, period_start, period_end, **kw)[0]


# ---------- publish gate ----------

@dataclass
class GateResult:
    violations: Dict[str, List[int]] = field(default_factory=dict)  # hard
    warnings: Dict[str, List[int]] = field(default_factory=dict)    # soft

    @property
    def blocked(self) -> bool:
        return any(self.violations.values())

    def as_dict(self) -> dict:
        return {"blocked": self.blocked, "violations": self.violations, "warnings": self.warnings}


def pending_items_for_run(run: PayrollRun, employee_ids: Optional[Sequence[int]] = None) -> List[CompensationItem]:
    ids = list(employee_ids) if employee_ids is not None else run_aggregator.run_employee_ids(run.id)
    if not ids:
        return []
    return (CompensationItem.query
            .filter(CompensationItem.employee_id.in_(ids))
            .filter(CompensationItem.status == "pending")
            .filter((CompensationItem.scheduled_payment_date.is_(None))
                    | (CompensationItem.scheduled_payment_date <= run.period_end))
            .filter(CompensationItem.paid_run_id.is_(None))
            .order_by(CompensationItem.employee_id.asc(), CompensationItem.id.asc())
            .all())


def evaluate_publish_gate(run: PayrollRun) -> GateResult:
    """Ordered checks; read-only."""
    res = GateResult()
    emp_ids = run_aggregator.run_employee_ids(run.id)

    pending = sorted({i.employee_id for i in pending_items_for_run(run, emp_ids)})
    if pending:
        res.violations["pending_compensation_items"] = pending

    negative = [row[0] for row in
                db.session.query(EmployeePayrollDetail.employee_id)
                .filter(EmployeePayrollDetail.run_id == run.id, EmployeePayrollDetail.net_pay < 0)
                .order_by(EmployeePayrollDetail.employee_id.asc())
                .all()]
    if negative:
        res.violations["negative_net_pay"] = negative

    no_bank = [row[0] for row in
               db.session.query(EmployeePayrollDetail.employee_id)
               .filter(EmployeePayrollDetail.run_id == run.id,
                       EmployeePayrollDetail.bank_status.in_(("missing", "invalid")))
               .order_by(EmployeePayrollDetail.employee_id.asc())
               .all()]
    if no_bank:
        res.warnings["missing_bank_details"] = no_bank

    open_exc = sorted({e.employee_id for e in run_aggregator.unresolved_exceptions(run.id)})
    if open_exc:
        res.warnings["unresolved_exceptions"] = open_exc
    return res


def publish(run_id: int, actor_id: Optional[int] = None,
            confirm_bank_warnings: bool = False, confirm_open_exceptions: bool = False) -> PayrollRun:
    """
    DRAFT -> PUBLISHED. The gate is evaluated while holding the run lock, every
    (run, employee) lock and the run row lock, so no adjustment or approval can
    commit between the check and the transition.
    """
    with run_lock(run_id):
        emp_ids = run_aggregator.run_employee_ids(run_id)
        with employee_locks((run_id, eid) for eid in emp_ids):
            try:
                run = (db.session.query(PayrollRun)
                       .filter(PayrollRun.id == run_id)
                       .with_for_update()
                       .populate_existing()
                       .first())
                if run is None:
                    raise NotFoundError(f"Payroll run {run_id} not found")
                from_status = run.status
                target = _ensure_transition(run, "publish")

                gate = evaluate_publish_gate(run)
                if gate.blocked:
                    log.warning("publish of %s blocked: %s", run.run_code, gate.violations)
                    raise PublishBlocked(gate.violations)

                unconfirmed = {}
                if gate.warnings.get("missing_bank_details") and not confirm_bank_warnings:
                    unconfirmed["missing_bank_details"] = gate.warnings["missing_bank_details"]
                if gate.warnings.get("unresolved_exceptions") and not confirm_open_exceptions:
                    unconfirmed["unresolved_exceptions"] = gate.warnings["unresolved_exceptions"]
                if unconfirmed:
                    log.info("publish of %s needs confirmation: %s", run.run_code, unconfirmed)
                    raise ConfirmationRequired(unconfirmed)

                # writers may have committed details without refreshing the totals yet
                run_aggregator.refresh_totals(run)

                now = datetime.utcnow()
                run.status = target
                run.published_by = actor_id
                run.published_at = now
                run.updated_at = now
                freeze_payslips(run, now)
                _record(run, "publish", from_status, actor_id, meta={"warnings": gate.warnings} if gate.warnings else None)
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise
    log.info("payroll run %s published by %s", run.run_code, actor_id)
    return run


# ---------- other transitions ----------

def _transition(run_id: int, action: str, actor_id: Optional[int], note: Optional[str] = None,
                apply=None) -> PayrollRun:
    with run_lock(run_id):
        try:
            run = (db.session.query(PayrollRun)
                   .filter(PayrollRun.id == run_id)
                   .with_for_update()
                   .populate_existing()
                   .first())
            if run is None:
                raise NotFoundError(f"Payroll run {run_id} not found")
            from_status = run.status
            target = _ensure_transition(run, action)
            if apply is not None:
                apply(run)
            run.status = target
            run.updated_at = datetime.utcnow()
            _record(run, action, from_status, actor_id, note=note)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
    log.info("payroll run %s: %s -> %s (%s by %s)", run.run_code, from_status, run.status, action, actor_id)
    return run


def approve_run(run_id: int, actor_id: Optional[int]) -> PayrollRun:
    def _apply(run):
        if run.published_by is not None and actor_id == run.published_by:
            raise ForbiddenError("The approver must be a different user from the publisher",
                                 {"published_by": run.published_by})
        run.approved_by = actor_id
        run.approved_at = datetime.utcnow()
    return _transition(run_id, "approve", actor_id, apply=_apply)


def reject_run(run_id: int, actor_id: Optional[int], reason: Optional[str] = None,
               final: bool = False) -> PayrollRun:
    """Default: send a published run back to draft for edits. final=True closes it as rejected."""
    reason = (reason or "").strip() or None
    if final and not reason:
        raise ValidationError("A reason is required to reject a run")

    def _apply(run):
        run.rejection_reason = reason
        if not final:
            run.published_by = None
            run.published_at = None
            for slip in Payslip.query.filter_by(run_id=run.id).all():
                slip.frozen_at = None
    return _transition(run_id, "reject" if final else "return", actor_id, note=reason, apply=_apply)


def cancel_run(run_id: int, actor_id: Optional[int], reason: Optional[str] = None) -> PayrollRun:
    return _transition(run_id, "cancel", actor_id, note=(reason or "").strip() or None)


def mark_processed(run_id: int, actor_id: Optional[int],
                   failed_employee_ids: Optional[Sequence[int]] = None) -> PayrollRun:
    """
    APPROVED -> PROCESSED. Freezes details/payslips; payslips with valid bank
    details become paid, listed failures become failed, the rest stay pending.
    Consumes the paid compensation items and penalty lines.
    """
    failed = set(failed_employee_ids or [])

    def _apply(run):
        now = datetime.utcnow()
        details = {d.employee_id: d for d in EmployeePayrollDetail.query.filter_by(run_id=run.id).all()}
        unknown = sorted(failed - set(details))
        if unknown:
            raise ValidationError("failed_employee_ids not in this run", {"employee_ids": unknown})

        any_failed = False
        for slip in Payslip.query.filter_by(run_id=run.id).all():
            d = details.get(slip.employee_id)
            if slip.employee_id in failed:
                slip.payment_status = "failed"
                any_failed = True
            elif d is not None and d.bank_status == "valid":
                slip.payment_status = "paid"
                slip.paid_at = now
            slip.frozen_at = slip.frozen_at or now
        for d in details.values():
            d.frozen_at = now

        # only what the frozen details actually counted is consumed
        item_ids, line_ids = set(), set()
        for d in details.values():
            meta = d.calc_meta or {}
            item_ids.update(meta.get("approved_item_ids") or [])
            line_ids.update(meta.get("penalty_line_ids") or [])
        if item_ids:
            for item in CompensationItem.query.filter(CompensationItem.id.in_(item_ids)).all():
                item.paid_run_id = run.id
        if line_ids:
            for line in PenaltyLine.query.filter(PenaltyLine.id.in_(line_ids)).all():
                line.settled_run_id = run.id

        run.processed_at = now
        run.payment_status = "failed" if any_failed else "processed"

    return _transition(run_id, "process", actor_id, apply=_apply)


def history(run_id: int) -> List[PayrollRunHistory]:
    get_run(run_id)
    return (PayrollRunHistory.query
            .filter_by(run_id=run_id)
            .order_by(PayrollRunHistory.id.asc())
            .all())

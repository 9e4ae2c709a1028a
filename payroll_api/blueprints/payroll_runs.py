from __future__ import annotations

import calendar
import io
from datetime import date
from typing import Any, Dict

from flask import Blueprint, request, send_file

from payroll_api.common.auth import requires_perms, current_user_id
from payroll_api.common.http import ok, fail, money, iso
from payroll_api.common.paging import paginate, parse_date, parse_id_list
from payroll_api.models.payroll.pay_run import (
    EmployeePayrollDetail, PayrollRun, PayrollRunHistory, Payslip, RUN_STATUSES,
)
from payroll_api.models.payroll.run_exception import PayrollException
from payroll_api.models.payroll.adjustments import RunAdjustment
from payroll_api.models.payroll.compensation import CompensationItem
from payroll_api.services import (
    exception_service, register_export, run_lifecycle, run_review,
)
from payroll_api.services.payslip_service import PayslipService

bp = Blueprint("payroll_runs", __name__, url_prefix="/api/v1/payroll-runs")


# ---------- helpers ----------

def _json() -> Dict[str, Any]:
    j = request.get_json(silent=True)
    return j if isinstance(j, dict) else {}


def _flag(v) -> bool:
    if isinstance(v, bool):
        return v
    return str(v or "").strip().lower() in ("1", "true", "yes", "y")


def _month_bounds(period: str):
    """'YYYY-MM' -> (first day, last day); None if malformed."""
    try:
        y, m = (int(p) for p in str(period).split("-", 1))
        return date(y, m, 1), date(y, m, calendar.monthrange(y, m)[1])
    except (TypeError, ValueError):
        return None


def _run_row(r: PayrollRun) -> Dict[str, Any]:
    return {
        "id": r.id,
        "run_code": r.run_code,
        "company_id": r.company_id,
        "department_id": r.department_id,
        "entity": r.entity,
        "period_start": iso(r.period_start),
        "period_end": iso(r.period_end),
        "status": r.status,
        "payment_status": r.payment_status,
        "employee_count": r.employee_count,
        "exception_count": r.exception_count,
        "total_gross": money(r.total_gross),
        "total_deductions": money(r.total_deductions),
        "total_net_pay": money(r.total_net_pay),
        "tax_rule_id": r.tax_rule_id,
        "tax_rate": str(r.tax_rate) if r.tax_rate is not None else None,
        "specialist_id": r.specialist_id,
        "published_by": r.published_by,
        "published_at": iso(r.published_at),
        "approved_by": r.approved_by,
        "approved_at": iso(r.approved_at),
        "processed_at": iso(r.processed_at),
        "rejection_reason": r.rejection_reason,
        "created_at": iso(r.created_at),
        "updated_at": iso(r.updated_at),
    }


def _detail_row(d: EmployeePayrollDetail) -> Dict[str, Any]:
    emp = d.employee
    return {
        "id": d.id,
        "run_id": d.run_id,
        "employee_id": d.employee_id,
        "employee_code": emp.code if emp else None,
        "employee_name": emp.full_name if emp else None,
        "department": emp.department.name if emp and emp.department else None,
        "hr_event": d.hr_event,
        "bank_status": d.bank_status,
        "base_salary": money(d.base_salary),
        "allowances_total": money(d.allowances_total),
        "signing_bonus": money(d.signing_bonus),
        "termination_benefit": money(d.termination_benefit),
        "bonus": money(d.bonus),
        "benefit": money(d.benefit),
        "gross_salary": money(d.gross_salary),
        "tax_rate": str(d.tax_rate) if d.tax_rate is not None else None,
        "tax_amount": money(d.tax_amount),
        "penalty_total": money(d.penalty_total),
        "adjustment_deductions": money(d.adjustment_deductions),
        "deductions_total": money(d.deductions_total),
        "net_pay": money(d.net_pay),
        "working_days": d.working_days,
        "absent_days": d.absent_days,
        "overtime_hours": str(d.overtime_hours) if d.overtime_hours is not None else None,
        "computed_at": iso(d.computed_at),
        "frozen_at": iso(d.frozen_at),
    }


def _exc_row(e: PayrollException) -> Dict[str, Any]:
    return {
        "id": e.id,
        "run_id": e.run_id,
        "employee_id": e.employee_id,
        "type": e.type,
        "severity": e.severity,
        "message": e.message,
        "status": e.status,
        "flagged_at": iso(e.flagged_at),
        "review_note": e.review_note,
        "reviewed_by": e.reviewed_by,
        "resolution_note": e.resolution_note,
        "resolved_by": e.resolved_by,
        "resolved_at": iso(e.resolved_at),
    }


def _adj_row(a: RunAdjustment) -> Dict[str, Any]:
    return {
        "id": a.id,
        "run_id": a.run_id,
        "employee_id": a.employee_id,
        "kind": a.kind,
        "amount": money(a.amount),
        "reason": a.reason,
        "created_by": a.created_by,
        "created_at": iso(a.created_at),
    }


def _item_row(i: CompensationItem) -> Dict[str, Any]:
    return {
        "id": i.id,
        "employee_id": i.employee_id,
        "kind": i.kind,
        "amount": money(i.amount),
        "status": i.status,
        "scheduled_payment_date": iso(i.scheduled_payment_date),
    }


def _history_row(h: PayrollRunHistory) -> Dict[str, Any]:
    return {
        "id": h.id,
        "action": h.action,
        "from_status": h.from_status,
        "to_status": h.to_status,
        "actor_id": h.actor_id,
        "note": h.note,
        "meta": h.meta,
        "created_at": iso(h.created_at),
    }


def _slip_row(s: Payslip) -> Dict[str, Any]:
    return {
        "id": s.id,
        "employee_id": s.employee_id,
        "employee_name": s.employee.full_name if s.employee else None,
        "total_gross_salary": money(s.total_gross_salary),
        "total_deductions": money(s.total_deductions),
        "net_pay": money(s.net_pay),
        "payment_status": s.payment_status,
        "frozen_at": iso(s.frozen_at),
        "paid_at": iso(s.paid_at),
    }


# ---------- runs ----------

@bp.post("")
@requires_perms("payroll.run.write")
def create_run():
    j = _json()
    try:
        company_id = int(j.get("company_id"))
    except (TypeError, ValueError):
        return fail("company_id is required", 422, code="VALIDATION_ERROR")

    if j.get("period"):
        bounds = _month_bounds(j.get("period"))
        if not bounds:
            return fail("period must be YYYY-MM", 422, code="VALIDATION_ERROR")
        start, end = bounds
    else:
        start, end = parse_date(j.get("period_start")), parse_date(j.get("period_end"))
        if not start or not end:
            return fail("period (YYYY-MM) or period_start/period_end (YYYY-MM-DD) required", 422,
                        code="VALIDATION_ERROR")

    employee_ids = parse_id_list(j.get("employee_ids"))
    if employee_ids is None:
        return fail("employee_ids must be a list of integers", 422, code="VALIDATION_ERROR")
    department_id = j.get("department_id")
    try:
        department_id = int(department_id) if department_id not in (None, "") else None
    except (TypeError, ValueError):
        return fail("department_id must be integer", 422, code="VALIDATION_ERROR")

    group_by = (j.get("group_by") or "").strip().lower() or None
    runs = run_lifecycle.create_runs(
        company_id, start, end,
        employee_ids=employee_ids or None,
        department_id=department_id,
        group_by=group_by,
        specialist_id=current_user_id(),
        entity=(j.get("entity") or "").strip() or None,
    )
    if group_by:
        return ok([_run_row(r) for r in runs], status=201)
    return ok(_run_row(runs[0]), status=201)


@bp.get("")
@requires_perms("payroll.run.read")
def list_runs():
    q = PayrollRun.query
    st = (request.args.get("status") or "").strip().lower()
    if st:
        if st not in RUN_STATUSES:
            return fail(f"status must be one of {', '.join(RUN_STATUSES)}", 422, code="VALIDATION_ERROR")
        q = q.filter(PayrollRun.status == st)
    cid = request.args.get("company_id")
    if cid:
        try:
            q = q.filter(PayrollRun.company_id == int(cid))
        except ValueError:
            return fail("company_id must be integer", 422, code="VALIDATION_ERROR")
    if request.args.get("period"):
        bounds = _month_bounds(request.args.get("period"))
        if not bounds:
            return fail("period must be YYYY-MM", 422, code="VALIDATION_ERROR")
        q = q.filter(PayrollRun.period_start <= bounds[1], PayrollRun.period_end >= bounds[0])
    rows, meta = paginate(q.order_by(PayrollRun.id.desc()))
    return ok([_run_row(r) for r in rows], **meta)


@bp.get("/<int:run_id>")
@requires_perms("payroll.run.read")
def get_run(run_id: int):
    return ok(_run_row(run_lifecycle.get_run(run_id)))


@bp.get("/<int:run_id>/draft")
@requires_perms("payroll.run.read")
def get_run_draft(run_id: int):
    d = run_review.get_run_draft(run_id)
    stats = d["statistics"]
    return ok({
        "run": _run_row(d["run"]),
        "statistics": {
            "totalEmployees": stats["totalEmployees"],
            "withExceptions": stats["withExceptions"],
            "totalGross": money(stats["totalGross"]),
            "totalDeductions": money(stats["totalDeductions"]),
            "totalNet": money(stats["totalNet"]),
        },
        "employees": [
            {**_detail_row(e["detail"]), "exceptions": [_exc_row(x) for x in e["exceptions"]]}
            for e in d["employees"]
        ],
        "pending_items": [_item_row(i) for i in d["pending_items"]],
    })


# ---------- exceptions ----------

@bp.get("/<int:run_id>/exceptions")
@requires_perms("payroll.run.read")
def list_exceptions(run_id: int):
    status = (request.args.get("status") or "").strip().lower() or None
    rows = exception_service.list_exceptions(run_id, status)
    return ok([_exc_row(e) for e in rows], total=len(rows))


@bp.get("/<int:run_id>/exceptions/<int:employee_id>/details")
@requires_perms("payroll.run.read")
def exception_details(run_id: int, employee_id: int):
    d = exception_service.exception_details(run_id, employee_id)
    return ok({
        "run": {"id": d["run"].id, "run_code": d["run"].run_code, "status": d["run"].status},
        "employee": _detail_row(d["detail"]),
        "exceptions": [_exc_row(e) for e in d["exceptions"]],
        "requires_bank_details": d["requires_bank_details"],
        "bank_details": d["bank_details"],
    })


@bp.post("/<int:run_id>/exceptions/<int:exception_id>/start")
@requires_perms("payroll.exceptions.resolve")
def start_exception_review(run_id: int, exception_id: int):
    j = _json()
    exc = exception_service.start_review(run_id, exception_id, j.get("note"), current_user_id())
    return ok(_exc_row(exc))


@bp.patch("/<int:run_id>/exceptions/<int:employee_id>/resolve")
@requires_perms("payroll.exceptions.resolve")
def resolve_exceptions(run_id: int, employee_id: int):
    j = _json()
    detail = exception_service.resolve_employee_exceptions(
        run_id, employee_id, j.get("note") or j.get("resolution_note"),
        actor_id=current_user_id(),
        bank_details=j.get("bank_details"),
    )
    rows = PayrollException.query.filter_by(run_id=run_id, employee_id=employee_id).all()
    return ok({**_detail_row(detail), "exceptions": [_exc_row(e) for e in rows]})


# ---------- adjustments ----------

@bp.post("/<int:run_id>/adjustments")
@requires_perms("payroll.run.write")
def create_adjustment(run_id: int):
    j = _json()
    try:
        employee_id = int(j.get("employee_id"))
    except (TypeError, ValueError):
        return fail("employee_id is required", 422, code="VALIDATION_ERROR")
    detail = run_review.create_adjustment(
        run_id, employee_id, j.get("kind") or j.get("type"), j.get("amount"), j.get("reason"),
        actor_id=current_user_id(),
    )
    return ok(_detail_row(detail), status=201)


@bp.get("/<int:run_id>/adjustments")
@requires_perms("payroll.run.read")
def list_adjustments(run_id: int):
    eid = request.args.get("employee_id")
    try:
        eid = int(eid) if eid else None
    except ValueError:
        return fail("employee_id must be integer", 422, code="VALIDATION_ERROR")
    return ok([_adj_row(a) for a in run_review.list_adjustments(run_id, eid)])


# ---------- lifecycle ----------

@bp.get("/<int:run_id>/publish-check")
@requires_perms("payroll.run.read")
def publish_check(run_id: int):
    run = run_lifecycle.get_run(run_id)
    return ok({"run_id": run.id, "status": run.status, **run_lifecycle.evaluate_publish_gate(run).as_dict()})


@bp.patch("/<int:run_id>/publish")
@requires_perms("payroll.run.publish")
def publish_run(run_id: int):
    j = _json()
    run = run_lifecycle.publish(
        run_id, current_user_id(),
        confirm_bank_warnings=_flag(j.get("confirm_bank_warnings")),
        confirm_open_exceptions=_flag(j.get("confirm_open_exceptions")),
    )
    return ok(_run_row(run))


@bp.patch("/<int:run_id>/approve")
@requires_perms("payroll.run.approve")
def approve_run(run_id: int):
    return ok(_run_row(run_lifecycle.approve_run(run_id, current_user_id())))


@bp.patch("/<int:run_id>/reject")
@requires_perms("payroll.run.approve")
def reject_run(run_id: int):
    j = _json()
    run = run_lifecycle.reject_run(run_id, current_user_id(), reason=j.get("reason"), final=_flag(j.get("final")))
    return ok(_run_row(run))


@bp.patch("/<int:run_id>/cancel")
@requires_perms("payroll.run.write")
def cancel_run(run_id: int):
    j = _json()
    return ok(_run_row(run_lifecycle.cancel_run(run_id, current_user_id(), reason=j.get("reason"))))


@bp.patch("/<int:run_id>/process")
@requires_perms("payroll.run.process")
def process_run(run_id: int):
    j = _json()
    failed = parse_id_list(j.get("failed_employee_ids"))
    if failed is None:
        return fail("failed_employee_ids must be a list of integers", 422, code="VALIDATION_ERROR")
    return ok(_run_row(run_lifecycle.mark_processed(run_id, current_user_id(), failed)))


@bp.get("/<int:run_id>/history")
@requires_perms("payroll.run.read")
def run_history(run_id: int):
    return ok([_history_row(h) for h in run_lifecycle.history(run_id)])


# ---------- payslips / register ----------

@bp.get("/<int:run_id>/payslips")
@requires_perms("payroll.run.read")
def list_payslips(run_id: int):
    run_lifecycle.get_run(run_id)
    q = Payslip.query.filter_by(run_id=run_id)
    st = (request.args.get("payment_status") or "").strip().lower()
    if st:
        q = q.filter(Payslip.payment_status == st)
    rows, meta = paginate(q.order_by(Payslip.employee_id.asc()))
    return ok([_slip_row(s) for s in rows], **meta)


@bp.get("/<int:run_id>/payslips/<int:employee_id>")
@requires_perms("payroll.run.read")
def get_payslip(run_id: int, employee_id: int):
    run_lifecycle.get_run(run_id)
    slip = Payslip.query.filter_by(run_id=run_id, employee_id=employee_id).first()
    if slip is None:
        return fail("Payslip not found", 404, code="NOT_FOUND")
    return ok(PayslipService().build_payslip_dto(slip))


@bp.get("/<int:run_id>/register")
@requires_perms("payroll.run.read")
def download_register(run_id: int):
    run = run_lifecycle.get_run(run_id)
    fmt = (request.args.get("format") or "csv").strip().lower()
    content, name, mime = register_export.generate_register(run, fmt)
    return send_file(io.BytesIO(content), mimetype=mime, as_attachment=True, download_name=name)

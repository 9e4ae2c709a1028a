from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, request

from payroll_api.common.auth import requires_perms, current_user_id
from payroll_api.common.http import ok, fail, money, iso
from payroll_api.common.paging import paginate, parse_date, parse_id_list
from payroll_api.models.payroll.compensation import CompensationItem
from payroll_api.services import compensation_service

bp = Blueprint("compensation_items", __name__, url_prefix="/api/v1/compensation-items")


def _json() -> Dict[str, Any]:
    j = request.get_json(silent=True)
    return j if isinstance(j, dict) else {}


def _row(i: CompensationItem) -> Dict[str, Any]:
    emp = i.employee
    return {
        "id": i.id,
        "employee_id": i.employee_id,
        "employee_name": emp.full_name if emp else None,
        "hr_event": emp.hr_event if emp else None,
        "kind": i.kind,
        "amount": money(i.amount),
        "status": i.status,
        "scheduled_payment_date": iso(i.scheduled_payment_date),
        "source_ref": i.source_ref,
        "paid_run_id": i.paid_run_id,
        "decided_by": i.decided_by,
        "decided_at": iso(i.decided_at),
        "decision_note": i.decision_note,
        "created_by": i.created_by,
        "created_at": iso(i.created_at),
        "updated_at": iso(i.updated_at),
    }


@bp.post("")
@requires_perms("payroll.items.write")
def create_item():
    j = _json()
    try:
        employee_id = int(j.get("employee_id"))
    except (TypeError, ValueError):
        return fail("employee_id is required", 422, code="VALIDATION_ERROR")
    sched = None
    if j.get("scheduled_payment_date"):
        sched = parse_date(j.get("scheduled_payment_date"))
        if not sched:
            return fail("scheduled_payment_date must be YYYY-MM-DD", 422, code="VALIDATION_ERROR")
    item = compensation_service.create_item(
        employee_id, j.get("kind"), j.get("amount"),
        scheduled_payment_date=sched,
        source_ref=j.get("source_ref"),
        actor_id=current_user_id(),
    )
    return ok(_row(item), status=201)


@bp.get("")
@requires_perms("payroll.items.read")
def list_items():
    eid = request.args.get("employee_id")
    try:
        eid = int(eid) if eid else None
    except ValueError:
        return fail("employee_id must be integer", 422, code="VALIDATION_ERROR")
    q = compensation_service.list_items(
        status=(request.args.get("status") or "").strip().lower() or None,
        kind=(request.args.get("kind") or "").strip() or None,
        employee_id=eid,
    )
    rows, meta = paginate(q)
    return ok([_row(i) for i in rows], **meta)


@bp.get("/<int:item_id>")
@requires_perms("payroll.items.read")
def get_item(item_id: int):
    return ok(_row(compensation_service.get_item(item_id)))


@bp.patch("/<int:item_id>/approve")
@requires_perms("payroll.items.approve")
def approve_item(item_id: int):
    item, runs = compensation_service.approve_item(item_id, current_user_id(), _json().get("note"))
    return ok(_row(item), recomputed_runs=runs)


@bp.patch("/<int:item_id>/reject")
@requires_perms("payroll.items.approve")
def reject_item(item_id: int):
    item, runs = compensation_service.reject_item(item_id, current_user_id(), _json().get("note"))
    return ok(_row(item), recomputed_runs=runs)


@bp.patch("/<int:item_id>/edit")
@requires_perms("payroll.items.write")
def edit_item(item_id: int):
    j = _json()
    sched = None
    if j.get("scheduled_payment_date"):
        sched = parse_date(j.get("scheduled_payment_date"))
        if not sched:
            return fail("scheduled_payment_date must be YYYY-MM-DD", 422, code="VALIDATION_ERROR")
    item = compensation_service.edit_item(
        item_id,
        amount=j.get("amount"),
        scheduled_payment_date=sched,
        clear_schedule="scheduled_payment_date" in j and j.get("scheduled_payment_date") is None,
    )
    return ok(_row(item))


def _bulk_ids():
    ids = parse_id_list(_json().get("ids"))
    if not ids:
        return None
    return ids


@bp.post("/bulk-approve")
@requires_perms("payroll.items.approve")
def bulk_approve():
    ids = _bulk_ids()
    if ids is None:
        return fail("ids must be a non-empty list of integers", 422, code="VALIDATION_ERROR")
    results = compensation_service.bulk_approve(ids, current_user_id(), _json().get("note"))
    return ok(results, succeeded=sum(1 for r in results if r["ok"]), failed=sum(1 for r in results if not r["ok"]))


@bp.post("/bulk-reject")
@requires_perms("payroll.items.approve")
def bulk_reject():
    ids = _bulk_ids()
    if ids is None:
        return fail("ids must be a non-empty list of integers", 422, code="VALIDATION_ERROR")
    results = compensation_service.bulk_reject(ids, current_user_id(), _json().get("note"))
    return ok(results, succeeded=sum(1 for r in results if r["ok"]), failed=sum(1 for r in results if not r["ok"]))

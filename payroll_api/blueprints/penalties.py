from flask import Blueprint, request

from payroll_api.common.auth import requires_perms, current_user_id
from payroll_api.common.http import ok, money, iso
from payroll_api.services import penalty_service

bp = Blueprint("penalties", __name__, url_prefix="/api/v1/employees")


def _row(line):
    return {
        "id": line.id,
        "reason": line.reason,
        "amount": money(line.amount),
        "settled_run_id": line.settled_run_id,
        "created_by": line.created_by,
        "created_at": iso(line.created_at),
    }


@bp.get("/<int:employee_id>/penalties")
@requires_perms("payroll.penalties.read")
def list_penalties(employee_id: int):
    open_only = (request.args.get("open") or "").strip().lower() in ("1", "true", "yes")
    lines = penalty_service.list_penalties(employee_id, include_settled=not open_only)
    outstanding = sum((line.amount for line in lines if line.settled_run_id is None), 0)
    return ok([_row(l) for l in lines], total=len(lines), outstanding=money(outstanding))


@bp.post("/<int:employee_id>/penalties")
@requires_perms("payroll.penalties.write")
def add_penalty(employee_id: int):
    j = request.get_json(silent=True) or {}
    line = penalty_service.add_penalty(employee_id, j.get("reason"), j.get("amount"), actor_id=current_user_id())
    return ok(_row(line), status=201)

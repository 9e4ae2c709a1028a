# payroll_api/common/http.py
from decimal import Decimal, ROUND_HALF_UP

from flask import jsonify


def ok(data=None, status=200, **meta):
    payload = {"success": True, "data": data}
    if meta:
        payload["meta"] = meta
    return jsonify(payload), status


def fail(message="Bad Request", status=400, code=None, detail=None, errors=None):
    err = {"message": message}
    if code: err["code"] = code
    if detail: err["detail"] = detail
    if errors: err["errors"] = errors
    return jsonify({"success": False, "error": err}), status


def money(x):
    """Render a Numeric/Decimal amount as a fixed 2dp string (None stays None)."""
    if x is None:
        return None
    return str(Decimal(str(x)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def iso(x):
    return x.isoformat() if x is not None else None

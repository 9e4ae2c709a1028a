from datetime import timedelta

from flask import Blueprint, request, jsonify
from flask_jwt_extended import (
    create_access_token, create_refresh_token,
    jwt_required, get_jwt_identity,
)

from payroll_api.extensions import db
from payroll_api.models.user import User

bp = Blueprint("auth_v1", __name__, url_prefix="/api/v1/auth")


def _user_payload(u: User):
    return {"id": u.id, "email": u.email, "full_name": u.full_name,
            "roles": u.role_codes(), "perms": u.permission_codes()}


def _claims(u: User):
    return {"roles": u.role_codes(), "perms": u.permission_codes(), "email": u.email, "name": u.full_name}


@bp.post("/login")
def login():
    data = request.get_json(silent=True, force=True)
    if not isinstance(data, dict):
        data = {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    u = User.query.filter_by(email=email).first()
    if not u or not u.check_password(password) or (u.status or "active") != "active":
        return jsonify({"success": False, "error": {"message": "Invalid credentials"}}), 401

    access = create_access_token(identity=str(u.id), additional_claims=_claims(u),
                                 expires_delta=timedelta(days=1))
    refresh = create_refresh_token(identity=str(u.id), additional_claims={"roles": u.role_codes()})
    return jsonify({"success": True, "access": access, "refresh": refresh, "user": _user_payload(u)}), 200


@bp.post("/refresh")
@jwt_required(refresh=True)
def refresh():
    uid = get_jwt_identity()
    u = db.session.get(User, int(uid)) if uid else None
    if not u:
        return jsonify({"success": False, "error": {"message": "User not found"}}), 401
    return jsonify({"success": True, "access": create_access_token(identity=str(u.id), additional_claims=_claims(u))}), 200


@bp.get("/me")
@jwt_required()
def me():
    uid = get_jwt_identity()
    u = db.session.get(User, int(uid)) if uid else None
    if not u:
        return jsonify({"success": False, "error": {"message": "User not found"}}), 404
    return jsonify({"success": True, "data": _user_payload(u)}), 200

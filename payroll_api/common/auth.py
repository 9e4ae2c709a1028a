# payroll_api/common/auth.py
from __future__ import annotations

from functools import wraps
from typing import Iterable, Optional, Set

from flask_jwt_extended import jwt_required, get_jwt, get_jwt_identity

from payroll_api.common.http import fail
from payroll_api.extensions import db
from payroll_api.models.user import User
from payroll_api.models.security import Role, Permission, UserRole, RolePermission


# ---------- helpers ----------

def _wildcard_match(user_perm: str, required: str) -> bool:
    """
    Match a required permission against one granted permission.
      'payroll.*'      matches 'payroll.run.publish'
      'payroll.run.*'  matches 'payroll.run.approve'
      anything else    matches only exactly
    """
    if user_perm == required:
        return True
    if user_perm.endswith(".*"):
        return required.startswith(user_perm[:-2])
    return False


def _has_any_perm(user_perms: Set[str], required_perms: Iterable[str]) -> bool:
    if not required_perms:
        return True
    if not user_perms:
        return False
    return any(_wildcard_match(up, req) for req in required_perms for up in user_perms)


def _collect_perms_from_db(user_id: int) -> Set[str]:
    q = (
        db.session.query(Permission.code)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .join(Role, Role.id == RolePermission.role_id)
        .join(UserRole, UserRole.role_id == Role.id)
        .filter(UserRole.user_id == user_id)
        .distinct()
    )
    return {row[0] for row in q.all()}


def _collect_roles_from_db(user_id: int) -> Set[str]:
    q = (
        db.session.query(Role.code)
        .join(UserRole, UserRole.role_id == Role.id)
        .filter(UserRole.user_id == user_id)
        .distinct()
    )
    return {row[0] for row in q.all()}


def current_user_id() -> Optional[int]:
    """JWT identity as int (tokens carry it as a string)."""
    uid = get_jwt_identity()
    try:
        return int(uid) if uid is not None else None
    except (TypeError, ValueError):
        return None


# ---------- decorators ----------

def requires_perms(*perm_codes: str):
    """
    Require ANY of the given permission codes.

    Fast path reads 'perms'/'roles' claims issued at login; a miss falls back
    to a live DB read so a stale token can still pass after a grant.
    """
    def outer(fn):
        @wraps(fn)
        @jwt_required()
        def inner(*args, **kwargs):
            if not perm_codes:
                return fn(*args, **kwargs)

            claims = get_jwt() or {}
            if "admin" in set(claims.get("roles") or []):
                return fn(*args, **kwargs)

            if _has_any_perm(set(claims.get("perms") or []), perm_codes):
                return fn(*args, **kwargs)

            uid = current_user_id()
            if uid is None or db.session.get(User, uid) is None:
                return fail("Unauthorized", status=401)

            if "admin" in _collect_roles_from_db(uid):
                return fn(*args, **kwargs)
            if not _has_any_perm(_collect_perms_from_db(uid), perm_codes):
                return fail("Forbidden", status=403)
            return fn(*args, **kwargs)
        return inner
    return outer

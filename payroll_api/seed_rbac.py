from payroll_api.extensions import db
from payroll_api.models.security import Role, Permission, RolePermission, UserRole
from payroll_api.models.user import User

DEFAULT_ROLES = [
    ("admin", "Administrator"),
    ("payroll_specialist", "Payroll Specialist"),
    ("payroll_manager", "Payroll Manager"),
    ("finance_staff", "Finance Staff"),
]

DEFAULT_PERMS = [
    # Runs
    "payroll.run.read", "payroll.run.write",
    "payroll.run.publish", "payroll.run.approve", "payroll.run.process",

    # Compensation items
    "payroll.items.read", "payroll.items.write", "payroll.items.approve",

    # Exceptions
    "payroll.exceptions.resolve",

    # Penalties
    "payroll.penalties.read", "payroll.penalties.write",
]

ROLE_PERM_MAP = {
    "admin": DEFAULT_PERMS,
    "payroll_specialist": [
        "payroll.run.read", "payroll.run.write", "payroll.run.publish",
        "payroll.items.read", "payroll.items.write",
        "payroll.exceptions.resolve",
        "payroll.penalties.read", "payroll.penalties.write",
    ],
    "payroll_manager": [
        "payroll.run.read", "payroll.run.approve",
        "payroll.items.read", "payroll.items.approve",
        "payroll.penalties.read",
    ],
    "finance_staff": [
        "payroll.run.read", "payroll.run.process",
        "payroll.items.read",
    ],
}

ADMIN_EMAILS = ["admin@payroll.local", "admin@demo.local"]


def _ensure_roles():
    code_to_role = {}
    for code, _name in DEFAULT_ROLES:
        r = Role.query.filter_by(code=code).first()
        if not r:
            r = Role(code=code)
            db.session.add(r)
            db.session.flush()
        code_to_role[code] = r
    return code_to_role


def _ensure_permissions():
    code_to_perm = {}
    for code in DEFAULT_PERMS:
        p = Permission.query.filter_by(code=code).first()
        if not p:
            p = Permission(code=code, name=code.replace(".", " ").title())
            db.session.add(p)
            db.session.flush()
        code_to_perm[code] = p
    return code_to_perm


def _map_role_perms(code_to_role, code_to_perm):
    for rcode, perms in ROLE_PERM_MAP.items():
        r = code_to_role[rcode]
        existing = {(rp.role_id, rp.permission_id) for rp in r.permissions}
        for pcode in perms:
            p = code_to_perm[pcode]
            if (r.id, p.id) not in existing:
                db.session.add(RolePermission(role_id=r.id, permission_id=p.id))


def _assign_admin_role():
    admin_user = User.query.filter(User.email.in_(ADMIN_EMAILS)).first()
    if not admin_user:
        return
    if not any(ur.role.code == "admin" for ur in admin_user.user_roles):
        admin_role = Role.query.filter_by(code="admin").first()
        if admin_role:
            db.session.add(UserRole(user_id=admin_user.id, role_id=admin_role.id))


def run():
    code_to_role = _ensure_roles()
    code_to_perm = _ensure_permissions()
    _map_role_perms(code_to_role, code_to_perm)
    _assign_admin_role()
    db.session.commit()
    return {"ok": True, "roles": len(DEFAULT_ROLES), "perms": len(DEFAULT_PERMS)}

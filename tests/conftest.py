import os
from datetime import date
from decimal import Decimal

import pytest
from flask_jwt_extended import create_access_token

from payroll_api import create_app
from payroll_api.extensions import db
from payroll_api.models.employee import Employee
from payroll_api.models.employee_bank import EmployeeBankAccount
from payroll_api.models.master import Company, Department
from payroll_api.models.payroll.compensation import CompensationItem
from payroll_api.models.payroll.config import AllowanceDefinition, TaxRule
from payroll_api.models.payroll.penalty import EmployeePenalty, PenaltyLine
from payroll_api.models.security import Role, UserRole
from payroll_api.models.user import User

JUNE_START = date(2025, 6, 1)
JUNE_END = date(2025, 6, 30)


@pytest.fixture(scope="function")
def app():
    os.environ["DATABASE_URL"] = "sqlite:///:memory:"
    app = create_app()
    app.config["TESTING"] = True
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope="function")
def session(app):
    return db.session


@pytest.fixture
def client(app):
    return app.test_client()


class Factory:
    """Small builders for payroll test data; every call commits."""

    def __init__(self, session):
        self.s = session
        self._seq = 0

    def _next(self):
        self._seq += 1
        return self._seq

    def company(self, code="ACME", name="Acme Egypt"):
        c = Company(code=code, name=name)
        self.s.add(c)
        self.s.commit()
        return c

    def department(self, company, name):
        d = Department(company_id=company.id, name=name)
        self.s.add(d)
        self.s.commit()
        return d

    def employee(self, company, base_salary, bank=("CIB", "1002003004"), hr_event="NORMAL",
                 department=None, status="active"):
        n = self._next()
        e = Employee(
            company_id=company.id,
            department_id=department.id if department else None,
            code=f"EMP-{n:03d}",
            email=f"emp{n}@acme.test",
            first_name=f"Emp{n}",
            last_name="Test",
            base_salary=Decimal(str(base_salary)),
            hr_event=hr_event,
            status=status,
        )
        self.s.add(e)
        self.s.flush()
        if bank is not None:
            self.s.add(EmployeeBankAccount(employee_id=e.id, bank_name=bank[0],
                                           account_number=bank[1], is_primary=True))
        self.s.commit()
        return e

    def tax_rule(self, rate="0.10", company=None, department=None, priority=100,
                 status="approved", effective_from=date(2025, 1, 1), effective_to=None):
        r = TaxRule(
            name="Income Tax", rate=Decimal(rate), status=status,
            scope_company_id=company.id if company else None,
            scope_department_id=department.id if department else None,
            priority=priority, effective_from=effective_from, effective_to=effective_to,
        )
        self.s.add(r)
        self.s.commit()
        return r

    def allowance(self, name, amount, company=None, department=None):
        a = AllowanceDefinition(
            name=name, amount=Decimal(str(amount)), status="approved",
            scope_company_id=company.id if company else None,
            scope_department_id=department.id if department else None,
            effective_from=date(2025, 1, 1),
        )
        self.s.add(a)
        self.s.commit()
        return a

    def item(self, employee, kind, amount, status="pending", scheduled=None):
        i = CompensationItem(employee_id=employee.id, kind=kind, amount=Decimal(str(amount)),
                             status=status, scheduled_payment_date=scheduled)
        self.s.add(i)
        self.s.commit()
        return i

    def penalty(self, employee, reason, amount):
        header = EmployeePenalty.query.filter_by(employee_id=employee.id).first()
        if header is None:
            header = EmployeePenalty(employee_id=employee.id)
            self.s.add(header)
            self.s.flush()
        line = PenaltyLine(penalty_id=header.id, reason=reason, amount=Decimal(str(amount)))
        self.s.add(line)
        self.s.commit()
        return line

    def user(self, email, roles=()):
        u = User(email=email, full_name=email.split("@")[0].title(), status="active")
        u.set_password("secret")
        self.s.add(u)
        self.s.flush()
        for code in roles:
            role = Role.query.filter_by(code=code).first()
            if role is None:
                role = Role(code=code)
                self.s.add(role)
                self.s.flush()
            self.s.add(UserRole(user_id=u.id, role_id=role.id))
        self.s.commit()
        return u

    def standard_setup(self):
        """Company + 10% global tax + Housing 2000 / Transport 1000 allowances."""
        c = self.company()
        self.tax_rule("0.10")
        self.allowance("Housing", 2000)
        self.allowance("Transport", 1000)
        return c


@pytest.fixture
def factory(session):
    return Factory(session)


@pytest.fixture
def auth_headers(app, factory):
    """Bearer headers for a user with the given roles (JWT roles claim, no perms claim)."""
    def _make(email="admin@acme.test", roles=("admin",)):
        u = User.query.filter_by(email=email).first() or factory.user(email, roles)
        token = create_access_token(identity=str(u.id), additional_claims={"roles": list(roles)})
        return {"Authorization": f"Bearer {token}"}, u
    return _make

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import List, Optional

from payroll_api.common.errors import ValidationError
from payroll_api.models.employee import Employee, EmployeeAttendance, HR_EVENTS
from payroll_api.models.employee_bank import EmployeeBankAccount

ACCOUNT_NUMBER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9 \-]{4,32}[A-Za-z0-9]$")

BANK_VALID = "valid"
BANK_MISSING = "missing"
BANK_INVALID = "invalid"


def clean_str(value) -> Optional[str]:
    """Blank / whitespace-only strings become None."""
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def bank_status_for(bank_name: Optional[str], account_number: Optional[str]) -> str:
    if not clean_str(bank_name) or not clean_str(account_number):
        return BANK_MISSING
    if not ACCOUNT_NUMBER_RE.match(clean_str(account_number)):
        return BANK_INVALID
    return BANK_VALID


@dataclass(frozen=True)
class EmployeeSnapshot:
    """Read-only view of one employee for the duration of a run computation."""
    employee_id: int
    code: str
    name: str
    base_salary: Decimal
    bank_name: Optional[str] = None
    bank_account_number: Optional[str] = None
    department_id: Optional[int] = None
    department: Optional[str] = None
    position: Optional[str] = None
    hr_event: str = "NORMAL"
    working_days: int = 22
    absent_days: int = 0
    overtime_hours: Decimal = Decimal("0")
    is_active: bool = True

    def __post_init__(self):
        if not isinstance(self.base_salary, Decimal):
            object.__setattr__(self, "base_salary", Decimal(str(self.base_salary)))
        if not isinstance(self.overtime_hours, Decimal):
            object.__setattr__(self, "overtime_hours", Decimal(str(self.overtime_hours)))
        object.__setattr__(self, "bank_name", clean_str(self.bank_name))
        object.__setattr__(self, "bank_account_number", clean_str(self.bank_account_number))

        if not self.base_salary.is_finite() or self.base_salary < 0:
            raise ValidationError(f"employee {self.employee_id}: base salary must be >= 0",
                                  {"employee_id": self.employee_id})
        if self.hr_event not in HR_EVENTS:
            raise ValidationError(f"employee {self.employee_id}: unknown HR event {self.hr_event!r}",
                                  {"employee_id": self.employee_id})
        if self.working_days < 0 or self.absent_days < 0 or self.overtime_hours < 0:
            raise ValidationError(f"employee {self.employee_id}: attendance counters must be >= 0",
                                  {"employee_id": self.employee_id})

    @property
    def bank_status(self) -> str:
        return bank_status_for(self.bank_name, self.bank_account_number)


def primary_bank_account(employee_id: int) -> Optional[EmployeeBankAccount]:
    q = EmployeeBankAccount.query.filter_by(employee_id=employee_id)
    return (q.filter_by(is_primary=True).order_by(EmployeeBankAccount.id.desc()).first()
            or q.order_by(EmployeeBankAccount.id.desc()).first())


def _attendance_for(employee_id: int, period_start: date, period_end: date) -> Optional[EmployeeAttendance]:
    return (EmployeeAttendance.query
            .filter_by(employee_id=employee_id, period_start=period_start, period_end=period_end)
            .first())


def build_snapshot(emp: Employee, period_start: date, period_end: date,
                   default_working_days: int = 22) -> EmployeeSnapshot:
    bank = primary_bank_account(emp.id)
    att = _attendance_for(emp.id, period_start, period_end)
    return EmployeeSnapshot(
        employee_id=emp.id,
        code=emp.code,
        name=emp.full_name,
        base_salary=Decimal(str(emp.base_salary or 0)),
        bank_name=bank.bank_name if bank else None,
        bank_account_number=bank.account_number if bank else None,
        department_id=emp.department_id,
        department=emp.department.name if emp.department else None,
        position=emp.designation.name if emp.designation else None,
        hr_event=emp.hr_event or "NORMAL",
        working_days=att.working_days if att else default_working_days,
        absent_days=att.absent_days if att else 0,
        overtime_hours=Decimal(str(att.overtime_hours)) if att else Decimal("0"),
        is_active=(emp.status or "active") == "active",
    )



def employees_for_period(company_id: int, period_start: date, period_end: date,
                         employee_ids: Optional[List[int]] = None,
                         department_id: Optional[int] = None) -> List[Employee]:
    """Employees on the roster for the window: joined by period end, not left before period start."""
    q = Employee.query.filter(Employee.company_id == company_id)
    if employee_ids:
        q = q.filter(Employee.id.in_(employee_ids))
    else:
        q = q.filter(Employee.status == "active")
    if department_id is not None:
        q = q.filter(Employee.department_id == department_id)
    q = q.filter((Employee.doj.is_(None)) | (Employee.doj <= period_end))
    q = q.filter((Employee.dol.is_(None)) | (Employee.dol >= period_start))
    return q.order_by(Employee.id.asc()).all()

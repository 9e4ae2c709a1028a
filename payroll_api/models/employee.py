from datetime import datetime
from payroll_api.extensions import db

HR_EVENTS = ("NEW_HIRE", "RESIGNATION", "TERMINATION", "NORMAL")


class Employee(db.Model):
    __tablename__ = "employees"

    id = db.Column(db.Integer, primary_key=True)
    company_id     = db.Column(db.Integer, db.ForeignKey("companies.id", ondelete="RESTRICT"), nullable=False)
    department_id  = db.Column(db.Integer, db.ForeignKey("departments.id", ondelete="RESTRICT"), nullable=True)
    designation_id = db.Column(db.Integer, db.ForeignKey("designations.id", ondelete="RESTRICT"), nullable=True)
    user_id        = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, unique=True)

    code  = db.Column(db.String(32), nullable=False)    # unique per company
    email = db.Column(db.String(255), unique=True, nullable=False)
    first_name = db.Column(db.String(80), nullable=False)
    last_name  = db.Column(db.String(80), nullable=True)

    doj = db.Column(db.Date, nullable=True)   # date of joining
    dol = db.Column(db.Date, nullable=True)   # date of leaving
    status = db.Column(db.String(16), default="active", nullable=False)  # active/inactive

    base_salary = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    # set by the recruitment / offboarding workflows; authoritative for payroll
    hr_event = db.Column(db.Enum(*HR_EVENTS, name="employee_hr_event_enum"), nullable=False, default="NORMAL")

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint("company_id", "code", name="uq_employee_company_code"),
        db.Index("ix_emp_company_id", "company_id"),
        db.Index("ix_emp_dept_id", "department_id"),
    )

    company     = db.relationship("Company", lazy="joined")
    department  = db.relationship("Department", lazy="joined")
    designation = db.relationship("Designation", lazy="joined")

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)


class EmployeeAttendance(db.Model):
    """Per-period counters supplied by the leave/attendance side."""
    __tablename__ = "employee_attendance"

    id = db.Column(db.Integer, primary_key=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id", ondelete="CASCADE"), nullable=False)
    period_start = db.Column(db.Date, nullable=False)
    period_end = db.Column(db.Date, nullable=False)
    working_days = db.Column(db.Integer, nullable=False, default=22)
    absent_days = db.Column(db.Integer, nullable=False, default=0)
    overtime_hours = db.Column(db.Numeric(6, 2), nullable=False, default=0)

    __table_args__ = (
        db.UniqueConstraint("employee_id", "period_start", "period_end", name="uq_emp_attendance_period"),
    )

    employee = db.relationship("Employee", backref=db.backref("attendance", lazy="dynamic"))

from datetime import datetime
from payroll_api.extensions import db

RUN_STATUSES = ("draft", "published", "approved", "processed", "cancelled", "rejected")
OPEN_RUN_STATUSES = ("draft", "published", "approved")
RUN_PAYMENT_STATUSES = ("pending", "processed", "failed")
BANK_STATUSES = ("valid", "missing", "invalid")
PAYSLIP_PAYMENT_STATUSES = ("pending", "paid", "failed")


class PayrollRun(db.Model):
    __tablename__ = "payroll_runs"

    id = db.Column(db.Integer, primary_key=True)
    run_code = db.Column(db.String(32), unique=True, nullable=False)  # PR-2025-001
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False)
    department_id = db.Column(db.Integer, db.ForeignKey("departments.id"), nullable=True)
    entity = db.Column(db.String(120), nullable=True)  # display label of the partition
    period_start = db.Column(db.Date, nullable=False)
    period_end = db.Column(db.Date, nullable=False)

    status = db.Column(db.Enum(*RUN_STATUSES, name="payroll_run_status_enum"), nullable=False, default="draft")
    payment_status = db.Column(db.Enum(*RUN_PAYMENT_STATUSES, name="payroll_run_payment_enum"),
                               nullable=False, default="pending")

    # derived by run_aggregator.recompute_aggregate only
    employee_count = db.Column(db.Integer, nullable=False, default=0)
    exception_count = db.Column(db.Integer, nullable=False, default=0)
    total_gross = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    total_deductions = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    total_net_pay = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    tax_rule_id = db.Column(db.Integer, db.ForeignKey("tax_rules.id"), nullable=True)
    tax_rate = db.Column(db.Numeric(6, 4), nullable=True)

    specialist_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    published_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    published_at = db.Column(db.DateTime, nullable=True)
    approved_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)
    processed_at = db.Column(db.DateTime, nullable=True)
    rejection_reason = db.Column(db.String(255), nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=True)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        db.Index("ix_payroll_run_period", "company_id", "period_start", "period_end"),
    )

    company = db.relationship("Company", lazy="joined")
    department = db.relationship("Department", lazy="joined")


class EmployeePayrollDetail(db.Model):
    __tablename__ = "employee_payroll_details"

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(db.Integer, db.ForeignKey("payroll_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id"), nullable=False, index=True)

    base_salary = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    allowances_total = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    signing_bonus = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    termination_benefit = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    bonus = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    benefit = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    gross_salary = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    tax_rate = db.Column(db.Numeric(6, 4), nullable=False, default=0)
    tax_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    penalty_total = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    adjustment_deductions = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    deductions_total = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    net_pay = db.Column(db.Numeric(14, 2), nullable=False, default=0)  # may be negative

    bank_status = db.Column(db.Enum(*BANK_STATUSES, name="payroll_bank_status_enum"), nullable=False, default="valid")
    hr_event = db.Column(db.String(20), nullable=False, default="NORMAL")
    working_days = db.Column(db.Integer, nullable=False, default=0)
    absent_days = db.Column(db.Integer, nullable=False, default=0)
    overtime_hours = db.Column(db.Numeric(6, 2), nullable=False, default=0)

    calc_meta = db.Column(db.JSON)  # inputs used (item ids, adjustment ids, rate source)
    computed_at = db.Column(db.DateTime, default=datetime.utcnow)
    frozen_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.UniqueConstraint("run_id", "employee_id", name="uq_detail_run_employee"),
    )

    run = db.relationship("PayrollRun", backref=db.backref("details", lazy="dynamic"))
    employee = db.relationship("Employee", lazy="joined")


class Payslip(db.Model):
    __tablename__ = "payslips"

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(db.Integer, db.ForeignKey("payroll_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id"), nullable=False, index=True)
    detail_id = db.Column(db.Integer, db.ForeignKey("employee_payroll_details.id", ondelete="CASCADE"),
                          nullable=False, unique=True)

    earnings = db.Column(db.JSON, nullable=False, default=list)    # [{code, name, amount}]
    deductions = db.Column(db.JSON, nullable=False, default=list)  # [{code, name, category, rate?, amount}]
    total_gross_salary = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    total_deductions = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    net_pay = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    payment_status = db.Column(db.Enum(*PAYSLIP_PAYMENT_STATUSES, name="payslip_payment_status_enum"),
                               nullable=False, default="pending")
    generated_at = db.Column(db.DateTime, default=datetime.utcnow)
    frozen_at = db.Column(db.DateTime, nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.UniqueConstraint("run_id", "employee_id", name="uq_payslip_run_employee"),
    )

    run = db.relationship("PayrollRun", backref=db.backref("payslips", lazy="dynamic"))
    detail = db.relationship("EmployeePayrollDetail", backref=db.backref("payslip", uselist=False))
    employee = db.relationship("Employee", lazy="joined")


class PayrollRunHistory(db.Model):
    """Audit trail of lifecycle transitions."""
    __tablename__ = "payroll_run_history"

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(db.Integer, db.ForeignKey("payroll_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    action = db.Column(db.String(32), nullable=False)
    from_status = db.Column(db.String(16), nullable=True)
    to_status = db.Column(db.String(16), nullable=False)
    actor_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    note = db.Column(db.String(255), nullable=True)
    meta = db.Column(db.JSON)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

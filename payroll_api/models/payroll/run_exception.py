from datetime import datetime
from payroll_api.extensions import db

EXCEPTION_TYPES = (
    "MISSING_BANK_DETAILS",
    "INVALID_BANK_DETAILS",
    "NEGATIVE_NET_PAY",
    "EXCESSIVE_PENALTIES",
    "ZERO_BASE_SALARY",
    "CALCULATION_ERROR",
)
SEVERITIES = ("LOW", "MEDIUM", "HIGH", "CRITICAL")
EXCEPTION_STATUSES = ("open", "in_progress", "resolved")
UNRESOLVED = ("open", "in_progress")


class PayrollException(db.Model):
    """
    A reviewable finding on one employee's detail. Lifecycle is independent of
    the run: open -> in_progress -> resolved, each step carrying a note.
    """
    __tablename__ = "payroll_exceptions"

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(db.Integer, db.ForeignKey("payroll_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id"), nullable=False, index=True)
    detail_id = db.Column(db.Integer, db.ForeignKey("employee_payroll_details.id", ondelete="CASCADE"), nullable=True)

    type = db.Column(db.Enum(*EXCEPTION_TYPES, name="payroll_exception_type_enum"), nullable=False)
    severity = db.Column(db.Enum(*SEVERITIES, name="payroll_exception_severity_enum"), nullable=False)
    message = db.Column(db.String(255), nullable=False)
    status = db.Column(db.Enum(*EXCEPTION_STATUSES, name="payroll_exception_status_enum"),
                       nullable=False, default="open")
    flagged_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    review_note = db.Column(db.String(500), nullable=True)
    reviewed_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    resolution_note = db.Column(db.String(500), nullable=True)
    resolved_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.Index("ix_payroll_exc_run_emp_status", "run_id", "employee_id", "status"),
    )

    employee = db.relationship("Employee", lazy="joined")

    @property
    def is_unresolved(self) -> bool:
        return self.status in UNRESOLVED

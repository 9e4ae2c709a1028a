from datetime import datetime
from payroll_api.extensions import db

COMPENSATION_KINDS = ("SIGNING_BONUS", "TERMINATION_BENEFIT", "RESIGNATION_BENEFIT")
COMPENSATION_STATUSES = ("pending", "approved", "rejected")


class CompensationItem(db.Model):
    """
    One-off pay item raised by an HR event (new hire, resignation, termination).
    Counts towards gross pay only while `approved`; editable only while `pending`.
    Belongs to the employee, not to a run.
    """
    __tablename__ = "compensation_items"

    id = db.Column(db.Integer, primary_key=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id", ondelete="CASCADE"), nullable=False, index=True)
    kind = db.Column(db.Enum(*COMPENSATION_KINDS, name="compensation_kind_enum"), nullable=False)
    amount = db.Column(db.Numeric(14, 2), nullable=False)
    status = db.Column(db.Enum(*COMPENSATION_STATUSES, name="compensation_status_enum"),
                       nullable=False, default="pending")
    scheduled_payment_date = db.Column(db.Date, nullable=True)
    source_ref = db.Column(db.String(120), nullable=True)  # e.g. offer / exit case id
    # set when a processed run paid the item out; it is not counted again afterwards
    paid_run_id = db.Column(db.Integer, db.ForeignKey("payroll_runs.id"), nullable=True)

    decided_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    decided_at = db.Column(db.DateTime, nullable=True)
    decision_note = db.Column(db.String(255), nullable=True)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.Index("ix_comp_item_emp_status", "employee_id", "status"),
    )

    employee = db.relationship("Employee", lazy="joined")

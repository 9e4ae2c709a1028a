from datetime import datetime
from payroll_api.extensions import db

ADJUSTMENT_KINDS = ("bonus", "deduction", "benefit")


class RunAdjustment(db.Model):
    """Manual draft-review correction; folded into the employee's next recompute."""
    __tablename__ = "run_adjustments"

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(db.Integer, db.ForeignKey("payroll_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id"), nullable=False, index=True)

    kind = db.Column(db.Enum(*ADJUSTMENT_KINDS, name="run_adjustment_kind_enum"), nullable=False)
    amount = db.Column(db.Numeric(14, 2), nullable=False)  # always > 0; kind carries the sign
    reason = db.Column(db.String(255), nullable=False)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    employee = db.relationship("Employee", lazy="joined")

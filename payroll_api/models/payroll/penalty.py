from datetime import datetime
from payroll_api.extensions import db


class EmployeePenalty(db.Model):
    __tablename__ = "employee_penalties"

    id = db.Column(db.Integer, primary_key=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id", ondelete="CASCADE"),
                            nullable=False, unique=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    employee = db.relationship("Employee", lazy="joined")
    lines = db.relationship(
        "PenaltyLine",
        back_populates="penalty",
        cascade="all, delete-orphan",
        order_by="PenaltyLine.id",
    )


class PenaltyLine(db.Model):
    __tablename__ = "penalty_lines"

    id = db.Column(db.Integer, primary_key=True)
    penalty_id = db.Column(db.Integer, db.ForeignKey("employee_penalties.id", ondelete="CASCADE"),
                           nullable=False, index=True)
    reason = db.Column(db.String(255), nullable=False)
    amount = db.Column(db.Numeric(14, 2), nullable=False)
    # set once a processed run has deducted the line
    settled_run_id = db.Column(db.Integer, db.ForeignKey("payroll_runs.id"), nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    penalty = db.relationship("EmployeePenalty", back_populates="lines")

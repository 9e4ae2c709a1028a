from datetime import datetime
from payroll_api.extensions import db

class EmployeeBankAccount(db.Model):
    __tablename__ = "employee_bank_accounts"

    id = db.Column(db.Integer, primary_key=True)
    employee_id = db.Column(
        db.Integer, db.ForeignKey("employees.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # nullable: the payroll side must see and flag incomplete records
    bank_name = db.Column(db.String(80), nullable=True)
    account_number = db.Column(db.String(40), nullable=True)
    iban = db.Column(db.String(34), nullable=True)
    swift_code = db.Column(db.String(11), nullable=True)

    is_primary = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.Index("ix_empbank_primary", "employee_id", "is_primary"),
    )

    employee = db.relationship(
        "Employee",
        backref=db.backref("bank_accounts", lazy="dynamic", cascade="all, delete-orphan"),
    )

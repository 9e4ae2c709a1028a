from datetime import datetime
from payroll_api.extensions import db

CONFIG_STATUSES = ("draft", "approved", "retired")


class TaxRule(db.Model):
    """
    Versioned tax configuration. One effective rate applies to a run; rules are
    never stacked. Resolution: department scope, then company scope, then global;
    lower `priority` wins within a tier, most recent `effective_from` breaks ties.
    """
    __tablename__ = "tax_rules"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(80), nullable=False, default="Income Tax")
    rate = db.Column(db.Numeric(6, 4), nullable=False)  # 0.1000 == 10%
    status = db.Column(db.Enum(*CONFIG_STATUSES, name="tax_rule_status_enum"), nullable=False, default="draft")

    scope_company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=True)
    scope_department_id = db.Column(db.Integer, db.ForeignKey("departments.id"), nullable=True)
    priority = db.Column(db.Integer, nullable=False, default=100)

    effective_from = db.Column(db.Date, nullable=False)
    effective_to = db.Column(db.Date, nullable=True)

    approved_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.Index("ix_taxrule_resolve", "status", "scope_company_id", "scope_department_id",
                 "effective_from", "priority"),
    )


class AllowanceDefinition(db.Model):
    """Flat monthly allowance (Housing, Transport, ...). Global unless department-scoped."""
    __tablename__ = "allowance_definitions"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(80), nullable=False)
    amount = db.Column(db.Numeric(14, 2), nullable=False)
    status = db.Column(db.Enum(*CONFIG_STATUSES, name="allowance_status_enum"), nullable=False, default="draft")

    scope_company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=True)
    scope_department_id = db.Column(db.Integer, db.ForeignKey("departments.id"), nullable=True)

    effective_from = db.Column(db.Date, nullable=True)
    effective_to = db.Column(db.Date, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

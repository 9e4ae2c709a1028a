from __future__ import annotations
from datetime import date
from decimal import Decimal
from typing import List, Optional

from payroll_api.common.errors import ConfigurationError
from payroll_api.models.payroll.config import TaxRule, AllowanceDefinition
from payroll_api.services.pay_engine import PayConfig


def _effective(q, model, on_date: date):
    return (
        q.filter(model.status == "approved")
        .filter((model.effective_from.is_(None)) | (model.effective_from <= on_date))
        .filter((model.effective_to.is_(None)) | (model.effective_to >= on_date))
    )


def resolve_tax_rules(company_id: Optional[int], department_id: Optional[int], on_date: date) -> List[TaxRule]:
    """
    Approved tax rules effective on `on_date`, in resolution order:
    1) company + department
    2) company-only
    3) global (no scope)

    Within each tier, lower `priority` wins; tie-breaker is most-recent `effective_from`.
    """
    q = _effective(TaxRule.query, TaxRule, on_date)

    def _ordered(subq):
        return subq.order_by(TaxRule.priority.asc(), TaxRule.effective_from.desc(), TaxRule.id.desc()).all()

    out: List[TaxRule] = []
    if company_id is not None and department_id is not None:
        out.extend(_ordered(q.filter(TaxRule.scope_company_id == company_id,
                                     TaxRule.scope_department_id == department_id)))
    if company_id is not None:
        out.extend(_ordered(q.filter(TaxRule.scope_company_id == company_id,
                                     TaxRule.scope_department_id.is_(None))))
    out.extend(_ordered(q.filter(TaxRule.scope_company_id.is_(None),
                                 TaxRule.scope_department_id.is_(None))))
    return out


def resolve_tax_rule(company_id: Optional[int], department_id: Optional[int], on_date: date) -> TaxRule:
    rules = resolve_tax_rules(company_id, department_id, on_date)
    if not rules:
        raise ConfigurationError(
            f"No approved tax rule effective on {on_date.isoformat()}",
            {"company_id": company_id, "department_id": department_id},
        )
    return rules[0]


def resolve_allowances(company_id: Optional[int], department_id: Optional[int], on_date: date) -> List[AllowanceDefinition]:
    """Global + company + matching-department allowances; all of them apply (flat amounts add up)."""
    q = _effective(AllowanceDefinition.query, AllowanceDefinition, on_date)
    q = q.filter((AllowanceDefinition.scope_company_id.is_(None))
                 | (AllowanceDefinition.scope_company_id == company_id))
    q = q.filter((AllowanceDefinition.scope_department_id.is_(None))
                 | (AllowanceDefinition.scope_department_id == department_id))
    return q.order_by(AllowanceDefinition.id.asc()).all()


def pay_config_for(company_id: Optional[int], department_id: Optional[int], on_date: date,
                   tax_rule: Optional[TaxRule] = None) -> PayConfig:
    """Build the engine's PayConfig. The run pins its tax rule; allowances follow the employee's department."""
    rule = tax_rule or resolve_tax_rule(company_id, department_id, on_date)
    allowances = resolve_allowances(company_id, department_id, on_date)
    return PayConfig(
        tax_rate=Decimal(str(rule.rate)),
        tax_name=rule.name or "Income Tax",
        allowances=tuple((a.name, Decimal(str(a.amount))) for a in allowances),
        tax_rule_id=rule.id,
    )

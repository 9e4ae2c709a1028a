from datetime import date
from decimal import Decimal

import pytest

from payroll_api.common.errors import ConfigurationError
from payroll_api.services.config_scope import (
    pay_config_for, resolve_allowances, resolve_tax_rule, resolve_tax_rules,
)

ON = date(2025, 6, 30)


def test_tax_rule_resolution_order(factory):
    c = factory.company()
    eng = factory.department(c, "Engineering")
    g = factory.tax_rule("0.10", priority=1)
    co = factory.tax_rule("0.12", company=c, priority=50)
    cd = factory.tax_rule("0.15", company=c, department=eng, priority=90)

    out = resolve_tax_rules(c.id, eng.id, ON)
    assert [r.id for r in out] == [cd.id, co.id, g.id]
    assert resolve_tax_rule(c.id, None, ON).id == co.id


def test_priority_then_most_recent_wins_within_a_tier(factory):
    old = factory.tax_rule("0.10", priority=10, effective_from=date(2024, 1, 1))
    new = factory.tax_rule("0.11", priority=10, effective_from=date(2025, 1, 1))
    low = factory.tax_rule("0.20", priority=5, effective_from=date(2023, 1, 1))
    assert [r.id for r in resolve_tax_rules(None, None, ON)] == [low.id, new.id, old.id]


def test_draft_and_expired_rules_are_ignored(factory):
    factory.tax_rule("0.10", status="draft")
    factory.tax_rule("0.12", effective_to=date(2025, 5, 31))
    with pytest.raises(ConfigurationError):
        resolve_tax_rule(None, None, ON)


def test_allowances_add_up_across_scopes(factory):
    c = factory.company()
    eng = factory.department(c, "Engineering")
    fin = factory.department(c, "Finance")
    factory.allowance("Housing", 2000)
    factory.allowance("Transport", 1000, company=c)
    factory.allowance("On-call", 500, company=c, department=eng)
    factory.allowance("Audit", 300, company=c, department=fin)
    factory.tax_rule("0.10")

    assert [a.name for a in resolve_allowances(c.id, eng.id, ON)] == ["Housing", "Transport", "On-call"]
    cfg = pay_config_for(c.id, fin.id, ON)
    assert cfg.tax_rate == Decimal("0.1000")
    assert dict(cfg.allowances) == {"Housing": Decimal("2000.00"), "Transport": Decimal("1000.00"),
                                    "Audit": Decimal("300.00")}

"""
Gross-to-net computation for one employee.

Pure and deterministic: no database, no clock, no logging. Amounts are Decimal
and rounded half-up to the currency minor unit (0.01) at each money step.
"""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

from payroll_api.common.errors import ConfigurationError, ValidationError
from payroll_api.services.employee_snapshot import EmployeeSnapshot

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

SIGNING_KINDS = ("SIGNING_BONUS",)
BENEFIT_KINDS = ("TERMINATION_BENEFIT", "RESIGNATION_BENEFIT")


def money(x) -> Decimal:
    return Decimal(str(x if x is not None else 0)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class CompensationInput:
    kind: str
    amount: Decimal
    status: str
    item_id: Optional[int] = None


@dataclass(frozen=True)
class PenaltyInput:
    reason: str
    amount: Decimal
    line_id: Optional[int] = None


@dataclass(frozen=True)
class AdjustmentInput:
    kind: str  # bonus | deduction | benefit
    amount: Decimal
    reason: str = ""
    adjustment_id: Optional[int] = None


@dataclass(frozen=True)
class PayConfig:
    tax_rate: Optional[Decimal]
    tax_name: str = "Income Tax"
    allowances: Tuple[Tuple[str, Decimal], ...] = ()
    tax_rule_id: Optional[int] = None


@dataclass(frozen=True)
class PayLine:
    code: str
    name: str
    amount: Decimal
    category: Optional[str] = None
    rate: Optional[Decimal] = None


@dataclass(frozen=True)
class PayComputation:
    employee_id: int
    base_salary: Decimal
    allowances_total: Decimal
    signing_bonus: Decimal
    termination_benefit: Decimal
    bonus: Decimal
    benefit: Decimal
    gross_salary: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    penalty_total: Decimal
    adjustment_deductions: Decimal
    deductions_total: Decimal
    net_pay: Decimal
    earnings: Tuple[PayLine, ...] = ()
    deductions: Tuple[PayLine, ...] = ()
    inputs: Dict[str, Any] = field(default_factory=dict, compare=False)

    def reconciles(self) -> bool:
        """Every total equals the sum of its parts."""
        return (
            self.gross_salary == self.base_salary + self.allowances_total + self.bonus + self.benefit
            and self.deductions_total == self.tax_amount + self.penalty_total + self.adjustment_deductions
            and self.net_pay == self.gross_salary - self.deductions_total
            and sum((l.amount for l in self.earnings), ZERO) == self.gross_salary
            and sum((l.amount for l in self.deductions), ZERO) == self.deductions_total
        )

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _validated_rate(config: Optional[PayConfig]) -> Decimal:
    if config is None or config.tax_rate is None:
        raise ConfigurationError("No active tax configuration for this run")
    try:
        rate = Decimal(str(config.tax_rate))
    except ArithmeticError:
        raise ConfigurationError(f"Tax rate {config.tax_rate!r} is not a number")
    if not rate.is_finite() or rate < 0 or rate > 1:
        raise ConfigurationError(f"Tax rate {rate} outside [0, 1]", {"tax_rule_id": config.tax_rule_id})
    return rate


def _amount(x, what: str, employee_id: int) -> Decimal:
    try:
        d = Decimal(str(x))
    except ArithmeticError:
        raise ValidationError(f"{what}: amount {x!r} is not a number", {"employee_id": employee_id})
    if not d.is_finite() or d < 0:
        raise ValidationError(f"{what}: amount must be >= 0", {"employee_id": employee_id})
    return money(d)


def compute_pay(
    snapshot: EmployeeSnapshot,
    items: Iterable[CompensationInput],
    penalties: Iterable[PenaltyInput],
    config: PayConfig,
    adjustments: Sequence[AdjustmentInput] = (),
) -> PayComputation:
    """
    Compute one employee's pay. `items` may carry any status; only approved ones count.
    Raises ConfigurationError / ValidationError, never returns a partial result.
    """
    rate = _validated_rate(config)
    eid = snapshot.employee_id

    base = money(snapshot.base_salary)

    earnings = [PayLine("BASIC", "Base Salary", base)]

    allowances_total = ZERO
    for name, amt in config.allowances:
        a = _amount(amt, f"allowance {name}", eid)
        allowances_total += a
        earnings.append(PayLine("ALLOWANCE", name, a))

    signing_bonus = ZERO
    termination_benefit = ZERO
    used_items = []
    for it in items:
        if it.status != "approved":
            continue
        a = _amount(it.amount, f"compensation item {it.item_id}", eid)
        if it.kind in SIGNING_KINDS:
            signing_bonus += a
        elif it.kind in BENEFIT_KINDS:
            termination_benefit += a
        else:
            raise ValidationError(f"Unknown compensation kind {it.kind!r}", {"employee_id": eid})
        used_items.append(it.item_id)

    adj_bonus = adj_benefit = adj_deduction = ZERO
    for adj in adjustments:
        a = _amount(adj.amount, "adjustment", eid)
        if adj.kind == "bonus":
            adj_bonus += a
        elif adj.kind == "benefit":
            adj_benefit += a
        elif adj.kind == "deduction":
            adj_deduction += a
        else:
            raise ValidationError(f"Unknown adjustment kind {adj.kind!r}", {"employee_id": eid})

    if signing_bonus:
        earnings.append(PayLine("SIGNING_BONUS", "Signing Bonus", signing_bonus))
    if adj_bonus:
        earnings.append(PayLine("BONUS_ADJ", "Bonus Adjustment", adj_bonus))
    if termination_benefit:
        earnings.append(PayLine("TERMINATION_BENEFIT", "Termination / Resignation Benefit", termination_benefit))
    if adj_benefit:
        earnings.append(PayLine("BENEFIT_ADJ", "Benefit Adjustment", adj_benefit))

    bonus = signing_bonus + adj_bonus
    benefit = termination_benefit + adj_benefit
    gross = base + allowances_total + bonus + benefit

    tax = money(gross * rate)
    deductions = [PayLine("TAX", config.tax_name, tax, category="tax", rate=rate)]

    penalty_total = ZERO
    used_lines = []
    for p in penalties:
        a = _amount(p.amount, f"penalty {p.reason!r}", eid)
        penalty_total += a
        deductions.append(PayLine("PENALTY", p.reason, a, category="penalty"))
        used_lines.append(p.line_id)

    if adj_deduction:
        deductions.append(PayLine("DEDUCTION_ADJ", "Deduction Adjustment", adj_deduction, category="adjustment"))

    deductions_total = tax + penalty_total + adj_deduction
    # never floored at zero
    net = gross - deductions_total

    return PayComputation(
        employee_id=eid,
        base_salary=base,
        allowances_total=allowances_total,
        signing_bonus=signing_bonus,
        termination_benefit=termination_benefit,
        bonus=bonus,
        benefit=benefit,
        gross_salary=gross,
        tax_rate=rate,
        tax_amount=tax,
        penalty_total=penalty_total,
        adjustment_deductions=adj_deduction,
        deductions_total=deductions_total,
        net_pay=net,
        earnings=tuple(earnings),
        deductions=tuple(deductions),
        inputs={
            "approved_item_ids": [i for i in used_items if i is not None],
            "penalty_line_ids": [i for i in used_lines if i is not None],
            "adjustment_ids": [a.adjustment_id for a in adjustments if a.adjustment_id is not None],
            "tax_rule_id": config.tax_rule_id,
        },
    )

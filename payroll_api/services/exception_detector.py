from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from payroll_api.services.employee_snapshot import BANK_INVALID, BANK_MISSING, EmployeeSnapshot
from payroll_api.services.pay_engine import PayComputation

DEFAULT_PENALTY_THRESHOLD = Decimal("0.5")

# only this severity blocks publish
BLOCKING_SEVERITY = "CRITICAL"


@dataclass(frozen=True)
class Finding:
    type: str
    severity: str
    message: str


def _decimals(values) -> tuple:
    return tuple(Decimal(str(v if v is not None else 0)) for v in values)


def detect(
    comp: PayComputation,
    snapshot: EmployeeSnapshot,
    penalty_threshold: Decimal = DEFAULT_PENALTY_THRESHOLD,
    payslip_totals: Optional[tuple] = None,
    detail_totals: Optional[tuple] = None,
) -> List[Finding]:
    """
    Evaluate every rule independently, in a fixed order, and return all that fire.

    `payslip_totals` is (gross, deductions, net) as stored on the payslip. It is
    compared with `detail_totals`, the stored detail row, or with the computation
    when no detail is given; a mismatch is reported as a calculation anomaly.
    """
    out: List[Finding] = []

    bank = snapshot.bank_status
    if bank == BANK_MISSING:
        missing = [n for n, v in (("bank name", snapshot.bank_name),
                                  ("account number", snapshot.bank_account_number)) if not v]
        out.append(Finding("MISSING_BANK_DETAILS", "HIGH",
                           f"Missing {' and '.join(missing)}"))
    elif bank == BANK_INVALID:
        out.append(Finding("INVALID_BANK_DETAILS", "HIGH",
                           "Bank account number format is invalid"))

    if comp.net_pay < 0:
        out.append(Finding("NEGATIVE_NET_PAY", "CRITICAL",
                           f"Net pay is negative ({comp.net_pay})"))

    threshold = Decimal(str(penalty_threshold))
    if comp.penalty_total > 0 and comp.penalty_total > comp.gross_salary * threshold:
        out.append(Finding("EXCESSIVE_PENALTIES", "MEDIUM",
                           f"Penalties {comp.penalty_total} exceed {threshold:%} of gross {comp.gross_salary}"))

    if snapshot.is_active and comp.base_salary == 0:
        out.append(Finding("ZERO_BASE_SALARY", "MEDIUM", "Base salary is zero for an active employee"))

    if not comp.reconciles():
        out.append(Finding("CALCULATION_ERROR", "HIGH",
                           "Detail components do not reconcile to totals"))
    elif payslip_totals is not None:
        expected = detail_totals if detail_totals is not None else (
            comp.gross_salary, comp.deductions_total, comp.net_pay)
        if _decimals(payslip_totals) != _decimals(expected):
            out.append(Finding("CALCULATION_ERROR", "MEDIUM",
                               "Payslip totals do not match the payroll detail"))

    return out


def blocks_publish(findings: List[Finding]) -> bool:
    return any(f.severity == BLOCKING_SEVERITY for f in findings)

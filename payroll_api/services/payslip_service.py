from dataclasses import dataclass, asdict
from datetime import datetime
from decimal import Decimal
from typing import List, Dict, Any, Optional

from payroll_api.extensions import db
from payroll_api.common.errors import StateError
from payroll_api.common.http import money
from payroll_api.models.payroll.pay_run import PayrollRun, EmployeePayrollDetail, Payslip
from payroll_api.services.employee_snapshot import primary_bank_account
from payroll_api.services.pay_engine import PayComputation, PayLine


@dataclass
class PayslipLine:
    code: str
    name: str
    amount: str
    category: Optional[str] = None
    rate: Optional[str] = None


@dataclass
class PayslipDTO:
    company: Dict[str, Any]
    employee: Dict[str, Any]
    run: Dict[str, Any]
    attendance: Dict[str, Any]
    earnings: List[PayslipLine]
    deductions: List[PayslipLine]
    deductions_summary: Dict[str, Any]
    totals: Dict[str, Any]
    payment_status: str


def _line_json(line: PayLine) -> Dict[str, Any]:
    out = {"code": line.code, "name": line.name, "amount": money(line.amount)}
    if line.category:
        out["category"] = line.category
    if line.rate is not None:
        out["rate"] = str(line.rate)
    return out


def write_payslip(run: PayrollRun, detail: EmployeePayrollDetail, comp: PayComputation) -> Payslip:
    """Create or regenerate the payslip for a detail. Frozen payslips are never rewritten."""
    slip = Payslip.query.filter_by(run_id=run.id, employee_id=detail.employee_id).first()
    if slip is None:
        slip = Payslip(run_id=run.id, employee_id=detail.employee_id, detail_id=detail.id)
        db.session.add(slip)
    elif slip.frozen_at is not None:
        raise StateError("Payslip is frozen", current_state=run.status,
                         payload={"employee_id": detail.employee_id})

    slip.earnings = [_line_json(l) for l in comp.earnings]
    slip.deductions = [_line_json(l) for l in comp.deductions]
    slip.total_gross_salary = comp.gross_salary
    slip.total_deductions = comp.deductions_total
    slip.net_pay = comp.net_pay
    slip.payment_status = "pending"
    slip.generated_at = datetime.utcnow()
    return slip


def payslip_totals(slip: Payslip) -> tuple:
    """(gross, deductions, net) as stored on the payslip."""
    return slip.total_gross_salary, slip.total_deductions, slip.net_pay


def detail_totals(detail: EmployeePayrollDetail) -> tuple:
    return detail.gross_salary, detail.deductions_total, detail.net_pay


def freeze_payslips(run: PayrollRun, when: Optional[datetime] = None):
    when = when or datetime.utcnow()
    for slip in Payslip.query.filter_by(run_id=run.id, frozen_at=None).all():
        slip.frozen_at = when


class PayslipService:
    def build_payslip_dto(self, slip: Payslip) -> dict:
        """Employee-facing payslip, denormalised from the stored payslip + detail."""
        run = slip.run
        detail = slip.detail
        emp = slip.employee
        company = run.company
        bank = primary_bank_account(emp.id)

        earnings = [PayslipLine(**l) for l in (slip.earnings or [])]
        deductions = [PayslipLine(**l) for l in (slip.deductions or [])]

        def _cat_total(cat):
            return money(sum((Decimal(l.amount) for l in deductions if l.category == cat), Decimal("0")))

        dto = PayslipDTO(
            company={"id": company.id, "code": company.code, "name": company.name,
                     "currency": company.currency},
            employee={
                "id": emp.id,
                "code": emp.code,
                "name": emp.full_name,
                "department": emp.department.name if emp.department else None,
                "position": emp.designation.name if emp.designation else None,
                "hr_event": detail.hr_event,
                "bank_name": bank.bank_name if bank else None,
                "bank_account_number": bank.account_number if bank else None,
                "bank_status": detail.bank_status,
            },
            run={
                "run_id": run.id,
                "run_code": run.run_code,
                "period_start": run.period_start.isoformat(),
                "period_end": run.period_end.isoformat(),
                "status": run.status,
            },
            attendance={
                "working_days": detail.working_days,
                "absent_days": detail.absent_days,
                "overtime_hours": str(detail.overtime_hours),
            },
            earnings=earnings,
            deductions=deductions,
            deductions_summary={
                "taxes": _cat_total("tax"),
                "insurances": _cat_total("insurance"),
                "penalties": _cat_total("penalty"),
                "adjustments": _cat_total("adjustment"),
            },
            totals={
                "total_gross_salary": money(slip.total_gross_salary),
                "total_deductions": money(slip.total_deductions),
                "net_pay": money(slip.net_pay),
            },
            payment_status=slip.payment_status,
        )
        return asdict(dto)

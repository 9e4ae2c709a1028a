"""Payroll register: one row per employee detail, rendered as CSV or XLSX."""
import csv
import io

import openpyxl

from payroll_api.common.errors import ValidationError
from payroll_api.common.http import money
from payroll_api.models.payroll.pay_run import EmployeePayrollDetail, PayrollRun

REGISTER_COLUMNS = [
    "employee_code", "employee_name", "department", "hr_event", "bank_status",
    "base_salary", "allowances_total", "bonus", "benefit", "gross_salary",
    "tax_rate", "tax_amount", "penalty_total", "adjustment_deductions",
    "deductions_total", "net_pay", "payment_status",
]

XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def register_rows(run: PayrollRun) -> list[dict]:
    details = (EmployeePayrollDetail.query
               .filter_by(run_id=run.id)
               .order_by(EmployeePayrollDetail.employee_id.asc())
               .all())
    rows = []
    for d in details:
        emp = d.employee
        rows.append({
            "employee_code": emp.code,
            "employee_name": emp.full_name,
            "department": emp.department.name if emp.department else None,
            "hr_event": d.hr_event,
            "bank_status": d.bank_status,
            "base_salary": money(d.base_salary),
            "allowances_total": money(d.allowances_total),
            "bonus": money(d.bonus),
            "benefit": money(d.benefit),
            "gross_salary": money(d.gross_salary),
            "tax_rate": str(d.tax_rate) if d.tax_rate is not None else None,
            "tax_amount": money(d.tax_amount),
            "penalty_total": money(d.penalty_total),
            "adjustment_deductions": money(d.adjustment_deductions),
            "deductions_total": money(d.deductions_total),
            "net_pay": money(d.net_pay),
            "payment_status": d.payslip.payment_status if d.payslip else None,
        })
    return rows


def generate_register(run: PayrollRun, output_format: str = "csv") -> tuple[bytes, str, str]:
    """Returns (file_bytes, file_name, mime_type)."""
    rows = register_rows(run)
    if output_format == "csv":
        out = io.StringIO()
        writer = csv.DictWriter(out, fieldnames=REGISTER_COLUMNS)
        writer.writeheader()
        writer.writerows(rows)
        content, mime = out.getvalue().encode("utf-8"), "text/csv"
    elif output_format == "xlsx":
        out = io.BytesIO()
        wb = openpyxl.Workbook()
        ws = wb.active
        ws.title = run.run_code
        ws.append(REGISTER_COLUMNS)
        for row in rows:
            ws.append([row.get(c) for c in REGISTER_COLUMNS])
        ws.append([])
        ws.append(["TOTAL", None, None, None, None, None, None, None, None,
                   money(run.total_gross), None, None, None, None,
                   money(run.total_deductions), money(run.total_net_pay), None])
        wb.save(out)
        content, mime = out.getvalue(), XLSX_MIME
    else:
        raise ValidationError(f"format {output_format!r} not supported (csv, xlsx)")
    return content, f"{run.run_code}-register.{output_format}", mime

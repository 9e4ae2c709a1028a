# payroll_api/models/payroll/__init__.py
# Import order: config first (runs reference tax_rules), then items/penalties,
# then pay_run, then the tables hanging off runs and details.
from .config import TaxRule, AllowanceDefinition
from .compensation import CompensationItem
from .penalty import EmployeePenalty, PenaltyLine
from .pay_run import PayrollRun, EmployeePayrollDetail, Payslip, PayrollRunHistory
from .run_exception import PayrollException
from .adjustments import RunAdjustment

__all__ = [
    "TaxRule", "AllowanceDefinition",
    "CompensationItem",
    "EmployeePenalty", "PenaltyLine",
    "PayrollRun", "EmployeePayrollDetail", "Payslip", "PayrollRunHistory",
    "PayrollException",
    "RunAdjustment",
]

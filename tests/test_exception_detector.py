from decimal import Decimal

from payroll_api.services.employee_snapshot import EmployeeSnapshot, bank_status_for
from payroll_api.services.exception_detector import blocks_publish, detect
from payroll_api.services.pay_engine import PayConfig, PenaltyInput, compute_pay

D = Decimal
CONFIG = PayConfig(tax_rate=D("0.10"), allowances=(("Housing", D("2000")), ("Transport", D("1000"))))


def _snap(base=D("12000"), bank_name="CIB", account="1002003004", **kw):
    return EmployeeSnapshot(employee_id=3, code="EMP-003", name="Test", base_salary=base,
                            bank_name=bank_name, bank_account_number=account, **kw)


def _types(findings):
    return [f.type for f in findings]


def test_clean_employee_has_no_findings():
    snap = _snap()
    assert detect(compute_pay(snap, [], [], CONFIG), snap) == []


def test_missing_bank_account_number():
    snap = _snap(account="   ")
    findings = detect(compute_pay(snap, [], [], CONFIG), snap)
    assert _types(findings) == ["MISSING_BANK_DETAILS"]
    assert findings[0].severity == "HIGH"
    assert "account number" in findings[0].message
    assert not blocks_publish(findings)


def test_malformed_account_number_is_invalid_not_missing():
    snap = _snap(account="12")
    findings = detect(compute_pay(snap, [], [], CONFIG), snap)
    assert _types(findings) == ["INVALID_BANK_DETAILS"]


def test_negative_net_pay_is_critical_and_blocks():
    snap = _snap(base=D("5000"))
    comp = compute_pay(snap, [], [PenaltyInput("Damage", D("6000"))], PayConfig(tax_rate=D("0.10")))
    findings = detect(comp, snap)
    assert _types(findings) == ["NEGATIVE_NET_PAY", "EXCESSIVE_PENALTIES"]
    assert findings[0].severity == "CRITICAL"
    assert blocks_publish(findings)


def test_penalty_threshold_is_configurable():
    snap = _snap(base=D("10000"))
    comp = compute_pay(snap, [], [PenaltyInput("Late", D("3000"))], PayConfig(tax_rate=D("0")))
    assert "EXCESSIVE_PENALTIES" not in _types(detect(comp, snap))
    assert "EXCESSIVE_PENALTIES" in _types(detect(comp, snap, penalty_threshold=D("0.25")))


def test_zero_base_salary_only_for_active_employees():
    active = _snap(base=D("0"))
    assert "ZERO_BASE_SALARY" in _types(detect(compute_pay(active, [], [], CONFIG), active))
    inactive = _snap(base=D("0"), is_active=False)
    assert "ZERO_BASE_SALARY" not in _types(detect(compute_pay(inactive, [], [], CONFIG), inactive))


def test_payslip_mismatch_is_a_calculation_anomaly():
    snap = _snap()
    comp = compute_pay(snap, [], [], CONFIG)
    findings = detect(comp, snap, payslip_totals=(comp.gross_salary, comp.deductions_total, comp.net_pay + 1))
    assert _types(findings) == ["CALCULATION_ERROR"]
    assert findings[0].severity == "MEDIUM"


def test_payslip_is_compared_with_the_stored_detail():
    snap = _snap()
    comp = compute_pay(snap, [], [], CONFIG)
    slip = (comp.gross_salary, comp.deductions_total, comp.net_pay)
    assert detect(comp, snap, payslip_totals=slip, detail_totals=slip) == []
    stored = (comp.gross_salary, comp.deductions_total, comp.net_pay - D("0.01"))
    assert _types(detect(comp, snap, payslip_totals=slip, detail_totals=stored)) == ["CALCULATION_ERROR"]


def test_detect_twice_yields_the_same_findings():
    snap = _snap(base=D("5000"), account=None)
    comp = compute_pay(snap, [], [PenaltyInput("Damage", D("6000"))], CONFIG)
    assert detect(comp, snap) == detect(comp, snap)


def test_bank_status_rules():
    assert bank_status_for("CIB", "1002003004") == "valid"
    assert bank_status_for(None, "1002003004") == "missing"
    assert bank_status_for("CIB", "") == "missing"
    assert bank_status_for("CIB", "12#4") == "invalid"

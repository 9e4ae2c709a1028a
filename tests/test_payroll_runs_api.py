import csv
import io

import openpyxl
import pytest

from payroll_api import seed_rbac


@pytest.fixture
def setup(factory):
    seed_rbac.run()
    c = factory.standard_setup()
    paid = factory.employee(c, 9000)
    no_bank = factory.employee(c, 12000, bank=None)
    return c, paid, no_bank


def _create(client, headers, company_id):
    r = client.post("/api/v1/payroll-runs", json={"company_id": company_id, "period": "2025-06"}, headers=headers)
    assert r.status_code == 201, r.get_json()
    return r.get_json()["data"]


def test_requires_a_token(client, setup):
    assert client.get("/api/v1/payroll-runs").status_code == 401


def test_permissions_come_from_roles(client, setup, auth_headers):
    c, _, _ = setup
    finance, _ = auth_headers("finance@acme.test", roles=("finance_staff",))
    r = client.post("/api/v1/payroll-runs", json={"company_id": c.id, "period": "2025-06"}, headers=finance)
    assert r.status_code == 403
    assert client.get("/api/v1/payroll-runs", headers=finance).status_code == 200


def test_create_list_and_draft(client, setup, auth_headers):
    c, paid, no_bank = setup
    h, _ = auth_headers()
    run = _create(client, h, c.id)
    assert run["run_code"] == "PR-2025-001"
    assert run["period_start"] == "2025-06-01"
    assert run["period_end"] == "2025-06-30"
    assert run["employee_count"] == 2
    assert run["exception_count"] == 1
    assert run["total_gross"] == "27000.00"

    listed = client.get("/api/v1/payroll-runs?status=draft", headers=h).get_json()
    assert [r["id"] for r in listed["data"]] == [run["id"]]
    assert listed["meta"]["total"] == 1

    draft = client.get(f"/api/v1/payroll-runs/{run['id']}/draft", headers=h).get_json()["data"]
    assert draft["statistics"]["totalEmployees"] == 2
    assert draft["statistics"]["withExceptions"] == 1
    by_emp = {e["employee_id"]: e for e in draft["employees"]}
    assert by_emp[paid.id]["net_pay"] == "10800.00"
    assert [x["type"] for x in by_emp[no_bank.id]["exceptions"]] == ["MISSING_BANK_DETAILS"]


def test_bad_period_is_rejected(client, setup, auth_headers):
    c, _, _ = setup
    h, _ = auth_headers()
    r = client.post("/api/v1/payroll-runs", json={"company_id": c.id, "period": "June"}, headers=h)
    assert r.status_code == 422
    assert r.get_json()["error"]["code"] == "VALIDATION_ERROR"


def test_publish_flow_over_http(client, setup, auth_headers):
    c, paid, no_bank = setup
    h, admin = auth_headers()
    run = _create(client, h, c.id)
    base = f"/api/v1/payroll-runs/{run['id']}"

    check = client.get(f"{base}/publish-check", headers=h).get_json()["data"]
    assert check["blocked"] is False
    assert check["warnings"]["missing_bank_details"] == [no_bank.id]

    r = client.patch(f"{base}/publish", json={}, headers=h)
    assert r.status_code == 409
    assert r.get_json()["error"]["code"] == "CONFIRMATION_REQUIRED"

    r = client.patch(f"{base}/exceptions/{no_bank.id}/resolve",
                     json={"note": "Bank letter received",
                           "bank_details": {"bank_name": "NBE", "account_number": "5550001112"}},
                     headers=h)
    assert r.status_code == 200
    assert r.get_json()["data"]["bank_status"] == "valid"

    r = client.patch(f"{base}/publish", json={}, headers=h)
    assert r.status_code == 200
    assert r.get_json()["data"]["published_by"] == admin.id

    r = client.patch(f"{base}/approve", headers=h)
    assert r.status_code == 403
    assert r.get_json()["error"]["code"] == "SEGREGATION_OF_DUTIES"

    manager, _ = auth_headers("manager@acme.test", roles=("payroll_manager",))
    assert client.patch(f"{base}/approve", headers=manager).get_json()["data"]["status"] == "approved"

    finance, _ = auth_headers("finance@acme.test", roles=("finance_staff",))
    r = client.patch(f"{base}/process", json={"failed_employee_ids": []}, headers=finance)
    assert r.get_json()["data"]["status"] == "processed"

    slips = client.get(f"{base}/payslips", headers=h).get_json()["data"]
    assert {s["payment_status"] for s in slips} == {"paid"}
    actions = [x["action"] for x in client.get(f"{base}/history", headers=h).get_json()["data"]]
    assert actions == ["create", "publish", "approve", "process"]


def test_adjustment_requires_reason(client, setup, auth_headers):
    c, paid, _ = setup
    h, _ = auth_headers()
    run = _create(client, h, c.id)
    url = f"/api/v1/payroll-runs/{run['id']}/adjustments"
    r = client.post(url, json={"employee_id": paid.id, "kind": "bonus", "amount": 500}, headers=h)
    assert r.status_code == 422
    r = client.post(url, json={"employee_id": paid.id, "kind": "bonus", "amount": 500, "reason": "Q2"}, headers=h)
    assert r.status_code == 201
    assert r.get_json()["data"]["bonus"] == "500.00"
    assert len(client.get(url, headers=h).get_json()["data"]) == 1


def test_register_csv(client, setup, auth_headers):
    c, paid, _ = setup
    h, _ = auth_headers()
    run = _create(client, h, c.id)
    r = client.get(f"/api/v1/payroll-runs/{run['id']}/register?format=csv", headers=h)
    assert r.status_code == 200
    assert r.mimetype == "text/csv"
    rows = list(csv.DictReader(io.StringIO(r.data.decode("utf-8"))))
    assert [row["employee_code"] for row in rows] == [paid.code, "EMP-002"]
    assert rows[0]["net_pay"] == "10800.00"

    r = client.get(f"/api/v1/payroll-runs/{run['id']}/register?format=pdf", headers=h)
    assert r.status_code == 422


def test_unknown_run_is_404(client, setup, auth_headers):
    h, _ = auth_headers()
    r = client.get("/api/v1/payroll-runs/999", headers=h)
    assert r.status_code == 404
    assert r.get_json()["error"]["code"] == "NOT_FOUND"


def test_item_approval_over_http(client, setup, auth_headers):
    c, paid, _ = setup
    h, _ = auth_headers()
    run = _create(client, h, c.id)
    r = client.post("/api/v1/compensation-items",
                    json={"employee_id": paid.id, "kind": "SIGNING_BONUS", "amount": "1000"}, headers=h)
    assert r.status_code == 201
    item_id = r.get_json()["data"]["id"]

    r = client.patch(f"/api/v1/compensation-items/{item_id}/approve", json={}, headers=h)
    body = r.get_json()
    assert body["data"]["status"] == "approved"
    assert body["meta"]["recomputed_runs"] == [run["id"]]

    r = client.post("/api/v1/compensation-items/bulk-reject", json={"ids": [item_id]}, headers=h)
    body = r.get_json()
    assert body["meta"] == {"succeeded": 0, "failed": 1}


def test_login_and_me(client, setup, factory):
    factory.user("specialist@acme.test", ["payroll_specialist"])
    r = client.post("/api/v1/auth/login", json={"email": "Specialist@acme.test", "password": "secret"})
    assert r.status_code == 200
    token = r.get_json()["access"]
    me = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"}).get_json()["data"]
    assert me["roles"] == ["payroll_specialist"]
    assert "payroll.run.publish" in me["perms"]

    r = client.post("/api/v1/auth/login", json={"email": "specialist@acme.test", "password": "nope"})
    assert r.status_code == 401


def test_register_xlsx_has_totals_row(client, setup, auth_headers):
    c, _, _ = setup
    h, _ = auth_headers()
    run = _create(client, h, c.id)
    r = client.get(f"/api/v1/payroll-runs/{run['id']}/register?format=xlsx", headers=h)
    assert r.status_code == 200
    ws = openpyxl.load_workbook(io.BytesIO(r.data)).active
    assert ws.title == "PR-2025-001"
    rows = list(ws.iter_rows(values_only=True))
    assert rows[0][0] == "employee_code"
    assert rows[-1][0] == "TOTAL"
    assert rows[-1][9] == run["total_gross"]

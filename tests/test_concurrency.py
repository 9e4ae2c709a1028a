import threading
from decimal import Decimal

import pytest

from payroll_api import create_app
from payroll_api.extensions import db
from payroll_api.models.payroll.pay_run import EmployeePayrollDetail, PayrollRun
from payroll_api.services import compensation_service, run_aggregator, run_lifecycle, run_review
from payroll_api.services.locks import KeyedLocks

from conftest import JUNE_END, JUNE_START, Factory


def test_keyed_locks_are_reentrant_and_released():
    locks = KeyedLocks()
    with locks.hold_many([("r", 2), ("r", 1), ("r", 2)]):
        assert len(locks) == 2
        # re-entrant for the holder
        with locks.hold(("r", 1)):
            assert len(locks) == 2
    assert len(locks) == 0


def test_keyed_locks_serialise_holders():
    locks = KeyedLocks()
    inside, overlaps = [], []
    guard = threading.Lock()

    def work():
        for _ in range(50):
            with locks.hold("run-1"):
                with guard:
                    inside.append(1)
                    if len(inside) > 1:
                        overlaps.append(1)
                with guard:
                    inside.pop()

    threads = [threading.Thread(target=work) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert overlaps == []
    assert len(locks) == 0


@pytest.fixture
def file_app(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'payroll.db'}")
    app = create_app()
    app.config["TESTING"] = True
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()
        db.engine.dispose()


def _race(app, *calls):
    """Run each call in its own thread and app context, released together."""
    barrier = threading.Barrier(len(calls))
    errors = []

    def worker(call):
        with app.app_context():
            try:
                barrier.wait()
                call()
            except Exception as e:  # surfaced through the errors list
                errors.append(e)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=worker, args=(c,)) for c in calls]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return errors


def _reconciled(run_id):
    run = db.session.get(PayrollRun, run_id)
    details = EmployeePayrollDetail.query.filter_by(run_id=run_id).all()
    assert Decimal(str(run.total_net_pay)) == sum((Decimal(str(d.net_pay)) for d in details), Decimal("0"))
    run_aggregator.verify_run_totals(run)
    return run, details


def test_parallel_approvals_are_each_counted_once(file_app):
    with file_app.app_context():
        f = Factory(db.session)
        c = f.standard_setup()
        a = f.employee(c, 15000, hr_event="NEW_HIRE")
        b = f.employee(c, 9000, hr_event="RESIGNATION")
        bonus = f.item(a, "SIGNING_BONUS", 5000)
        benefit = f.item(b, "TERMINATION_BENEFIT", 5000)
        run_id = run_lifecycle.create_run(c.id, JUNE_START, JUNE_END).id
        item_ids = [bonus.id, benefit.id]

    errors = _race(file_app, *(lambda i=i: compensation_service.approve_item(i) for i in item_ids))
    assert errors == []

    with file_app.app_context():
        run, details = _reconciled(run_id)
        nets = sorted(Decimal(str(d.net_pay)) for d in details)
        assert nets == [Decimal("15300.00"), Decimal("20700.00")]
        assert Decimal(str(run.total_net_pay)) == Decimal("36000.00")
        assert not run_lifecycle.evaluate_publish_gate(run).blocked


def test_parallel_approvals_for_one_employee(file_app):
    with file_app.app_context():
        f = Factory(db.session)
        c = f.standard_setup()
        e = f.employee(c, 15000, hr_event="NEW_HIRE")
        first = f.item(e, "SIGNING_BONUS", 2000)
        second = f.item(e, "SIGNING_BONUS", 4000)
        run_id = run_lifecycle.create_run(c.id, JUNE_START, JUNE_END).id
        item_ids = [first.id, second.id]

    errors = _race(file_app, *(lambda i=i: compensation_service.approve_item(i) for i in item_ids))
    assert errors == []

    with file_app.app_context():
        run, (detail,) = _reconciled(run_id)
        assert Decimal(str(detail.signing_bonus)) == Decimal("6000.00")
        assert Decimal(str(detail.net_pay)) == Decimal("21600.00")
        assert sorted(detail.calc_meta["approved_item_ids"]) == sorted(item_ids)
        assert Decimal(str(run.total_net_pay)) == Decimal("21600.00")


def test_adjustment_and_approval_for_one_employee(file_app):
    with file_app.app_context():
        f = Factory(db.session)
        c = f.standard_setup()
        e = f.employee(c, 15000, hr_event="NEW_HIRE")
        item_id = f.item(e, "SIGNING_BONUS", 5000).id
        employee_id = e.id
        run_id = run_lifecycle.create_run(c.id, JUNE_START, JUNE_END).id

    errors = _race(
        file_app,
        lambda: compensation_service.approve_item(item_id),
        lambda: run_review.create_adjustment(run_id, employee_id, "bonus", 1000, "Q2 target"),
    )
    assert errors == []

    with file_app.app_context():
        run, (detail,) = _reconciled(run_id)
        assert Decimal(str(detail.signing_bonus)) == Decimal("5000.00")
        assert Decimal(str(detail.bonus)) == Decimal("1000.00")
        net = Decimal(str(detail.net_pay))

        # a fresh sequential recompute lands on the same figures
        again = run_aggregator.recompute(run_id, employee_id)
        assert Decimal(str(again.net_pay)) == net
        _reconciled(run_id)

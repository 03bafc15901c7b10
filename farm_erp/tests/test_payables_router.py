from contextlib import contextmanager
from datetime import date
from decimal import Decimal

import pytest
from fastapi import HTTPException

from farm_erp.app.routers import payables as payables_router
from farm_erp.app.routers import posting_groups as posting_groups_router


class _ScriptedCursor:
    def __init__(self, rules):
        self._rules = rules
        self._last = None
        self.executed: list[tuple[str, tuple]] = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.executed.append((sql, tuple(params or ())))
        self._last = None
        for needle, result in self._rules:
            if needle in sql:
                self._last = result(params) if callable(result) else result
                break

    def fetchone(self):
        if isinstance(self._last, list):
            return self._last[0] if self._last else None
        return self._last

    def fetchall(self):
        if self._last is None:
            return []
        return self._last if isinstance(self._last, list) else [self._last]

    def sql_containing(self, needle):
        return [(sql, params) for sql, params in self.executed if needle in sql]


class _DummyConn:
    def __init__(self, cursor):
        self._cursor = cursor

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return self._cursor

    @contextmanager
    def transaction(self):
        yield


USER = {"user_id": "u1", "email": "a@farm.test"}


def _payable(kind="GENERAL", status="DRAFT"):
    return {
        "id": "pb-1",
        "party_id": "p1",
        "kind": kind,
        "amount": Decimal("75.50"),
        "posting_date": date(2026, 1, 15),
        "status": status,
    }


def _patch_db(monkeypatch, module, rules):
    cur = _ScriptedCursor(rules)
    monkeypatch.setattr(module, "get_conn", lambda: _DummyConn(cur))
    monkeypatch.setattr(module, "set_tenant_context", lambda *_args, **_kwargs: None)
    return cur


def _post_rules(payable, existing=None):
    return [
        ("idempotency_key = %s", existing),
        ("FROM payables", payable),
        ("FROM accounts", lambda params: {"id": f"acc-{params[1]}"}),
        ("INSERT INTO posting_groups", {"id": "pg-1"}),
    ]


@pytest.mark.parametrize(
    "kind,expense,liability",
    [("GENERAL", "acc-EXPENSES", "acc-AP"), ("WAGES", "acc-WAGES_EXPENSE", "acc-WAGES_PAYABLE")],
)
def test_post_credits_the_party_liability(monkeypatch, kind, expense, liability):
    cur = _patch_db(monkeypatch, payables_router, _post_rules(_payable(kind=kind)))
    out = payables_router.post_payable(
        "pb-1", payables_router.PayablePostIn(idempotency_key="k-1"), tenant_id="t1", user=USER
    )
    assert out == {"id": "pb-1", "posting_group_id": "pg-1", "replayed": False}
    entries = [p for _, p in cur.sql_containing("INSERT INTO ledger_entries")]
    assert [(p[2], p[3], p[4], p[5]) for p in entries] == [
        (expense, "p1", Decimal("75.50"), Decimal("0.00")),
        (liability, "p1", Decimal("0.00"), Decimal("75.50")),
    ]
    _, pg_params = cur.sql_containing("INSERT INTO posting_groups")[0]
    assert "PAYABLE" in pg_params
    assert date(2026, 1, 15) in pg_params
    assert cur.sql_containing("SET status = 'POSTED'")


def test_post_replay_and_key_conflict(monkeypatch):
    existing = {"id": "pg-1", "source_type": "PAYABLE", "source_id": "pb-1", "posting_date": date(2026, 1, 15)}
    cur = _patch_db(monkeypatch, payables_router, _post_rules(_payable(status="POSTED"), existing=existing))
    out = payables_router.post_payable(
        "pb-1", payables_router.PayablePostIn(idempotency_key="k-1"), tenant_id="t1", user=USER
    )
    assert out["replayed"] is True
    assert not cur.sql_containing("INSERT INTO")

    existing = dict(existing, source_type="PAYMENT")
    _patch_db(monkeypatch, payables_router, _post_rules(_payable(), existing=existing))
    with pytest.raises(HTTPException) as ei:
        payables_router.post_payable(
            "pb-1", payables_router.PayablePostIn(idempotency_key="k-1"), tenant_id="t1", user=USER
        )
    assert ei.value.status_code == 409


def test_post_requires_draft(monkeypatch):
    _patch_db(monkeypatch, payables_router, _post_rules(_payable(status="POSTED")))
    with pytest.raises(HTTPException) as ei:
        payables_router.post_payable("pb-1", payables_router.PayablePostIn(), tenant_id="t1", user=USER)
    assert ei.value.status_code == 409


def test_create_checks_party(monkeypatch):
    data = payables_router.PayableIn(party_id="p1", kind="wages", amount="12.00", posting_date=date(2026, 1, 15))
    _patch_db(monkeypatch, payables_router, [("FROM parties", None)])
    with pytest.raises(HTTPException) as ei:
        payables_router.create_payable(data, tenant_id="t1", user=USER)
    assert ei.value.status_code == 404

    cur = _patch_db(monkeypatch, payables_router, [("FROM parties", {"id": "p1"}), ("INSERT INTO payables", {"id": "pb-2"})])
    assert payables_router.create_payable(data, tenant_id="t1", user=USER) == {"id": "pb-2"}
    _, params = cur.sql_containing("INSERT INTO payables")[0]
    assert params[:4] == ("t1", "p1", "WAGES", Decimal("12.00"))


def test_reversing_a_payable_marks_it_reversed(monkeypatch):
    cur = _patch_db(monkeypatch, posting_groups_router, [])
    monkeypatch.setattr(
        posting_groups_router,
        "reverse_posting_group",
        lambda cur, tenant_id, pg_id, posting_date, created_by=None: {"id": "pg-r", "source_type": "PAYABLE", "source_id": "pb-1"},
    )
    out = posting_groups_router.reverse("pg-1", posting_groups_router.ReverseIn(posting_date=date(2026, 2, 1)), tenant_id="t1", user=USER)
    assert out == {"reversal_posting_group_id": "pg-r"}
    _, params = cur.sql_containing("UPDATE payables")[0]
    assert params == ("pg-r", "t1", "pb-1")

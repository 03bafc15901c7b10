from contextlib import contextmanager
from datetime import date
from decimal import Decimal

import pytest
from fastapi import HTTPException

from farm_erp.app.posting import create_posting_group, reverse_posting_group
from farm_erp.app.routers import dev_tenants, posting_groups
from farm_erp.app.routers.payables import PAYABLE_ACCOUNTS


class _FakeCursor:
    """Pops scripted fetch results in order and records every statement."""

    def __init__(self, results=None):
        self._results = list(results or [])
        self.executed: list[tuple[str, tuple]] = []
        self.rowcount = 1

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.executed.append((sql, tuple(params or ())))

    def fetchone(self):
        return self._results.pop(0)

    def fetchall(self):
        return self._results.pop(0)


class _DummyConn:
    def __init__(self, cur):
        self._cur = cur

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return self._cur

    @contextmanager
    def transaction(self):
        yield


def test_imbalanced_group_is_refused_before_any_write():
    cur = _FakeCursor()
    with pytest.raises(ValueError):
        create_posting_group(
            cur,
            "t1",
            source_type="PAYMENT",
            source_id="p1",
            posting_date=date(2026, 1, 1),
            lines=[("acc-1", Decimal("10.00"), 0, None), ("acc-2", 0, Decimal("9.99"), None)],
        )
    assert cur.executed == []


def test_reversal_swaps_debits_and_credits():
    cur = _FakeCursor(
        [
            {"id": "pg-1", "source_type": "PAYMENT", "source_id": "p1", "posting_date": date(2026, 1, 5), "reversal_of_posting_group_id": None},
            None,
            [
                {"account_id": "acc-bank", "party_id": "pa", "debit_amount": Decimal("50.00"), "credit_amount": Decimal("0")},
                {"account_id": "acc-ar", "party_id": "pa", "debit_amount": Decimal("0"), "credit_amount": Decimal("50.00")},
            ],
            {"id": "pg-2"},
        ]
    )
    out = reverse_posting_group(cur, "t1", "pg-1", date(2026, 1, 9))
    assert out == {"id": "pg-2", "source_type": "PAYMENT", "source_id": "p1"}
    entries = [p for sql, p in cur.executed if "INSERT INTO ledger_entries" in sql]
    assert [(p[2], p[4], p[5]) for p in entries] == [
        ("acc-bank", Decimal("0.00"), Decimal("50.00")),
        ("acc-ar", Decimal("50.00"), Decimal("0.00")),
    ]
    pg_params = [p for sql, p in cur.executed if "INSERT INTO posting_groups" in sql][0]
    assert "pg-1" in pg_params


@pytest.mark.parametrize(
    "pg,already,status",
    [
        (None, None, 404),
        ({"id": "pg-2", "source_type": "SALE", "source_id": "s", "posting_date": date(2026, 1, 5), "reversal_of_posting_group_id": "pg-1"}, None, 409),
        ({"id": "pg-1", "source_type": "SALE", "source_id": "s", "posting_date": date(2026, 1, 5), "reversal_of_posting_group_id": None}, {"x": 1}, 409),
    ],
)
def test_reversal_rejections(pg, already, status):
    cur = _FakeCursor([pg, already])
    with pytest.raises(HTTPException) as ei:
        reverse_posting_group(cur, "t1", "pg-1", date(2026, 1, 9))
    assert ei.value.status_code == status


def test_reversal_before_original_date_rejected():
    pg = {"id": "pg-1", "source_type": "SALE", "source_id": "s", "posting_date": date(2026, 1, 5), "reversal_of_posting_group_id": None}
    with pytest.raises(HTTPException) as ei:
        reverse_posting_group(_FakeCursor([pg]), "t1", "pg-1", date(2026, 1, 4))
    assert ei.value.status_code == 400


def test_sale_with_active_allocations_cannot_be_reversed(monkeypatch):
    cur = _FakeCursor([{"x": 1}])
    monkeypatch.setattr(posting_groups, "get_conn", lambda: _DummyConn(cur))
    monkeypatch.setattr(posting_groups, "set_tenant_context", lambda *_args, **_kwargs: None)
    monkeypatch.setattr(
        posting_groups,
        "reverse_posting_group",
        lambda *_args, **_kwargs: {"id": "pg-2", "source_type": "SALE", "source_id": "s1"},
    )
    with pytest.raises(HTTPException) as ei:
        posting_groups.reverse(
            "pg-1", posting_groups.ReverseIn(posting_date=date(2026, 1, 9)), tenant_id="t1", user={"user_id": "u1"}
        )
    assert ei.value.status_code == 409


def test_payment_reversal_voids_its_allocations(monkeypatch):
    cur = _FakeCursor()
    monkeypatch.setattr(posting_groups, "get_conn", lambda: _DummyConn(cur))
    monkeypatch.setattr(posting_groups, "set_tenant_context", lambda *_args, **_kwargs: None)
    monkeypatch.setattr(
        posting_groups,
        "reverse_posting_group",
        lambda *_args, **_kwargs: {"id": "pg-2", "source_type": "PAYMENT", "source_id": "pay-1"},
    )
    out = posting_groups.reverse(
        "pg-1", posting_groups.ReverseIn(posting_date=date(2026, 1, 9)), tenant_id="t1", user={"user_id": "u1"}
    )
    assert out == {"reversal_posting_group_id": "pg-2"}
    assert any("UPDATE sale_payment_allocations" in sql for sql, _ in cur.executed)


def test_dev_endpoints_hidden_when_disabled(monkeypatch):
    monkeypatch.setattr(dev_tenants.settings, "dev_tools_enabled", False)
    with pytest.raises(HTTPException) as ei:
        dev_tenants.list_dev_tenants()
    assert ei.value.status_code == 404


def test_seed_system_accounts_counts_new_rows():
    cur = _FakeCursor()
    assert dev_tenants.seed_system_accounts(cur, "t1") == len(dev_tenants.SYSTEM_ACCOUNTS)
    assert all("ON CONFLICT (tenant_id, code) DO NOTHING" in sql for sql, _ in cur.executed)


def test_seeded_accounts_are_the_ones_posting_rules_use():
    codes = {code for code, _, _ in dev_tenants.SYSTEM_ACCOUNTS}
    used = {"CASH", "BANK", "AR", "SALES_REVENUE"} | {c for pair in PAYABLE_ACCOUNTS.values() for c in pair}
    assert codes == used
    assert "ADVANCES" not in codes

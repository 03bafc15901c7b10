from contextlib import contextmanager
from datetime import date
from decimal import Decimal

import pytest
from fastapi import HTTPException

from farm_erp.app.routers import bank_reconciliations as rec_router


class _ScriptedCursor:
    def __init__(self, rules):
        self._rules = rules
        self._last = None
        self.executed: list[tuple[str, tuple]] = []
        self.rowcount = 1

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.executed.append((sql, tuple(params or ())))
        self._last = None
        for needle, result in self._rules:
            if needle in sql:
                self._last = result
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


def _rec(status="DRAFT"):
    return {
        "id": "r1",
        "account_id": "acc-bank",
        "account_code": "BANK",
        "account_name": "Bank",
        "statement_date": date(2026, 1, 31),
        "statement_balance": Decimal("1000.00"),
        "status": status,
        "notes": None,
        "finalized_at": None,
    }


def _line(amount="50.00", matched_to=None, status="ACTIVE"):
    return {
        "id": "L1",
        "line_date": date(2026, 1, 30),
        "amount": Decimal(amount),
        "description": None,
        "reference": None,
        "status": status,
        "is_matched": matched_to is not None,
        "matched_ledger_entry_id": matched_to,
    }


def _entry(debit="50.00", credit="0.00", account_id="acc-bank", posting_date=date(2026, 1, 20), reversed_=False):
    return {
        "id": "le-1",
        "account_id": account_id,
        "debit_amount": Decimal(debit),
        "credit_amount": Decimal(credit),
        "posting_group_id": "pg-1",
        "posting_date": posting_date,
        "is_reversed": reversed_,
    }


def _patch_db(monkeypatch, rules):
    cur = _ScriptedCursor(rules)
    monkeypatch.setattr(rec_router, "get_conn", lambda: _DummyConn(cur))
    monkeypatch.setattr(rec_router, "set_tenant_context", lambda *_args, **_kwargs: None)
    return cur


def _match_rules(rec=None, line=None, entry=None, entry_taken=None):
    return [
        ("FROM bank_reconciliations r", rec or _rec()),
        ("FROM bank_statement_lines l", line or _line()),
        ("FROM bank_statement_matches", entry_taken),
        ("FROM ledger_entries le", entry or _entry()),
        ("INSERT INTO bank_statement_matches", {"id": "m1"}),
    ]


def _match(ledger_entry_id="le-1"):
    return rec_router.match_statement_line("r1", "L1", rec_router.MatchIn(ledger_entry_id=ledger_entry_id), tenant_id="t1", user=USER)


def test_match_deposit_to_debit_entry(monkeypatch):
    cur = _patch_db(monkeypatch, _match_rules())
    out = _match()
    assert out == {"id": "m1", "bank_statement_line_id": "L1", "ledger_entry_id": "le-1"}
    assert cur.sql_containing("INSERT INTO audit_logs")


@pytest.mark.parametrize(
    "rules,status,fragment",
    [
        (_match_rules(rec=_rec("FINALIZED")), 409, "DRAFT"),
        (_match_rules(line=_line(matched_to="le-7")), 409, "already has an active match"),
        (_match_rules(line=_line(status="VOID")), 422, "not ACTIVE"),
        (_match_rules(entry_taken={"x": 1}), 409, "already matched"),
        (_match_rules(entry=_entry(account_id="acc-cash")), 409, "not for this reconciliation account"),
        (_match_rules(entry=_entry(posting_date=date(2026, 2, 2))), 409, "after statement_date"),
        (_match_rules(entry=_entry(reversed_=True)), 409, "reversed"),
        (_match_rules(entry=_entry(debit="0.00", credit="50.00")), 409, "deposit should match a ledger debit"),
        (_match_rules(line=_line(amount="-50.00")), 409, "withdrawal should match a ledger credit"),
    ],
)
def test_match_rejections(monkeypatch, rules, status, fragment):
    cur = _patch_db(monkeypatch, rules)
    with pytest.raises(HTTPException) as ei:
        _match()
    assert ei.value.status_code == status
    assert fragment in ei.value.detail
    assert not cur.sql_containing("INSERT INTO bank_statement_matches")


def test_unmatch_without_active_match_conflicts(monkeypatch):
    _patch_db(monkeypatch, _match_rules())
    with pytest.raises(HTTPException) as ei:
        rec_router.unmatch_statement_line("r1", "L1", rec_router.ReasonIn(), tenant_id="t1", user=USER)
    assert ei.value.status_code == 409


def test_unmatch_voids_the_match(monkeypatch):
    cur = _patch_db(monkeypatch, _match_rules(line=_line(matched_to="le-1")))
    out = rec_router.unmatch_statement_line("r1", "L1", rec_router.ReasonIn(reason="wrong"), tenant_id="t1", user=USER)
    assert out == {"unmatched": 1}
    assert cur.sql_containing("UPDATE bank_statement_matches")


def test_void_matched_line_voids_match_first(monkeypatch):
    cur = _patch_db(monkeypatch, _match_rules(line=_line(matched_to="le-1")))
    out = rec_router.void_statement_line("r1", "L1", rec_router.ReasonIn(), tenant_id="t1", user=USER)
    assert out["status"] == "VOID"
    updates = [sql for sql, _ in cur.executed if sql.strip().startswith("UPDATE")]
    assert "bank_statement_matches" in updates[0]
    assert "bank_statement_lines" in updates[1]


def test_void_twice_is_rejected(monkeypatch):
    _patch_db(monkeypatch, _match_rules(line=_line(status="VOID")))
    with pytest.raises(HTTPException) as ei:
        rec_router.void_statement_line("r1", "L1", rec_router.ReasonIn(), tenant_id="t1", user=USER)
    assert ei.value.status_code == 422


def test_finalize_is_one_way(monkeypatch):
    cur = _patch_db(monkeypatch, [("FROM bank_reconciliations r", _rec())])
    assert rec_router.finalize("r1", tenant_id="t1", user=USER) == {"id": "r1", "status": "FINALIZED"}
    assert cur.sql_containing("SET status = 'FINALIZED'")

    _patch_db(monkeypatch, [("FROM bank_reconciliations r", _rec("FINALIZED"))])
    with pytest.raises(HTTPException) as ei:
        rec_router.finalize("r1", tenant_id="t1", user=USER)
    assert ei.value.status_code == 409


def test_add_line_after_statement_date_rejected(monkeypatch):
    _patch_db(monkeypatch, [("FROM bank_reconciliations r", _rec())])
    data = rec_router.StatementLineIn(line_date=date(2026, 2, 1), amount=Decimal("5"))
    with pytest.raises(HTTPException) as ei:
        rec_router.add_statement_line("r1", data, tenant_id="t1", user=USER)
    assert ei.value.status_code == 422


def test_clear_rejects_finalized(monkeypatch):
    _patch_db(monkeypatch, [("FROM bank_reconciliations r", _rec("FINALIZED"))])
    with pytest.raises(HTTPException) as ei:
        rec_router.clear_entries("r1", rec_router.ClearIn(ledger_entry_ids=["le-1"]), tenant_id="t1", user=USER)
    assert ei.value.status_code == 409


def test_candidates_follow_sign_and_exclusivity(monkeypatch):
    _patch_db(monkeypatch, [])

    def entry(eid, debit="0.00", credit="0.00"):
        return {
            "ledger_entry_id": eid,
            "posting_date": "2026-01-10",
            "description": f"PAYMENT#{eid}",
            "debit_amount": debit,
            "credit_amount": credit,
            "posting_group_id": "pg",
        }

    report = {
        "uncleared_debits": [entry("d1", debit="50.00"), entry("d2", debit="20.00")],
        "uncleared_credits": [entry("c1", credit="50.00")],
        "cleared_entries": [entry("x1", credit="9.00")],
        "statement_lines": [
            {"id": "L1", "line_date": "2026-01-31", "amount": "-50.00", "status": "ACTIVE", "is_matched": False},
            {
                "id": "L2",
                "line_date": "2026-01-31",
                "amount": "-9.00",
                "status": "ACTIVE",
                "is_matched": True,
                "matched_ledger_entry_id": "x1",
            },
        ],
    }
    monkeypatch.setattr(rec_router, "build_report", lambda cur, tenant_id, rec_id: report)
    out = rec_router.statement_line_candidates("r1", "L1", tenant_id="t1")
    assert [c["ledger_entry_id"] for c in out["candidates"]] == ["c1"]
    assert out["candidates"][0]["credit_amount"] == "50.00"

    with pytest.raises(HTTPException) as ei:
        rec_router.statement_line_candidates("r1", "L9", tenant_id="t1")
    assert ei.value.status_code == 404


def test_report_balances(monkeypatch):
    rules = [
        ("FROM bank_reconciliations r", _rec()),
        ("AND c.cleared_date <= %s", {"net": Decimal("600.00")}),
        ("SELECT c.ledger_entry_id, c.cleared_date", []),
        ("FROM bank_statement_matches m", {"net": Decimal("0")}),
        ("FROM bank_statement_lines l", []),
        ("SELECT le.id AS ledger_entry_id", []),
        ("COALESCE(SUM(le.debit_amount - le.credit_amount), 0) AS net", {"net": Decimal("900.00")}),
    ]
    _patch_db(monkeypatch, rules)
    out = rec_router.get_report("r1", tenant_id="t1")
    assert out["statement_balance"] == "1000.00"
    assert out["book_balance"] == "900.00"
    assert out["cleared_balance"] == "600.00"
    assert out["uncleared_net"] == "300.00"
    assert out["difference"] == "100.00"
    assert out["statement"]["lines_total"] == "0.00"
    assert out["cleared_counts"] == {"cleared": 0, "uncleared": 0}


def test_report_leaves_out_reversing_groups(monkeypatch):
    rules = [
        ("FROM bank_reconciliations r", _rec()),
        ("AND c.cleared_date <= %s", {"net": Decimal("0")}),
        ("SELECT c.ledger_entry_id, c.cleared_date", []),
        ("FROM bank_statement_matches m", {"net": Decimal("0")}),
        ("FROM bank_statement_lines l", []),
        ("SELECT le.id AS ledger_entry_id", []),
        ("COALESCE(SUM(le.debit_amount - le.credit_amount), 0) AS net", {"net": Decimal("0")}),
    ]
    cur = _patch_db(monkeypatch, rules)
    rec_router.get_report("r1", tenant_id="t1")
    queries = cur.sql_containing("AND le.account_id = %s")
    # book balance and uncleared entries
    assert len(queries) == 2
    for sql, _ in queries:
        assert "pg.reversal_of_posting_group_id IS NULL" in sql
        assert "pg_rev.reversal_of_posting_group_id = pg.id" in sql


def test_match_rejects_entry_of_reversing_group(monkeypatch):
    cur = _patch_db(monkeypatch, _match_rules())
    _match()
    sql, _ = cur.sql_containing("AS is_reversed")[0]
    assert "pg.reversal_of_posting_group_id IS NOT NULL" in sql

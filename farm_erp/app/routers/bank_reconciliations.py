from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from ..audit import write_audit_log
from ..db import get_conn, set_tenant_context
from ..deps import get_tenant_id, get_current_user, require_action
from ..money import money_str, q_money, to_decimal
from ..posting import get_account_id
from ..roles import Action
from ..statement_matching import (
    LedgerEntryCandidate,
    LineAction,
    LineState,
    ReconciliationStateError,
    StatementLine,
    StatementLineError,
    assert_draft,
    check_sign_compatible,
    eligible_candidates,
    summarize_statement,
    transition,
)
from ..validation import Money, ReconAccountCode

router = APIRouter(prefix="/bank-reconciliations", tags=["bank-reconciliations"])


class ReconciliationIn(BaseModel):
    account_code: ReconAccountCode = "BANK"
    statement_date: date
    statement_balance: Money
    notes: Optional[str] = None


class ClearIn(BaseModel):
    ledger_entry_ids: list[str]
    cleared_date: Optional[date] = None


class UnclearIn(BaseModel):
    ledger_entry_ids: list[str]
    reason: Optional[str] = None


class StatementLineIn(BaseModel):
    line_date: date
    amount: Money
    description: Optional[str] = None
    reference: Optional[str] = None


class MatchIn(BaseModel):
    ledger_entry_id: str


class ReasonIn(BaseModel):
    reason: Optional[str] = None


def _load_reconciliation(cur, tenant_id: str, rec_id: str, for_update: bool = False) -> dict:
    cur.execute(
        f"""
        SELECT r.id, r.account_id, a.code AS account_code, a.name AS account_name,
               r.statement_date, r.statement_balance, r.status, r.notes, r.finalized_at
        FROM bank_reconciliations r
        JOIN accounts a ON a.id = r.account_id
        WHERE r.tenant_id = %s AND r.id = %s
        {"FOR UPDATE OF r" if for_update else ""}
        """,
        (tenant_id, rec_id),
    )
    rec = cur.fetchone()
    if not rec:
        raise HTTPException(status_code=404, detail="bank reconciliation not found")
    return rec


def _require_draft(rec: dict):
    try:
        assert_draft(rec["status"])
    except ReconciliationStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc))


def _entry_row(r: dict, cleared_date=None) -> dict:
    out = {
        "ledger_entry_id": str(r["ledger_entry_id"]),
        "posting_date": r["posting_date"].isoformat() if hasattr(r["posting_date"], "isoformat") else r["posting_date"],
        "description": f"{r['source_type']}#{r['source_id'] or ''}",
        "debit_amount": money_str(r["debit_amount"]),
        "credit_amount": money_str(r["credit_amount"]),
        "posting_group_id": str(r["posting_group_id"]),
    }
    if cleared_date is not None:
        out["cleared_date"] = cleared_date.isoformat() if hasattr(cleared_date, "isoformat") else cleared_date
    return out


def _book_balance(cur, tenant_id: str, account_id, as_of) -> Decimal:
    # Reversed groups and their reversals both drop out.
    cur.execute(
        """
        SELECT COALESCE(SUM(le.debit_amount - le.credit_amount), 0) AS net
        FROM ledger_entries le
        JOIN posting_groups pg ON pg.id = le.posting_group_id AND pg.tenant_id = le.tenant_id
        WHERE le.tenant_id = %s
          AND le.account_id = %s
          AND pg.posting_date <= %s
          AND pg.reversal_of_posting_group_id IS NULL
          AND NOT EXISTS (
            SELECT 1 FROM posting_groups pg_rev
            WHERE pg_rev.reversal_of_posting_group_id = pg.id
          )
        """,
        (tenant_id, account_id, as_of),
    )
    return to_decimal(cur.fetchone()["net"])


def _cleared_balance(cur, tenant_id: str, rec_id: str, as_of) -> Decimal:
    cur.execute(
        """
        SELECT COALESCE(SUM(le.debit_amount - le.credit_amount), 0) AS net
        FROM bank_reconciliation_clears c
        JOIN ledger_entries le ON le.id = c.ledger_entry_id AND le.tenant_id = c.tenant_id
        WHERE c.tenant_id = %s
          AND c.bank_reconciliation_id = %s
          AND c.status = 'CLEARED'
          AND c.cleared_date <= %s
        """,
        (tenant_id, rec_id, as_of),
    )
    return to_decimal(cur.fetchone()["net"])


def _uncleared_entries(cur, tenant_id: str, rec: dict) -> tuple[list[dict], list[dict]]:
    cur.execute(
        """
        SELECT le.id AS ledger_entry_id, pg.posting_date, le.debit_amount, le.credit_amount,
               le.posting_group_id, pg.source_type, pg.source_id
        FROM ledger_entries le
        JOIN posting_groups pg ON pg.id = le.posting_group_id AND pg.tenant_id = le.tenant_id
        WHERE le.tenant_id = %s
          AND le.account_id = %s
          AND pg.posting_date <= %s
          AND pg.reversal_of_posting_group_id IS NULL
          AND NOT EXISTS (
            SELECT 1 FROM posting_groups pg_rev
            WHERE pg_rev.reversal_of_posting_group_id = pg.id
          )
          AND NOT EXISTS (
            SELECT 1 FROM bank_reconciliation_clears c
            WHERE c.ledger_entry_id = le.id
              AND c.bank_reconciliation_id = %s
              AND c.status = 'CLEARED'
          )
        ORDER BY pg.posting_date ASC, le.id ASC
        """,
        (tenant_id, rec["account_id"], rec["statement_date"], rec["id"]),
    )
    debits, credits = [], []
    for r in cur.fetchall():
        item = _entry_row(r)
        if to_decimal(r["debit_amount"]) > 0:
            debits.append(item)
        if to_decimal(r["credit_amount"]) > 0:
            credits.append(item)
    return debits, credits


def _cleared_entries(cur, tenant_id: str, rec_id: str) -> list[dict]:
    cur.execute(
        """
        SELECT c.ledger_entry_id, c.cleared_date, pg.posting_date, le.debit_amount, le.credit_amount,
               le.posting_group_id, pg.source_type, pg.source_id
        FROM bank_reconciliation_clears c
        JOIN ledger_entries le ON le.id = c.ledger_entry_id AND le.tenant_id = c.tenant_id
        JOIN posting_groups pg ON pg.id = le.posting_group_id AND pg.tenant_id = le.tenant_id
        WHERE c.tenant_id = %s
          AND c.bank_reconciliation_id = %s
          AND c.status = 'CLEARED'
        ORDER BY c.cleared_date ASC, c.ledger_entry_id ASC
        """,
        (tenant_id, rec_id),
    )
    return [_entry_row(r, cleared_date=r["cleared_date"]) for r in cur.fetchall()]


def _statement_line_rows(cur, tenant_id: str, rec_id: str, include_voided: bool = False) -> list[dict]:
    cur.execute(
        f"""
        SELECT l.id, l.line_date, l.amount, l.description, l.reference, l.status,
               (m.id IS NOT NULL) AS is_matched,
               m.ledger_entry_id AS matched_ledger_entry_id,
               pg.posting_date AS matched_posting_date,
               (le.debit_amount - le.credit_amount) AS matched_amount
        FROM bank_statement_lines l
        LEFT JOIN bank_statement_matches m
          ON m.bank_statement_line_id = l.id AND m.tenant_id = l.tenant_id AND m.status = 'MATCHED'
        LEFT JOIN ledger_entries le ON le.id = m.ledger_entry_id AND le.tenant_id = m.tenant_id
        LEFT JOIN posting_groups pg ON pg.id = le.posting_group_id AND pg.tenant_id = le.tenant_id
        WHERE l.tenant_id = %s
          AND l.bank_reconciliation_id = %s
          {"" if include_voided else "AND l.status = 'ACTIVE'"}
        ORDER BY l.line_date ASC, l.created_at ASC
        """,
        (tenant_id, rec_id),
    )
    return cur.fetchall()


def _line_dict(r: dict) -> dict:
    return {
        "id": str(r["id"]),
        "line_date": r["line_date"].isoformat() if hasattr(r["line_date"], "isoformat") else r["line_date"],
        "amount": money_str(r["amount"]),
        "description": r.get("description"),
        "reference": r.get("reference"),
        "status": r.get("status") or "ACTIVE",
        "is_matched": bool(r.get("is_matched")),
        "matched_ledger_entry_id": str(r["matched_ledger_entry_id"]) if r.get("matched_ledger_entry_id") else None,
        "matched_posting_date": (
            r["matched_posting_date"].isoformat()
            if hasattr(r.get("matched_posting_date"), "isoformat")
            else r.get("matched_posting_date")
        ),
        "matched_amount": money_str(r["matched_amount"]) if r.get("matched_amount") is not None else None,
    }


def _matched_ledger_net(cur, tenant_id: str, rec_id: str) -> Decimal:
    cur.execute(
        """
        SELECT COALESCE(SUM(le.debit_amount - le.credit_amount), 0) AS net
        FROM bank_statement_matches m
        JOIN bank_statement_lines l ON l.id = m.bank_statement_line_id AND l.tenant_id = m.tenant_id
        JOIN ledger_entries le ON le.id = m.ledger_entry_id AND le.tenant_id = m.tenant_id
        WHERE m.tenant_id = %s
          AND m.bank_reconciliation_id = %s
          AND m.status = 'MATCHED'
          AND l.status = 'ACTIVE'
        """,
        (tenant_id, rec_id),
    )
    return to_decimal(cur.fetchone()["net"])


def build_report(cur, tenant_id: str, rec_id: str) -> dict:
    rec = _load_reconciliation(cur, tenant_id, rec_id)
    statement_balance = q_money(rec["statement_balance"])
    book = _book_balance(cur, tenant_id, rec["account_id"], rec["statement_date"])
    cleared = _cleared_balance(cur, tenant_id, rec_id, rec["statement_date"])
    uncleared_debits, uncleared_credits = _uncleared_entries(cur, tenant_id, rec)
    cleared_entries = _cleared_entries(cur, tenant_id, rec_id)
    line_rows = _statement_line_rows(cur, tenant_id, rec_id)
    lines = [StatementLine.from_row(r) for r in line_rows]
    summary = summarize_statement(lines, _matched_ledger_net(cur, tenant_id, rec_id))
    return {
        "id": str(rec["id"]),
        "account_id": str(rec["account_id"]),
        "account_code": rec["account_code"],
        "account_name": rec["account_name"],
        "statement_date": rec["statement_date"].isoformat(),
        "statement_balance": money_str(statement_balance),
        "book_balance": money_str(book),
        "cleared_balance": money_str(cleared),
        "uncleared_net": money_str(book - cleared),
        "difference": money_str(statement_balance - book),
        "status": rec["status"],
        "notes": rec["notes"],
        "finalized_at": rec["finalized_at"].isoformat() if rec["finalized_at"] else None,
        "cleared_counts": {
            "cleared": len(cleared_entries),
            "uncleared": len(uncleared_debits) + len(uncleared_credits),
        },
        "uncleared_debits": uncleared_debits,
        "uncleared_credits": uncleared_credits,
        "cleared_entries": cleared_entries,
        "statement": {k: money_str(v) for k, v in summary.items()},
        "statement_lines": [_line_dict(r) for r in line_rows],
        "generated_at": datetime.now(timezone.utc).isoformat(),
    }


def _check_entry_for_reconciliation(cur, tenant_id: str, rec: dict, ledger_entry_id: str) -> dict:
    cur.execute(
        """
        SELECT le.id, le.account_id, le.debit_amount, le.credit_amount, pg.id AS posting_group_id, pg.posting_date,
               pg.reversal_of_posting_group_id IS NOT NULL OR EXISTS (
                 SELECT 1 FROM posting_groups pg_rev WHERE pg_rev.reversal_of_posting_group_id = pg.id
               ) AS is_reversed
        FROM ledger_entries le
        JOIN posting_groups pg ON pg.id = le.posting_group_id AND pg.tenant_id = le.tenant_id
        WHERE le.tenant_id = %s AND le.id = %s
        """,
        (tenant_id, ledger_entry_id),
    )
    entry = cur.fetchone()
    if not entry:
        raise HTTPException(status_code=404, detail=f"ledger entry {ledger_entry_id} not found")
    if str(entry["account_id"]) != str(rec["account_id"]):
        raise HTTPException(status_code=409, detail=f"ledger entry {ledger_entry_id} is not for this reconciliation account")
    if entry["posting_date"] > rec["statement_date"]:
        raise HTTPException(status_code=409, detail=f"ledger entry {ledger_entry_id} posting_date is after statement_date")
    if entry["is_reversed"]:
        raise HTTPException(status_code=409, detail=f"ledger entry {ledger_entry_id} belongs to a reversed or reversing posting group")
    return entry


def _load_line(cur, tenant_id: str, rec_id: str, line_id: str) -> StatementLine:
    cur.execute(
        """
        SELECT l.id, l.line_date, l.amount, l.description, l.reference, l.status,
               (m.id IS NOT NULL) AS is_matched, m.ledger_entry_id AS matched_ledger_entry_id
        FROM bank_statement_lines l
        LEFT JOIN bank_statement_matches m
          ON m.bank_statement_line_id = l.id AND m.tenant_id = l.tenant_id AND m.status = 'MATCHED'
        WHERE l.tenant_id = %s AND l.bank_reconciliation_id = %s AND l.id = %s
        FOR UPDATE OF l
        """,
        (tenant_id, rec_id, line_id),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="statement line not found")
    return StatementLine.from_row(row)


def _advance_line(line: StatementLine, action: LineAction) -> LineState:
    try:
        return transition(line.state, action)
    except StatementLineError as exc:
        raise HTTPException(status_code=422 if line.state is LineState.VOIDED else 409, detail=str(exc))


@router.post("", dependencies=[Depends(require_action(Action.RECONCILE_BANK))])
def create_reconciliation(data: ReconciliationIn, tenant_id: str = Depends(get_tenant_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                account_id = get_account_id(cur, tenant_id, data.account_code)
                cur.execute(
                    """
                    INSERT INTO bank_reconciliations
                      (id, tenant_id, account_id, statement_date, statement_balance, status, notes, created_by)
                    VALUES
                      (gen_random_uuid(), %s, %s, %s, %s, 'DRAFT', %s, %s)
                    RETURNING id
                    """,
                    (tenant_id, account_id, data.statement_date, q_money(data.statement_balance), data.notes, user["user_id"]),
                )
                rec_id = cur.fetchone()["id"]
                write_audit_log(cur, tenant_id, user["user_id"], "bank_reconciliation_create", "bank_reconciliation", rec_id, data.model_dump())
                return {"id": rec_id, "status": "DRAFT"}


@router.get("", dependencies=[Depends(require_action(Action.VIEW_RECORDS))])
def list_reconciliations(account_code: Optional[str] = None, limit: int = 50, tenant_id: str = Depends(get_tenant_id)):
    if limit <= 0 or limit > 100:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 100")
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.cursor() as cur:
            sql = """
                SELECT r.id, r.account_id, a.code AS account_code, a.name AS account_name,
                       r.statement_date, r.statement_balance, r.status, r.notes, r.finalized_at, r.created_at
                FROM bank_reconciliations r
                JOIN accounts a ON a.id = r.account_id
                WHERE r.tenant_id = %s
            """
            params = [tenant_id]
            if account_code:
                sql += " AND a.code = %s"
                params.append(account_code.strip().upper())
            sql += " ORDER BY r.statement_date DESC, r.created_at DESC LIMIT %s"
            params.append(limit)
            cur.execute(sql, params)
            return {"reconciliations": cur.fetchall()}


@router.get("/{rec_id}", dependencies=[Depends(require_action(Action.VIEW_RECORDS))])
def get_report(rec_id: str, tenant_id: str = Depends(get_tenant_id)):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.cursor() as cur:
            return build_report(cur, tenant_id, rec_id)


@router.post("/{rec_id}/clear", dependencies=[Depends(require_action(Action.RECONCILE_BANK))])
def clear_entries(rec_id: str, data: ClearIn, tenant_id: str = Depends(get_tenant_id), user=Depends(get_current_user)):
    if not data.ledger_entry_ids:
        raise HTTPException(status_code=400, detail="ledger_entry_ids is required")
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                rec = _load_reconciliation(cur, tenant_id, rec_id, for_update=True)
                _require_draft(rec)
                cleared_date = data.cleared_date or rec["statement_date"]
                if cleared_date > rec["statement_date"]:
                    raise HTTPException(status_code=400, detail="cleared_date cannot be after statement_date")
                created = []
                for entry_id in data.ledger_entry_ids:
                    _check_entry_for_reconciliation(cur, tenant_id, rec, entry_id)
                    cur.execute(
                        """
                        SELECT 1 FROM bank_reconciliation_clears
                        WHERE tenant_id = %s AND ledger_entry_id = %s AND status = 'CLEARED'
                        """,
                        (tenant_id, entry_id),
                    )
                    if cur.fetchone():
                        raise HTTPException(status_code=409, detail=f"ledger entry {entry_id} is already cleared")
                    cur.execute(
                        """
                        INSERT INTO bank_reconciliation_clears
                          (id, tenant_id, bank_reconciliation_id, ledger_entry_id, cleared_date, status, created_by)
                        VALUES
                          (gen_random_uuid(), %s, %s, %s, %s, 'CLEARED', %s)
                        RETURNING id
                        """,
                        (tenant_id, rec_id, entry_id, cleared_date, user["user_id"]),
                    )
                    created.append(cur.fetchone()["id"])
                write_audit_log(
                    cur, tenant_id, user["user_id"], "bank_reconciliation_clear", "bank_reconciliation", rec_id,
                    {"ledger_entry_ids": data.ledger_entry_ids, "cleared_date": cleared_date},
                )
                return {"cleared": created}


@router.post("/{rec_id}/unclear", dependencies=[Depends(require_action(Action.RECONCILE_BANK))])
def unclear_entries(rec_id: str, data: UnclearIn, tenant_id: str = Depends(get_tenant_id), user=Depends(get_current_user)):
    if not data.ledger_entry_ids:
        raise HTTPException(status_code=400, detail="ledger_entry_ids is required")
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                rec = _load_reconciliation(cur, tenant_id, rec_id, for_update=True)
                _require_draft(rec)
                cur.execute(
                    """
                    UPDATE bank_reconciliation_clears
                    SET status = 'VOID', voided_at = now(), voided_by = %s
                    WHERE tenant_id = %s
                      AND bank_reconciliation_id = %s
                      AND ledger_entry_id = ANY(%s::uuid[])
                      AND status = 'CLEARED'
                    """,
                    (user["user_id"], tenant_id, rec_id, data.ledger_entry_ids),
                )
                voided = cur.rowcount
                write_audit_log(
                    cur, tenant_id, user["user_id"], "bank_reconciliation_unclear", "bank_reconciliation", rec_id,
                    {"ledger_entry_ids": data.ledger_entry_ids, "reason": data.reason},
                )
                return {"voided": voided}


@router.post("/{rec_id}/finalize", dependencies=[Depends(require_action(Action.FINALIZE_RECONCILIATION))])
def finalize(rec_id: str, tenant_id: str = Depends(get_tenant_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                rec = _load_reconciliation(cur, tenant_id, rec_id, for_update=True)
                _require_draft(rec)
                cur.execute(
                    """
                    UPDATE bank_reconciliations
                    SET status = 'FINALIZED', finalized_at = now(), finalized_by = %s
                    WHERE tenant_id = %s AND id = %s
                    """,
                    (user["user_id"], tenant_id, rec_id),
                )
                write_audit_log(cur, tenant_id, user["user_id"], "bank_reconciliation_finalize", "bank_reconciliation", rec_id)
                return {"id": rec_id, "status": "FINALIZED"}


@router.get("/{rec_id}/statement-lines", dependencies=[Depends(require_action(Action.VIEW_RECORDS))])
def list_statement_lines(rec_id: str, include_voided: bool = False, tenant_id: str = Depends(get_tenant_id)):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.cursor() as cur:
            _load_reconciliation(cur, tenant_id, rec_id)
            rows = _statement_line_rows(cur, tenant_id, rec_id, include_voided=include_voided)
            return {"statement_lines": [_line_dict(r) for r in rows]}


@router.post("/{rec_id}/statement-lines", dependencies=[Depends(require_action(Action.RECONCILE_BANK))])
def add_statement_line(rec_id: str, data: StatementLineIn, tenant_id: str = Depends(get_tenant_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                rec = _load_reconciliation(cur, tenant_id, rec_id, for_update=True)
                _require_draft(rec)
                if data.line_date > rec["statement_date"]:
                    raise HTTPException(status_code=422, detail="line_date cannot be after statement_date")
                # Signed: deposits > 0, withdrawals < 0, zero allowed for adjustments.
                cur.execute(
                    """
                    INSERT INTO bank_statement_lines
                      (id, tenant_id, bank_reconciliation_id, line_date, amount, description, reference, status, created_by)
                    VALUES
                      (gen_random_uuid(), %s, %s, %s, %s, %s, %s, 'ACTIVE', %s)
                    RETURNING id
                    """,
                    (tenant_id, rec_id, data.line_date, q_money(data.amount), data.description, data.reference, user["user_id"]),
                )
                line_id = cur.fetchone()["id"]
                write_audit_log(cur, tenant_id, user["user_id"], "bank_statement_line_add", "bank_statement_line", line_id, data.model_dump())
                return {"id": line_id}


@router.post("/{rec_id}/statement-lines/{line_id}/void", dependencies=[Depends(require_action(Action.RECONCILE_BANK))])
def void_statement_line(rec_id: str, line_id: str, data: ReasonIn, tenant_id: str = Depends(get_tenant_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                rec = _load_reconciliation(cur, tenant_id, rec_id, for_update=True)
                _require_draft(rec)
                line = _load_line(cur, tenant_id, rec_id, line_id)
                _advance_line(line, LineAction.VOID)
                cur.execute(
                    """
                    UPDATE bank_statement_matches
                    SET status = 'VOID', voided_at = now(), voided_by = %s
                    WHERE tenant_id = %s AND bank_statement_line_id = %s AND status = 'MATCHED'
                    """,
                    (user["user_id"], tenant_id, line_id),
                )
                cur.execute(
                    """
                    UPDATE bank_statement_lines
                    SET status = 'VOID', voided_at = now(), voided_by = %s
                    WHERE tenant_id = %s AND id = %s
                    """,
                    (user["user_id"], tenant_id, line_id),
                )
                write_audit_log(
                    cur, tenant_id, user["user_id"], "bank_statement_line_void", "bank_statement_line", line_id,
                    {"reason": data.reason, "was_matched": line.is_matched},
                )
                return {"id": line_id, "status": "VOID"}


@router.post("/{rec_id}/statement-lines/{line_id}/match", dependencies=[Depends(require_action(Action.RECONCILE_BANK))])
def match_statement_line(rec_id: str, line_id: str, data: MatchIn, tenant_id: str = Depends(get_tenant_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                rec = _load_reconciliation(cur, tenant_id, rec_id, for_update=True)
                _require_draft(rec)
                line = _load_line(cur, tenant_id, rec_id, line_id)
                _advance_line(line, LineAction.MATCH)
                cur.execute(
                    """
                    SELECT 1 FROM bank_statement_matches
                    WHERE tenant_id = %s AND ledger_entry_id = %s AND status = 'MATCHED'
                    """,
                    (tenant_id, data.ledger_entry_id),
                )
                if cur.fetchone():
                    raise HTTPException(status_code=409, detail="ledger entry is already matched to another statement line")
                entry = _check_entry_for_reconciliation(cur, tenant_id, rec, data.ledger_entry_id)
                try:
                    check_sign_compatible(line.amount, entry["debit_amount"], entry["credit_amount"])
                except StatementLineError as exc:
                    raise HTTPException(status_code=409, detail=str(exc))
                cur.execute(
                    """
                    INSERT INTO bank_statement_matches
                      (id, tenant_id, bank_reconciliation_id, bank_statement_line_id, ledger_entry_id, status, created_by)
                    VALUES
                      (gen_random_uuid(), %s, %s, %s, %s, 'MATCHED', %s)
                    RETURNING id
                    """,
                    (tenant_id, rec_id, line_id, data.ledger_entry_id, user["user_id"]),
                )
                match_id = cur.fetchone()["id"]
                write_audit_log(
                    cur, tenant_id, user["user_id"], "bank_statement_line_match", "bank_statement_line", line_id,
                    {"ledger_entry_id": data.ledger_entry_id},
                )
                return {"id": match_id, "bank_statement_line_id": line_id, "ledger_entry_id": data.ledger_entry_id}


@router.post("/{rec_id}/statement-lines/{line_id}/unmatch", dependencies=[Depends(require_action(Action.RECONCILE_BANK))])
def unmatch_statement_line(rec_id: str, line_id: str, data: ReasonIn, tenant_id: str = Depends(get_tenant_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                rec = _load_reconciliation(cur, tenant_id, rec_id, for_update=True)
                _require_draft(rec)
                line = _load_line(cur, tenant_id, rec_id, line_id)
                _advance_line(line, LineAction.UNMATCH)
                cur.execute(
                    """
                    UPDATE bank_statement_matches
                    SET status = 'VOID', voided_at = now(), voided_by = %s
                    WHERE tenant_id = %s AND bank_reconciliation_id = %s
                      AND bank_statement_line_id = %s AND status = 'MATCHED'
                    """,
                    (user["user_id"], tenant_id, rec_id, line_id),
                )
                write_audit_log(
                    cur, tenant_id, user["user_id"], "bank_statement_line_unmatch", "bank_statement_line", line_id,
                    {"reason": data.reason, "ledger_entry_id": line.matched_ledger_entry_id},
                )
                return {"unmatched": cur.rowcount}


@router.get("/{rec_id}/statement-lines/{line_id}/candidates", dependencies=[Depends(require_action(Action.VIEW_RECORDS))])
def statement_line_candidates(rec_id: str, line_id: str, tenant_id: str = Depends(get_tenant_id)):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.cursor() as cur:
            report = build_report(cur, tenant_id, rec_id)
    lines = [StatementLine.from_row(l) for l in report["statement_lines"]]
    line = next((l for l in lines if l.id == str(line_id)), None)
    if line is None:
        raise HTTPException(status_code=404, detail="statement line not found")
    candidates = eligible_candidates(
        line,
        [LedgerEntryCandidate.from_row(e) for e in report["uncleared_debits"]],
        [LedgerEntryCandidate.from_row(e) for e in report["uncleared_credits"]],
        [LedgerEntryCandidate.from_row(e) for e in report["cleared_entries"]],
        lines,
    )
    return {
        "candidates": [
            {
                "ledger_entry_id": c.ledger_entry_id,
                "posting_date": c.posting_date.isoformat(),
                "description": c.description,
                "debit_amount": money_str(c.debit_amount),
                "credit_amount": money_str(c.credit_amount),
            }
            for c in candidates
        ]
    }

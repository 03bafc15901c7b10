from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from fastapi import HTTPException

from .money import q_money

# (code, name, type) seeded for every tenant by the bootstrap endpoints.
SYSTEM_ACCOUNTS = [
    ("CASH", "Cash on Hand", "asset"),
    ("BANK", "Bank", "asset"),
    ("AR", "Accounts Receivable", "asset"),
    ("AP", "Accounts Payable", "liability"),
    ("WAGES_PAYABLE", "Wages Payable", "liability"),
    ("SALES_REVENUE", "Sales Revenue", "income"),
    ("EXPENSES", "Farm Expenses", "expense"),
    ("WAGES_EXPENSE", "Labour Expense", "expense"),
]


def get_account_id(cur, tenant_id: str, code: str) -> str:
    cur.execute(
        "SELECT id FROM accounts WHERE tenant_id = %s AND code = %s",
        (tenant_id, code),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=400, detail=f"missing system account {code}")
    return str(row["id"])


def find_posting_group_by_key(cur, tenant_id: str, idempotency_key: Optional[str]) -> Optional[dict]:
    if not idempotency_key:
        return None
    cur.execute(
        """
        SELECT id, source_type, source_id, posting_date
        FROM posting_groups
        WHERE tenant_id = %s AND idempotency_key = %s
        """,
        (tenant_id, idempotency_key),
    )
    return cur.fetchone()


def create_posting_group(
    cur,
    tenant_id: str,
    *,
    source_type: str,
    source_id: str,
    posting_date: date,
    lines: Iterable[tuple],
    idempotency_key: Optional[str] = None,
    reversal_of: Optional[str] = None,
    created_by=None,
) -> str:
    """
    Insert a posting group and its ledger entries.
    `lines` are (account_id, debit, credit, party_id); debits must equal credits exactly.
    """
    lines = [(acc, q_money(dr), q_money(cr), party) for acc, dr, cr, party in lines]
    total_dr = sum((l[1] for l in lines), Decimal("0"))
    total_cr = sum((l[2] for l in lines), Decimal("0"))
    if not lines or total_dr != total_cr:
        raise ValueError("posting group is imbalanced")

    cur.execute(
        """
        INSERT INTO posting_groups
          (id, tenant_id, source_type, source_id, posting_date, idempotency_key, reversal_of_posting_group_id, created_by)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (tenant_id, source_type, source_id, posting_date, idempotency_key, reversal_of, created_by),
    )
    pg_id = str(cur.fetchone()["id"])
    for account_id, debit, credit, party_id in lines:
        cur.execute(
            """
            INSERT INTO ledger_entries (id, tenant_id, posting_group_id, account_id, party_id, debit_amount, credit_amount)
            VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s)
            """,
            (tenant_id, pg_id, account_id, party_id, debit, credit),
        )
    return pg_id


def reverse_posting_group(cur, tenant_id: str, pg_id: str, posting_date: date, created_by=None) -> dict:
    cur.execute(
        """
        SELECT id, source_type, source_id, posting_date, reversal_of_posting_group_id
        FROM posting_groups
        WHERE tenant_id = %s AND id = %s
        FOR UPDATE
        """,
        (tenant_id, pg_id),
    )
    pg = cur.fetchone()
    if not pg:
        raise HTTPException(status_code=404, detail="posting group not found")
    if pg["reversal_of_posting_group_id"]:
        raise HTTPException(status_code=409, detail="a reversal cannot itself be reversed")
    if posting_date < pg["posting_date"]:
        raise HTTPException(status_code=400, detail="reversal posting_date cannot be before the original posting_date")
    cur.execute(
        "SELECT 1 FROM posting_groups WHERE tenant_id = %s AND reversal_of_posting_group_id = %s",
        (tenant_id, pg_id),
    )
    if cur.fetchone():
        raise HTTPException(status_code=409, detail="posting group is already reversed")

    cur.execute(
        """
        SELECT account_id, party_id, debit_amount, credit_amount
        FROM ledger_entries
        WHERE tenant_id = %s AND posting_group_id = %s
        ORDER BY id
        """,
        (tenant_id, pg_id),
    )
    # Swap sides so each original entry nets to zero.
    lines = [(r["account_id"], r["credit_amount"], r["debit_amount"], r["party_id"]) for r in cur.fetchall()]
    reversal_id = create_posting_group(
        cur,
        tenant_id,
        source_type=pg["source_type"],
        source_id=str(pg["source_id"]),
        posting_date=posting_date,
        lines=lines,
        reversal_of=pg_id,
        created_by=created_by,
    )
    return {"id": reversal_id, "source_type": pg["source_type"], "source_id": str(pg["source_id"])}

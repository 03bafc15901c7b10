from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from datetime import date
from typing import Optional

from ..audit import write_audit_log
from ..db import get_conn, set_tenant_context
from ..deps import get_tenant_id, get_current_user, require_action
from ..money import q_money
from ..posting import create_posting_group, find_posting_group_by_key, get_account_id
from ..roles import Action
from ..validation import DocStatus, Money, PaymentPurpose

router = APIRouter(prefix="/payables", tags=["payables"])

# kind -> (expense account, liability account)
PAYABLE_ACCOUNTS = {
    "GENERAL": ("EXPENSES", "AP"),
    "WAGES": ("WAGES_EXPENSE", "WAGES_PAYABLE"),
}


class PayableIn(BaseModel):
    party_id: str
    kind: PaymentPurpose = "GENERAL"
    amount: Money
    posting_date: date
    description: Optional[str] = None


class PayablePostIn(BaseModel):
    posting_date: Optional[date] = None
    idempotency_key: Optional[str] = None


@router.get("", dependencies=[Depends(require_action(Action.VIEW_RECORDS))])
def list_payables(
    party_id: Optional[str] = None,
    kind: Optional[PaymentPurpose] = None,
    status: Optional[DocStatus] = None,
    tenant_id: str = Depends(get_tenant_id),
):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.cursor() as cur:
            sql = """
                SELECT id, party_id, kind, amount, posting_date, description, status,
                       posting_group_id, reversal_posting_group_id
                FROM payables
                WHERE tenant_id = %s
            """
            params = [tenant_id]
            if party_id:
                sql += " AND party_id = %s"
                params.append(party_id)
            if kind:
                sql += " AND kind = %s"
                params.append(kind)
            if status:
                sql += " AND status = %s"
                params.append(status)
            sql += " ORDER BY posting_date DESC, created_at DESC"
            cur.execute(sql, params)
            return {"payables": cur.fetchall()}


@router.post("", dependencies=[Depends(require_action(Action.EDIT_DRAFTS))])
def create_payable(data: PayableIn, tenant_id: str = Depends(get_tenant_id), user=Depends(get_current_user)):
    if data.amount <= 0:
        raise HTTPException(status_code=400, detail="amount must be > 0")
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id FROM parties WHERE tenant_id = %s AND id = %s", (tenant_id, data.party_id))
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="party not found")
                cur.execute(
                    """
                    INSERT INTO payables (id, tenant_id, party_id, kind, amount, posting_date, description, status)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, 'DRAFT')
                    RETURNING id
                    """,
                    (
                        tenant_id,
                        data.party_id,
                        data.kind,
                        q_money(data.amount),
                        data.posting_date,
                        (data.description or None),
                    ),
                )
                payable_id = cur.fetchone()["id"]
                write_audit_log(cur, tenant_id, user["user_id"], "payable_create", "payable", payable_id, data.model_dump())
                return {"id": payable_id}


@router.delete("/{payable_id}", dependencies=[Depends(require_action(Action.EDIT_DRAFTS))])
def delete_payable(payable_id: str, tenant_id: str = Depends(get_tenant_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM payables WHERE tenant_id = %s AND id = %s AND status = 'DRAFT' RETURNING id",
                    (tenant_id, payable_id),
                )
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="draft payable not found")
                write_audit_log(cur, tenant_id, user["user_id"], "payable_delete", "payable", payable_id)
                return {"ok": True}


@router.post("/{payable_id}/post", dependencies=[Depends(require_action(Action.POST_DOCUMENTS))])
def post_payable(payable_id: str, data: PayablePostIn, tenant_id: str = Depends(get_tenant_id), user=Depends(get_current_user)):
    """Book the expense against the party's AP (or wages payable) balance."""
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                existing = find_posting_group_by_key(cur, tenant_id, data.idempotency_key)
                if existing:
                    if str(existing["source_id"]) != str(payable_id) or existing["source_type"] != "PAYABLE":
                        raise HTTPException(status_code=409, detail="idempotency_key already used for another document")
                    return {"id": payable_id, "posting_group_id": existing["id"], "replayed": True}

                cur.execute(
                    """
                    SELECT id, party_id, kind, amount, posting_date, status
                    FROM payables
                    WHERE tenant_id = %s AND id = %s
                    FOR UPDATE
                    """,
                    (tenant_id, payable_id),
                )
                payable = cur.fetchone()
                if not payable:
                    raise HTTPException(status_code=404, detail="payable not found")
                if payable["status"] != "DRAFT":
                    raise HTTPException(status_code=409, detail="only DRAFT payables can be posted")

                posting_date = data.posting_date or payable["posting_date"]
                amount = q_money(payable["amount"])
                party_id = payable["party_id"]
                expense_code, liability_code = PAYABLE_ACCOUNTS[payable["kind"]]
                expense = get_account_id(cur, tenant_id, expense_code)
                liability = get_account_id(cur, tenant_id, liability_code)
                pg_id = create_posting_group(
                    cur,
                    tenant_id,
                    source_type="PAYABLE",
                    source_id=payable_id,
                    posting_date=posting_date,
                    lines=[(expense, amount, 0, party_id), (liability, 0, amount, party_id)],
                    idempotency_key=data.idempotency_key,
                    created_by=user["user_id"],
                )
                cur.execute(
                    """
                    UPDATE payables
                    SET status = 'POSTED', posting_group_id = %s, posting_date = %s
                    WHERE tenant_id = %s AND id = %s
                    """,
                    (pg_id, posting_date, tenant_id, payable_id),
                )
                write_audit_log(cur, tenant_id, user["user_id"], "payable_post", "payable", payable_id, {"posting_group_id": pg_id})
                return {"id": payable_id, "posting_group_id": pg_id, "replayed": False}

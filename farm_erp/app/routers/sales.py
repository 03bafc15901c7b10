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
from ..validation import DocStatus, Money, SaleKind

router = APIRouter(prefix="/sales", tags=["sales"])


class SaleIn(BaseModel):
    buyer_party_id: str
    amount: Money
    posting_date: date
    due_date: Optional[date] = None
    sale_no: Optional[str] = None
    sale_kind: SaleKind = "INVOICE"


class SalePostIn(BaseModel):
    posting_date: Optional[date] = None
    idempotency_key: Optional[str] = None


@router.get("", dependencies=[Depends(require_action(Action.VIEW_RECORDS))])
def list_sales(
    buyer_party_id: Optional[str] = None,
    status: Optional[DocStatus] = None,
    open_only: bool = False,
    tenant_id: str = Depends(get_tenant_id),
):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.cursor() as cur:
            sql = """
                SELECT s.id, s.sale_no, s.sale_kind, s.buyer_party_id, s.amount, s.posting_date, s.due_date,
                       s.status, s.posting_group_id, s.reversal_posting_group_id,
                       s.amount - COALESCE(SUM(a.amount) FILTER (WHERE a.status = 'ACTIVE'), 0) AS outstanding
                FROM sales s
                LEFT JOIN sale_payment_allocations a ON a.sale_id = s.id AND a.tenant_id = s.tenant_id
                WHERE s.tenant_id = %s
            """
            params = [tenant_id]
            if buyer_party_id:
                sql += " AND s.buyer_party_id = %s"
                params.append(buyer_party_id)
            if status:
                sql += " AND s.status = %s"
                params.append(status)
            sql += " GROUP BY s.id"
            if open_only:
                sql += """
                    HAVING s.status = 'POSTED' AND s.sale_kind = 'INVOICE'
                       AND s.amount - COALESCE(SUM(a.amount) FILTER (WHERE a.status = 'ACTIVE'), 0) > 0
                """
            sql += " ORDER BY s.posting_date DESC, s.created_at DESC"
            cur.execute(sql, params)
            return {"sales": cur.fetchall()}


@router.post("", dependencies=[Depends(require_action(Action.EDIT_DRAFTS))])
def create_sale(data: SaleIn, tenant_id: str = Depends(get_tenant_id), user=Depends(get_current_user)):
    if data.amount <= 0:
        raise HTTPException(status_code=400, detail="amount must be > 0")
    if data.due_date and data.due_date < data.posting_date:
        raise HTTPException(status_code=400, detail="due_date cannot be before posting_date")
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO sales (id, tenant_id, buyer_party_id, sale_no, sale_kind, amount, posting_date, due_date, status)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, 'DRAFT')
                    RETURNING id
                    """,
                    (
                        tenant_id,
                        data.buyer_party_id,
                        (data.sale_no or None),
                        data.sale_kind,
                        q_money(data.amount),
                        data.posting_date,
                        data.due_date,
                    ),
                )
                sale_id = cur.fetchone()["id"]
                write_audit_log(cur, tenant_id, user["user_id"], "sale_create", "sale", sale_id, data.model_dump())
                return {"id": sale_id}


@router.delete("/{sale_id}", dependencies=[Depends(require_action(Action.EDIT_DRAFTS))])
def delete_sale(sale_id: str, tenant_id: str = Depends(get_tenant_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM sales WHERE tenant_id = %s AND id = %s AND status = 'DRAFT' RETURNING id",
                    (tenant_id, sale_id),
                )
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="draft sale not found")
                write_audit_log(cur, tenant_id, user["user_id"], "sale_delete", "sale", sale_id)
                return {"ok": True}


@router.post("/{sale_id}/post", dependencies=[Depends(require_action(Action.POST_DOCUMENTS))])
def post_sale(sale_id: str, data: SalePostIn, tenant_id: str = Depends(get_tenant_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                existing = find_posting_group_by_key(cur, tenant_id, data.idempotency_key)
                if existing:
                    if str(existing["source_id"]) != str(sale_id) or existing["source_type"] != "SALE":
                        raise HTTPException(status_code=409, detail="idempotency_key already used for another document")
                    return {"id": sale_id, "posting_group_id": existing["id"], "replayed": True}

                cur.execute(
                    """
                    SELECT id, buyer_party_id, sale_kind, amount, posting_date, status
                    FROM sales
                    WHERE tenant_id = %s AND id = %s
                    FOR UPDATE
                    """,
                    (tenant_id, sale_id),
                )
                sale = cur.fetchone()
                if not sale:
                    raise HTTPException(status_code=404, detail="sale not found")
                if sale["status"] != "DRAFT":
                    raise HTTPException(status_code=409, detail="only DRAFT sales can be posted")

                posting_date = data.posting_date or sale["posting_date"]
                amount = q_money(sale["amount"])
                party_id = sale["buyer_party_id"]
                ar = get_account_id(cur, tenant_id, "AR")
                revenue = get_account_id(cur, tenant_id, "SALES_REVENUE")
                if sale["sale_kind"] == "CREDIT_NOTE":
                    lines = [(revenue, amount, 0, party_id), (ar, 0, amount, party_id)]
                else:
                    lines = [(ar, amount, 0, party_id), (revenue, 0, amount, party_id)]
                pg_id = create_posting_group(
                    cur,
                    tenant_id,
                    source_type="SALE",
                    source_id=sale_id,
                    posting_date=posting_date,
                    lines=lines,
                    idempotency_key=data.idempotency_key,
                    created_by=user["user_id"],
                )
                cur.execute(
                    """
                    UPDATE sales
                    SET status = 'POSTED', posting_group_id = %s, posting_date = %s
                    WHERE tenant_id = %s AND id = %s
                    """,
                    (pg_id, posting_date, tenant_id, sale_id),
                )
                write_audit_log(cur, tenant_id, user["user_id"], "sale_post", "sale", sale_id, {"posting_group_id": pg_id})
                return {"id": sale_id, "posting_group_id": pg_id, "replayed": False}

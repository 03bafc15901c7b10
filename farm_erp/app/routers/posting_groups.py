from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from datetime import date
from typing import Optional

from ..audit import write_audit_log
from ..db import get_conn, set_tenant_context
from ..deps import get_tenant_id, get_current_user, require_action
from ..posting import reverse_posting_group
from ..roles import Action

router = APIRouter(prefix="/posting-groups", tags=["posting-groups"])


class ReverseIn(BaseModel):
    posting_date: date
    reason: Optional[str] = None


@router.get("/{posting_group_id}", dependencies=[Depends(require_action(Action.VIEW_RECORDS))])
def get_posting_group(posting_group_id: str, tenant_id: str = Depends(get_tenant_id)):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, source_type, source_id, posting_date, idempotency_key,
                       reversal_of_posting_group_id, created_at
                FROM posting_groups
                WHERE tenant_id = %s AND id = %s
                """,
                (tenant_id, posting_group_id),
            )
            pg = cur.fetchone()
            if not pg:
                raise HTTPException(status_code=404, detail="posting group not found")
            cur.execute(
                """
                SELECT le.id, a.code AS account_code, a.name AS account_name, le.party_id,
                       le.debit_amount, le.credit_amount
                FROM ledger_entries le
                JOIN accounts a ON a.id = le.account_id
                WHERE le.tenant_id = %s AND le.posting_group_id = %s
                ORDER BY le.id
                """,
                (tenant_id, posting_group_id),
            )
            entries = cur.fetchall()
            cur.execute(
                "SELECT id FROM posting_groups WHERE tenant_id = %s AND reversal_of_posting_group_id = %s",
                (tenant_id, posting_group_id),
            )
            rev = cur.fetchone()
            return {
                "posting_group": pg,
                "ledger_entries": entries,
                "reversed_by_posting_group_id": rev["id"] if rev else None,
            }


@router.post("/{posting_group_id}/reverse", dependencies=[Depends(require_action(Action.REVERSE_POSTINGS))])
def reverse(posting_group_id: str, data: ReverseIn, tenant_id: str = Depends(get_tenant_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                res = reverse_posting_group(cur, tenant_id, posting_group_id, data.posting_date, created_by=user["user_id"])
                if res["source_type"] == "PAYMENT":
                    cur.execute(
                        """
                        UPDATE payments
                        SET status = 'REVERSED', reversal_posting_group_id = %s, updated_at = now()
                        WHERE tenant_id = %s AND id = %s
                        """,
                        (res["id"], tenant_id, res["source_id"]),
                    )
                    # Reversed receipts stop reducing what the sale still owes.
                    cur.execute(
                        """
                        UPDATE sale_payment_allocations
                        SET status = 'VOID', voided_at = now()
                        WHERE tenant_id = %s AND posting_group_id = %s AND status = 'ACTIVE'
                        """,
                        (tenant_id, posting_group_id),
                    )
                elif res["source_type"] == "SALE":
                    cur.execute(
                        """
                        SELECT 1 FROM sale_payment_allocations
                        WHERE tenant_id = %s AND sale_id = %s AND status = 'ACTIVE'
                        LIMIT 1
                        """,
                        (tenant_id, res["source_id"]),
                    )
                    if cur.fetchone():
                        raise HTTPException(status_code=409, detail="sale has active payment allocations; reverse the payments first")
                    cur.execute(
                        """
                        UPDATE sales
                        SET status = 'REVERSED', reversal_posting_group_id = %s
                        WHERE tenant_id = %s AND id = %s
                        """,
                        (res["id"], tenant_id, res["source_id"]),
                    )
                elif res["source_type"] == "PAYABLE":
                    cur.execute(
                        """
                        UPDATE payables
                        SET status = 'REVERSED', reversal_posting_group_id = %s
                        WHERE tenant_id = %s AND id = %s
                        """,
                        (res["id"], tenant_id, res["source_id"]),
                    )
                write_audit_log(
                    cur,
                    tenant_id,
                    user["user_id"],
                    "posting_group_reverse",
                    "posting_group",
                    posting_group_id,
                    {"reversal_posting_group_id": res["id"], "reason": data.reason},
                )
                return {"reversal_posting_group_id": res["id"]}

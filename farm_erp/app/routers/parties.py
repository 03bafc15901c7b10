from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import Optional

from ..audit import write_audit_log
from ..db import get_conn, set_tenant_context
from ..deps import get_tenant_id, get_current_user, require_action
from ..roles import Action

router = APIRouter(prefix="/parties", tags=["parties"])


class PartyIn(BaseModel):
    name: str


class PartyUpdate(BaseModel):
    name: Optional[str] = None


def _clean_name(raw: Optional[str]) -> str:
    name = (raw or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    return name


@router.get("", dependencies=[Depends(require_action(Action.VIEW_RECORDS))])
def list_parties(q: Optional[str] = None, tenant_id: str = Depends(get_tenant_id)):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.cursor() as cur:
            sql = "SELECT id, name, created_at FROM parties WHERE tenant_id = %s"
            params = [tenant_id]
            if q and q.strip():
                sql += " AND name ILIKE %s"
                params.append(f"%{q.strip()}%")
            sql += " ORDER BY name"
            cur.execute(sql, params)
            return {"parties": cur.fetchall()}


@router.post("", dependencies=[Depends(require_action(Action.MANAGE_MASTER_DATA))])
def create_party(data: PartyIn, tenant_id: str = Depends(get_tenant_id), user=Depends(get_current_user)):
    name = _clean_name(data.name)
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "INSERT INTO parties (id, tenant_id, name) VALUES (gen_random_uuid(), %s, %s) RETURNING id",
                    (tenant_id, name),
                )
                party_id = cur.fetchone()["id"]
                write_audit_log(cur, tenant_id, user["user_id"], "party_create", "party", party_id, {"name": name})
                return {"id": party_id}


@router.get("/{party_id}", dependencies=[Depends(require_action(Action.VIEW_RECORDS))])
def get_party(party_id: str, tenant_id: str = Depends(get_tenant_id)):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.cursor() as cur:
            cur.execute(
                "SELECT id, name, created_at FROM parties WHERE tenant_id = %s AND id = %s",
                (tenant_id, party_id),
            )
            party = cur.fetchone()
            if not party:
                raise HTTPException(status_code=404, detail="party not found")
            # Receivable balance from the ledger, not from document totals.
            cur.execute(
                """
                SELECT COALESCE(SUM(le.debit_amount - le.credit_amount), 0) AS receivable
                FROM ledger_entries le
                JOIN accounts a ON a.id = le.account_id
                WHERE le.tenant_id = %s AND le.party_id = %s AND a.code = 'AR'
                """,
                (tenant_id, party_id),
            )
            party["receivable_balance"] = cur.fetchone()["receivable"]
            return {"party": party}


@router.patch("/{party_id}", dependencies=[Depends(require_action(Action.MANAGE_MASTER_DATA))])
def update_party(party_id: str, data: PartyUpdate, tenant_id: str = Depends(get_tenant_id), user=Depends(get_current_user)):
    if data.name is None:
        return {"ok": True}
    name = _clean_name(data.name)
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE parties SET name = %s WHERE tenant_id = %s AND id = %s RETURNING id",
                    (name, tenant_id, party_id),
                )
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="party not found")
                write_audit_log(cur, tenant_id, user["user_id"], "party_update", "party", party_id, {"name": name})
                return {"ok": True}

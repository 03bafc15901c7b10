from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
from psycopg import errors as pg_errors

from ..config import settings
from ..db import get_admin_conn
from ..logs import json_log
from ..posting import SYSTEM_ACCOUNTS

router = APIRouter(prefix="/dev", tags=["dev"])


class DevTenantIn(BaseModel):
    name: str


def _require_dev_tools():
    if not settings.dev_tools_enabled:
        # Act like it doesn't exist outside local/dev to avoid accidental exposure.
        raise HTTPException(status_code=404, detail="not found")


def seed_system_accounts(cur, tenant_id) -> int:
    created = 0
    for code, name, acc_type in SYSTEM_ACCOUNTS:
        cur.execute(
            """
            INSERT INTO accounts (id, tenant_id, code, name, type)
            VALUES (gen_random_uuid(), %s, %s, %s, %s)
            ON CONFLICT (tenant_id, code) DO NOTHING
            """,
            (tenant_id, code, name, acc_type),
        )
        created += cur.rowcount
    return created


@router.get("/tenants")
def list_dev_tenants():
    _require_dev_tools()
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT id, name, status, created_at FROM tenants ORDER BY created_at DESC")
            return {"tenants": cur.fetchall()}


@router.post("/tenants", status_code=201)
def create_dev_tenant(data: DevTenantIn):
    _require_dev_tools()
    name = (data.name or "").strip()
    if len(name) < 2 or len(name) > 100:
        raise HTTPException(status_code=400, detail="name must be 2-100 characters")
    with get_admin_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO tenants (id, name, status)
                    VALUES (gen_random_uuid(), %s, 'ACTIVE')
                    RETURNING id, name, status, created_at
                    """,
                    (name,),
                )
                tenant = cur.fetchone()
                # Accounts must exist or the whole create rolls back.
                seed_system_accounts(cur, tenant["id"])
    json_log("info", "dev.tenant_created", tenant_id=str(tenant["id"]))
    return {"tenant": tenant}


@router.delete("/tenants/{tenant_id}")
def delete_dev_tenant(tenant_id: str):
    _require_dev_tools()
    with get_admin_conn() as conn:
        try:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute("DELETE FROM tenants WHERE id = %s RETURNING id", (tenant_id,))
                    if not cur.fetchone():
                        raise HTTPException(status_code=404, detail="tenant not found")
        except pg_errors.ForeignKeyViolation:
            raise HTTPException(status_code=409, detail="cannot delete tenant: it has linked data")
    return {"ok": True}


@router.post("/tenants/{tenant_id}/bootstrap-accounts")
def bootstrap_accounts(tenant_id: str):
    _require_dev_tools()
    with get_admin_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM tenants WHERE id = %s", (tenant_id,))
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="tenant not found")
                created = seed_system_accounts(cur, tenant_id)
    return {"ok": True, "created": created, "codes": [c for c, _, _ in SYSTEM_ACCOUNTS]}

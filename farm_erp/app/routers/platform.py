from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import Literal, Optional

from ..audit import write_audit_log
from ..db import get_admin_conn
from ..deps import get_session, require_platform_action
from ..logs import json_log
from ..roles import Action

router = APIRouter(prefix="/platform", tags=["platform"])

TenantStatus = Literal["ACTIVE", "SUSPENDED", "ARCHIVED"]


class TenantIn(BaseModel):
    name: str


class TenantUpdate(BaseModel):
    name: Optional[str] = None
    status: Optional[TenantStatus] = None


class ImpersonationStartIn(BaseModel):
    tenant_id: str


@router.get("/tenants", dependencies=[Depends(require_platform_action(Action.MANAGE_TENANTS))])
def list_tenants(status: Optional[str] = None):
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            sql = "SELECT id, name, status, created_at, updated_at FROM tenants"
            params = []
            if status:
                sql += " WHERE status = %s"
                params.append(status.strip().upper())
            sql += " ORDER BY created_at DESC"
            cur.execute(sql, params)
            return {"tenants": cur.fetchall()}


@router.post("/tenants", dependencies=[Depends(require_platform_action(Action.MANAGE_TENANTS))])
def create_tenant(data: TenantIn, session=Depends(get_session)):
    name = (data.name or "").strip()
    if len(name) < 2:
        raise HTTPException(status_code=400, detail="name must be at least 2 characters")
    with get_admin_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "INSERT INTO tenants (id, name, status) VALUES (gen_random_uuid(), %s, 'ACTIVE') RETURNING id",
                    (name,),
                )
                tenant_id = cur.fetchone()["id"]
                write_audit_log(cur, tenant_id, session["user_id"], "tenant_create", "tenant", tenant_id, {"name": name})
                return {"id": tenant_id}


@router.patch("/tenants/{tenant_id}", dependencies=[Depends(require_platform_action(Action.MANAGE_TENANTS))])
def update_tenant(tenant_id: str, data: TenantUpdate, session=Depends(get_session)):
    patch = data.model_dump(exclude_none=True)
    if not patch:
        return {"ok": True}
    fields = []
    params = []
    for k, v in patch.items():
        fields.append(f"{k} = %s")
        params.append(v)
    params.append(tenant_id)
    with get_admin_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    f"UPDATE tenants SET {', '.join(fields)}, updated_at = now() WHERE id = %s RETURNING id",
                    params,
                )
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="tenant not found")
                write_audit_log(cur, tenant_id, session["user_id"], "tenant_update", "tenant", tenant_id, patch)
                return {"ok": True}


@router.post("/impersonation/start", dependencies=[Depends(require_platform_action(Action.IMPERSONATE))])
def start_impersonation(data: ImpersonationStartIn, session=Depends(get_session)):
    with get_admin_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, name, status FROM tenants WHERE id = %s", (data.tenant_id,))
                tenant = cur.fetchone()
                if not tenant:
                    raise HTTPException(status_code=404, detail="tenant not found")
                cur.execute(
                    "UPDATE auth_sessions SET impersonated_tenant_id = %s WHERE id = %s",
                    (data.tenant_id, session["session_id"]),
                )
                write_audit_log(cur, data.tenant_id, session["user_id"], "impersonation_start", "tenant", data.tenant_id)
    json_log("info", "platform.impersonation_start", user_id=str(session["user_id"]), tenant_id=data.tenant_id)
    return {"impersonating": True, "target_tenant_id": data.tenant_id, "target_tenant_name": tenant["name"]}


@router.post("/impersonation/stop", dependencies=[Depends(require_platform_action(Action.IMPERSONATE))])
def stop_impersonation(session=Depends(get_session)):
    target = session.get("impersonated_tenant_id")
    with get_admin_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE auth_sessions SET impersonated_tenant_id = NULL WHERE id = %s",
                    (session["session_id"],),
                )
                if target:
                    write_audit_log(cur, target, session["user_id"], "impersonation_stop", "tenant", target)
    json_log("info", "platform.impersonation_stop", user_id=str(session["user_id"]), tenant_id=str(target or ""))
    return {"impersonating": False}


@router.get("/impersonation", dependencies=[Depends(require_platform_action(Action.IMPERSONATE))])
def impersonation_status(session=Depends(get_session)):
    target = session.get("impersonated_tenant_id")
    return {"impersonating": bool(target), "target_tenant_id": str(target) if target else None}

from fastapi import Header, HTTPException, Depends, Cookie
from .db import get_conn, get_admin_conn, set_tenant_context
from .roles import Action, Role, can
from .security import hash_session_token
from datetime import datetime, timezone
from typing import Optional


SESSION_COOKIE_NAME = "farm_erp_session"


def _extract_session_token(authorization: Optional[str], cookie_token: Optional[str]) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1]
    if cookie_token:
        return cookie_token
    raise HTTPException(status_code=401, detail="missing token")


def get_session(
    authorization: Optional[str] = Header(None),
    cookie_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
):
    token = _extract_session_token(authorization, cookie_token)
    # Sessions are cross-tenant; look them up with the admin role.
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id AS session_id, s.user_id, u.email, u.is_platform_admin,
                       s.expires_at, s.is_active, s.active_tenant_id, s.impersonated_tenant_id
                FROM auth_sessions s
                JOIN users u ON u.id = s.user_id
                WHERE s.token = %s AND u.is_active = true
                """,
                (hash_session_token(token),),
            )
            row = cur.fetchone()
            now = datetime.now(timezone.utc)
            if not row or not row["is_active"] or row["expires_at"] < now:
                raise HTTPException(status_code=401, detail="invalid token")
            return {
                "session_id": row["session_id"],
                "user_id": row["user_id"],
                "email": row["email"],
                "is_platform_admin": bool(row["is_platform_admin"]),
                "active_tenant_id": row["active_tenant_id"],
                "impersonated_tenant_id": row["impersonated_tenant_id"],
                "token": token,
            }


def get_current_user(session=Depends(get_session)):
    return {"user_id": session["user_id"], "email": session["email"]}


def get_tenant_id(
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-Id"),
    session=Depends(get_session),
) -> str:
    # While impersonating, every request is pinned to the impersonated tenant.
    if session.get("impersonated_tenant_id"):
        return str(session["impersonated_tenant_id"])
    if x_tenant_id:
        return x_tenant_id
    if session.get("active_tenant_id"):
        return str(session["active_tenant_id"])
    raise HTTPException(status_code=400, detail="missing tenant id")


def resolve_role(cur, session: dict, tenant_id: str) -> Optional[Role]:
    # A platform admin impersonating a tenant acts as that tenant's admin.
    if session.get("is_platform_admin") and str(session.get("impersonated_tenant_id") or "") == str(tenant_id):
        return Role.TENANT_ADMIN
    cur.execute(
        """
        SELECT role
        FROM tenant_users
        WHERE user_id = %s AND tenant_id = %s
        """,
        (session["user_id"], tenant_id),
    )
    row = cur.fetchone()
    return Role(row["role"]) if row else None


def get_role(tenant_id: str = Depends(get_tenant_id), session=Depends(get_session)) -> Role:
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.cursor() as cur:
            role = resolve_role(cur, session, tenant_id)
    if role is None:
        raise HTTPException(status_code=403, detail="no tenant access")
    return role


def require_tenant_access(role: Role = Depends(get_role)):
    return True


def require_action(action: Action):
    def _dep(role: Role = Depends(get_role)):
        if not can(role, action):
            raise HTTPException(status_code=403, detail="permission denied")
        return True
    return _dep


def require_platform_action(action: Action):
    def _dep(session=Depends(get_session)):
        role = Role.PLATFORM_ADMIN if session.get("is_platform_admin") else None
        if not can(role, action):
            raise HTTPException(status_code=403, detail="permission denied")
        return True
    return _dep

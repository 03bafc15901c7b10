from fastapi import APIRouter, HTTPException, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from ..config import settings
from ..db import get_admin_conn
from ..deps import get_session, resolve_role, SESSION_COOKIE_NAME
from ..logs import json_log
from ..roles import Role, allowed_actions
from ..security import SESSION_DAYS, hash_password, needs_rehash, new_session, verify_password

router = APIRouter(prefix="/auth", tags=["auth"])


class LoginIn(BaseModel):
    email: str
    password: str


class SelectTenantIn(BaseModel):
    tenant_id: str


def _memberships(cur, user_id) -> list[dict]:
    cur.execute(
        """
        SELECT tu.tenant_id, t.name AS tenant_name, tu.role
        FROM tenant_users tu
        JOIN tenants t ON t.id = tu.tenant_id
        WHERE tu.user_id = %s AND t.status = 'ACTIVE'
        ORDER BY t.name, tu.tenant_id
        """,
        (user_id,),
    )
    return [
        {"tenant_id": str(r["tenant_id"]), "tenant_name": r["tenant_name"], "role": r["role"]}
        for r in cur.fetchall()
    ]


def _session_cookie(resp: JSONResponse, token: str):
    secure = settings.env not in {"local", "dev"}
    resp.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=SESSION_DAYS * 24 * 60 * 60,
        path="/",
    )


@router.post("/login")
def login(data: LoginIn):
    # Memberships span tenants, so auth runs on the admin connection.
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, email, hashed_password, is_active, is_platform_admin
                FROM users
                WHERE email = %s
                """,
                (data.email.strip().lower(),),
            )
            user = cur.fetchone()
            if not user or not user["is_active"]:
                raise HTTPException(status_code=401, detail="invalid credentials")
            if not verify_password(data.password, user["hashed_password"]):
                json_log("warning", "auth.login_failed", email=data.email)
                raise HTTPException(status_code=401, detail="invalid credentials")

            if needs_rehash(user["hashed_password"]):
                cur.execute(
                    "UPDATE users SET hashed_password = %s WHERE id = %s",
                    (hash_password(data.password), user["id"]),
                )

            tenants = _memberships(cur, user["id"])
            active_tenant_id = tenants[0]["tenant_id"] if tenants else None

            token, token_hash, expires = new_session()
            cur.execute(
                """
                INSERT INTO auth_sessions (id, user_id, token, expires_at, active_tenant_id)
                VALUES (gen_random_uuid(), %s, %s, %s, %s)
                """,
                (user["id"], token_hash, expires, active_tenant_id),
            )

            resp = JSONResponse(
                {
                    "token": token,
                    "user_id": str(user["id"]),
                    "email": user["email"],
                    "is_platform_admin": bool(user["is_platform_admin"]),
                    "tenants": tenants,
                    "active_tenant_id": active_tenant_id,
                }
            )
            _session_cookie(resp, token)
            return resp


@router.post("/logout")
def logout(session=Depends(get_session)):
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "UPDATE auth_sessions SET is_active = false WHERE id = %s",
                (session["session_id"],),
            )
    resp = JSONResponse({"ok": True})
    resp.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return resp


@router.post("/select-tenant")
def select_tenant(data: SelectTenantIn, session=Depends(get_session)):
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            if resolve_role(cur, session, data.tenant_id) is None:
                raise HTTPException(status_code=403, detail="no tenant access")
            cur.execute(
                "UPDATE auth_sessions SET active_tenant_id = %s WHERE id = %s",
                (data.tenant_id, session["session_id"]),
            )
            return {"ok": True, "active_tenant_id": data.tenant_id}


@router.get("/me")
def me(session=Depends(get_session)):
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            tenants = _memberships(cur, session["user_id"])
            tenant_id = session.get("impersonated_tenant_id") or session.get("active_tenant_id")
            role = resolve_role(cur, session, str(tenant_id)) if tenant_id else None
            if role is None and session["is_platform_admin"]:
                role = Role.PLATFORM_ADMIN
            return {
                "user_id": str(session["user_id"]),
                "email": session["email"],
                "is_platform_admin": session["is_platform_admin"],
                "tenants": tenants,
                "active_tenant_id": str(session["active_tenant_id"]) if session.get("active_tenant_id") else None,
                "impersonated_tenant_id": (
                    str(session["impersonated_tenant_id"]) if session.get("impersonated_tenant_id") else None
                ),
                "role": role.value if role else None,
                "actions": sorted(a.value for a in allowed_actions(role)),
            }

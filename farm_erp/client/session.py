"""
Explicit session context for API-calling code.

One SessionContext is created when the client starts and handed to the ApiClient
and the views that need it. Login, impersonation and logout mutate it in place;
nothing is kept at module level.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from ..app.roles import Action, Role, allowed_actions, can, parse_role

# Routes that act across tenants and must not carry a tenant header.
_UNSCOPED_PREFIXES = ("/auth/", "/platform/", "/dev/")


@dataclass
class TenantMembership:
    tenant_id: str
    tenant_name: Optional[str] = None
    role: Optional[Role] = None


@dataclass
class SessionContext:
    token: Optional[str] = None
    user_id: Optional[str] = None
    email: Optional[str] = None
    is_platform_admin: bool = False
    memberships: list[TenantMembership] = field(default_factory=list)
    active_tenant_id: Optional[str] = None
    impersonated_tenant_id: Optional[str] = None
    impersonated_tenant_name: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.token)

    @property
    def is_impersonating(self) -> bool:
        return bool(self.impersonated_tenant_id)

    @property
    def tenant_id(self) -> Optional[str]:
        return self.impersonated_tenant_id or self.active_tenant_id

    @property
    def role(self) -> Optional[Role]:
        if self.is_impersonating:
            # Platform admins act as the tenant's admin while impersonating.
            return Role.TENANT_ADMIN
        for m in self.memberships:
            if m.tenant_id == self.active_tenant_id:
                return m.role
        if self.is_platform_admin:
            return Role.PLATFORM_ADMIN
        return None

    def can(self, action: Action) -> bool:
        if action in (Action.MANAGE_TENANTS, Action.IMPERSONATE):
            return self.is_platform_admin and can(Role.PLATFORM_ADMIN, action)
        return can(self.role, action)

    def actions(self) -> frozenset[Action]:
        out = set(allowed_actions(self.role))
        if self.is_platform_admin:
            out |= allowed_actions(Role.PLATFORM_ADMIN)
        return frozenset(out)

    def login(self, payload: dict) -> None:
        """Apply a /auth/login response."""
        token = str(payload.get("token") or "").strip()
        if not token:
            raise ValueError("login response has no token")
        self.clear()
        self.token = token
        self.user_id = str(payload.get("user_id") or "") or None
        self.email = payload.get("email")
        self.is_platform_admin = bool(payload.get("is_platform_admin"))
        self.memberships = [
            TenantMembership(
                tenant_id=str(t["tenant_id"]),
                tenant_name=t.get("tenant_name"),
                role=parse_role(t.get("role")),
            )
            for t in (payload.get("tenants") or [])
        ]
        active = payload.get("active_tenant_id")
        self.active_tenant_id = str(active) if active else None

    def select_tenant(self, tenant_id: str) -> None:
        if not any(m.tenant_id == str(tenant_id) for m in self.memberships):
            raise ValueError(f"no membership for tenant {tenant_id}")
        self.active_tenant_id = str(tenant_id)

    def impersonate(self, tenant_id: str, tenant_name: Optional[str] = None) -> None:
        if not self.is_platform_admin:
            raise PermissionError("only platform admins can impersonate")
        self.impersonated_tenant_id = str(tenant_id)
        self.impersonated_tenant_name = tenant_name

    def stop_impersonation(self) -> None:
        self.impersonated_tenant_id = None
        self.impersonated_tenant_name = None

    def clear(self) -> None:
        self.token = None
        self.user_id = None
        self.email = None
        self.is_platform_admin = False
        self.memberships = []
        self.active_tenant_id = None
        self.stop_impersonation()

    logout = clear

    def headers(self, path: str = "") -> dict[str, str]:
        out: dict[str, str] = {}
        if self.token:
            out["Authorization"] = f"Bearer {self.token}"
        if self.tenant_id and not str(path).startswith(_UNSCOPED_PREFIXES):
            out["X-Tenant-Id"] = self.tenant_id
        return out

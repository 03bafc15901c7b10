from __future__ import annotations

from enum import Enum
from typing import Optional


class Role(str, Enum):
    TENANT_ADMIN = "tenant_admin"
    ACCOUNTANT = "accountant"
    OPERATOR = "operator"
    PLATFORM_ADMIN = "platform_admin"


class Action(str, Enum):
    VIEW_RECORDS = "records:read"
    EDIT_DRAFTS = "drafts:write"              # create/edit/delete DRAFT payments, sales, payables
    MANAGE_MASTER_DATA = "master_data:write"  # parties
    POST_DOCUMENTS = "documents:post"
    REVERSE_POSTINGS = "postings:reverse"
    RECONCILE_BANK = "bank:reconcile"         # create, clear/unclear, statement lines, match
    FINALIZE_RECONCILIATION = "bank:finalize"
    VIEW_REPORTS = "reports:read"
    MANAGE_TENANT = "tenant:manage"           # users, module toggles, farm profile
    MANAGE_TENANTS = "platform:tenants"
    IMPERSONATE = "platform:impersonate"


_TENANT_ROLES = frozenset({Role.TENANT_ADMIN, Role.ACCOUNTANT, Role.OPERATOR})
_BOOKKEEPERS = frozenset({Role.TENANT_ADMIN, Role.ACCOUNTANT})
_PLATFORM = frozenset({Role.PLATFORM_ADMIN})

POLICY: dict[Action, frozenset[Role]] = {
    Action.VIEW_RECORDS: _TENANT_ROLES,
    Action.EDIT_DRAFTS: _TENANT_ROLES,
    Action.MANAGE_MASTER_DATA: _BOOKKEEPERS,
    Action.POST_DOCUMENTS: _BOOKKEEPERS,
    Action.REVERSE_POSTINGS: _BOOKKEEPERS,
    Action.RECONCILE_BANK: _BOOKKEEPERS,
    Action.FINALIZE_RECONCILIATION: _BOOKKEEPERS,
    Action.VIEW_REPORTS: _TENANT_ROLES,
    Action.MANAGE_TENANT: frozenset({Role.TENANT_ADMIN}),
    Action.MANAGE_TENANTS: _PLATFORM,
    Action.IMPERSONATE: _PLATFORM,
}


def parse_role(raw) -> Optional[Role]:
    if raw is None:
        return None
    if isinstance(raw, Role):
        return raw
    try:
        return Role(str(raw).strip().lower())
    except ValueError:
        return None


def can(role, action: Action) -> bool:
    r = parse_role(role)
    if r is None:
        return False
    return r in POLICY.get(Action(action), frozenset())


def allowed_actions(role) -> frozenset[Action]:
    r = parse_role(role)
    if r is None:
        return frozenset()
    return frozenset(a for a, roles in POLICY.items() if r in roles)

import pytest
from fastapi import HTTPException

from farm_erp.app import deps
from farm_erp.app.roles import Action, Role


def _session(active=None, impersonated=None, platform_admin=False):
    return {
        "session_id": "s1",
        "user_id": "u1",
        "email": "a@farm.test",
        "is_platform_admin": platform_admin,
        "active_tenant_id": active,
        "impersonated_tenant_id": impersonated,
        "token": "tok",
    }


def test_tenant_resolution_order():
    # impersonation > header > active tenant
    assert deps.get_tenant_id("t-header", _session(active="t-active", impersonated="t-imp")) == "t-imp"
    assert deps.get_tenant_id("t-header", _session(active="t-active")) == "t-header"
    assert deps.get_tenant_id(None, _session(active="t-active")) == "t-active"


def test_missing_tenant_is_rejected():
    with pytest.raises(HTTPException) as ei:
        deps.get_tenant_id(None, _session())
    assert ei.value.status_code == 400


class _RoleCursor:
    def __init__(self, row):
        self.row = row
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((sql, params))

    def fetchone(self):
        return self.row


def test_impersonating_admin_acts_as_tenant_admin():
    cur = _RoleCursor(None)
    session = _session(impersonated="t1", platform_admin=True)
    assert deps.resolve_role(cur, session, "t1") == Role.TENANT_ADMIN
    assert not cur.executed


def test_member_role_comes_from_tenant_users():
    cur = _RoleCursor({"role": "accountant"})
    assert deps.resolve_role(cur, _session(active="t1"), "t1") == Role.ACCOUNTANT
    assert cur.executed[0][1] == ("u1", "t1")
    assert deps.resolve_role(_RoleCursor(None), _session(active="t1"), "t1") is None


def test_require_action_checks_role_policy():
    dep = deps.require_action(Action.POST_DOCUMENTS)
    assert dep(role=Role.TENANT_ADMIN) is True
    with pytest.raises(HTTPException) as ei:
        dep(role=Role.OPERATOR)
    assert ei.value.status_code == 403

from farm_erp.app.roles import POLICY, Action, Role, allowed_actions, can, parse_role


def test_every_action_has_a_policy_entry():
    assert set(POLICY) == set(Action)


def test_operator_edits_drafts_but_cannot_post():
    assert can(Role.OPERATOR, Action.EDIT_DRAFTS)
    assert not can(Role.OPERATOR, Action.POST_DOCUMENTS)
    assert not can(Role.OPERATOR, Action.RECONCILE_BANK)


def test_bookkeepers_post_and_reconcile():
    for role in (Role.TENANT_ADMIN, Role.ACCOUNTANT):
        assert can(role, Action.POST_DOCUMENTS)
        assert can(role, Action.REVERSE_POSTINGS)
        assert can(role, Action.FINALIZE_RECONCILIATION)


def test_platform_admin_is_not_a_tenant_role():
    assert can(Role.PLATFORM_ADMIN, Action.IMPERSONATE)
    assert not can(Role.PLATFORM_ADMIN, Action.VIEW_RECORDS)
    assert not can(Role.TENANT_ADMIN, Action.MANAGE_TENANTS)


def test_role_strings_are_parsed():
    assert parse_role(" Accountant ") is Role.ACCOUNTANT
    assert parse_role("cashier") is None
    assert can("accountant", Action.POST_DOCUMENTS)
    assert not can(None, Action.VIEW_RECORDS)
    assert not can("cashier", Action.VIEW_RECORDS)


def test_allowed_actions():
    assert allowed_actions(Role.OPERATOR) == frozenset(
        {Action.VIEW_RECORDS, Action.EDIT_DRAFTS, Action.VIEW_REPORTS}
    )
    assert allowed_actions(None) == frozenset()

import pytest

from homeops.service.errors import ValidationError
from homeops.service.roles import Principal


def _principal(user):
    return Principal(id=user.id, email=user.email, role=user.role)


@pytest.fixture
def network(runtime, make_user):
    """An agent with one account holding two homeowners, plus an unrelated account."""
    agent, _ = make_user("agent@x.io", role="agent")
    agent_account = runtime.tenants.accounts_for_user(agent.id)[0]
    home_a, _ = make_user("a@x.io")
    home_b, _ = make_user("b@x.io")
    runtime.tenants.add_account_member(agent_account.id, home_a.id)
    runtime.tenants.add_account_member(agent_account.id, home_b.id)

    outsider, _ = make_user("outsider@x.io")
    outsider_account = runtime.tenants.accounts_for_user(outsider.id)[0]

    inside = runtime.store.create_contact(agent_account.id, name="In", email="in@x.io")
    runtime.store.create_contact(agent_account.id, name="Dup", email="A@x.io")
    foreign = runtime.store.create_contact(outsider_account.id, name="Out", email="out@x.io")
    admin, _ = make_user("root@x.io", role="super_admin")
    return {
        "agent": _principal(agent),
        "admin": _principal(admin),
        "homeowner": _principal(home_a),
        "inside": inside,
        "foreign": foreign,
    }


class TestAgentScoping:
    def test_all_contacts_excludes_other_accounts(self, runtime, network):
        result = runtime.recipients.resolve(network["agent"], "all_contacts")
        assert "out@x.io" not in result.emails
        assert "in@x.io" in result.emails

    def test_specific_contacts_excludes_other_accounts(self, runtime, network):
        ids = [network["inside"].id, network["foreign"].id]
        result = runtime.recipients.resolve(network["agent"], "specific_contacts", ids)
        assert [c.id for c in result.contacts] == [network["inside"].id]

    def test_all_homeowners_is_limited_to_agent_accounts(self, runtime, network):
        result = runtime.recipients.resolve(network["agent"], "all_homeowners")
        assert sorted(u.email for u in result.users) == ["a@x.io", "b@x.io"]

    def test_all_users_is_empty_for_agents(self, runtime, network):
        assert runtime.recipients.estimate(network["agent"], "all_users") == 0


class TestAdminScope:
    def test_all_homeowners_is_global(self, runtime, network):
        # a, b and outsider are homeowners; agent and root are not
        assert runtime.recipients.estimate(network["admin"], "all_homeowners") == 3

    def test_all_contacts_is_global(self, runtime, network):
        emails = runtime.recipients.resolve(network["admin"], "all_contacts").emails
        assert "out@x.io" in emails

    def test_inactive_users_are_skipped(self, runtime, network):
        runtime.auth.create_provisioned_user("pending@x.io")
        emails = runtime.recipients.resolve(network["admin"], "all_users").emails
        assert "pending@x.io" not in emails

    def test_specific_users_skips_inactive(self, runtime, network):
        pending, _, _ = runtime.auth.create_provisioned_user("pending@x.io")
        ids = [network["homeowner"].id, pending.id]
        result = runtime.recipients.resolve(network["admin"], "specific_users", ids)
        assert result.emails == ["a@x.io"]


def test_emails_are_deduplicated_across_contacts_and_users(runtime, network):
    result = runtime.recipients.resolve(network["agent"], "all_contacts")
    assert len(result.emails) == len(set(result.emails))
    homeowners = runtime.recipients.resolve(network["agent"], "all_homeowners")
    assert homeowners.count == 2


def test_homeowners_reach_nobody(runtime, network):
    assert runtime.recipients.estimate(network["homeowner"], "all_contacts") == 0


def test_unknown_mode_is_rejected(runtime, network):
    with pytest.raises(ValidationError):
        runtime.recipients.resolve(network["admin"], "everyone")

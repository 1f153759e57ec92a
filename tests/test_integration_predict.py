"""AI usage metering and recipient resolution over the HTTP API."""

import json
from decimal import Decimal

import pytest

from homeops.service.llm import LLMResult


class FakeLLM:
    """Stands in for the chat-completions client; every call costs $0.10 on gpt-4o."""

    is_configured = True

    def __init__(self):
        self.calls = []

    async def complete(self, messages, *, model=None, json_mode=False):
        self.calls.append({"messages": messages, "model": model, "json_mode": json_mode})
        return LLMResult(
            content=json.dumps({"yearBuilt": 1987, "bedrooms": 3}),
            model="gpt-4o",
            prompt_tokens=40_000,
            completion_tokens=0,
        )


@pytest.fixture
def fake_llm(runtime):
    llm = FakeLLM()
    runtime.llm = llm
    return llm


@pytest.fixture
def spender(runtime, make_user):
    user, headers = make_user("spender@x.io")
    account = runtime.tenants.accounts_for_user(user.id)[0]
    return user, headers, account


class TestBudgetFlow:
    def test_one_request_may_land_over_the_cap(self, client, runtime, fake_llm, spender):
        user, headers, account = spender
        for amount in ("4.00", "0.98"):
            runtime.usage.log_event(
                account.id, user_id=user.id, category="seed", model="gpt-4o",
                total_cost=Decimal(amount),
            )

        usage = client.get("/predict/usage", headers=headers).json()
        assert usage == {
            "allowed": True,
            "spent": 4.98,
            "remaining": 0.02,
            "cap": 5.0,
            "accountId": account.id,
        }

        admitted = client.post(
            "/predict/property-details", headers=headers, json={"address": "1 Main St"}
        )
        assert admitted.status_code == 200
        body = admitted.json()
        assert body["result"] == {"yearBuilt": 1987, "bedrooms": 3}
        assert body["usage"]["totalCost"] == 0.1
        assert body["usage"]["spent"] == 5.08
        assert body["usage"]["allowed"] is False

        rejected = client.post(
            "/predict/property-details", headers=headers, json={"address": "1 Main St"}
        )
        assert rejected.status_code == 429
        error = rejected.json()["error"]
        assert error["code"] == "BUDGET_EXCEEDED"
        assert error["spent"] == 5.08
        assert error["cap"] == 5.0
        assert len(fake_llm.calls) == 1

    def test_spending_exactly_the_cap_blocks_the_next_call(
        self, client, runtime, fake_llm, spender
    ):
        user, headers, account = spender
        runtime.usage.log_event(
            account.id, user_id=user.id, category="seed", model="gpt-4o",
            total_cost=Decimal("5.00"),
        )
        usage = client.get("/predict/usage", headers=headers).json()
        assert usage["allowed"] is False and usage["remaining"] == 0.0

        response = client.post(
            "/predict/property-details", headers=headers, json={"address": "1 Main St"}
        )
        assert response.status_code == 429
        assert fake_llm.calls == []

    def test_calls_are_json_mode_and_logged(self, client, runtime, fake_llm, spender):
        _, headers, account = spender
        client.post("/predict/property-details", headers=headers, json={"city": "Austin"})
        assert fake_llm.calls[0]["json_mode"] is True
        assert "Austin" in fake_llm.calls[0]["messages"][-1]["content"]

        history = client.get("/predict/usage/history", headers=headers).json()
        assert history["accountId"] == account.id
        assert [e["category"] for e in history["events"]] == ["property_details"]
        assert history["events"][0]["totalCost"] == 0.1

    def test_property_address_fills_prompt(self, client, runtime, fake_llm, spender):
        user, headers, account = spender
        prop = runtime.tenants.create_property(account.id, user.id, address="7 Oak Ave", city="Waco")
        response = client.post(
            "/predict/property-details", headers=headers, json={"propertyId": prop.property_uid}
        )
        assert response.status_code == 200
        assert "7 Oak Ave" in fake_llm.calls[0]["messages"][-1]["content"]

    def test_foreign_property_is_forbidden(self, client, runtime, fake_llm, spender, make_user):
        other, _ = make_user("other@x.io")
        other_account = runtime.tenants.accounts_for_user(other.id)[0]
        prop = runtime.tenants.create_property(other_account.id, other.id)
        _, headers, _ = spender
        response = client.post(
            "/predict/property-details", headers=headers, json={"propertyId": prop.id}
        )
        assert response.status_code == 403
        assert fake_llm.calls == []

    def test_unconfigured_provider_is_503(self, client, runtime, spender, monkeypatch):
        monkeypatch.setattr(runtime.llm, "api_key", None)
        _, headers, _ = spender
        response = client.post("/predict/property-details", headers=headers, json={"zip": "78701"})
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "BAD_UPSTREAM"

    def test_x_account_id_selects_a_joined_account(self, client, runtime, spender, make_user):
        user, headers, _ = spender
        partner, _ = make_user("partner@x.io")
        shared = runtime.tenants.accounts_for_user(partner.id)[0]
        runtime.tenants.add_account_member(shared.id, user.id)
        usage = client.get(
            "/predict/usage", headers={**headers, "X-Account-Id": str(shared.id)}
        ).json()
        assert usage["accountId"] == shared.id


class TestRecipientEndpoints:
    @pytest.fixture
    def agent_network(self, runtime, make_user):
        agent, agent_headers = make_user("agent@x.io", role="agent")
        account = runtime.tenants.accounts_for_user(agent.id)[0]
        for email in ("h1@x.io", "h2@x.io"):
            homeowner, _ = make_user(email)
            runtime.tenants.add_account_member(account.id, homeowner.id)
        make_user("elsewhere@x.io")
        runtime.store.create_contact(account.id, name="Client", email="client@x.io")
        return agent_headers

    def test_estimates_by_role(self, client, admin, agent_network):
        _, admin_headers = admin
        everyone = client.post(
            "/resources/recipients/estimate",
            headers=admin_headers,
            json={"mode": "all_homeowners"},
        )
        assert everyone.json() == {"count": 3}

        scoped = client.post(
            "/resources/recipients/estimate",
            headers=agent_network,
            json={"mode": "all_homeowners"},
        )
        assert scoped.json() == {"count": 2}

        nobody = client.post(
            "/resources/recipients/estimate", headers=agent_network, json={"mode": "all_users"}
        )
        assert nobody.json() == {"count": 0}

    def test_resolve_returns_contacts_and_emails(self, client, agent_network):
        response = client.post(
            "/resources/recipients/resolve", headers=agent_network, json={"mode": "all_contacts"}
        )
        body = response.json()
        assert body["emails"] == ["client@x.io"]
        assert body["count"] == 1
        assert body["contacts"][0]["email"] == "client@x.io"

    def test_homeowner_is_forbidden(self, client, make_user):
        _, headers = make_user("plain@x.io")
        response = client.post(
            "/resources/recipients/estimate", headers=headers, json={"mode": "all_contacts"}
        )
        assert response.status_code == 403

    def test_unknown_mode(self, client, admin):
        _, admin_headers = admin
        response = client.post(
            "/resources/recipients/estimate", headers=admin_headers, json={"mode": "everyone"}
        )
        assert response.status_code == 400
        assert response.json()["error"]["fields"] == [{"field": "mode", "message": "invalid"}]

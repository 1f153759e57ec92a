"""Accounts, properties, systems and invitations over the HTTP API."""

import pytest

PROPERTY_UID = "01HZZZZZZZZZZZZZZZZZZZZZZA"


@pytest.fixture
def owned_property(runtime, make_user):
    """A homeowner with one property (fixed uid) holding a water heater system."""
    owner, headers = make_user("owner@x.io")
    account = runtime.tenants.accounts_for_user(owner.id)[0]
    prop = runtime.store.create_property(account.id, PROPERTY_UID, address="1 Main St")
    runtime.tenants.add_property_member(prop.id, owner.id, "owner")
    runtime.tenants.create_system(prop.id, "water_heater", name="Tank", created_by=owner.id)
    return owner, headers, account, prop


class TestInvitationScaffold:
    def test_accept_property_invitation_as_new_user(self, client, runtime, admin, owned_property):
        _, admin_headers = admin
        _, _, _, prop = owned_property
        created = client.post(
            "/invitations/property",
            headers=admin_headers,
            json={"inviteeEmail": "bob@x.io", "role": "editor", "propertyId": prop.id},
        )
        assert created.status_code == 201
        token = created.json()["rawToken"]
        invitation_id = created.json()["invitation"]["id"]
        assert "tokenHash" not in created.json()["invitation"]

        accepted = client.post(
            "/invitations/accept", json={"token": token, "password": "pw1234", "name": "Bob"}
        )
        assert accepted.status_code == 200
        assert accepted.json()["createdUser"] is True

        bob = runtime.identity.by_email("bob@x.io")
        assert bob.display_name == "Bob" and bob.is_active
        owned = [a for a in runtime.store.list_accounts() if a.owner_user_id == bob.id]
        assert len(owned) == 1
        members = runtime.store.list_account_members(owned[0].id)
        assert [(m.user_id, m.role) for m in members] == [(bob.id, "owner")]
        assert runtime.tenants.property_role(bob.id, prop.id) == "editor"
        subscription = runtime.store.list_subscriptions(owned[0].id)[0]
        assert runtime.store.get_product(subscription.product_id).name == "basic"
        assert runtime.store.get_invitation(invitation_id).status == "accepted"

        login = client.post("/auth/token", json={"email": "bob@x.io", "password": "pw1234"})
        assert login.status_code == 200

    def test_property_invitation_by_uid(self, client, owned_property):
        _, headers, _, _ = owned_property
        response = client.post(
            "/invitations/property",
            headers=headers,
            json={"inviteeEmail": "carl@x.io", "propertyId": PROPERTY_UID.lower()},
        )
        assert response.status_code == 201
        assert response.json()["invitation"]["intendedRole"] == "editor"

    def test_account_invitation_needs_membership(self, client, make_user, owned_property):
        _, _, account, _ = owned_property
        _, stranger_headers = make_user("stranger@x.io")
        response = client.post(
            "/invitations/account",
            headers=stranger_headers,
            json={"inviteeEmail": "x@x.io", "accountId": account.id},
        )
        assert response.status_code == 403

    def test_listing_and_decline(self, client, make_user, owned_property):
        _, headers, account, _ = owned_property
        _, invitee_headers = make_user("dina@x.io")
        created = client.post(
            "/invitations/account",
            headers=headers,
            json={"inviteeEmail": "dina@x.io", "accountId": account.id},
        )
        invitation_id = created.json()["invitation"]["id"]

        sent = client.get("/invitations/sent", headers=headers).json()["invitations"]
        assert [i["id"] for i in sent] == [invitation_id]
        pending = client.get(
            f"/invitations/account/{account.id}", headers=headers, params={"status": "pending"}
        ).json()["invitations"]
        assert len(pending) == 1
        assert "rawToken" not in pending[0]

        declined = client.post(f"/invitations/{invitation_id}/decline", headers=invitee_headers)
        assert declined.json()["invitation"]["status"] == "declined"
        again = client.post(f"/invitations/{invitation_id}/revoke", headers=headers)
        assert again.status_code == 409


class TestPropertyIdResolution:
    def test_non_member_gets_identical_403_for_id_and_uid(self, client, make_user, owned_property):
        _, _, _, prop = owned_property
        _, stranger_headers = make_user("stranger@x.io")
        by_uid = client.get(f"/systems/{PROPERTY_UID}", headers=stranger_headers)
        by_id = client.get(f"/systems/{prop.id}", headers=stranger_headers)
        missing = client.get("/systems/424242", headers=stranger_headers)
        assert by_uid.status_code == by_id.status_code == missing.status_code == 403
        assert by_uid.json() == by_id.json() == missing.json()

    def test_admin_sees_same_systems_either_way(self, client, admin, owned_property):
        _, admin_headers = admin
        _, _, _, prop = owned_property
        by_uid = client.get(f"/systems/{PROPERTY_UID}", headers=admin_headers)
        by_id = client.get(f"/systems/{prop.id}", headers=admin_headers)
        assert by_uid.status_code == by_id.status_code == 200
        assert by_uid.json() == by_id.json()
        assert by_id.json()["systems"][0]["systemType"] == "water_heater"

    def test_get_property_by_either_id(self, client, owned_property):
        _, headers, _, prop = owned_property
        by_uid = client.get(f"/properties/{PROPERTY_UID.lower()}", headers=headers).json()
        by_id = client.get(f"/properties/{prop.id}", headers=headers).json()
        assert by_uid == by_id
        assert by_id["property"]["propertyUid"] == PROPERTY_UID

    def test_anonymous_is_401(self, client, owned_property):
        assert client.get(f"/systems/{PROPERTY_UID}").status_code == 401


class TestPropertiesAndSystems:
    def test_create_property_and_list(self, client, runtime, make_user):
        user, headers = make_user("pat@x.io")
        account = runtime.tenants.accounts_for_user(user.id)[0]
        created = client.post(
            "/properties",
            headers=headers,
            json={"accountId": account.id, "address": "9 Elm", "state": "tx", "zip": "78701-1234"},
        )
        assert created.status_code == 201
        prop = created.json()["property"]
        assert len(prop["propertyUid"]) == 26
        assert prop["passportId"].startswith("TX-78701-")

        listed = client.get("/properties", headers=headers).json()["properties"]
        assert [p["id"] for p in listed] == [prop["id"]]

        members = client.get(f"/properties/{prop['id']}/users", headers=headers).json()
        assert members["members"] == [{"propertyId": prop["id"], "userId": user.id, "role": "owner"}]

    def test_property_limit_is_enforced(self, client, runtime, make_user):
        user, headers = make_user("pat@x.io")
        account = runtime.tenants.accounts_for_user(user.id)[0]
        limit = runtime.tenants.limits_for_account(account.id).max_properties
        for _ in range(limit):
            assert (
                client.post("/properties", headers=headers, json={"accountId": account.id}).status_code
                == 201
            )
        response = client.post("/properties", headers=headers, json={"accountId": account.id})
        assert response.status_code == 403

    def test_viewer_can_read_but_not_write_systems(self, client, runtime, make_user, owned_property):
        _, _, _, prop = owned_property
        viewer, viewer_headers = make_user("viv@x.io")
        runtime.tenants.add_property_member(prop.id, viewer.id, "viewer")
        assert client.get(f"/systems/{prop.id}", headers=viewer_headers).status_code == 200
        response = client.post(
            f"/systems/{prop.id}", headers=viewer_headers, json={"systemType": "hvac"}
        )
        assert response.status_code == 403

    def test_owner_adds_system(self, client, owned_property):
        _, headers, _, _ = owned_property
        response = client.post(
            f"/systems/{PROPERTY_UID}",
            headers=headers,
            json={"systemType": "hvac", "name": "Heat pump", "installedYear": 2019},
        )
        assert response.status_code == 201
        assert response.json()["system"]["installedYear"] == 2019
        systems = client.get(f"/systems/{PROPERTY_UID}", headers=headers).json()["systems"]
        assert [s["systemType"] for s in systems] == ["water_heater", "hvac"]

    def test_only_owner_deletes_property(self, client, runtime, make_user, owned_property):
        _, headers, _, prop = owned_property
        editor, editor_headers = make_user("ed@x.io")
        runtime.tenants.add_property_member(prop.id, editor.id, "editor")
        assert client.delete(f"/properties/{prop.id}", headers=editor_headers).status_code == 403
        assert client.delete(f"/properties/{prop.id}", headers=headers).json() == {"success": True}
        assert runtime.store.get_property(prop.id) is None


class TestAccounts:
    def test_member_management(self, client, runtime, make_user, owned_property):
        owner, headers, account, _ = owned_property
        friend, _ = make_user("friend@x.io")

        added = client.post(
            f"/accounts/{account.id}/users", headers=headers, json={"userId": friend.id}
        )
        assert added.status_code == 201
        assert added.json()["member"]["role"] == "member"

        members = client.get(f"/accounts/{account.id}/users", headers=headers).json()["members"]
        assert {m["user"]["email"] for m in members} == {"owner@x.io", "friend@x.io"}

        last_owner = client.delete(f"/accounts/{account.id}/users/{owner.id}", headers=headers)
        assert last_owner.status_code == 412
        assert last_owner.json()["error"]["code"] == "PRECONDITION_FAILED"

        removed = client.delete(f"/accounts/{account.id}/users/{friend.id}", headers=headers)
        assert removed.json() == {"success": True}

    def test_plain_member_cannot_manage_members(self, client, runtime, make_user, owned_property):
        owner, _, account, _ = owned_property
        member, member_headers = make_user("member@x.io")
        outsider, _ = make_user("outsider@x.io")
        runtime.tenants.add_account_member(account.id, member.id)

        grab = client.post(
            f"/accounts/{account.id}/users",
            headers=member_headers,
            json={"userId": outsider.id, "role": "owner"},
        )
        assert grab.status_code == 403
        evict = client.delete(f"/accounts/{account.id}/users/{owner.id}", headers=member_headers)
        assert evict.status_code == 403
        assert runtime.store.is_user_in_account(owner.id, account.id)
        assert not runtime.store.is_user_in_account(outsider.id, account.id)

        # members can still read the roster
        assert client.get(f"/accounts/{account.id}/users", headers=member_headers).status_code == 200

    def test_accounts_are_scoped_to_membership(self, client, make_user, admin, owned_property):
        _, headers, account, _ = owned_property
        _, stranger_headers = make_user("stranger@x.io")
        mine = client.get("/accounts", headers=headers).json()["accounts"]
        assert [a["id"] for a in mine] == [account.id]
        assert client.get(f"/accounts/{account.id}", headers=stranger_headers).status_code == 403

        _, admin_headers = admin
        everything = client.get("/accounts", headers=admin_headers).json()["accounts"]
        assert len(everything) == 3

    def test_admin_creates_account_for_user(self, client, make_user, admin):
        user, _ = make_user("client@x.io")
        _, admin_headers = admin
        response = client.post(
            "/accounts", headers=admin_headers, json={"name": "Client Co", "ownerUserId": user.id}
        )
        assert response.status_code == 201
        assert response.json()["account"]["url"] == "clientco"

    def test_account_url_slugs_are_unique(self, runtime, make_user):
        user, _ = make_user("slug@x.io")
        first = runtime.tenants.create_account("Acme Inc", user.id)
        second = runtime.tenants.create_account("Acme, Inc.", user.id)
        assert (first.url, second.url) == ("acmeinc", "acmeinc1")


class TestUsers:
    def test_profile_update_is_self_only(self, client, make_user):
        user, headers = make_user("me@x.io")
        other, _ = make_user("you@x.io")
        ok = client.patch(f"/users/{user.id}", headers=headers, json={"displayName": "Me"})
        assert ok.json()["user"]["displayName"] == "Me"
        assert client.patch(
            f"/users/{other.id}", headers=headers, json={"displayName": "Hacked"}
        ).status_code == 403

    def test_role_cannot_be_patched(self, client, make_user):
        user, headers = make_user("me@x.io")
        response = client.patch(f"/users/{user.id}", headers=headers, json={"role": "admin"})
        assert response.status_code == 403

    def test_view_requires_shared_account(self, client, runtime, make_user, owned_property):
        owner, headers, account, _ = owned_property
        friend, _ = make_user("friend@x.io")
        stranger, _ = make_user("stranger@x.io")
        runtime.tenants.add_account_member(account.id, friend.id)
        assert client.get(f"/users/{friend.id}", headers=headers).status_code == 200
        assert client.get(f"/users/{stranger.id}", headers=headers).status_code == 403

    def test_change_password(self, client, make_user):
        user, headers = make_user("me@x.io")
        wrong = client.post(
            f"/users/{user.id}/password",
            headers=headers,
            json={"currentPassword": "nope-nope", "newPassword": "brand-new-pw"},
        )
        assert wrong.status_code == 401
        ok = client.post(
            f"/users/{user.id}/password",
            headers=headers,
            json={"currentPassword": "hunter22", "newPassword": "brand-new-pw"},
        )
        assert ok.json() == {"success": True}
        login = client.post("/auth/token", json={"email": "me@x.io", "password": "brand-new-pw"})
        assert login.status_code == 200

    def test_only_super_admin_grants_admin(self, client, make_user):
        target, _ = make_user("target@x.io")
        _, admin_headers = make_user("plainadmin@x.io", role="admin")
        response = client.post(
            f"/users/{target.id}/role", headers=admin_headers, json={"role": "admin"}
        )
        assert response.status_code == 403
        response = client.post(
            f"/users/{target.id}/role", headers=admin_headers, json={"role": "agent"}
        )
        assert response.json()["user"]["role"] == "agent"

    def test_only_super_admin_changes_super_admin_role(self, client, make_user, admin):
        root, root_headers = admin
        other_root, _ = make_user("root2@x.io", role="super_admin")
        _, admin_headers = make_user("plainadmin@x.io", role="admin")

        demote = client.post(
            f"/users/{root.id}/role", headers=admin_headers, json={"role": "homeowner"}
        )
        assert demote.status_code == 403
        response = client.post(
            f"/users/{other_root.id}/role", headers=root_headers, json={"role": "homeowner"}
        )
        assert response.json()["user"]["role"] == "homeowner"

    def test_delete_user_requires_super_admin_and_no_owned_accounts(
        self, client, runtime, make_user, admin
    ):
        _, admin_headers = admin
        owner, _ = make_user("owner2@x.io")
        loose = runtime.identity.register("loose@x.io", "hunter22")
        _, plain_admin_headers = make_user("plainadmin@x.io", role="admin")

        assert client.delete(f"/users/{loose.id}", headers=plain_admin_headers).status_code == 403
        blocked = client.delete(f"/users/{owner.id}", headers=admin_headers)
        assert blocked.status_code == 412
        assert client.delete(f"/users/{loose.id}", headers=admin_headers).json() == {
            "success": True
        }
        assert runtime.identity.by_id(loose.id) is None

    def test_admin_lists_users_by_role(self, client, make_user, admin):
        _, admin_headers = admin
        make_user("agent@x.io", role="agent")
        users = client.get("/users", headers=admin_headers, params={"role": "agent"}).json()["users"]
        assert [u["email"] for u in users] == ["agent@x.io"]

"""End-to-end authentication flows over the HTTP API."""

from homeops.service import totp
from homeops.service.tokens import sha256_hex

DEFAULT_PASSWORD = "hunter22"


def _register(client, email="ada@x.io", password="hunter22", **extra):
    return client.post(
        "/auth/register", json={"name": "Ada", "email": email, "password": password, **extra}
    )


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestPasswordLifecycle:
    def test_register_refresh_logout(self, client):
        """Register, rotate the refresh token, log out, then the old token is dead."""
        response = _register(client)
        assert response.status_code == 201
        body = response.json()
        assert body["accessToken"] and body["refreshToken"]
        assert body["user"]["email"] == "ada@x.io"
        assert "passwordHash" not in body["user"]

        refreshed = client.post("/auth/refresh", json={"refreshToken": body["refreshToken"]})
        assert refreshed.status_code == 200
        rotated = refreshed.json()
        assert rotated["accessToken"]
        assert rotated["refreshToken"] != body["refreshToken"]

        old = client.post("/auth/refresh", json={"refreshToken": body["refreshToken"]})
        assert old.status_code == 401
        assert old.json()["error"]["code"] == "INVALID_REFRESH"

        out = client.post("/auth/logout", json={"refreshToken": rotated["refreshToken"]})
        assert out.json() == {"ok": True}
        again = client.post("/auth/refresh", json={"refreshToken": rotated["refreshToken"]})
        assert again.status_code == 401
        assert again.json()["error"]["code"] == "INVALID_REFRESH"

    def test_registration_creates_owned_account(self, client, runtime):
        _register(client)
        user = runtime.identity.by_email("ada@x.io")
        accounts = runtime.tenants.accounts_for_user(user.id)
        assert len(accounts) == 1
        assert accounts[0].owner_user_id == user.id
        assert runtime.store.list_subscriptions(accounts[0].id)

    def test_email_is_normalized(self, client):
        _register(client, email="  Ada@X.IO ")
        response = client.post("/auth/token", json={"email": "ada@x.io", "password": "hunter22"})
        assert response.status_code == 200

    def test_duplicate_registration_conflicts(self, client):
        _register(client)
        response = _register(client)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "CONFLICT"

    def test_admin_role_cannot_self_register(self, client):
        response = _register(client, role="super_admin")
        assert response.status_code == 400

    def test_short_password_reports_field(self, client):
        response = _register(client, password="abc")
        assert response.status_code == 400
        assert response.json()["error"]["fields"][0]["field"] == "password"

    def test_refresh_tokens_are_stored_hashed(self, client, runtime):
        raw = _register(client).json()["refreshToken"]
        assert raw not in runtime.store.refresh_tokens
        assert sha256_hex(raw) in runtime.store.refresh_tokens

    def test_logout_all_revokes_every_session(self, client):
        first = _register(client).json()
        second = client.post(
            "/auth/token", json={"email": "ada@x.io", "password": "hunter22"}
        ).json()
        response = client.post("/auth/logout-all", headers=_bearer(first["accessToken"]))
        assert response.json() == {"ok": True, "revoked": 2}
        for token in (first["refreshToken"], second["refreshToken"]):
            assert client.post("/auth/refresh", json={"refreshToken": token}).status_code == 401

    def test_logout_without_anything_is_401(self, client):
        assert client.post("/auth/logout").status_code == 401


class TestCredentialErrors:
    def test_unknown_email_and_wrong_password_look_the_same(self, client):
        _register(client)
        unknown = client.post("/auth/token", json={"email": "eve@x.io", "password": "hunter22"})
        wrong = client.post("/auth/token", json={"email": "ada@x.io", "password": "hunter23"})
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()
        assert wrong.json()["error"]["code"] == "INVALID_CREDENTIALS"

    def test_garbage_bearer_is_401_on_guarded_route(self, client):
        response = client.get("/mfa/status", headers=_bearer("not.a.jwt"))
        assert response.status_code == 401

    def test_bearer_scheme_is_case_insensitive(self, client):
        token = _register(client).json()["accessToken"]
        response = client.get("/mfa/status", headers={"Authorization": f"bearer {token}"})
        assert response.status_code == 200


class TestMfa:
    def _enroll(self, client, headers):
        setup = client.post("/mfa/setup", headers=headers)
        assert setup.status_code == 200
        body = setup.json()
        assert body["otpauthUrl"].startswith("otpauth://totp/")
        assert body["qrCodeDataUrl"].startswith("data:image/")
        secret = body["manualCode"]
        confirm = client.post(
            "/mfa/confirm", headers=headers, json={"code": totp.generate_code(secret)}
        )
        assert confirm.status_code == 200
        codes = confirm.json()["backupCodes"]
        assert len(codes) == 8
        return secret, codes

    def _ticket(self, client, email):
        response = client.post("/auth/token", json={"email": email, "password": DEFAULT_PASSWORD})
        assert response.status_code == 200
        body = response.json()
        assert "accessToken" not in body
        assert body["mfaRequired"] is True
        return body["mfaTicket"]

    def test_enroll_and_login_with_totp(self, client, make_user):
        _, headers = make_user("mfa@x.io")
        secret, _ = self._enroll(client, headers)
        ticket = self._ticket(client, "mfa@x.io")

        verified = client.post(
            "/auth/mfa/verify", json={"mfaTicket": ticket, "code": totp.generate_code(secret)}
        )
        assert verified.status_code == 200
        assert verified.json()["accessToken"] and verified.json()["refreshToken"]

        status = client.get("/mfa/status", headers=_bearer(verified.json()["accessToken"]))
        assert status.json() == {"mfaEnabled": True, "backupCodesRemaining": 8}

    def test_ticket_can_come_from_bearer(self, client, make_user):
        _, headers = make_user("mfa@x.io")
        secret, _ = self._enroll(client, headers)
        ticket = self._ticket(client, "mfa@x.io")
        verified = client.post(
            "/auth/mfa/verify",
            headers=_bearer(ticket),
            json={"code": totp.generate_code(secret)},
        )
        assert verified.status_code == 200

    def test_ticket_is_not_an_access_token(self, client, make_user):
        _, headers = make_user("mfa@x.io")
        self._enroll(client, headers)
        ticket = self._ticket(client, "mfa@x.io")
        assert client.get("/mfa/status", headers=_bearer(ticket)).status_code == 401

    def test_backup_code_is_one_shot(self, client, make_user):
        _, headers = make_user("mfa@x.io")
        _, codes = self._enroll(client, headers)

        first = client.post(
            "/auth/mfa/verify",
            json={"mfaTicket": self._ticket(client, "mfa@x.io"), "code": codes[0]},
        )
        assert first.status_code == 200

        second = client.post(
            "/auth/mfa/verify",
            json={"mfaTicket": self._ticket(client, "mfa@x.io"), "code": codes[0]},
        )
        assert second.status_code == 401
        assert second.json()["error"]["code"] == "INVALID_CODE"

    def test_three_bad_codes_burn_the_ticket(self, client, make_user):
        _, headers = make_user("mfa@x.io")
        secret, _ = self._enroll(client, headers)
        ticket = self._ticket(client, "mfa@x.io")
        good = totp.generate_code(secret)
        bad = str((int(good) + 500_000) % 1_000_000).zfill(6)

        codes = []
        for _ in range(3):
            response = client.post("/auth/mfa/verify", json={"mfaTicket": ticket, "code": bad})
            assert response.status_code == 401
            codes.append(response.json()["error"]["code"])
        assert codes == ["INVALID_CODE", "INVALID_CODE", "INVALID_MFA_TICKET"]

        late = client.post("/auth/mfa/verify", json={"mfaTicket": ticket, "code": good})
        assert late.status_code == 401
        assert late.json()["error"]["code"] == "INVALID_MFA_TICKET"

    def test_ticket_is_burned_after_success(self, client, make_user):
        _, headers = make_user("mfa@x.io")
        secret, _ = self._enroll(client, headers)
        ticket = self._ticket(client, "mfa@x.io")
        payload = {"mfaTicket": ticket, "code": totp.generate_code(secret)}
        assert client.post("/auth/mfa/verify", json=payload).status_code == 200
        assert client.post("/auth/mfa/verify", json=payload).status_code == 401

    def test_setup_twice_after_enable_conflicts(self, client, make_user):
        _, headers = make_user("mfa@x.io")
        self._enroll(client, headers)
        response = client.post("/mfa/setup", headers=headers)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "MFA_ALREADY_ENABLED"

    def test_confirm_without_setup(self, client, make_user):
        _, headers = make_user("mfa@x.io")
        response = client.post("/mfa/confirm", headers=headers, json={"code": "123456"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "ENROLLMENT_EXPIRED"

    def test_secret_is_encrypted_at_rest(self, client, make_user, runtime):
        user, headers = make_user("mfa@x.io")
        secret, _ = self._enroll(client, headers)
        stored = runtime.identity.by_id(user.id)
        assert stored.mfa_secret != secret
        assert runtime.cipher.decrypt(stored.mfa_secret) == secret

    def test_disable_with_password(self, client, make_user):
        _, headers = make_user("mfa@x.io")
        self._enroll(client, headers)
        response = client.post(
            "/mfa/disable", headers=headers, json={"password": DEFAULT_PASSWORD}
        )
        assert response.json() == {"success": True}
        login = client.post(
            "/auth/token", json={"email": "mfa@x.io", "password": DEFAULT_PASSWORD}
        )
        assert "accessToken" in login.json()

    def test_disable_with_wrong_proof(self, client, make_user):
        _, headers = make_user("mfa@x.io")
        self._enroll(client, headers)
        response = client.post(
            "/mfa/disable", headers=headers, json={"codeOrBackupCode": "ZZZZZZZZ"}
        )
        assert response.status_code == 401

    def test_regenerate_backup_codes(self, client, make_user):
        _, headers = make_user("mfa@x.io")
        secret, old_codes = self._enroll(client, headers)
        response = client.post(
            "/mfa/backup/regenerate", headers=headers, json={"code": totp.generate_code(secret)}
        )
        new_codes = response.json()["backupCodes"]
        assert len(new_codes) == 8
        assert not set(new_codes) & set(old_codes)


class TestProvisionedUsers:
    def test_admin_provisions_and_user_confirms(self, client, admin):
        _, admin_headers = admin
        created = client.post(
            "/users", headers=admin_headers, json={"email": "new@x.io", "name": "New"}
        )
        assert created.status_code == 201
        body = created.json()
        assert body["user"]["isActive"] is False

        blocked = client.post("/auth/token", json={"email": "new@x.io", "password": "pw1234"})
        assert blocked.status_code == 401

        confirmed = client.post(
            "/auth/confirm", json={"token": body["activationToken"], "password": "pw1234"}
        )
        assert confirmed.status_code == 200
        assert confirmed.json()["user"]["isActive"] is True

        login = client.post("/auth/token", json={"email": "new@x.io", "password": "pw1234"})
        assert login.status_code == 200

        reused = client.post(
            "/auth/confirm", json={"token": body["activationToken"], "password": "pw1234"}
        )
        assert reused.status_code == 401
        assert reused.json()["error"]["code"] == "INVALID_INVITATION"

    def test_homeowner_cannot_provision(self, client, make_user):
        _, headers = make_user("plain@x.io")
        response = client.post("/users", headers=headers, json={"email": "x@x.io"})
        assert response.status_code == 403

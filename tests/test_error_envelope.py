"""Every failure uses the same ``{"error": {...}}`` envelope."""

from fastapi.testclient import TestClient

from homeops import app as app_module


class TestEnvelope:
    def test_request_validation_lists_fields(self, client):
        response = client.post("/auth/token", json={"email": "a@x.io"})
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["status"] == 400
        assert error["message"] == "Invalid request"
        assert {"field": "password", "message": "Field required"} in error["fields"]

    def test_unknown_route_is_enveloped(self, client):
        response = client.get("/nope")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_wrong_method_is_enveloped(self, client):
        response = client.get("/auth/token")
        assert response.status_code == 405
        assert response.json()["error"]["status"] == 405

    def test_unauthenticated_guard(self, client):
        response = client.get("/accounts")
        assert response.status_code == 401
        assert response.json() == {
            "error": {"message": "Authentication required", "status": 401, "code": "UNAUTHORIZED"}
        }

    def test_unexpected_exception_is_generic_500(self, runtime, make_user, monkeypatch):
        _, headers = make_user("boom@x.io")

        def explode(*args, **kwargs):
            raise RuntimeError("secret internals")

        monkeypatch.setattr(runtime.tenants, "visible_accounts", explode)
        client = TestClient(app_module.app, raise_server_exceptions=False)
        response = client.get("/accounts", headers=headers)
        assert response.status_code == 500
        body = response.json()
        assert body == {
            "error": {"message": "Internal server error", "status": 500, "code": "SERVER_ERROR"}
        }
        assert "secret internals" not in response.text


class TestRequestId:
    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_request_id_is_minted(self, client):
        response = client.get("/healthz")
        assert response.headers["X-Request-ID"]


def test_healthz(client):
    body = client.get("/healthz").json()
    assert body["status"] == "healthy"
    assert body["checks"] == {"store": "ok", "cache": "disabled"}
    assert body["version"] == app_module.__version__

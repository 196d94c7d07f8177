"""Integration tests for the authentication flow over HTTP.

Tests the complete auth flow including:
- Customer signup and login
- Employee login
- Identity lookup and logout
- Lockout after repeated failures
- Session binding to the client address
"""

import pytest
from fastapi.testclient import TestClient

from payportal import app as app_module
from payportal.service.runtime import get_runtime, reset_runtime_for_tests

PASSWORD = "Passw0rd!"
ACCOUNT = "12345678"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _signup(client, name="alice", password=PASSWORD, account=ACCOUNT):
    return client.post(
        "/v1/auth/signup",
        json={"name": name, "account_number": account, "password": password},
    )


def _login(client, name="alice", password=PASSWORD, account=ACCOUNT, headers=None):
    return client.post(
        "/v1/auth/login",
        json={"name": name, "account_number": account, "password": password},
        headers=headers,
    )


def _bearer(token: str, **extra) -> dict:
    return {"Authorization": f"Bearer {token}", **extra}


class TestSignup:
    def test_signup_creates_customer(self, client):
        response = _signup(client)

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "ok"
        assert data["data"]["name"] == "alice"
        assert data["data"]["role"] == "customer"
        assert "password" not in data["data"]

    def test_duplicate_name_conflicts(self, client):
        _signup(client)
        response = _signup(client, name="ALICE", account="99999999")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    @pytest.mark.parametrize(
        "payload",
        [
            {"name": "al", "account_number": ACCOUNT, "password": PASSWORD},
            {"name": "alice!", "account_number": ACCOUNT, "password": PASSWORD},
            {"name": "alice", "account_number": "1234", "password": PASSWORD},
            {"name": "alice", "account_number": ACCOUNT, "password": "password"},
            {"name": "alice", "account_number": ACCOUNT, "password": "Passw0rd!<script>"},
            {"name": "alice", "account_number": ACCOUNT, "password": PASSWORD, "role": "employee"},
        ],
    )
    def test_invalid_signup_rejected(self, client, payload):
        response = client.post("/v1/auth/signup", json=payload)

        assert response.status_code == 422
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert PASSWORD not in response.text


class TestLogin:
    def test_login_returns_token(self, client):
        _signup(client)
        response = _login(client)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["token_type"] == "bearer"
        assert data["role"] == "customer"
        assert data["access_token"].count(".") == 2
        assert get_runtime().sessions.lookup(data["session_id"]) is not None

    def test_wrong_password_is_generic_401(self, client):
        _signup(client)
        wrong_password = _login(client, password="Wrong-pass1!")
        unknown_user = _login(client, name="nobody")

        assert wrong_password.status_code == unknown_user.status_code == 401
        assert wrong_password.json()["error"] == unknown_user.json()["error"]

    def test_customer_cannot_use_employee_login(self, client):
        _signup(client)
        response = client.post(
            "/v1/auth/employee/login", json={"name": "alice", "password": PASSWORD}
        )
        assert response.status_code == 401

    def test_seeded_employee_can_log_in(self, client):
        response = client.post(
            "/v1/auth/employee/login", json={"name": "reviewer", "password": "Reviewer@2024"}
        )
        assert response.status_code == 200
        assert response.json()["data"]["role"] == "employee"

    def test_lockout_after_five_failures(self, client):
        _signup(client)
        for _ in range(5):
            assert _login(client, password="Wrong-pass1!").status_code == 401

        response = _login(client)

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) > 0

    def test_per_address_login_limit(self, client, monkeypatch):
        monkeypatch.setenv("LOGIN_RATE_LIMIT_PER_WINDOW", "2")
        reset_runtime_for_tests()
        _signup(client)

        assert _login(client).status_code == 200
        assert _login(client).status_code == 200
        response = _login(client)
        assert response.status_code == 429
        assert "Retry-After" in response.headers


class TestAuthenticatedRequests:
    def _token(self, client, **kwargs):
        _signup(client)
        return _login(client, **kwargs).json()["data"]

    def test_me_returns_identity(self, client):
        data = self._token(client)
        response = client.get("/v1/auth/me", headers=_bearer(data["access_token"]))

        assert response.status_code == 200
        assert response.json()["data"] == {
            "name": "alice",
            "role": "customer",
            "session_id": data["session_id"],
        }

    def test_me_without_token(self, client):
        response = client.get("/v1/auth/me")

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "unauthorized"
        assert error["message"] == "authentication required"

    def test_logout_kills_token(self, client):
        token = self._token(client)["access_token"]

        assert client.post("/v1/auth/logout", headers=_bearer(token)).status_code == 200
        response = client.get("/v1/auth/me", headers=_bearer(token))
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "authentication required"

    def test_second_login_keeps_first_session(self, client):
        first = self._token(client)["access_token"]
        second = _login(client).json()["data"]["access_token"]

        assert client.get("/v1/auth/me", headers=_bearer(first)).status_code == 200
        assert client.get("/v1/auth/me", headers=_bearer(second)).status_code == 200


class TestAddressBinding:
    @pytest.fixture
    def proxied_client(self, client, monkeypatch):
        # The test transport reports its peer as "testclient"
        monkeypatch.setenv("TRUSTED_PROXIES", "testclient")
        reset_runtime_for_tests()
        return client

    def test_request_from_new_address_terminates_session(self, proxied_client):
        client = proxied_client
        _signup(client)
        data = _login(client, headers={"X-Forwarded-For": "10.0.0.1"}).json()["data"]
        token = data["access_token"]

        ok = client.get("/v1/auth/me", headers=_bearer(token, **{"X-Forwarded-For": "10.0.0.1"}))
        assert ok.status_code == 200

        hijack = client.get("/v1/auth/me", headers=_bearer(token, **{"X-Forwarded-For": "10.0.0.2"}))
        assert hijack.status_code == 401
        assert hijack.json()["error"]["details"] == {"reason": "hijack_detected"}
        assert get_runtime().sessions.lookup(data["session_id"]) is None

        after = client.get("/v1/auth/me", headers=_bearer(token, **{"X-Forwarded-For": "10.0.0.1"}))
        assert after.status_code == 401

    def test_forwarded_header_ignored_without_trusted_proxy(self, client):
        _signup(client)
        token = _login(client, headers={"X-Forwarded-For": "10.0.0.1"}).json()["data"]["access_token"]

        response = client.get(
            "/v1/auth/me", headers=_bearer(token, **{"X-Forwarded-For": "10.0.0.2"})
        )
        assert response.status_code == 200

"""End-to-end auth flows through the HTTP API.

Covers registration, email verification, login, refresh rotation, logout,
password change and reset, profile updates, deactivation and admin role
changes.
"""

import re

import pytest
from fastapi.testclient import TestClient

from tokenward import app as app_module
from tokenward.service.runtime import get_runtime
from tokenward.storage.models import Role

PASSWORD = "TestPassword123!"
_TOKEN_RE = re.compile(r"token=([A-Za-z0-9_\-]+)")


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _token_from(outbox, email):
    match = _TOKEN_RE.search(outbox.last_to(email)["text"])
    assert match, "no token in message"
    return match.group(1)


def _register_and_verify(client, outbox, email="user@example.com", password=PASSWORD):
    response = client.post(
        "/v1/auth/register", json={"email": email, "password": password, "name": "User"}
    )
    assert response.status_code == 201, response.text
    token = _token_from(outbox, email)
    response = client.post("/v1/auth/verify-email", json={"token": token, "email": email})
    assert response.status_code == 200, response.text
    return response.json()["data"]["account_id"]


def _login(client, email="user@example.com", password=PASSWORD):
    response = client.post("/v1/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["data"]


def _bearer(pair):
    return {"Authorization": f"Bearer {pair['access_token']}"}


class TestRegistration:
    def test_register_creates_unverified_account(self, client, outbox):
        response = client.post(
            "/v1/auth/register", json={"email": "New@Example.com", "password": PASSWORD}
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["email"] == "new@example.com"
        assert body["data"]["email_verified"] is False
        assert body["data"]["role"] == "viewer"
        assert "password_hash" not in body["data"]

    def test_register_duplicate_email(self, client, outbox):
        payload = {"email": "dup@example.com", "password": PASSWORD}
        client.post("/v1/auth/register", json=payload)
        response = client.post("/v1/auth/register", json=payload)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "email_in_use"

    @pytest.mark.parametrize(
        "payload",
        [
            {"email": "not-an-email", "password": PASSWORD},
            {"email": "short@example.com", "password": "short"},
        ],
    )
    def test_register_validates_input(self, client, payload):
        assert client.post("/v1/auth/register", json=payload).status_code == 422

    def test_unverified_account_cannot_login(self, client, outbox):
        client.post("/v1/auth/register", json={"email": "u@example.com", "password": PASSWORD})
        response = client.post(
            "/v1/auth/login", json={"email": "u@example.com", "password": PASSWORD}
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "email_not_verified"

    def test_verification_link_is_single_use(self, client, outbox):
        client.post("/v1/auth/register", json={"email": "u@example.com", "password": PASSWORD})
        token = _token_from(outbox, "u@example.com")

        assert client.post("/v1/auth/verify-email", json={"token": token}).status_code == 200
        response = client.post("/v1/auth/verify-email", json={"token": token})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "token_already_used"

    def test_lost_verification_link_can_be_resent_without_a_session(self, client, outbox):
        client.post("/v1/auth/register", json={"email": "u@example.com", "password": PASSWORD})
        first = _token_from(outbox, "u@example.com")
        login = client.post("/v1/auth/login", json={"email": "u@example.com", "password": PASSWORD})
        assert login.status_code == 403

        response = client.post("/v1/auth/verify-email/request", json={"email": "U@example.com"})
        assert response.status_code == 200
        assert response.json()["data"] == {"status": "sent"}
        fresh = _token_from(outbox, "u@example.com")
        assert fresh != first

        assert client.post("/v1/auth/verify-email", json={"token": first}).status_code == 400
        assert client.post("/v1/auth/verify-email", json={"token": fresh}).status_code == 200
        _login(client, email="u@example.com")

    def test_resend_for_unknown_or_verified_address_looks_the_same(self, client, outbox):
        _register_and_verify(client, outbox)
        sent_before = len(outbox.outbox)

        for email in ("user@example.com", "ghost@example.com"):
            response = client.post("/v1/auth/verify-email/request", json={"email": email})
            assert response.status_code == 200
            assert response.json()["data"] == {"status": "sent"}
        assert len(outbox.outbox) == sent_before


class TestSessions:
    def test_login_refresh_logout(self, client, outbox):
        account_id = _register_and_verify(client, outbox)
        pair = _login(client)
        assert pair["account_id"] == account_id
        assert pair["token_type"] == "bearer"

        response = client.post("/v1/auth/refresh", json={"refresh_token": pair["refresh_token"]})
        assert response.status_code == 200
        rotated = response.json()["data"]
        assert rotated["refresh_token"] != pair["refresh_token"]

        replay = client.post("/v1/auth/refresh", json={"refresh_token": pair["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "reauthentication_required"
        assert replay.headers["WWW-Authenticate"] == "Bearer"

        assert client.post("/v1/auth/logout", json={"refresh_token": rotated["refresh_token"]}).status_code == 200
        assert client.post("/v1/auth/logout", json={"refresh_token": rotated["refresh_token"]}).status_code == 200
        after = client.post("/v1/auth/refresh", json={"refresh_token": rotated["refresh_token"]})
        assert after.status_code == 401

    def test_wrong_password(self, client, outbox):
        _register_and_verify(client, outbox)
        response = client.post(
            "/v1/auth/login", json={"email": "user@example.com", "password": "WrongPassword1"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credentials"

    def test_login_rate_limit(self, client, outbox):
        settings = get_runtime().settings
        # A long window keeps refill from topping the bucket up mid-test
        settings.rate_limit_window_seconds = 3600
        limit = settings.login_rate_limit_per_minute
        payload = {"email": "nobody@example.com", "password": "WrongPassword1"}
        for _ in range(limit):
            assert client.post("/v1/auth/login", json=payload).status_code == 401

        response = client.post("/v1/auth/login", json=payload)
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) >= 1

    def test_password_change_signs_out_other_sessions(self, client, outbox):
        _register_and_verify(client, outbox)
        laptop = _login(client)
        phone = _login(client)

        response = client.put(
            "/v1/profile/password",
            json={"current_password": PASSWORD, "new_password": "AnotherPassword456"},
            headers=_bearer(laptop),
        )
        assert response.status_code == 200

        for pair in (laptop, phone):
            replay = client.post("/v1/auth/refresh", json={"refresh_token": pair["refresh_token"]})
            assert replay.status_code == 401
        _login(client, password="AnotherPassword456")


class TestPasswordReset:
    def test_reset_flow(self, client, outbox):
        _register_and_verify(client, outbox)
        old_pair = _login(client)

        response = client.post("/v1/auth/password-reset/request", json={"email": "user@example.com"})
        assert response.status_code == 200
        token = _token_from(outbox, "user@example.com")

        response = client.post(
            "/v1/auth/password-reset/confirm",
            json={"token": token, "email": "user@example.com", "new_password": "ResetPassword789"},
        )
        assert response.status_code == 200

        replay = client.post("/v1/auth/refresh", json={"refresh_token": old_pair["refresh_token"]})
        assert replay.status_code == 401
        _login(client, password="ResetPassword789")

        again = client.post(
            "/v1/auth/password-reset/confirm",
            json={"token": token, "new_password": "YetAnotherOne000"},
        )
        assert again.status_code == 400
        assert again.json()["error"]["code"] == "token_already_used"

    def test_reset_request_for_unknown_email_looks_the_same(self, client, outbox):
        response = client.post("/v1/auth/password-reset/request", json={"email": "ghost@example.com"})
        assert response.status_code == 200
        assert response.json()["data"] == {"status": "sent"}
        assert outbox.outbox == []

    def test_unknown_reset_token(self, client):
        response = client.post(
            "/v1/auth/password-reset/confirm",
            json={"token": "bogus", "new_password": "ResetPassword789"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "token_not_found"


class TestProfile:
    def test_get_and_rename(self, client, outbox):
        account_id = _register_and_verify(client, outbox)
        pair = _login(client)

        profile = client.get("/v1/profile", headers=_bearer(pair)).json()["data"]
        assert profile["id"] == account_id
        assert profile["email_verified"] is True

        response = client.put("/v1/profile", json={"name": "Renamed"}, headers=_bearer(pair))
        assert response.status_code == 200
        updates = response.json()["data"]["profile_updates"]
        assert updates[-1]["field"] == "name"
        assert updates[-1]["new_value"] == "Renamed"

    def test_email_change_forces_reverification(self, client, outbox):
        _register_and_verify(client, outbox)
        pair = _login(client)

        response = client.put("/v1/profile", json={"email": "moved@example.com"}, headers=_bearer(pair))
        assert response.status_code == 200
        assert response.json()["data"]["email_verified"] is False

        replay = client.post("/v1/auth/refresh", json={"refresh_token": pair["refresh_token"]})
        assert replay.status_code == 401
        token = _token_from(outbox, "moved@example.com")
        assert client.post("/v1/auth/verify-email", json={"token": token}).status_code == 200
        _login(client, email="moved@example.com")

    def test_empty_profile_update_rejected(self, client, outbox):
        _register_and_verify(client, outbox)
        pair = _login(client)
        assert client.put("/v1/profile", json={}, headers=_bearer(pair)).status_code == 422

    def test_delete_profile(self, client, outbox):
        _register_and_verify(client, outbox)
        pair = _login(client)

        assert client.delete("/v1/profile", headers=_bearer(pair)).status_code == 200

        # The still-unexpired access token no longer opens the profile
        response = client.get("/v1/profile", headers=_bearer(pair))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "account_deactivated"
        login = client.post("/v1/auth/login", json={"email": "user@example.com", "password": PASSWORD})
        assert login.status_code == 403

    def test_garbage_bearer_token(self, client):
        response = client.get("/v1/profile", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_invalid"


class TestAdmin:
    def _make_admin(self, client, outbox):
        account_id = _register_and_verify(client, outbox, email="admin@example.com")
        get_runtime().store.update_account(account_id, role=Role.ADMIN)
        return _login(client, email="admin@example.com")

    def test_admin_changes_role_and_target_is_signed_out(self, client, outbox):
        admin = self._make_admin(client, outbox)
        target_id = _register_and_verify(client, outbox)
        target_pair = _login(client)

        response = client.post(
            f"/v1/admin/accounts/{target_id}/role",
            json={"role": "editor"},
            headers=_bearer(admin),
        )
        assert response.status_code == 200
        assert response.json()["data"]["role"] == "editor"

        replay = client.post("/v1/auth/refresh", json={"refresh_token": target_pair["refresh_token"]})
        assert replay.status_code == 401
        assert _login(client)["account_id"] == target_id

    def test_non_admin_is_forbidden(self, client, outbox):
        target_id = _register_and_verify(client, outbox)
        pair = _login(client)
        response = client.post(
            f"/v1/admin/accounts/{target_id}/role", json={"role": "admin"}, headers=_bearer(pair)
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "permission_denied"

    def test_unknown_account(self, client, outbox):
        admin = self._make_admin(client, outbox)
        response = client.post(
            "/v1/admin/accounts/missing/role", json={"role": "editor"}, headers=_bearer(admin)
        )
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "account_not_found"

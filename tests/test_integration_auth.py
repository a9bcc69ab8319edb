"""Integration tests for the /auth HTTP surface.

Tests the complete flow including:
- Patient registration and login
- Lockout over HTTP
- Refresh rotation and logout
- Admin-only user creation
- Password reset and email verification
"""

import base64

import pytest
from fastapi.testclient import TestClient

from medhub import app as app_module
from medhub.service.runtime import get_runtime
from medhub.service.tokens import TokenPurpose

PASSWORD = "Abcdef1!"


def _segment(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


# well-formed header and payload, signature segment outside ASCII
NON_ASCII_TOKEN = ".".join(
    [_segment(b'{"alg":"HS256"}'), _segment(b'{"sub":"x"}'), "\u00e9\u00e9"]
)


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register(client, email="a@b.com", password=PASSWORD, **extra):
    body = {"email": email, "password": password, "firstName": "Ada", "lastName": "Lovelace"}
    body.update(extra)
    return client.post("/auth/register", json=body)


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_token(client):
    runtime = get_runtime()
    runtime.store.create_account(
        "admin@medhub.example",
        runtime.passwords.hash(PASSWORD),
        "Root",
        "Admin",
        ["Admin"],
        email_verified=True,
    )
    response = client.post(
        "/auth/login", json={"email": "admin@medhub.example", "password": PASSWORD}
    )
    assert response.status_code == 200
    return response.json()["data"]["accessToken"]


class TestRegister:
    def test_register_returns_tokens_and_patient_user(self, client):
        response = _register(client)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["request_id"]
        data = body["data"]
        assert data["accessToken"] and data["refreshToken"]
        assert data["tokenType"] == "bearer"
        user = data["user"]
        assert user["email"] == "a@b.com"
        assert user["firstName"] == "Ada"
        assert user["roles"] == ["Patient"]
        assert user["emailVerified"] is False
        assert "passwordHash" not in user
        assert "refreshToken" not in user

    def test_register_ignores_client_roles(self, client):
        response = _register(client, roles=["Admin"])

        assert response.status_code == 201
        assert response.json()["data"]["user"]["roles"] == ["Patient"]

    def test_register_creates_patient_profile(self, client):
        user_id = _register(client).json()["data"]["user"]["id"]

        assert get_runtime().store.get_patient_profile(user_id) is not None

    def test_register_normalizes_email_and_names(self, client):
        response = _register(client, email="  Ada@Example.COM ", firstName="  Ada  ")

        user = response.json()["data"]["user"]
        assert user["email"] == "ada@example.com"
        assert user["firstName"] == "Ada"

    def test_duplicate_email_conflicts(self, client):
        _register(client)

        response = _register(client, email="A@B.com")

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "conflict"
        assert error["message"] == "User with this email already exists"

    @pytest.mark.parametrize(
        "overrides, field",
        [
            ({"email": "not-an-email"}, "email"),
            ({"password": "short"}, "password"),
            ({"password": "alllowercase1!"}, "password"),
            ({"firstName": "A"}, "firstName"),
            ({"lastName": "x" * 51}, "lastName"),
        ],
    )
    def test_invalid_body_is_400_with_field(self, client, overrides, field):
        response = _register(client, **overrides)

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert field in [d["field"] for d in error["details"]]

    def test_snake_case_body_accepted(self, client):
        response = client.post(
            "/auth/register",
            json={"email": "s@b.com", "password": PASSWORD, "first_name": "Sam", "last_name": "Snake"},
        )

        assert response.status_code == 201


class TestLogin:
    def test_round_trip(self, client):
        registered = _register(client).json()["data"]

        response = client.post("/auth/login", json={"email": "a@b.com", "password": PASSWORD})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"]["id"] == registered["user"]["id"]
        assert data["accessToken"]

    def test_wrong_password_is_401(self, client):
        _register(client)

        response = client.post("/auth/login", json={"email": "a@b.com", "password": "Wrong-pw1!"})

        assert response.status_code == 401
        assert response.json()["error"] == {
            "code": "unauthorized",
            "message": "Invalid credentials",
            "details": None,
        }

    def test_lockout_blocks_correct_password(self, client):
        _register(client)
        for _ in range(5):
            client.post("/auth/login", json={"email": "a@b.com", "password": "Wrong-pw1!"})

        response = client.post("/auth/login", json={"email": "a@b.com", "password": PASSWORD})

        assert response.status_code == 401
        assert response.json()["error"]["message"].startswith("Account is locked")


class TestSession:
    def test_profile_requires_bearer(self, client):
        assert client.get("/auth/profile").status_code == 401
        assert client.get("/auth/profile", headers=_bearer("garbage")).status_code == 401

    def test_profile_returns_current_user(self, client):
        token = _register(client).json()["data"]["accessToken"]

        response = client.get("/auth/profile", headers=_bearer(token))

        assert response.status_code == 200
        assert response.json()["data"]["email"] == "a@b.com"

    def test_refresh_rotation(self, client):
        first = _register(client).json()["data"]["refreshToken"]

        rotated = client.post("/auth/refresh", json={"refreshToken": first})
        assert rotated.status_code == 200
        second = rotated.json()["data"]["refreshToken"]
        assert second != first

        assert client.post("/auth/refresh", json={"refreshToken": first}).status_code == 401
        assert client.post("/auth/refresh", json={"refreshToken": second}).status_code == 200
        assert client.post("/auth/refresh", json={"refreshToken": second}).status_code == 401

    def test_refresh_with_non_ascii_token_is_401(self, client):
        response = client.post("/auth/refresh", json={"refreshToken": NON_ASCII_TOKEN})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_refresh_token_cannot_access_profile(self, client):
        refresh = _register(client).json()["data"]["refreshToken"]

        assert client.get("/auth/profile", headers=_bearer(refresh)).status_code == 401

    def test_logout_revokes_refresh(self, client):
        data = _register(client).json()["data"]

        response = client.post(
            "/auth/logout",
            json={"refreshToken": data["refreshToken"]},
            headers=_bearer(data["accessToken"]),
        )

        assert response.status_code == 204
        assert response.content == b""
        assert (
            client.post("/auth/refresh", json={"refreshToken": data["refreshToken"]}).status_code
            == 401
        )
        # Idempotent
        assert client.post("/auth/logout", headers=_bearer(data["accessToken"])).status_code == 204

    def test_logout_requires_bearer(self, client):
        assert client.post("/auth/logout", json={}).status_code == 401


class TestAdminCreateUser:
    def _create(self, client, token, roles, email="doc@b.com"):
        return client.post(
            "/auth/admin/create-user",
            json={
                "email": email,
                "password": PASSWORD,
                "firstName": "Greg",
                "lastName": "House",
                "roles": roles,
            },
            headers=_bearer(token) if token else {},
        )

    def test_admin_creates_staff(self, client, admin_token):
        response = self._create(client, admin_token, ["Doctor", "Nurse"])

        assert response.status_code == 201
        assert response.json()["data"]["user"]["roles"] == ["Doctor", "Nurse"]

    def test_unknown_role_conflicts(self, client, admin_token):
        response = self._create(client, admin_token, ["SuperAdmin"])

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "conflict"
        assert "SuperAdmin" in error["message"]

    def test_unknown_role_among_many_conflicts(self, client, admin_token):
        roles = ["Admin", "Doctor", "Nurse", "Receptionist", "Patient", "SuperAdmin"]

        response = self._create(client, admin_token, roles)

        assert response.status_code == 409
        assert response.json()["error"]["message"] == "Invalid roles: SuperAdmin"

    def test_empty_roles_is_400(self, client, admin_token):
        assert self._create(client, admin_token, []).status_code == 400

    def test_patient_cannot_create_users(self, client):
        token = _register(client).json()["data"]["accessToken"]

        response = self._create(client, token, ["Doctor"])

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_anonymous_is_401(self, client):
        assert self._create(client, None, ["Doctor"]).status_code == 401


class TestPasswordResetFlow:
    def test_forgot_password_is_uniform(self, client):
        _register(client)

        known = client.post("/auth/forgot-password", json={"email": "a@b.com"})
        unknown = client.post("/auth/forgot-password", json={"email": "ghost@b.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]

    def test_reset_password_invalidates_refresh(self, client):
        data = _register(client).json()["data"]
        runtime = get_runtime()
        token = runtime.password_reset.mint(runtime.store.get_account(data["user"]["id"]))

        response = client.post(
            "/auth/reset-password", json={"token": token, "newPassword": "Newpass9$"}
        )

        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Password has been reset successfully"
        assert (
            client.post("/auth/refresh", json={"refreshToken": data["refreshToken"]}).status_code
            == 401
        )
        login = client.post("/auth/login", json={"email": "a@b.com", "password": "Newpass9$"})
        assert login.status_code == 200

        replay = client.post(
            "/auth/reset-password", json={"token": token, "newPassword": "Another1!"}
        )
        assert replay.status_code == 400

    def test_reset_with_bad_token(self, client):
        response = client.post(
            "/auth/reset-password", json={"token": "bogus", "newPassword": "Newpass9$"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid or expired reset token"


class TestEmailVerificationFlow:
    def test_verify_then_resend_is_rejected(self, client):
        data = _register(client).json()["data"]
        runtime = get_runtime()
        token, _ = runtime.tokens.issue(
            TokenPurpose.VERIFY_EMAIL,
            data["user"]["id"],
            runtime.verification.ttl,
            email="a@b.com",
        )

        response = client.post("/auth/verify-email", json={"token": token})
        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Email verified successfully"

        profile = client.get("/auth/profile", headers=_bearer(data["accessToken"]))
        assert profile.json()["data"]["emailVerified"] is True

        resend = client.post("/auth/resend-verification", headers=_bearer(data["accessToken"]))
        assert resend.status_code == 400
        assert resend.json()["error"]["message"] == "Email is already verified"

    def test_resend_for_unverified_account(self, client):
        token = _register(client).json()["data"]["accessToken"]

        response = client.post("/auth/resend-verification", headers=_bearer(token))

        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Verification email sent"

    def test_bad_verification_token(self, client):
        response = client.post("/auth/verify-email", json={"token": "nope"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


    def test_non_ascii_verification_token(self, client):
        response = client.post("/auth/verify-email", json={"token": NON_ASCII_TOKEN})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestMiddleware:
    def test_request_id_is_echoed(self, client):
        response = client.post(
            "/auth/forgot-password",
            json={"email": "x@b.com"},
            headers={"X-Request-ID": "trace-123"},
        )

        assert response.headers["X-Request-ID"] == "trace-123"

    def test_auth_responses_are_not_cacheable(self, client):
        response = client.post("/auth/forgot-password", json={"email": "x@b.com"})

        assert "no-store" in response.headers["Cache-Control"]
        assert response.headers["X-Content-Type-Options"] == "nosniff"

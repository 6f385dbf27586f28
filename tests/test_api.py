"""
CraftCtrl - HTTP API Test Suite

End-to-end tests through the FastAPI application:
- Login, 2FA, refresh and logout endpoints
- Session listing and revocation
- Password recovery endpoints
- Admin routes and permission enforcement
- Error mapping and security headers

Run with: pytest tests/test_api.py -v
"""

import pyotp

from craftctrl.errors import INVALID_CREDENTIALS, INVALID_TOKEN
from tests.conftest import DEFAULT_PASSWORD, auth_headers, current_code, login_user, wrong_code


API = "/api/v1"


def admin_token(client) -> str:
    return login_user(client, "admin", "admin123")["access_token"]


# =============================================================================
# APPLICATION TESTS
# =============================================================================

class TestApplication:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_security_headers(self, client):
        response = client.get("/health")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Request-ID"]

    def test_error_carries_request_id(self, client):
        response = client.get(f"{API}/auth/me")

        assert response.status_code == 401
        assert response.json()["request_id"] == response.headers["X-Request-ID"]
        assert response.headers["WWW-Authenticate"] == "Bearer"


# =============================================================================
# LOGIN ENDPOINT TESTS
# =============================================================================

class TestLoginEndpoint:

    def test_login_success(self, client, bob):
        response = client.post(
            f"{API}/auth/login", json={"username": "bob", "password": "secret1"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 900
        assert data["user"]["username"] == "bob"
        assert data["permissions"] == []
        assert "requires_2fa" not in data
        assert "password_hash" not in data["user"]

    def test_login_failures_look_alike(self, client, bob):
        wrong = client.post(f"{API}/auth/login", json={"username": "bob", "password": "wrong"})
        unknown = client.post(f"{API}/auth/login", json={"username": "nobody", "password": "wrong"})

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["detail"] == unknown.json()["detail"] == INVALID_CREDENTIALS

    def test_login_validation(self, client):
        response = client.post(f"{API}/auth/login", json={"username": "", "password": ""})

        assert response.status_code == 422

    def test_forced_change_returns_challenge(self, client, make_user, mailer):
        make_user("dave", change_password=True)

        response = client.post(
            f"{API}/auth/login", json={"username": "dave", "password": DEFAULT_PASSWORD}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["requires_password_change"] is True
        assert data["session_token"]
        assert "access_token" not in data
        assert len(mailer.sent) == 1

    def test_client_details_recorded(self, client, bob):
        tokens = client.post(
            f"{API}/auth/login",
            json={"username": "bob", "password": "secret1"},
            headers={"User-Agent": "pytest-browser", "X-Forwarded-For": "203.0.113.7, 10.0.0.1"},
        ).json()

        sessions = client.get(
            f"{API}/auth/sessions", headers=auth_headers(tokens["access_token"])
        ).json()["sessions"]

        assert sessions[0]["user_agent"] == "pytest-browser"
        assert sessions[0]["ip_address"] == "203.0.113.7"


# =============================================================================
# TWO-FACTOR ENDPOINT TESTS
# =============================================================================

class TestTwoFactorEndpoints:

    def test_full_enrollment_and_login(self, client, clock, bob):
        headers = auth_headers(login_user(client, "bob")["access_token"])

        setup = client.post(f"{API}/auth/2fa/setup", headers=headers)
        assert setup.status_code == 200
        totp = pyotp.TOTP(setup.json()["secret"])

        # Pending secret does not gate login yet
        assert "access_token" in login_user(client, "bob")

        enable = client.post(
            f"{API}/auth/2fa/enable", json={"code": current_code(totp, clock)}, headers=headers
        )
        assert enable.status_code == 200

        challenge = login_user(client, "bob")
        assert challenge["requires_2fa"] is True

        verify = client.post(
            f"{API}/auth/2fa/verify",
            json={"session_token": challenge["session_token"], "totp_code": current_code(totp, clock)},
        )
        assert verify.status_code == 200
        assert verify.json()["access_token"]

        replay = client.post(
            f"{API}/auth/2fa/verify",
            json={"session_token": challenge["session_token"], "totp_code": current_code(totp, clock)},
        )
        assert replay.status_code == 401

    def test_verify_code_format(self, client):
        response = client.post(
            f"{API}/auth/2fa/verify", json={"session_token": "x", "totp_code": "12ab56"}
        )

        assert response.status_code == 422

    def test_verify_failures_share_detail(self, client, clock, totp_user):
        _, totp = totp_user
        challenge = login_user(client, "carol")

        bad_code = client.post(
            f"{API}/auth/2fa/verify",
            json={"session_token": challenge["session_token"], "totp_code": wrong_code(totp, clock)},
        )
        bad_token = client.post(
            f"{API}/auth/2fa/verify",
            json={"session_token": "garbage", "totp_code": current_code(totp, clock)},
        )

        assert bad_code.status_code == bad_token.status_code == 401
        assert bad_code.json()["detail"] == bad_token.json()["detail"] == INVALID_TOKEN

    def test_standalone_verify(self, client, clock, totp_user):
        user, totp = totp_user
        challenge = login_user(client, "carol")
        tokens = client.post(
            f"{API}/auth/2fa/verify",
            json={"session_token": challenge["session_token"], "totp_code": current_code(totp, clock)},
        ).json()

        response = client.post(
            f"{API}/auth/2fa/standalone-verify",
            json={"code": current_code(totp, clock)},
            headers=auth_headers(tokens["access_token"]),
        )

        assert response.json() == {"valid": True}

    def test_disable(self, client, clock, totp_user):
        user, totp = totp_user
        challenge = login_user(client, "carol")
        tokens = client.post(
            f"{API}/auth/2fa/verify",
            json={"session_token": challenge["session_token"], "totp_code": current_code(totp, clock)},
        ).json()

        response = client.post(
            f"{API}/auth/2fa/disable",
            json={"code": current_code(totp, clock)},
            headers=auth_headers(tokens["access_token"]),
        )

        assert response.status_code == 200
        assert "access_token" in login_user(client, "carol")


# =============================================================================
# TOKEN AND SESSION ENDPOINT TESTS
# =============================================================================

class TestTokenEndpoints:

    def test_me(self, client, bob):
        tokens = login_user(client, "bob")

        response = client.get(f"{API}/auth/me", headers=auth_headers(tokens["access_token"]))

        assert response.status_code == 200
        assert response.json()["id"] == bob.id

    def test_bad_bearer_token(self, client):
        response = client.get(f"{API}/auth/me", headers=auth_headers("not-a-jwt"))

        assert response.status_code == 401

    def test_refresh_rotation(self, client, bob):
        tokens = login_user(client, "bob")

        first = client.post(f"{API}/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert first.status_code == 200
        assert first.json()["refresh_token"] != tokens["refresh_token"]

        replay = client.post(f"{API}/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert replay.status_code == 401

    def test_logout(self, client, bob):
        tokens = login_user(client, "bob")
        headers = auth_headers(tokens["access_token"])

        assert client.post(f"{API}/auth/logout", headers=headers).status_code == 200
        assert client.get(f"{API}/auth/me", headers=headers).status_code == 401

    def test_logout_all_keeps_caller(self, client, bob):
        tokens = login_user(client, "bob")
        other = login_user(client, "bob")
        headers = auth_headers(tokens["access_token"])

        response = client.post(f"{API}/auth/logout-all", headers=headers)

        assert response.json()["sessions_invalidated"] == 1
        assert client.get(f"{API}/auth/me", headers=headers).status_code == 200
        assert client.get(
            f"{API}/auth/me", headers=auth_headers(other["access_token"])
        ).status_code == 401

    def test_session_listing_and_revocation(self, client, bob):
        tokens = login_user(client, "bob")
        other = login_user(client, "bob")
        headers = auth_headers(tokens["access_token"])

        listing = client.get(f"{API}/auth/sessions", headers=headers).json()
        assert listing["total"] == 2
        current = [s for s in listing["sessions"] if s["is_current"]]
        assert [s["id"] for s in current] == [tokens["session_id"]]

        own = client.delete(f"{API}/auth/sessions/{tokens['session_id']}", headers=headers)
        assert own.status_code == 400

        revoked = client.delete(f"{API}/auth/sessions/{other['session_id']}", headers=headers)
        assert revoked.status_code == 200

        again = client.delete(f"{API}/auth/sessions/{other['session_id']}", headers=headers)
        assert again.status_code == 404

    def test_cannot_revoke_foreign_session(self, client, make_user, bob):
        make_user("eve")
        bob_tokens = login_user(client, "bob")
        eve_tokens = login_user(client, "eve")

        response = client.delete(
            f"{API}/auth/sessions/{bob_tokens['session_id']}",
            headers=auth_headers(eve_tokens["access_token"]),
        )

        assert response.status_code == 404


# =============================================================================
# PASSWORD ENDPOINT TESTS
# =============================================================================

class TestPasswordEndpoints:

    def test_forgot_password_same_answer(self, client, mailer, bob):
        known = client.post(f"{API}/auth/forgot-password", json={"username": "bob"})
        unknown = client.post(f"{API}/auth/forgot-password", json={"username": "nobody"})

        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json()
        assert len(mailer.sent) == 1

    def test_reset_password(self, client, mailer, bob):
        client.post(f"{API}/auth/forgot-password", json={"username": "bob"})
        token = mailer.sent[-1]["token"]

        first = client.post(
            f"{API}/auth/reset-password", json={"token": token, "new_password": "newpass123"}
        )
        second = client.post(
            f"{API}/auth/reset-password", json={"token": token, "new_password": "anotherpass"}
        )

        assert first.status_code == 200
        assert second.status_code == 400
        assert login_user(client, "bob", "newpass123") is not None

    def test_reset_password_too_short(self, client):
        response = client.post(
            f"{API}/auth/reset-password", json={"token": "x", "new_password": "abc"}
        )

        assert response.status_code == 422

    def test_change_password(self, client, bob):
        tokens = login_user(client, "bob")
        headers = auth_headers(tokens["access_token"])

        wrong = client.post(
            f"{API}/auth/change-password",
            json={"current_password": "wrong", "new_password": "newpass123"},
            headers=headers,
        )
        assert wrong.status_code == 401

        changed = client.post(
            f"{API}/auth/change-password",
            json={"current_password": "secret1", "new_password": "newpass123"},
            headers=headers,
        )
        assert changed.status_code == 200
        assert client.get(f"{API}/auth/me", headers=headers).status_code == 200
        assert login_user(client, "bob", "newpass123") is not None


# =============================================================================
# ADMIN ENDPOINT TESTS
# =============================================================================

class TestAdminUsers:

    def test_requires_authentication(self, client):
        assert client.get(f"{API}/users").status_code == 401

    def test_requires_permission(self, client, bob):
        headers = auth_headers(login_user(client, "bob")["access_token"])

        response = client.get(f"{API}/users", headers=headers)

        assert response.status_code == 403
        assert response.json()["detail"] == "Permission denied: user:read"

    def test_list_users(self, client, bob):
        response = client.get(f"{API}/users", headers=auth_headers(admin_token(client)))

        assert response.status_code == 200
        assert response.json()["total"] == 2

    def test_create_user(self, client):
        headers = auth_headers(admin_token(client))

        created = client.post(
            f"{API}/users",
            json={"username": "dave", "email": "Dave@Test.com", "password": "initial1"},
            headers=headers,
        )
        duplicate = client.post(
            f"{API}/users",
            json={"username": "dave", "email": "dave2@test.com", "password": "initial1"},
            headers=headers,
        )

        assert created.status_code == 201
        assert created.json()["email"] == "dave@test.com"
        assert created.json()["change_password"] is True
        assert duplicate.status_code == 409

    def test_create_user_validation(self, client):
        response = client.post(
            f"{API}/users",
            json={"username": "x", "email": "not-an-email", "password": "initial1"},
            headers=auth_headers(admin_token(client)),
        )

        assert response.status_code == 422

    def test_update_and_delete(self, client, bob):
        headers = auth_headers(admin_token(client))

        patched = client.patch(f"{API}/users/{bob.id}", json={"is_active": False}, headers=headers)
        assert patched.status_code == 200
        assert patched.json()["is_active"] is False
        assert login_user(client, "bob") is None

        deleted = client.delete(f"{API}/users/{bob.id}", headers=headers)
        assert deleted.status_code == 200
        assert client.get(f"{API}/users/{bob.id}", headers=headers).status_code == 404

    def test_cannot_delete_self(self, client, admin):
        response = client.delete(
            f"{API}/users/{admin.id}", headers=auth_headers(admin_token(client))
        )

        assert response.status_code == 400

    def test_force_password_change(self, client, bob):
        bob_tokens = login_user(client, "bob")

        response = client.post(
            f"{API}/users/{bob.id}/force-password-change",
            headers=auth_headers(admin_token(client)),
        )

        assert response.status_code == 200
        assert client.get(
            f"{API}/auth/me", headers=auth_headers(bob_tokens["access_token"])
        ).status_code == 401
        assert login_user(client, "bob")["requires_password_change"] is True


class TestAdminPermissions:

    def test_grant_and_check(self, client, bob):
        headers = auth_headers(admin_token(client))

        granted = client.put(
            f"{API}/users/{bob.id}/servers/srv-1",
            json={"actions": ["start", "stop"]},
            headers=headers,
        )
        assert granted.status_code == 200
        assert granted.json()["actions"] == ["start", "stop"]

        effective = client.get(f"{API}/users/{bob.id}/permissions", headers=headers).json()
        assert effective["servers"] == {"srv-1": ["start", "stop"]}

    def test_unknown_action_rejected(self, client, bob):
        response = client.put(
            f"{API}/users/{bob.id}/servers/srv-1",
            json={"actions": ["teleport"]},
            headers=auth_headers(admin_token(client)),
        )

        assert response.status_code == 422

    def test_scoped_update_grant(self, client, make_user, bob):
        """A per-server update grant authorizes granting on that server only."""
        eve = make_user("eve")
        admin_headers = auth_headers(admin_token(client))
        client.put(
            f"{API}/users/{bob.id}/servers/srv-1", json={"actions": ["update"]}, headers=admin_headers
        )
        bob_headers = auth_headers(login_user(client, "bob")["access_token"])

        allowed = client.put(
            f"{API}/users/{eve.id}/servers/srv-1", json={"actions": ["start"]}, headers=bob_headers
        )
        denied = client.put(
            f"{API}/users/{eve.id}/servers/srv-2", json={"actions": ["start"]}, headers=bob_headers
        )

        assert allowed.status_code == 200
        assert denied.status_code == 403

    def test_revoke(self, client, bob):
        headers = auth_headers(admin_token(client))
        client.put(f"{API}/users/{bob.id}/groups/grp-1", json={"actions": ["start"]}, headers=headers)

        first = client.delete(f"{API}/users/{bob.id}/groups/grp-1", headers=headers)
        second = client.delete(f"{API}/users/{bob.id}/groups/grp-1", headers=headers)

        assert first.status_code == 200
        assert second.status_code == 404

    def test_permission_catalog(self, client):
        response = client.get(f"{API}/permissions", headers=auth_headers(admin_token(client)))

        names = {p["name"] for p in response.json()}
        assert {"server:start", "group:stop", "user:create"} <= names


class TestAdminRoles:

    def test_roles_are_super_admin_only(self, client, bob):
        headers = auth_headers(login_user(client, "bob")["access_token"])

        assert client.get(f"{API}/roles", headers=headers).status_code == 403

    def test_role_lifecycle(self, client, bob):
        headers = auth_headers(admin_token(client))

        created = client.post(
            f"{API}/roles",
            json={"name": "viewer", "description": "Read-only", "permissions": ["user:read"]},
            headers=headers,
        )
        assert created.status_code == 201
        role_id = created.json()["id"]

        assigned = client.post(f"{API}/users/{bob.id}/roles", json={"role_id": role_id}, headers=headers)
        assert assigned.status_code == 200

        bob_headers = auth_headers(login_user(client, "bob")["access_token"])
        assert client.get(f"{API}/users", headers=bob_headers).status_code == 200

        removed = client.delete(f"{API}/users/{bob.id}/roles/{role_id}", headers=headers)
        assert removed.status_code == 200
        assert client.get(f"{API}/users", headers=bob_headers).status_code == 403

        assert client.delete(f"{API}/roles/{role_id}", headers=headers).status_code == 200

    def test_system_role_protected(self, client):
        response = client.delete(f"{API}/roles/super_admin", headers=auth_headers(admin_token(client)))

        assert response.status_code == 403

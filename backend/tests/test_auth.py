# tests/test_auth.py — Authentication & authorization tests
from datetime import timedelta

import pytest
from httpx import AsyncClient

from auth import AuthService, MAX_LOGIN_ATTEMPTS
from guards import LOGIN_PATH

REGISTRATION = {
    "email": "newuser@test.com",
    "password": "SecurePass123!",
    "first_name": "New",
    "last_name": "User",
}


@pytest.mark.asyncio
class TestRegistration:
    async def test_register_success(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/register", json=REGISTRATION)
        assert res.status_code == 201
        data = res.json()
        assert "access_token" in data
        assert "refresh_token" in data
        assert data["user"]["email"] == "newuser@test.com"
        assert data["user"]["roles"] == ["team_member"]
        assert "password" not in data["user"]

    @pytest.mark.parametrize("password", ["short1!", "alllowercase1!", "ALLUPPERCASE1!", "NoDigits!!", "NoSpecial123"])
    async def test_register_weak_password(self, client: AsyncClient, password):
        res = await client.post("/api/v1/auth/register", json={**REGISTRATION, "password": password})
        assert res.status_code == 422

    async def test_register_password_resembling_hash(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/register", json={**REGISTRATION, "password": "$2Abcdefgh!"})
        assert res.status_code == 201
        res = await client.post(
            "/api/v1/auth/login", json={"email": REGISTRATION["email"], "password": "$2Abcdefgh!"},
        )
        assert res.status_code == 200

    async def test_register_short_name(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/register", json={**REGISTRATION, "first_name": "X"})
        assert res.status_code == 422

    async def test_register_duplicate_email(self, client: AsyncClient):
        await client.post("/api/v1/auth/register", json=REGISTRATION)
        res = await client.post("/api/v1/auth/register", json=REGISTRATION)
        assert res.status_code == 409

    async def test_register_invalid_email(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/register", json={**REGISTRATION, "email": "not-an-email"})
        assert res.status_code == 422
        assert "request_id" in res.json()


@pytest.mark.asyncio
class TestLogin:
    async def test_login_success(self, client: AsyncClient, test_user):
        res = await client.post("/api/v1/auth/login", json={
            "email": "testuser@scrum-pm.dev",
            "password": "TestPassword123!",
        })
        assert res.status_code == 200
        data = res.json()
        assert "access_token" in data
        assert data["user"]["email"] == "testuser@scrum-pm.dev"
        assert data["user"]["last_login"] is not None

    async def test_login_wrong_password(self, client: AsyncClient, test_user):
        res = await client.post("/api/v1/auth/login", json={
            "email": "testuser@scrum-pm.dev",
            "password": "WrongPassword123!",
        })
        assert res.status_code == 401

    async def test_login_nonexistent_user(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/login", json={
            "email": "nobody@test.com",
            "password": "SomePassword123!",
        })
        assert res.status_code == 401

    async def test_login_lockout(self, client: AsyncClient, test_user):
        creds = {"email": "testuser@scrum-pm.dev", "password": "WrongPassword123!"}
        for _ in range(MAX_LOGIN_ATTEMPTS):
            assert (await client.post("/api/v1/auth/login", json=creds)).status_code == 401
        res = await client.post("/api/v1/auth/login", json={**creds, "password": "TestPassword123!"})
        assert res.status_code == 429

    async def test_inactive_user_cannot_login(self, client: AsyncClient, admin_user, test_user, auth_headers):
        await client.post(f"/api/v1/users/{test_user.id}/deactivate", headers=auth_headers(admin_user))
        res = await client.post("/api/v1/auth/login", json={
            "email": "testuser@scrum-pm.dev",
            "password": "TestPassword123!",
        })
        assert res.status_code == 401


@pytest.mark.asyncio
class TestTokens:
    async def test_access_protected_route(self, client: AsyncClient, test_user, auth_headers):
        res = await client.get("/api/v1/auth/me", headers=auth_headers(test_user))
        assert res.status_code == 200
        data = res.json()
        assert data["email"] == test_user.email
        assert "task:create" in data["permissions"]
        assert "task:delete" not in data["permissions"]

    async def test_missing_token_redirects_to_login(self, client: AsyncClient):
        res = await client.get("/api/v1/auth/me?verbose=1")
        assert res.status_code == 401
        body = res.json()
        assert body["redirect"] == {"to": LOGIN_PATH, "returnUrl": "/api/v1/auth/me?verbose=1"}
        assert res.headers["www-authenticate"] == "Bearer"

    async def test_invalid_token(self, client: AsyncClient):
        res = await client.get("/api/v1/auth/me", headers={"Authorization": "Bearer nope"})
        assert res.status_code == 401
        assert res.json()["detail"] == "Invalid token"

    async def test_expired_token(self, client: AsyncClient, test_user):
        token = AuthService.create_access_token({"sub": test_user.id}, expires_delta=timedelta(seconds=-1))
        res = await client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert res.status_code == 401
        assert res.json()["detail"] == "Token expired"

    async def test_refresh_token_cannot_access_api(self, client: AsyncClient, test_user):
        token = AuthService.create_refresh_token({"sub": test_user.id})
        res = await client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert res.status_code == 401

    async def test_refresh_rotates(self, client: AsyncClient):
        tokens = (await client.post("/api/v1/auth/register", json=REGISTRATION)).json()

        res = await client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert res.status_code == 200
        rotated = res.json()
        assert rotated["refresh_token"] != tokens["refresh_token"]

        res = await client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert res.status_code == 401
        assert res.json()["detail"] == "Refresh token has been revoked"

    async def test_access_token_rejected_for_refresh(self, client: AsyncClient):
        tokens = (await client.post("/api/v1/auth/register", json=REGISTRATION)).json()
        res = await client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["access_token"]})
        assert res.status_code == 401

    async def test_logout_revokes_refresh(self, client: AsyncClient):
        tokens = (await client.post("/api/v1/auth/register", json=REGISTRATION)).json()
        headers = {"Authorization": f"Bearer {tokens['access_token']}"}
        assert (await client.post("/api/v1/auth/logout", headers=headers)).status_code == 200
        res = await client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert res.status_code == 401


@pytest.mark.asyncio
class TestChangePassword:
    async def test_change_password(self, client: AsyncClient, test_user, auth_headers):
        res = await client.post("/api/v1/auth/change-password", headers=auth_headers(test_user), json={
            "current_password": "TestPassword123!",
            "new_password": "BrandNewPass456!",
        })
        assert res.status_code == 200

        res = await client.post("/api/v1/auth/login", json={
            "email": test_user.email, "password": "BrandNewPass456!",
        })
        assert res.status_code == 200

    async def test_wrong_current_password(self, client: AsyncClient, test_user, auth_headers):
        res = await client.post("/api/v1/auth/change-password", headers=auth_headers(test_user), json={
            "current_password": "NotMyPassword1!",
            "new_password": "BrandNewPass456!",
        })
        assert res.status_code == 401

# tests/test_navigation.py — Route access decisions exposed to the client router
import pytest
from httpx import AsyncClient

from guards import LOGIN_PATH, ROUTES


@pytest.mark.asyncio
class TestCheck:
    async def test_anonymous_is_sent_to_login_with_return_url(self, client: AsyncClient):
        resp = await client.get("/api/v1/navigation/check", params={"url": "/reports/velocity?sprint=3"})
        assert resp.status_code == 200
        assert resp.json() == {
            "route": "/reports",
            "allowed": False,
            "redirect": {"to": LOGIN_PATH, "returnUrl": "/reports/velocity?sprint=3"},
            "reason": "not_authenticated",
        }

    async def test_public_and_guest_routes(self, client: AsyncClient, test_user, auth_headers):
        resp = await client.get("/api/v1/navigation/check", params={"url": "/error/404"})
        assert resp.json()["allowed"] is True

        resp = await client.get("/api/v1/navigation/check", params={"url": "/auth/login"})
        assert resp.json()["allowed"] is True

        resp = await client.get(
            "/api/v1/navigation/check", params={"url": "/auth/login"}, headers=auth_headers(test_user),
        )
        body = resp.json()
        assert body["allowed"] is False
        assert body["reason"] == "already_authenticated"
        assert body["redirect"] == {"to": "/dashboard"}

    async def test_role_restricted_route(self, client: AsyncClient, admin_user, test_user, auth_headers):
        resp = await client.get("/api/v1/navigation/check", params={"url": "/admin/users"}, headers=auth_headers(test_user))
        body = resp.json()
        assert body["allowed"] is False
        assert body["reason"] == "insufficient_permissions"
        assert body["redirect"] == {"to": "/dashboard", "toast": "Access Denied"}

        resp = await client.get("/api/v1/navigation/check", params={"url": "/admin/users"}, headers=auth_headers(admin_user))
        assert resp.json()["allowed"] is True

    async def test_unknown_path_requires_authentication_only(self, client: AsyncClient, test_user, auth_headers):
        resp = await client.get("/api/v1/navigation/check", params={"url": "/somewhere/else"})
        assert resp.json()["reason"] == "not_authenticated"
        assert resp.json()["route"] == "/somewhere/else"

        resp = await client.get(
            "/api/v1/navigation/check", params={"url": "/somewhere/else"}, headers=auth_headers(test_user),
        )
        assert resp.json()["allowed"] is True

    async def test_url_is_required(self, client: AsyncClient):
        resp = await client.get("/api/v1/navigation/check")
        assert resp.status_code == 422

    async def test_invalid_token_is_rejected(self, client: AsyncClient):
        resp = await client.get(
            "/api/v1/navigation/check", params={"url": "/dashboard"},
            headers={"Authorization": "Bearer not-a-token"},
        )
        assert resp.status_code == 401


@pytest.mark.asyncio
class TestEvaluate:
    async def test_explicit_permissions_use_and_semantics(self, client: AsyncClient, admin_user, test_user, auth_headers):
        route = {"path": "/sprints/plan", "required_permissions": ["sprint:view", "sprint:start"]}

        resp = await client.post("/api/v1/navigation/evaluate", json=route, headers=auth_headers(test_user))
        assert resp.status_code == 200
        assert resp.json()["allowed"] is False
        assert resp.json()["reason"] == "insufficient_permissions"

        resp = await client.post("/api/v1/navigation/evaluate", json=route, headers=auth_headers(admin_user))
        assert resp.json()["allowed"] is True

    async def test_explicit_roles_use_or_semantics(self, client: AsyncClient, owner_user, test_user, auth_headers):
        route = {"path": "/planning", "required_roles": ["project_owner", "admin"]}
        resp = await client.post("/api/v1/navigation/evaluate", json=route, headers=auth_headers(owner_user))
        assert resp.json()["allowed"] is True
        resp = await client.post("/api/v1/navigation/evaluate", json=route, headers=auth_headers(test_user))
        assert resp.json()["allowed"] is False

    async def test_url_is_matched_against_route_table(self, client: AsyncClient):
        resp = await client.post("/api/v1/navigation/evaluate", json={"url": "/tasks/SB-1?tab=comments"})
        body = resp.json()
        assert body["route"] == "/tasks"
        assert body["redirect"]["returnUrl"] == "/tasks/SB-1?tab=comments"

    async def test_url_or_path_required(self, client: AsyncClient):
        resp = await client.post("/api/v1/navigation/evaluate", json={"public": True})
        assert resp.status_code == 422


@pytest.mark.asyncio
class TestRouteTable:
    async def test_anonymous_view(self, client: AsyncClient):
        resp = await client.get("/api/v1/navigation/routes")
        assert resp.status_code == 200
        routes = {r["path"]: r for r in resp.json()}
        assert len(routes) == len(ROUTES)
        assert routes["/auth"]["allowed"] is True
        assert routes["/error"]["allowed"] is True
        assert routes["/dashboard"]["allowed"] is False
        assert routes["/admin"]["required_roles"] == ["admin"]

    async def test_admin_view(self, client: AsyncClient, admin_user, test_user, auth_headers):
        resp = await client.get("/api/v1/navigation/routes", headers=auth_headers(admin_user))
        routes = {r["path"]: r["allowed"] for r in resp.json()}
        assert routes["/admin"] is True
        assert routes["/reports"] is True
        assert routes["/auth"] is False

        resp = await client.get("/api/v1/navigation/routes", headers=auth_headers(test_user))
        routes = {r["path"]: r["allowed"] for r in resp.json()}
        assert routes["/admin"] is False
        assert routes["/dashboard"] is True

# tests/test_guards.py — Access evaluation: authentication, roles, permissions, route table
import pytest
import pytest_asyncio
from fastapi import Depends, FastAPI
from httpx import AsyncClient, ASGITransport

from auth import Principal, require_route
from database import get_db_session
from guards import (
    ACCESS_DENIED, DEFAULT_PATH, LOGIN_PATH, ROUTES, AccessError, InsufficientPermissions,
    NotAuthenticated, RouteDescriptor, check_authenticated, check_permissions,
    evaluate, has_any_role, match_route,
)
from main import insufficient_permissions_handler, not_authenticated_handler


def principal(*roles, permissions=()):
    return Principal(
        id="u-1", email="u@scrum-pm.dev", authenticated=True, is_active=True,
        roles=tuple(roles), permissions=frozenset(permissions),
    )


class TestAccessErrors:
    def test_each_failure_carries_its_redirect(self):
        not_authenticated = NotAuthenticated(return_url="/sprints?active=1")
        denied = InsufficientPermissions()
        assert isinstance(not_authenticated, AccessError)
        assert isinstance(denied, AccessError)
        assert not_authenticated.status_code == 401
        assert denied.status_code == 403
        assert not_authenticated.redirect().to_dict() == {"to": LOGIN_PATH, "returnUrl": "/sprints?active=1"}
        assert denied.redirect().to_dict() == {"to": DEFAULT_PATH, "toast": ACCESS_DENIED}


class TestAuthentication:
    @pytest.mark.parametrize("url", ["/projects", "/projects/42?tab=board&sort=asc", "/admin/users#top"])
    def test_anonymous_is_sent_to_login_with_exact_url(self, url):
        decision = evaluate(None, RouteDescriptor("/projects"), url)
        assert decision.allowed is False
        assert decision.reason == "not_authenticated"
        assert decision.redirect.to_dict() == {"to": LOGIN_PATH, "returnUrl": url}

    def test_unauthenticated_principal_is_anonymous(self):
        decision = evaluate(Principal.anonymous(), RouteDescriptor("/tasks"), "/tasks?mine=1")
        assert decision.redirect.return_url == "/tasks?mine=1"

    def test_return_url_defaults_to_route_path(self):
        assert evaluate(None, RouteDescriptor("/team")).redirect.return_url == "/team"

    def test_check_authenticated_raises(self):
        with pytest.raises(NotAuthenticated) as exc:
            check_authenticated(None, "/x?y=1")
        assert exc.value.status_code == 401
        assert exc.value.return_url == "/x?y=1"


class TestRoles:
    def test_empty_required_roles_allow_everyone_authenticated(self):
        for route in (RouteDescriptor("/a"), RouteDescriptor("/a", required_roles=())):
            assert evaluate(principal(), route).allowed
            assert evaluate(principal("viewer"), route).allowed

    @pytest.mark.parametrize("held,required,expected", [
        (("admin",), ("admin", "manager"), True),
        (("manager",), ("admin", "manager"), True),
        (("viewer",), ("admin", "manager"), False),
        ((), ("admin",), False),
        (("viewer", "admin"), ("admin",), True),
    ])
    def test_any_role_semantics(self, held, required, expected):
        assert has_any_role(held, required) is expected
        decision = evaluate(principal(*held), RouteDescriptor("/r", required_roles=required))
        assert decision.allowed is expected

    def test_denied_redirects_to_dashboard_with_toast(self):
        decision = evaluate(principal("viewer"), RouteDescriptor("/admin", required_roles=("admin",)))
        assert decision.reason == "insufficient_permissions"
        assert decision.redirect.to_dict() == {"to": DEFAULT_PATH, "toast": ACCESS_DENIED}
        assert decision.to_dict()["allowed"] is False


class TestPermissions:
    def test_all_permissions_required(self):
        route = RouteDescriptor("/p", required_permissions=("task:view", "task:assign"))
        assert evaluate(principal(permissions={"task:view", "task:assign", "x:y"}), route).allowed
        assert not evaluate(principal(permissions={"task:view"}), route).allowed

    def test_missing_permissions_are_reported(self):
        with pytest.raises(InsufficientPermissions) as exc:
            check_permissions(principal(permissions={"task:view"}), ["task:view", "task:delete"])
        assert exc.value.status_code == 403
        assert list(exc.value.missing) == ["task:delete"]

    def test_empty_permission_list_is_no_restriction(self):
        check_permissions(principal(), [])
        check_permissions(principal(), None)


class TestRouteTable:
    def test_public_and_guest_routes(self):
        assert evaluate(None, match_route("/error")).allowed
        assert evaluate(None, match_route("/auth/login")).allowed
        decision = evaluate(principal(), match_route("/auth/register"))
        assert decision.allowed is False
        assert decision.reason == "already_authenticated"
        assert decision.redirect.to == DEFAULT_PATH

    def test_longest_prefix(self):
        assert match_route("/projects/123/board?view=kanban").path == "/projects"
        assert match_route("/admin/users").required_roles == ("admin",)
        assert match_route("/reports").required_roles == ("admin", "manager")

    def test_prefix_matches_whole_segments(self):
        assert match_route("/projectsarchive").path == "/projectsarchive"
        assert match_route("/unknown/page").path == "/unknown/page"

    def test_every_protected_route_denies_anonymous(self):
        for route in ROUTES:
            if route.public or route.guest_only:
                continue
            assert evaluate(None, route).redirect.to == LOGIN_PATH


@pytest_asyncio.fixture
async def guarded_client(session_factory):
    guarded = FastAPI()
    guarded.add_exception_handler(NotAuthenticated, not_authenticated_handler)
    guarded.add_exception_handler(InsufficientPermissions, insufficient_permissions_handler)

    @guarded.get("/admin/panel")
    async def panel(user: Principal = Depends(require_route(match_route("/admin")))):
        return {"ok": True, "user": user.id}

    async def override_get_db():
        async with session_factory() as session:
            yield session

    guarded.dependency_overrides[get_db_session] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=guarded), base_url="http://test") as ac:
        yield ac


@pytest.mark.asyncio
class TestRequireRoute:
    async def test_anonymous_gets_401_with_login_redirect(self, guarded_client: AsyncClient):
        res = await guarded_client.get("/admin/panel?tab=users")
        assert res.status_code == 401
        assert res.json()["redirect"] == {"to": LOGIN_PATH, "returnUrl": "/admin/panel?tab=users"}

    async def test_wrong_role_gets_403(self, guarded_client: AsyncClient, test_user, auth_headers):
        res = await guarded_client.get("/admin/panel", headers=auth_headers(test_user))
        assert res.status_code == 403
        assert res.json()["redirect"] == {"to": DEFAULT_PATH, "toast": ACCESS_DENIED}

    async def test_admin_allowed(self, guarded_client: AsyncClient, admin_user, auth_headers):
        res = await guarded_client.get("/admin/panel", headers=auth_headers(admin_user))
        assert res.status_code == 200
        assert res.json()["user"] == admin_user.id

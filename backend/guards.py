# guards.py — Navigation/request access evaluation
# Two checks per navigation attempt:
#   1. authentication  -> NotAuthenticated (login redirect, keeps return URL)
#   2. authorization   -> InsufficientPermissions (dashboard redirect + toast)
# Both failures are terminal for the attempt.

from dataclasses import dataclass
from typing import Optional, Tuple, Iterable, Dict, Any

LOGIN_PATH = "/auth/login"
DEFAULT_PATH = "/dashboard"
ACCESS_DENIED = "Access Denied"


# ============================================================
# ERRORS
# ============================================================

class AccessError(Exception):
    """Base class for the two access failure kinds"""
    status_code = 403


class NotAuthenticated(AccessError):
    status_code = 401

    def __init__(self, return_url: Optional[str] = None):
        super().__init__("Authentication required")
        self.return_url = return_url

    def redirect(self) -> "Redirect":
        return Redirect(to=LOGIN_PATH, return_url=self.return_url)


class InsufficientPermissions(AccessError):
    status_code = 403

    def __init__(self, message: str = "You do not have permission to access this page", missing: Iterable[str] = ()):
        super().__init__(message)
        self.message = message
        self.missing = tuple(missing)

    def redirect(self) -> "Redirect":
        return Redirect(to=DEFAULT_PATH, toast=ACCESS_DENIED)


# ============================================================
# VALUE OBJECTS
# ============================================================

@dataclass(frozen=True)
class Redirect:
    to: str
    return_url: Optional[str] = None
    toast: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"to": self.to}
        if self.return_url is not None:
            out["returnUrl"] = self.return_url
        if self.toast is not None:
            out["toast"] = self.toast
        return out


@dataclass(frozen=True)
class RouteDescriptor:
    """Access requirements declared by a route.

    ``required_roles`` uses OR semantics, ``required_permissions`` AND
    semantics. Empty means no restriction.
    """
    path: str
    required_roles: Tuple[str, ...] = ()
    required_permissions: Tuple[str, ...] = ()
    public: bool = False
    guest_only: bool = False


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    redirect: Optional[Redirect] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "redirect": self.redirect.to_dict() if self.redirect else None,
            "reason": self.reason,
        }


ALLOW = AccessDecision(allowed=True)


# ============================================================
# CHECKS
# ============================================================

def check_authenticated(principal, attempted_url: str) -> None:
    if principal is None or not principal.authenticated:
        raise NotAuthenticated(return_url=attempted_url)


def has_any_role(held_roles: Iterable[str], required_roles: Optional[Iterable[str]]) -> bool:
    required = tuple(required_roles or ())
    if not required:
        return True
    held = set(held_roles)
    return any(role in held for role in required)


def check_roles(principal, required_roles: Optional[Iterable[str]]) -> None:
    if not has_any_role(principal.roles, required_roles):
        raise InsufficientPermissions()


def check_permissions(principal, required_permissions: Optional[Iterable[str]]) -> None:
    held = set(principal.permissions)
    missing = [p for p in (required_permissions or ()) if p not in held]
    if missing:
        raise InsufficientPermissions(
            "You do not have the required permissions", missing=missing,
        )


def evaluate(principal, route: RouteDescriptor, attempted_url: Optional[str] = None) -> AccessDecision:
    """Decide whether ``principal`` may navigate to ``route``.

    ``attempted_url`` is the full location (path + query) being opened; it
    defaults to the route path and is preserved as the login return target.
    """
    attempted_url = attempted_url or route.path

    if route.guest_only:
        if principal is not None and principal.authenticated:
            return AccessDecision(False, Redirect(to=DEFAULT_PATH), reason="already_authenticated")
        return ALLOW

    if route.public:
        return ALLOW

    try:
        check_authenticated(principal, attempted_url)
        check_roles(principal, route.required_roles)
        check_permissions(principal, route.required_permissions)
    except NotAuthenticated as exc:
        return AccessDecision(False, exc.redirect(), reason="not_authenticated")
    except InsufficientPermissions as exc:
        return AccessDecision(False, exc.redirect(), reason="insufficient_permissions")
    return ALLOW


# ============================================================
# ROUTE TABLE
# ============================================================

ROUTES: Tuple[RouteDescriptor, ...] = (
    RouteDescriptor("/auth", guest_only=True),
    RouteDescriptor("/error", public=True),
    RouteDescriptor("/dashboard"),
    RouteDescriptor("/projects"),
    RouteDescriptor("/sprints"),
    RouteDescriptor("/tasks"),
    RouteDescriptor("/reports", required_roles=("admin", "manager")),
    RouteDescriptor("/team"),
    RouteDescriptor("/profile"),
    RouteDescriptor("/settings"),
    RouteDescriptor("/ai-assistant"),
    RouteDescriptor("/notifications"),
    RouteDescriptor("/admin", required_roles=("admin",)),
)


def _path_of(url: str) -> str:
    return url.split("?", 1)[0].split("#", 1)[0] or "/"


def match_route(url: str, routes: Tuple[RouteDescriptor, ...] = ROUTES) -> RouteDescriptor:
    """Longest-prefix match on path segments; unknown paths need authentication only."""
    path = _path_of(url).rstrip("/") or "/"
    best: Optional[RouteDescriptor] = None
    for route in routes:
        if path == route.path or path.startswith(route.path + "/"):
            if best is None or len(route.path) > len(best.path):
                best = route
    return best or RouteDescriptor(path)

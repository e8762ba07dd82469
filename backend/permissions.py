# permissions.py — Permission catalog for Scrum PM
# Closed set of "resource:action" strings, the global role tables and the
# project-scoped role tables. Everything here is built once at import and
# exposed read-only.

from types import MappingProxyType
from typing import Iterable, Optional, FrozenSet, Mapping

from models import GlobalRole, ProjectRole


def _group(resource: str, *actions: str) -> Mapping[str, str]:
    return MappingProxyType({a.upper(): f"{resource}:{a}" for a in actions})


PERMISSIONS: Mapping[str, Mapping[str, str]] = MappingProxyType({
    "PROJECT": _group(
        "project", "view", "create", "update", "delete", "archive",
        "manage_members", "manage_settings", "export",
    ),
    "SPRINT": _group(
        "sprint", "view", "create", "update", "delete", "start",
        "complete", "cancel", "manage_tasks",
    ),
    "TASK": _group(
        "task", "view", "create", "update", "delete", "assign",
        "move", "comment", "attach_files",
    ),
    "USER": _group(
        "user", "view", "create", "update", "delete", "manage_roles",
        "manage_groups", "impersonate",
    ),
    "ADMIN": _group(
        "admin", "access_dashboard", "manage_system", "view_audit_log",
        "manage_settings", "view_metrics", "manage_integrations",
    ),
    "REPORT": _group("report", "view", "create", "export", "schedule"),
    "AI": _group(
        "ai", "use_assistant", "view_suggestions", "execute_actions", "manage_prompts",
    ),
    "NOTIFICATION": _group("notification", "view_all", "manage_all"),
})


def _all(resource: str) -> FrozenSet[str]:
    return frozenset(PERMISSIONS[resource].values())


P = PERMISSIONS

ALL_PERMISSIONS: FrozenSet[str] = frozenset(
    perm for group in PERMISSIONS.values() for perm in group.values()
)

ROLE_PERMISSIONS: Mapping[GlobalRole, FrozenSet[str]] = MappingProxyType({
    GlobalRole.SUPER_ADMIN: ALL_PERMISSIONS,
    GlobalRole.ADMIN: frozenset().union(
        _all("PROJECT"),
        _all("SPRINT"),
        _all("TASK"),
        _all("USER") - {P["USER"]["IMPERSONATE"]},
        _all("REPORT"),
        _all("AI"),
        {
            P["ADMIN"]["ACCESS_DASHBOARD"],
            P["ADMIN"]["VIEW_AUDIT_LOG"],
            P["ADMIN"]["VIEW_METRICS"],
        },
    ),
    GlobalRole.PROJECT_OWNER: frozenset().union(
        {
            P["PROJECT"]["VIEW"],
            P["PROJECT"]["UPDATE"],
            P["PROJECT"]["ARCHIVE"],
            P["PROJECT"]["MANAGE_MEMBERS"],
            P["PROJECT"]["MANAGE_SETTINGS"],
            P["PROJECT"]["EXPORT"],
        },
        _all("SPRINT"),
        _all("TASK"),
        _all("REPORT"),
        _all("AI"),
    ),
    GlobalRole.TEAM_MEMBER: frozenset({
        P["PROJECT"]["VIEW"],
        P["SPRINT"]["VIEW"],
        P["SPRINT"]["UPDATE"],
        P["TASK"]["VIEW"],
        P["TASK"]["CREATE"],
        P["TASK"]["UPDATE"],
        P["TASK"]["ASSIGN"],
        P["TASK"]["MOVE"],
        P["TASK"]["COMMENT"],
        P["TASK"]["ATTACH_FILES"],
        P["REPORT"]["VIEW"],
        P["AI"]["USE_ASSISTANT"],
        P["AI"]["VIEW_SUGGESTIONS"],
    }),
    GlobalRole.VIEWER: frozenset({
        P["PROJECT"]["VIEW"],
        P["SPRINT"]["VIEW"],
        P["TASK"]["VIEW"],
        P["REPORT"]["VIEW"],
    }),
})

# Per-project membership roles, granted only inside that project
RESOURCE_PERMISSIONS: Mapping[str, Mapping[ProjectRole, FrozenSet[str]]] = MappingProxyType({
    "PROJECT": MappingProxyType({
        ProjectRole.OWNER: frozenset().union(_all("PROJECT"), _all("SPRINT"), _all("TASK")),
        ProjectRole.ADMIN: frozenset().union(
            {
                P["PROJECT"]["VIEW"],
                P["PROJECT"]["UPDATE"],
                P["PROJECT"]["MANAGE_MEMBERS"],
            },
            _all("SPRINT"),
            _all("TASK"),
        ),
        ProjectRole.MEMBER: frozenset({
            P["PROJECT"]["VIEW"],
            P["SPRINT"]["VIEW"],
            P["TASK"]["VIEW"],
            P["TASK"]["CREATE"],
            P["TASK"]["UPDATE"],
            P["TASK"]["COMMENT"],
        }),
        ProjectRole.VIEWER: frozenset({
            P["PROJECT"]["VIEW"],
            P["SPRINT"]["VIEW"],
            P["TASK"]["VIEW"],
        }),
    }),
})

PERMISSION_GROUPS = (
    {"name": "Project Management", "permissions": sorted(_all("PROJECT"))},
    {"name": "Sprint Management", "permissions": sorted(_all("SPRINT"))},
    {"name": "Task Management", "permissions": sorted(_all("TASK"))},
    {"name": "User Management", "permissions": sorted(_all("USER"))},
    {"name": "Administration", "permissions": sorted(_all("ADMIN"))},
    {"name": "Reporting", "permissions": sorted(_all("REPORT"))},
    {"name": "AI Assistant", "permissions": sorted(_all("AI"))},
)


def _coerce(enum_cls, value):
    try:
        return enum_cls(value)
    except ValueError:
        return None


def permissions_for(
    global_roles: Iterable[str],
    project_role: Optional[str] = None,
) -> FrozenSet[str]:
    """Effective permission set for a principal.

    Union of every recognised global role's set and, when given, the
    project membership role's set. Unknown role names contribute nothing,
    so adding a role never removes a permission.
    """
    granted = set()
    for name in global_roles:
        role = _coerce(GlobalRole, name)
        if role is not None:
            granted |= ROLE_PERMISSIONS[role]
    if project_role is not None:
        scoped = _coerce(ProjectRole, project_role)
        if scoped is not None:
            granted |= RESOURCE_PERMISSIONS["PROJECT"][scoped]
    return frozenset(granted)


def effective_project_permissions(base: Iterable[str], membership) -> FrozenSet[str]:
    """Add a project membership's role set and explicit grants to ``base``.

    Inactive or missing memberships grant nothing extra.
    """
    granted = set(base)
    if membership is None or not membership.is_active:
        return frozenset(granted)
    granted |= permissions_for((), membership.role)
    granted |= set(membership.permissions or [])
    return frozenset(granted)


def split_permission(name: str) -> tuple:
    """Split "task:assign" into ("task", "assign")."""
    resource, _, action = name.partition(":")
    return resource, action

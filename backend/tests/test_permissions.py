# tests/test_permissions.py — Permission catalog and role tables
import itertools

import pytest

from models import GlobalRole, ProjectRole, ProjectMember
from permissions import (
    P, PERMISSIONS, ALL_PERMISSIONS, ROLE_PERMISSIONS, RESOURCE_PERMISSIONS,
    PERMISSION_GROUPS, permissions_for, effective_project_permissions, split_permission,
)

ROLE_NAMES = [r.value for r in GlobalRole]


class TestCatalog:
    def test_every_permission_is_resource_action(self):
        for name in ALL_PERMISSIONS:
            resource, action = split_permission(name)
            assert resource and action
            assert name == f"{resource}:{action}"

    def test_catalog_strings(self):
        assert P["TASK"]["ASSIGN"] == "task:assign"
        assert P["PROJECT"]["MANAGE_MEMBERS"] == "project:manage_members"
        assert P["ADMIN"]["VIEW_AUDIT_LOG"] == "admin:view_audit_log"
        assert P["AI"]["USE_ASSISTANT"] == "ai:use_assistant"
        assert P["NOTIFICATION"]["MANAGE_ALL"] == "notification:manage_all"

    def test_tables_are_read_only(self):
        with pytest.raises(TypeError):
            PERMISSIONS["TASK"]["NEW"] = "task:new"
        with pytest.raises(TypeError):
            ROLE_PERMISSIONS[GlobalRole.VIEWER] = frozenset()
        assert isinstance(ALL_PERMISSIONS, frozenset)

    def test_groups_cover_catalog(self):
        grouped = set(itertools.chain.from_iterable(g["permissions"] for g in PERMISSION_GROUPS))
        assert grouped <= ALL_PERMISSIONS


class TestRoleTables:
    def test_super_admin_has_everything(self):
        assert ROLE_PERMISSIONS[GlobalRole.SUPER_ADMIN] == ALL_PERMISSIONS
        assert len(permissions_for(["super_admin"])) == len(ALL_PERMISSIONS)

    def test_admin_cannot_impersonate(self):
        admin = ROLE_PERMISSIONS[GlobalRole.ADMIN]
        assert P["USER"]["IMPERSONATE"] not in admin
        assert P["USER"]["MANAGE_ROLES"] in admin
        assert P["ADMIN"]["VIEW_AUDIT_LOG"] in admin
        assert P["ADMIN"]["MANAGE_SYSTEM"] not in admin

    def test_project_owner_cannot_create_or_delete_projects(self):
        owner = ROLE_PERMISSIONS[GlobalRole.PROJECT_OWNER]
        assert P["PROJECT"]["CREATE"] not in owner
        assert P["PROJECT"]["DELETE"] not in owner
        assert P["PROJECT"]["ARCHIVE"] in owner
        assert P["SPRINT"]["START"] in owner

    def test_team_member(self):
        member = ROLE_PERMISSIONS[GlobalRole.TEAM_MEMBER]
        assert P["TASK"]["ASSIGN"] in member
        assert P["TASK"]["DELETE"] not in member
        assert P["SPRINT"]["UPDATE"] in member
        assert P["SPRINT"]["START"] not in member

    def test_viewer_is_read_only(self):
        assert ROLE_PERMISSIONS[GlobalRole.VIEWER] == {
            "project:view", "sprint:view", "task:view", "report:view",
        }

    def test_project_role_table(self):
        table = RESOURCE_PERMISSIONS["PROJECT"]
        assert P["PROJECT"]["DELETE"] in table[ProjectRole.OWNER]
        assert P["PROJECT"]["DELETE"] not in table[ProjectRole.ADMIN]
        assert P["TASK"]["COMMENT"] in table[ProjectRole.MEMBER]
        assert P["TASK"]["ASSIGN"] not in table[ProjectRole.MEMBER]
        assert table[ProjectRole.VIEWER] == {"project:view", "sprint:view", "task:view"}


class TestPermissionsFor:
    def test_deterministic(self):
        assert permissions_for(["admin", "viewer"]) == permissions_for(["viewer", "admin"])
        assert permissions_for(["admin"]) == permissions_for(["admin", "admin"])

    @pytest.mark.parametrize("size", [0, 1, 2, 3])
    def test_monotonic(self, size):
        for base in itertools.combinations(ROLE_NAMES, size):
            for extra in ROLE_NAMES:
                assert permissions_for(base) <= permissions_for(base + (extra,))

    def test_unknown_roles_contribute_nothing(self):
        assert permissions_for(["manager", "ghost"]) == frozenset()
        assert permissions_for(["viewer", "ghost"]) == permissions_for(["viewer"])

    def test_project_role_is_unioned(self):
        perms = permissions_for(["viewer"], "OWNER")
        assert P["PROJECT"]["DELETE"] in perms
        assert P["REPORT"]["VIEW"] in perms
        assert permissions_for([], "nonsense") == frozenset()


class TestEffectiveProjectPermissions:
    def test_without_membership(self):
        base = permissions_for(["team_member"])
        assert effective_project_permissions(base, None) == base

    def test_membership_role_and_grants(self):
        base = permissions_for(["viewer"])
        member = ProjectMember(role=ProjectRole.MEMBER, is_active=True, permissions=["task:delete"])
        perms = effective_project_permissions(base, member)
        assert P["TASK"]["CREATE"] in perms
        assert P["TASK"]["DELETE"] in perms
        assert base <= perms

    def test_inactive_membership_adds_nothing(self):
        base = permissions_for(["viewer"])
        member = ProjectMember(role=ProjectRole.OWNER, is_active=False, permissions=["task:delete"])
        assert effective_project_permissions(base, member) == base

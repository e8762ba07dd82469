# tests/test_tasks.py — Task CRUD, board moves, assignment, trees, dependencies, watchers
import pytest
from httpx import AsyncClient


async def _create_task(client, project_id, headers, **fields):
    res = await client.post(
        f"/api/v1/projects/{project_id}/tasks", json={"title": "Task", **fields}, headers=headers,
    )
    assert res.status_code == 201, res.text
    return res.json()


async def _notification_types(client, headers):
    res = await client.get("/api/v1/notifications", headers=headers)
    return [n["type"] for n in res.json()]


@pytest.mark.asyncio
class TestCreateTask:
    async def test_keys_are_sequential(self, client: AsyncClient, project, test_user, auth_headers):
        headers = auth_headers(test_user)
        first = await _create_task(client, project["id"], headers, title="Login form")
        second = await _create_task(client, project["id"], headers, title="Signup form", type="BUG")
        assert (first["key"], second["key"]) == ("SB-1", "SB-2")
        assert first["status"] == "TODO"
        assert first["priority"] == "MEDIUM"
        assert second["type"] == "BUG"
        assert first["reporter_id"] == test_user.id
        assert first["watchers"] == [test_user.id]

    async def test_create_with_assignee_notifies(self, client: AsyncClient, project, admin_user, test_user, auth_headers):
        task = await _create_task(client, project["id"], auth_headers(admin_user), assignee_id=test_user.id)
        assert task["assignee_id"] == test_user.id
        assert task["watchers"] == [admin_user.id, test_user.id]
        assert "TASK_ASSIGNED" in await _notification_types(client, auth_headers(test_user))

    async def test_assignee_must_be_member(self, client: AsyncClient, project, admin_user, other_user, auth_headers):
        res = await client.post(
            f"/api/v1/projects/{project['id']}/tasks",
            json={"title": "Nope", "assignee_id": other_user.id},
            headers=auth_headers(admin_user),
        )
        assert res.status_code == 400

    async def test_status_timestamps(self, client: AsyncClient, project, admin_user, auth_headers):
        started = await _create_task(client, project["id"], auth_headers(admin_user), status="IN_PROGRESS")
        done = await _create_task(client, project["id"], auth_headers(admin_user), status="DONE")
        assert started["started_at"] is not None and started["completed_at"] is None
        assert done["completed_at"] is not None

    async def test_project_settings_are_enforced(self, client: AsyncClient, project, admin_user, auth_headers):
        headers = auth_headers(admin_user)
        await client.patch(
            f"/api/v1/projects/{project['id']}",
            json={"settings": {"require_estimates": True, "allow_subtasks": False}},
            headers=headers,
        )
        url = f"/api/v1/projects/{project['id']}/tasks"
        assert (await client.post(url, json={"title": "No estimate"}, headers=headers)).status_code == 400
        assert (await client.post(url, json={"title": "Odd", "story_points": 4}, headers=headers)).status_code == 400
        parent = await _create_task(client, project["id"], headers, story_points=5)
        res = await client.post(url, json={"title": "Child", "story_points": 1, "parent_id": parent["id"]}, headers=headers)
        assert res.status_code == 400

    async def test_viewer_cannot_create(self, client: AsyncClient, project, admin_user, viewer_user, auth_headers):
        await client.post(
            f"/api/v1/projects/{project['id']}/members",
            json={"user_id": viewer_user.id, "role": "VIEWER"},
            headers=auth_headers(admin_user),
        )
        res = await client.post(
            f"/api/v1/projects/{project['id']}/tasks", json={"title": "x"}, headers=auth_headers(viewer_user),
        )
        assert res.status_code == 403
        assert res.json()["detail"] == "Missing required permission: task:create"

    async def test_outsider_cannot_see_tasks(self, client: AsyncClient, project, test_user, other_user, auth_headers):
        task = await _create_task(client, project["id"], auth_headers(test_user))
        assert (await client.get(f"/api/v1/tasks/{task['id']}", headers=auth_headers(other_user))).status_code == 404
        res = await client.get(f"/api/v1/projects/{project['id']}/tasks", headers=auth_headers(other_user))
        assert res.status_code == 404

    async def test_create_updates_project_metrics(self, client: AsyncClient, project, admin_user, auth_headers):
        await _create_task(client, project["id"], auth_headers(admin_user), story_points=8)
        proj = await client.get(f"/api/v1/projects/{project['id']}", headers=auth_headers(admin_user))
        assert proj.json()["metrics"]["total_tasks"] == 1
        assert proj.json()["metrics"]["total_story_points"] == 8


@pytest.mark.asyncio
class TestListAndGet:
    async def test_filters(self, client: AsyncClient, project, admin_user, test_user, auth_headers):
        headers = auth_headers(admin_user)
        await _create_task(client, project["id"], headers, title="Fix crash", type="BUG", priority="HIGH")
        await _create_task(client, project["id"], headers, title="Write docs", assignee_id=test_user.id)
        await _create_task(client, project["id"], headers, title="Deploy", status="IN_PROGRESS")
        url = f"/api/v1/projects/{project['id']}/tasks"

        res = await client.get(url, headers=headers)
        assert res.headers["X-Total-Count"] == "3"
        assert [t["title"] for t in (await client.get(url, params={"type": "BUG"}, headers=headers)).json()] == ["Fix crash"]
        assert [t["title"] for t in (await client.get(url, params={"priority": "HIGH"}, headers=headers)).json()] == ["Fix crash"]
        assert [t["title"] for t in (await client.get(url, params={"status": "IN_PROGRESS"}, headers=headers)).json()] == ["Deploy"]
        assert [t["title"] for t in (await client.get(url, params={"assignee_id": test_user.id}, headers=headers)).json()] == ["Write docs"]
        assert [t["key"] for t in (await client.get(url, params={"search": "sb-3"}, headers=headers)).json()] == ["SB-3"]

        page = await client.get(url, params={"limit": 2, "page": 2}, headers=headers)
        assert len(page.json()) == 1
        assert page.headers["X-Has-Prev"] == "true"
        assert page.headers["X-Has-Next"] == "false"

    async def test_detail_counts(self, client: AsyncClient, project, admin_user, auth_headers):
        headers = auth_headers(admin_user)
        parent = await _create_task(client, project["id"], headers, title="Epic", type="EPIC")
        child = await _create_task(client, project["id"], headers, title="Child", parent_id=parent["id"])
        await client.post(f"/api/v1/tasks/{parent['id']}/comments", json={"content": "first"}, headers=headers)

        detail = (await client.get(f"/api/v1/tasks/{parent['id']}", headers=headers)).json()
        assert detail["subtasks"] == [{"id": child["id"], "key": child["key"], "title": "Child", "status": "TODO"}]
        assert detail["comment_count"] == 1
        assert detail["attachment_count"] == 0

    async def test_missing_task(self, client: AsyncClient, project, admin_user, auth_headers):
        assert (await client.get("/api/v1/tasks/nope", headers=auth_headers(admin_user))).status_code == 404


@pytest.mark.asyncio
class TestUpdateTask:
    async def test_field_activity_and_watchers(self, client: AsyncClient, project, admin_user, test_user, auth_headers):
        task = await _create_task(client, project["id"], auth_headers(test_user))
        res = await client.patch(
            f"/api/v1/tasks/{task['id']}",
            json={"priority": "CRITICAL", "story_points": 5, "title": "Renamed"},
            headers=auth_headers(admin_user),
        )
        assert res.status_code == 200
        assert res.json()["priority"] == "CRITICAL"

        activity = (await client.get(f"/api/v1/tasks/{task['id']}/activity", headers=auth_headers(admin_user))).json()
        actions = {a["action"] for a in activity}
        assert {"PRIORITY_CHANGED", "STORY_POINTS_CHANGED", "UPDATED", "CREATED"} <= actions
        change = next(a for a in activity if a["action"] == "PRIORITY_CHANGED")
        assert (change["old_value"], change["new_value"]) == ("MEDIUM", "CRITICAL")

        assert "TASK_UPDATED" in await _notification_types(client, auth_headers(test_user))

    async def test_no_op_update_records_nothing(self, client: AsyncClient, project, test_user, auth_headers):
        headers = auth_headers(test_user)
        task = await _create_task(client, project["id"], headers, title="Same")
        await client.patch(f"/api/v1/tasks/{task['id']}", json={"title": "Same"}, headers=headers)
        activity = (await client.get(f"/api/v1/tasks/{task['id']}/activity", headers=headers)).json()
        assert [a["action"] for a in activity] == ["CREATED"]


@pytest.mark.asyncio
class TestMoveTask:
    async def test_lifecycle(self, client: AsyncClient, project, admin_user, test_user, auth_headers):
        task = await _create_task(client, project["id"], auth_headers(admin_user), assignee_id=test_user.id)
        headers = auth_headers(test_user)
        move = f"/api/v1/tasks/{task['id']}/move"

        res = await client.post(move, json={"status": "IN_PROGRESS"}, headers=headers)
        assert res.json()["started_at"] is not None

        assert (await client.post(move, json={"status": "BLOCKED"}, headers=headers)).status_code == 400
        res = await client.post(move, json={"status": "BLOCKED", "blocked_reason": "waiting on API"}, headers=headers)
        assert res.json()["blocked_reason"] == "waiting on API"

        res = await client.post(move, json={"status": "IN_REVIEW"}, headers=headers)
        assert res.json()["blocked_reason"] is None

        res = await client.post(move, json={"status": "DONE"}, headers=headers)
        assert res.json()["completed_at"] is not None
        res = await client.post(move, json={"status": "TODO"}, headers=headers)
        assert res.json()["completed_at"] is None

        activity = (await client.get(f"/api/v1/tasks/{task['id']}/activity", headers=headers)).json()
        actions = [a["action"] for a in activity]
        for expected in ("BLOCKED", "UNBLOCKED", "COMPLETED", "REOPENED"):
            assert expected in actions

        # the admin reported the task and watches it
        types = await _notification_types(client, auth_headers(admin_user))
        assert {"TASK_BLOCKED", "TASK_UNBLOCKED", "TASK_COMPLETED"} <= set(types)

    async def test_position_only(self, client: AsyncClient, project, test_user, auth_headers):
        headers = auth_headers(test_user)
        task = await _create_task(client, project["id"], headers)
        res = await client.post(f"/api/v1/tasks/{task['id']}/move", json={"status": "TODO", "position": 7}, headers=headers)
        assert res.json()["position"] == 7
        activity = (await client.get(f"/api/v1/tasks/{task['id']}/activity", headers=headers)).json()
        assert len(activity) == 1

    async def test_move_updates_sprint_points(self, client: AsyncClient, project, admin_user, auth_headers):
        headers = auth_headers(admin_user)
        sprint = (await client.post(
            f"/api/v1/projects/{project['id']}/sprints",
            json={"name": "Sprint 1", "start_date": "2026-03-02", "end_date": "2026-03-16"},
            headers=headers,
        )).json()
        task = await _create_task(client, project["id"], headers, sprint_id=sprint["id"], story_points=13)
        await client.post(f"/api/v1/tasks/{task['id']}/move", json={"status": "DONE"}, headers=headers)
        detail = (await client.get(f"/api/v1/sprints/{sprint['id']}", headers=headers)).json()
        assert (detail["total_story_points"], detail["completed_story_points"]) == (13, 13)


@pytest.mark.asyncio
class TestAssignment:
    async def test_assign_and_unassign(self, client: AsyncClient, project, admin_user, test_user, auth_headers):
        headers = auth_headers(admin_user)
        task = await _create_task(client, project["id"], headers)
        url = f"/api/v1/tasks/{task['id']}/assign"

        res = await client.post(url, json={"assignee_id": test_user.id}, headers=headers)
        assert res.json()["assignee_id"] == test_user.id
        assert test_user.id in res.json()["watchers"]

        again = await client.post(url, json={"assignee_id": test_user.id}, headers=headers)
        assert again.status_code == 409
        assert again.json()["detail"] == "Task is already assigned to this user"

        res = await client.post(url, json={}, headers=headers)
        assert res.json()["assignee_id"] is None

        activity = (await client.get(f"/api/v1/tasks/{task['id']}/activity", headers=headers)).json()
        assert [a["action"] for a in activity[:2]] == ["UNASSIGNED", "ASSIGNED"]

    async def test_project_member_role_cannot_assign_without_global_grant(self, client: AsyncClient, project, admin_user, viewer_user, auth_headers):
        await client.post(
            f"/api/v1/projects/{project['id']}/members",
            json={"user_id": viewer_user.id, "role": "MEMBER"},
            headers=auth_headers(admin_user),
        )
        task = await _create_task(client, project["id"], auth_headers(viewer_user))
        res = await client.post(
            f"/api/v1/tasks/{task['id']}/assign", json={"assignee_id": viewer_user.id}, headers=auth_headers(viewer_user),
        )
        assert res.status_code == 403


@pytest.mark.asyncio
class TestTaskTree:
    async def test_parent_cycle_rejected(self, client: AsyncClient, project, test_user, auth_headers):
        headers = auth_headers(test_user)
        root = await _create_task(client, project["id"], headers, title="Root")
        child = await _create_task(client, project["id"], headers, title="Child", parent_id=root["id"])
        grandchild = await _create_task(client, project["id"], headers, title="Grandchild", parent_id=child["id"])

        res = await client.put(f"/api/v1/tasks/{root['id']}/parent", json={"parent_id": grandchild["id"]}, headers=headers)
        assert res.status_code == 400
        res = await client.put(f"/api/v1/tasks/{root['id']}/parent", json={"parent_id": root["id"]}, headers=headers)
        assert res.status_code == 400

        res = await client.put(f"/api/v1/tasks/{grandchild['id']}/parent", json={"parent_id": root["id"]}, headers=headers)
        assert res.json()["parent_id"] == root["id"]
        res = await client.put(f"/api/v1/tasks/{grandchild['id']}/parent", json={"parent_id": None}, headers=headers)
        assert res.json()["parent_id"] is None

    async def test_parent_from_other_project_rejected(self, client: AsyncClient, project, admin_user, auth_headers):
        headers = auth_headers(admin_user)
        other = (await client.post("/api/v1/projects", json={"name": "Other", "key": "OTH"}, headers=headers)).json()
        foreign = await _create_task(client, other["id"], headers)
        res = await client.post(
            f"/api/v1/projects/{project['id']}/tasks", json={"title": "x", "parent_id": foreign["id"]}, headers=headers,
        )
        assert res.status_code == 400


@pytest.mark.asyncio
class TestDependencies:
    async def test_dependency_rules(self, client: AsyncClient, project, test_user, auth_headers):
        headers = auth_headers(test_user)
        a = await _create_task(client, project["id"], headers, title="A")
        b = await _create_task(client, project["id"], headers, title="B")
        c = await _create_task(client, project["id"], headers, title="C")

        def dep_url(task):
            return f"/api/v1/tasks/{task['id']}/dependencies"

        assert (await client.post(dep_url(a), json={"task_id": a["id"], "type": "BLOCKS"}, headers=headers)).status_code == 400
        res = await client.post(dep_url(a), json={"task_id": b["id"], "type": "BLOCKS"}, headers=headers)
        assert res.status_code == 201
        assert res.json()["dependencies"] == [{"task_id": b["id"], "type": "BLOCKS"}]
        assert (await client.post(dep_url(a), json={"task_id": b["id"], "type": "RELATES_TO"}, headers=headers)).status_code == 409

        assert (await client.post(dep_url(b), json={"task_id": c["id"], "type": "BLOCKS"}, headers=headers)).status_code == 201
        res = await client.post(dep_url(c), json={"task_id": a["id"], "type": "BLOCKS"}, headers=headers)
        assert res.status_code == 400
        assert res.json()["detail"] == "Circular dependency detected"
        res = await client.post(dep_url(a), json={"task_id": c["id"], "type": "IS_BLOCKED_BY"}, headers=headers)
        assert res.status_code == 400

        # non-blocking links never form cycles
        assert (await client.post(dep_url(c), json={"task_id": a["id"], "type": "RELATES_TO"}, headers=headers)).status_code == 201

        res = await client.delete(f"{dep_url(a)}/{b['id']}", headers=headers)
        assert res.json()["dependencies"] == []
        assert (await client.delete(f"{dep_url(a)}/{b['id']}", headers=headers)).status_code == 404

    async def test_dependency_across_projects_rejected(self, client: AsyncClient, project, admin_user, auth_headers):
        headers = auth_headers(admin_user)
        other = (await client.post("/api/v1/projects", json={"name": "Other", "key": "OTH"}, headers=headers)).json()
        foreign = await _create_task(client, other["id"], headers)
        local = await _create_task(client, project["id"], headers)
        res = await client.post(
            f"/api/v1/tasks/{local['id']}/dependencies", json={"task_id": foreign["id"], "type": "BLOCKS"}, headers=headers,
        )
        assert res.status_code == 400


@pytest.mark.asyncio
class TestWatchers:
    async def test_watch_and_unwatch(self, client: AsyncClient, project, admin_user, test_user, other_user, auth_headers):
        task = await _create_task(client, project["id"], auth_headers(admin_user))
        url = f"/api/v1/tasks/{task['id']}/watchers"

        res = await client.post(url, json={}, headers=auth_headers(test_user))
        assert res.json()["watchers"] == [admin_user.id, test_user.id]
        res = await client.post(url, json={}, headers=auth_headers(test_user))
        assert res.json()["watchers"] == [admin_user.id, test_user.id]

        res = await client.post(url, json={"user_id": other_user.id}, headers=auth_headers(admin_user))
        assert res.status_code == 400

        res = await client.delete(f"{url}/{test_user.id}", headers=auth_headers(test_user))
        assert res.json()["watchers"] == [admin_user.id]


@pytest.mark.asyncio
class TestDeleteTask:
    async def test_member_cannot_delete(self, client: AsyncClient, project, test_user, auth_headers):
        task = await _create_task(client, project["id"], auth_headers(test_user))
        res = await client.delete(f"/api/v1/tasks/{task['id']}", headers=auth_headers(test_user))
        assert res.status_code == 403

    async def test_delete_detaches_subtasks(self, client: AsyncClient, project, admin_user, auth_headers):
        headers = auth_headers(admin_user)
        parent = await _create_task(client, project["id"], headers, story_points=3)
        child = await _create_task(client, project["id"], headers, parent_id=parent["id"])
        await client.post(f"/api/v1/tasks/{parent['id']}/comments", json={"content": "bye"}, headers=headers)

        assert (await client.delete(f"/api/v1/tasks/{parent['id']}", headers=headers)).status_code == 204
        assert (await client.get(f"/api/v1/tasks/{parent['id']}", headers=headers)).status_code == 404
        assert (await client.get(f"/api/v1/tasks/{child['id']}", headers=headers)).json()["parent_id"] is None

        proj = (await client.get(f"/api/v1/projects/{project['id']}", headers=headers)).json()
        assert proj["metrics"]["total_tasks"] == 1
        assert proj["metrics"]["total_story_points"] == 0

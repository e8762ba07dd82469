"""Tests for the Notifications router."""
import pytest
from httpx import AsyncClient


async def _notify(client, headers, title="Heads up", **extra):
    payload = {"title": title, "message": f"{title} for the notification centre.", **extra}
    resp = await client.post("/api/v1/notifications", json=payload, headers=headers)
    assert resp.status_code == 201
    return resp.json()


@pytest.mark.asyncio
async def test_list_notifications_empty(client: AsyncClient, test_user, auth_headers):
    resp = await client.get("/api/v1/notifications", headers=auth_headers(test_user))
    assert resp.status_code == 200
    assert resp.json() == []
    assert resp.headers["X-Total-Count"] == "0"


@pytest.mark.asyncio
async def test_notification_count_empty(client: AsyncClient, test_user, auth_headers):
    resp = await client.get("/api/v1/notifications/count", headers=auth_headers(test_user))
    assert resp.status_code == 200
    assert resp.json() == {"unread": 0, "by_type": {}}


@pytest.mark.asyncio
async def test_create_notification_for_self(client: AsyncClient, test_user, auth_headers):
    body = await _notify(client, auth_headers(test_user), data={"sprint": "S1"}, action_url="/sprints/1")
    assert body["user_id"] == test_user.id
    assert body["type"] == "CUSTOM"
    assert body["read"] is False
    assert body["read_at"] is None
    assert body["data"] == {"sprint": "S1"}
    assert body["action_url"] == "/sprints/1"


@pytest.mark.asyncio
async def test_notification_validation(client: AsyncClient, test_user, auth_headers):
    resp = await client.post(
        "/api/v1/notifications", json={"title": "", "message": "x"}, headers=auth_headers(test_user),
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_notify_other_user_requires_manage_all(
    client: AsyncClient, admin_user, super_admin, test_user, auth_headers,
):
    payload = {"user_id": test_user.id, "title": "Maintenance", "message": "Tonight", "type": "SYSTEM_MAINTENANCE"}
    resp = await client.post("/api/v1/notifications", json=payload, headers=auth_headers(admin_user))
    assert resp.status_code == 403
    assert resp.json()["detail"] == "Missing required permission: notification:manage_all"

    resp = await client.post("/api/v1/notifications", json=payload, headers=auth_headers(super_admin))
    assert resp.status_code == 201
    assert resp.json()["user_id"] == test_user.id

    resp = await client.get("/api/v1/notifications", headers=auth_headers(test_user))
    assert [n["title"] for n in resp.json()] == ["Maintenance"]


@pytest.mark.asyncio
async def test_list_filters_and_count(client: AsyncClient, test_user, auth_headers):
    headers = auth_headers(test_user)
    first = await _notify(client, headers, "First")
    await _notify(client, headers, "Second", type="SYSTEM_ALERT")
    await _notify(client, headers, "Third", type="SYSTEM_ALERT")
    await client.post(f"/api/v1/notifications/{first['id']}/read", headers=headers)

    resp = await client.get("/api/v1/notifications", params={"unread_only": True}, headers=headers)
    assert {n["title"] for n in resp.json()} == {"Second", "Third"}

    resp = await client.get("/api/v1/notifications", params={"type": "CUSTOM"}, headers=headers)
    assert [n["title"] for n in resp.json()] == ["First"]

    resp = await client.get("/api/v1/notifications", params={"limit": 2, "page": 1}, headers=headers)
    assert len(resp.json()) == 2
    assert resp.headers["X-Has-Next"] == "true"

    resp = await client.get("/api/v1/notifications/count", headers=headers)
    assert resp.json() == {"unread": 2, "by_type": {"SYSTEM_ALERT": 2}}


@pytest.mark.asyncio
async def test_notifications_are_private(client: AsyncClient, test_user, other_user, auth_headers):
    mine = await _notify(client, auth_headers(test_user))

    resp = await client.get("/api/v1/notifications", headers=auth_headers(other_user))
    assert resp.json() == []

    resp = await client.post(f"/api/v1/notifications/{mine['id']}/read", headers=auth_headers(other_user))
    assert resp.status_code == 404
    resp = await client.delete(f"/api/v1/notifications/{mine['id']}", headers=auth_headers(other_user))
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_mark_notification_read(client: AsyncClient, test_user, auth_headers):
    headers = auth_headers(test_user)
    created = await _notify(client, headers, "Read Me")

    resp = await client.post(f"/api/v1/notifications/{created['id']}/read", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["read"] is True
    read_at = resp.json()["read_at"]
    assert read_at is not None

    # marking twice keeps the original read time
    resp = await client.post(f"/api/v1/notifications/{created['id']}/read", headers=headers)
    assert resp.json()["read_at"][:19] == read_at[:19]


@pytest.mark.asyncio
async def test_mark_all_read(client: AsyncClient, test_user, auth_headers):
    headers = auth_headers(test_user)
    for title in ["First", "Second"]:
        await _notify(client, headers, title)

    resp = await client.post("/api/v1/notifications/read-all", headers=headers)
    assert resp.status_code == 200
    assert resp.json() == {"marked": 2}

    resp = await client.post("/api/v1/notifications/read-all", headers=headers)
    assert resp.json() == {"marked": 0}
    assert (await client.get("/api/v1/notifications/count", headers=headers)).json()["unread"] == 0


@pytest.mark.asyncio
async def test_delete_notification(client: AsyncClient, test_user, auth_headers):
    headers = auth_headers(test_user)
    created = await _notify(client, headers)

    resp = await client.delete(f"/api/v1/notifications/{created['id']}", headers=headers)
    assert resp.status_code == 200
    assert resp.json() == {"status": "deleted"}

    resp = await client.delete(f"/api/v1/notifications/{created['id']}", headers=headers)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_clear_read_notifications(client: AsyncClient, test_user, auth_headers):
    headers = auth_headers(test_user)
    read = await _notify(client, headers, "Old")
    await _notify(client, headers, "New")
    await client.post(f"/api/v1/notifications/{read['id']}/read", headers=headers)

    resp = await client.delete("/api/v1/notifications", headers=headers)
    assert resp.status_code == 200
    assert resp.json() == {"deleted": 1}

    resp = await client.get("/api/v1/notifications", headers=headers)
    assert [n["title"] for n in resp.json()] == ["New"]


@pytest.mark.asyncio
async def test_notifications_require_auth(client: AsyncClient):
    resp = await client.get("/api/v1/notifications")
    assert resp.status_code == 401

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from dataclasses import dataclass

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from core.api import create_api_app
from core.app import HelpDeskApp
from core.config import AppConfig
from services.identity_service import Principal

SECRET = "test-secret"


@dataclass(slots=True)
class ApiHarness:
    client: TestClient
    ids: dict[str, str]

    def auth(self, username: str) -> dict[str, str]:
        token = jwt.encode({"sub": self.ids[username]}, SECRET, algorithm="HS256")
        return {"Authorization": f"Bearer {token}"}


async def _seed_users(config: AppConfig) -> dict[str, str]:
    app = HelpDeskApp(config)
    await app.start(run_dispatcher=False)
    try:
        owner = await app.users.bootstrap_admin("root", "root@example.com")
        assert owner is not None
        admin = Principal(id=owner.id, role=owner.role)
        ids = {"root": owner.id}
        for username, role in (("bob", "agent"), ("alice", "user"), ("carol", "user")):
            user = await app.users.register(admin, username, f"{username}@example.com", role)
            ids[username] = user.id
        return ids
    finally:
        await app.close()


@pytest.fixture
def api(app_config: AppConfig) -> Iterator[ApiHarness]:
    ids = asyncio.run(_seed_users(app_config))
    with TestClient(create_api_app(HelpDeskApp(app_config))) as client:
        yield ApiHarness(client=client, ids=ids)


def _create_category(api: ApiHarness, name: str = "Network") -> str:
    response = api.client.post("/api/categories", json={"name": name}, headers=api.auth("root"))
    assert response.status_code == 201
    return response.json()["category"]["id"]


def _create_ticket(api: ApiHarness, category_id: str, username: str = "alice", **extra) -> dict:
    body = {"subject": "VPN down", "description": "Tunnel drops", "category": category_id, **extra}
    response = api.client.post("/api/tickets", json=body, headers=api.auth(username))
    assert response.status_code == 201, response.text
    return response.json()["ticket"]


def test_health_echoes_request_id(api: ApiHarness) -> None:
    response = api.client.get("/health", headers={"X-Request-ID": "req-123"})

    assert response.json() == {"status": "ok"}
    assert response.headers["X-Request-ID"] == "req-123"
    assert api.client.get("/health").headers["X-Request-ID"]


def test_requests_without_token_are_rejected(api: ApiHarness) -> None:
    response = api.client.get("/api/tickets")

    assert response.status_code == 401
    assert response.json() == {"message": "No token provided, authorization denied."}


def test_ticket_flow_over_http(api: ApiHarness) -> None:
    category_id = _create_category(api)
    ticket = _create_ticket(api, category_id, priority="High", tags=["vpn"])
    ticket_id = ticket["id"]
    assert ticket["ticketNumber"] == "TKT-000001"
    assert ticket["status"] == "Open"
    assert ticket["createdBy"]["username"] == "alice"
    assert ticket["category"]["name"] == "Network"

    vote = api.client.post(f"/api/tickets/{ticket_id}/vote", json={"type": "up"}, headers=api.auth("bob"))
    assert vote.json()["upvotes"] == 1

    again = api.client.post(f"/api/tickets/{ticket_id}/vote", json={"voteType": "up"}, headers=api.auth("bob"))
    assert again.status_code == 400
    assert again.json()["message"] == "You have already voted"

    assigned = api.client.patch(
        f"/api/tickets/{ticket_id}/assign", json={"assignedTo": api.ids["bob"]}, headers=api.auth("root")
    )
    assert assigned.status_code == 200
    assert assigned.json()["ticket"]["status"] == "In Progress"
    assert assigned.json()["ticket"]["assignedTo"]["username"] == "bob"

    edited = api.client.put(
        f"/api/tickets/{ticket_id}",
        json={"subject": "VPN flapping", "status": "Closed"},
        headers=api.auth("alice"),
    )
    assert edited.json()["ticket"]["subject"] == "VPN flapping"
    assert edited.json()["ticket"]["status"] == "In Progress"

    resolved = api.client.put(f"/api/tickets/{ticket_id}", json={"status": "Resolved"}, headers=api.auth("bob"))
    body = resolved.json()["ticket"]
    assert body["isResolved"] is True
    assert body["resolvedBy"]["username"] == "bob"

    listing = api.client.get("/api/tickets", params={"limit": 5}, headers=api.auth("alice")).json()
    assert listing["pagination"]["totalTickets"] == 1
    assert listing["pagination"]["hasNext"] is False
    assert listing["statusCounts"]["Resolved"] == 1


def test_validation_errors_name_the_field(api: ApiHarness) -> None:
    category_id = _create_category(api)

    response = api.client.post(
        "/api/tickets",
        json={"subject": "", "description": "x", "category": category_id},
        headers=api.auth("alice"),
    )
    assert response.status_code == 400
    assert response.json()["field"] == "subject"

    response = api.client.post(
        "/api/tickets",
        json={"subject": "x", "description": "x", "category": category_id, "estimatedHours": "lots"},
        headers=api.auth("alice"),
    )
    assert response.status_code == 400
    assert response.json()["field"] == "estimatedHours"


def test_role_and_lookup_errors(api: ApiHarness) -> None:
    category_id = _create_category(api)
    _create_ticket(api, category_id)

    assert api.client.get("/api/tickets/missing", headers=api.auth("alice")).status_code == 404
    assert api.client.get("/api/tickets/admin/statistics", headers=api.auth("alice")).status_code == 403
    assert api.client.post("/api/categories", json={"name": "X"}, headers=api.auth("bob")).status_code == 403

    in_use = api.client.delete(f"/api/categories/{category_id}", headers=api.auth("root"))
    assert in_use.status_code == 409

    stats = api.client.get("/api/tickets/admin/statistics", headers=api.auth("bob")).json()
    assert stats["overview"]["totalTickets"] == 1
    assert stats["categoryStats"][0]["name"] == "Network"


def test_internal_comments_over_http(api: ApiHarness) -> None:
    ticket_id = _create_ticket(api, _create_category(api))["id"]

    api.client.post(
        f"/api/tickets/{ticket_id}/comments",
        json={"message": "Escalating to networking", "isInternal": True},
        headers=api.auth("bob"),
    )
    api.client.post(f"/api/tickets/{ticket_id}/comments", json={"message": "Any update?"}, headers=api.auth("alice"))

    as_user = api.client.get(f"/api/tickets/{ticket_id}/comments", headers=api.auth("alice")).json()
    as_staff = api.client.get(f"/api/tickets/{ticket_id}/comments", headers=api.auth("bob")).json()

    assert [c["message"] for c in as_user["comments"]] == ["Any update?"]
    assert len(as_staff["comments"]) == 2


def test_uploaded_attachment_can_be_referenced(api: ApiHarness) -> None:
    category_id = _create_category(api)

    upload = api.client.post(
        "/api/attachments",
        files=[("files", ("screen.png", b"\x89PNG fake", "image/png"))],
        headers=api.auth("alice"),
    )
    assert upload.status_code == 201
    [attachment] = upload.json()["attachments"]
    assert attachment["originalName"] == "screen.png"

    forged = {**attachment, "size": 999_999_999, "mimeType": "application/x-msdownload"}
    ticket = _create_ticket(api, category_id, attachments=[forged])
    [saved] = ticket["attachments"]
    assert saved["storedName"] == attachment["storedName"]
    assert saved["size"] == len(b"\x89PNG fake")
    assert saved["mimeType"] == "image/png"
    assert saved["originalName"] == "screen.png"

    rejected = api.client.post(
        "/api/attachments",
        files=[("files", ("payload.exe", b"MZ", "application/octet-stream"))],
        headers=api.auth("alice"),
    )
    assert rejected.status_code == 400

    unknown = api.client.post(
        "/api/tickets",
        json={
            "subject": "x",
            "description": "y",
            "category": category_id,
            "attachments": [{"storedName": "nope.png"}],
        },
        headers=api.auth("alice"),
    )
    assert unknown.status_code == 400


def test_user_endpoints(api: ApiHarness) -> None:
    agents = api.client.get("/api/users/agents", headers=api.auth("bob")).json()
    assert [user["username"] for user in agents] == ["bob", "root"]

    listing = api.client.get("/api/users", params={"role": "user"}, headers=api.auth("root")).json()
    assert sorted(user["username"] for user in listing["users"]) == ["alice", "carol"]
    assert api.client.get("/api/users", headers=api.auth("bob")).status_code == 403

    updated = api.client.put(
        f"/api/users/{api.ids['alice']}",
        json={"role": "admin", "notifications": {"email": False}},
        headers=api.auth("alice"),
    ).json()["user"]
    assert updated["role"] == "user"
    assert updated["notifications"]["email"] is False

    dashboard = api.client.get(f"/api/users/{api.ids['alice']}/dashboard", headers=api.auth("alice")).json()
    assert dashboard["user"]["username"] == "alice"
    assert dashboard["ticketStats"]["Open"] == 0


def test_vote_body_uses_type_field(api: ApiHarness) -> None:
    ticket_id = _create_ticket(api, _create_category(api))["id"]
    url = f"/api/tickets/{ticket_id}/vote"

    up = api.client.post(url, json={"type": "up"}, headers=api.auth("bob"))
    assert up.status_code == 200, up.text
    assert (up.json()["upvotes"], up.json()["userVote"]) == (1, "up")

    down = api.client.post(url, json={"voteType": "down"}, headers=api.auth("carol"))
    assert down.json()["downvotes"] == 1

    missing = api.client.post(url, json={}, headers=api.auth("alice"))
    assert missing.status_code == 400
    assert missing.json() == {"message": "Invalid vote type", "field": "type"}

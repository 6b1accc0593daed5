from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional

import pytest
from fastapi.testclient import TestClient
from prometheus_client.parser import text_string_to_metric_families


def as_user(username: str) -> Dict[str, str]:
    return {"X-Forwarded-User": username}


def _read_metric(client: TestClient, metric: str, labels: Optional[Dict[str, str]] = None) -> float:
    response = client.get("/metrics")
    response.raise_for_status()
    for family in text_string_to_metric_families(response.text):
        for sample in family.samples:
            if sample.name != metric:
                continue
            if labels is None or dict(sample.labels) == labels:
                return float(sample.value)
    return 0.0


@pytest.fixture(autouse=True)
def _env(monkeypatch):
    monkeypatch.syspath_prepend(str(Path(__file__).resolve().parents[1]))
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.delenv("COMPLETION_ROSTER_SIZE", raising=False)
    from teamspace.config import completion_roster_size

    completion_roster_size.cache_clear()


@pytest.fixture()
def client():
    from teamspace.db import init_db
    from teamspace.main import create_app
    from teamspace.notifications import reset_notification_service

    init_db()
    reset_notification_service()
    return TestClient(create_app(), raise_server_exceptions=False)


@pytest.fixture()
def project_id(client):
    response = client.post("/v1/projects", json={"name": "Launch", "members": ["b", "c"]}, headers=as_user("a"))
    assert response.status_code == 201
    payload = response.json()
    assert payload["members"] == ["a", "b", "c"]
    return payload["id"]


def _audit(client, project_id, username, action, **body):
    body.setdefault("folder", "docs")
    body.setdefault("file_name", "plan.pdf")
    return client.post(
        f"/v1/projects/{project_id}/audit",
        json={"action": action, **body},
        headers=as_user(username),
    )


def test_status_endpoints(client):
    assert client.get("/status").json() == {"status": "ok", "version": "0.1.0"}
    assert client.get("/v1/status").status_code == 200

    payload = client.get("/status/db").json()
    assert payload["ok"] is True
    assert payload["details"]["backend"] == "sqlite"
    assert all(payload["details"]["tables"].values())


def test_startup_creates_the_schema(monkeypatch, tmp_path):
    from teamspace.config import is_create_all_enabled
    from teamspace.main import create_app

    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'startup.db'}")
    monkeypatch.setenv("SQLMODEL_CREATE_ALL", "1")
    is_create_all_enabled.cache_clear()
    try:
        with TestClient(create_app()) as fresh:
            created = fresh.post("/v1/projects", json={"name": "Launch"}, headers=as_user("a"))
            tables = fresh.get("/status/db").json()["details"]["tables"]
    finally:
        is_create_all_enabled.cache_clear()

    assert created.status_code == 201
    assert all(tables.values())


def test_requests_without_identity_are_rejected(client, project_id):
    response = client.get(f"/v1/projects/{project_id}")
    assert response.status_code == 401
    assert response.headers["content-type"].startswith("application/problem+json")
    assert response.json()["code"] == "http_error"


def test_non_members_are_forbidden(client, project_id):
    assert client.get(f"/v1/projects/{project_id}", headers=as_user("zed")).status_code == 403
    assert _audit(client, project_id, "zed", "preview").status_code == 403
    response = client.get("/v1/notifications", params={"project_id": project_id}, headers=as_user("zed"))
    assert response.status_code == 403
    assert client.get("/v1/projects/prj_missing", headers=as_user("a")).status_code == 404


def test_upload_and_preview_flow(client, project_id):
    created = _audit(client, project_id, "a", "upload")
    assert created.status_code == 200
    assert created.json()["status"] == "created"

    feed = client.get("/v1/notifications", params={"project_id": project_id}, headers=as_user("b")).json()
    assert [item["file_name"] for item in feed["uploads"]] == ["plan.pdf"]
    assert feed["unread_count"] == 1

    first = _audit(client, project_id, "b", "preview").json()
    again = _audit(client, project_id, "b", "preview").json()
    assert first["status"] == "created"
    assert again["status"] == "already_recorded"
    assert again["record_id"] == first["record_id"]
    assert not again["recorded"]
    assert _audit(client, project_id, "a", "preview").json()["status"] == "uploader_excluded"

    count = client.get("/v1/notifications/count", params={"project_id": project_id}, headers=as_user("b")).json()
    assert count["unread_count"] == 0
    count_c = client.get("/v1/notifications/count", headers=as_user("c")).json()
    assert (count_c["unread_count"], count_c["uploads"]) == (1, 1)

    page = client.get(
        f"/v1/projects/{project_id}/audit", params={"action": "preview"}, headers=as_user("c")
    ).json()
    assert page["total"] == 1
    assert [m["username"] for m in page["items"][0]["members"]] == ["b"]

    record = client.get(f"/v1/projects/{project_id}/audit/{first['record_id']}", headers=as_user("c"))
    assert record.status_code == 200
    assert record.json()["action"] == "preview"
    missing = client.get(f"/v1/projects/{project_id}/audit/aud_missing", headers=as_user("c"))
    assert missing.status_code == 404
    assert missing.json()["code"] == "not_found"

    (status,) = client.get(
        f"/v1/projects/{project_id}/files/status", params={"folder": "docs"}, headers=as_user("a")
    ).json()
    assert status["viewed_by"] == ["b"]
    assert status["threshold"] == 2
    assert not status["fully_viewed"]


def test_audit_listing_is_paged_newest_first(client, project_id):
    for index in range(3):
        _audit(client, project_id, "a", "upload", file_name=f"f{index}.txt")

    page = client.get(
        f"/v1/projects/{project_id}/audit",
        params={"action": "upload", "size": 2},
        headers=as_user("b"),
    ).json()
    assert [item["subject_name"] for item in page["items"]] == ["f2.txt", "f1.txt"]
    assert page["has_next"] is True
    assert page["total_pages"] == 2


def test_invalid_audit_requests(client, project_id):
    assert _audit(client, project_id, "a", "preview", file_name=None).status_code == 400
    assert _audit(client, project_id, "a", "rename").status_code == 422
    assert _audit(client, project_id, "a", "upload", color="red").status_code == 422
    response = client.get(
        f"/v1/projects/{project_id}/audit", params={"action": "rename"}, headers=as_user("a")
    )
    assert response.status_code == 400


def test_events_notify_the_roster(client, project_id):
    response = client.post(
        f"/v1/projects/{project_id}/events",
        json={"topic": "Demo day", "starts_at": "2999-01-01T09:00:00Z"},
        headers=as_user("a"),
    )
    assert response.status_code == 201
    event = response.json()
    assert event["notified"] == ["b", "c"]

    feed = client.get("/v1/notifications", params={"project_id": project_id}, headers=as_user("b")).json()
    assert [item["event_id"] for item in feed["events"]] == [event["id"]]
    assert feed["unread_breakdown"]["events"] == 1

    url = f"/v1/notifications/events/{event['id']}/read"
    first = client.post(url, params={"project_id": project_id}, headers=as_user("b")).json()
    second = client.post(url, params={"project_id": project_id}, headers=as_user("b")).json()
    assert first == {"changed": True, "read": True}
    assert second["changed"] is False

    deleted = client.delete(f"/v1/projects/{project_id}/events/{event['id']}", headers=as_user("a"))
    assert deleted.json()["is_deleted"] is True
    feed_c = client.get("/v1/notifications", params={"project_id": project_id}, headers=as_user("c")).json()
    assert feed_c["events"] == []


def test_chat_mentions(client, project_id):
    url = f"/v1/projects/{project_id}/chat"
    sent = client.post(url, json={"message": "hi @b", "client_key": "k1"}, headers=as_user("a")).json()
    resent = client.post(url, json={"message": "hi @b", "client_key": "k1"}, headers=as_user("a")).json()
    assert sent["mentions"] == ["b"]
    assert resent["id"] == sent["id"]
    assert [m["id"] for m in client.get(url, headers=as_user("c")).json()] == [sent["id"]]

    feed = client.get("/v1/notifications", headers=as_user("b")).json()
    (mention,) = feed["mentions"]
    assert feed["project_names"] == {project_id: "Launch"}

    read_url = f"/v1/notifications/mentions/{mention['id']}/read"
    assert client.post(read_url, headers=as_user("c")).json()["changed"] is False
    assert client.post(read_url, headers=as_user("b")).json()["changed"] is True
    assert client.get("/v1/notifications/count", headers=as_user("b")).json()["mentions"] == 0


def test_roster_management(client, project_id):
    url = f"/v1/projects/{project_id}/members"
    assert client.post(url, json={"username": "d"}, headers=as_user("a")).json()["usernames"] == ["a", "b", "c", "d"]
    assert client.post(url, json={"username": "d"}, headers=as_user("a")).json()["usernames"] == ["a", "b", "c", "d"]
    assert client.get(url, headers=as_user("d")).status_code == 200


def test_store_outage_returns_retry_after(client, project_id):
    from teamspace.auth import get_current_user
    from teamspace.errors import TransientStoreError
    from teamspace.main import create_app
    from teamspace.notifications import get_notification_service

    class Unavailable:
        def aggregate(self, viewer, project_id=None):
            raise TransientStoreError("Notifications temporarily unavailable", retry_after=3)

    app = create_app()
    app.dependency_overrides[get_current_user] = lambda: {"sub": "b"}
    app.dependency_overrides[get_notification_service] = lambda: Unavailable()
    response = TestClient(app, raise_server_exceptions=False).get("/v1/notifications")

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "3"
    assert response.json()["code"] == "store_unavailable"


def test_change_stream_rejects_bad_subscriptions(client, project_id):
    url = "/v1/changes/stream"
    assert client.get(url, params={"table": "audit_records"}).status_code == 401
    assert client.get(url, params={"table": "projects"}, headers=as_user("a")).status_code == 400
    assert client.get(url, params={"table": "audit_records"}, headers=as_user("a")).status_code == 400
    forbidden = client.get(url, params={"table": "audit_records", "project_id": project_id}, headers=as_user("zed"))
    assert forbidden.status_code == 403


def test_ledger_writes_are_counted(client, project_id):
    labels = {"action": "upload", "outcome": "created"}
    before = _read_metric(client, "ledger_writes_total", labels)
    _audit(client, project_id, "a", "upload")
    assert _read_metric(client, "ledger_writes_total", labels) == before + 1

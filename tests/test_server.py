import asyncio

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from cortex_brain.notify import SessionRegistry
from cortex_brain.server import create_app

USER = {"X-User-Id": "u1"}


@pytest.fixture
def sessions():
    return SessionRegistry()


@pytest.fixture
def client(service, sessions, cfg):
    with TestClient(create_app(service, sessions, cfg=cfg)) as c:
        yield c


def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_submit_and_fetch_brain_request(client):
    resp = client.post("/brain", json={"query": "plan my week", "targetLanguage": "de"}, headers=USER)
    assert resp.status_code == 202
    body = resp.json()
    assert body["status"] == "pending"

    job = client.get(f"/brain/{body['id']}", headers=USER).json()
    assert job["id"] == body["id"]
    assert job["status"] == "pending"
    assert [j["id"] for j in client.get("/brain", headers=USER).json()] == [body["id"]]


def test_other_users_cannot_see_requests(client):
    job_id = client.post("/brain", json={"query": "secret"}, headers=USER).json()["id"]
    resp = client.get(f"/brain/{job_id}", headers={"X-User-Id": "u2"})
    assert resp.status_code == 404


def test_bad_requests(client):
    assert client.post("/brain", json={}, headers=USER).status_code == 400
    assert client.post("/brain", json={"query": "hi", "lobe": "cerebellum"}, headers=USER).status_code == 400
    assert client.post("/brain", json={"query": "hi"}).status_code == 401
    assert client.get("/brain/nope", headers=USER).status_code == 404


def test_memory_endpoints(client):
    resp = client.post("/memory", json={"content": "Paris is in France", "context": "geo"}, headers=USER)
    assert resp.status_code == 201
    memory = resp.json()
    assert memory["types"] == "answer"

    assert len(client.get("/memory", headers=USER).json()) == 1
    found = client.get("/memory/search", params={"q": "paris"}, headers=USER).json()
    assert [m["id"] for m in found] == [memory["id"]]
    assert client.get("/memory/search", params={"q": ""}, headers=USER).status_code == 400
    assert client.get(f"/memory/{memory['id']}", headers=USER).json()["content"] == "Paris is in France"

    review = client.post(f"/memory/{memory['id']}/review", json={"score": 4}, headers=USER)
    assert review.status_code == 200
    assert review.json()["nextReviewDate"]
    assert client.post(f"/memory/{memory['id']}/review", json={"score": "4"}, headers=USER).status_code == 400
    assert client.post(f"/memory/{memory['id']}/review", json={"score": 9}, headers=USER).status_code == 400

    stats = client.get("/stats", headers=USER).json()
    assert stats["totalMemories"] == 1
    assert stats["dueCount"] == 0

    assert client.delete(f"/memory/{memory['id']}", headers=USER).status_code == 204
    assert client.get(f"/memory/{memory['id']}", headers=USER).status_code == 404


def test_memory_requires_content(client):
    assert client.post("/memory", json={"content": ""}, headers=USER).status_code == 400


def test_files_and_settings(client, tmp_path):
    doc = tmp_path / "plan.pdf"
    doc.write_bytes(b"%PDF")
    resp = client.post("/files", json={"originalName": "plan.pdf", "path": str(doc)}, headers=USER)
    assert resp.status_code == 201
    file = resp.json()
    assert file["mimeType"] == "application/pdf"

    job = client.post("/brain", json={"fileId": file["id"]}, headers=USER)
    assert job.status_code == 202

    assert client.get("/settings", headers=USER).json() == {
        "memoryEnabled": True,
        "visionEnabled": False,
        "notificationsEnabled": True,
    }
    updated = client.put("/settings", json={"visionEnabled": True}, headers=USER).json()
    assert updated["visionEnabled"] is True
    assert updated["memoryEnabled"] is True


def test_metrics(client):
    client.get("/healthz")
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert b"brain_http_requests_total" in resp.content


def test_bearer_token(service, sessions, cfg):
    cfg.api_token = "secret"
    with TestClient(create_app(service, sessions, cfg=cfg)) as client:
        assert client.get("/brain", headers=USER).status_code == 401
        wrong = {**USER, "Authorization": "Bearer nope"}
        assert client.get("/brain", headers=wrong).status_code == 401
        good = {**USER, "Authorization": "Bearer secret"}
        assert client.get("/brain", headers=good).status_code == 200
        assert client.get("/metrics").status_code == 401


def test_websocket_receives_notifications(client, sessions):
    with client.websocket_connect("/ws/u1") as ws:
        assert sessions.connected("u1") == 1
        asyncio.run(sessions.notify("u1", "brain_done", {"requestId": "r1", "output": "hi"}))
        assert ws.receive_json() == {"event": "brain_done", "data": {"requestId": "r1", "output": "hi"}}
    assert sessions.connected("u1") == 0


def test_websocket_token(service, sessions, cfg):
    cfg.api_token = "secret"
    with TestClient(create_app(service, sessions, cfg=cfg)) as client:
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws/u1") as ws:
                ws.receive_json()
        with client.websocket_connect("/ws/u1?token=secret"):
            assert sessions.connected("u1") == 1


def test_memory_graph(client):
    for content in ("Gardening needs patience", "Patience pays off in gardening", "Unrelated"):
        client.post("/memory", json={"content": content}, headers=USER)
    resp = client.get("/memory/graph", headers=USER)
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "OK"
    assert body["stats"] == {"totalNodes": 3, "totalLinks": 1}
    assert body["data"]["links"][0]["strength"] == 2
    assert client.get("/memory/graph").status_code == 401

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from tiktik.config import settings
from tiktik.main import app, get_real_ip, status_for
from tiktik.errors import (
    BackendUnavailableError,
    BannedError,
    CooldownError,
    MessageLengthError,
    NotModeratorError,
    StreamNotFoundError,
    UnauthenticatedError,
)
from tiktik.models import Viewer

OWNER = Viewer(uid="owner-1", display_name="Streamer")
ALICE = Viewer(uid="alice", display_name="alice")


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(settings, "STORAGE_TYPE", "memory")
    monkeypatch.setattr(settings, "ANALYTICS_ENABLED", False)
    monkeypatch.setattr(settings, "IDENTITY_SECRET", "test-secret")
    monkeypatch.setattr(settings, "IDENTITY_ISSUER", "")
    monkeypatch.setattr(settings, "IDENTITY_AUDIENCE", "")
    monkeypatch.setattr(settings, "STORAGE_BUCKET", "")
    with TestClient(app) as client:
        yield client


def token_for(client, viewer):
    return client.app.state.identity.create_token(viewer)


def auth(client, viewer):
    return {"Authorization": f"Bearer {token_for(client, viewer)}"}


@pytest.fixture
def stream_id(client):
    response = client.post(
        "/streams", json={"title": "Morning show"}, headers=auth(client, OWNER)
    )
    assert response.status_code == 200
    return response.json()["id"]


def receive_until(ws, frame_type):
    while True:
        frame = ws.receive_json()
        if frame["type"] == frame_type:
            return frame


def test_status_mapping():
    assert status_for(UnauthenticatedError()) == 401
    assert status_for(NotModeratorError()) == 403
    assert status_for(BannedError()) == 403
    assert status_for(StreamNotFoundError("s1")) == 404
    assert status_for(MessageLengthError(200)) == 400
    assert status_for(CooldownError(2)) == 429
    assert status_for(BackendUnavailableError("down")) == 503


def test_real_ip_prefers_proxy_headers():
    class FakeRequest:
        def __init__(self, headers):
            self.headers = headers
            self.client = None

    assert get_real_ip(FakeRequest({"X-Forwarded-For": "1.2.3.4, 10.0.0.1"})) == "1.2.3.4"
    assert get_real_ip(FakeRequest({"CF-Connecting-IP": "5.6.7.8", "X-Real-IP": "9.9.9.9"})) == "5.6.7.8"
    assert get_real_ip(FakeRequest({})) == "unknown"


def test_health(client):
    body = client.get("/health").json()
    assert body == {"status": "healthy", "storage": "connected", "mongodb": "disabled"}
    assert client.get("/api/health").json()["identity"] is True


def test_client_config(client, monkeypatch):
    assert client.get("/api/get-config").status_code == 500

    monkeypatch.setattr(settings, "IDENTITY_ISSUER", "https://id.tiktik.test")
    monkeypatch.setattr(settings, "IDENTITY_AUDIENCE", "tiktik")
    body = client.get("/api/get-config").json()
    assert body["identity"] == {"issuer": "https://id.tiktik.test", "audience": "tiktik"}


def test_start_stream_requires_sign_in(client):
    assert client.post("/streams", json={}).status_code == 401
    response = client.post("/streams", json={}, headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401


def test_stream_lifecycle(client, stream_id):
    stream = client.get(f"/streams/{stream_id}").json()
    assert stream["owner_id"] == "owner-1"
    assert stream["is_live"] is True

    live = client.get("/streams/live").json()
    assert live["count"] == 1

    response = client.post(f"/streams/{stream_id}/end", headers=auth(client, ALICE))
    assert response.status_code == 403

    response = client.post(f"/streams/{stream_id}/end", headers=auth(client, OWNER))
    assert response.status_code == 200
    assert response.json()["stream"]["was_live"] is True
    assert client.get("/streams/live").json()["count"] == 0

    response = client.delete(f"/streams/{stream_id}", headers=auth(client, OWNER))
    assert response.status_code == 200
    assert client.get(f"/streams/{stream_id}").status_code == 404


def test_unknown_stream(client):
    response = client.get("/streams/missing")
    assert response.status_code == 404
    assert response.json()["detail"] == "Stream missing not found"


def test_moderation_routes(client, stream_id):
    base = f"/streams/{stream_id}/moderation"

    response = client.post(f"{base}/ban", json={"viewer_id": "alice"}, headers=auth(client, ALICE))
    assert response.status_code == 403

    response = client.post(f"{base}/ban", json={"viewer_id": "alice"}, headers=auth(client, OWNER))
    assert response.status_code == 200

    response = client.post(
        f"{base}/timeout", json={"viewer_id": "bob", "duration_ms": 30000}, headers=auth(client, OWNER)
    )
    assert response.status_code == 200
    assert "expires_at" in response.json()

    response = client.post(
        f"{base}/slow-mode", json={"enabled": True, "duration_ms": 10000}, headers=auth(client, OWNER)
    )
    assert response.json()["slow_mode_enabled"] is True

    response = client.post(f"{base}/slow-mode/toggle", headers=auth(client, OWNER))
    assert response.json()["slow_mode_enabled"] is False

    chat_settings = client.get(f"/streams/{stream_id}/chat/settings").json()
    assert chat_settings == {
        "banned_users": ["alice"],
        "slow_mode_enabled": False,
        "slow_mode_duration_ms": 10000,
    }


def test_viewers_and_chat_history(client, stream_id):
    body = client.get(f"/streams/{stream_id}/viewers").json()
    assert body["current_viewers"] == 0
    assert body["viewers"] == []

    body = client.get(f"/streams/{stream_id}/chat").json()
    assert body["messages"] == []


def test_chat_history_after_websocket_send(client, stream_id):
    with client.websocket_connect(f"/live/{stream_id}/ws?token={token_for(client, ALICE)}") as ws:
        ws.receive_json()
        ws.send_json({"type": "chat", "text": "first!"})
        receive_until(ws, "message")

    body = client.get(f"/streams/{stream_id}/chat?limit=10").json()
    assert body["count"] == 1
    assert body["messages"][0]["text"] == "first!"
    assert body["messages"][0]["sender_name"] == "alice"
    assert client.get(f"/streams/{stream_id}/chat?limit=0").status_code == 422


def test_upload_url_demo_mode(client):
    response = client.post(
        "/api/generate-upload-url",
        json={"fileName": "clip.mp4", "fileType": "video/mp4", "kind": "short"},
        headers=auth(client, ALICE),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["fileKey"].startswith("shorts/")
    assert "/mock-upload/" in body["uploadUrl"]


def test_upload_url_validation(client):
    payload = {"fileName": "clip.mp4", "fileType": "video/mp4"}
    assert client.post("/api/generate-upload-url", json=payload).status_code == 401

    response = client.post(
        "/api/generate-upload-url",
        json={**payload, "kind": "podcast"},
        headers=auth(client, ALICE),
    )
    assert response.status_code == 400


def test_analytics_disabled(client, stream_id):
    assert client.get(f"/analytics/streams/{stream_id}").status_code == 503


def test_websocket_chat_between_viewers(client, stream_id):
    with client.websocket_connect(f"/live/{stream_id}/ws?token={token_for(client, OWNER)}") as owner_ws:
        welcome = owner_ws.receive_json()
        assert welcome["type"] == "welcome"
        assert welcome["is_moderator"] is True

        with client.websocket_connect(f"/live/{stream_id}/ws?token={token_for(client, ALICE)}") as alice_ws:
            welcome = alice_ws.receive_json()
            assert welcome["is_moderator"] is False
            assert welcome["can_chat"] is True

            alice_ws.send_json({"type": "chat", "text": "hi there"})
            seen_by_owner = receive_until(owner_ws, "message")["message"]
            seen_by_alice = receive_until(alice_ws, "message")["message"]

            assert seen_by_owner["text"] == "hi there"
            assert seen_by_owner["show_mod_actions"] is True
            assert seen_by_alice["show_mod_actions"] is False

            alice_ws.send_json({"type": "chat", "text": "again"})
            warning = receive_until(alice_ws, "warning")
            assert warning["message"].startswith("Please wait")

            alice_ws.send_json({"type": "end_stream"})
            assert receive_until(alice_ws, "error")["message"] == "Only the stream owner can do that"

            owner_ws.send_json({"type": "ban", "viewer_id": "alice"})
            assert receive_until(owner_ws, "chat_settings")["settings"]["banned_users"] == ["alice"]

            alice_ws.send_json({"type": "super_chat", "text": "please", "amount": 50})
            assert receive_until(alice_ws, "warning")["message"] == "You are banned from this chat"

        owner_ws.send_json({"type": "end_stream"})
        assert receive_until(owner_ws, "stream_ended")["stream_id"] == stream_id

    assert client.get(f"/streams/{stream_id}").json()["is_live"] is False


def test_websocket_anonymous_viewer(client, stream_id):
    with client.websocket_connect(f"/live/{stream_id}/ws") as ws:
        welcome = ws.receive_json()
        assert welcome["viewer_id"] is None
        assert welcome["can_chat"] is False

        ws.send_json({"type": "chat", "text": "hello"})
        assert receive_until(ws, "error")["message"] == "Please sign in to chat"

        ws.send_text("not json")
        assert receive_until(ws, "error")["message"] == "Malformed frame"

        ws.send_json({"type": "dance"})
        assert receive_until(ws, "error")["message"] == "Malformed frame"


def test_websocket_rejects_bad_token(client, stream_id):
    with client.websocket_connect(f"/live/{stream_id}/ws?token=nope") as ws:
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_json()
    assert exc.value.code == 4401


def test_websocket_unknown_stream(client):
    with client.websocket_connect("/live/missing/ws") as ws:
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_json()
    assert exc.value.code == 4404

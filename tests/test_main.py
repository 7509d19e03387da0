"""REST and WebSocket tests against the FastAPI app with the SDK replaced by scripted sessions."""

import uuid
from pathlib import Path

import pytest
from claude_agent_sdk.types import PermissionResultAllow
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

import main
from sdk_messages import (
    FakeSessionFactory,
    FakeSummarizer,
    ask_permission,
    assistant,
    init,
    result,
    text,
    text_delta,
)

AUTH = {"Authorization": f"Bearer {main.AUTH_TOKEN}"}
WS_URL = f"/ws?token={main.AUTH_TOKEN}"


@pytest.fixture
def client():
    with TestClient(main.app) as test_client:
        yield test_client


def _create_conversation(client, **body):
    response = client.post("/api/conversations", headers=AUTH, json=body or None)
    assert response.status_code == 201
    return response.json()


def _receive_until(ws, event_type):
    events = []
    while True:
        event = ws.receive_json()
        events.append(event)
        if event["type"] == event_type:
            return events


def test_health_needs_no_auth(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert "timestamp" in response.json()


@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}, {"Authorization": "wrong"}])
def test_api_requires_bearer_token(client, headers):
    assert client.get("/api/conversations", headers=headers).status_code == 401


def test_create_conversation_defaults(client):
    conversation = _create_conversation(client)

    assert conversation["title"] == "New conversation"
    assert conversation["cwd"] == str(Path(main.DEFAULT_CWD).resolve())
    assert conversation["status"] == "active"
    assert conversation["session_id"] is None
    ids = [c["id"] for c in client.get("/api/conversations", headers=AUTH).json()]
    assert conversation["id"] in ids


def test_create_conversation_with_cwd_and_title(client, tmp_path):
    conversation = _create_conversation(client, cwd=str(tmp_path), title="Refactor auth")
    assert conversation["cwd"] == str(tmp_path.resolve())
    assert conversation["title"] == "Refactor auth"

    response = client.post("/api/conversations", headers=AUTH, json={"cwd": str(tmp_path / "missing")})
    assert response.status_code == 400


def test_delete_conversation(client):
    conversation = _create_conversation(client)

    assert client.delete(f"/api/conversations/{conversation['id']}", headers=AUTH).json() == {"ok": True}
    assert client.delete(f"/api/conversations/{conversation['id']}", headers=AUTH).status_code == 404
    assert client.get(f"/api/conversations/{conversation['id']}/messages", headers=AUTH).status_code == 404


def test_filesystem_listing_stays_under_root(client):
    root = Path(main.DEFAULT_CWD).resolve()
    base = root / f"browse-{uuid.uuid4().hex}"
    for name in ("beta", "alpha", ".git"):
        (base / name).mkdir(parents=True)
    (base / "notes.txt").write_text("x")

    listing = client.get("/api/filesystem/list", headers=AUTH, params={"path": str(base)}).json()
    assert listing["path"] == str(base)
    assert listing["parent"] == str(root)
    assert listing["entries"] == [
        {"name": "alpha", "path": str(base / "alpha")},
        {"name": "beta", "path": str(base / "beta")},
    ]

    top = client.get("/api/filesystem/list", headers=AUTH).json()
    assert top["path"] == str(root)
    assert top["parent"] is None

    def status_for(path):
        return client.get("/api/filesystem/list", headers=AUTH, params={"path": path}).status_code

    assert status_for(str(root.parent)) == 403
    assert status_for(str(base / ".." / ".." / "..")) == 403
    assert status_for(str(base / "nope")) == 404
    assert status_for(str(base / "notes.txt")) == 400


def test_permission_log_without_redis(client):
    assert client.get("/api/permissions/log", headers=AUTH).json() == {"entries": []}


def test_websocket_rejects_bad_token(client):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/ws?token=wrong"):
            pass
    assert exc_info.value.code == 1008


def test_chat_streams_events_and_persists(client):
    conversation = _create_conversation(client)
    main.agent_manager.session_factory = FakeSessionFactory(
        [init("sess-ws"), text_delta(0, "Hi"), assistant(text("Hi there")), result(cost=0.01, duration_ms=800)]
    )

    with client.websocket_connect(WS_URL) as ws:
        ws.send_json({"type": "chat", "conversationId": conversation["id"], "message": "hello there"})
        events = _receive_until(ws, "result")

    assert [event["type"] for event in events] == ["text_delta", "assistant_message", "result"]
    assert events[1] == {
        "type": "assistant_message",
        "conversationId": conversation["id"],
        "content": "Hi there",
        "contentBlocks": [{"type": "text", "text": "Hi there"}],
    }
    assert events[2] == {
        "type": "result",
        "conversationId": conversation["id"],
        "success": True,
        "costUsd": 0.01,
        "durationMs": 800,
    }

    messages = client.get(f"/api/conversations/{conversation['id']}/messages", headers=AUTH).json()
    assert [(m["role"], m["content"]) for m in messages] == [("user", "hello there"), ("assistant", "Hi there")]
    assert messages[1]["content_blocks"] == [{"type": "text", "text": "Hi there"}]
    listed = {c["id"]: c for c in client.get("/api/conversations", headers=AUTH).json()}
    assert listed[conversation["id"]]["title"] == "hello there"
    assert listed[conversation["id"]]["session_id"] == "sess-ws"


def test_permission_round_trip_over_websocket(client):
    conversation = _create_conversation(client)
    outcomes = []
    main.agent_manager.session_factory = FakeSessionFactory(
        [ask_permission("Bash", {"command": "ls"}, outcomes), result()]
    )

    with client.websocket_connect(WS_URL) as ws:
        ws.send_json({"type": "chat", "conversationId": conversation["id"], "message": "list files"})
        request = ws.receive_json()
        assert request["type"] == "permission_request"
        assert request["toolName"] == "Bash"
        assert request["input"] == {"command": "ls"}

        ws.send_json({"type": "permission_response", "permissionId": request["permissionId"], "approved": True})
        assert ws.receive_json()["type"] == "result"

    assert isinstance(outcomes[0], PermissionResultAllow)
    assert outcomes[0].updated_input == {"command": "ls"}


def test_bad_frames_keep_connection_open(client):
    with client.websocket_connect(WS_URL) as ws:
        ws.send_text("{oops")
        assert ws.receive_json() == {"type": "error", "conversationId": "", "message": "Invalid JSON"}

        ws.send_json({"type": "dance", "conversationId": "c1"})
        assert ws.receive_json() == {"type": "error", "conversationId": "c1", "message": "Unknown message type: dance"}

        ws.send_json({"type": "chat", "conversationId": "c1"})
        assert ws.receive_json()["message"] == "Missing conversationId or message"

        ws.send_json({"type": "interrupt", "conversationId": "c1"})
        assert ws.receive_json() == {"type": "error", "conversationId": "c1", "message": "No active query to interrupt"}

        ws.send_json({"type": "chat", "conversationId": "missing", "message": "hi"})
        assert ws.receive_json()["message"] == "Conversation not found"


def test_archive_over_websocket(client):
    conversation = _create_conversation(client)
    main.agent_manager.summarizer = FakeSummarizer()

    with client.websocket_connect(WS_URL) as ws:
        ws.send_json({"type": "archive", "conversationId": conversation["id"]})
        assert ws.receive_json()["type"] == "archived"
        summary = ws.receive_json()
        assert summary == {
            "type": "summary_ready",
            "conversationId": conversation["id"],
            "summary": "No messages in this conversation.",
        }

        ws.send_json({"type": "archive", "conversationId": conversation["id"]})
        assert ws.receive_json()["message"] == "Already archived"

    listed = {c["id"]: c for c in client.get("/api/conversations", headers=AUTH).json()}
    assert listed[conversation["id"]]["status"] == "archived"
    assert listed[conversation["id"]]["summary"] == "No messages in this conversation."


def test_running_query_is_announced_and_blocks_deletion(client):
    conversation = _create_conversation(client)
    main.agent_manager.session_factory = FakeSessionFactory([text_delta(0, "working")], block_until_interrupt=True)

    with client.websocket_connect(WS_URL) as first:
        first.send_json({"type": "chat", "conversationId": conversation["id"], "message": "long task"})
        assert first.receive_json()["type"] == "text_delta"

        with client.websocket_connect(WS_URL) as second:
            assert second.receive_json() == {"type": "active_queries", "conversationIds": [conversation["id"]]}

        response = client.delete(f"/api/conversations/{conversation['id']}", headers=AUTH)
        assert response.status_code == 409

        first.send_json({"type": "interrupt", "conversationId": conversation["id"]})

    assert main.agent_manager.session_factory.sessions[0].interrupt_calls == 1

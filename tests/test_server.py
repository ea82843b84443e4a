from __future__ import annotations

from pathlib import Path
from typing import Any, Dict

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from dm_server.auth import issue_token
from dm_server.server import create_app


def _app(tmp_path: Path, **overrides: Any):
    cfg: Dict[str, Any] = {
        "storage": {"backend": "disk", "data_dir": str(tmp_path / "conversations")},
        "directory": {"seed": [{"id": "alice", "display_name": "Alice"}, {"id": "bob", "display_name": "Bob"}]},
    }
    for section, values in overrides.items():
        cfg.setdefault(section, {}).update(values)
    return create_app(str(tmp_path / "missing.yaml"), overrides=cfg)


def recv_until(ws, kind: str, limit: int = 20) -> Dict[str, Any]:
    """Read events until one of type ``kind`` arrives."""
    for _ in range(limit):
        event = ws.receive_json()
        if event["type"] == kind:
            return event
    raise AssertionError(f"no {kind!r} event within {limit} frames")


def login(ws, token: str) -> Dict[str, Any]:
    ws.send_json({"type": "authenticate", "token": token})
    authed = recv_until(ws, "authenticated")
    recv_until(ws, "online")
    return authed


def test_http_identity_routes(tmp_path: Path, clean_env):
    with TestClient(_app(tmp_path)) as client:
        assert client.get("/").json()["ok"] is True
        assert client.get("/health").json()["identities"] == 2

        r = client.post("/identities", json={"id": "carol", "display_name": "Carol"})
        assert r.status_code == 201
        assert r.json() == {"id": "carol", "display_name": "Carol", "online": False}

        assert client.post("/identities", json={"id": "carol"}).status_code == 409
        assert client.post("/identities", json={"id": ""}).status_code == 422
        assert client.post("/identities", json={"id": "   "}).status_code == 400

        listing = client.get("/identities", params={"exclude": "alice"}).json()["identities"]
        assert [i["id"] for i in listing] == ["bob", "carol"]


def test_websocket_conversation_flow(tmp_path: Path, clean_env):
    with TestClient(_app(tmp_path)) as client:
        with client.websocket_connect("/ws") as alice, client.websocket_connect("/ws") as bob:
            assert login(alice, "alice")["identity"] == {"id": "alice", "display_name": "Alice"}
            login(bob, "bob")
            presence = recv_until(alice, "presence")
            assert presence["identity_id"] == "bob" and presence["online"] is True
            assert client.get("/presence").json()["online"] == ["alice", "bob"]

            alice.send_json({"type": "join", "peer_id": "bob"})
            assert recv_until(alice, "history")["messages"] == []

            alice.send_json({"type": "send", "recipient_id": "bob", "text": "hi"})
            assert recv_until(alice, "message")["message"]["text"] == "hi"
            assert recv_until(bob, "message")["message"]["sender_id"] == "alice"
            note = recv_until(bob, "notification")
            assert note["sender_name"] == "Alice" and note["preview"] == "hi"

            bob.send_json({"type": "join", "peer_id": "alice"})
            history = recv_until(bob, "history")
            assert [(m["sender_id"], m["text"]) for m in history["messages"]] == [("alice", "hi")]

            bob.send_json({"type": "send", "recipient_id": "alice", "text": "   "})
            err = recv_until(bob, "error")
            assert err["code"] == "empty_message" and err["request"] == "send"

        assert client.get("/presence").json()["online"] == []

    # History is durable across app instances over the same directory.
    with TestClient(_app(tmp_path)) as client:
        with client.websocket_connect("/ws") as bob:
            login(bob, "bob")
            bob.send_json({"type": "join", "peer_id": "alice"})
            assert [m["text"] for m in recv_until(bob, "history")["messages"]] == ["hi"]


def test_invalid_token_and_bad_frames(tmp_path: Path, clean_env):
    with TestClient(_app(tmp_path)) as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "authenticate", "token": "mallory"})
            assert recv_until(ws, "error")["code"] == "invalid_token"
            ws.send_text("{not json")
            assert recv_until(ws, "error")["code"] == "bad_request"
            ws.send_json({"type": "join", "peer_id": "bob"})
            assert recv_until(ws, "error")["code"] == "invalid_state"
            ws.send_json({"type": "ping"})
            assert recv_until(ws, "pong")
            # The connection is still usable after the failures.
            login(ws, "alice")


def test_binary_frames_are_decoded_as_json(tmp_path: Path, clean_env):
    with TestClient(_app(tmp_path)) as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_bytes(b'{"type": "ping"}')
            assert recv_until(ws, "pong")
            ws.send_bytes(b"\xff\xfe")
            err = recv_until(ws, "error")
            assert err["code"] == "bad_request"
            ws.send_bytes(b'{"type": "authenticate", "token": "alice"}')
            assert recv_until(ws, "authenticated")["identity"]["id"] == "alice"


def test_unauthenticated_socket_is_closed_after_timeout(tmp_path: Path, clean_env):
    app = _app(tmp_path, server={"auth_timeout_seconds": 0.2})
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            assert ws.receive_json()["code"] == "auth_timeout"
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
            assert exc.value.code == 1008
        assert app.state.router.session_count == 0


def test_jwt_mode(tmp_path: Path, clean_env):
    app = _app(tmp_path, auth={"mode": "jwt", "jwt_secret": "s3cret"})
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "authenticate", "token": "alice"})
            assert recv_until(ws, "error")["code"] == "invalid_token"
            authed = login(ws, issue_token("alice", "s3cret"))
            assert authed["identity"]["id"] == "alice"

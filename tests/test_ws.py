from __future__ import annotations

import pytest
from starlette.websockets import WebSocketDisconnect

from chatsync.core.security import create_access_token


def _token(user_id: str) -> str:
    return create_access_token(subject=user_id, display_name=user_id.title())


def _auth_headers(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {_token(user_id)}"}


def _direct(client, user_id: str, other_user_id: str) -> str:
    response = client.post(
        "/v1/conversations/direct",
        json={"other_user_id": other_user_id},
        headers=_auth_headers(user_id),
    )
    assert response.status_code == 200
    return response.json()["data"]["id"]


def _receive_until(websocket, predicate, limit: int = 20) -> tuple[dict, list[dict]]:
    skipped: list[dict] = []
    for _ in range(limit):
        frame = websocket.receive_json()
        if predicate(frame):
            return frame, skipped
        skipped.append(frame)
    raise AssertionError(f"expected frame not received, got {skipped}")


def test_ws_rejects_invalid_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/v1/ws?access_token=invalid-token") as websocket:
            websocket.receive_json()


def test_ws_ping_and_invalid_commands(client):
    with client.websocket_connect(f"/v1/ws?access_token={_token('alice')}") as websocket:
        welcome = websocket.receive_json()
        assert welcome["type"] == "connection.welcome"
        assert welcome["user_id"] == "alice"

        websocket.send_json({"op": "ping", "ts": 42})
        assert websocket.receive_json() == {"type": "pong", "ts": 42}

        websocket.send_text("not json")
        error = websocket.receive_json()
        assert error["type"] == "error"
        assert error["error"]["code"] == "INVALID_COMMAND"

        websocket.send_json({"op": "subscribe", "conversation_ids": ["x"]})
        error = websocket.receive_json()
        assert error["error"]["code"] == "INVALID_COMMAND"


def test_ws_open_forbidden_for_non_participant(client):
    conversation_id = _direct(client, "alice", "bob")

    with client.websocket_connect(f"/v1/ws?access_token={_token('carol')}") as websocket:
        assert websocket.receive_json()["type"] == "connection.welcome"

        websocket.send_json({"op": "open", "conversation_id": conversation_id})
        response = websocket.receive_json()
        assert response["type"] == "error"
        assert response["error"]["code"] == "FORBIDDEN_CONVERSATION"


def test_ws_delivers_message_events_to_open_conversations(client):
    conversation_id = _direct(client, "alice", "bob")

    with client.websocket_connect(f"/v1/ws?access_token={_token('bob')}") as websocket:
        assert websocket.receive_json()["type"] == "connection.welcome"

        websocket.send_json({"op": "open", "conversation_id": conversation_id})
        ack, skipped = _receive_until(websocket, lambda frame: frame["type"] == "ack")
        assert ack["op"] == "open"
        assert ack["details"]["state"] == "live"
        states = [frame["payload"]["state"] for frame in skipped if frame["type"] == "subscription.state"]
        assert states == ["subscribing", "live"]

        send_response = client.post(
            f"/v1/conversations/{conversation_id}/messages?wait=true",
            json={"content": {"kind": "text", "text": "hello over ws"}},
            headers=_auth_headers("alice"),
        )
        assert send_response.status_code == 201
        local_id = send_response.json()["data"]["local_id"]

        event, _ = _receive_until(websocket, lambda frame: frame["type"] == "message.appended")
        assert event["conversation_id"] == conversation_id
        message = event["payload"]["message"]
        assert message["local_id"] == local_id
        assert message["sender_id"] == "alice"
        assert message["content"] == {"kind": "text", "text": "hello over ws"}
        assert message["status"] == "sent"

        websocket.send_json({"op": "typing", "conversation_id": conversation_id, "is_typing": True})
        typing, _ = _receive_until(websocket, lambda frame: frame["type"] == "typing.updated")
        assert typing["payload"]["user_ids"] == ["bob"]

        websocket.send_json({"op": "close", "conversation_id": conversation_id})
        closed, _ = _receive_until(websocket, lambda frame: frame["type"] == "ack" and frame["op"] == "close")
        assert closed["details"] == {"conversation_id": conversation_id}


def test_ws_read_command_advances_marker_and_pushes_receipts(client):
    conversation_id = _direct(client, "alice", "bob")

    with client.websocket_connect(f"/v1/ws?access_token={_token('bob')}") as websocket:
        assert websocket.receive_json()["type"] == "connection.welcome"
        websocket.send_json({"op": "open", "conversation_id": conversation_id})
        _receive_until(websocket, lambda frame: frame["type"] == "ack")

        send_response = client.post(
            f"/v1/conversations/{conversation_id}/messages?wait=true",
            json={"content": {"kind": "text", "text": "did you see this?"}},
            headers=_auth_headers("alice"),
        )
        message_id = send_response.json()["data"]["id"]
        _receive_until(websocket, lambda frame: frame["type"] == "message.appended")

        websocket.send_json({"op": "read", "conversation_id": conversation_id})
        frames = [websocket.receive_json() for _ in range(2)]
        by_type = {frame["type"]: frame for frame in frames}
        assert by_type["ack"]["op"] == "read"
        assert by_type["ack"]["details"] == {"conversation_id": conversation_id, "message_id": message_id}
        markers = by_type["receipts.updated"]["payload"]["markers"]
        assert [(marker["user_id"], marker["message_id"]) for marker in markers] == [("bob", message_id)]

        websocket.send_json({"op": "read", "conversation_id": conversation_id, "local_id": "unknown"})
        error, _ = _receive_until(websocket, lambda frame: frame["type"] == "error")
        assert error["error"]["code"] == "NOT_FOUND"

from __future__ import annotations

from chatsync.core.security import create_access_token


def _auth_headers(user_id: str) -> dict[str, str]:
    token = create_access_token(subject=user_id, display_name=user_id.title())
    return {"Authorization": f"Bearer {token}"}


def _direct(client, user_id: str, other_user_id: str) -> str:
    response = client.post(
        "/v1/conversations/direct",
        json={"other_user_id": other_user_id},
        headers=_auth_headers(user_id),
    )
    assert response.status_code == 200
    return response.json()["data"]["id"]


def _open(client, user_id: str, conversation_id: str) -> dict:
    response = client.post(f"/v1/conversations/{conversation_id}/open", headers=_auth_headers(user_id))
    assert response.status_code == 200
    return response.json()["data"]


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"data": {"ok": True}}


def test_requests_require_a_valid_token(client):
    missing = client.get("/v1/conversations")
    assert missing.status_code == 401

    invalid = client.get("/v1/conversations", headers={"Authorization": "Bearer not-a-token"})
    assert invalid.status_code == 401
    assert invalid.json()["error"]["code"] == "invalid_token"


def test_direct_conversation_is_shared_by_both_participants(client):
    from_alice = _direct(client, "alice", "bob")
    from_bob = _direct(client, "bob", "alice")

    assert from_alice == from_bob
    assert from_alice.startswith("dm_")

    listed = client.get("/v1/conversations", headers=_auth_headers("alice"))
    assert listed.status_code == 200
    conversations = listed.json()["data"]
    assert [item["id"] for item in conversations] == [from_alice]
    assert conversations[0]["display_name"] == "bob"
    assert conversations[0]["participant_ids"] == ["alice", "bob"]


def test_direct_conversation_with_self_is_rejected(client):
    response = client.post(
        "/v1/conversations/direct",
        json={"other_user_id": "alice"},
        headers=_auth_headers("alice"),
    )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "invalid_argument"


def test_group_creation_and_participants(client):
    created = client.post(
        "/v1/conversations/groups",
        json={"participant_ids": ["bob", "carol"], "name": "Weekend trip"},
        headers=_auth_headers("alice"),
    )
    assert created.status_code == 201
    group = created.json()["data"]
    assert group["participant_ids"] == ["alice", "bob", "carol"]
    assert group["display_name"] == "Weekend trip"
    assert group["last_message"]["kind"] == "system"
    assert group["last_message"]["preview"] == 'Alice created the group "Weekend trip"'

    too_small = client.post(
        "/v1/conversations/groups",
        json={"participant_ids": ["bob"], "name": "Pair"},
        headers=_auth_headers("alice"),
    )
    assert too_small.status_code == 422

    grown = client.post(
        f"/v1/conversations/{group['id']}/participants",
        json={"participant_ids": ["dave"]},
        headers=_auth_headers("bob"),
    )
    assert grown.status_code == 200
    assert grown.json()["data"]["participant_ids"] == ["alice", "bob", "carol", "dave"]


def test_send_list_search_edit_and_delete(client):
    conversation_id = _direct(client, "alice", "bob")
    opened = _open(client, "alice", conversation_id)
    assert opened["state"] == "live"
    assert opened["refs"] == 1

    sent = client.post(
        f"/v1/conversations/{conversation_id}/messages?wait=true",
        json={"content": {"kind": "text", "text": "lunch tomorrow?"}},
        headers=_auth_headers("alice"),
    )
    assert sent.status_code == 201
    message = sent.json()["data"]
    assert message["status"] == "sent"
    assert message["id"]
    assert message["kind"] == "text"
    local_id = message["local_id"]

    listed = client.get(f"/v1/conversations/{conversation_id}/messages", headers=_auth_headers("alice"))
    assert listed.status_code == 200
    assert [item["local_id"] for item in listed.json()["data"]["messages"]] == [local_id]

    found = client.get(
        f"/v1/conversations/{conversation_id}/messages/search",
        params={"q": "LUNCH"},
        headers=_auth_headers("alice"),
    )
    assert [item["local_id"] for item in found.json()["data"]["messages"]] == [local_id]

    edited = client.patch(
        f"/v1/conversations/{conversation_id}/messages/{local_id}",
        json={"text": "lunch on friday?"},
        headers=_auth_headers("alice"),
    )
    assert edited.status_code == 200
    assert edited.json()["data"]["content"] == {"kind": "text", "text": "lunch on friday?"}
    assert edited.json()["data"]["edited_at"] is not None

    deleted = client.delete(
        f"/v1/conversations/{conversation_id}/messages/{local_id}",
        headers=_auth_headers("alice"),
    )
    assert deleted.status_code == 200
    assert deleted.json()["data"]["kind"] == "system"
    assert deleted.json()["data"]["content"]["text"] == "This message was deleted"

    bob_view = _open(client, "bob", conversation_id)
    assert bob_view["live"] is True
    bob_messages = client.get(f"/v1/conversations/{conversation_id}/messages", headers=_auth_headers("bob"))
    assert [item["kind"] for item in bob_messages.json()["data"]["messages"]] == ["system"]

    closed = client.post(f"/v1/conversations/{conversation_id}/close", headers=_auth_headers("alice"))
    assert closed.status_code == 200
    assert closed.json()["data"]["refs"] == 0


def test_send_without_wait_returns_pending_message(client):
    conversation_id = _direct(client, "alice", "bob")

    response = client.post(
        f"/v1/conversations/{conversation_id}/messages",
        json={"content": {"kind": "text", "text": "on my way"}},
        headers=_auth_headers("alice"),
    )
    assert response.status_code == 202
    message = response.json()["data"]
    assert message["status"] == "pending"
    assert message["id"] is None


def test_non_participant_cannot_send_or_open(client):
    conversation_id = _direct(client, "alice", "bob")

    send = client.post(
        f"/v1/conversations/{conversation_id}/messages",
        json={"content": {"kind": "text", "text": "hi"}},
        headers=_auth_headers("carol"),
    )
    assert send.status_code == 403
    assert send.json()["error"]["code"] == "forbidden_conversation"

    opened = client.post(f"/v1/conversations/{conversation_id}/open", headers=_auth_headers("carol"))
    assert opened.status_code == 403


def test_messages_of_unopened_conversation_are_not_found(client):
    conversation_id = _direct(client, "alice", "bob")

    response = client.get(f"/v1/conversations/{conversation_id}/messages", headers=_auth_headers("alice"))
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "conversation_not_loaded"


def test_invalid_message_payload_is_rejected(client):
    conversation_id = _direct(client, "alice", "bob")

    response = client.post(
        f"/v1/conversations/{conversation_id}/messages",
        json={"content": {"kind": "sticker", "id": "wave"}},
        headers=_auth_headers("alice"),
    )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "validation_error"


def test_retry_of_unknown_message_is_not_found(client):
    conversation_id = _direct(client, "alice", "bob")

    response = client.post(
        f"/v1/conversations/{conversation_id}/messages/unknown/retry",
        headers=_auth_headers("alice"),
    )
    assert response.status_code == 404


def test_typing_roundtrip(client):
    conversation_id = _direct(client, "alice", "bob")

    started = client.put(
        f"/v1/conversations/{conversation_id}/typing",
        json={"is_typing": True},
        headers=_auth_headers("alice"),
    )
    assert started.status_code == 200
    assert started.json()["data"] == {"conversation_id": conversation_id, "user_ids": ["alice"]}

    stopped = client.put(
        f"/v1/conversations/{conversation_id}/typing",
        json={"is_typing": False},
        headers=_auth_headers("alice"),
    )
    assert stopped.json()["data"]["user_ids"] == []

    outsider = client.put(
        f"/v1/conversations/{conversation_id}/typing",
        json={"is_typing": True},
        headers=_auth_headers("carol"),
    )
    assert outsider.status_code == 403


def test_reactions_replies_and_read_receipts(client):
    conversation_id = _direct(client, "alice", "bob")
    _open(client, "alice", conversation_id)
    _open(client, "bob", conversation_id)

    question = client.post(
        f"/v1/conversations/{conversation_id}/messages?wait=true",
        json={"content": {"kind": "text", "text": "movie tonight?"}},
        headers=_auth_headers("alice"),
    ).json()["data"]
    reply = client.post(
        f"/v1/conversations/{conversation_id}/messages?wait=true",
        json={"content": {"kind": "text", "text": "sure"}, "reply_to_local_id": question["local_id"]},
        headers=_auth_headers("alice"),
    )
    assert reply.status_code == 201
    assert reply.json()["data"]["reply_to"]["message_id"] == question["id"]
    assert reply.json()["data"]["reply_to"]["preview"] == "movie tonight?"

    reacted = client.put(
        f"/v1/conversations/{conversation_id}/messages/{question['local_id']}/reactions/🎬",
        headers=_auth_headers("alice"),
    )
    assert reacted.status_code == 200
    assert reacted.json()["data"]["reactions"] == {"🎬": ["alice"]}
    unreacted = client.delete(
        f"/v1/conversations/{conversation_id}/messages/{question['local_id']}/reactions/🎬",
        headers=_auth_headers("alice"),
    )
    assert unreacted.json()["data"]["reactions"] == {}

    marked = client.post(
        f"/v1/conversations/{conversation_id}/read",
        json={"local_id": question["local_id"]},
        headers=_auth_headers("alice"),
    )
    assert marked.status_code == 200
    assert marked.json()["data"]["message_id"] == question["id"]

    receipts = client.get(f"/v1/conversations/{conversation_id}/read", headers=_auth_headers("alice"))
    assert receipts.status_code == 200
    assert receipts.json()["data"]["conversation_id"] == conversation_id
    assert [(item["user_id"], item["message_id"]) for item in receipts.json()["data"]["markers"]] == [
        ("alice", question["id"])
    ]

    carol = client.post(f"/v1/conversations/{conversation_id}/read", json={}, headers=_auth_headers("carol"))
    assert carol.status_code == 403

import pytest
from fastapi.testclient import TestClient

from chatsync.main import create_app


ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}
CAROL = {"X-User-Id": "carol"}


@pytest.fixture
def client():
    with TestClient(create_app()) as test_client:
        yield test_client


def _create_conversation(client, headers, other_id):
    response = client.post("/conversations", json={"other_id": other_id}, headers=headers)
    assert response.status_code == 201
    return response.json()["conversation_id"]


def test_healthz(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_missing_identity_header_is_rejected(client):
    response = client.get("/conversations")

    assert response.status_code == 401
    assert "X-User-Id" in response.json()["detail"]


def test_create_then_list_reuses_conversation(client):
    conversation_id = _create_conversation(client, ALICE, "bob")

    listed = client.get("/conversations", headers=ALICE).json()
    assert listed["identity"] == "alice"
    assert [c["id"] for c in listed["conversations"]] == [conversation_id]
    assert listed["conversations"][0]["other_participant"]["id"] == "bob"

    assert _create_conversation(client, ALICE, "bob") == conversation_id


def test_send_read_and_unread_flow(client):
    conversation_id = _create_conversation(client, ALICE, "bob")

    sent = client.post(f"/conversations/{conversation_id}/messages", json={"text": "hello"}, headers=ALICE)
    assert sent.status_code == 201
    message_id = sent.json()["message_id"]

    messages = client.get(f"/conversations/{conversation_id}/messages", headers=BOB).json()
    assert [m["id"] for m in messages["messages"]] == [message_id]
    assert messages["messages"][0]["text"] == "hello"

    listed = client.get("/conversations", headers=BOB).json()
    assert listed["conversations"][0]["unread_count"] == 1
    assert listed["conversations"][0]["last_message"]["text"] == "hello"

    read = client.post(f"/conversations/{conversation_id}/read", headers=BOB)
    assert read.status_code == 200
    assert read.json() == {"conversation_id": conversation_id, "unread_count": 0}

    listed = client.get("/conversations", headers=BOB).json()
    assert listed["conversations"][0]["unread_count"] == 0


def test_empty_message_is_rejected(client):
    conversation_id = _create_conversation(client, ALICE, "bob")

    response = client.post(f"/conversations/{conversation_id}/messages", json={"text": "  "}, headers=ALICE)

    assert response.status_code == 422


def test_non_participant_cannot_send_or_read(client):
    conversation_id = _create_conversation(client, ALICE, "bob")

    sent = client.post(f"/conversations/{conversation_id}/messages", json={"text": "hi"}, headers=CAROL)
    listed = client.get(f"/conversations/{conversation_id}/messages", headers=CAROL)

    assert sent.status_code == 403
    assert listed.status_code == 403


def test_unknown_conversation_is_not_found(client):
    response = client.post("/conversations/nope/messages", json={"text": "hi"}, headers=ALICE)

    assert response.status_code == 404


def test_group_routes(client):
    created = client.post("/groups", json={"name": "Team", "member_ids": ["bob", "carol"]}, headers=ALICE)
    assert created.status_code == 201
    group_id = created.json()["group_id"]

    members = client.get(f"/groups/{group_id}/members", headers=ALICE).json()
    assert {m["identity"]: m["role"] for m in members} == {"alice": "admin", "bob": "member", "carol": "member"}

    denied = client.post(f"/groups/{group_id}/members", json={"member_ids": ["dave"]}, headers=BOB)
    assert denied.status_code == 403

    added = client.post(f"/groups/{group_id}/members", json={"member_ids": ["bob", "dave"]}, headers=ALICE)
    assert added.json() == {"added": ["dave"]}

    listed = client.get("/conversations", headers=BOB).json()
    assert listed["conversations"][0]["id"] == created.json()["conversation_id"]


def test_end_session(client):
    _create_conversation(client, ALICE, "bob")

    response = client.delete("/session", headers=ALICE)

    assert response.status_code == 204
    assert client.get("/conversations", headers=ALICE).status_code == 200

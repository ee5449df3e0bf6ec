"""
Tests for the directory and message relay server.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from e2e.keystore import MemoryKeyStore
from e2e.orchestrator import E2EEncryption
from server import main
from server.database import Database


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(main, "db", Database(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"))
    monkeypatch.setattr(main, "manager", main.ConnectionManager())
    with TestClient(main.app) as test_client:
        yield test_client


def _register(client, username):
    response = client.post("/api/register", json={"username": username, "password": "secret"})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def test_register_and_login(client):
    _register(client, "alice")

    assert client.post("/api/register", json={"username": "alice", "password": "x"}).status_code == 400
    assert client.post("/api/login", json={"username": "alice", "password": "bad"}).status_code == 401
    response = client.post("/api/login", json={"username": "alice", "password": "secret"})
    assert response.status_code == 200
    assert response.json()["username"] == "alice"


def test_public_key_directory(client):
    headers = _register(client, "alice")
    _register(client, "bob")
    public_key = E2EEncryption(MemoryKeyStore()).get_public_key("alice")

    assert client.get("/api/users/alice").json()["publicKey"] is None, "No key before publishing"
    assert client.get("/api/users/nobody").status_code == 404

    response = client.put("/api/users/alice/public-key", json={"publicKey": public_key}, headers=headers)
    assert response.status_code == 200
    assert client.get("/api/users/alice").json()["publicKey"] == public_key


def test_publish_requires_owner_and_valid_key(client):
    alice_headers = _register(client, "alice")
    bob_headers = _register(client, "bob")
    public_key = E2EEncryption(MemoryKeyStore()).get_public_key("alice")

    assert client.put("/api/users/alice/public-key", json={"publicKey": public_key}).status_code == 401
    assert client.put("/api/users/alice/public-key", json={"publicKey": public_key},
                      headers=bob_headers).status_code == 403
    assert client.put("/api/users/alice/public-key", json={"publicKey": "junk"},
                      headers=alice_headers).status_code == 422


def test_encrypted_message_flow(client):
    alice_headers = _register(client, "alice")
    bob_headers = _register(client, "bob")
    alice = E2EEncryption(MemoryKeyStore())
    bob = E2EEncryption(MemoryKeyStore())
    client.put("/api/users/bob/public-key", json={"publicKey": bob.get_public_key("bob")}, headers=bob_headers)

    bob_key = client.get("/api/users/bob").json()["publicKey"]
    record = asyncio.run(alice.prepare_outgoing("alice", "bob", "hello", bob_key))
    payload = {k: record[k] for k in ("receiver", "content", "isEncrypted", "encryptedContent", "iv")}
    response = client.post("/api/messages", json=payload, headers=alice_headers)
    assert response.status_code == 201, response.text
    assert response.json()["content"] == ""

    history = client.get("/api/messages", params={"peer": "alice"}, headers=bob_headers).json()
    assert len(history) == 1
    [decrypted] = asyncio.run(bob.decrypt_messages("bob", history))
    assert decrypted["decryptedContent"] == "hello"


def test_plaintext_message_when_peer_has_no_key(client):
    alice_headers = _register(client, "alice")
    _register(client, "bob")

    bob_key = client.get("/api/users/bob").json()["publicKey"]
    record = asyncio.run(E2EEncryption(MemoryKeyStore()).prepare_outgoing("alice", "bob", "hi", bob_key))
    payload = {k: record[k] for k in ("receiver", "content", "isEncrypted", "encryptedContent", "iv")}

    response = client.post("/api/messages", json=payload, headers=alice_headers)
    assert response.status_code == 201
    assert response.json()["isEncrypted"] is False
    assert response.json()["content"] == "hi"


def test_message_shape_validation(client):
    headers = _register(client, "alice")
    _register(client, "bob")

    bad_payloads = [
        {"receiver": "bob", "content": ""},
        {"receiver": "bob", "isEncrypted": True, "iv": "AAAA"},
        {"receiver": "bob", "isEncrypted": True, "encryptedContent": '{"ciphertext": "c"}', "iv": "AAAA"},
    ]
    for payload in bad_payloads:
        assert client.post("/api/messages", json=payload, headers=headers).status_code == 422

    response = client.post("/api/messages", json={"receiver": "nobody", "content": "hi"}, headers=headers)
    assert response.status_code == 404


def test_websocket_push(client):
    alice_headers = _register(client, "alice")
    bob_headers = _register(client, "bob")
    bob_token = bob_headers["Authorization"].split(" ", 1)[1]

    with client.websocket_connect("/ws") as websocket:
        websocket.send_json({"type": "auth", "token": bob_token})
        assert websocket.receive_json()["type"] == "auth_success"

        client.post("/api/messages", json={"receiver": "bob", "content": "ping bob"}, headers=alice_headers)
        pushed = websocket.receive_json()
        assert pushed["type"] == "message"
        assert pushed["data"]["content"] == "ping bob"

        websocket.send_json({"type": "ping"})
        assert websocket.receive_json() == {"type": "pong"}


def test_websocket_rejects_bad_token(client):
    with client.websocket_connect("/ws") as websocket:
        websocket.send_json({"type": "auth", "token": "nope"})
        assert websocket.receive_json()["type"] == "error"


def test_stale_socket_close_keeps_newer_connection(client):
    alice_headers = _register(client, "alice")
    bob_token = _register(client, "bob")["Authorization"].split(" ", 1)[1]

    with client.websocket_connect("/ws") as newer:
        with client.websocket_connect("/ws") as older:
            older.send_json({"type": "auth", "token": bob_token})
            assert older.receive_json()["type"] == "auth_success"
            newer.send_json({"type": "auth", "token": bob_token})
            assert newer.receive_json()["type"] == "auth_success"

        assert main.manager.is_online("bob"), "Closing the old socket dropped the new one"

        client.post("/api/messages", json={"receiver": "bob", "content": "still here"}, headers=alice_headers)
        pushed = newer.receive_json()
        assert pushed["type"] == "message"
        assert pushed["data"]["content"] == "still here"


def test_websocket_non_object_frames(client):
    bob_token = _register(client, "bob")["Authorization"].split(" ", 1)[1]

    with client.websocket_connect("/ws") as websocket:
        websocket.send_json([])
        assert websocket.receive_json()["type"] == "error"

    with client.websocket_connect("/ws") as websocket:
        websocket.send_json({"type": "auth", "token": bob_token})
        assert websocket.receive_json()["type"] == "auth_success"

        for frame in ([], "ping", 42):
            websocket.send_json(frame)
            assert websocket.receive_json() == {"type": "error", "message": "Unsupported message type"}

        websocket.send_json({"type": "ping"})
        assert websocket.receive_json() == {"type": "pong"}

"""
Tests for the client's encrypted SQLite key store.
"""

import sqlite3

from client.storage import SqliteKeyStore
from e2e.keys import KeyPairManager
from e2e.keystore import KeyStoreError


def test_persists_across_reopen(tmp_path):
    store = SqliteKeyStore("alice", str(tmp_path))
    assert store.unlock("password")
    manager = KeyPairManager(store)
    public = manager.export_key(manager.get_or_create_key_pair("alice").public_key)
    store.close()

    reopened = SqliteKeyStore("alice", str(tmp_path))
    assert reopened.unlock("password")
    manager = KeyPairManager(reopened)
    assert manager.export_key(manager.get_or_create_key_pair("alice").public_key) == public
    reopened.close()


def test_values_encrypted_at_rest(tmp_path):
    store = SqliteKeyStore("alice", str(tmp_path))
    store.unlock("password")
    store.set("alice", '{"publicKey": "pub", "privateKey": "priv"}')
    store.close()

    raw = sqlite3.connect(str(tmp_path / "alice.db")).execute(
        "SELECT name, encrypted_data FROM keys"
    ).fetchall()
    assert raw[0][0] == "e2e_keypair_alice"
    assert b"privateKey" not in raw[0][1], "Key pair stored in the clear"


def test_wrong_password_is_rejected(tmp_path):
    store = SqliteKeyStore("alice", str(tmp_path))
    store.unlock("password")
    store.set("alice", "serialized")
    store.close()

    other = SqliteKeyStore("alice", str(tmp_path))
    assert not other.unlock("wrong password"), "Wrong password opened the store"
    assert other.get("alice") is None
    try:
        other.set("alice", "replacement")
        assert False, "Locked store accepted a write"
    except KeyStoreError:
        pass


def test_wrong_password_cannot_replace_key_pair(tmp_path):
    store = SqliteKeyStore("alice", str(tmp_path))
    store.unlock("pw")
    manager = KeyPairManager(store)
    original = manager.export_key(manager.get_or_create_key_pair("alice").public_key)
    store.close()

    mistyped = SqliteKeyStore("alice", str(tmp_path))
    if mistyped.unlock("typo"):
        KeyPairManager(mistyped).get_or_create_key_pair("alice")
    mistyped.close()

    reopened = SqliteKeyStore("alice", str(tmp_path))
    assert reopened.unlock("pw")
    manager = KeyPairManager(reopened)
    assert manager.export_key(manager.get_or_create_key_pair("alice").public_key) == original, \
        "Stored key pair was replaced"
    reopened.close()


def test_truncated_row_reads_as_absent(tmp_path):
    store = SqliteKeyStore("alice", str(tmp_path))
    store.unlock("password")
    for blob in (b"\x01\x02", b"\x00" * 20, b""):
        store.db.execute(
            "INSERT OR REPLACE INTO keys (name, encrypted_data, updated_at) VALUES (?, ?, ?)",
            ("e2e_keypair_alice", blob, "now")
        )
        store.db.commit()
        assert store.get("alice") is None, f"Row {blob!r} was not treated as absent"
    store.close()


def test_truncated_row_does_not_block_unlock(tmp_path):
    store = SqliteKeyStore("alice", str(tmp_path))
    store.unlock("password")
    store.db.execute(
        "INSERT INTO keys (name, encrypted_data, updated_at) VALUES (?, ?, ?)",
        ("e2e_keypair_alice", b"\x01\x02", "now")
    )
    store.db.commit()
    store.close()

    reopened = SqliteKeyStore("alice", str(tmp_path))
    assert reopened.unlock("password")
    reopened.close()


def test_database_errors_become_key_store_errors(tmp_path):
    store = SqliteKeyStore("alice", str(tmp_path))
    store.unlock("password")
    store.db.execute("DROP TABLE keys")

    for operation in (lambda: store.get("alice"),
                      lambda: store.set("alice", "serialized"),
                      lambda: store.delete("alice")):
        try:
            operation()
            assert False, "sqlite error escaped untranslated"
        except KeyStoreError:
            pass
    store.close()


def test_delete_and_scoping(tmp_path):
    store = SqliteKeyStore("device", str(tmp_path))
    store.unlock("password")
    store.set("alice", "a")
    store.set("bob", "b")

    store.delete("alice")
    assert store.get("alice") is None
    assert store.get("bob") == "b"
    store.close()


def test_locked_store_returns_none(tmp_path):
    store = SqliteKeyStore("alice", str(tmp_path))
    assert store.get("alice") is None
    store.delete("alice")

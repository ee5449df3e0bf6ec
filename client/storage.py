"""
Encrypted local key storage for the chat client.

Stores the device's key pairs in SQLite, encrypted on disk with a key
derived from the account password.
"""

import os
import logging
import sqlite3
from typing import Optional
from pathlib import Path
from datetime import datetime, timezone
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from e2e.keystore import KeyStore, KeyStoreError, storage_name

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 100000
NONCE_SIZE = 12
TAG_SIZE = 16


class SqliteKeyStore(KeyStore):
    """
    KeyStore persisted in a per-account SQLite file.

    Values are encrypted with AES-256-GCM under a PBKDF2 key derived from the
    user's password. Lifecycle: ``unlock`` at login, ``close`` at exit,
    ``delete`` on logout or key reset.
    """

    def __init__(self, username: str, storage_dir: str = "client_data"):
        """
        Initialize key storage.

        Args:
            username: Local account the file belongs to
            storage_dir: Directory to store encrypted data
        """
        self.username = username
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

        self.db_path = self.storage_dir / f"{username}.db"
        self.salt_path = self.storage_dir / f"{username}.salt"
        self.encryption_key: Optional[bytes] = None
        self.db: Optional[sqlite3.Connection] = None

    def derive_key(self, password: str, salt: bytes) -> bytes:
        """
        Derive encryption key from password using PBKDF2.

        Args:
            password: User's password
            salt: Salt for key derivation

        Returns:
            32-byte encryption key
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=PBKDF2_ITERATIONS,
        )
        return kdf.derive(password.encode())

    def unlock(self, password: str) -> bool:
        """
        Unlock storage with password, creating it on first use.

        An existing database is only opened if the password decrypts at least
        one of its well-formed rows, so a mistyped password cannot lead to the
        stored key pair being replaced.

        Returns:
            True if the storage is open

        Raises:
            KeyStoreError: If the database cannot be opened
        """
        if self.salt_path.exists():
            salt = self.salt_path.read_bytes()
        elif self.db_path.exists():
            logger.error("Key database for %s has no salt file", self.username)
            return False
        else:
            salt = os.urandom(16)
            self.salt_path.write_bytes(salt)

        self.encryption_key = self.derive_key(password, salt)
        try:
            self._init_database()
            rows = self.db.execute("SELECT encrypted_data FROM keys").fetchall()
        except sqlite3.Error as e:
            self.close()
            raise KeyStoreError(f"Cannot open key database: {e}") from e

        candidates = [row[0] for row in rows if self._well_formed(row[0])]
        if candidates and not any(self._can_decrypt(data) for data in candidates):
            logger.error("Wrong password for key storage of %s", self.username)
            self.close()
            return False
        return True

    def _init_database(self):
        """Initialize SQLite database"""
        self.db = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS keys (
                name TEXT PRIMARY KEY,
                encrypted_data BLOB NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self.db.commit()

    @staticmethod
    def _well_formed(encrypted_data) -> bool:
        return isinstance(encrypted_data, bytes) and len(encrypted_data) >= NONCE_SIZE + TAG_SIZE

    def _can_decrypt(self, encrypted_data: bytes) -> bool:
        try:
            self._decrypt(encrypted_data)
        except InvalidTag:
            return False
        return True

    def _encrypt(self, data: bytes) -> bytes:
        """Encrypt data with storage key"""
        if not self.encryption_key:
            raise KeyStoreError("Storage not unlocked")

        nonce = os.urandom(NONCE_SIZE)
        aesgcm = AESGCM(self.encryption_key)
        return nonce + aesgcm.encrypt(nonce, data, None)

    def _decrypt(self, encrypted_data: bytes) -> bytes:
        """Decrypt data with storage key"""
        if not self.encryption_key:
            raise KeyStoreError("Storage not unlocked")

        aesgcm = AESGCM(self.encryption_key)
        return aesgcm.decrypt(encrypted_data[:NONCE_SIZE], encrypted_data[NONCE_SIZE:], None)

    def get(self, user_id: str) -> Optional[str]:
        if not self.db:
            return None

        try:
            row = self.db.execute(
                "SELECT encrypted_data FROM keys WHERE name = ?", (storage_name(user_id),)
            ).fetchone()
        except sqlite3.Error as e:
            raise KeyStoreError(f"Cannot read key pair: {e}") from e
        if not row:
            return None

        if not self._well_formed(row[0]):
            logger.warning("Stored key pair for %s is truncated", user_id)
            return None
        try:
            return self._decrypt(row[0]).decode()
        except (InvalidTag, ValueError):
            logger.warning("Stored key pair for %s could not be decrypted", user_id)
            return None

    def set(self, user_id: str, serialized: str) -> None:
        if not self.db:
            raise KeyStoreError("Storage not unlocked")

        encrypted = self._encrypt(serialized.encode())
        timestamp = datetime.now(timezone.utc).isoformat()
        try:
            self.db.execute(
                "INSERT OR REPLACE INTO keys (name, encrypted_data, updated_at) VALUES (?, ?, ?)",
                (storage_name(user_id), encrypted, timestamp)
            )
            self.db.commit()
        except sqlite3.Error as e:
            raise KeyStoreError(f"Cannot write key pair: {e}") from e

    def delete(self, user_id: str) -> None:
        if not self.db:
            return

        try:
            self.db.execute("DELETE FROM keys WHERE name = ?", (storage_name(user_id),))
            self.db.commit()
        except sqlite3.Error as e:
            raise KeyStoreError(f"Cannot delete key pair: {e}") from e

    def close(self):
        """Close database connection"""
        if self.db:
            self.db.close()
            self.db = None
        self.encryption_key = None

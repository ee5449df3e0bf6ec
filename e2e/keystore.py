"""
Key store interface for a device's own key pair.

The store is an injected dependency: the application opens it at start-up,
it persists outside the process, and it is cleared explicitly on logout or
key reset. Entries are scoped per user so several local accounts can share
one device profile.
"""

import json
import logging
import threading
from typing import Dict, Optional, Tuple

from .primitives import CryptoError

logger = logging.getLogger(__name__)

KEY_PAIR_STORAGE_PREFIX = "e2e_keypair_"


class KeyStoreError(CryptoError):
    """The backing storage could not be read or written"""
    pass


def storage_name(user_id: str) -> str:
    """Name under which a user's serialized key pair is stored"""
    return f"{KEY_PAIR_STORAGE_PREFIX}{user_id}"


def serialize_key_pair(public_key: str, private_key: str) -> str:
    return json.dumps({"publicKey": public_key, "privateKey": private_key})


def deserialize_key_pair(serialized: str) -> Optional[Tuple[str, str]]:
    """
    Parse a stored key pair.

    Returns:
        Tuple of (public JWK, private JWK), or None when the entry is unusable
    """
    try:
        data = json.loads(serialized)
    except (TypeError, ValueError):
        logger.warning("Stored key pair is not valid JSON, ignoring it")
        return None
    if not isinstance(data, dict):
        return None
    public_key = data.get("publicKey")
    private_key = data.get("privateKey")
    if not isinstance(public_key, str) or not isinstance(private_key, str):
        logger.warning("Stored key pair is incomplete, ignoring it")
        return None
    return public_key, private_key


class KeyStore:
    """
    Persistence for serialized key pairs.

    Subclasses implement ``get``, ``set`` and ``delete`` and report storage
    failures as KeyStoreError.
    """

    def get(self, user_id: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, user_id: str, serialized: str) -> None:
        raise NotImplementedError

    def delete(self, user_id: str) -> None:
        raise NotImplementedError


class MemoryKeyStore(KeyStore):
    """In-process key store, lost when the process exits"""

    def __init__(self):
        self._entries: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> Optional[str]:
        with self._lock:
            return self._entries.get(storage_name(user_id))

    def set(self, user_id: str, serialized: str) -> None:
        with self._lock:
            self._entries[storage_name(user_id)] = serialized

    def delete(self, user_id: str) -> None:
        with self._lock:
            self._entries.pop(storage_name(user_id), None)

    def __len__(self) -> int:
        return len(self._entries)

"""
Key pair lifecycle for this device.

A user's ECDH key pair is created lazily on first use, persisted through the
injected KeyStore and reused until it is explicitly reset or cleared.
"""

import logging
import threading

from cryptography.hazmat.primitives.asymmetric import ec

from .keystore import KeyStore, serialize_key_pair, deserialize_key_pair
from .primitives import (
    KeyPair,
    KeyImportError,
    generate_key_pair,
    export_key_pair,
    export_public_key,
    import_public_key,
    import_private_key,
)

logger = logging.getLogger(__name__)


class KeyPairManager:
    """
    Obtains or creates the local key pair for a user.
    """

    def __init__(self, key_store: KeyStore):
        """
        Args:
            key_store: Durable storage for serialized key pairs
        """
        self.key_store = key_store
        self._lock = threading.Lock()

    def get_or_create_key_pair(self, user_id: str) -> KeyPair:
        """
        Load the user's key pair, generating and persisting one if absent.

        Args:
            user_id: Local account identity

        Returns:
            KeyPair with usable key objects

        Raises:
            ValueError: If user_id is empty
            KeyGenerationError: If a new pair cannot be generated
        """
        if not user_id:
            raise ValueError("user_id must be non-empty")

        with self._lock:
            key_pair = self._load(user_id)
            if key_pair is not None:
                return key_pair
            return self._create(user_id)

    def reset_key_pair(self, user_id: str) -> KeyPair:
        """
        Replace the user's key pair with a new one.

        Snapshots published for the old pair become stale; the caller must
        publish the new public key.
        """
        if not user_id:
            raise ValueError("user_id must be non-empty")

        with self._lock:
            self.key_store.delete(user_id)
            return self._create(user_id)

    def clear(self, user_id: str):
        """Forget the user's key pair (logout)"""
        with self._lock:
            self.key_store.delete(user_id)
        logger.info("Cleared local key pair for %s", user_id)

    @staticmethod
    def export_key(public_key: ec.EllipticCurvePublicKey) -> str:
        """Serialize a public key into a publishable snapshot"""
        return export_public_key(public_key)

    @staticmethod
    def import_public_key(snapshot: str) -> ec.EllipticCurvePublicKey:
        """Deserialize a peer's published snapshot"""
        return import_public_key(snapshot)

    def _load(self, user_id: str):
        stored = self.key_store.get(user_id)
        if stored is None:
            return None

        parsed = deserialize_key_pair(stored)
        if parsed is None:
            return None

        public_json, private_json = parsed
        try:
            private_key = import_private_key(private_json)
            public_key = import_public_key(public_json)
        except KeyImportError as e:
            logger.warning("Stored key pair for %s is unusable: %s", user_id, e)
            return None
        return KeyPair(private_key=private_key, public_key=public_key)

    def _create(self, user_id: str) -> KeyPair:
        key_pair = generate_key_pair()
        public_json, private_json = export_key_pair(key_pair)
        self.key_store.set(user_id, serialize_key_pair(public_json, private_json))
        logger.info("Generated new key pair for %s", user_id)
        return key_pair

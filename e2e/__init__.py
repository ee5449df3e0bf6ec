"""
End-to-end encryption for the messenger.

Implements opportunistic per-message encryption with:
- P-256 ECDH key agreement between device key pairs
- AES-256-GCM with a fresh nonce for every message
"""

from .primitives import (
    KeyPair,
    SharedKey,
    generate_key_pair,
    derive_shared_key,
    encrypt_message,
    decrypt_message,
    CryptoError,
    KeyGenerationError,
    KeyImportError,
    DecryptionError,
)
from .envelope import Envelope, MalformedEnvelopeError
from .keystore import KeyStore, MemoryKeyStore
from .keys import KeyPairManager
from .orchestrator import E2EEncryption, EncryptedMessage, display_content

__all__ = [
    'KeyPair',
    'SharedKey',
    'generate_key_pair',
    'derive_shared_key',
    'encrypt_message',
    'decrypt_message',
    'CryptoError',
    'KeyGenerationError',
    'KeyImportError',
    'DecryptionError',
    'Envelope',
    'MalformedEnvelopeError',
    'KeyStore',
    'MemoryKeyStore',
    'KeyPairManager',
    'E2EEncryption',
    'EncryptedMessage',
    'display_content',
]

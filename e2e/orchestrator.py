"""
Per-message encryption for the messaging client.

E2EEncryption composes the key pair manager, ECDH derivation, AES-GCM and
the envelope codec. Its public operations never raise: encryption falls
back to ``None`` so the caller can send plaintext, and decryption falls back
to ``None`` so the caller can render a placeholder.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from .envelope import Envelope
from .keys import KeyPairManager
from .keystore import KeyStore
from .primitives import (
    CryptoError,
    derive_shared_key,
    encrypt_message,
    decrypt_message,
)

logger = logging.getLogger(__name__)

ENCRYPTED_PLACEHOLDER = "🔒 Encrypted"
DECRYPTION_FAILED_PLACEHOLDER = "[Decryption failed]"


@dataclass(frozen=True)
class EncryptedMessage:
    """Wire fields produced for an encrypted message"""
    encrypted_content: str
    iv: str

    def to_dict(self) -> Dict:
        return {'encryptedContent': self.encrypted_content, 'iv': self.iv}


class E2EEncryption:
    """
    Encrypts outgoing and decrypts incoming messages for local users.
    """

    def __init__(self, key_store: KeyStore):
        """
        Args:
            key_store: Storage for this device's key pairs
        """
        self.keys = KeyPairManager(key_store)

    def get_public_key(self, user_id: str) -> str:
        """
        Exported public key of this device, for publication to the directory.

        Creates the key pair on first use.
        """
        key_pair = self.keys.get_or_create_key_pair(user_id)
        return self.keys.export_key(key_pair.public_key)

    def _encrypt(self, sender_id: str, recipient_public_key: str, message: str) -> EncryptedMessage:
        key_pair = self.keys.get_or_create_key_pair(sender_id)
        recipient_key = self.keys.import_public_key(recipient_public_key)
        shared_key = derive_shared_key(key_pair.private_key, recipient_key)
        payload = encrypt_message(message, shared_key)

        envelope = Envelope(
            ciphertext=payload.ciphertext,
            nonce=payload.nonce,
            sender_public_key=self.keys.export_key(key_pair.public_key),
        )
        encrypted_content, iv = envelope.encode()
        return EncryptedMessage(encrypted_content=encrypted_content, iv=iv)

    def _decrypt(self, recipient_id: str, encrypted_content: str, iv: str) -> str:
        envelope = Envelope.decode(encrypted_content, iv)
        key_pair = self.keys.get_or_create_key_pair(recipient_id)
        sender_key = self.keys.import_public_key(envelope.sender_public_key)
        shared_key = derive_shared_key(key_pair.private_key, sender_key)
        return decrypt_message(envelope.ciphertext, envelope.nonce, shared_key)

    async def encrypt_for_recipient(self, sender_id: str, recipient_public_key: str,
                                    message: str) -> Optional[EncryptedMessage]:
        """
        Encrypt a message for a recipient.

        Args:
            sender_id: Local sending user
            recipient_public_key: Recipient's published JWK snapshot
            message: Plaintext message

        Returns:
            EncryptedMessage, or None if anything failed
        """
        try:
            return self._encrypt(sender_id, recipient_public_key, message)
        except (CryptoError, ValueError, TypeError) as e:
            logger.error("Encryption error: %s", e)
            return None
        except Exception:
            logger.exception("Unexpected encryption failure for %s", sender_id)
            return None

    async def decrypt_from_sender(self, recipient_id: str, encrypted_content: str,
                                  iv: str) -> Optional[str]:
        """
        Decrypt a message addressed to a local user.

        Args:
            recipient_id: Local receiving user
            encrypted_content: JSON envelope from the message record
            iv: base64 nonce from the message record

        Returns:
            Plaintext, or None if the envelope is malformed or fails to verify
        """
        try:
            return self._decrypt(recipient_id, encrypted_content, iv)
        except (CryptoError, ValueError, TypeError) as e:
            logger.error("Decryption error: %s", e)
            return None
        except Exception:
            logger.exception("Unexpected decryption failure for %s", recipient_id)
            return None

    async def prepare_outgoing(self, sender_id: str, receiver_id: str, text: str,
                               recipient_public_key: Optional[str]) -> Dict:
        """
        Build the message record to send.

        The record is encrypted when the recipient has a published key and
        encryption succeeds, and plaintext otherwise.
        """
        record = {
            'sender': sender_id,
            'receiver': receiver_id,
            'content': text,
            'isEncrypted': False,
            'encryptedContent': None,
            'iv': None,
        }

        if not recipient_public_key:
            logger.debug("No public key for %s, sending unencrypted", receiver_id)
            return record

        encrypted = await self.encrypt_for_recipient(sender_id, recipient_public_key, text)
        if encrypted is None:
            logger.warning("Falling back to plaintext for message to %s", receiver_id)
            return record

        record.update({
            'content': '',
            'isEncrypted': True,
            'encryptedContent': encrypted.encrypted_content,
            'iv': encrypted.iv,
        })
        return record

    async def _decrypt_record(self, user_id: str, record: Dict) -> Dict:
        if not record.get('isEncrypted') or record.get('sender') == user_id:
            return record

        encrypted_content = record.get('encryptedContent')
        iv = record.get('iv')
        text = None
        if encrypted_content and iv:
            text = await self.decrypt_from_sender(user_id, encrypted_content, iv)
        if text is None:
            text = DECRYPTION_FAILED_PLACEHOLDER
        return {**record, 'decryptedContent': text}

    async def decrypt_messages(self, user_id: str, records: List[Dict]) -> List[Dict]:
        """
        Decrypt a batch of message records concurrently.

        Encrypted records from other users get a ``decryptedContent`` field;
        the input records are left untouched.
        """
        return list(await asyncio.gather(
            *(self._decrypt_record(user_id, record) for record in records)
        ))


def display_content(record: Dict) -> str:
    """Text to render for a message record"""
    if record.get('decryptedContent') is not None:
        return record['decryptedContent']
    if record.get('isEncrypted'):
        return ENCRYPTED_PLACEHOLDER
    return record.get('content') or ''

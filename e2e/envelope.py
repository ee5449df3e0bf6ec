"""
Envelope encoding and decoding.

The envelope is what travels with a message record. It is split over two
fields so that the nonce can be stored and handled apart from the blob:

    encryptedContent: {"ciphertext": <base64>, "senderPublicKey": <JWK>}
    iv:               <base64 nonce>
"""

import json
from dataclasses import dataclass
from typing import Tuple

from .primitives import CryptoError


class MalformedEnvelopeError(CryptoError):
    """Raised when an envelope is structurally invalid"""
    pass


@dataclass(frozen=True)
class Envelope:
    """
    Encrypted message envelope.

    Attributes:
        ciphertext: base64 AES-GCM ciphertext including tag
        nonce: base64 nonce, carried as the separate ``iv`` field
        sender_public_key: JWK snapshot of the sender's public key at send time
    """
    ciphertext: str
    nonce: str
    sender_public_key: str

    def encode(self) -> Tuple[str, str]:
        """
        Serialize to the two wire fields.

        Returns:
            Tuple of (encrypted_content, iv)
        """
        encrypted_content = json.dumps({
            'ciphertext': self.ciphertext,
            'senderPublicKey': self.sender_public_key,
        })
        return encrypted_content, self.nonce

    @classmethod
    def decode(cls, encrypted_content: str, iv: str) -> 'Envelope':
        """
        Parse the wire fields back into an envelope.

        Raises:
            MalformedEnvelopeError: On invalid JSON or any missing field
        """
        if not isinstance(encrypted_content, str):
            raise MalformedEnvelopeError("encryptedContent must be a string")
        try:
            data = json.loads(encrypted_content)
        except ValueError as e:
            raise MalformedEnvelopeError(f"encryptedContent is not JSON: {e}") from e
        if not isinstance(data, dict):
            raise MalformedEnvelopeError("encryptedContent must be a JSON object")

        ciphertext = data.get('ciphertext')
        sender_public_key = data.get('senderPublicKey')

        for name, value in (('ciphertext', ciphertext),
                            ('senderPublicKey', sender_public_key),
                            ('iv', iv)):
            if not isinstance(value, str) or not value:
                raise MalformedEnvelopeError(f"Missing required field '{name}'")

        return cls(ciphertext=ciphertext, nonce=iv, sender_public_key=sender_public_key)

"""
Cryptographic Primitives for End-to-End Encryption

This module provides the foundational cryptographic operations used by the
per-message encryption scheme: P-256 ECDH key agreement, JSON Web Key
export/import, and AES-256-GCM authenticated encryption.

Keys are exchanged as JWK strings so that they are interchangeable with the
ones a browser produces through ``crypto.subtle.exportKey('jwk', ...)``.
"""

import os
import re
import json
import base64
import binascii
from dataclasses import dataclass
from typing import Tuple
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


NONCE_SIZE = 12  # 96-bit GCM nonce
TAG_SIZE = 16
COORDINATE_SIZE = 32  # P-256 field element
CURVE_NAME = "P-256"
_B64URL_PATTERN = re.compile(r"[A-Za-z0-9_-]*")


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class KeyGenerationError(CryptoError):
    """The key-agreement primitive could not produce a key pair"""
    pass


class KeyImportError(CryptoError):
    """A serialized key is malformed or not a P-256 key"""
    pass


class DecryptionError(CryptoError):
    """Ciphertext failed to authenticate or could not be decoded"""
    pass


@dataclass(frozen=True)
class KeyPair:
    """
    A device's ECDH key pair.

    Attributes:
        private_key: P-256 private key, never leaves the device
        public_key: Matching public key, exported for peers
    """
    private_key: ec.EllipticCurvePrivateKey
    public_key: ec.EllipticCurvePublicKey


@dataclass(frozen=True)
class EncryptedPayload:
    """Base64 ciphertext (with tag) and the nonce it was sealed under"""
    ciphertext: str
    nonce: str


class SharedKey:
    """
    Symmetric key derived from an ECDH exchange.

    Usable only for encrypt/decrypt; the key bytes are not exposed.
    """

    __slots__ = ("_aead",)

    def __init__(self, key_material: bytes):
        if len(key_material) != 32:
            raise CryptoError("Shared key must be 256 bits")
        self._aead = AESGCM(key_material)

    def seal(self, nonce: bytes, data: bytes) -> bytes:
        return self._aead.encrypt(nonce, data, None)

    def open(self, nonce: bytes, data: bytes) -> bytes:
        return self._aead.decrypt(nonce, data, None)

    def __repr__(self) -> str:
        return "SharedKey(<redacted>)"


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(data: str) -> bytes:
    """Strict standard base64 decode"""
    return base64.b64decode(data.encode("ascii"), validate=True)


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(data: str) -> bytes:
    if not _B64URL_PATTERN.fullmatch(data):
        raise ValueError("Not unpadded base64url")
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode((data + padding).encode("ascii"))


def generate_key_pair() -> KeyPair:
    """
    Generate a P-256 key pair for ECDH key agreement.

    Returns:
        KeyPair with usable key objects

    Raises:
        KeyGenerationError: If the primitive is unavailable
    """
    try:
        private_key = ec.generate_private_key(ec.SECP256R1())
    except Exception as e:
        raise KeyGenerationError(f"Key generation failed: {e}") from e
    return KeyPair(private_key=private_key, public_key=private_key.public_key())


def export_public_key(public_key: ec.EllipticCurvePublicKey) -> str:
    """
    Serialize a public key to a JWK string.

    Args:
        public_key: P-256 public key

    Returns:
        JSON Web Key string
    """
    numbers = public_key.public_numbers()
    jwk = {
        "crv": CURVE_NAME,
        "ext": True,
        "key_ops": [],
        "kty": "EC",
        "x": _b64url_encode(numbers.x.to_bytes(COORDINATE_SIZE, "big")),
        "y": _b64url_encode(numbers.y.to_bytes(COORDINATE_SIZE, "big")),
    }
    return json.dumps(jwk, separators=(",", ":"))


def export_private_key(private_key: ec.EllipticCurvePrivateKey) -> str:
    """Serialize a private key to a JWK string (local storage only)"""
    public_numbers = private_key.public_key().public_numbers()
    d = private_key.private_numbers().private_value
    jwk = {
        "crv": CURVE_NAME,
        "d": _b64url_encode(d.to_bytes(COORDINATE_SIZE, "big")),
        "ext": True,
        "key_ops": ["deriveKey"],
        "kty": "EC",
        "x": _b64url_encode(public_numbers.x.to_bytes(COORDINATE_SIZE, "big")),
        "y": _b64url_encode(public_numbers.y.to_bytes(COORDINATE_SIZE, "big")),
    }
    return json.dumps(jwk, separators=(",", ":"))


def _parse_jwk(key_json: str) -> dict:
    if not isinstance(key_json, str) or not key_json:
        raise KeyImportError("Key must be a non-empty JWK string")
    try:
        jwk = json.loads(key_json)
    except ValueError as e:
        raise KeyImportError(f"Key is not valid JSON: {e}") from e
    if not isinstance(jwk, dict):
        raise KeyImportError("Key is not a JSON object")
    if jwk.get("kty") != "EC" or jwk.get("crv") != CURVE_NAME:
        raise KeyImportError("Key is not an EC P-256 key")
    return jwk


def _coordinate(jwk: dict, name: str) -> int:
    value = jwk.get(name)
    if not isinstance(value, str):
        raise KeyImportError(f"Key is missing '{name}'")
    try:
        raw = _b64url_decode(value)
    except (ValueError, binascii.Error) as e:
        raise KeyImportError(f"Key field '{name}' is not base64url") from e
    if len(raw) != COORDINATE_SIZE:
        raise KeyImportError(f"Key field '{name}' has wrong length")
    return int.from_bytes(raw, "big")


def import_public_key(key_json: str) -> ec.EllipticCurvePublicKey:
    """
    Deserialize a JWK string to a P-256 public key.

    Raises:
        KeyImportError: If the key is malformed or not on the curve
    """
    jwk = _parse_jwk(key_json)
    numbers = ec.EllipticCurvePublicNumbers(
        _coordinate(jwk, "x"), _coordinate(jwk, "y"), ec.SECP256R1()
    )
    try:
        return numbers.public_key()
    except ValueError as e:
        raise KeyImportError(f"Invalid public key: {e}") from e


def import_private_key(key_json: str) -> ec.EllipticCurvePrivateKey:
    """
    Deserialize a JWK string to a P-256 private key.

    The embedded public coordinates must match the private scalar.
    """
    jwk = _parse_jwk(key_json)
    d = _coordinate(jwk, "d")
    try:
        private_key = ec.derive_private_key(d, ec.SECP256R1())
    except ValueError as e:
        raise KeyImportError(f"Invalid private key: {e}") from e

    public_numbers = private_key.public_key().public_numbers()
    if (public_numbers.x, public_numbers.y) != (_coordinate(jwk, "x"), _coordinate(jwk, "y")):
        raise KeyImportError("Private key does not match its public coordinates")
    return private_key


def derive_shared_key(private_key: ec.EllipticCurvePrivateKey,
                      public_key: ec.EllipticCurvePublicKey) -> SharedKey:
    """
    Perform ECDH and wrap the 256-bit output as an AES-GCM key.

    Args:
        private_key: Our private key
        public_key: Their public key

    Returns:
        SharedKey, identical on both sides of the exchange
    """
    if not isinstance(private_key, ec.EllipticCurvePrivateKey):
        raise KeyImportError("Local key is not an EC private key")
    if not isinstance(public_key, ec.EllipticCurvePublicKey):
        raise KeyImportError("Peer key is not an EC public key")
    try:
        shared_secret = private_key.exchange(ec.ECDH(), public_key)
    except ValueError as e:
        raise CryptoError(f"Key agreement failed: {e}") from e
    return SharedKey(shared_secret)


def encrypt_message(plaintext: str, key: SharedKey) -> EncryptedPayload:
    """
    Encrypt a message using AES-256-GCM under a freshly drawn nonce.

    Args:
        plaintext: Message text (encoded as UTF-8)
        key: Shared key

    Returns:
        EncryptedPayload with base64 ciphertext+tag and base64 nonce
    """
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = key.seal(nonce, plaintext.encode("utf-8"))
    return EncryptedPayload(ciphertext=b64encode(ciphertext), nonce=b64encode(nonce))


def decrypt_message(ciphertext: str, nonce: str, key: SharedKey) -> str:
    """
    Decrypt a message using AES-256-GCM.

    Args:
        ciphertext: base64 ciphertext + tag
        nonce: base64 12-byte nonce
        key: Shared key

    Returns:
        Decrypted plaintext

    Raises:
        DecryptionError: If decoding or authentication fails
    """
    try:
        raw_ciphertext = b64decode(ciphertext)
        raw_nonce = b64decode(nonce)
    except (ValueError, binascii.Error, AttributeError) as e:
        raise DecryptionError(f"Invalid base64 input: {e}") from e

    if len(raw_nonce) != NONCE_SIZE:
        raise DecryptionError("Nonce must be 12 bytes")
    if len(raw_ciphertext) < TAG_SIZE:
        raise DecryptionError("Ciphertext too short")

    try:
        plaintext = key.open(raw_nonce, raw_ciphertext)
    except InvalidTag as e:
        raise DecryptionError("Authentication tag did not verify") from e

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError("Plaintext is not valid UTF-8") from e


def export_key_pair(key_pair: KeyPair) -> Tuple[str, str]:
    """Return (public JWK, private JWK) for persistence"""
    return export_public_key(key_pair.public_key), export_private_key(key_pair.private_key)

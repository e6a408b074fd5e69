"""
Vault Crypto Core: Key derivation, encryption/decryption, and serialization.

- Key derivation: PBKDF2-HMAC-SHA256(password, salt, iterations) → 32 bytes
- Encryption: AES-256-GCM, format [nonce 12B][encrypted_payload + GCM_tag 16B]
- Associated data binds every ciphertext to its purpose (entity name,
  verifier, backup header), so blobs cannot be swapped between slots.

Security Note:
    Never log plaintext, ciphertext, passwords or keys.
    Nonces are random 96-bit; collision probability negligible under normal usage.
"""
import os
import base64
import hashlib
import binascii
import logging
from typing import Any, Optional

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..exceptions import AuthenticationError, IntegrityError, SerializationError

logger = logging.getLogger("navigator.vault")

NONCE_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16  # 128-bit GCM tag
KEY_LENGTH = 32  # AES-256


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def generate_salt(size: int = 16) -> bytes:
    """Return a random salt of ``size`` bytes."""
    return os.urandom(size)


def derive_key(password: str, salt: bytes, iterations: int) -> bytes:
    """Derive a 32-byte encryption key from a password using PBKDF2-SHA256.

    Args:
        password: User password (never stored).
        salt: Per-installation or per-backup random salt.
        iterations: PBKDF2 iteration count.

    Returns:
        32-byte derived key.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))


# ---------------------------------------------------------------------------
# Encryption
# ---------------------------------------------------------------------------

def encrypt(key: bytes, plaintext: bytes, associated_data: Optional[bytes] = None) -> bytes:
    """Encrypt plaintext with AES-256-GCM.

    Args:
        key: 32-byte key from derive_key().
        plaintext: Data to encrypt.
        associated_data: Authenticated, unencrypted context.

    Returns:
        [nonce 12B][encrypted_payload + tag] bytes.
    """
    nonce = os.urandom(NONCE_SIZE)
    ct = AESGCM(key).encrypt(nonce, plaintext, associated_data)
    return nonce + ct


def decrypt(key: bytes, ciphertext: bytes, associated_data: Optional[bytes] = None) -> bytes:
    """Decrypt AES-256-GCM ciphertext produced by encrypt().

    Raises:
        IntegrityError: If the ciphertext is too short to be valid.
        AuthenticationError: If the key is wrong or the data was altered.
    """
    _min = NONCE_SIZE + TAG_SIZE
    if len(ciphertext) < _min:
        raise IntegrityError(
            f"ciphertext too short: {len(ciphertext)} bytes (minimum {_min})"
        )
    nonce = ciphertext[:NONCE_SIZE]
    ct = ciphertext[NONCE_SIZE:]
    try:
        return AESGCM(key).decrypt(nonce, ct, associated_data)
    except InvalidTag as err:
        raise AuthenticationError(
            "Invalid password or tampered data"
        ) from err


# ---------------------------------------------------------------------------
# Encoding helpers
# ---------------------------------------------------------------------------

def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(data: str) -> bytes:
    """Strict base64 decoding.

    Raises:
        IntegrityError: If data is not valid base64.
    """
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError, TypeError) as err:
        raise IntegrityError(f"Invalid base64 data: {err}") from err


def checksum(data: bytes) -> str:
    """SHA-256 hex digest of data."""
    return hashlib.sha256(data).hexdigest()


# ---------------------------------------------------------------------------
# Value serialization
# ---------------------------------------------------------------------------

def serialize_value(value: Any) -> bytes:
    """Serialize a Python value to bytes for encryption.

    Supports: str, int, float, dict, list, bool, None, datetime.

    Raises:
        SerializationError: If the value cannot be encoded.
    """
    try:
        return orjson.dumps(value)
    except TypeError as err:
        raise SerializationError(f"Value is not serializable: {err}") from err


def deserialize_value(data: bytes) -> Any:
    """Deserialize bytes back to a Python value.

    Raises:
        IntegrityError: If data is not valid JSON.
    """
    try:
        parsed = orjson.loads(data)
    except orjson.JSONDecodeError as err:
        raise IntegrityError(f"Decrypted payload is not valid JSON: {err}") from err
    return parsed


def encrypt_value(key: bytes, value: Any, associated_data: Optional[bytes] = None) -> str:
    """Serialize, encrypt and base64-encode a value for string storage."""
    return b64encode(encrypt(key, serialize_value(value), associated_data))


def decrypt_value(key: bytes, stored: str, associated_data: Optional[bytes] = None) -> Any:
    """Reverse of encrypt_value()."""
    return deserialize_value(decrypt(key, b64decode(stored), associated_data))

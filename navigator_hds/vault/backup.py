"""
Vault Backup Format: self-describing encrypted export.

A backup is a JSON document::

    {
      "format": "navigator-hds-backup",
      "version": 1,
      "created_at": "<ISO-8601>",
      "kdf": {"name": "pbkdf2-sha256", "iterations": N, "salt": "<b64>"},
      "entities": {"patients": 12, ...},
      "ciphertext": "<b64 [nonce][AES-GCM payload + tag]>",
      "checksum": "<sha256 hex of the decoded ciphertext>"
    }

The checksum is verified before any key derivation or decryption, so a
corrupted file fails with IntegrityError and never with a misleading
authentication error. The key is derived from the password with the salt
carried by the backup, which makes the file restorable on another
installation.
"""
import logging
from typing import Any, Union
from datetime import datetime, timezone

import orjson
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import IntegrityError
from .crypto import (
    b64decode,
    b64encode,
    checksum,
    decrypt,
    derive_key,
    deserialize_value,
    encrypt,
    generate_salt,
    serialize_value,
)

logger = logging.getLogger("navigator.vault")

BACKUP_FORMAT = "navigator-hds-backup"
BACKUP_VERSION = 1
SUPPORTED_VERSIONS = (1,)
KDF_NAME = "pbkdf2-sha256"


class KdfParams(BaseModel):
    name: str = KDF_NAME
    iterations: int = Field(ge=1)
    salt: str


class BackupEnvelope(BaseModel):
    """Parsed, integrity-checked backup header and ciphertext."""

    format: str
    version: int
    created_at: str
    kdf: KdfParams
    entities: dict[str, int] = Field(default_factory=dict)
    ciphertext: str
    checksum: str

    def associated_data(self) -> bytes:
        return f"{self.format}:{self.version}".encode("utf-8")

    @property
    def record_count(self) -> int:
        return sum(self.entities.values())


def build_backup(
    collections: dict[str, list[dict]],
    password: str,
    iterations: int,
    salt_size: int = 16,
) -> bytes:
    """Encrypt every entity collection into a backup document.

    Args:
        collections: Mapping of entity name to its records.
        password: Password the backup key is derived from.
        iterations: PBKDF2 iterations recorded in the backup.
        salt_size: Size of the fresh backup salt.

    Returns:
        UTF-8 JSON bytes of the backup document.
    """
    salt = generate_salt(salt_size)
    key = derive_key(password, salt, iterations)
    header = {
        "format": BACKUP_FORMAT,
        "version": BACKUP_VERSION,
    }
    aad = f"{BACKUP_FORMAT}:{BACKUP_VERSION}".encode("utf-8")
    payload = serialize_value({"entities": collections})
    ciphertext = encrypt(key, payload, aad)
    envelope = {
        **header,
        "created_at": datetime.now(timezone.utc).isoformat(),
        "kdf": {"name": KDF_NAME, "iterations": iterations, "salt": b64encode(salt)},
        "entities": {name: len(records) for name, records in collections.items()},
        "ciphertext": b64encode(ciphertext),
        "checksum": checksum(ciphertext),
    }
    return orjson.dumps(envelope, option=orjson.OPT_INDENT_2)


def parse_backup(blob: Union[bytes, str]) -> BackupEnvelope:
    """Parse a backup document and verify its integrity.

    No key derivation or decryption happens here.

    Raises:
        IntegrityError: If the document is malformed, of an unknown format or
            version, or its checksum does not match.
    """
    if isinstance(blob, str):
        blob = blob.encode("utf-8")
    try:
        raw = orjson.loads(blob)
    except orjson.JSONDecodeError as err:
        raise IntegrityError(f"Backup is not valid JSON: {err}") from err
    if not isinstance(raw, dict):
        raise IntegrityError("Backup document must be a JSON object")
    try:
        envelope = BackupEnvelope(**raw)
    except PydanticValidationError as err:
        raise IntegrityError(f"Malformed backup document: {err}") from err
    if envelope.format != BACKUP_FORMAT:
        raise IntegrityError(f"Unknown backup format: {envelope.format!r}")
    if envelope.version not in SUPPORTED_VERSIONS:
        raise IntegrityError(f"Unsupported backup version: {envelope.version}")
    if envelope.kdf.name != KDF_NAME:
        raise IntegrityError(f"Unsupported key derivation: {envelope.kdf.name!r}")
    ciphertext = b64decode(envelope.ciphertext)
    b64decode(envelope.kdf.salt)
    if checksum(ciphertext) != envelope.checksum:
        raise IntegrityError("Backup checksum mismatch")
    return envelope


def open_backup(envelope: BackupEnvelope, password: str) -> dict[str, Any]:
    """Decrypt an integrity-checked backup.

    Returns:
        Mapping of entity name to its list of records.

    Raises:
        AuthenticationError: If the password is wrong.
        IntegrityError: If the decrypted payload is not a valid collection map.
    """
    key = derive_key(password, b64decode(envelope.kdf.salt), envelope.kdf.iterations)
    plaintext = decrypt(key, b64decode(envelope.ciphertext), envelope.associated_data())
    payload = deserialize_value(plaintext)
    entities = payload.get("entities") if isinstance(payload, dict) else None
    if not isinstance(entities, dict):
        raise IntegrityError("Backup payload has no entity collections")
    return entities

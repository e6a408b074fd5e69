"""
Vault Key Rotation: re-encryption of every collection under a new key.

Used by password changes. The rotation runs in two phases: every collection
is decrypted with the old key first, and only if all of them succeed are they
re-encrypted with the new key and written back. A failure in the first phase
leaves storage untouched.

Security Note:
    Plaintext exists in memory only during re-encryption.
    Never log plaintext or ciphertext values.
"""
import logging

from ..exceptions import IntegrityError
from ..storage import KeyValueStore
from .crypto import decrypt_value, encrypt_value

logger = logging.getLogger("navigator.vault")


def rotate_collections(
    storage: KeyValueStore,
    keys: dict[str, str],
    old_key: bytes,
    new_key: bytes,
) -> dict:
    """Re-encrypt the collections stored at ``keys`` from old_key to new_key.

    Args:
        storage: Key-value store holding the encrypted collections.
        keys: Mapping of entity name to its storage key.
        old_key: Key currently protecting the collections.
        new_key: Key to protect them with.

    Returns:
        Stats dict with keys: total, rotated, errors, skipped.

    Raises:
        IntegrityError: If any collection cannot be decrypted; nothing is
            written in that case.
    """
    stats = {"total": 0, "rotated": 0, "errors": 0, "skipped": 0}
    plaintexts: dict[str, list] = {}
    failures: list[str] = []

    logger.info("Starting vault key rotation (%d collection(s))", len(keys))

    for entity, storage_key in keys.items():
        stats["total"] += 1
        stored = storage.get(storage_key)
        if stored is None:
            stats["skipped"] += 1
            continue
        try:
            plaintexts[entity] = decrypt_value(
                old_key, stored, entity.encode("utf-8")
            )
        except Exception as err:
            logger.error("Error decrypting collection %s: %s", entity, err)
            stats["errors"] += 1
            failures.append(entity)

    if failures:
        raise IntegrityError(
            f"Key rotation aborted, unreadable collection(s): {failures}"
        )

    for entity, records in plaintexts.items():
        storage.set(
            keys[entity],
            encrypt_value(new_key, records, entity.encode("utf-8")),
        )
        stats["rotated"] += 1

    logger.info("Key rotation complete: %s", stats)
    return stats

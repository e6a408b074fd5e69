"""
SecureVault: password-encrypted local storage of sensitive entities.

Provides the public API of the Secure Local Vault:
- ``configure(password, entities)``: first-time setup, policy-checked password
- ``unlock(password)`` / ``lock()``: key held in memory only while unlocked
- ``write`` / ``read`` / ``delete`` / ``records``: per-entity record access
- ``export_backup`` / ``verify_backup_password`` / ``import_all_secure``
- ``change_password`` / ``recover_from_backup`` / ``reset``

State machine::

    unconfigured → configuring → ready ⇄ locked
    reset(): any state → unconfigured

Security Note:
    The derived key and the password are never persisted. Losing the password
    without a backup makes the data unrecoverable; reset() is the only way
    out and it destroys everything. Callers must confirm resets explicitly.
"""
import hmac
import asyncio
import logging
from enum import Enum
from typing import Any, Optional, Union
from datetime import datetime, timezone
from dataclasses import dataclass, field
from collections.abc import Iterable, Mapping

import orjson

from ..exceptions import (
    AuthenticationError,
    EntityTypeError,
    IntegrityError,
    ValidationError,
    VaultLockedError,
    VaultStateError,
)
from ..storage import KeyValueStore
from .backup import build_backup, open_backup, parse_backup
from .config import VaultConfig, validate_entity_name
from .crypto import (
    b64decode,
    b64encode,
    decrypt_value,
    derive_key,
    encrypt_value,
    generate_salt,
)
from .rotation import rotate_collections

logger = logging.getLogger("navigator.vault")

META_VERSION = 1
_VERIFIER_TOKEN = "navigator-hds-vault"
_VERIFIER_AAD = b"vault-verifier"

IMPORT_MODES = ("replace", "merge")


class VaultState(str, Enum):
    UNCONFIGURED = "unconfigured"
    CONFIGURING = "configuring"
    READY = "ready"
    LOCKED = "locked"


@dataclass(frozen=True)
class Unlocked:
    """Successful unlock."""
    entities: tuple[str, ...]
    ok: bool = field(default=True, init=False)


@dataclass(frozen=True)
class AuthFailure:
    """Failed unlock; the vault state did not change."""
    reason: str
    ok: bool = field(default=False, init=False)


UnlockResult = Union[Unlocked, AuthFailure]


@dataclass
class ImportResult:
    """Outcome of import_all_secure(): counts per entity and collected errors."""
    imported: dict[str, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(self.imported.values())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SecureVault:
    """Encrypted entity collections in a key-value store.

    Each entity type is one AES-GCM encrypted collection, keyed by a
    PBKDF2-derived key and bound to its entity name as associated data.
    A vault built over storage that already holds a configuration starts
    ``locked``.
    """

    def __init__(
        self,
        storage: KeyValueStore,
        config: Optional[VaultConfig] = None,
    ):
        self._storage = storage
        self._config = config if config is not None else VaultConfig()
        self._key: Optional[bytes] = None
        self._meta: Optional[dict] = None
        self._state = VaultState.UNCONFIGURED
        self._lock = asyncio.Lock()
        self._restore_configuration_state()

    def __repr__(self) -> str:
        return f'<SecureVault state={self._state.value} entities={list(self.entities)}>'

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> VaultState:
        return self._state

    @property
    def is_configured(self) -> bool:
        return self._state in (VaultState.READY, VaultState.LOCKED)

    @property
    def is_unlocked(self) -> bool:
        return self._state is VaultState.READY and self._key is not None

    @property
    def entities(self) -> tuple[str, ...]:
        if self._meta is None:
            return ()
        return tuple(self._meta.get("entities", ()))

    def _config_key(self) -> str:
        return f"{self._config.storage_prefix}:config"

    def _entity_key(self, entity: str) -> str:
        return f"{self._config.storage_prefix}:entity:{entity}"

    def _restore_configuration_state(self) -> None:
        raw = self._storage.get(self._config_key())
        if raw is None:
            return
        self._state = VaultState.LOCKED
        try:
            meta = orjson.loads(raw)
            if not isinstance(meta, dict) or "verifier" not in meta:
                raise ValueError("missing verifier")
            self._meta = meta
            logger.info("Vault configuration restored, vault is locked")
        except ValueError as err:
            logger.error("Unable to restore vault configuration: %s", err)

    def _write_meta(self) -> None:
        self._storage.set(self._config_key(), orjson.dumps(self._meta).decode("utf-8"))

    def _require_key(self) -> bytes:
        if self._state in (VaultState.UNCONFIGURED, VaultState.CONFIGURING):
            raise VaultStateError("Vault is not configured")
        if self._state is not VaultState.READY or self._key is None:
            raise VaultLockedError("Vault is locked")
        return self._key

    def _require_same_key(self, key: bytes) -> bytes:
        """Under the lock: the vault must still be ready with the same key."""
        current = self._require_key()
        if self._meta is None or not hmac.compare_digest(current, key):
            raise VaultStateError("Vault was reset or re-keyed during the operation")
        return current

    def _check_entity(self, entity: str) -> None:
        if entity not in self.entities:
            raise EntityTypeError(
                f"Unknown vault entity {entity!r} (configured: {list(self.entities)})"
            )

    async def _derive(self, password: str, salt: bytes, iterations: int) -> bytes:
        return await asyncio.to_thread(derive_key, password, salt, iterations)

    async def _derive_current(self, password: str) -> bytes:
        if self._meta is None:
            raise IntegrityError("Vault configuration is missing or corrupted")
        return await self._derive(
            password, b64decode(self._meta["salt"]), int(self._meta["iterations"])
        )

    async def _check_current_password(self, password: str) -> bytes:
        key = self._require_key()
        candidate = await self._derive_current(password)
        if not hmac.compare_digest(candidate, key):
            raise AuthenticationError("Invalid vault password")
        return key

    def _load(self, entity: str, key: bytes) -> list[dict]:
        stored = self._storage.get(self._entity_key(entity))
        if stored is None:
            return []
        records = decrypt_value(key, stored, entity.encode("utf-8"))
        if not isinstance(records, list):
            raise IntegrityError(f"Collection {entity} is not a list of records")
        return records

    def _save(self, entity: str, key: bytes, records: list[dict]) -> None:
        self._storage.set(
            self._entity_key(entity),
            encrypt_value(key, records, entity.encode("utf-8")),
        )

    @staticmethod
    def _record_id(record: Any) -> Any:
        if not isinstance(record, Mapping):
            return None
        record_id = record.get("id")
        if isinstance(record_id, (str, int)) and not isinstance(record_id, bool):
            return record_id
        return None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def configure(
        self, password: str, entities: Optional[Iterable[str]] = None
    ) -> None:
        """Set the vault up with a password and empty entity collections.

        Args:
            password: Vault password, checked against the password policy
                before any key derivation.
            entities: Entity types to hold (defaults to the configured ones).

        Raises:
            VaultStateError: If the vault is already configured.
            WeakPasswordError: If the password breaks the policy.
            EntityTypeError: If an entity name is invalid.
        """
        if self._state is not VaultState.UNCONFIGURED:
            raise VaultStateError(
                f"Vault already configured (state={self._state.value}), reset it first"
            )
        self._config.password_policy.validate_password(password)
        names = tuple(dict.fromkeys(entities if entities is not None else self._config.entities))
        if not names:
            raise EntityTypeError("At least one vault entity is required")
        for name in names:
            try:
                validate_entity_name(name)
            except ValueError as err:
                raise EntityTypeError(str(err)) from err

        logger.info("Configuring secure vault (%d entities)", len(names))
        self._state = VaultState.CONFIGURING
        try:
            salt = generate_salt(self._config.salt_size)
            iterations = self._config.kdf_iterations
            key = await self._derive(password, salt, iterations)
            for name in names:
                self._save(name, key, [])
            self._meta = {
                "version": META_VERSION,
                "salt": b64encode(salt),
                "iterations": iterations,
                "entities": list(names),
                "verifier": encrypt_value(key, _VERIFIER_TOKEN, _VERIFIER_AAD),
                "configured_at": _now(),
            }
            self._write_meta()
        except BaseException:
            for name in names:
                self._storage.remove(self._entity_key(name))
            self._storage.remove(self._config_key())
            self._meta = None
            self._key = None
            self._state = VaultState.UNCONFIGURED
            logger.error("Secure vault configuration failed")
            raise
        self._key = key
        self._state = VaultState.READY
        logger.info("Secure vault configured")

    async def unlock(self, password: str) -> UnlockResult:
        """Derive the key from password and unlock the vault.

        Returns:
            Unlocked on success, AuthFailure otherwise. A failure never
            changes the vault state.
        """
        if not self.is_configured:
            return AuthFailure("Vault is not configured")
        if self._meta is None:
            return AuthFailure("Vault configuration is missing or corrupted")
        try:
            key = await self._derive_current(password)
            token = decrypt_value(key, self._meta["verifier"], _VERIFIER_AAD)
        except AuthenticationError:
            logger.warning("Vault unlock failed: invalid password")
            return AuthFailure("Invalid password")
        except (IntegrityError, KeyError, ValueError) as err:
            logger.error("Vault unlock failed: %s", err)
            return AuthFailure("Vault configuration is missing or corrupted")
        if token != _VERIFIER_TOKEN:
            return AuthFailure("Vault configuration is missing or corrupted")
        self._key = key
        self._state = VaultState.READY
        logger.info("Secure vault unlocked")
        return Unlocked(self.entities)

    def lock(self) -> None:
        """Forget the key. No-op unless the vault is ready."""
        if self._state is not VaultState.READY:
            return
        self._key = None
        self._state = VaultState.LOCKED
        logger.info("Secure vault locked")

    async def reset(self) -> None:
        """Irreversibly destroy every vault key in storage and the config.

        Only keys under the vault prefix are removed.
        """
        prefix = f"{self._config.storage_prefix}:"
        async with self._lock:
            removed = 0
            for key in self._storage.keys():
                if key.startswith(prefix):
                    self._storage.remove(key)
                    removed += 1
            self._key = None
            self._meta = None
            self._state = VaultState.UNCONFIGURED
        logger.warning("Secure vault reset (%d key(s) destroyed)", removed)

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def write(self, entity: str, record: Mapping[str, Any]) -> dict:
        """Encrypt and store a record, inserting or replacing by ``id``.

        ``updated_at`` is always set; ``created_at`` is set on insert and
        kept on update.

        Raises:
            VaultLockedError: If the vault is locked.
            EntityTypeError: If entity is not configured.
            ValidationError: If the record is not a mapping with an id.
        """
        if self._record_id(record) is None:
            raise ValidationError("Vault records must be mappings with a str or int 'id'")
        item = dict(record)
        async with self._lock:
            key = self._require_key()
            self._check_entity(entity)
            records = self._load(entity, key)
            now = _now()
            item["updated_at"] = now
            for position, existing in enumerate(records):
                if existing.get("id") == item["id"]:
                    item.setdefault("created_at", existing.get("created_at", now))
                    records[position] = item
                    logger.debug("Vault update: %s/%s", entity, item["id"])
                    break
            else:
                item.setdefault("created_at", now)
                records.append(item)
                logger.debug("Vault insert: %s/%s", entity, item["id"])
            self._save(entity, key, records)
        return dict(item)

    async def read(self, entity: str, record_id: Any) -> Optional[dict]:
        """Decrypt and return the record with the given id, or None."""
        key = self._require_key()
        self._check_entity(entity)
        for record in self._load(entity, key):
            if record.get("id") == record_id:
                return record
        return None

    async def records(self, entity: str) -> list[dict]:
        """Decrypt and return every record of entity."""
        key = self._require_key()
        self._check_entity(entity)
        return self._load(entity, key)

    async def delete(self, entity: str, record_id: Any) -> bool:
        """Remove a record. Returns False if no record had that id."""
        async with self._lock:
            key = self._require_key()
            self._check_entity(entity)
            records = self._load(entity, key)
            remaining = [r for r in records if r.get("id") != record_id]
            if len(remaining) == len(records):
                return False
            self._save(entity, key, remaining)
        logger.debug("Vault delete: %s/%s", entity, record_id)
        return True

    # ------------------------------------------------------------------
    # Backup & recovery
    # ------------------------------------------------------------------

    async def export_backup(self, password: str) -> bytes:
        """Export every collection as an encrypted, checksummed backup.

        Args:
            password: The current vault password.

        Raises:
            VaultLockedError: If the vault is locked.
            AuthenticationError: If password is not the current password.
            VaultStateError: If the vault was reset or re-keyed meanwhile.
        """
        key = await self._check_current_password(password)
        async with self._lock:
            key = self._require_same_key(key)
            collections = {
                entity: self._load(entity, key) for entity in self.entities
            }
        blob = await asyncio.to_thread(
            build_backup,
            collections,
            password,
            self._config.kdf_iterations,
            self._config.salt_size,
        )
        logger.info(
            "Vault backup exported: %s",
            {entity: len(records) for entity, records in collections.items()},
        )
        return blob

    async def verify_backup_password(
        self, blob: Union[bytes, str], password: str
    ) -> bool:
        """Check a backup password without restoring anything.

        Raises:
            IntegrityError: If the backup is corrupted.
        """
        envelope = parse_backup(blob)
        try:
            await asyncio.to_thread(open_backup, envelope, password)
        except AuthenticationError:
            return False
        return True

    async def import_all_secure(
        self,
        blob: Union[bytes, str],
        password: str,
        mode: str = "replace",
    ) -> ImportResult:
        """Restore records from a backup.

        ``replace`` empties every vault collection first; ``merge`` keeps local
        records and lets backup records win on identical ids. Invalid records
        are reported in ``errors`` and skipped.

        Raises:
            ValidationError: If mode is unknown.
            VaultLockedError: If the vault is locked.
            IntegrityError: If the backup is corrupted.
            AuthenticationError: If the backup password is wrong; nothing is
                changed in that case.
        """
        if mode not in IMPORT_MODES:
            raise ValidationError(f"Unknown import mode {mode!r}, expected one of {IMPORT_MODES}")
        self._require_key()
        envelope = parse_backup(blob)
        collections = await asyncio.to_thread(open_backup, envelope, password)
        result = ImportResult()

        async with self._lock:
            # reset or change_password may have run while the backup was opened
            key = self._require_key()
            if mode == "replace":
                for entity in self.entities:
                    self._save(entity, key, [])
            new_entities = []
            for entity, records in collections.items():
                try:
                    validate_entity_name(entity)
                except ValueError as err:
                    result.errors.append(f"{entity}: {err}")
                    continue
                if not isinstance(records, list):
                    result.errors.append(f"{entity}: collection is not a list")
                    continue
                if entity not in self.entities and entity not in new_entities:
                    new_entities.append(entity)
                try:
                    existing = [] if mode == "replace" else self._load(entity, key)
                except (AuthenticationError, IntegrityError) as err:
                    result.errors.append(f"{entity}: local collection unreadable: {err}")
                    continue
                index = {
                    self._record_id(r): position
                    for position, r in enumerate(existing)
                    if self._record_id(r) is not None
                }
                imported = 0
                for position, record in enumerate(records):
                    record_id = self._record_id(record)
                    if record_id is None:
                        result.errors.append(f"{entity}[{position}]: record without a valid id")
                        continue
                    if record_id in index:
                        existing[index[record_id]] = record
                    else:
                        index[record_id] = len(existing)
                        existing.append(record)
                    imported += 1
                try:
                    self._save(entity, key, existing)
                except Exception as err:
                    result.errors.append(f"{entity}: {err}")
                    continue
                result.imported[entity] = imported
            if new_entities:
                self._meta["entities"] = [*self.entities, *new_entities]
                self._write_meta()

        logger.info(
            "Vault import (%s): %d record(s), %d error(s)",
            mode, result.total, len(result.errors),
        )
        return result

    async def change_password(self, old_password: str, new_password: str) -> dict:
        """Re-encrypt every collection under a key derived from new_password.

        Returns:
            Rotation stats dict with keys: total, rotated, errors, skipped.

        Raises:
            WeakPasswordError: If new_password breaks the policy.
            AuthenticationError: If old_password is wrong.
            VaultStateError: If the vault was reset or re-keyed meanwhile.
        """
        self._config.password_policy.validate_password(new_password)
        old_key = await self._check_current_password(old_password)
        salt = generate_salt(self._config.salt_size)
        iterations = self._config.kdf_iterations
        new_key = await self._derive(new_password, salt, iterations)
        async with self._lock:
            old_key = self._require_same_key(old_key)
            stats = rotate_collections(
                self._storage,
                {entity: self._entity_key(entity) for entity in self.entities},
                old_key,
                new_key,
            )
            self._meta.update(
                salt=b64encode(salt),
                iterations=iterations,
                verifier=encrypt_value(new_key, _VERIFIER_TOKEN, _VERIFIER_AAD),
            )
            self._write_meta()
            self._key = new_key
        logger.info("Vault password changed")
        return stats

    async def recover_from_backup(
        self,
        blob: Union[bytes, str],
        backup_password: str,
        new_password: str,
        entities: Optional[Iterable[str]] = None,
    ) -> ImportResult:
        """Rebuild the vault from a backup under a new password.

        The backup password is verified before anything is destroyed; then
        the vault is reset, configured with new_password and the backup is
        imported in ``replace`` mode.

        Raises:
            WeakPasswordError: If new_password breaks the policy.
            IntegrityError: If the backup is corrupted.
            AuthenticationError: If backup_password is wrong.
        """
        self._config.password_policy.validate_password(new_password)
        envelope = parse_backup(blob)
        if not await self.verify_backup_password(blob, backup_password):
            raise AuthenticationError("Invalid backup password")
        names = tuple(entities) if entities is not None else tuple(
            dict.fromkeys([*self._config.entities, *envelope.entities])
        )
        await self.reset()
        await self.configure(new_password, names)
        return await self.import_all_secure(blob, backup_password, "replace")

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def get_status(self) -> dict:
        """Configuration, lock state, per-entity counts and integrity."""
        entities_count: dict[str, int] = {}
        integrity_status: dict[str, bool] = {}
        total_size = 0
        for entity in self.entities:
            total_size += self._storage.size(self._entity_key(entity))
            if not self.is_unlocked:
                continue
            try:
                entities_count[entity] = len(self._load(entity, self._key))
                integrity_status[entity] = True
            except (AuthenticationError, IntegrityError) as err:
                logger.warning("Integrity problem in %s: %s", entity, err)
                entities_count[entity] = 0
                integrity_status[entity] = False
        return {
            "state": self._state.value,
            "is_configured": self.is_configured,
            "is_unlocked": self.is_unlocked,
            "entities_count": entities_count,
            "total_size": total_size,
            "integrity_status": integrity_status,
            "configured_at": self._meta.get("configured_at") if self._meta else None,
        }

    async def verify_integrity(self) -> dict:
        """Decrypt every collection and report which ones are readable.

        Returns:
            dict with keys: overall_valid, results (per entity).
        """
        key = self._require_key()
        results: dict[str, dict] = {}
        overall_valid = True
        for entity in self.entities:
            try:
                count = len(self._load(entity, key))
                results[entity] = {"valid": True, "count": count, "errors": []}
            except (AuthenticationError, IntegrityError) as err:
                results[entity] = {"valid": False, "count": 0, "errors": [str(err)]}
                overall_valid = False
                logger.error("Integrity compromised for %s: %s", entity, err)
        return {"overall_valid": overall_valid, "results": results}

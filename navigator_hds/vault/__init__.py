"""Secure Vault: password-encrypted local storage of sensitive entities.

Security Note (Threat Model):
    Records are decrypted in process memory while the vault is unlocked.
    A memory dump of the application process could expose the derived key.
    There is no password recovery: without the password or a backup file
    (protected by its own password) the data cannot be recovered.
"""

from .secure_vault import (
    SecureVault,
    VaultState,
    Unlocked,
    AuthFailure,
    UnlockResult,
    ImportResult,
)
from .config import VaultConfig, PasswordPolicy
from .backup import parse_backup, BackupEnvelope
from .rotation import rotate_collections

__all__ = [
    "SecureVault",
    "VaultState",
    "Unlocked",
    "AuthFailure",
    "UnlockResult",
    "ImportResult",
    "VaultConfig",
    "PasswordPolicy",
    "parse_backup",
    "BackupEnvelope",
    "rotate_collections",
]

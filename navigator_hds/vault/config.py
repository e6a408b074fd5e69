"""
Vault Configuration: key derivation settings and password policy.

Reads optional overrides from environment variables:
    VAULT_KDF_ITERATIONS = <PBKDF2 iterations, default 150000>
    VAULT_STORAGE_PREFIX = <prefix of every vault key in storage>
    VAULT_MIN_PASSWORD_LENGTH = <integer, default 8>

Security Note:
    Never log passwords or derived keys. Only log entity names and counts.
"""
import os
import string
import logging

from pydantic import BaseModel, Field, field_validator

from ..exceptions import WeakPasswordError

logger = logging.getLogger("navigator.vault")

DEFAULT_ENTITIES = ("patients", "appointments", "invoices")
DEFAULT_SYMBOLS = string.punctuation


class PasswordPolicy(BaseModel):
    """Minimum length and character-class diversity of vault passwords."""

    min_length: int = Field(default=8, ge=1)
    require_upper: bool = True
    require_lower: bool = True
    require_digit: bool = True
    require_symbol: bool = True
    symbols: str = DEFAULT_SYMBOLS

    def check(self, password: str) -> list[str]:
        """Return the list of policy violations (empty when valid)."""
        errors: list[str] = []
        if not isinstance(password, str) or not password:
            return ["password is required"]
        if len(password) < self.min_length:
            errors.append(f"at least {self.min_length} characters")
        if self.require_upper and not any(c.isupper() for c in password):
            errors.append("at least one uppercase letter")
        if self.require_lower and not any(c.islower() for c in password):
            errors.append("at least one lowercase letter")
        if self.require_digit and not any(c.isdigit() for c in password):
            errors.append("at least one digit")
        if self.require_symbol and not any(c in self.symbols for c in password):
            errors.append("at least one special character")
        return errors

    def validate_password(self, password: str) -> None:
        """Raise WeakPasswordError if the password breaks the policy."""
        errors = self.check(password)
        if errors:
            raise WeakPasswordError(errors)


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    kdf_iterations: int = Field(default=150_000, ge=1_000)
    salt_size: int = Field(default=16, ge=16, le=64)
    storage_prefix: str = Field(default="hds-vault", min_length=1)
    entities: tuple[str, ...] = DEFAULT_ENTITIES
    password_policy: PasswordPolicy = Field(default_factory=PasswordPolicy)

    @field_validator("storage_prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        """The prefix scopes reset(); ':' is the key separator."""
        if ":" in v:
            raise ValueError("Storage prefix cannot contain ':'")
        return v

    @field_validator("entities")
    @classmethod
    def validate_entities(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        for name in v:
            validate_entity_name(name)
        return tuple(dict.fromkeys(v))

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """Create VaultConfig by loading values from environment.

        Returns:
            Populated VaultConfig instance.
        """
        policy = PasswordPolicy(
            min_length=int(os.environ.get("VAULT_MIN_PASSWORD_LENGTH", 8))
        )
        return cls(
            kdf_iterations=int(os.environ.get("VAULT_KDF_ITERATIONS", 150_000)),
            storage_prefix=os.environ.get("VAULT_STORAGE_PREFIX", "hds-vault"),
            password_policy=policy,
        )


def validate_entity_name(name: str) -> str:
    """Validate a vault entity name.

    Raises:
        ValueError: If name is empty, too long, or contains ':'.
    """
    if not name:
        raise ValueError("Entity name cannot be empty")
    if len(name) > 64:
        raise ValueError("Entity name cannot exceed 64 characters")
    if ":" in name:
        raise ValueError("Entity name cannot contain ':'")
    return name

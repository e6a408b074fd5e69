"""
Tests for the vault crypto core, password policy and configuration.
"""
import pytest
from pydantic import ValidationError as PydanticValidationError

from navigator_hds.exceptions import (
    AuthenticationError,
    IntegrityError,
    SerializationError,
    WeakPasswordError,
)
from navigator_hds.vault.config import PasswordPolicy, VaultConfig, validate_entity_name
from navigator_hds.vault.crypto import (
    KEY_LENGTH,
    NONCE_SIZE,
    TAG_SIZE,
    b64decode,
    decrypt,
    decrypt_value,
    derive_key,
    encrypt,
    encrypt_value,
    generate_salt,
    serialize_value,
)

ITERATIONS = 1_000


@pytest.fixture
def key():
    return derive_key("Strong1!2", b"0" * 16, ITERATIONS)


# --- Test Key Derivation ---

class TestDeriveKey:
    """Tests for derive_key()."""

    def test_deterministic(self):
        salt = generate_salt()
        assert derive_key("Strong1!2", salt, ITERATIONS) == derive_key(
            "Strong1!2", salt, ITERATIONS
        )

    def test_length(self, key):
        assert len(key) == KEY_LENGTH

    def test_salt_and_password_matter(self):
        salt = b"0" * 16
        base = derive_key("Strong1!2", salt, ITERATIONS)
        assert derive_key("Strong1!3", salt, ITERATIONS) != base
        assert derive_key("Strong1!2", b"1" * 16, ITERATIONS) != base

    def test_salts_are_random(self):
        assert generate_salt() != generate_salt()
        assert len(generate_salt(32)) == 32


# --- Test Encryption ---

class TestEncryption:
    """Tests for AES-GCM encrypt/decrypt."""

    def test_layout(self, key):
        ciphertext = encrypt(key, b"secret")
        assert len(ciphertext) == NONCE_SIZE + len(b"secret") + TAG_SIZE

    def test_fresh_nonce_per_call(self, key):
        assert encrypt(key, b"secret") != encrypt(key, b"secret")

    def test_wrong_key(self, key):
        ciphertext = encrypt(key, b"secret")
        other = derive_key("Other#Pass9", b"0" * 16, ITERATIONS)
        with pytest.raises(AuthenticationError):
            decrypt(other, ciphertext)

    def test_tampered_ciphertext(self, key):
        ciphertext = bytearray(encrypt(key, b"secret"))
        ciphertext[-1] ^= 0x01
        with pytest.raises(AuthenticationError):
            decrypt(key, bytes(ciphertext))

    def test_associated_data_binds_slot(self, key):
        """A collection blob cannot be read back under another entity name."""
        ciphertext = encrypt(key, b"[]", b"patients")
        with pytest.raises(AuthenticationError):
            decrypt(key, ciphertext, b"invoices")
        assert decrypt(key, ciphertext, b"patients") == b"[]"

    def test_too_short(self, key):
        with pytest.raises(IntegrityError):
            decrypt(key, b"short")


# --- Test Value Helpers ---

class TestValues:
    """Tests for value serialization and string storage helpers."""

    def test_records_roundtrip(self, key):
        records = [{"id": "p1", "name": "Doe", "tags": [1, 2]}]
        stored = encrypt_value(key, records, b"patients")
        assert isinstance(stored, str)
        assert "Doe" not in stored
        assert decrypt_value(key, stored, b"patients") == records

    def test_bytes_rejected(self):
        """Records hold JSON values only; raw bytes are refused."""
        with pytest.raises(SerializationError):
            serialize_value(b"\x00\x01")

    def test_unserializable(self):
        with pytest.raises(SerializationError):
            serialize_value({"callback": object()})

    def test_invalid_base64(self):
        with pytest.raises(IntegrityError):
            b64decode("not base64!!")


# --- Test Password Policy ---

class TestPasswordPolicy:
    """Tests for PasswordPolicy."""

    def test_strong_password(self):
        assert PasswordPolicy().check("Strong1!2") == []

    def test_weak_password_reports_every_problem(self):
        errors = PasswordPolicy().check("weak")
        assert "at least 8 characters" in errors
        assert "at least one uppercase letter" in errors
        assert "at least one digit" in errors
        assert "at least one special character" in errors
        assert "at least one lowercase letter" not in errors

    def test_short_password_rejected(self):
        with pytest.raises(WeakPasswordError) as exc:
            PasswordPolicy().validate_password("Weak1!")
        assert exc.value.errors == ["at least 8 characters"]

    def test_empty_password(self):
        assert PasswordPolicy().check("") == ["password is required"]

    def test_relaxed_policy(self):
        policy = PasswordPolicy(min_length=4, require_symbol=False, require_upper=False)
        assert policy.check("abc1") == []


# --- Test Vault Config ---

class TestVaultConfig:
    """Tests for VaultConfig validation."""

    def test_defaults(self):
        config = VaultConfig()
        assert config.kdf_iterations == 150_000
        assert config.entities == ("patients", "appointments", "invoices")

    def test_entities_deduplicated(self):
        config = VaultConfig(entities=("patients", "patients", "notes"))
        assert config.entities == ("patients", "notes")

    @pytest.mark.parametrize("kwargs", [
        {"kdf_iterations": 10},
        {"storage_prefix": "bad:prefix"},
        {"entities": ("",)},
        {"salt_size": 8},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(PydanticValidationError):
            VaultConfig(**kwargs)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("VAULT_KDF_ITERATIONS", "5000")
        monkeypatch.setenv("VAULT_STORAGE_PREFIX", "practice")
        monkeypatch.setenv("VAULT_MIN_PASSWORD_LENGTH", "12")
        config = VaultConfig.from_env()
        assert config.kdf_iterations == 5000
        assert config.storage_prefix == "practice"
        assert config.password_policy.min_length == 12

    @pytest.mark.parametrize("name", ["", "a:b", "x" * 65])
    def test_invalid_entity_names(self, name):
        with pytest.raises(ValueError):
            validate_entity_name(name)

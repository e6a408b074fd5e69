"""
Tests for SecureVault.

Tests cover:
- Configuration and the password policy gate
- Lock/unlock lifecycle and restarts over the same storage
- Record write/read/delete
- Reset scope
- Password change
- Status and integrity reports
"""
import pytest

from navigator_hds.exceptions import (
    AuthenticationError,
    EntityTypeError,
    IntegrityError,
    ValidationError,
    VaultLockedError,
    VaultStateError,
    WeakPasswordError,
)
from navigator_hds.vault import AuthFailure, SecureVault, Unlocked, VaultState

from conftest import OTHER_PASSWORD, PASSWORD


# --- Test Configure ---

class TestConfigure:
    """Tests for configure()."""

    async def test_configure_unlocks(self, vault):
        assert vault.state is VaultState.UNCONFIGURED
        await vault.configure(PASSWORD)
        assert vault.state is VaultState.READY
        assert vault.is_unlocked
        assert vault.entities == ("patients", "appointments", "invoices")

    async def test_weak_password_rejected_before_derivation(self, vault, monkeypatch):
        """A weak password never reaches key derivation."""
        def fail(*args, **kwargs):
            raise AssertionError("key derivation must not run")

        monkeypatch.setattr("navigator_hds.vault.secure_vault.derive_key", fail)
        with pytest.raises(WeakPasswordError):
            await vault.configure("Weak1!")
        assert vault.state is VaultState.UNCONFIGURED

    async def test_custom_entities(self, vault):
        await vault.configure(PASSWORD, ["notes", "notes"])
        assert vault.entities == ("notes",)

    async def test_invalid_entity(self, vault, storage):
        with pytest.raises(EntityTypeError):
            await vault.configure(PASSWORD, ["bad:name"])
        assert storage.keys() == []

    async def test_configure_twice(self, ready_vault):
        with pytest.raises(VaultStateError):
            await ready_vault.configure(PASSWORD)

    async def test_failed_configuration_rolls_back(self, vault, storage, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("kdf unavailable")

        monkeypatch.setattr("navigator_hds.vault.secure_vault.derive_key", broken)
        with pytest.raises(RuntimeError):
            await vault.configure(PASSWORD)
        assert vault.state is VaultState.UNCONFIGURED
        assert storage.keys() == []


# --- Test Lock/Unlock ---

class TestLockUnlock:
    """Tests for lock() and unlock()."""

    async def test_lock_then_unlock(self, ready_vault):
        ready_vault.lock()
        assert ready_vault.state is VaultState.LOCKED
        result = await ready_vault.unlock(PASSWORD)
        assert isinstance(result, Unlocked)
        assert result.ok
        assert result.entities == ready_vault.entities
        assert ready_vault.is_unlocked

    async def test_wrong_password_keeps_state(self, ready_vault):
        ready_vault.lock()
        result = await ready_vault.unlock(OTHER_PASSWORD)
        assert isinstance(result, AuthFailure)
        assert not result.ok
        assert ready_vault.state is VaultState.LOCKED

    async def test_unlock_unconfigured(self, vault):
        result = await vault.unlock(PASSWORD)
        assert isinstance(result, AuthFailure)
        assert vault.state is VaultState.UNCONFIGURED

    async def test_locked_vault_rejects_access(self, ready_vault):
        ready_vault.lock()
        with pytest.raises(VaultLockedError):
            await ready_vault.records("patients")
        with pytest.raises(VaultLockedError):
            await ready_vault.write("patients", {"id": 1})

    async def test_unconfigured_vault_rejects_access(self, vault):
        with pytest.raises(VaultStateError):
            await vault.records("patients")

    async def test_restart_starts_locked(self, ready_vault, storage, vault_config):
        """A new vault over the same storage is locked until unlocked."""
        await ready_vault.write("patients", {"id": "p1", "name": "Doe"})
        restarted = SecureVault(storage, vault_config)
        assert restarted.state is VaultState.LOCKED
        assert (await restarted.unlock(PASSWORD)).ok
        assert (await restarted.read("patients", "p1"))["name"] == "Doe"

    async def test_lock_is_noop_when_not_ready(self, vault):
        vault.lock()
        assert vault.state is VaultState.UNCONFIGURED


# --- Test Records ---

class TestRecords:
    """Tests for write/read/delete/records."""

    async def test_write_and_read(self, ready_vault):
        stored = await ready_vault.write("patients", {"id": "p1", "name": "Doe"})
        assert stored["created_at"] == stored["updated_at"]
        record = await ready_vault.read("patients", "p1")
        assert record["name"] == "Doe"

    async def test_update_keeps_created_at(self, ready_vault):
        first = await ready_vault.write("patients", {"id": "p1", "name": "Doe"})
        second = await ready_vault.write("patients", {"id": "p1", "name": "Roe"})
        assert second["created_at"] == first["created_at"]
        records = await ready_vault.records("patients")
        assert len(records) == 1
        assert records[0]["name"] == "Roe"

    async def test_no_plaintext_in_storage(self, ready_vault, storage):
        await ready_vault.write("patients", {"id": "p1", "name": "Dupont"})
        for key in storage.keys():
            assert "Dupont" not in storage.get(key)
            assert PASSWORD not in storage.get(key)

    async def test_delete(self, ready_vault):
        await ready_vault.write("patients", {"id": 1})
        assert await ready_vault.delete("patients", 1) is True
        assert await ready_vault.delete("patients", 1) is False
        assert await ready_vault.read("patients", 1) is None

    async def test_unknown_entity(self, ready_vault):
        with pytest.raises(EntityTypeError):
            await ready_vault.write("unknown", {"id": 1})

    @pytest.mark.parametrize("record", [{"name": "no id"}, {"id": True}, {"id": None}])
    async def test_invalid_records(self, ready_vault, record):
        with pytest.raises(ValidationError):
            await ready_vault.write("patients", record)

    async def test_tampered_collection_detected(self, ready_vault, storage):
        """Swapping ciphertexts between entities fails authentication."""
        await ready_vault.write("patients", {"id": 1})
        storage.set(
            "hds-vault:entity:invoices", storage.get("hds-vault:entity:patients")
        )
        with pytest.raises(AuthenticationError):
            await ready_vault.records("invoices")
        report = await ready_vault.verify_integrity()
        assert report["overall_valid"] is False
        assert report["results"]["invoices"]["valid"] is False
        assert report["results"]["patients"] == {"valid": True, "count": 1, "errors": []}


# --- Test Reset ---

class TestReset:
    """Tests for reset()."""

    async def test_reset_only_touches_vault_keys(self, ready_vault, storage):
        storage.set("demo-session-s1", "{}")
        await ready_vault.write("patients", {"id": 1})
        await ready_vault.reset()
        assert ready_vault.state is VaultState.UNCONFIGURED
        assert storage.keys() == ["demo-session-s1"]

    async def test_reconfigure_after_reset(self, ready_vault):
        await ready_vault.write("patients", {"id": 1})
        await ready_vault.reset()
        await ready_vault.configure(OTHER_PASSWORD)
        assert await ready_vault.records("patients") == []


# --- Test Change Password ---

class TestChangePassword:
    """Tests for change_password()."""

    async def test_records_survive(self, ready_vault, storage, vault_config):
        await ready_vault.write("patients", {"id": 1, "name": "Doe"})
        stats = await ready_vault.change_password(PASSWORD, OTHER_PASSWORD)
        assert stats["rotated"] == 3
        assert stats["errors"] == 0
        assert (await ready_vault.read("patients", 1))["name"] == "Doe"
        restarted = SecureVault(storage, vault_config)
        assert not (await restarted.unlock(PASSWORD)).ok
        assert (await restarted.unlock(OTHER_PASSWORD)).ok

    async def test_wrong_old_password(self, ready_vault):
        with pytest.raises(AuthenticationError):
            await ready_vault.change_password(OTHER_PASSWORD, "Newer#Pass1")
        ready_vault.lock()
        assert (await ready_vault.unlock(PASSWORD)).ok

    async def test_weak_new_password(self, ready_vault):
        with pytest.raises(WeakPasswordError):
            await ready_vault.change_password(PASSWORD, "short")

    async def test_unreadable_collection_aborts(self, ready_vault, storage):
        await ready_vault.write("patients", {"id": 1})
        before = storage.get("hds-vault:entity:patients")
        storage.set("hds-vault:entity:invoices", before)
        with pytest.raises(IntegrityError):
            await ready_vault.change_password(PASSWORD, OTHER_PASSWORD)
        assert storage.get("hds-vault:entity:patients") == before
        ready_vault.lock()
        assert (await ready_vault.unlock(PASSWORD)).ok


# --- Test Status ---

class TestStatus:
    """Tests for get_status()."""

    async def test_unconfigured(self, vault):
        status = await vault.get_status()
        assert status["state"] == "unconfigured"
        assert status["is_configured"] is False
        assert status["entities_count"] == {}
        assert status["configured_at"] is None

    async def test_ready(self, ready_vault):
        await ready_vault.write("patients", {"id": 1})
        await ready_vault.write("patients", {"id": 2})
        status = await ready_vault.get_status()
        assert status["is_unlocked"] is True
        assert status["entities_count"]["patients"] == 2
        assert all(status["integrity_status"].values())
        assert status["total_size"] > 0
        assert status["configured_at"] is not None

    async def test_locked_hides_counts(self, ready_vault):
        ready_vault.lock()
        status = await ready_vault.get_status()
        assert status["state"] == "locked"
        assert status["entities_count"] == {}
        assert status["total_size"] > 0

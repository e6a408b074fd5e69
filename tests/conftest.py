"""Shared fixtures: deterministic clock/scheduler, storages, stores, vaults."""
import time
import pytest

from navigator_hds.conf import HDSSettings
from navigator_hds.compartment import CompartmentStore
from navigator_hds.exceptions import RemoteStoreError
from navigator_hds.session import MemorySessionStore, RemoteSync, SessionManager
from navigator_hds.storage import MemoryStorage
from navigator_hds.vault import SecureVault, VaultConfig


START = 1_700_000_000.0
PASSWORD = "Strong1!2"
OTHER_PASSWORD = "Other#Pass9"


class ManualClock:
    """Clock advanced by hand."""
    def __init__(self, start: float = START):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ManualTimer:
    def __init__(self, when: float, callback):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler whose timers fire only when the clock is advanced."""
    def __init__(self, clock: ManualClock):
        self.clock = clock
        self.timers: list[ManualTimer] = []

    def call_later(self, delay: float, callback) -> ManualTimer:
        timer = ManualTimer(self.clock() + delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def pending(self) -> list[ManualTimer]:
        return [t for t in self.timers if not t.cancelled]

    def advance(self, seconds: float) -> None:
        self.clock.advance(seconds)
        due = [t for t in self.pending if t.when <= self.clock()]
        for timer in due:
            self.timers.remove(timer)
            timer.callback()


class FlakySessionStore(MemorySessionStore):
    """Memory store whose calls can be made to fail."""
    def __init__(self, clock=time.time):
        super().__init__(clock=clock)
        self.fail_insert = False
        self.fail_mark = False
        self.fail_cleanup = False
        self.calls: list[str] = []

    async def insert_session(self, record):
        self.calls.append("insert")
        if self.fail_insert:
            raise RemoteStoreError("durable store unreachable")
        return await super().insert_session(record)

    async def mark_cleaned(self, session_id):
        self.calls.append("mark_cleaned")
        if self.fail_mark:
            raise RemoteStoreError("durable store unreachable")
        await super().mark_cleaned(session_id)

    async def run_cleanup_job(self):
        self.calls.append("cleanup_job")
        if self.fail_cleanup:
            raise RemoteStoreError("cleanup function unavailable")
        return await super().run_cleanup_job()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def scheduler(clock):
    return ManualScheduler(clock)


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def settings():
    return HDSSettings(
        cleanup_interval=30,
        sweep_interval=10,
        session_expiry=30,
        scrub_prefixes=["temp-", "demo-"],
        session_marker_prefix="demo-session-",
        mirror_session_data=False,
    )


@pytest.fixture
def notifications():
    return []


@pytest.fixture
def store(storage, settings, scheduler, clock, notifications):
    """Compartment store on a manual clock."""
    return CompartmentStore(
        storage=storage,
        settings=settings,
        scheduler=scheduler,
        clock=clock,
        notifier=notifications.append,
    )


@pytest.fixture
def remote(clock):
    return FlakySessionStore(clock=clock)


@pytest.fixture
async def manager(remote, store, storage, settings, clock):
    manager = SessionManager(
        remote=remote,
        compartments=store,
        storage=storage,
        settings=settings,
        clock=clock,
        sync=RemoteSync(retries=2, backoff=0),
    )
    yield manager
    await manager.close()


@pytest.fixture
def vault_config():
    """Low iteration count keeps key derivation fast in tests."""
    return VaultConfig(kdf_iterations=1_000)


@pytest.fixture
def vault(storage, vault_config):
    return SecureVault(storage, vault_config)


@pytest.fixture
async def ready_vault(vault):
    await vault.configure(PASSWORD)
    return vault

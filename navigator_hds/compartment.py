"""
Compartment Store: timed, session-scoped data partitions.

A compartment holds typed collections of records for one session. It is
destroyed by explicit cleanup, by its own one-shot timer, by the periodic
sweep, or when it is read after its interval elapsed. Destruction also scrubs
the persisted keys that reference the compartment or its session.

Security Note:
    Never log record contents. Only compartment ids, entity types and counts.
"""
import time
import logging
from enum import Enum
from typing import Any, Optional, Union
from dataclasses import dataclass, field
from collections.abc import Callable, Iterable, Mapping

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .conf import (
    HDSSettings,
    COMPARTMENT_ID,
    COMPARTMENT_TIMESTAMP,
    ID_PATTERN,
    KEY_SEPARATOR,
)
from .exceptions import ConfigurationError
from .scheduler import LoopScheduler, Scheduler, TimerHandle
from .serializers import as_record
from .storage import KeyValueStore

logger = logging.getLogger("navigator.hds.compartment")
notify_logger = logging.getLogger("navigator.hds.notify")


def log_notification(message: str) -> None:
    """Default notifier: user-visible messages go to the log."""
    notify_logger.info(message)


class CompartmentConfig(BaseModel):
    """Creation parameters of a compartment."""

    session_id: str = Field(min_length=1, pattern=ID_PATTERN)
    user_id: str = Field(min_length=1, pattern=ID_PATTERN)
    timestamp: Optional[float] = None
    auto_cleanup: bool = True
    cleanup_interval: Optional[int] = Field(default=None, ge=1)


class CompartmentState(str, Enum):
    ACTIVE = "active"
    CLEANING_UP = "cleaning_up"
    GONE = "gone"


@dataclass
class Compartment:
    """A single data partition. Owned and mutated by CompartmentStore only."""

    id: str
    session_id: str
    user_id: str
    created_at: float
    auto_cleanup: bool
    cleanup_interval: int
    data: dict[str, list[dict]] = field(default_factory=dict)
    state: CompartmentState = CompartmentState.ACTIVE
    timer: Optional[TimerHandle] = field(default=None, repr=False)

    @property
    def total_records(self) -> int:
        return sum(len(items) for items in self.data.values())

    def age_minutes(self, now: float) -> float:
        return (now - self.created_at) / 60

    def is_expired(self, now: float) -> bool:
        return self.age_minutes(now) >= self.cleanup_interval


class CompartmentStore:
    """Own the lifetime of compartments.

    Args:
        storage: key-value store scrubbed when a compartment is destroyed.
        settings: defaults (cleanup interval, scrub prefixes).
        scheduler: creates the per-compartment one-shot timers.
        clock: returns the current time as epoch seconds.
        notifier: receives user-visible messages.
    """

    def __init__(
        self,
        storage: Optional[KeyValueStore] = None,
        settings: Optional[HDSSettings] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Callable[[], float] = time.time,
        notifier: Callable[[str], None] = log_notification,
    ):
        self._storage = storage
        self._settings = settings if settings is not None else HDSSettings()
        self._scheduler = scheduler if scheduler is not None else LoopScheduler()
        self._clock = clock
        self._notify = notifier
        self._compartments: dict[str, Compartment] = {}

    def __repr__(self) -> str:
        return f'<CompartmentStore compartments={len(self._compartments)}>'

    def __len__(self) -> int:
        return len(self._compartments)

    def __contains__(self, compartment_id: object) -> bool:
        return compartment_id in self._compartments

    @property
    def default_interval(self) -> int:
        return self._settings.cleanup_interval

    def exists(self, compartment_id: str) -> bool:
        return compartment_id in self._compartments

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _coerce_config(
        self, config: Union[CompartmentConfig, Mapping[str, Any]]
    ) -> CompartmentConfig:
        if isinstance(config, CompartmentConfig):
            return config
        try:
            return CompartmentConfig(**dict(config))
        except (PydanticValidationError, TypeError) as err:
            raise ConfigurationError(
                f"Invalid compartment configuration: {err}"
            ) from err

    def _make_id(self, user_id: str, session_id: str, created_at: float) -> str:
        base = f"{user_id}-{session_id}-{int(created_at * 1000)}"
        compartment_id = base
        suffix = 1
        while compartment_id in self._compartments:
            compartment_id = f"{base}-{suffix}"
            suffix += 1
        return compartment_id

    def _active(self, compartment_id: str) -> Optional[Compartment]:
        """Return a readable compartment, evicting it if it expired."""
        compartment = self._compartments.get(compartment_id)
        if compartment is None or compartment.state is not CompartmentState.ACTIVE:
            return None
        if compartment.is_expired(self._clock()):
            logger.debug("Compartment %s expired on access", compartment_id)
            self._destroy(compartment)
            return None
        return compartment

    def _on_timer(self, compartment: Compartment) -> None:
        compartment.timer = None
        if compartment.state is not CompartmentState.ACTIVE:
            # already cleaned by hand or by the sweep
            return
        logger.debug("Cleanup timer fired for %s", compartment.id)
        self._destroy(compartment)

    def _session_of(self, key: str) -> Optional[str]:
        """Session id owning a prefixed key, or None for unscoped keys.

        The longest matching prefix wins, so ``demo-session-s1`` belongs to
        ``s1`` and never to a session called ``session-s1``.
        """
        prefixes = [
            prefix
            for prefix in (
                *self._settings.scrub_prefixes,
                self._settings.session_marker_prefix,
            )
            if key.startswith(prefix)
        ]
        if not prefixes:
            return None
        rest = key[len(max(prefixes, key=len)):]
        return rest.split(KEY_SEPARATOR, 1)[0] or None

    def _owns_key(self, compartment: Compartment, key: str) -> bool:
        head, sep, _ = key.partition(KEY_SEPARATOR)
        if sep and head == compartment.id:
            return True
        return self._session_of(key) == compartment.session_id

    def _scrub_storage(self, compartment: Compartment) -> int:
        """Remove persisted keys scoped to the compartment or its session.

        Only ``{compartment_id}:{suffix}`` keys and prefixed keys whose
        session segment is exactly the session id are ever removed.
        """
        if self._storage is None:
            return 0
        removed = 0
        try:
            for key in self._storage.keys():
                if self._owns_key(compartment, key):
                    self._storage.remove(key)
                    removed += 1
                    logger.debug("Storage key removed: %s", key)
        except Exception as err:
            logger.error(
                "Error scrubbing storage for compartment %s: %s",
                compartment.id, err,
            )
        return removed

    def _destroy(self, compartment: Compartment) -> int:
        if compartment.state is not CompartmentState.ACTIVE:
            return 0
        compartment.state = CompartmentState.CLEANING_UP
        if compartment.timer is not None:
            compartment.timer.cancel()
            compartment.timer = None
        total = compartment.total_records
        compartment.data.clear()
        self._scrub_storage(compartment)
        if self._compartments.get(compartment.id) is compartment:
            del self._compartments[compartment.id]
        compartment.state = CompartmentState.GONE
        logger.info(
            "Compartment %s cleaned (%d record(s) removed)",
            compartment.id, total,
        )
        if total > 0:
            self._notify(
                f"Temporary data cleaned up automatically ({total} record(s))"
            )
        return total

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create_compartment(
        self, config: Union[CompartmentConfig, Mapping[str, Any]]
    ) -> str:
        """Create a compartment and, if enabled, its cleanup timer.

        Args:
            config: owning session/user, creation time, auto-cleanup flag and
                cleanup interval in minutes.

        Returns:
            The new compartment id.

        Raises:
            ConfigurationError: If the configuration is malformed.
        """
        cfg = self._coerce_config(config)
        created_at = cfg.timestamp if cfg.timestamp is not None else self._clock()
        interval = cfg.cleanup_interval or self.default_interval
        compartment = Compartment(
            id=self._make_id(cfg.user_id, cfg.session_id, created_at),
            session_id=cfg.session_id,
            user_id=cfg.user_id,
            created_at=created_at,
            auto_cleanup=cfg.auto_cleanup,
            cleanup_interval=interval,
        )
        self._compartments[compartment.id] = compartment
        if cfg.auto_cleanup:
            delay = max(0.0, interval * 60 - (self._clock() - created_at))
            compartment.timer = self._scheduler.call_later(
                delay, lambda: self._on_timer(compartment)
            )
        logger.info(
            "Compartment created: %s (cleanup in %d min)",
            compartment.id, interval,
        )
        return compartment.id

    def store_data(
        self, compartment_id: str, entity_type: str, records: Iterable[Any]
    ) -> None:
        """Replace the collection of entity_type with the given records.

        Each record is copied and stamped with the storage time and the
        compartment id. A missing compartment is logged and ignored.
        """
        compartment = self._active(compartment_id)
        if compartment is None:
            logger.error("Compartment not found: %s", compartment_id)
            return
        now = self._clock()
        stamped = []
        for item in records:
            record = as_record(item)
            record[COMPARTMENT_TIMESTAMP] = now
            record[COMPARTMENT_ID] = compartment_id
            stamped.append(record)
        compartment.data[entity_type] = stamped
        logger.debug(
            "Stored in compartment %s: %s (%d record(s))",
            compartment_id, entity_type, len(stamped),
        )

    def get_data(self, compartment_id: str, entity_type: str) -> list[dict]:
        """Return the records of entity_type, or [] if absent or expired."""
        compartment = self._active(compartment_id)
        if compartment is None:
            logger.warning("Compartment not found: %s", compartment_id)
            return []
        return list(compartment.data.get(entity_type, []))

    def delete_data(self, compartment_id: str, entity_type: str) -> int:
        """Drop one entity collection. Returns the number of records removed."""
        compartment = self._active(compartment_id)
        if compartment is None:
            logger.warning("Compartment not found: %s", compartment_id)
            return 0
        removed = compartment.data.pop(entity_type, [])
        return len(removed)

    def cleanup_compartment(self, compartment_id: str) -> int:
        """Destroy a compartment. Cleaning an unknown id is a no-op.

        Returns:
            Number of records purged.
        """
        compartment = self._compartments.get(compartment_id)
        if compartment is None:
            return 0
        logger.debug("Cleaning compartment %s", compartment_id)
        return self._destroy(compartment)

    def cleanup_expired_compartments(self) -> int:
        """Destroy every compartment at or past its own interval.

        Returns:
            Number of compartments cleaned.
        """
        now = self._clock()
        expired = [
            compartment for compartment in self._compartments.values()
            if compartment.is_expired(now)
        ]
        for compartment in expired:
            self._destroy(compartment)
        if expired:
            logger.info("%d expired compartment(s) cleaned", len(expired))
        return len(expired)

    def get_stats(self) -> dict:
        """Aggregate counters over live compartments.

        Returns:
            dict with keys: count, total_records, oldest, newest.
        """
        compartments = list(self._compartments.values())
        oldest = min(compartments, key=lambda c: c.created_at, default=None)
        newest = max(compartments, key=lambda c: c.created_at, default=None)
        return {
            "count": len(compartments),
            "total_records": sum(c.total_records for c in compartments),
            "oldest": oldest.id if oldest else None,
            "newest": newest.id if newest else None,
        }

    def is_live(self, compartment_id: str) -> bool:
        """True if the compartment exists and its interval has not elapsed."""
        compartment = self._compartments.get(compartment_id)
        return (
            compartment is not None
            and compartment.state is CompartmentState.ACTIVE
            and not compartment.is_expired(self._clock())
        )

    def count_records(self, compartment_id: str) -> int:
        """Records held by a live compartment (0 once expired)."""
        if not self.is_live(compartment_id):
            return 0
        return self._compartments[compartment_id].total_records

    def entity_types(self, compartment_id: str) -> list[str]:
        compartment = self._active(compartment_id)
        return list(compartment.data.keys()) if compartment else []

"""
Session Manager: external sessions bound to compartments.

Provides the data-service contract consumed by the UI adapters:
- ``create_session(config)``: durable record first, then local compartment
- ``store_session_data`` / ``get_session_data`` / ``delete_session_data``
- ``cleanup_session(session_id)``: local cleanup, remote mark is queued
- ``start_automatic_cleanup()`` / ``stop_automatic_cleanup()``: sweeps
- ``get_session_stats()``

The mapping table and the compartments are the source of truth for whether a
session is usable; the remote store never decides it.
"""
import time
import asyncio
import logging
from typing import Any, Optional, Union
from datetime import datetime, timezone, timedelta
from collections.abc import Callable, Iterable, Mapping

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from ..conf import HDSSettings, ID_PATTERN, KEY_SEPARATOR
from ..compartment import CompartmentConfig, CompartmentStore
from ..exceptions import (
    ConfigurationError,
    EntityTypeError,
    RemoteStoreError,
    SessionExistsError,
    SerializationError,
)
from ..serializers import encode, is_serializable
from ..storage import KeyValueStore, MemoryStorage
from .remote import AbstractSessionStore, SessionRecord
from .sync import RemoteSync
from .data import SessionData

logger = logging.getLogger("navigator.hds.session")


class SessionConfig(BaseModel):
    """Parameters of a new compartmented session."""

    user_id: str = Field(min_length=1, pattern=ID_PATTERN)
    session_id: str = Field(min_length=1, pattern=ID_PATTERN)
    data_types: list[str] = Field(default_factory=list)
    expires_in_minutes: Optional[int] = Field(default=None, ge=1)


class SessionManager:
    """Bind sessions to compartments and drive periodic cleanup.

    Args:
        remote: durable store of session records.
        compartments: compartment store; one is built over ``storage`` if None.
        storage: key-value store for session markers (and mirrored data).
        settings: defaults for expiry, sweep interval and key prefixes.
        clock: returns the current time as epoch seconds.
        sync: queue running remote calls after local commits.
    """

    def __init__(
        self,
        remote: AbstractSessionStore,
        compartments: Optional[CompartmentStore] = None,
        storage: Optional[KeyValueStore] = None,
        settings: Optional[HDSSettings] = None,
        clock: Callable[[], float] = time.time,
        sync: Optional[RemoteSync] = None,
    ):
        self._settings = settings if settings is not None else HDSSettings()
        self._storage = storage if storage is not None else MemoryStorage()
        self._clock = clock
        self._remote = remote
        if compartments is None:
            compartments = CompartmentStore(
                storage=self._storage, settings=self._settings, clock=clock,
            )
        self._compartments = compartments
        self._sync = sync if sync is not None else RemoteSync()
        self._sessions: dict[str, str] = {}  # session_id -> compartment_id
        self._data_types: dict[str, tuple[str, ...]] = {}
        self._cleanup_task: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return f'<SessionManager sessions={len(self._sessions)}>'

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    @property
    def compartments(self) -> CompartmentStore:
        return self._compartments

    @property
    def sync(self) -> RemoteSync:
        return self._sync

    @property
    def is_cleanup_running(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    def compartment_for(self, session_id: str) -> Optional[str]:
        return self._sessions.get(session_id)

    def data_types(self, session_id: str) -> tuple[str, ...]:
        return self._data_types.get(session_id, ())

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _coerce_config(
        self, config: Union[SessionConfig, Mapping[str, Any]]
    ) -> SessionConfig:
        if isinstance(config, SessionConfig):
            return config
        try:
            return SessionConfig(**dict(config))
        except (PydanticValidationError, TypeError) as err:
            raise ConfigurationError(
                f"Invalid session configuration: {err}"
            ) from err

    def _marker_key(self, session_id: str) -> str:
        return f"{self._settings.session_marker_prefix}{session_id}"

    def _mirror_key(self, compartment_id: str, entity_type: str) -> str:
        return f"{compartment_id}{KEY_SEPARATOR}{entity_type}"

    def _check_entity(self, session_id: str, entity_type: str) -> None:
        declared = self._data_types.get(session_id)
        if declared and entity_type not in declared:
            raise EntityTypeError(
                f"Entity type {entity_type!r} not declared for session "
                f"{session_id} (allowed: {list(declared)})"
            )

    def _mirror(self, compartment_id: str, entity_type: str) -> None:
        records = self._compartments.get_data(compartment_id, entity_type)
        key = self._mirror_key(compartment_id, entity_type)
        if not records:
            self._storage.remove(key)
            return
        if not is_serializable(records):
            logger.warning(
                "Collection %s of %s is not serializable, not mirrored",
                entity_type, compartment_id,
            )
            return
        try:
            self._storage.set(key, encode(records))
        except SerializationError as err:
            logger.error("Failed mirroring %s: %s", key, err)

    def _forget(self, session_id: str) -> Optional[str]:
        self._data_types.pop(session_id, None)
        return self._sessions.pop(session_id, None)

    def _queue_mark_cleaned(self, session_id: str) -> None:
        self._sync.submit(
            f"mark_cleaned:{session_id}",
            lambda: self._remote.mark_cleaned(session_id),
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def create_session(
        self, config: Union[SessionConfig, Mapping[str, Any]]
    ) -> str:
        """Create a session: durable record, compartment, mapping and marker.

        Args:
            config: user id, session id, declared entity types and optional
                expiry in minutes.

        Returns:
            The durable record id returned by the remote store.

        Raises:
            ConfigurationError: If the configuration is malformed.
            SessionExistsError: If the session id is already active.
            RemoteStoreError: If the durable record could not be created; no
                local state exists afterwards.
        """
        cfg = self._coerce_config(config)
        if cfg.session_id in self._sessions:
            raise SessionExistsError(f"Session already active: {cfg.session_id}")
        minutes = cfg.expires_in_minutes or self._settings.session_expiry
        now = self._clock()
        record = SessionRecord(
            session_id=cfg.session_id,
            user_id=cfg.user_id,
            data_types=cfg.data_types,
            expires_at=datetime.fromtimestamp(now, tz=timezone.utc)
            + timedelta(minutes=minutes),
        )
        logger.debug("Creating compartmented session %s", cfg.session_id)
        try:
            record_id = await self._remote.insert_session(record)
        except Exception as err:
            logger.error(
                "Failed to persist session %s remotely: %s", cfg.session_id, err
            )
            if isinstance(err, RemoteStoreError):
                raise
            raise RemoteStoreError(
                f"Failed to persist session {cfg.session_id}: {err}"
            ) from err

        compartment_id = None
        try:
            compartment_id = self._compartments.create_compartment(
                CompartmentConfig(
                    session_id=cfg.session_id,
                    user_id=cfg.user_id,
                    timestamp=now,
                    auto_cleanup=True,
                    cleanup_interval=minutes,
                )
            )
            self._sessions[cfg.session_id] = compartment_id
            self._data_types[cfg.session_id] = tuple(cfg.data_types)
            marker = {
                "session_id": cfg.session_id,
                "created_at": datetime.fromtimestamp(now, tz=timezone.utc),
                "data_types": list(cfg.data_types),
                "record": record,
            }
            self._storage.set(self._marker_key(cfg.session_id), encode(marker))
        except Exception:
            # the durable record stays; only local state is rolled back
            self._forget(cfg.session_id)
            if compartment_id is not None:
                self._compartments.cleanup_compartment(compartment_id)
            raise
        logger.info(
            "Compartmented session created: %s -> %s",
            cfg.session_id, compartment_id,
        )
        return record_id

    def store_session_data(
        self, session_id: str, entity_type: str, records: Iterable[Any]
    ) -> None:
        """Replace a session's collection of entity_type.

        Raises:
            EntityTypeError: If entity_type was not declared for the session.
        """
        compartment_id = self._sessions.get(session_id)
        if compartment_id is None:
            logger.warning("Session not found: %s", session_id)
            return
        self._check_entity(session_id, entity_type)
        self._compartments.store_data(compartment_id, entity_type, records)
        if self._settings.mirror_session_data:
            self._mirror(compartment_id, entity_type)

    def get_session_data(self, session_id: str, entity_type: str) -> list[dict]:
        """Return a session's records of entity_type ([] if unknown)."""
        compartment_id = self._sessions.get(session_id)
        if compartment_id is None:
            logger.warning("Session not found: %s", session_id)
            return []
        return self._compartments.get_data(compartment_id, entity_type)

    def delete_session_data(self, session_id: str, entity_type: str) -> int:
        """Drop a session's collection of entity_type.

        Returns:
            Number of records removed.
        """
        compartment_id = self._sessions.get(session_id)
        if compartment_id is None:
            logger.warning("Session not found: %s", session_id)
            return 0
        removed = self._compartments.delete_data(compartment_id, entity_type)
        self._storage.remove(self._mirror_key(compartment_id, entity_type))
        return removed

    def data(self, session_id: str) -> SessionData:
        """Mapping view of a session's entity collections."""
        return SessionData(self, session_id)

    async def cleanup_session(self, session_id: str) -> None:
        """Clean the session's compartment and forget the session.

        Marking the durable record as cleaned is queued and best-effort; its
        failure never restores the local mapping.
        """
        logger.debug("Cleaning session %s", session_id)
        compartment_id = self._forget(session_id)
        if compartment_id is not None:
            self._compartments.cleanup_compartment(compartment_id)
        self._storage.remove(self._marker_key(session_id))
        self._queue_mark_cleaned(session_id)
        logger.info("Session %s cleaned", session_id)

    def reconcile(self) -> list[str]:
        """Drop mappings whose compartment no longer exists.

        Returns:
            The orphaned session ids that were dropped.
        """
        orphans = [
            session_id for session_id, compartment_id in self._sessions.items()
            if not self._compartments.exists(compartment_id)
        ]
        for session_id in orphans:
            self._forget(session_id)
            self._storage.remove(self._marker_key(session_id))
            logger.info("Orphaned local session dropped: %s", session_id)
        return orphans

    async def perform_periodic_cleanup(self) -> dict:
        """Run one sweep cycle.

        Returns:
            Stats dict with keys: compartments, remote, orphans.
        """
        logger.debug("Periodic session cleanup")
        stats: dict[str, Any] = {"compartments": 0, "remote": None, "orphans": 0}
        stats["compartments"] = self._compartments.cleanup_expired_compartments()
        try:
            stats["remote"] = await self._remote.run_cleanup_job()
        except Exception as err:
            logger.error("Remote cleanup job failed: %s", err)
        orphans = self.reconcile()
        for session_id in orphans:
            self._queue_mark_cleaned(session_id)
        stats["orphans"] = len(orphans)
        return stats

    async def _cleanup_loop(self, interval: float, first_delay: float) -> None:
        await asyncio.sleep(first_delay)
        while True:
            try:
                await self.perform_periodic_cleanup()
            except asyncio.CancelledError:
                raise
            except Exception as err:
                logger.error("Periodic cleanup error: %s", err)
            await asyncio.sleep(interval)

    def start_automatic_cleanup(
        self,
        interval_minutes: Optional[float] = None,
        first_delay: float = 1.0,
    ) -> None:
        """Start the recurring sweep. A second call while running is a no-op."""
        if self.is_cleanup_running:
            return
        minutes = interval_minutes or self._settings.sweep_interval
        logger.info("Automatic session cleanup started (every %s min)", minutes)
        self._cleanup_task = asyncio.get_running_loop().create_task(
            self._cleanup_loop(minutes * 60, first_delay),
            name="navigator-hds-session-cleanup",
        )

    def stop_automatic_cleanup(self) -> None:
        """Stop the recurring sweep. Safe to call when it is not running."""
        if self._cleanup_task is None:
            return
        self._cleanup_task.cancel()
        self._cleanup_task = None
        logger.info("Automatic session cleanup stopped")

    def get_session_stats(self) -> dict:
        """Aggregate counters over active sessions.

        Returns:
            dict with keys: active_sessions, total_compartments,
            data_items_total, compartments.
        """
        return {
            "active_sessions": len(self._sessions),
            "total_compartments": sum(
                1 for cid in self._sessions.values()
                if self._compartments.is_live(cid)
            ),
            "data_items_total": sum(
                self._compartments.count_records(cid)
                for cid in self._sessions.values()
            ),
            "compartments": self._compartments.get_stats(),
        }

    async def close(self) -> None:
        """Stop the sweep and drain pending remote calls."""
        task = self._cleanup_task
        self.stop_automatic_cleanup()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._sync.close()

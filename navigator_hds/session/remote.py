"""
Remote Session Stores: durable mirror of session records.

The remote store is advisory: the local mapping table and compartments decide
whether a session is usable. Three calls are needed:

- ``insert_session(record)``: persist a record, return its durable id
- ``mark_cleaned(session_id)``: idempotent, flags the record as cleaned
- ``run_cleanup_job()``: ask the backend to clean expired sessions
"""
import time
import uuid
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional
from datetime import datetime, timezone
from collections.abc import Callable

import orjson
import aiohttp
from pydantic import BaseModel, Field

from ..exceptions import RemoteStoreError

logger = logging.getLogger("navigator.hds.remote")


class SessionRecord(BaseModel):
    """Durable session record mirrored to the remote store."""

    session_id: str
    user_id: str
    data_types: list[str] = Field(default_factory=list)
    expires_at: datetime
    is_demo: bool = True

    def payload(self) -> dict:
        data = self.model_dump()
        data["expires_at"] = self.expires_at.isoformat()
        return data


class AbstractSessionStore(ABC):
    """Abstract durable store of session records."""

    @abstractmethod
    async def insert_session(self, record: SessionRecord) -> str:
        """Persist a session record and return its durable id."""

    @abstractmethod
    async def mark_cleaned(self, session_id: str) -> None:
        """Flag the session as cleaned. Must be idempotent."""

    @abstractmethod
    async def run_cleanup_job(self) -> Any:
        """Trigger the backend batch cleanup of expired sessions."""

    async def close(self) -> None:
        """Release resources held by the store."""


class MemorySessionStore(AbstractSessionStore):
    """In-process session store, used for demo mode and tests."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self.records: dict[str, dict] = {}

    def __repr__(self) -> str:
        return f'<MemorySessionStore records={len(self.records)}>'

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    async def insert_session(self, record: SessionRecord) -> str:
        record_id = uuid.uuid4().hex
        self.records[record_id] = {
            **record.model_dump(),
            "id": record_id,
            "created_at": self._now(),
            "cleaned_up_at": None,
        }
        return record_id

    async def mark_cleaned(self, session_id: str) -> None:
        now = self._now()
        for row in self.records.values():
            if row["session_id"] == session_id and row["cleaned_up_at"] is None:
                row["cleaned_up_at"] = now

    async def run_cleanup_job(self) -> dict:
        now = self._now()
        cleaned = 0
        for row in self.records.values():
            if row["cleaned_up_at"] is None and row["expires_at"] <= now:
                row["cleaned_up_at"] = now
                cleaned += 1
        return {"cleaned": cleaned}

    def find(self, session_id: str) -> list[dict]:
        """Return every record stored for a session id."""
        return [
            row for row in self.records.values()
            if row["session_id"] == session_id
        ]


# ---------------------------------------------------------------------------
# SQL statements
# ---------------------------------------------------------------------------

_INSERT_SESSION = """
INSERT INTO {table} (session_id, user_id, data_types, expires_at, is_demo)
VALUES ($1, $2, $3, $4, $5)
RETURNING id
"""

_MARK_CLEANED = """
UPDATE {table}
SET cleaned_up_at = NOW()
WHERE session_id = $1 AND cleaned_up_at IS NULL
"""

_CLEANUP_EXPIRED = """
UPDATE {table}
SET cleaned_up_at = NOW()
WHERE expires_at < NOW() AND cleaned_up_at IS NULL
"""


class PgSessionStore(AbstractSessionStore):
    """Session records in PostgreSQL through an asyncpg-compatible pool."""

    def __init__(self, db_pool: Any, table: str = "demo_sessions"):
        if not table.replace("_", "").replace(".", "").isalnum():
            raise ValueError(f"Invalid table name: {table!r}")
        self._db = db_pool
        self._table = table

    async def insert_session(self, record: SessionRecord) -> str:
        try:
            async with self._db.acquire() as conn:
                record_id = await conn.fetchval(
                    _INSERT_SESSION.format(table=self._table),
                    record.session_id, record.user_id, record.data_types,
                    record.expires_at, record.is_demo,
                )
        except Exception as err:
            raise RemoteStoreError(
                f"Failed to insert session {record.session_id}: {err}"
            ) from err
        return str(record_id)

    async def mark_cleaned(self, session_id: str) -> None:
        try:
            async with self._db.acquire() as conn:
                await conn.execute(
                    _MARK_CLEANED.format(table=self._table), session_id,
                )
        except Exception as err:
            raise RemoteStoreError(
                f"Failed to mark session {session_id} cleaned: {err}"
            ) from err

    async def run_cleanup_job(self) -> dict:
        try:
            async with self._db.acquire() as conn:
                status = await conn.execute(
                    _CLEANUP_EXPIRED.format(table=self._table)
                )
        except Exception as err:
            raise RemoteStoreError(f"Session cleanup job failed: {err}") from err
        # asyncpg returns the command tag, e.g. "UPDATE 3"
        try:
            cleaned = int(str(status).rsplit(" ", 1)[-1])
        except ValueError:
            cleaned = 0
        return {"cleaned": cleaned}


class HTTPSessionStore(AbstractSessionStore):
    """Session records behind a PostgREST-style HTTP API.

    Records live at ``{base_url}/rest/v1/{table}``; the batch cleanup job is a
    function invoked at ``{base_url}/functions/v1/{cleanup_function}``.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        table: str = "demo_sessions",
        cleanup_function: str = "demo-cleanup",
        timeout: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._table = table
        self._cleanup_function = cleanup_function
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    def __repr__(self) -> str:
        return f'<HTTPSessionStore url={self._base_url!r} table={self._table}>'

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self._api_key:
            headers["apikey"] = self._api_key
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        payload: Any = None,
        headers: Optional[dict] = None,
    ) -> Any:
        url = f"{self._base_url}{path}"
        all_headers = self._headers()
        if headers:
            all_headers.update(headers)
        data = orjson.dumps(payload) if payload is not None else None
        session = self._get_session()
        try:
            async with session.request(
                method, url, params=params, data=data, headers=all_headers,
            ) as response:
                body = await response.read()
                if response.status >= 400:
                    raise RemoteStoreError(
                        f"{method} {path} failed with status {response.status}: "
                        f"{body[:200].decode('utf-8', 'replace')}"
                    )
                if not body:
                    return None
                try:
                    return orjson.loads(body)
                except orjson.JSONDecodeError:
                    return body.decode("utf-8", "replace")
        except (aiohttp.ClientError, asyncio.TimeoutError) as err:
            raise RemoteStoreError(f"{method} {path} failed: {err}") from err

    async def insert_session(self, record: SessionRecord) -> str:
        result = await self._request(
            "POST",
            f"/rest/v1/{self._table}",
            payload=record.payload(),
            headers={"Prefer": "return=representation"},
        )
        row = result[0] if isinstance(result, list) and result else result
        if not isinstance(row, dict) or "id" not in row:
            raise RemoteStoreError(
                f"Session insert for {record.session_id} returned no record id"
            )
        return str(row["id"])

    async def mark_cleaned(self, session_id: str) -> None:
        await self._request(
            "PATCH",
            f"/rest/v1/{self._table}",
            params={
                "session_id": f"eq.{session_id}",
                "cleaned_up_at": "is.null",
            },
            payload={"cleaned_up_at": datetime.now(timezone.utc).isoformat()},
        )

    async def run_cleanup_job(self) -> Any:
        return await self._request(
            "POST", f"/functions/v1/{self._cleanup_function}", payload={},
        )

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

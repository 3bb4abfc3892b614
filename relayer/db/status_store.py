"""
Durable status store for submission records.

Records are stored as their ``SubmissionRecord.to_dict()`` projection keyed by
tx_id. Every backend refuses a write that would move a record backwards or out
of a terminal state.
"""

import asyncio
import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

import redis.asyncio as redis

from relayer.config import Settings
from relayer.core.execution.models import (
    STATUS_TRANSITIONS,
    InvalidTransitionError,
    SubmissionRecord,
    SubmissionStatus,
)


logger = logging.getLogger(__name__)


class RecordNotFoundError(KeyError):
    """No record exists for the requested tx_id."""

    def __init__(self, tx_id: str):
        super().__init__(tx_id)
        self.tx_id = tx_id

    def __str__(self) -> str:
        return f"Transaction {self.tx_id} not found"


def check_write(existing: Optional[Dict[str, Any]], record: SubmissionRecord) -> None:
    """Raise InvalidTransitionError if ``record`` would regress ``existing``."""
    if existing is None:
        return
    current = SubmissionStatus(existing["status"])
    if current == record.status:
        if current.is_terminal and existing != record.to_dict():
            raise InvalidTransitionError(current, record.status)
        return
    if record.status not in STATUS_TRANSITIONS[current]:
        raise InvalidTransitionError(current, record.status)


class StatusStore(ABC):
    """Storage contract for submission records."""

    name: str

    @abstractmethod
    async def put(self, record: SubmissionRecord) -> None:
        """Persist ``record``; returns only once the write is durable."""
        pass

    @abstractmethod
    async def get(self, tx_id: str) -> SubmissionRecord:
        """Load a record; raises RecordNotFoundError."""
        pass

    async def close(self) -> None:
        pass


class InMemoryStatusStore(StatusStore):
    """Process-local store for tests and development."""

    name = "memory"

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def put(self, record: SubmissionRecord) -> None:
        async with self._lock:
            check_write(self._records.get(record.tx_id), record)
            self._records[record.tx_id] = record.to_dict()

    async def get(self, tx_id: str) -> SubmissionRecord:
        async with self._lock:
            data = self._records.get(tx_id)
        if data is None:
            raise RecordNotFoundError(tx_id)
        return SubmissionRecord.from_dict(data)

    def size(self) -> int:
        return len(self._records)


class SqliteStatusStore(StatusStore):
    """
    SQLite-backed store.

    WAL journal with synchronous=FULL: a put commits before it returns, so an
    acknowledged write survives a crash. Blocking calls run in a worker thread.
    """

    name = "sqlite"

    def __init__(self, db_path: str = ":memory:"):
        self._db_path = str(db_path)
        self._is_memory = self._db_path == ":memory:"
        self._lock = asyncio.Lock()

        if self._is_memory:
            self._persistent_conn: Optional[sqlite3.Connection] = sqlite3.connect(
                ":memory:", check_same_thread=False
            )
        else:
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            self._persistent_conn = None

        self._init_schema()

    def _get_conn(self) -> sqlite3.Connection:
        if self._persistent_conn is not None:
            return self._persistent_conn

        conn = sqlite3.connect(self._db_path)
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = FULL")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            if self._persistent_conn is None:
                conn.close()

    def _init_schema(self) -> None:
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS submissions (
                    tx_id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    record TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

    def _put_sync(self, record: SubmissionRecord) -> None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT record FROM submissions WHERE tx_id = ?",
                (record.tx_id,),
            ).fetchone()
            check_write(json.loads(row[0]) if row else None, record)
            conn.execute(
                "INSERT OR REPLACE INTO submissions (tx_id, status, record, updated_at) "
                "VALUES (?, ?, ?, ?)",
                (
                    record.tx_id,
                    record.status.value,
                    json.dumps(record.to_dict()),
                    record.updated_at.isoformat(),
                ),
            )

    def _get_sync(self, tx_id: str) -> Optional[Dict[str, Any]]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT record FROM submissions WHERE tx_id = ?",
                (tx_id,),
            ).fetchone()
        return json.loads(row[0]) if row else None

    async def put(self, record: SubmissionRecord) -> None:
        async with self._lock:
            await asyncio.to_thread(self._put_sync, record)

    async def get(self, tx_id: str) -> SubmissionRecord:
        data = await asyncio.to_thread(self._get_sync, tx_id)
        if data is None:
            raise RecordNotFoundError(tx_id)
        return SubmissionRecord.from_dict(data)

    async def close(self) -> None:
        if self._persistent_conn is not None:
            self._persistent_conn.close()
            self._persistent_conn = None


class RedisStatusStore(StatusStore):
    """Redis-backed store using the ``tx:{tx_id}`` key layout."""

    name = "redis"
    key_prefix = "tx:"

    def __init__(self, client: Any):
        self._client = client
        self._lock = asyncio.Lock()

    @classmethod
    def from_url(cls, url: str) -> "RedisStatusStore":
        return cls(redis.from_url(url, encoding="utf-8", decode_responses=True))

    def _key(self, tx_id: str) -> str:
        return f"{self.key_prefix}{tx_id}"

    async def put(self, record: SubmissionRecord) -> None:
        key = self._key(record.tx_id)
        async with self._lock:
            raw = await self._client.get(key)
            check_write(json.loads(raw) if raw else None, record)
            await self._client.set(key, json.dumps(record.to_dict()))

    async def get(self, tx_id: str) -> SubmissionRecord:
        raw = await self._client.get(self._key(tx_id))
        if not raw:
            raise RecordNotFoundError(tx_id)
        return SubmissionRecord.from_dict(json.loads(raw))

    async def close(self) -> None:
        await self._client.aclose()


def get_status_store(settings: Settings) -> StatusStore:
    """Build the status store selected by ``status_store_backend``."""
    backend = settings.status_store_backend
    if backend == "memory":
        return InMemoryStatusStore()
    if backend == "redis":
        if not settings.redis_url:
            raise ValueError("redis_url is required for the redis status store")
        return RedisStatusStore.from_url(settings.redis_url)
    logger.info(f"Using SQLite status store at {settings.status_store_path}")
    return SqliteStatusStore(settings.status_store_path)

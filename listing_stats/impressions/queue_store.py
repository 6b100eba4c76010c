"""Durable pending-queue stores.

Each store keeps one map of ``entity_id -> pending count`` per counter kind,
with a TTL refreshed on every merge and after a drain that leaves entities
behind. The TTL is a safety net only: if no drain runs before it lapses,
the pending counts are gone. The memory and sqlite stores log and count such
evictions; Redis expires keys server-side, so an eviction there cannot be
observed.
"""
from __future__ import annotations

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping

import redis

from ..dao import get_connection, transaction
from ..errors import QueueReadFailure, QueueWriteFailure
from ..kinds import CounterKind
from ..observability import QUEUE_EVICTED
from .retry import retry, is_sqlite_busy

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_TTL = 300


class QueueStore:
    """Interface shared by the accumulator and the batch processor."""

    backend = "abstract"

    def get(self, kind: CounterKind) -> Dict[int, int]:
        raise NotImplementedError

    def merge(self, kind: CounterKind, deltas: Mapping[int, int]) -> None:
        raise NotImplementedError

    def subtract(self, kind: CounterKind, entity_id: int, count: int) -> None:
        raise NotImplementedError

    def touch(self, kind: CounterKind) -> None:
        """Restart the TTL of whatever is still pending for ``kind``."""
        raise NotImplementedError

    def delete(self, kind: CounterKind, only_if_empty: bool = False) -> None:
        raise NotImplementedError


def _log_eviction(kind: CounterKind, entities: int, counts: int) -> None:
    if not entities:
        return
    logger.warning(
        "Pending %s queue expired before it was drained; %s counts for %s entities dropped",
        kind.value, counts, entities,
    )
    QUEUE_EVICTED.labels(kind=kind.value).inc(counts)


@dataclass
class _Entry:
    counts: Dict[int, int] = field(default_factory=dict)
    expires_at: float = 0.0


class MemoryQueueStore(QueueStore):
    """In-process pending queue. Shared by every request thread of one process."""

    backend = "memory"

    def __init__(self, ttl_seconds: int = DEFAULT_QUEUE_TTL, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: Dict[CounterKind, _Entry] = {}
        self._lock = threading.Lock()

    def _live_entry(self, kind: CounterKind) -> _Entry | None:
        # caller holds self._lock
        entry = self._entries.get(kind)
        if entry is None:
            return None
        if entry.expires_at <= self.clock():
            del self._entries[kind]
            _log_eviction(kind, len(entry.counts), sum(entry.counts.values()))
            return None
        return entry

    def get(self, kind: CounterKind) -> Dict[int, int]:
        with self._lock:
            entry = self._live_entry(kind)
            return dict(entry.counts) if entry else {}

    def merge(self, kind: CounterKind, deltas: Mapping[int, int]) -> None:
        if not deltas:
            return
        with self._lock:
            entry = self._live_entry(kind)
            if entry is None:
                entry = self._entries[kind] = _Entry()
            for entity_id, count in deltas.items():
                entry.counts[entity_id] = entry.counts.get(entity_id, 0) + count
            entry.expires_at = self.clock() + self.ttl_seconds

    def subtract(self, kind: CounterKind, entity_id: int, count: int) -> None:
        with self._lock:
            entry = self._live_entry(kind)
            if entry is None or entity_id not in entry.counts:
                return
            left = entry.counts[entity_id] - count
            if left > 0:
                entry.counts[entity_id] = left
            else:
                del entry.counts[entity_id]

    def touch(self, kind: CounterKind) -> None:
        with self._lock:
            entry = self._live_entry(kind)
            if entry is not None:
                entry.expires_at = self.clock() + self.ttl_seconds

    def delete(self, kind: CounterKind, only_if_empty: bool = False) -> None:
        with self._lock:
            entry = self._entries.get(kind)
            if entry is None:
                return
            if only_if_empty and entry.counts:
                return
            del self._entries[kind]


class SqliteQueueStore(QueueStore):
    """Pending queue in the ``pending_counter`` table.

    Shared by every process on the host that points at the same database
    file. Merges use ``INSERT ... ON CONFLICT DO UPDATE`` inside
    ``BEGIN IMMEDIATE`` so concurrent producers never lose an update.
    """

    backend = "sqlite"

    def __init__(self, db_path: str, ttl_seconds: int = DEFAULT_QUEUE_TTL,
                 clock: Callable[[], float] = time.time, timeout: float = 5.0):
        self.db_path = db_path
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.timeout = timeout

    def _connect(self) -> sqlite3.Connection:
        return get_connection(self.db_path, timeout=self.timeout)

    def _evict_expired(self, conn: sqlite3.Connection, kind: CounterKind) -> None:
        row = conn.execute(
            "SELECT COUNT(*), COALESCE(SUM(count), 0) FROM pending_counter WHERE kind = ? AND expires_at <= ?",
            (kind.value, self.clock()),
        ).fetchone()
        if row[0]:
            conn.execute(
                "DELETE FROM pending_counter WHERE kind = ? AND expires_at <= ?",
                (kind.value, self.clock()),
            )
            _log_eviction(kind, row[0], row[1])

    @retry(exceptions=(sqlite3.OperationalError,), retry_if=is_sqlite_busy)
    def _get(self, kind: CounterKind) -> Dict[int, int]:
        conn = self._connect()
        try:
            with transaction(conn):
                self._evict_expired(conn, kind)
                rows = conn.execute(
                    "SELECT entity_id, count FROM pending_counter WHERE kind = ? ORDER BY rowid",
                    (kind.value,),
                ).fetchall()
            return {int(r[0]): int(r[1]) for r in rows}
        finally:
            conn.close()

    def get(self, kind: CounterKind) -> Dict[int, int]:
        try:
            return self._get(kind)
        except sqlite3.Error as e:
            raise QueueReadFailure(f"Cannot read pending {kind.value} queue: {e}") from e

    @retry(exceptions=(sqlite3.OperationalError,), retry_if=is_sqlite_busy)
    def _merge(self, kind: CounterKind, deltas: Mapping[int, int]) -> None:
        expires_at = self.clock() + self.ttl_seconds
        conn = self._connect()
        try:
            with transaction(conn):
                self._evict_expired(conn, kind)
                conn.executemany(
                    "INSERT INTO pending_counter (kind, entity_id, count, expires_at) VALUES (?, ?, ?, ?) "
                    "ON CONFLICT(kind, entity_id) DO UPDATE SET count = count + excluded.count",
                    [(kind.value, entity_id, count, expires_at) for entity_id, count in deltas.items()],
                )
                # the TTL covers the whole kind, like a single cache entry
                conn.execute(
                    "UPDATE pending_counter SET expires_at = ? WHERE kind = ?",
                    (expires_at, kind.value),
                )
        finally:
            conn.close()

    def merge(self, kind: CounterKind, deltas: Mapping[int, int]) -> None:
        if not deltas:
            return
        try:
            self._merge(kind, deltas)
        except sqlite3.Error as e:
            raise QueueWriteFailure(f"Cannot merge into pending {kind.value} queue: {e}") from e

    @retry(exceptions=(sqlite3.OperationalError,), retry_if=is_sqlite_busy)
    def _subtract(self, kind: CounterKind, entity_id: int, count: int) -> None:
        conn = self._connect()
        try:
            with transaction(conn):
                conn.execute(
                    "UPDATE pending_counter SET count = MAX(count - ?, 0) WHERE kind = ? AND entity_id = ?",
                    (count, kind.value, entity_id),
                )
                conn.execute(
                    "DELETE FROM pending_counter WHERE kind = ? AND entity_id = ? AND count = 0",
                    (kind.value, entity_id),
                )
        finally:
            conn.close()

    def subtract(self, kind: CounterKind, entity_id: int, count: int) -> None:
        try:
            self._subtract(kind, entity_id, count)
        except sqlite3.Error as e:
            raise QueueWriteFailure(f"Cannot update pending {kind.value} queue: {e}") from e

    @retry(exceptions=(sqlite3.OperationalError,), retry_if=is_sqlite_busy)
    def _touch(self, kind: CounterKind) -> None:
        conn = self._connect()
        try:
            with transaction(conn):
                self._evict_expired(conn, kind)
                conn.execute(
                    "UPDATE pending_counter SET expires_at = ? WHERE kind = ?",
                    (self.clock() + self.ttl_seconds, kind.value),
                )
        finally:
            conn.close()

    def touch(self, kind: CounterKind) -> None:
        try:
            self._touch(kind)
        except sqlite3.Error as e:
            raise QueueWriteFailure(f"Cannot refresh pending {kind.value} queue: {e}") from e

    def delete(self, kind: CounterKind, only_if_empty: bool = False) -> None:
        # rows are removed as they drain, so "empty" already means no rows
        if only_if_empty:
            return
        conn = self._connect()
        try:
            with transaction(conn):
                conn.execute("DELETE FROM pending_counter WHERE kind = ?", (kind.value,))
        except sqlite3.Error as e:
            raise QueueWriteFailure(f"Cannot delete pending {kind.value} queue: {e}") from e
        finally:
            conn.close()


# Decrement one hash field and drop it once it reaches zero, atomically.
_SUBTRACT_SCRIPT = """
local left = redis.call('HINCRBY', KEYS[1], ARGV[1], -tonumber(ARGV[2]))
if left <= 0 then
    redis.call('HDEL', KEYS[1], ARGV[1])
end
return left
"""


class RedisQueueStore(QueueStore):
    """Pending queue as one Redis hash per kind, shared across hosts."""

    backend = "redis"

    def __init__(self, client: redis.Redis, ttl_seconds: int = DEFAULT_QUEUE_TTL, prefix: str = "listing_stats"):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix
        self._subtract_script = client.register_script(_SUBTRACT_SCRIPT)

    def key(self, kind: CounterKind) -> str:
        return f"{self.prefix}:{kind.value}_queue"

    def get(self, kind: CounterKind) -> Dict[int, int]:
        try:
            raw = self.client.hgetall(self.key(kind))
        except redis.RedisError as e:
            raise QueueReadFailure(f"Cannot read pending {kind.value} queue: {e}") from e
        return {int(k): int(v) for k, v in raw.items()}

    def merge(self, kind: CounterKind, deltas: Mapping[int, int]) -> None:
        if not deltas:
            return
        key = self.key(kind)
        try:
            pipe = self.client.pipeline()
            for entity_id, count in deltas.items():
                pipe.hincrby(key, str(entity_id), count)
            pipe.expire(key, self.ttl_seconds)
            pipe.execute()
        except redis.RedisError as e:
            raise QueueWriteFailure(f"Cannot merge into pending {kind.value} queue: {e}") from e

    def subtract(self, kind: CounterKind, entity_id: int, count: int) -> None:
        try:
            self._subtract_script(keys=[self.key(kind)], args=[str(entity_id), count])
        except redis.RedisError as e:
            raise QueueWriteFailure(f"Cannot update pending {kind.value} queue: {e}") from e

    def touch(self, kind: CounterKind) -> None:
        try:
            self.client.expire(self.key(kind), self.ttl_seconds)
        except redis.RedisError as e:
            raise QueueWriteFailure(f"Cannot refresh pending {kind.value} queue: {e}") from e

    def delete(self, kind: CounterKind, only_if_empty: bool = False) -> None:
        # Redis removes a hash once its last field is gone
        if only_if_empty:
            return
        try:
            self.client.delete(self.key(kind))
        except redis.RedisError as e:
            raise QueueWriteFailure(f"Cannot delete pending {kind.value} queue: {e}") from e

"""TTL-guarded processing locks.

At most one drain runs at a time. ``acquire`` never waits: it returns False
when the lock is held so the caller can skip this trigger. Every lock expires
on its own after ``ttl_seconds`` even if ``release`` is never called.
"""
from __future__ import annotations

import logging
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, Tuple

import redis

from ..dao import get_connection, transaction
from ..errors import LockContention

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL = 60
LOCK_NAME = "impression_queue_processing"


class ProcessingLock:
    def __init__(self, ttl_seconds: int = DEFAULT_LOCK_TTL):
        self.ttl_seconds = ttl_seconds
        # tokens are per thread so concurrent callers on one instance stay independent
        self._local = threading.local()

    @property
    def _token(self) -> Optional[str]:
        return getattr(self._local, "token", None)

    @_token.setter
    def _token(self, value: Optional[str]) -> None:
        self._local.token = value

    def acquire(self) -> bool:
        token = uuid.uuid4().hex
        if self._try_acquire(token):
            self._token = token
            return True
        return False

    def release(self) -> None:
        token = self._token
        if token is None:
            return
        self._token = None
        self._release(token)

    @contextmanager
    def held(self) -> Iterator[None]:
        """Hold the lock for the block; raises LockContention when it is busy."""
        if not self.acquire():
            raise LockContention(f"{self.__class__.__name__} is held by another drain")
        try:
            yield
        finally:
            self.release()

    def _try_acquire(self, token: str) -> bool:
        raise NotImplementedError

    def _release(self, token: str) -> None:
        raise NotImplementedError


class MemoryLock(ProcessingLock):
    def __init__(self, ttl_seconds: int = DEFAULT_LOCK_TTL, clock: Callable[[], float] = time.time):
        super().__init__(ttl_seconds)
        self.clock = clock
        self._guard = threading.Lock()
        self._held: Optional[Tuple[str, float, float]] = None  # (token, acquired_at, expires_at)

    def _try_acquire(self, token: str) -> bool:
        now = self.clock()
        with self._guard:
            if self._held and self._held[2] > now:
                return False
            self._held = (token, now, now + self.ttl_seconds)
            return True

    def _release(self, token: str) -> None:
        with self._guard:
            if self._held and self._held[0] == token:
                self._held = None

    def is_held(self) -> bool:
        with self._guard:
            return bool(self._held and self._held[2] > self.clock())


class SqliteLock(ProcessingLock):
    """Lock row in ``processing_lock``; expired rows are cleared on acquire."""

    def __init__(self, db_path: str, ttl_seconds: int = DEFAULT_LOCK_TTL,
                 clock: Callable[[], float] = time.time, name: str = LOCK_NAME):
        super().__init__(ttl_seconds)
        self.db_path = db_path
        self.clock = clock
        self.name = name

    def _try_acquire(self, token: str) -> bool:
        now = self.clock()
        conn = get_connection(self.db_path, timeout=1.0)
        try:
            with transaction(conn):
                conn.execute(
                    "DELETE FROM processing_lock WHERE name = ? AND expires_at <= ?",
                    (self.name, now),
                )
                cur = conn.execute(
                    "INSERT OR IGNORE INTO processing_lock (name, token, acquired_at, expires_at) VALUES (?, ?, ?, ?)",
                    (self.name, token, now, now + self.ttl_seconds),
                )
                return cur.rowcount == 1
        except sqlite3.OperationalError as e:
            # a busy database is treated as contention
            logger.warning("Could not acquire processing lock: %s", e)
            return False
        finally:
            conn.close()

    def _release(self, token: str) -> None:
        conn = get_connection(self.db_path)
        try:
            with transaction(conn):
                conn.execute(
                    "DELETE FROM processing_lock WHERE name = ? AND token = ?",
                    (self.name, token),
                )
        except sqlite3.Error:
            logger.exception("Failed to release processing lock; it will expire in %ss", self.ttl_seconds)
        finally:
            conn.close()


_RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class RedisLock(ProcessingLock):
    def __init__(self, client: redis.Redis, ttl_seconds: int = DEFAULT_LOCK_TTL,
                 key: str = f"listing_stats:{LOCK_NAME}"):
        super().__init__(ttl_seconds)
        self.client = client
        self.key = key
        self._release_script = client.register_script(_RELEASE_SCRIPT)

    def _try_acquire(self, token: str) -> bool:
        try:
            return bool(self.client.set(self.key, token, nx=True, ex=self.ttl_seconds))
        except redis.RedisError as e:
            logger.error("Could not acquire processing lock: %s", e)
            return False

    def _release(self, token: str) -> None:
        try:
            self._release_script(keys=[self.key], args=[token])
        except redis.RedisError:
            logger.exception("Failed to release processing lock; it will expire in %ss", self.ttl_seconds)

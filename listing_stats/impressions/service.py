from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import date
from functools import partial
from typing import Any, Callable, Dict, Iterator, Optional

import redis

from ..config import QueueSettings
from ..dao import get_connection, open_repo, tables_exist
from ..errors import ConfigurationError, QueueStoreError
from ..kinds import CounterKind
from .accumulator import Accumulator
from .lock import MemoryLock, ProcessingLock, RedisLock, SqliteLock
from .processor import BatchProcessor, CanonicalFactory, DrainResult
from .queue_store import MemoryQueueStore, QueueStore, RedisQueueStore, SqliteQueueStore
from .trigger import DEFAULT_FLUSH_THRESHOLD, DrainScheduler, ThresholdMonitor

logger = logging.getLogger(__name__)


class ImpressionQueue:
    """Write-behind impression/click counting for sponsored listings.

    Built once at startup and handed to whoever records events. Producers
    open a ``request_scope()``; increments inside it are buffered in memory
    and merged into the pending queue when the scope exits. Drains run on the
    scheduler, early when the threshold monitor asks for one, or inline via
    ``force_process()``.
    """

    def __init__(
        self,
        store: QueueStore,
        processor: BatchProcessor,
        scheduler: Optional[DrainScheduler] = None,
        flush_threshold: int = DEFAULT_FLUSH_THRESHOLD,
    ):
        self.store = store
        self.processor = processor
        self.scheduler = scheduler
        self.monitor = ThresholdMonitor(store, self._request_drain, threshold=flush_threshold)
        self._current: ContextVar[Optional[Accumulator]] = ContextVar(
            f"impression_accumulator_{id(self)}", default=None
        )

    # --- producer side ---
    def accumulator(self) -> Accumulator:
        return Accumulator(self.store, self.monitor)

    @contextmanager
    def request_scope(self) -> Iterator[Accumulator]:
        """Bind a fresh accumulator for one unit of work and flush it on exit."""
        acc = self.accumulator()
        token = self._current.set(acc)
        try:
            yield acc
        finally:
            self._current.reset(token)
            self._flush_quietly(acc)

    def _flush_quietly(self, acc: Accumulator) -> None:
        try:
            acc.flush()
        except QueueStoreError:
            # invisible to the caller; these counts are lost
            logger.error("Failed to flush %s buffered counters", len(acc), exc_info=True)

    def _bound(self) -> Accumulator:
        acc = self._current.get()
        if acc is None:
            raise RuntimeError("increment called outside of a request scope")
        return acc

    def increment_impression(self, entity_id: int) -> None:
        self._bound().increment(entity_id, CounterKind.IMPRESSION)

    def increment_click(self, entity_id: int) -> None:
        self._bound().increment(entity_id, CounterKind.CLICK)

    def record_impression(self, entity_id: int, direct: bool = False) -> None:
        self._record(entity_id, CounterKind.IMPRESSION, direct)

    def record_click(self, entity_id: int, direct: bool = False) -> None:
        self._record(entity_id, CounterKind.CLICK, direct)

    def _record(self, entity_id: int, kind: CounterKind, direct: bool) -> None:
        if direct:
            # bypass the queue (low traffic / tests)
            with self.processor.canonical() as repo:
                repo.apply_delta(int(entity_id), kind, 1, self.processor.today())
            return
        acc = self._current.get()
        if acc is not None:
            acc.increment(entity_id, kind)
            return
        with self.request_scope() as scoped:
            scoped.increment(entity_id, kind)

    # --- consumer side ---
    def _request_drain(self) -> bool:
        if self.scheduler is None:
            return False
        return self.scheduler.request_run()

    def process_queue(self) -> DrainResult:
        return self.processor.run()

    def get_stats(self) -> Dict[str, Any]:
        impressions = self.store.get(CounterKind.IMPRESSION)
        clicks = self.store.get(CounterKind.CLICK)
        return {
            "impressions_queued": sum(impressions.values()),
            "clicks_queued": sum(clicks.values()),
            "unique_pending_entities": len(impressions) + len(clicks),
            "backend": self.store.backend,
        }

    def force_process(self) -> Dict[str, Any]:
        """Flush the caller's accumulator and run one drain pass inline."""
        before = self.get_stats()
        acc = self._current.get()
        if acc is not None:
            acc.flush(check_threshold=False)
        result = self.processor.run()
        after = self.get_stats()
        return {"before": before, "after": after, "result": result.to_dict()}

    def start(self) -> None:
        if self.scheduler is not None:
            self.scheduler.start()

    def shutdown(self) -> None:
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)


def _check_canonical(db_path: str) -> None:
    conn = get_connection(db_path)
    try:
        if not tables_exist(conn):
            raise ConfigurationError(f"Database {db_path} is missing the listing schema; run init_db first")
    finally:
        conn.close()


def _redis_client(settings: QueueSettings) -> redis.Redis:
    client = redis.Redis.from_url(settings.redis_url)
    try:
        client.ping()
    except redis.RedisError as e:
        raise ConfigurationError(f"Redis at {settings.redis_url} is unreachable: {e}") from e
    return client


def build_impression_queue(
    settings: QueueSettings,
    redis_client: Optional[redis.Redis] = None,
    canonical: Optional[CanonicalFactory] = None,
    clock: Callable[[], float] = time.time,
    today: Callable[[], date] = date.today,
) -> ImpressionQueue:
    """Assemble the queue, lock, processor and scheduler for ``settings``.

    Raises ConfigurationError once, here, when a backing service is missing.
    """
    settings.validate()
    _check_canonical(settings.db_path)

    store: QueueStore
    lock: ProcessingLock
    if settings.backend == "memory":
        store = MemoryQueueStore(ttl_seconds=settings.queue_ttl, clock=clock)
        lock = MemoryLock(ttl_seconds=settings.lock_ttl, clock=clock)
    elif settings.backend == "sqlite":
        store = SqliteQueueStore(settings.db_path, ttl_seconds=settings.queue_ttl, clock=clock)
        lock = SqliteLock(settings.db_path, ttl_seconds=settings.lock_ttl, clock=clock)
    else:
        client = redis_client or _redis_client(settings)
        store = RedisQueueStore(client, ttl_seconds=settings.queue_ttl)
        lock = RedisLock(client, ttl_seconds=settings.lock_ttl)

    processor = BatchProcessor(
        store,
        lock,
        canonical or partial(open_repo, settings.db_path),
        batch_size=settings.batch_size,
        today=today,
    )
    scheduler = DrainScheduler(processor.run, interval_seconds=settings.drain_interval)
    logger.info("Impression queue ready", extra={"backend": store.backend, "batch_size": settings.batch_size})
    return ImpressionQueue(store, processor, scheduler, flush_threshold=settings.flush_threshold)

"""Batch processor: drains the pending queue into canonical storage.

One pass, under the processing lock, handles impressions then clicks. For
each kind it reads the queue, commits at most ``batch_size`` entities and
reduces each committed entity's pending count by exactly the amount applied.
Entities beyond the batch are left queued for the next pass.

Known unsafe window: if the process dies after a canonical commit but before
the matching pending count is reduced, that delta is applied again by the
next pass. Failures are otherwise additive and self-healing: a failed
entity's delta for this pass is dropped and logged, later increments for it
keep accumulating.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import date
from itertools import islice
from typing import Any, Callable, ContextManager, Dict, List

from ..errors import LockContention, QueueStoreError
from ..kinds import CounterKind, KINDS
from ..observability import (
    QUEUE_COMMITTED,
    QUEUE_DRAINS,
    QUEUE_DRAIN_SECONDS,
    QUEUE_PENDING,
    QUEUE_WRITE_FAILURES,
)
from .lock import ProcessingLock
from .queue_store import QueueStore

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100

CanonicalFactory = Callable[[], ContextManager[Any]]


@dataclass
class DrainResult:
    skipped: bool = False
    aborted: bool = False
    committed: Dict[str, int] = field(default_factory=dict)
    failed: Dict[str, List[int]] = field(default_factory=dict)
    remaining: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "skipped": self.skipped,
            "aborted": self.aborted,
            "committed": dict(self.committed),
            "failed": {k: list(v) for k, v in self.failed.items()},
            "remaining": dict(self.remaining),
        }


class BatchProcessor:
    def __init__(
        self,
        store: QueueStore,
        lock: ProcessingLock,
        canonical: CanonicalFactory,
        batch_size: int = DEFAULT_BATCH_SIZE,
        today: Callable[[], date] = date.today,
    ):
        self.store = store
        self.lock = lock
        self.canonical = canonical
        self.batch_size = batch_size
        self.today = today

    def run(self) -> DrainResult:
        """Run one drain pass; skips immediately if another pass holds the lock."""
        result = DrainResult()
        started = time.monotonic()
        try:
            with self.lock.held(), self.canonical() as repo:
                for kind in KINDS:
                    self._drain_kind(repo, kind, result)
        except LockContention:
            logger.debug("Queue processing skipped - lock held")
            QUEUE_DRAINS.labels(outcome="skipped").inc()
            return DrainResult(skipped=True)
        except QueueStoreError as e:
            result.aborted = True
            logger.error("Queue processing aborted, pending queue left for next pass: %s", e)
        except Exception:
            # opening or closing the canonical store failed
            result.aborted = True
            logger.exception("Queue processing aborted, canonical store unavailable")

        QUEUE_DRAIN_SECONDS.observe(time.monotonic() - started)
        QUEUE_DRAINS.labels(outcome="aborted" if result.aborted else "completed").inc()
        return result

    def _drain_kind(self, repo, kind: CounterKind, result: DrainResult) -> None:
        queue = self.store.get(kind)
        if not queue:
            result.remaining[kind.value] = 0
            QUEUE_PENDING.labels(kind=kind.value).set(0)
            return

        day = self.today()
        processed = 0
        failed: List[int] = []
        for entity_id, count in islice(queue.items(), self.batch_size):
            try:
                repo.apply_delta(entity_id, kind, count, day)
            except Exception as e:
                # delta for this pass is dropped; later increments still accumulate
                failed.append(entity_id)
                QUEUE_WRITE_FAILURES.labels(kind=kind.value).inc()
                logger.error(
                    "Failed to commit %s %s for listing %s: %s",
                    count, kind.value, entity_id, e, exc_info=True,
                )
            else:
                QUEUE_COMMITTED.labels(kind=kind.value).inc(count)
            self.store.subtract(kind, entity_id, count)
            processed += 1

        remaining = max(len(queue) - processed, 0)
        if remaining == 0:
            self.store.delete(kind, only_if_empty=True)
        else:
            # leftovers wait for the next pass; keep them from expiring meanwhile
            self.store.touch(kind)

        result.committed[kind.value] = processed - len(failed)
        result.remaining[kind.value] = remaining
        if failed:
            result.failed[kind.value] = failed
        QUEUE_PENDING.labels(kind=kind.value).set(remaining)
        logger.debug(
            "Processed %s queue",
            kind.value,
            extra={"count": processed, "failed": len(failed), "remaining": remaining},
        )

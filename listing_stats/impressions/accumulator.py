from __future__ import annotations

from collections import Counter
from typing import TYPE_CHECKING, Dict, Optional, Union

from ..kinds import CounterKind, KINDS
from .queue_store import QueueStore

if TYPE_CHECKING:
    from .trigger import ThresholdMonitor


class Accumulator:
    """Request-scoped counter buffer.

    Each unit of work owns one instance; nothing here is shared between
    threads. ``flush`` merges the buffered counts into the pending queue
    additively (one merge per kind) and clears the buffer.
    """

    def __init__(self, store: QueueStore, monitor: Optional["ThresholdMonitor"] = None):
        self.store = store
        self.monitor = monitor
        self._counts: Dict[CounterKind, Counter] = {kind: Counter() for kind in KINDS}

    def increment(self, entity_id: int, kind: Union[CounterKind, str]) -> None:
        self._counts[CounterKind(kind)][int(entity_id)] += 1

    def pending(self) -> Dict[str, Dict[int, int]]:
        return {kind.value: dict(counts) for kind, counts in self._counts.items()}

    def __len__(self) -> int:
        return sum(len(c) for c in self._counts.values())

    def flush(self, check_threshold: bool = True) -> int:
        """Merge buffered counts into the pending queue; returns counts merged.

        A kind is cleared only after its merge succeeded, so a failing store
        leaves the unmerged remainder buffered.
        """
        merged = 0
        for kind in KINDS:
            counts = self._counts[kind]
            if not counts:
                continue
            self.store.merge(kind, dict(counts))
            merged += sum(counts.values())
            counts.clear()

        if merged and check_threshold and self.monitor is not None:
            self.monitor.check()
        return merged

    def __enter__(self) -> "Accumulator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.flush()

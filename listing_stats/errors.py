from __future__ import annotations

from typing import Optional


class ImpressionQueueError(Exception):
    """Base class for impression/click queue failures"""
    pass


class LockContention(ImpressionQueueError):
    """Another drain currently holds the processing lock"""
    pass


class StoreWriteFailure(ImpressionQueueError):
    """A canonical store write failed for one entity"""

    def __init__(self, message: str, entity_id: Optional[int] = None, kind: Optional[str] = None):
        super().__init__(message)
        self.entity_id = entity_id
        self.kind = kind


class QueueStoreError(ImpressionQueueError):
    """The pending queue backend could not be reached"""
    pass


class QueueReadFailure(QueueStoreError):
    pass


class QueueWriteFailure(QueueStoreError):
    pass


class ConfigurationError(ImpressionQueueError):
    """A required backing service is missing or misconfigured at startup"""
    pass

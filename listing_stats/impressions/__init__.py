"""Impressions Module - write-behind impression/click counting for sponsored listings"""

from .accumulator import Accumulator
from .queue_store import QueueStore, MemoryQueueStore, SqliteQueueStore, RedisQueueStore
from .lock import ProcessingLock, MemoryLock, SqliteLock, RedisLock
from .trigger import DrainScheduler, ThresholdMonitor
from .processor import BatchProcessor, DrainResult
from .service import ImpressionQueue, build_impression_queue

__all__ = [
    'Accumulator',
    'QueueStore',
    'MemoryQueueStore',
    'SqliteQueueStore',
    'RedisQueueStore',
    'ProcessingLock',
    'MemoryLock',
    'SqliteLock',
    'RedisLock',
    'DrainScheduler',
    'ThresholdMonitor',
    'BatchProcessor',
    'DrainResult',
    'ImpressionQueue',
    'build_impression_queue',
]

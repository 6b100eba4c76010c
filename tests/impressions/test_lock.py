import threading
from unittest.mock import MagicMock

import redis

from listing_stats.errors import LockContention
from listing_stats.impressions.lock import MemoryLock, RedisLock, SqliteLock
from listing_stats.main import init_db


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def setup_db(tmp_path):
    return init_db(str(tmp_path / "test_app.sqlite"))


def race(acquire, contenders=8):
    """Call acquire from several threads at the same instant; return results"""
    barrier = threading.Barrier(contenders)
    results = []
    results_lock = threading.Lock()

    def contender():
        barrier.wait()
        ok = acquire()
        with results_lock:
            results.append(ok)

    threads = [threading.Thread(target=contender) for _ in range(contenders)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results


def test_memory_lock_is_exclusive_until_released():
    lock = MemoryLock(ttl_seconds=60)

    assert lock.acquire() == True
    other = []
    t = threading.Thread(target=lambda: other.append(lock.acquire()))
    t.start()
    t.join()
    assert other == [False]

    lock.release()
    assert lock.acquire() == True


def test_memory_lock_concurrent_acquire_has_one_winner():
    lock = MemoryLock(ttl_seconds=60)
    results = race(lock.acquire)
    assert results.count(True) == 1


def test_memory_lock_expires_after_ttl():
    clock = FakeClock()
    lock = MemoryLock(ttl_seconds=60, clock=clock)
    assert lock.acquire() == True

    clock.advance(59)
    assert lock.is_held() == True

    clock.advance(2)
    assert lock.is_held() == False
    assert lock.acquire() == True


def test_sqlite_lock_concurrent_acquire_has_one_winner(tmp_path):
    db_path = setup_db(tmp_path)
    # separate instances behave like separate processes
    results = race(lambda: SqliteLock(db_path).acquire())
    assert results.count(True) == 1


def test_sqlite_lock_expires_after_ttl(tmp_path):
    db_path = setup_db(tmp_path)
    clock = FakeClock()
    first = SqliteLock(db_path, ttl_seconds=60, clock=clock)
    second = SqliteLock(db_path, ttl_seconds=60, clock=clock)

    assert first.acquire() == True
    assert second.acquire() == False

    clock.advance(61)
    assert second.acquire() == True


def test_stale_holder_cannot_release_new_lock(tmp_path):
    """A processor that overran its TTL must not free someone else's lock"""
    db_path = setup_db(tmp_path)
    clock = FakeClock()
    stale = SqliteLock(db_path, ttl_seconds=60, clock=clock)
    current = SqliteLock(db_path, ttl_seconds=60, clock=clock)
    bystander = SqliteLock(db_path, ttl_seconds=60, clock=clock)

    assert stale.acquire() == True
    clock.advance(61)
    assert current.acquire() == True

    stale.release()

    assert bystander.acquire() == False
    current.release()
    assert bystander.acquire() == True


def test_release_without_acquire_is_harmless(tmp_path):
    lock = SqliteLock(setup_db(tmp_path))
    lock.release()
    assert lock.acquire() == True


def test_redis_lock_uses_set_nx_with_ttl():
    client = MagicMock()
    client.set.return_value = True
    lock = RedisLock(client, ttl_seconds=60)

    assert lock.acquire() == True
    args, kwargs = client.set.call_args
    assert args[0] == "listing_stats:impression_queue_processing"
    assert kwargs == {"nx": True, "ex": 60}

    token = args[1]
    lock.release()
    client.register_script.return_value.assert_called_once_with(
        keys=["listing_stats:impression_queue_processing"], args=[token]
    )


def test_redis_lock_busy_or_unreachable_returns_false():
    client = MagicMock()
    client.set.return_value = None
    lock = RedisLock(client)
    assert lock.acquire() == False

    client.set.side_effect = redis.ConnectionError("refused")
    assert lock.acquire() == False


def test_held_raises_lock_contention_when_busy():
    lock = MemoryLock(ttl_seconds=60)

    with lock.held():
        other = []

        def contender():
            try:
                with lock.held():
                    other.append("acquired")
            except LockContention:
                other.append("busy")

        t = threading.Thread(target=contender)
        t.start()
        t.join()
        assert other == ["busy"]

    assert lock.is_held() == False

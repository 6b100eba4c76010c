import threading
from datetime import date

import pytest

from listing_stats.config import QueueSettings
from listing_stats.dao import get_connection, ListingStatsRepo
from listing_stats.errors import ConfigurationError, QueueWriteFailure
from listing_stats.impressions.queue_store import MemoryQueueStore
from listing_stats.impressions.service import ImpressionQueue, build_impression_queue
from listing_stats.impressions.trigger import DEFAULT_FLUSH_THRESHOLD
from listing_stats.kinds import CounterKind
from listing_stats.main import init_db

TODAY = date(2026, 3, 14)


def setup_db(tmp_path, names=("A", "B", "C")):
    db_path = init_db(str(tmp_path / "test_app.sqlite"))
    conn = get_connection(db_path)
    repo = ListingStatsRepo(conn)
    ids = [repo.create_listing(name) for name in names]
    conn.close()
    return db_path, ids


def make_queue(db_path, backend="memory", **overrides):
    settings = QueueSettings(db_path=db_path, backend=backend, **overrides)
    return build_impression_queue(settings, today=lambda: TODAY)


def listing_row(db_path, listing_id):
    conn = get_connection(db_path)
    total = conn.execute("SELECT total_impressions, total_clicks FROM sponsored_listing WHERE id = ?", (listing_id,)).fetchone()
    day = conn.execute(
        "SELECT impressions, clicks FROM sponsored_listing_stats WHERE sponsored_id = ? AND stat_date = ?",
        (listing_id, TODAY.isoformat()),
    ).fetchone()
    conn.close()
    return dict(total), (dict(day) if day else None)


class FakeScheduler:
    def __init__(self):
        self.requests = 0

    def request_run(self):
        self.requests += 1
        return True


@pytest.mark.parametrize("backend", ["memory", "sqlite"])
def test_two_requests_then_force_process(tmp_path, backend):
    """Two impressions in request A, one in request B, then an inline drain"""
    db_path, _ = setup_db(tmp_path, names=[f"L{i}" for i in range(42)])
    queue = make_queue(db_path, backend)

    with queue.request_scope():
        queue.increment_impression(42)
        queue.increment_impression(42)
    with queue.request_scope():
        queue.increment_impression(42)

    out = queue.force_process()

    total, day = listing_row(db_path, 42)
    assert total["total_impressions"] == 3
    assert day["impressions"] == 3
    assert 42 not in queue.store.get(CounterKind.IMPRESSION)
    assert out["before"]["impressions_queued"] == 3
    assert out["after"]["impressions_queued"] == 0


def test_force_process_on_empty_queue_is_noop(tmp_path):
    db_path, _ = setup_db(tmp_path)
    queue = make_queue(db_path)

    out = queue.force_process()

    assert out["before"] == out["after"]
    assert out["after"]["unique_pending_entities"] == 0


def test_force_process_flushes_callers_accumulator(tmp_path):
    db_path, (a, _, _) = setup_db(tmp_path)
    queue = make_queue(db_path)

    with queue.request_scope():
        queue.increment_click(a)
        out = queue.force_process()

    assert out["before"]["clicks_queued"] == 0
    assert listing_row(db_path, a)[0]["total_clicks"] == 1


def test_conservation_across_parallel_requests(tmp_path):
    """N increments spread over concurrent request scopes all land"""
    db_path, (a, _, _) = setup_db(tmp_path)
    queue = make_queue(db_path, "sqlite")
    workers, per_request, requests_each = 4, 5, 10

    def handle_requests():
        for _ in range(requests_each):
            with queue.request_scope():
                for _ in range(per_request):
                    queue.increment_impression(a)

    threads = [threading.Thread(target=handle_requests) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    queue.force_process()

    assert listing_row(db_path, a)[0]["total_impressions"] == workers * per_request * requests_each


def test_get_stats_counts_queued_events(tmp_path):
    db_path, (a, b, _) = setup_db(tmp_path)
    queue = make_queue(db_path)

    with queue.request_scope():
        queue.increment_impression(a)
        queue.increment_impression(a)
        queue.increment_impression(b)
        queue.increment_click(a)

    assert queue.get_stats() == {
        "impressions_queued": 3,
        "clicks_queued": 1,
        "unique_pending_entities": 3,
        "backend": "memory",
    }


def test_increment_outside_scope_raises(tmp_path):
    db_path, (a, _, _) = setup_db(tmp_path)
    queue = make_queue(db_path)

    with pytest.raises(RuntimeError):
        queue.increment_impression(a)


def test_record_without_scope_is_queued(tmp_path):
    db_path, (a, _, _) = setup_db(tmp_path)
    queue = make_queue(db_path)

    queue.record_impression(a)

    assert queue.get_stats()["impressions_queued"] == 1
    assert listing_row(db_path, a)[0]["total_impressions"] == 0


def test_record_direct_bypasses_queue(tmp_path):
    db_path, (a, _, _) = setup_db(tmp_path)
    queue = make_queue(db_path)

    queue.record_click(a, direct=True)

    assert queue.get_stats()["clicks_queued"] == 0
    total, day = listing_row(db_path, a)
    assert total["total_clicks"] == 1
    assert day["clicks"] == 1


def test_threshold_requests_early_drain(tmp_path):
    db_path, ids = setup_db(tmp_path)
    queue = make_queue(db_path, flush_threshold=3)
    scheduler = FakeScheduler()
    queue.scheduler = scheduler

    with queue.request_scope():
        queue.increment_impression(ids[0])
        queue.increment_click(ids[0])
    assert scheduler.requests == 0

    with queue.request_scope():
        queue.increment_impression(ids[1])
    assert scheduler.requests == 1


def test_flush_failure_is_invisible_to_request(tmp_path):
    db_path, (a, _, _) = setup_db(tmp_path)
    queue = make_queue(db_path)

    class DownStore(MemoryQueueStore):
        def merge(self, kind, deltas):
            raise QueueWriteFailure("down")

    queue.store = DownStore()
    queue.monitor.store = queue.store

    with queue.request_scope():
        queue.increment_impression(a)


def test_missing_schema_is_configuration_error(tmp_path):
    settings = QueueSettings(db_path=str(tmp_path / "blank.sqlite"), backend="memory")
    with pytest.raises(ConfigurationError):
        build_impression_queue(settings)


def test_redis_backend_requires_url(tmp_path):
    db_path, _ = setup_db(tmp_path)
    with pytest.raises(ConfigurationError):
        build_impression_queue(QueueSettings(db_path=db_path, backend="redis"))


def test_default_threshold_matches_monitor_default():
    queue = ImpressionQueue(MemoryQueueStore(), processor=None)
    assert queue.monitor.threshold == DEFAULT_FLUSH_THRESHOLD

from datetime import date

import pytest

from listing_stats.dao import ctr, get_connection, ListingStatsRepo, open_repo
from listing_stats.errors import StoreWriteFailure
from listing_stats.kinds import CounterKind
from listing_stats.main import init_db


@pytest.fixture
def repo(tmp_path):
    db_path = init_db(str(tmp_path / "test_app.sqlite"))
    conn = get_connection(db_path)
    yield ListingStatsRepo(conn)
    conn.close()


def test_apply_delta_updates_total_and_bucket(repo):
    lid = repo.create_listing("Alpha")
    day = date(2026, 5, 1)

    repo.apply_delta(lid, CounterKind.IMPRESSION, 4, day)
    repo.apply_delta(lid, CounterKind.IMPRESSION, 2, day)
    repo.apply_delta(lid, CounterKind.CLICK, 1, day)

    listing = repo.get_listing(lid)
    assert listing["total_impressions"] == 6
    assert listing["total_clicks"] == 1
    assert repo.get_daily_stats(lid, day, day) == [
        {"stat_date": "2026-05-01", "impressions": 6, "clicks": 1, "ctr": 16.67}
    ]


def test_apply_delta_unknown_listing_raises_and_rolls_back(repo):
    day = date(2026, 5, 1)
    with pytest.raises(StoreWriteFailure) as exc:
        repo.apply_delta(404, CounterKind.CLICK, 1, day)

    assert exc.value.entity_id == 404
    assert exc.value.kind == "click"
    count = repo.conn.execute("SELECT COUNT(*) FROM sponsored_listing_stats").fetchone()[0]
    assert count == 0


def test_daily_stats_respects_window(repo):
    lid = repo.create_listing("Beta")
    for d in (date(2026, 4, 1), date(2026, 4, 15), date(2026, 5, 1)):
        repo.apply_delta(lid, CounterKind.IMPRESSION, 1, d)

    rows = repo.get_daily_stats(lid, date(2026, 4, 10), date(2026, 5, 1))

    assert [r["stat_date"] for r in rows] == ["2026-04-15", "2026-05-01"]


def test_click_limit_expires_listing(repo):
    lid = repo.create_listing("Gamma", click_limit=2)
    day = date(2026, 5, 1)

    repo.apply_delta(lid, CounterKind.CLICK, 1, day)
    assert repo.get_listing(lid)["status"] == "active"

    repo.apply_delta(lid, CounterKind.CLICK, 1, day)
    assert repo.get_listing(lid)["status"] == "expired"


def test_aggregate_stats(repo):
    a = repo.create_listing("A")
    b = repo.create_listing("B")
    day = date(2026, 5, 1)
    repo.apply_delta(a, CounterKind.IMPRESSION, 150, day)
    repo.apply_delta(b, CounterKind.IMPRESSION, 50, day)
    repo.apply_delta(a, CounterKind.CLICK, 10, day)

    assert repo.get_aggregate_stats() == {
        "total_listings": 2,
        "active_listings": 2,
        "total_impressions": 200,
        "total_clicks": 10,
        "avg_ctr": 5.0,
    }


def test_get_listing_missing_is_none(repo):
    assert repo.get_listing(12345) is None


def test_ctr():
    assert ctr(0, 0) == 0
    assert ctr(1, 3) == 33.33
    assert ctr(5, 5) == 100.0


def test_open_repo_closes_connection(tmp_path):
    db_path = init_db(str(tmp_path / "test_app.sqlite"))
    with open_repo(db_path) as repo:
        lid = repo.create_listing("Delta")
    with open_repo(db_path) as repo:
        assert repo.get_listing(lid)["name"] == "Delta"

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import date, timedelta
from typing import Dict, Iterator, List, Optional

from .errors import StoreWriteFailure
from .kinds import CounterKind

logger = logging.getLogger(__name__)

REQUIRED_TABLES = ("sponsored_listing", "sponsored_listing_stats", "pending_counter", "processing_lock")


def get_connection(db_path: str, timeout: float = 5.0) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=timeout)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection):
    # BEGIN IMMEDIATE takes the write lock up front so read-modify-write is atomic
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield
    except Exception:
        conn.rollback()
        raise
    else:
        conn.commit()


def tables_exist(conn: sqlite3.Connection) -> bool:
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    names = {r[0] for r in rows}
    return all(t in names for t in REQUIRED_TABLES)


class ListingStatsRepo:
    """Canonical aggregate storage for sponsored listings.

    Running totals live on ``sponsored_listing``; per-day buckets live in
    ``sponsored_listing_stats``. Every write is additive.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def increment_running_total(self, entity_id: int, kind: CounterKind, delta: int) -> None:
        cur = self.conn.execute(
            f"UPDATE sponsored_listing SET {kind.total_column} = {kind.total_column} + ?, "
            "updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (delta, entity_id),
        )
        if cur.rowcount == 0:
            raise StoreWriteFailure(f"Listing {entity_id} not found", entity_id=entity_id, kind=kind.value)

    def upsert_daily_bucket(self, entity_id: int, kind: CounterKind, day: date, delta: int) -> None:
        col = kind.daily_column
        self.conn.execute(
            f"INSERT INTO sponsored_listing_stats (sponsored_id, stat_date, {col}) VALUES (?, ?, ?) "
            f"ON CONFLICT(sponsored_id, stat_date) DO UPDATE SET {col} = {col} + excluded.{col}",
            (entity_id, day.isoformat(), delta),
        )

    def apply_delta(self, entity_id: int, kind: CounterKind, delta: int, day: date) -> None:
        """Commit one drained delta: running total, daily bucket, limit check."""
        try:
            with transaction(self.conn):
                self.increment_running_total(entity_id, kind, delta)
                self.upsert_daily_bucket(entity_id, kind, day, delta)
                self._expire_if_limits_reached(entity_id)
        except sqlite3.Error as e:
            raise StoreWriteFailure(str(e), entity_id=entity_id, kind=kind.value) from e

    def _expire_if_limits_reached(self, entity_id: int) -> None:
        cur = self.conn.execute(
            """
            UPDATE sponsored_listing SET status = 'expired', updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND status = 'active'
              AND ((impression_limit > 0 AND total_impressions >= impression_limit)
                OR (click_limit > 0 AND total_clicks >= click_limit))
            """,
            (entity_id,),
        )
        if cur.rowcount:
            logger.info("Sponsored listing %s expired due to limits", entity_id)

    # --- reads ---
    def create_listing(self, name: str, impression_limit: int = 0, click_limit: int = 0) -> int:
        cur = self.conn.execute(
            "INSERT INTO sponsored_listing (name, impression_limit, click_limit) VALUES (?, ?, ?)",
            (name, impression_limit, click_limit),
        )
        self.conn.commit()
        return cur.lastrowid

    def get_listing(self, entity_id: int) -> Optional[Dict]:
        row = self.conn.execute(
            "SELECT id, name, status, impression_limit, click_limit, total_impressions, total_clicks "
            "FROM sponsored_listing WHERE id = ?",
            (entity_id,),
        ).fetchone()
        if row is None:
            return None
        listing = dict(row)
        listing["ctr"] = ctr(listing["total_clicks"], listing["total_impressions"])
        return listing

    def get_daily_stats(self, entity_id: int, start: Optional[date] = None, end: Optional[date] = None) -> List[Dict]:
        end = end or date.today()
        start = start or (end - timedelta(days=30))
        rows = self.conn.execute(
            """
            SELECT stat_date, impressions, clicks
            FROM sponsored_listing_stats
            WHERE sponsored_id = ? AND stat_date BETWEEN ? AND ?
            ORDER BY stat_date ASC
            """,
            (entity_id, start.isoformat(), end.isoformat()),
        ).fetchall()
        return [dict(r, ctr=ctr(r["clicks"], r["impressions"])) for r in rows]

    def get_aggregate_stats(self) -> Dict:
        row = self.conn.execute(
            """
            SELECT COUNT(*) AS total_listings,
                   COALESCE(SUM(CASE WHEN status = 'active' THEN 1 ELSE 0 END), 0) AS active_listings,
                   COALESCE(SUM(total_impressions), 0) AS total_impressions,
                   COALESCE(SUM(total_clicks), 0) AS total_clicks
            FROM sponsored_listing
            """
        ).fetchone()
        stats = dict(row)
        stats["avg_ctr"] = ctr(stats["total_clicks"], stats["total_impressions"])
        return stats


def ctr(clicks: int, impressions: int) -> float:
    if not impressions:
        return 0
    return round(clicks / impressions * 100, 2)


@contextmanager
def open_repo(db_path: str) -> Iterator[ListingStatsRepo]:
    conn = get_connection(db_path)
    try:
        yield ListingStatsRepo(conn)
    finally:
        conn.close()

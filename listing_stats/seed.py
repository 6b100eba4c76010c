#!/usr/bin/env python3
import os
import sys

from .dao import ListingStatsRepo, get_connection
from .main import DEFAULT_DB_PATH, init_db


def seed_listings(conn):
    """Insert demo sponsored listings"""
    listings = [
        ("Founder Stories Weekly", 0, 0),
        ("The Bootstrapped Podcast", 5000, 0),
        ("Marketing Over Coffee", 0, 250),
    ]

    repo = ListingStatsRepo(conn)
    for name, impression_limit, click_limit in listings:
        existing = conn.execute("SELECT id FROM sponsored_listing WHERE name = ?", (name,)).fetchone()
        if existing:
            continue
        listing_id = repo.create_listing(name, impression_limit=impression_limit, click_limit=click_limit)
        print(f"Inserted listing {listing_id}: {name}")


def main():
    """Main seeding function"""
    db_path = os.environ.get("APP_DB_PATH", DEFAULT_DB_PATH)
    print(f"Seeding database at: {db_path}")
    init_db(db_path)

    conn = get_connection(db_path)
    try:
        seed_listings(conn)
        count = conn.execute("SELECT COUNT(*) FROM sponsored_listing WHERE status = 'active'").fetchone()[0]
        print(f"Total active listings: {count}")
    except Exception as e:
        conn.rollback()
        print(f"ERROR: {e}")
        sys.exit(1)
    finally:
        conn.close()


if __name__ == "__main__":
    main()

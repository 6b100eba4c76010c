#!/usr/bin/env python3
"""
End-to-end demo script for a locally running listing-stats app.

Usage:
  python scripts/run_demo.py --seed --impressions 120 --clicks 15 --process

Options implemented in script:
 - --seed : run listing_stats.seed to ensure demo listings exist
 - --impressions N : send N impression events spread over the demo listings
 - --clicks N : send N click events
 - --bulk : send impressions as one results-page batch per request
 - --process : force an inline drain through the admin endpoint
 - --stats : print queue stats, listing summary and per-listing stats

The script assumes the app is already running at http://127.0.0.1:5000
and that ADMIN_API_KEY is unset (so `admin-demo-key` is accepted).

It prints JSON responses for each step.
"""

import argparse
import json
import subprocess
import sys

import requests

BASE = "http://127.0.0.1:5000"
ADMIN = {"X-Admin-Key": "admin-demo-key"}
LISTING_IDS = [1, 2, 3]

session = requests.Session()


def run_seed():
    print("Running DB seed...")
    res = subprocess.run([sys.executable, "-m", "listing_stats.seed"], capture_output=True, text=True)
    print(res.stdout)
    if res.returncode != 0:
        print(res.stderr)
        raise SystemExit("Seeding failed")


def send_impressions(n, bulk=False):
    print(f"Sending {n} impressions ({'bulk' if bulk else 'single'})")
    if bulk:
        page = LISTING_IDS
        sent = 0
        while sent < n:
            ids = page[: n - sent]
            r = session.post(f"{BASE}/listings/impressions", json={"ids": ids})
            r.raise_for_status()
            sent += len(ids)
        return
    for i in range(n):
        lid = LISTING_IDS[i % len(LISTING_IDS)]
        r = session.post(f"{BASE}/listings/{lid}/impression")
        r.raise_for_status()


def send_clicks(n):
    print(f"Sending {n} clicks")
    for i in range(n):
        lid = LISTING_IDS[i % len(LISTING_IDS)]
        r = session.post(f"{BASE}/listings/{lid}/click")
        r.raise_for_status()


def force_process():
    print("POST /admin/impressions/process")
    r = session.post(f"{BASE}/admin/impressions/process", headers=ADMIN)
    print(r.status_code, json.dumps(r.json(), indent=2) if r.ok else r.text)


def show_stats():
    print("GET /admin/impressions/stats")
    r = session.get(f"{BASE}/admin/impressions/stats", headers=ADMIN)
    print(r.status_code, r.text)
    print("GET /admin/listings/summary")
    r = session.get(f"{BASE}/admin/listings/summary", headers=ADMIN)
    print(r.status_code, r.text)
    for lid in LISTING_IDS:
        r = session.get(f"{BASE}/listings/{lid}/stats")
        print(f"listing {lid}", r.status_code, r.text)


if __name__ == "__main__":
    p = argparse.ArgumentParser()
    p.add_argument("--seed", action="store_true", help="Run DB seed")
    p.add_argument("--impressions", type=int, default=0)
    p.add_argument("--clicks", type=int, default=0)
    p.add_argument("--bulk", action="store_true")
    p.add_argument("--process", action="store_true")
    p.add_argument("--stats", action="store_true")
    args = p.parse_args()

    if args.seed:
        run_seed()
    if args.impressions:
        send_impressions(args.impressions, bulk=args.bulk)
    if args.clicks:
        send_clicks(args.clicks)
    if args.process:
        force_process()
    if args.stats:
        show_stats()

    print("Done")

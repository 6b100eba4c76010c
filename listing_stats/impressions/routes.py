from __future__ import annotations

import os
from contextlib import ExitStack
from datetime import date
from typing import Optional

from flask import Blueprint, abort, current_app, g, jsonify, request, session

from ..dao import open_repo
from ..errors import QueueStoreError
from ..observability import metrics_endpoint
from .service import ImpressionQueue

bp = Blueprint("impressions", __name__)


def get_queue() -> ImpressionQueue:
    return current_app.extensions["impression_queue"]


def _is_admin_request() -> bool:
    """Return True if request is authenticated as admin either via session or header."""
    if session.get("is_admin"):
        return True
    admin_key = request.headers.get("X-Admin-Key")
    expected = os.environ.get("ADMIN_API_KEY") or "admin-demo-key"
    return bool(admin_key and admin_key == expected)


def _require_admin() -> None:
    if not _is_admin_request():
        abort(401, "Missing or invalid admin key")


def _parse_date(name: str) -> Optional[date]:
    raw = request.args.get(name)
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError:
        abort(400, f"{name} must be YYYY-MM-DD")


# Every request gets its own accumulator; teardown flushes it even when the
# view raised.
@bp.before_app_request
def _open_accumulator_scope():
    stack = ExitStack()
    stack.enter_context(get_queue().request_scope())
    g._impression_scope = stack


@bp.teardown_app_request
def _close_accumulator_scope(exc):
    stack = g.pop("_impression_scope", None)
    if stack is not None:
        stack.close()


@bp.errorhandler(QueueStoreError)
def _queue_unavailable(e):
    return jsonify({"error": "Pending queue unavailable", "detail": str(e)}), 503


@bp.post("/listings/<int:listing_id>/impression")
def listing_impression(listing_id: int):
    get_queue().increment_impression(listing_id)
    return jsonify({"queued": 1}), 202


@bp.post("/listings/<int:listing_id>/click")
def listing_click(listing_id: int):
    get_queue().increment_click(listing_id)
    return jsonify({"queued": 1}), 202


@bp.post("/listings/impressions")
def listing_impressions_bulk():
    """Record one impression per listing shown on a results page."""
    data = request.get_json(silent=True) or {}
    ids = data.get("ids")
    if not isinstance(ids, list):
        abort(400, "Expected JSON body {\"ids\": [...]}")
    try:
        listing_ids = [int(i) for i in ids]
    except (TypeError, ValueError):
        abort(400, "ids must be integers")
    queue = get_queue()
    for listing_id in listing_ids:
        queue.increment_impression(listing_id)
    return jsonify({"queued": len(listing_ids)}), 202


@bp.get("/listings/<int:listing_id>/stats")
def listing_stats(listing_id: int):
    start = _parse_date("start")
    end = _parse_date("end")
    with open_repo(current_app.config["APP_DB_PATH"]) as repo:
        listing = repo.get_listing(listing_id)
        if listing is None:
            abort(404, "Listing not found")
        daily = repo.get_daily_stats(listing_id, start, end)
    return jsonify({"listing": listing, "daily": daily})


@bp.get("/admin/impressions/stats")
def admin_queue_stats():
    _require_admin()
    return jsonify(get_queue().get_stats())


@bp.post("/admin/impressions/process")
def admin_force_process():
    _require_admin()
    return jsonify(get_queue().force_process())


@bp.get("/admin/listings/summary")
def admin_listing_summary():
    _require_admin()
    with open_repo(current_app.config["APP_DB_PATH"]) as repo:
        return jsonify(repo.get_aggregate_stats())


@bp.get("/metrics")
def metrics():
    return metrics_endpoint()

from __future__ import annotations

import atexit
import os
import time
from typing import Optional

from flask import Flask, g, request
import redis

from .config import QueueSettings
from .impressions.routes import bp as impressions_bp
from .impressions.service import build_impression_queue
from .main import init_db
from .observability import HTTP_LATENCY, HTTP_REQUESTS, configure_logging


def create_app(
    settings: Optional[QueueSettings] = None,
    start_scheduler: bool = True,
    redis_client: Optional[redis.Redis] = None,
) -> Flask:
    configure_logging(os.environ.get("LOG_LEVEL", "INFO").upper())

    app = Flask(__name__)
    app.secret_key = os.environ.get("APP_SECRET_KEY", "dev-insecure-secret")

    settings = settings or QueueSettings.from_env()
    init_db(settings.db_path)
    app.config["APP_DB_PATH"] = settings.db_path

    # Built once per process and injected; the blueprint reads it from app.extensions
    queue = build_impression_queue(settings, redis_client=redis_client)
    app.extensions["impression_queue"] = queue
    app.register_blueprint(impressions_bp)

    @app.before_request
    def _start_timer():
        g._started = time.perf_counter()

    @app.after_request
    def _record_request(response):
        endpoint = request.url_rule.rule if request.url_rule else "unmatched"
        HTTP_REQUESTS.labels(request.method, endpoint, response.status_code).inc()
        started = g.get("_started")
        if started is not None:
            HTTP_LATENCY.labels(endpoint).observe(time.perf_counter() - started)
        return response

    # The background scheduler is started here rather than at import time so
    # tests can build an app without drain threads.
    if start_scheduler:
        queue.start()
        atexit.register(queue.shutdown)

    return app


if __name__ == "__main__":
    app = create_app()
    app.run(debug=True, host="127.0.0.1", port=int(os.environ.get("PORT", "5000")))

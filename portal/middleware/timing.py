"""
Per-request timing and trace ids.

Every response carries ``X-Request-Duration-Ms`` and ``X-Trace-ID``. A
caller-supplied ``X-Trace-ID`` is echoed back; otherwise one is generated.
Each request is logged once with its HTTP fields, at WARNING when slow,
ERROR on a 5xx and DEBUG otherwise.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

SLOW_THRESHOLD_MS = 1000
QUIET_PATHS = frozenset({"/api/v1/health"})


def _level_for(status: int, duration_ms: float) -> int:
    if duration_ms > SLOW_THRESHOLD_MS:
        return logging.WARNING
    if status >= 500:
        return logging.ERROR
    return logging.DEBUG


def init_request_timing(app: Flask):
    """Install the timing hooks on ``app``."""

    @app.before_request
    def _start_timer():
        g.request_start = time.perf_counter()
        g.trace_id = request.headers.get("X-Trace-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _finish_timer(response):
        if "request_start" not in g:
            return response

        elapsed = (time.perf_counter() - g.request_start) * 1000
        response.headers["X-Request-Duration-Ms"] = f"{elapsed:.1f}"
        response.headers["X-Trace-ID"] = g.trace_id

        if request.path not in QUIET_PATHS:
            logger.log(
                _level_for(response.status_code, elapsed),
                "%s %s -> %d in %.0fms", request.method, request.path, response.status_code, elapsed,
                extra={
                    "method": request.method,
                    "path": request.path,
                    "status": response.status_code,
                    "duration_ms": elapsed,
                    "remote_addr": request.remote_addr,
                    "trace_id": g.trace_id,
                },
            )
        return response

"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in portal/__init__.py with no default limits;
this module applies granular limits per route category.

Usage:
    from portal.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

# Bulk approval touches many rows in one transaction
BULK_LIMIT = "10/minute"
WRITE_LIMIT = "60/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Request workflow endpoints: 60/minute
        - Bulk approval:              10/minute
        - Health check:               exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled (TESTING=%s)", app.config.get("TESTING"))
        return

    bp = app.blueprints.get("requests")
    if bp:
        limiter.limit(WRITE_LIMIT)(bp)

    bulk_view = app.view_functions.get("requests.bulk_approve")
    if bulk_view:
        limiter.limit(BULK_LIMIT)(bulk_view)

    health_view = app.view_functions.get("health")
    if health_view:
        limiter.exempt(health_view)

    app.logger.info(
        "Rate limiter configured: workflow: %s, bulk approval: %s", WRITE_LIMIT, BULK_LIMIT
    )

"""
Rate limiting configuration.

Applies per-blueprint and per-route limits using Flask-Limiter.
The Limiter instance is created in coffee_processing/__init__.py with no
default limits; this module applies limits per route category.

Usage:
    from coffee_processing.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

# Routes that append to the progress log or evaluation history
WRITE_ENDPOINTS = (
    "processing.advance_batch",
    "processing.record_batch_evaluation",
)

READ_LIMIT = "300/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Advance / evaluate:  ADVANCE_RATE_LIMIT (default 60 per minute)
        - Processing reads:    300/minute
        - Health probes:       exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    write_limit = app.config.get("ADVANCE_RATE_LIMIT", "60 per minute")
    for endpoint in WRITE_ENDPOINTS:
        view = app.view_functions.get(endpoint)
        if view:
            app.view_functions[endpoint] = limiter.limit(write_limit)(view)

    bp = app.blueprints.get("processing")
    if bp:
        limiter.limit(READ_LIMIT)(bp)

    # Health probes are exempt
    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured: write: %s, processing: %s", write_limit, READ_LIMIT
    )

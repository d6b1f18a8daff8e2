"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in app/__init__.py with no default limits;
this module applies granular limits per route category.

Usage:
    from app.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

# blueprint name -> limit string
BLUEPRINT_LIMITS = {
    "progression_bp": "120/minute",    # answers, confirmations, timelines
    "stage_config_bp": "30/minute",    # admin writes bump the config version
}


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Progression endpoints:    120/minute
        - Stage configuration:      30/minute
        - Health check:             exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for bp_name, limit in BLUEPRINT_LIMITS.items():
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(limit)(bp)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — %s",
        ", ".join(f"{name}: {limit}" for name, limit in BLUEPRINT_LIMITS.items()),
    )

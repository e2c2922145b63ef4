"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter. The Limiter
instance is created in fieldops/__init__.py with no default limits; this
module applies limits per route category.

Usage:
    from fieldops.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

# Blueprints whose routes send mail on an operator's request
_MANUAL_SEND_BLUEPRINTS = ("alert_bp", "renewal_bp", "notification_rule_bp")
_WRITE_BLUEPRINTS = ("intervention_bp",)


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Manual alert / send endpoints: MANUAL_ALERT_RATE_LIMIT (default 30/minute)
        - Intervention writes:           120/minute
        - Health check and cron:         exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    manual_limit = app.config.get("MANUAL_ALERT_RATE_LIMIT", "30 per minute")
    for bp_name in _MANUAL_SEND_BLUEPRINTS:
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(manual_limit)(bp)

    for bp_name in _WRITE_BLUEPRINTS:
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit("120/minute")(bp)

    for bp_name in ("health_bp", "cron_bp"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.exempt(bp)

    app.logger.info("Rate limiter configured: manual sends %s, writes 120/min", manual_limit)

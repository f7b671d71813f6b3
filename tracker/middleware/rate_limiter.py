"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.  The Limiter
instance is created in tracker/__init__.py with no default limits; this
module applies limits per route category.

Usage:
    from tracker.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

# Blueprints whose routes change persisted workflow state or settings
MUTATION_BLUEPRINTS = ("workflow", "settings")

# Pure decision endpoints
DECISION_BLUEPRINTS = ("authz",)

DECISION_RATE_LIMIT = "300/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Workflow/settings: WORKFLOW_MUTATION_RATE_LIMIT (default 120/minute)
        - Authz decisions:   300/minute
        - Health check:      exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    mutation_limit = app.config.get("WORKFLOW_MUTATION_RATE_LIMIT", "120/minute")
    for bp_name in MUTATION_BLUEPRINTS:
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(mutation_limit)(bp)

    for bp_name in DECISION_BLUEPRINTS:
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(DECISION_RATE_LIMIT)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured: workflow/settings: %s, authz: %s",
        mutation_limit, DECISION_RATE_LIMIT,
    )

"""
Per-blueprint request limits (Flask-Limiter).

The shared Limiter in ``decision_engine`` has no default limit; each API
blueprint gets its own here, keyed by client address. The scheduler
blueprint is kept tight because every trigger scans all published instances.
"""

import logging

logger = logging.getLogger(__name__)

BLUEPRINT_LIMITS = {
    "decisions": "120/minute",
    "scheduler": "10/minute",
}


def init_rate_limits(app, limiter):
    """Attach ``BLUEPRINT_LIMITS`` to registered blueprints. No-op when testing."""
    if app.config.get("TESTING"):
        return

    applied = {}
    for name, limit in BLUEPRINT_LIMITS.items():
        blueprint = app.blueprints.get(name)
        if blueprint is not None:
            limiter.limit(limit)(blueprint)
            applied[name] = limit

    if "health" in app.view_functions:
        limiter.exempt(app.view_functions["health"])

    logger.info("Rate limits applied: %s",
                ", ".join(f"{name}={limit}" for name, limit in applied.items()))

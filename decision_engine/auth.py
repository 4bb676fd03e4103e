"""
Decision Engine
Request authentication.

Every ``/api/v1/*`` route except the health check needs an API key, sent as
``X-API-Key`` or ``?api_key=``. ``API_KEYS`` maps keys to roles::

    API_KEYS="ops-key:admin,board-key:editor,public-key"

A key listed without a role is a viewer key. This module only establishes
*who* is calling; what they may do is decided by the services through
``access.assert_access``.

With ``API_AUTH_ENABLED=false`` (development, tests) no key is checked and
the role is taken from the ``X-Role`` header, defaulting to admin.
"""

import logging
import os

from flask import current_app, g, jsonify, request

from decision_engine.services.access import ROLES, Actor

logger = logging.getLogger(__name__)

PUBLIC_PATHS = {"/api/v1/health"}
BODY_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


def _flag(value) -> bool:
    return str(value).strip().lower() not in {"false", "0", "no", "off"}


def auth_enabled() -> bool:
    env_value = os.getenv("API_AUTH_ENABLED")
    if env_value:
        return _flag(env_value)
    return _flag(current_app.config.get("API_AUTH_ENABLED", "true"))


def load_api_keys() -> dict[str, str]:
    """Parse ``API_KEYS`` (environment first, then app config) into ``{key: role}``."""
    raw = os.getenv("API_KEYS") or current_app.config.get("API_KEYS") or ""
    keys = {}
    for item in filter(None, (part.strip() for part in raw.split(","))):
        key, _, role = item.rpartition(":") if ":" in item else (item, "", "viewer")
        role = role.strip().lower()
        if role not in ROLES:
            logger.warning("API key configured with unknown role %r, using viewer", role)
            role = "viewer"
        keys[key.strip()] = role
    return keys


def _presented_key():
    return (request.headers.get("X-API-Key", "").strip()
            or request.args.get("api_key", "").strip()
            or None)


def _error(message, status):
    return jsonify({"error": message}), status


def _resolve_role():
    """Return ``(role, None)`` for an accepted caller or ``(None, response)``."""
    if not auth_enabled():
        claimed = request.headers.get("X-Role", "").strip().lower()
        return (claimed if claimed in ROLES else "admin"), None

    key = _presented_key()
    if key is None:
        return None, _error("Authentication required. Provide X-API-Key header.", 401)

    keys = load_api_keys()
    if not keys:
        logger.error("API auth is enabled but API_KEYS is empty")
        return None, _error("Server authentication not configured", 500)

    if key not in keys:
        logger.warning("Rejected API key %s...", key[:8])
        return None, _error("Invalid API key", 401)
    return keys[key], None


def current_actor() -> Actor:
    """The caller of the current request as seen by the access checks.

    ``X-User`` is set by the identity proxy in front of the API. Without an
    authenticated role the caller is treated as a viewer.
    """
    user_id = request.headers.get("X-User", "").strip() or None
    return Actor(user_id=user_id, role=getattr(g, "current_user_role", None) or "viewer")


def init_auth(app):
    @app.before_request
    def _authenticate():
        if (not request.path.startswith("/api/v1/")
                or request.path in PUBLIC_PATHS
                or request.method == "OPTIONS"):
            return None

        if (request.method in BODY_METHODS
                and request.content_length
                and not request.is_json):
            return _error("Content-Type must be application/json for state-changing requests", 415)

        role, failure = _resolve_role()
        if failure is not None:
            return failure
        g.current_user_role = role
        return None

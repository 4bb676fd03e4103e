"""
Decision Engine
Per-environment settings, read once from the process environment.

``create_app`` picks a class from ``config`` by name (``APP_ENV``) and loads
it with ``app.config.from_object``, then calls its ``validate`` hook.
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))


def _env_int(name, default):
    return int(os.getenv(name, str(default)))


def _database_url(default=None):
    """DATABASE_URL with the legacy ``postgres://`` scheme rewritten for SQLAlchemy 2."""
    url = os.getenv("DATABASE_URL", "")
    if not url:
        return default
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


class Config:
    # Overridden by SECRET_KEY; the random fallback only lives as long as the process
    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True, "pool_recycle": 300}

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
    API_AUTH_ENABLED = os.getenv("API_AUTH_ENABLED", "true")
    MAX_CONTENT_LENGTH = 2 * 1024 * 1024

    # Collaborative document store holding rich proposal content
    DOCUMENT_STORE_URL = os.getenv("DOCUMENT_STORE_URL", "")
    DOCUMENT_STORE_SECRET = os.getenv("DOCUMENT_STORE_SECRET", "")
    DOCUMENT_STORE_TIMEOUT = _env_int("DOCUMENT_STORE_TIMEOUT", 5)

    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "USD")
    TRANSITION_JOB_INTERVAL_MINUTES = _env_int("TRANSITION_JOB_INTERVAL_MINUTES", 15)

    @classmethod
    def validate(cls):
        """Raise RuntimeError when a required setting is missing."""


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(
        f"sqlite:///{os.path.join(basedir, 'instance', 'decision_engine_dev.db')}"
    )
    API_AUTH_ENABLED = os.getenv("API_AUTH_ENABLED", "false")


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ENGINE_OPTIONS = {}
    API_AUTH_ENABLED = "false"
    RATELIMIT_ENABLED = False
    DOCUMENT_STORE_URL = ""
    DOCUMENT_STORE_SECRET = ""


class ProductionConfig(Config):
    SQLALCHEMY_DATABASE_URI = _database_url()
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        # 30s statement timeout; the transition scan must never hold locks longer
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    @classmethod
    def validate(cls):
        missing = [
            name for name, value in (
                ("DATABASE_URL", cls.SQLALCHEMY_DATABASE_URI),
                ("SECRET_KEY", os.getenv("SECRET_KEY")),
            ) if not value
        ]
        if missing:
            raise RuntimeError(f"Production requires {', '.join(missing)} to be set")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}

"""
Internal Portal: Request Approval Workflow
Environment configuration.

``create_app`` picks a class from ``config`` by name (APP_ENV, default
"development") and loads an instance of it with ``from_object``.
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'portal_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Connection pool settings for server databases; SQLite takes none of them
_POOL_OPTIONS = {
    "pool_pre_ping": True,
    "pool_size": 5,
    "max_overflow": 10,
    "pool_recycle": 300,
    "pool_timeout": 20,
}


def _database_url(default=None):
    """DATABASE_URL with the legacy ``postgres://`` scheme normalised."""
    raw = os.getenv("DATABASE_URL", "")
    if not raw:
        return default
    if raw.startswith("postgres://"):
        return "postgresql://" + raw[len("postgres://"):]
    return raw


def _engine_options(uri, **extra):
    if not uri or uri.startswith("sqlite"):
        return {}
    return {**_POOL_OPTIONS, **extra}


class Config:
    """Settings shared by every environment."""

    # Random per process unless SECRET_KEY is set
    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    RATELIMIT_ENABLED = True
    RATELIMIT_STORAGE_URI = os.getenv("RATELIMIT_STORAGE_URI", "memory://")

    MAX_CONTENT_LENGTH = 2 * 1024 * 1024


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(_SQLITE_DEV)
    SQLALCHEMY_ENGINE_OPTIONS = _engine_options(SQLALCHEMY_DATABASE_URI)


class TestingConfig(Config):
    TESTING = True
    # In-memory SQLite runs on a StaticPool
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    RATELIMIT_ENABLED = False


class ProductionConfig(Config):
    """Requires DATABASE_URL and SECRET_KEY; CORS origins must be listed."""

    SQLALCHEMY_DATABASE_URI = _database_url()
    SQLALCHEMY_ENGINE_OPTIONS = _engine_options(
        SQLALCHEMY_DATABASE_URI,
        connect_args={"options": "-c statement_timeout=30000"},
    )
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")

    def __init__(self):
        missing = [name for name, value in (
            ("DATABASE_URL", self.SQLALCHEMY_DATABASE_URI),
            ("SECRET_KEY", os.getenv("SECRET_KEY")),
        ) if not value]
        if missing:
            raise RuntimeError(f"Missing required environment variables for production: {', '.join(missing)}")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}

"""
Configuration classes for the Flask App Factory.

Every engine knob is read from the environment once, at import time.  The
app factory instantiates the selected class so production can refuse to
start without a database URL.

Usage:
    app.config.from_object(config[os.getenv("APP_ENV", "development")]())
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'wms_workflow_dev.db')}"

# Shared by every pooled (non-SQLite-memory) engine
_POOL_OPTIONS = {
    "pool_pre_ping": True,
    "pool_size": 5,
    "max_overflow": 10,
    "pool_recycle": 300,
    "pool_timeout": 20,
}


def _env_int(name, default):
    return int(os.getenv(name, str(default)))


def _env_float(name, default):
    return float(os.getenv(name, str(default)))


def _env_bool(name, default):
    return os.getenv(name, "true" if default else "false").lower() == "true"


def _database_url(fallback=None):
    """DATABASE_URL with the legacy ``postgres://`` scheme normalised."""
    raw = os.getenv("DATABASE_URL", "")
    if not raw:
        return fallback
    return raw.replace("postgres://", "postgresql://", 1)


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = dict(_POOL_OPTIONS)

    # Logging: "json" | "text"; empty picks by environment
    LOG_LEVEL = os.getenv("LOG_LEVEL", "")
    LOG_FORMAT = os.getenv("LOG_FORMAT", "")

    # Rule engine
    RULE_MAX_CONDITION_DEPTH = _env_int("RULE_MAX_CONDITION_DEPTH", 5)
    RULE_MAX_CONDITION_NODES = _env_int("RULE_MAX_CONDITION_NODES", 200)
    RULE_STOP_ON_MATCH_SCOPE = os.getenv("RULE_STOP_ON_MATCH_SCOPE", "workflow")  # workflow | global
    RULE_LOG_NON_MATCHES = _env_bool("RULE_LOG_NON_MATCHES", False)

    # Event bus
    EVENT_DISPATCH_MODE = os.getenv("EVENT_DISPATCH_MODE", "async")  # async | sync
    EVENT_WORKER_COUNT = _env_int("EVENT_WORKER_COUNT", 4)
    EVENT_TIMEOUT_SECONDS = _env_float("EVENT_TIMEOUT_SECONDS", 60)

    # Action executor
    ACTION_EXECUTION_MODE = os.getenv("ACTION_EXECUTION_MODE", "pool")  # pool | inline
    ACTION_TIMEOUT_SECONDS = _env_float("ACTION_TIMEOUT_SECONDS", 10)
    ACTION_WORKER_COUNT = _env_int("ACTION_WORKER_COUNT", 8)
    WEBHOOK_TIMEOUT_SECONDS = _env_float("WEBHOOK_TIMEOUT_SECONDS", 10)

    # Approval SLA
    SLA_BREACH_DEDUPE_MINUTES = _env_int("SLA_BREACH_DEDUPE_MINUTES", 60)
    SLA_ESCALATION_ROLE = os.getenv("SLA_ESCALATION_ROLE") or None

    # In-process scheduler (sla_breach_sweep, scheduled_rules)
    SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", False)

    # Outbound mail for the send_email action; no MAIL_SERVER means log only
    MAIL_SERVER = os.getenv("MAIL_SERVER")
    MAIL_PORT = _env_int("MAIL_PORT", 587)
    MAIL_USE_TLS = _env_bool("MAIL_USE_TLS", True)
    MAIL_USERNAME = os.getenv("MAIL_USERNAME")
    MAIL_PASSWORD = os.getenv("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = os.getenv("MAIL_DEFAULT_SENDER", "noreply@wms.local")


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(_SQLITE_DEV)


class TestingConfig(Config):
    """Synchronous dispatch and inline actions so tests observe effects directly."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    # In-memory SQLite runs on a single StaticPool connection
    SQLALCHEMY_ENGINE_OPTIONS = {}
    EVENT_DISPATCH_MODE = "sync"
    ACTION_EXECUTION_MODE = "inline"
    SCHEDULER_ENABLED = False
    MAIL_SERVER = None


class ProductionConfig(Config):
    SQLALCHEMY_DATABASE_URI = _database_url()
    SQLALCHEMY_ENGINE_OPTIONS = {
        **_POOL_OPTIONS,
        "connect_args": {"options": "-c statement_timeout=30000"},
    }
    LOG_FORMAT = os.getenv("LOG_FORMAT", "json")

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")
        if self.EVENT_DISPATCH_MODE not in ("async", "sync"):
            raise RuntimeError(f"EVENT_DISPATCH_MODE must be async or sync, got {self.EVENT_DISPATCH_MODE!r}")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}

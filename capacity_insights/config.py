"""
Capacity Insights
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'capacity_insights_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY")
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,   # recycle connections every 5 min
    }

    # Redis (rate-limiter storage)
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # ── Insight pipeline ─────────────────────────────────────────────
    # Shared secret for the cron trigger endpoints. Unset = cron disabled.
    CRON_SECRET = os.getenv("CRON_SECRET")
    # "anthropic" | "openai" | "gemini" | "local". Unset = first provider with an API key, else templates.
    INSIGHTS_LLM_PROVIDER = os.getenv("INSIGHTS_LLM_PROVIDER")
    INSIGHTS_LLM_MODEL = os.getenv("INSIGHTS_LLM_MODEL")
    INSIGHTS_LLM_TIMEOUT = float(os.getenv("INSIGHTS_LLM_TIMEOUT", "20"))
    INSIGHTS_LLM_MAX_TOKENS = int(os.getenv("INSIGHTS_LLM_MAX_TOKENS", "500"))
    INSIGHTS_REFRESH_COOLDOWN_MINUTES = int(os.getenv("INSIGHTS_REFRESH_COOLDOWN_MINUTES", "60"))
    PIPELINE_RUN_BUDGET_SECONDS = float(os.getenv("PIPELINE_RUN_BUDGET_SECONDS", "300"))

    # Weather context (Open-Meteo, no API key)
    WEATHER_ENABLED = os.getenv("WEATHER_ENABLED", "true").lower() == "true"
    WEATHER_API_URL = os.getenv("WEATHER_API_URL", "https://api.open-meteo.com/v1/forecast")
    WEATHER_TIMEOUT = float(os.getenv("WEATHER_TIMEOUT", "5"))
    WEATHER_FORECAST_DAYS = int(os.getenv("WEATHER_FORECAST_DAYS", "3"))


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    CRON_SECRET = "test-cron-secret"
    INSIGHTS_LLM_PROVIDER = "local"
    WEATHER_ENABLED = False


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000",  # 30s query timeout
        },
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}

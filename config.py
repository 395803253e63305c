"""
Configuration for the delivery scheduler.

Values come from the environment; a .env file next to this module (or in
the working directory) is loaded first so local overrides work without
exporting anything.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(override=False)

BASE_DIR = Path(__file__).resolve().parent


def _env_flag(name, default):
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Default configuration for the Flask application."""

    SECRET_KEY = os.environ.get("SECRET_KEY", "delivery-dev-secret")
    ENVIRONMENT = os.environ.get("APP_ENV", "development")
    DEBUG = _env_flag("FLASK_DEBUG", "0")
    TESTING = False

    # SQLite file; one connection is opened per request
    DATABASE_PATH = os.environ.get("DATABASE_PATH", str(BASE_DIR / "data.db"))
    # Seconds a statement waits on a locked database before failing
    DATABASE_TIMEOUT = float(os.environ.get("DATABASE_TIMEOUT", "5"))

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_DIR = os.environ.get("LOG_DIR", str(BASE_DIR / "logs"))
    ENABLE_FILE_LOGGING = _env_flag("ENABLE_FILE_LOGGING", "0")

    TOKEN_MAX_AGE_HOURS = int(os.environ.get("TOKEN_MAX_AGE_HOURS", "24"))
    CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*")

    SEED_DEFAULT_DATA = _env_flag("SEED_DEFAULT_DATA", "1")
    # When off, status may jump forward several steps at once
    STRICT_STATUS_TRANSITIONS = _env_flag("STRICT_STATUS_TRANSITIONS", "1")


class ProductionConfig(Config):
    """Production configuration."""
    ENVIRONMENT = "production"
    DEBUG = False
    ENABLE_FILE_LOGGING = _env_flag("ENABLE_FILE_LOGGING", "1")
    SEED_DEFAULT_DATA = _env_flag("SEED_DEFAULT_DATA", "0")


class DevelopmentConfig(Config):
    """Development configuration."""
    ENVIRONMENT = "development"
    DEBUG = True


class TestingConfig(Config):
    """Testing configuration."""
    ENVIRONMENT = "testing"
    DEBUG = False
    TESTING = True
    SECRET_KEY = "testing-secret"
    LOG_LEVEL = "WARNING"
    ENABLE_FILE_LOGGING = False
    SEED_DEFAULT_DATA = False


_CONFIGS = {
    "production": ProductionConfig,
    "development": DevelopmentConfig,
    "testing": TestingConfig,
}


def get_config(name=None):
    """Pick a config class by name, falling back to APP_ENV."""
    name = (name or os.environ.get("APP_ENV", "development")).lower()
    return _CONFIGS.get(name, Config)

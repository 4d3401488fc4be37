"""
Django settings for the dispatch project.

Development values are read from a `.env` file next to `manage.py`; in
production set real environment variables instead.
"""
from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
env_path = BASE_DIR / ".env"
if env_path.exists():
    load_dotenv(dotenv_path=env_path)

ENV = os.getenv("ENV", "dev")
DEBUG = os.getenv("DEBUG", "0").lower() in {"1", "true", "yes"}

ALLOWED_HOSTS: list[str] = [
    h.strip() for h in os.getenv("ALLOWED_HOSTS", "127.0.0.1,localhost,testserver").split(",") if h.strip()
]

SECRET_KEY = os.getenv("SECRET_KEY") or "replace-me-with-a-secure-secret-key"

if ENV == "prod":
    if DEBUG:
        raise RuntimeError("DEBUG must be 0 in prod")
    if SECRET_KEY == "replace-me-with-a-secure-secret-key":
        raise RuntimeError("SECRET_KEY must be set securely in prod")

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "dispatch",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "dispatchsite.urls"

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": os.getenv("SQLITE_PATH", (BASE_DIR / "db.sqlite3").as_posix()),
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

USE_TZ = True
TIME_ZONE = os.getenv("TIME_ZONE", "UTC")

# -----------------------------------------------------------------------------
# Dispatch engine
# -----------------------------------------------------------------------------
DISPATCH_CONFIG = {
    "primary_route_provider": os.getenv("PRIMARY_ROUTE_PROVIDER", "google"),
    "google_maps_api_key": os.getenv("GOOGLE_MAPS_API_KEY", ""),
    "osrm_base_url": os.getenv("OSRM_BASE_URL", "https://router.project-osrm.org"),
    "route_fetch_timeout_seconds": float(os.getenv("ROUTE_FETCH_TIMEOUT_SECONDS", "8")),
    "animation_interval_ms": int(os.getenv("ANIMATION_INTERVAL_MS", "300")),
    "polling_interval_seconds": float(os.getenv("POLLING_INTERVAL_SECONDS", "15")),
    "subscription_idle_seconds": float(os.getenv("SUBSCRIPTION_IDLE_SECONDS", "45")),
    "discovery_radius_meters": int(os.getenv("DISCOVERY_RADIUS_METERS", "15000")),
}

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "simple": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "simple"},
    },
    "loggers": {
        "dispatch": {
            "handlers": ["console"],
            "level": os.getenv("DISPATCH_LOG_LEVEL", "INFO"),
        },
    },
}

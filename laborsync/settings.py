import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

load_dotenv(BASE_DIR / ".env")

SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "laborsync-insecure-development-key")
DEBUG = os.getenv("DJANGO_DEBUG", "false").lower() in ("1", "true", "yes")
ALLOWED_HOSTS = [h for h in os.getenv("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",") if h]

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "workforce.apps.WorkforceConfig",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "laborsync.urls"

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": os.getenv("LABORSYNC_DB_PATH", str(BASE_DIR / "db.sqlite3")),
    }
}
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-us"
TIME_ZONE = os.getenv("LABORSYNC_TIME_ZONE", "UTC")
USE_I18N = False
USE_TZ = True

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": "WARNING",
    },
    "loggers": {
        "workforce": {
            "handlers": ["console"],
            "level": os.getenv("LABORSYNC_LOG_LEVEL", "INFO").upper(),
            "propagate": False,
        },
    },
}

# Shift planner used when the request does not name one: "lp" or "greedy".
WORKFORCE_SHIFT_PLAN_METHOD = os.getenv("WORKFORCE_SHIFT_PLAN_METHOD", "lp")
# Days covered by the dashboard headcount vs demand trend.
WORKFORCE_TREND_DAYS = int(os.getenv("WORKFORCE_TREND_DAYS", 7))
WORKFORCE_MAX_SHIFT_DAYS = int(os.getenv("WORKFORCE_MAX_SHIFT_DAYS", 5))

"""Django settings for the storefront web tier.

Everything environment-specific is read from environment variables so
the same image runs locally (docker compose) and in production.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _env_bool(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-insecure-change-me")
DEBUG = _env_bool("DJANGO_DEBUG")
ALLOWED_HOSTS = [h for h in os.getenv("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1").split(",") if h]

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "rest_framework",
    "apps.orders.apps.OrdersConfig",
    "apps.monitoring",
]

MIDDLEWARE = [
    "gateway.middleware.RequestIdMiddleware",
    "gateway.middleware.ApiSizeLimitMiddleware",
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "storefront.urls"
WSGI_APPLICATION = "storefront.wsgi.application"

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.postgresql",
        "HOST": os.getenv("DB_HOST", "orders-db"),
        "PORT": os.getenv("DB_PORT", "5432"),
        "NAME": os.getenv("DB_NAME", "orders"),
        "USER": os.getenv("DB_USER", "orders_user"),
        "PASSWORD": os.getenv("DB_PASSWORD", "orders-pass"),
        "CONN_MAX_AGE": int(os.getenv("DB_CONN_MAX_AGE", "60")),
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
USE_TZ = True
TIME_ZONE = "UTC"

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [],
    "DEFAULT_PERMISSION_CLASSES": [],
    "UNAUTHENTICATED_USER": None,
    "DEFAULT_RENDERER_CLASSES": ["rest_framework.renderers.JSONRenderer"],
    "DEFAULT_THROTTLE_RATES": {
        "orders_list": os.getenv("THROTTLE_ORDERS_LIST", "120/min"),
        "orders_create": os.getenv("THROTTLE_ORDERS_CREATE", "30/min"),
        "orders_detail": os.getenv("THROTTLE_ORDERS_DETAIL", "240/min"),
        "orders_cancel": os.getenv("THROTTLE_ORDERS_CANCEL", "30/min"),
        "payments": os.getenv("THROTTLE_PAYMENTS", "60/min"),
        "webhooks": os.getenv("THROTTLE_WEBHOOKS", "600/min"),
        "coupons": os.getenv("THROTTLE_COUPONS", "60/min"),
    },
}

# ---- Downstream services ----
USE_HTTP_ADAPTERS = _env_bool("USE_HTTP_ADAPTERS", "1")
INVENTORY_BASE_URL = os.getenv("INVENTORY_BASE_URL", "http://inventory:9001")
PAYMENTS_BASE_URL = os.getenv("PAYMENTS_BASE_URL", "https://api.razorpay.com/v1")
NOTIFICATIONS_URL = os.getenv("NOTIFICATIONS_URL", "")
RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID", "")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET", "")
RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET", "")

HTTP_TIMEOUT_SECS = float(os.getenv("HTTP_TIMEOUT_SECS", "3.0"))
HTTP_RETRY_MAX = int(os.getenv("HTTP_RETRY_MAX", "3"))
HTTP_RETRY_BACKOFF_BASE = float(os.getenv("HTTP_RETRY_BACKOFF_BASE", "0.15"))
HTTP_RETRY_MAX_SLEEP = float(os.getenv("HTTP_RETRY_MAX_SLEEP", "0.5"))
HTTP_CIRCUIT_FAIL_THRESHOLD = int(os.getenv("HTTP_CIRCUIT_FAIL_THRESHOLD", "5"))
HTTP_CIRCUIT_RESET_TIMEOUT = float(os.getenv("HTTP_CIRCUIT_RESET_TIMEOUT", "30"))

# ---- Orders ----
ORDER_NUMBER_PREFIX = os.getenv("ORDER_NUMBER_PREFIX", "ORD")
FREE_SHIPPING_THRESHOLD_MINOR = int(os.getenv("FREE_SHIPPING_THRESHOLD_MINOR", "2500000"))
SHIPPING_FLAT_MINOR = int(os.getenv("SHIPPING_FLAT_MINOR", "150000"))
TAX_RATE_BPS = int(os.getenv("TAX_RATE_BPS", "1800"))

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "filters": {
        "request_id": {"()": "gateway.logging_filters.RequestIdFilter"},
    },
    "formatters": {
        "json": {
            "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
            "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json",
            "filters": ["request_id"],
        },
    },
    "root": {"handlers": ["console"], "level": os.getenv("LOG_LEVEL", "INFO")},
    "loggers": {
        "django.db.backends": {"level": "WARNING"},
    },
}

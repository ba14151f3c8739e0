"""
Runtime settings for the Tapea ride synchronization client.

Values are read from the environment once at import time, after
python-dotenv has loaded a local ``.env`` file. Components take explicit
constructor arguments and fall back to these module-level values.
"""

import logging.config
import os

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# ---------------------- Endpoints ----------------------

API_URL = os.getenv("TAPEA_API_URL", "http://localhost:5000").rstrip("/")

# WebSocket endpoint of the ride-coordination server
SOCKET_URL = os.getenv(
    "TAPEA_SOCKET_URL",
    API_URL.replace("http", "ws", 1) + "/ws/",
)


# ---------------------- Credential storage ----------------------

CREDENTIAL_STORE = os.getenv("TAPEA_CREDENTIAL_STORE", "memory")  # memory | file | redis
CREDENTIAL_FILE = os.getenv("TAPEA_CREDENTIAL_FILE", os.path.expanduser("~/.tapea/credentials.json"))
REDIS_URL = os.getenv("TAPEA_REDIS_URL", "redis://localhost:6379/0")

# Local ride cache is only a fallback for a failed authoritative fetch
RIDE_CACHE_TTL = 5 * 60


# ---------------------- Platform ----------------------

HAS_MAPS = _env_bool("TAPEA_HAS_MAPS", True)
HAS_NATIVE_PAYMENTS = _env_bool("TAPEA_HAS_NATIVE_PAYMENTS", True)


# ---------------------- Realtime ----------------------

REALTIME_CONFIG = {
    # Connection
    "CONNECT_TIMEOUT": 10.0,           # connect_and_wait() bound
    "RECONNECT_DELAY": 1.0,            # first backoff step
    "RECONNECT_DELAY_MAX": 10.0,       # backoff cap between attempts
    "JOIN_ACK_TIMEOUT": 3.0,           # driver:join assumes success after this

    # Ride search
    "RIDE_SEARCH_TIMEOUT": 60.0,       # client-local expiry, UX only
    "SEARCH_TICK_INTERVAL": 1.0,       # elapsed-time counter step

    # Location streaming (time OR distance)
    "DRIVER_LOCATION_INTERVAL": 2.5,
    "DRIVER_LOCATION_DISTANCE_METERS": 10,
    "CLIENT_LOCATION_INTERVAL": 5.0,
    "CLIENT_LOCATION_DISTANCE_METERS": 15,

    # Driver order acceptance
    "ACCEPT_ORDER_TIMEOUT": 15.0,
}


# ---------------------- HTTP ----------------------

HTTP_CONFIG = {
    "TIMEOUT": 10.0,
    "MAX_ATTEMPTS": 3,                 # idempotent GETs only
    "RETRY_DELAY": 0.5,
    "RETRY_DELAY_MAX": 4.0,
}


# ---------------------- Logging ----------------------

LOG_LEVEL = os.getenv("TAPEA_LOG_LEVEL", "INFO").upper()

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "loggers": {
        "tapea": {
            "handlers": ["console"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
    },
}


def configure_logging(config=None):
    """Apply the package logging configuration (or a caller-supplied one)."""
    logging.config.dictConfig(config or LOGGING)

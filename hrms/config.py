import os
from pathlib import Path

from .version import get_version

BASE_DIR = Path(__file__).resolve().parent.parent
INSTANCE_DIR = BASE_DIR / "instance"
INSTANCE_PATH = str(INSTANCE_DIR.resolve())

_TRUTHY = {"1", "true", "yes", "on"}


def _get_int_env_var(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float_env_var(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        parsed = float(value)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _get_bool_env_var(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUTHY


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key")
    INSTANCE_PATH = INSTANCE_PATH
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL", f"sqlite:///{(INSTANCE_DIR / 'hrms.db').resolve()}"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SESSION_COOKIE_HTTPONLY = True
    REMEMBER_COOKIE_HTTPONLY = True
    HRMS_VERSION = get_version()

    LOG_FILE = os.getenv("LOG_FILE")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Fernet key used to encrypt integration access tokens at rest.
    INTEGRATION_TOKEN_KEY = os.getenv("INTEGRATION_TOKEN_KEY")
    INTEGRATION_HTTP_TIMEOUT = _get_float_env_var("INTEGRATION_HTTP_TIMEOUT", 15.0)
    # Wall-clock budget for one sync run, in seconds.
    INTEGRATION_SYNC_DEADLINE = _get_int_env_var("INTEGRATION_SYNC_DEADLINE", 900)
    # A "sync in progress" flag older than this is considered abandoned.
    INTEGRATION_SYNC_LOCK_TIMEOUT = _get_int_env_var(
        "INTEGRATION_SYNC_LOCK_TIMEOUT", 3600
    )

    # Background scheduler
    INTEGRATION_SYNC_ENABLED = _get_bool_env_var("INTEGRATION_SYNC_ENABLED", False)
    INTEGRATION_SYNC_INTERVAL = _get_int_env_var(
        "INTEGRATION_SYNC_INTERVAL", 300
    )  # 5 minutes
    INTEGRATION_SYNC_ON_STARTUP = _get_bool_env_var(
        "INTEGRATION_SYNC_ON_STARTUP", True
    )

    RATELIMIT_ENABLED = _get_bool_env_var("RATELIMIT_ENABLED", True)
    RATELIMIT_STORAGE_URI = os.getenv("RATELIMIT_STORAGE_URI", "memory://")
    LOGIN_RATE_LIMIT = os.getenv("LOGIN_RATE_LIMIT", "10 per minute")
    SYNC_RATE_LIMIT = os.getenv("SYNC_RATE_LIMIT", "6 per minute")

# config/base.py
import os
import warnings

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}

# Short lock wait plus cross-thread use for the Flask dev server and eager Celery tasks.
SQLITE_ENGINE_OPTIONS = {"connect_args": {"check_same_thread": False, "timeout": 5}}


def _coerce_bool(value, default=False):
    """Read ``1/true/yes/on`` and ``0/false/no/off``; anything else is ``default``."""
    if isinstance(value, bool):
        return value
    token = str(value).strip().lower() if value is not None else ""
    if token in _TRUE:
        return True
    if token in _FALSE:
        return False
    return default


def _parse_int(value, *, default, minimum=None, maximum=None):
    """
    Parse an integer environment value, clamping to the optional bounds.

    Falls back to ``default`` when the value is missing or not numeric.
    """
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    if minimum is not None:
        number = max(number, minimum)
    if maximum is not None:
        number = min(number, maximum)
    return number


def _env_int(name, **kwargs):
    return _parse_int(os.environ.get(name), **kwargs)


def _env_bool(name, default):
    return _coerce_bool(os.environ.get(name), default=default)


def _resolve_secret_key(flask_env):
    secret_key = os.environ.get("SECRET_KEY")
    if secret_key:
        return secret_key
    if flask_env == "production":
        raise ValueError("SECRET_KEY must be set when FLASK_ENV=production.")
    if flask_env != "testing":
        warnings.warn("SECRET_KEY not set; using an insecure development key.", UserWarning)
        return "coop-dev-secret-key"
    return "coop-test-secret-key"


class Config:
    SECRET_KEY = _resolve_secret_key(os.environ.get("FLASK_ENV", "development"))

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Feature flag, worker and Celery transport
    IMPORTER_ENABLED = _env_bool("IMPORTER_ENABLED", True)
    IMPORTER_WORKER_ENABLED = _env_bool("IMPORTER_WORKER_ENABLED", False)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")
    ACTIVATION_EXPIRY_SWEEP_MINUTES = _env_int("ACTIVATION_EXPIRY_SWEEP_MINUTES", default=15, minimum=1)

    # Upload and parsing
    IMPORT_MAX_UPLOAD_MB = _env_int("IMPORT_MAX_UPLOAD_MB", default=10, minimum=1)
    IMPORT_DELIMITER = os.environ.get("IMPORT_DELIMITER") or ","
    IMPORT_PREVIEW_ROWS = _env_int("IMPORT_PREVIEW_ROWS", default=10, minimum=0)
    IMPORT_COMMIT_MAX_ATTEMPTS = _env_int("IMPORT_COMMIT_MAX_ATTEMPTS", default=3, minimum=1)

    # Row validation
    IMPORT_PHONE_PATTERN = os.environ.get("IMPORT_PHONE_PATTERN", r"^\+?[\d\s\-()]+$")
    IMPORT_PHONE_MIN_DIGITS = _env_int("IMPORT_PHONE_MIN_DIGITS", default=7, minimum=1)
    IMPORT_EMAIL_PATTERN = os.environ.get("IMPORT_EMAIL_PATTERN", r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

    # Temporary passwords
    ACTIVATION_TOKEN_TTL_HOURS = _env_int("ACTIVATION_TOKEN_TTL_HOURS", default=24, minimum=1)
    ACTIVATION_PASSWORD_LENGTH = _env_int("ACTIVATION_PASSWORD_LENGTH", default=8, minimum=8, maximum=64)
    # None keeps werkzeug's default method (scrypt)
    ACTIVATION_HASH_METHOD = os.environ.get("ACTIVATION_HASH_METHOD") or None

    # Credential delivery
    NOTIFIER_BACKEND = os.environ.get("NOTIFIER_BACKEND", "log").strip().lower()
    SMS_GATEWAY_URL = os.environ.get("SMS_GATEWAY_URL")
    SMS_GATEWAY_TOKEN = os.environ.get("SMS_GATEWAY_TOKEN")
    SMS_GATEWAY_TIMEOUT_SECONDS = _env_int("SMS_GATEWAY_TIMEOUT_SECONDS", default=10, minimum=1)
    MAIL_SERVER = os.environ.get("MAIL_SERVER")
    MAIL_PORT = _env_int("MAIL_PORT", default=587, minimum=1)
    MAIL_USE_TLS = _env_bool("MAIL_USE_TLS", True)
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")
    MAIL_FROM = os.environ.get("MAIL_FROM", "noreply@example.com")
    # Automatic retries of a failed initial delivery; delays double from the factor up to the max.
    NOTIFICATION_MAX_RETRIES = _env_int("NOTIFICATION_MAX_RETRIES", default=3, minimum=0)
    NOTIFICATION_RETRY_BACKOFF_SECONDS = _env_int("NOTIFICATION_RETRY_BACKOFF_SECONDS", default=1, minimum=1)
    NOTIFICATION_RETRY_BACKOFF_MAX_SECONDS = _env_int("NOTIFICATION_RETRY_BACKOFF_MAX_SECONDS", default=60, minimum=1)
    COOPERATIVE_NAME = os.environ.get("COOPERATIVE_NAME", "SVMPC")
    COOPERATIVE_PHONE = os.environ.get("COOPERATIVE_PHONE", "+1-800-SVMPC-1")

    # Listings
    LISTING_DEFAULT_LIMIT = _env_int("LISTING_DEFAULT_LIMIT", default=25, minimum=1)
    LISTING_MAX_LIMIT = _env_int("LISTING_MAX_LIMIT", default=100, minimum=1)
    MEMBER_LIST_MASK_SENSITIVE = _env_bool("MEMBER_LIST_MASK_SENSITIVE", True)


def _default_sqlite_uri(file_name):
    instance_dir = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "instance")
    os.makedirs(instance_dir, exist_ok=True)
    # sqlite:/// wants forward slashes on every platform
    return "sqlite:///" + os.path.join(instance_dir, file_name).replace("\\", "/")


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL") or _default_sqlite_uri("coop_members_dev.db")
    SQLALCHEMY_ECHO = _env_bool("SQLALCHEMY_ECHO", False)
    SQLALCHEMY_ENGINE_OPTIONS = SQLITE_ENGINE_OPTIONS if SQLALCHEMY_DATABASE_URI.startswith("sqlite") else {}


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = SQLITE_ENGINE_OPTIONS
    NOTIFIER_BACKEND = "log"
    ACTIVATION_HASH_METHOD = "pbkdf2:sha256:1000"
    NOTIFICATION_MAX_RETRIES = 0
    CELERY_CONFIG = {"task_always_eager": True, "task_eager_propagates": True}


def _production_database_uri():
    uri = os.environ.get("DATABASE_URL")
    # Heroku-style URLs use the scheme SQLAlchemy 1.4+ dropped.
    if uri and uri.startswith("postgres://"):
        return "postgresql://" + uri[len("postgres://"):]
    return uri


class ProductionConfig(Config):
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = _production_database_uri()
    SQLALCHEMY_ECHO = False

"""
Celery wiring for credential delivery and the token expiry sweep.

Broker and result backend default to one SQLite file beside the Flask
instance folder so a development machine needs no Redis; set
``CELERY_BROKER_URL`` and ``CELERY_RESULT_BACKEND`` to use real services.
"""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping

from celery import Celery
from flask import Flask
from kombu import Queue

DEFAULT_QUEUE_NAME = "imports"
DEFAULT_SQLITE_FILENAME = "celery.sqlite"
EXPIRY_SWEEP_TASK = "importer.activation.expire_stale_tokens"
EXPIRY_SCHEDULE_NAME = "expire-stale-activation-tokens"

_QUIET_LOGGERS = ("celery.worker.strategy",)


def _sqlite_location(app: Flask) -> Path:
    """Resolve ``CELERY_SQLITE_PATH`` (relative to the instance folder) and create its directory."""
    instance_dir = Path(app.instance_path)
    location = Path(app.config.get("CELERY_SQLITE_PATH") or DEFAULT_SQLITE_FILENAME)
    if not location.is_absolute():
        location = instance_dir / location
    location.parent.mkdir(parents=True, exist_ok=True)
    return location


def resolve_transport_urls(app: Flask) -> tuple[str, str]:
    """Return ``(broker_url, result_backend)``; unset values fall back to SQLite."""
    broker_url = app.config.get("CELERY_BROKER_URL")
    result_backend = app.config.get("CELERY_RESULT_BACKEND")
    if not (broker_url and result_backend):
        sqlite_file = _sqlite_location(app).as_posix()
        broker_url = broker_url or f"sqla+sqlite:///{sqlite_file}"
        result_backend = result_backend or f"db+sqlite:///{sqlite_file}"
    return broker_url, result_backend


def _overrides(app: Flask) -> Mapping[str, Any]:
    raw = app.config.get("CELERY_CONFIG")
    if not isinstance(raw, str):
        return raw or {}
    try:
        return json.loads(raw) or {}
    except json.JSONDecodeError:
        app.logger.warning("Ignoring CELERY_CONFIG; value is not valid JSON.", exc_info=True)
        return {}


def _task_settings(app: Flask) -> dict[str, Any]:
    sweep_every = max(int(app.config.get("ACTIVATION_EXPIRY_SWEEP_MINUTES", 15)), 1)
    return {
        "task_default_queue": DEFAULT_QUEUE_NAME,
        "task_default_exchange": DEFAULT_QUEUE_NAME,
        "task_default_routing_key": DEFAULT_QUEUE_NAME,
        "task_queues": [Queue(DEFAULT_QUEUE_NAME)],
        # Deliveries are acknowledged after they run; one message per worker slot.
        "task_acks_late": True,
        "worker_prefetch_multiplier": 1,
        "task_track_started": True,
        "result_extended": True,
        "broker_connection_retry_on_startup": True,
        "task_time_limit": app.config.get("IMPORTER_TASK_TIME_LIMIT", 5 * 60),
        "task_soft_time_limit": app.config.get("IMPORTER_TASK_SOFT_TIME_LIMIT", 4 * 60),
        "beat_schedule": {
            EXPIRY_SCHEDULE_NAME: {
                "task": EXPIRY_SWEEP_TASK,
                "schedule": timedelta(minutes=sweep_every),
            }
        },
        "worker_hijack_root_logger": False,
        "worker_log_format": "[%(asctime)s: %(levelname)s/%(processName)s] %(message)s",
        "worker_task_log_format": (
            "[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s"
        ),
    }


def create_celery_app(app: Flask) -> Celery:
    """Build a Celery instance whose tasks run inside ``app``'s context."""
    broker_url, result_backend = resolve_transport_urls(app)
    celery_app = Celery(
        app.import_name,
        broker=broker_url,
        backend=result_backend,
        include=("coop_app.importer.tasks",),
    )
    celery_app.conf.update(_task_settings(app))

    overrides = _overrides(app)
    if overrides:
        celery_app.conf.update(overrides)

    app.logger.info(
        "Importer Celery app configured",
        extra={
            "importer_celery_broker_url": broker_url,
            "importer_celery_result_backend": result_backend,
            "importer_celery_overrides": sorted(overrides),
            "importer_worker_enabled": app.config.get("IMPORTER_WORKER_ENABLED"),
        },
    )

    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    class AppContextTask(celery_app.Task):  # type: ignore[misc]
        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery_app.Task = AppContextTask  # type: ignore[assignment]
    celery_app.loader.import_default_modules()
    return celery_app


def ensure_celery_app(app: Flask, state: dict[str, Any]) -> Celery:
    """Create the Celery app once and cache it in the importer extension ``state``."""
    if state.get("celery_app") is None:
        state["celery_app"] = create_celery_app(app)
    return state["celery_app"]


def get_celery_app(app: Flask) -> Celery | None:
    """
    Return the importer's Celery app, or ``None`` when the importer was never
    initialised or is disabled and has no cached instance.
    """
    state: dict[str, Any] | None = app.extensions.get("importer")  # type: ignore[arg-type]
    if not state:
        return None
    if state.get("celery_app") is None and state.get("enabled"):
        return ensure_celery_app(app, state)
    return state.get("celery_app")

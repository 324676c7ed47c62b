"""
Member import and activation feature package.

Provides conditional blueprint and CLI registration so the application stays
lightweight when the importer is disabled.
"""

from __future__ import annotations

from flask import Flask

from coop_app.utils.importer import is_importer_enabled

from .celery_app import ensure_celery_app, get_celery_app
from .cli import get_disabled_importer_group, importer_cli
from .notifiers import get_notifier
from .views import importer_blueprint

IMPORTER_EXTENSION_KEY = "importer"

__all__ = [
    "init_importer",
    "IMPORTER_EXTENSION_KEY",
    "get_celery_app",
]


def _ensure_extension_state(app: Flask) -> dict:
    state = app.extensions.get(IMPORTER_EXTENSION_KEY)
    if state is None:
        state = app.extensions[IMPORTER_EXTENSION_KEY] = {
            "enabled": False,
            "worker_enabled": False,
            "celery_app": None,
        }
    return state


def _set_cli(app: Flask, enabled: bool) -> None:
    """Swap in either the real ``importer`` command group or the disabled placeholder."""
    app.cli.commands.pop(importer_cli.name, None)
    app.cli.add_command(importer_cli if enabled else get_disabled_importer_group())


def init_importer(app: Flask) -> None:
    """
    Wire the member importer into ``app`` when IMPORTER_ENABLED is set.

    Enabled: creates the Celery app, resolves the notifier, mounts the
    ``/api/imports`` blueprint and the ``importer`` CLI. Disabled: only a
    placeholder CLI group is registered. Either way the flags are kept in
    ``app.extensions['importer']``.
    """
    state = _ensure_extension_state(app)
    state["enabled"] = is_importer_enabled(app)
    state["worker_enabled"] = bool(app.config.get("IMPORTER_WORKER_ENABLED", False))
    _set_cli(app, enabled=state["enabled"])

    if not state["enabled"]:
        app.logger.info("Member importer disabled; blueprint and worker not registered.")
        return

    ensure_celery_app(app, state)
    notifier = get_notifier(app)

    if importer_blueprint.name not in app.blueprints:
        if getattr(app, "_got_first_request", False):
            app.logger.warning("Member importer blueprint not registered; the app is already serving requests.")
        else:
            app.register_blueprint(importer_blueprint)

    app.logger.info(
        "Member importer enabled",
        extra={
            "importer_worker_enabled": state["worker_enabled"],
            "notifier_backend": type(notifier).__name__,
        },
    )

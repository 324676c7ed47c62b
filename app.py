# app.py

import logging
import os

from dotenv import load_dotenv
from flask import Flask, jsonify
from sqlalchemy import event

# .env must be loaded before config classes read os.environ at import time.
load_dotenv()

from config import DevelopmentConfig, ProductionConfig, TestingConfig  # noqa: E402
from config.monitoring import (  # noqa: E402
    DevelopmentMonitoringConfig,
    ProductionMonitoringConfig,
    TestingMonitoringConfig,
)
from config.validation import validate_and_exit  # noqa: E402
from coop_app.importer import init_importer  # noqa: E402
from coop_app.models import db  # noqa: E402
from coop_app.utils.logging_config import setup_logging  # noqa: E402

logger = logging.getLogger(__name__)

_CONFIGS = {
    "production": (ProductionConfig, ProductionMonitoringConfig),
    "testing": (TestingConfig, TestingMonitoringConfig),
    "development": (DevelopmentConfig, DevelopmentMonitoringConfig),
}

_SQLITE_PRAGMAS = ("journal_mode=WAL", "synchronous=NORMAL", "busy_timeout=5000")


def _sqlite_pragma_hook(*, foreign_keys: bool):
    """Connection listener so the web process and the worker can share one SQLite file."""
    pragmas = _SQLITE_PRAGMAS + (("foreign_keys=ON",) if foreign_keys else ())

    def _apply(dbapi_connection, connection_record):  # pragma: no cover - instrumentation
        cursor = dbapi_connection.cursor()
        try:
            for pragma in pragmas:
                cursor.execute(f"PRAGMA {pragma}")
        except Exception as exc:
            logger.warning("Could not apply SQLite pragmas: %s", exc)
        finally:
            cursor.close()

    return _apply


def _install_sqlite_pragmas(app: Flask) -> None:
    engine = db.engine
    if not engine.url.drivername.startswith("sqlite") or getattr(engine, "_coop_pragmas", False):
        return
    event.listen(engine, "connect", _sqlite_pragma_hook(foreign_keys=not app.config.get("TESTING", False)))
    engine._coop_pragmas = True  # type: ignore[attr-defined]


def create_app(flask_env: str | None = None, overrides: dict | None = None) -> Flask:
    """
    Build the member import service.

    ``flask_env`` selects the configuration pair (defaults to ``FLASK_ENV``);
    ``overrides`` is applied last so tests can point at an isolated database.
    """
    flask_env = flask_env or os.environ.get("FLASK_ENV", "development")

    if flask_env == "production":
        validate_and_exit(flask_env)

    app = Flask(__name__)
    config_class, monitoring_class = _CONFIGS.get(flask_env, _CONFIGS["development"])
    app.config.from_object(config_class)
    app.config.from_object(monitoring_class)
    app.config.update(overrides or {})

    db.init_app(app)
    setup_logging(app)

    with app.app_context():
        _install_sqlite_pragmas(app)
        # Tests manage their own schema.
        if not app.config.get("TESTING", False):
            db.create_all()

    init_importer(app)

    @app.errorhandler(404)
    def not_found_error(error):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        return jsonify({"error": "Internal server error"}), 500

    return app


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=int(os.environ.get("PORT", 5000)))

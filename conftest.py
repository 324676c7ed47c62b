# conftest.py

import os
import tempfile
import uuid

import pytest

# Set testing environment BEFORE importing app so module-level config resolves to TestingConfig
os.environ["FLASK_ENV"] = "testing"

from app import create_app  # noqa: E402
from coop_app.models import db  # noqa: E402


def pytest_configure(config):
    config.addinivalue_line("markers", "importer: member import pipeline tests")
    config.addinivalue_line("markers", "slow: tests that exercise the full HTTP or CLI surface")


@pytest.fixture(scope="function")
def app(tmp_path):
    """Create and configure a test Flask application"""
    # Create a unique temporary database file for each test
    db_fd, temp_db = tempfile.mkstemp(suffix=f"_{uuid.uuid4().hex[:8]}.db")

    try:
        application = create_app(
            "testing",
            overrides={
                "TESTING": True,
                "SQLALCHEMY_DATABASE_URI": f"sqlite:///{temp_db}",
                "SECRET_KEY": "test-secret-key-for-testing-only",
                "IMPORTER_ENABLED": True,
                "IMPORTER_WORKER_ENABLED": False,
                "CELERY_SQLITE_PATH": str(tmp_path / "celery.sqlite"),
                "CELERY_CONFIG": {"task_always_eager": True, "task_eager_propagates": True},
                "NOTIFIER_BACKEND": "log",
            },
        )

        with application.app_context():
            # Drop any existing tables to ensure clean state
            db.drop_all()
            db.create_all()
            yield application
            db.session.remove()
            db.drop_all()
            db.engine.dispose()
    finally:
        # Always close and remove the temporary database file, even on error
        try:
            os.close(db_fd)
        except OSError:
            pass
        for suffix in ("", "-wal", "-shm"):
            try:
                if os.path.exists(temp_db + suffix):
                    os.unlink(temp_db + suffix)
            except OSError:
                pass


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()

"""
Utility helpers for importer feature flag and settings lookups.
"""

from __future__ import annotations

from flask import current_app


def _get_config(app=None):
    if app is not None:
        return app.config
    return current_app.config


def is_importer_enabled(app=None) -> bool:
    """Return True when the importer feature flag is enabled."""
    config = _get_config(app)
    return bool(config.get("IMPORTER_ENABLED", False))


def get_max_upload_bytes(app=None) -> int:
    config = _get_config(app)
    return int(config.get("IMPORT_MAX_UPLOAD_MB", 10)) * 1024 * 1024


def get_delimiter(app=None) -> str:
    config = _get_config(app)
    return config.get("IMPORT_DELIMITER") or ","


def get_listing_limits(app=None) -> tuple[int, int]:
    """Return ``(default_limit, max_limit)`` for listing endpoints."""
    config = _get_config(app)
    default_limit = int(config.get("LISTING_DEFAULT_LIMIT", 25))
    max_limit = int(config.get("LISTING_MAX_LIMIT", 100))
    return min(default_limit, max_limit), max_limit

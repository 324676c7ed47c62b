"""
Member import pipeline: validation, commit, delivery, activation, resend and
listing services.
"""

from .validation import (
    ErrorKind,
    ImportPreview,
    ValidationError,
    ValidationPatterns,
    build_preview,
    validate,
)

__all__ = [
    "ErrorKind",
    "ImportPreview",
    "ValidationError",
    "ValidationPatterns",
    "build_preview",
    "validate",
]

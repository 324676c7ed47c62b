# config/validation.py

"""
Startup checks for production environment variables.

Each check returns a list of problems; ``validate_environment`` runs them all
so an operator sees every misconfiguration in one go.
"""

import os
import re
import sys
from typing import Callable, List, Tuple

NOTIFIER_BACKENDS = ("log", "router", "sms", "smtp")
_PLACEHOLDER_SECRETS = {"", "your-secret-key", "your_secret_key", "changeme"}


def _check_secret_key() -> List[str]:
    if os.environ.get("SECRET_KEY", "") in _PLACEHOLDER_SECRETS:
        return [
            "SECRET_KEY is required in production and must not be a placeholder. "
            'Generate one with: python -c "import secrets; print(secrets.token_hex(32))"'
        ]
    return []


def _check_database() -> List[str]:
    if not os.environ.get("DATABASE_URL"):
        return ["DATABASE_URL is required in production (PostgreSQL connection string)."]
    return []


def _check_notifier() -> List[str]:
    backend = os.environ.get("NOTIFIER_BACKEND", "log").strip().lower()
    if backend not in NOTIFIER_BACKENDS:
        return [f"NOTIFIER_BACKEND must be one of {', '.join(NOTIFIER_BACKENDS)} (got '{backend}')."]

    required = []
    if backend in ("smtp", "router"):
        required += ["MAIL_SERVER", "MAIL_USERNAME", "MAIL_PASSWORD"]
    if backend in ("sms", "router"):
        required.append("SMS_GATEWAY_URL")
    return [f"{name} is required when NOTIFIER_BACKEND={backend}" for name in required if not os.environ.get(name)]


def _check_patterns() -> List[str]:
    problems = []
    for name in ("IMPORT_PHONE_PATTERN", "IMPORT_EMAIL_PATTERN"):
        pattern = os.environ.get(name)
        if pattern is None:
            continue
        try:
            re.compile(pattern)
        except re.error as exc:
            problems.append(f"{name} is not a valid regular expression: {exc}")
    return problems


_CHECKS: Tuple[Callable[[], List[str]], ...] = (_check_secret_key, _check_database, _check_notifier, _check_patterns)


def validate_environment(flask_env: str = None) -> Tuple[bool, List[str]]:
    """
    Return ``(is_valid, errors)`` for the given (or current) ``FLASK_ENV``.

    Only production is checked; other environments are always valid.
    """
    flask_env = flask_env or os.environ.get("FLASK_ENV", "development")
    if flask_env != "production":
        return True, []

    errors = [problem for check in _CHECKS for problem in check()]
    return not errors, errors


def validate_and_exit(flask_env: str = None) -> None:
    """Print every configuration problem to stderr and exit with status 1."""
    is_valid, errors = validate_environment(flask_env)
    if is_valid:
        return

    rule = "=" * 80
    lines = [rule, "ENVIRONMENT VALIDATION FAILED", rule, ""]
    lines += [f"{number}. {error}" for number, error in enumerate(errors, 1)]
    lines += ["", "Fix the values in your .env file or deployment environment.", rule]
    print("\n".join(lines), file=sys.stderr)
    sys.exit(1)

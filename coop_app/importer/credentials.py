"""
Temporary activation credentials.

A credential is a short random password handed to the member over SMS or
email. Only its hash is stored; the plaintext lives just long enough to be
delivered.
"""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta

from werkzeug.security import check_password_hash, generate_password_hash

from coop_app.models.base import utc_now

UPPERCASE = string.ascii_uppercase
LOWERCASE = string.ascii_lowercase
DIGITS = string.digits
SPECIAL_CHARACTERS = "!@#$%^&*"
MIN_PASSWORD_LENGTH = 8


@dataclass(frozen=True)
class IssuedCredential:
    plaintext: str
    password_hash: str
    expires_at: datetime

    def __repr__(self) -> str:
        return f"IssuedCredential(expires_at={self.expires_at.isoformat()})"


def generate_temporary_password(length: int = MIN_PASSWORD_LENGTH) -> str:
    """
    Return a random password with at least one upper-case letter, lower-case
    letter, digit and special character.
    """
    length = max(length, MIN_PASSWORD_LENGTH)
    alphabet = UPPERCASE + LOWERCASE + DIGITS + SPECIAL_CHARACTERS
    characters = [
        secrets.choice(UPPERCASE),
        secrets.choice(LOWERCASE),
        secrets.choice(DIGITS),
        secrets.choice(SPECIAL_CHARACTERS),
    ]
    characters.extend(secrets.choice(alphabet) for _ in range(length - len(characters)))
    secrets.SystemRandom().shuffle(characters)
    return "".join(characters)


def hash_credential(plaintext: str, *, method: str | None = None) -> str:
    if method:
        return generate_password_hash(plaintext, method=method)
    return generate_password_hash(plaintext)


def verify_credential(plaintext: str, password_hash: str | None) -> bool:
    if not plaintext or not password_hash:
        return False
    return check_password_hash(password_hash, plaintext)


def issue_credential(
    *,
    length: int = MIN_PASSWORD_LENGTH,
    ttl_hours: int = 24,
    hash_method: str | None = None,
    now: datetime | None = None,
) -> IssuedCredential:
    """Generate, hash and timestamp a fresh temporary credential."""
    plaintext = generate_temporary_password(length)
    issued_at = now or utc_now()
    return IssuedCredential(
        plaintext=plaintext,
        password_hash=hash_credential(plaintext, method=hash_method),
        expires_at=issued_at + timedelta(hours=ttl_hours),
    )


def issue_credential_from_config(config, *, now: datetime | None = None) -> IssuedCredential:
    return issue_credential(
        length=int(config.get("ACTIVATION_PASSWORD_LENGTH", MIN_PASSWORD_LENGTH)),
        ttl_hours=int(config.get("ACTIVATION_TOKEN_TTL_HOURS", 24)),
        hash_method=config.get("ACTIVATION_HASH_METHOD"),
        now=now,
    )

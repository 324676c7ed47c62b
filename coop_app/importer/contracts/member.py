"""Canonical member upload contract.

The single source of truth for which columns an upload may carry and which of
them must be present and non-empty.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class FieldSpec:
    """Metadata describing a member upload column."""

    name: str
    description: str
    required: bool = False


MEMBER_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec(
        name="member_id",
        description="Cooperative-issued member identifier.",
        required=True,
    ),
    FieldSpec(
        name="name",
        description="Member full name.",
        required=True,
    ),
    FieldSpec(
        name="phone_number",
        description="Mobile number used for SMS delivery of the activation credential.",
        required=True,
    ),
    FieldSpec(
        name="email",
        description="Optional email address used when SMS is unavailable.",
        required=False,
    ),
)


def get_member_field_specs() -> Tuple[FieldSpec, ...]:
    return MEMBER_FIELDS


def get_member_required_headers() -> Tuple[str, ...]:
    """Required columns in contract order."""
    return tuple(field.name for field in MEMBER_FIELDS if field.required)


def get_member_allowed_headers() -> Tuple[str, ...]:
    return tuple(field.name for field in MEMBER_FIELDS)


def normalize_header(header: str | None) -> str:
    """Trim, drop a UTF-8 byte order mark, and lower-case a header token."""
    return (header or "").strip().lstrip("\ufeff").strip().lower()

"""Importer contracts."""

from .member import (
    MEMBER_FIELDS,
    FieldSpec,
    get_member_allowed_headers,
    get_member_field_specs,
    get_member_required_headers,
    normalize_header,
)

__all__ = [
    "MEMBER_FIELDS",
    "FieldSpec",
    "get_member_allowed_headers",
    "get_member_field_specs",
    "get_member_required_headers",
    "normalize_header",
]

"""
Masking helpers for member contact details shown in list views.

Detail views show full values; lists only show enough to recognise a member.
"""

from __future__ import annotations

import re

_DIGIT = re.compile(r"\d")


def mask_email(email: str | None) -> str | None:
    """``john.doe@example.com`` -> ``j***@example.com``."""
    if not email:
        return None
    local, sep, domain = email.partition("@")
    if not local or not sep or not domain:
        return email
    return f"{local[0]}***@{domain}"


def mask_phone_number(phone_number: str | None) -> str | None:
    """Replace every digit except the last four; separators are kept."""
    if not phone_number:
        return None
    head, tail = phone_number[:-4], phone_number[-4:]
    return _DIGIT.sub("*", head) + tail


def mask_member_id(member_id: str | None) -> str | None:
    """``MEM123456`` -> ``M*******6``."""
    if not member_id or len(member_id) <= 2:
        return member_id
    return f"{member_id[0]}{'*' * (len(member_id) - 2)}{member_id[-1]}"


def mask_member_payload(payload: dict) -> dict:
    masked = dict(payload)
    masked["member_id"] = mask_member_id(payload.get("member_id"))
    masked["phone_number"] = mask_phone_number(payload.get("phone_number"))
    masked["email"] = mask_email(payload.get("email"))
    return masked

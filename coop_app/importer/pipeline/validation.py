"""
Row-level validation engine for member uploads.

Rules run against every row of a parsed ``RawTable`` and emit structured
``ValidationError`` entries. Nothing short-circuits: an operator sees every
problem in the file in one pass, ordered by row and then by rule.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from coop_app.importer.adapters import RawTable

DEFAULT_PHONE_PATTERN = r"^\+?[\d\s\-()]+$"
DEFAULT_PHONE_MIN_DIGITS = 7
DEFAULT_EMAIL_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"

_NON_DIGITS = re.compile(r"\D")


class ErrorKind(str, enum.Enum):
    FIELD = "field"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class ValidationError:
    """
    A single row-level problem.

    Attributes:
        row_number: 1-based line index with the header counted as row 1.
        field: Column the problem belongs to.
        value: Raw cell value as uploaded.
        message: Operator-facing description.
        kind: Whether this is a field-format problem or an intra-file duplicate.
    """

    row_number: int
    field: str
    value: str
    message: str
    kind: ErrorKind = ErrorKind.FIELD

    def as_dict(self) -> dict[str, Any]:
        return {
            "row": self.row_number,
            "field": self.field,
            "value": self.value,
            "message": self.message,
            "kind": self.kind.value,
        }


@dataclass(frozen=True)
class ValidationPatterns:
    """Configurable phone and email acceptance rules."""

    phone: re.Pattern = field(default_factory=lambda: re.compile(DEFAULT_PHONE_PATTERN))
    phone_min_digits: int = DEFAULT_PHONE_MIN_DIGITS
    email: re.Pattern = field(default_factory=lambda: re.compile(DEFAULT_EMAIL_PATTERN))

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ValidationPatterns":
        return cls(
            phone=re.compile(config.get("IMPORT_PHONE_PATTERN") or DEFAULT_PHONE_PATTERN),
            phone_min_digits=int(config.get("IMPORT_PHONE_MIN_DIGITS") or DEFAULT_PHONE_MIN_DIGITS),
            email=re.compile(config.get("IMPORT_EMAIL_PATTERN") or DEFAULT_EMAIL_PATTERN),
        )


def _cell(row: Mapping[str, str | None], name: str) -> str:
    value = row.get(name)
    if value is None:
        return ""
    return str(value).strip()


def normalize_member_id(value: str | None) -> str:
    return (value or "").strip()


def normalize_phone(value: str | None) -> str:
    """Digits only; the key phone uniqueness is enforced on."""
    return _NON_DIGITS.sub("", value or "")


def normalize_email(value: str | None) -> str:
    return (value or "").strip().lower()


def is_valid_phone(value: str | None, patterns: ValidationPatterns) -> bool:
    candidate = (value or "").strip()
    if not candidate or not patterns.phone.match(candidate):
        return False
    return len(normalize_phone(candidate)) >= patterns.phone_min_digits


def is_valid_email(value: str | None, patterns: ValidationPatterns) -> bool:
    candidate = (value or "").strip()
    return bool(candidate) and bool(patterns.email.match(candidate))


class RowRule:
    """Base class for rules evaluated independently against each row."""

    code: str = ""
    description: str = ""

    def evaluate(self, row: Mapping[str, str | None], row_number: int) -> Iterable[ValidationError]:
        raise NotImplementedError


class RequiredFieldRule(RowRule):
    def __init__(self, field_name: str) -> None:
        self.field_name = field_name
        self.code = f"{field_name.upper()}_REQUIRED"
        self.description = f"{field_name} must be present and non-empty."

    def evaluate(self, row, row_number):
        if _cell(row, self.field_name):
            return []
        return [
            ValidationError(
                row_number=row_number,
                field=self.field_name,
                value=row.get(self.field_name) or "",
                message=f"{self.field_name} is required",
            )
        ]


class PhoneFormatRule(RowRule):
    code = "PHONE_FORMAT"
    description = "Phone numbers may hold digits, spaces, hyphens, parentheses and a leading +."

    def __init__(self, patterns: ValidationPatterns) -> None:
        self.patterns = patterns

    def evaluate(self, row, row_number):
        phone = _cell(row, "phone_number")
        if not phone or is_valid_phone(phone, self.patterns):
            return []
        return [
            ValidationError(
                row_number=row_number,
                field="phone_number",
                value=row.get("phone_number") or "",
                message="Invalid phone number format",
            )
        ]


class EmailFormatRule(RowRule):
    code = "EMAIL_FORMAT"
    description = "Email must look like local@domain.tld."

    def __init__(self, patterns: ValidationPatterns) -> None:
        self.patterns = patterns

    def evaluate(self, row, row_number):
        email = _cell(row, "email")
        if not email or is_valid_email(email, self.patterns):
            return []
        return [
            ValidationError(
                row_number=row_number,
                field="email",
                value=row.get("email") or "",
                message="Invalid email format",
            )
        ]


_DUPLICATE_KEYS = (
    ("member_id", normalize_member_id),
    ("phone_number", normalize_phone),
    ("email", normalize_email),
)


class DuplicateTracker:
    """
    Running sets of values already seen in the upload.

    The first occurrence of a value is never flagged; every later occurrence is.
    """

    def __init__(self) -> None:
        self._seen: dict[str, set[str]] = {name: set() for name, _ in _DUPLICATE_KEYS}

    def check(self, row: Mapping[str, str | None], row_number: int) -> list[ValidationError]:
        errors: list[ValidationError] = []
        for name, normalizer in _DUPLICATE_KEYS:
            key = normalizer(row.get(name))
            if not key:
                continue
            if key in self._seen[name]:
                errors.append(
                    ValidationError(
                        row_number=row_number,
                        field=name,
                        value=row.get(name) or "",
                        message=f"Duplicate {name}",
                        kind=ErrorKind.DUPLICATE,
                    )
                )
            else:
                self._seen[name].add(key)
        return errors


def build_rules(patterns: ValidationPatterns) -> tuple[RowRule, ...]:
    return (
        RequiredFieldRule("member_id"),
        RequiredFieldRule("name"),
        RequiredFieldRule("phone_number"),
        PhoneFormatRule(patterns),
        EmailFormatRule(patterns),
    )


def validate(table: RawTable, *, patterns: ValidationPatterns | None = None) -> list[ValidationError]:
    """Return every row-level error in ``table``; an empty list means the upload may be committed."""
    patterns = patterns or ValidationPatterns()
    rules = build_rules(patterns)
    tracker = DuplicateTracker()
    errors: list[ValidationError] = []
    for index, row in enumerate(table.rows):
        row_number = index + 2
        for rule in rules:
            errors.extend(rule.evaluate(row, row_number))
        errors.extend(tracker.check(row, row_number))
    return errors


@dataclass(frozen=True)
class ImportPreview:
    """Operator-facing summary of a validation pass."""

    total_rows: int
    valid_rows: int
    invalid_rows: int
    headers: tuple[str, ...]
    has_email_column: bool
    preview_rows: tuple[Mapping[str, str], ...]
    errors: tuple[ValidationError, ...]

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.is_valid,
            "total_rows": self.total_rows,
            "valid_rows": self.valid_rows,
            "invalid_rows": self.invalid_rows,
            "headers": list(self.headers),
            "has_email_column": self.has_email_column,
            "preview_data": [dict(row) for row in self.preview_rows],
            "errors": [error.as_dict() for error in self.errors],
        }


def build_preview(
    table: RawTable,
    errors: Sequence[ValidationError],
    *,
    preview_rows: int = 10,
) -> ImportPreview:
    """Summarise ``errors`` against ``table``; the error list is never truncated."""
    invalid_numbers = {error.row_number for error in errors}
    valid = [row for index, row in enumerate(table.rows) if index + 2 not in invalid_numbers]
    return ImportPreview(
        total_rows=table.row_count,
        valid_rows=len(valid),
        invalid_rows=len(invalid_numbers),
        headers=table.headers,
        has_email_column=table.has_email_column,
        preview_rows=tuple(valid[: max(preview_rows, 0)]),
        errors=tuple(errors),
    )

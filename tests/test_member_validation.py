import re

import pytest

from coop_app.importer.adapters import parse
from coop_app.importer.pipeline.validation import (
    ErrorKind,
    ValidationPatterns,
    build_preview,
    is_valid_phone,
    normalize_phone,
    validate,
)


def _table(body: str, header: str = "member_id,name,phone_number,email"):
    return parse(f"{header}\n{body}")


def test_clean_table_has_no_errors():
    table = _table(
        "M001,Juan Dela Cruz,+63 917 555 0101,juan@example.com\n"
        "M002,Maria Santos,(02) 8555-0102,\n"
        "M003,Pedro Reyes,09175550103,pedro@example.com\n"
    )

    assert validate(table) == []
    assert table.row_count == 3


def test_missing_required_field_reports_row_number():
    table = _table("M001,Juan,09175550101,\n" "M002,,09175550102,\n")

    errors = validate(table)

    assert len(errors) == 1
    error = errors[0]
    assert error.row_number == 3
    assert error.field == "name"
    assert error.message == "name is required"
    assert error.kind is ErrorKind.FIELD


def test_whitespace_only_value_counts_as_missing():
    errors = validate(_table("   ,Juan,09175550101,\n"))
    assert [(error.field, error.message) for error in errors] == [("member_id", "member_id is required")]


def test_invalid_phone_and_email_formats():
    errors = validate(_table("M001,Juan,call me,juan-at-example\n" "M002,Ana,123,ana@example.com\n"))

    assert [(error.row_number, error.field, error.message) for error in errors] == [
        (2, "phone_number", "Invalid phone number format"),
        (2, "email", "Invalid email format"),
        (3, "phone_number", "Invalid phone number format"),
    ]


def test_duplicate_flags_second_occurrence_only():
    table = _table(
        "M001,Juan,09175550101,\n"
        "M001,Juan Again,09175550102,\n"
        "M002,Maria,09175550103,\n"
        "M001,Third,09175550104,\n"
    )

    errors = validate(table)

    assert [(error.row_number, error.field, error.message) for error in errors] == [
        (3, "member_id", "Duplicate member_id"),
        (5, "member_id", "Duplicate member_id"),
    ]
    assert all(error.kind is ErrorKind.DUPLICATE for error in errors)


def test_duplicates_compare_normalized_values():
    table = _table(
        "M001,Juan,+63 917 555 0101,Juan@Example.com\n"
        "M002,Maria,+63-917-555-0101,juan@example.com \n"
    )

    errors = validate(table)

    assert {(error.row_number, error.field) for error in errors} == {(3, "phone_number"), (3, "email")}


def test_example_scenario_duplicate_member_id_on_row_three():
    table = _table(
        "M001,Juan Dela Cruz,09171234567,juan@example.com\n" "M001,Maria Santos,09181234567,maria@example.com\n"
    )

    errors = validate(table)

    assert len(errors) == 1
    assert errors[0].row_number == 3
    assert errors[0].message == "Duplicate member_id"
    assert errors[0].as_dict() == {
        "row": 3,
        "field": "member_id",
        "value": "M001",
        "message": "Duplicate member_id",
        "kind": "duplicate",
    }


def test_error_list_is_never_truncated():
    body = "".join(f"M{index:03d},,09175550{index:03d},\n" for index in range(150))
    errors = validate(_table(body))
    assert len(errors) == 150


def test_patterns_come_from_configuration():
    patterns = ValidationPatterns.from_config(
        {"IMPORT_PHONE_PATTERN": r"^09\d{9}$", "IMPORT_PHONE_MIN_DIGITS": 11, "IMPORT_EMAIL_PATTERN": None}
    )

    assert is_valid_phone("09171234567", patterns)
    assert not is_valid_phone("+63 917 123 4567", patterns)
    assert patterns.email.pattern == ValidationPatterns().email.pattern


@pytest.mark.parametrize(
    "raw,expected",
    [("+63 (917) 555-0101", "639175550101"), ("", ""), (None, "")],
)
def test_normalize_phone_keeps_digits_only(raw, expected):
    assert normalize_phone(raw) == expected


def test_phone_minimum_digits():
    patterns = ValidationPatterns(phone=re.compile(r"^\+?[\d\s\-()]+$"), phone_min_digits=7)
    assert not is_valid_phone("12-34", patterns)
    assert is_valid_phone("555-0101", patterns)


def test_build_preview_summarizes_valid_and_invalid_rows():
    table = _table("M001,Juan,09175550101,\n" "M002,,09175550102,\n" "M003,Pedro,bad phone,bad email\n")
    errors = validate(table)

    preview = build_preview(table, errors, preview_rows=10)
    payload = preview.as_dict()

    assert payload["success"] is False
    assert payload["total_rows"] == 3
    assert payload["valid_rows"] == 1
    assert payload["invalid_rows"] == 2
    assert payload["has_email_column"] is True
    assert [row["member_id"] for row in payload["preview_data"]] == ["M001"]
    assert len(payload["errors"]) == 3


def test_build_preview_limits_preview_rows_only():
    body = "".join(f"M{index:03d},Member {index},0917555{index:04d},\n" for index in range(20))
    table = _table(body)

    preview = build_preview(table, validate(table), preview_rows=5)

    assert preview.is_valid
    assert preview.valid_rows == 20
    assert len(preview.preview_rows) == 5

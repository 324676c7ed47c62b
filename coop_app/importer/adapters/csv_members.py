"""CSV adapter for member uploads.

Turns delimited text into a ``RawTable`` and enforces the structural rules of
the member contract (required and allowed columns). Row-level checks live in
the validation engine; anything raised here is fatal for the whole file.
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Mapping, Sequence

from coop_app.importer.contracts import (
    get_member_allowed_headers,
    get_member_required_headers,
    normalize_header,
)
from coop_app.importer.errors import MalformedInputError, MissingColumnsError, UnknownColumnsError

ALLOWED_EXTENSIONS = (".csv",)


@dataclass(frozen=True)
class RawTable:
    """Parsed upload: normalized headers plus one mapping per data row."""

    headers: tuple[str, ...]
    rows: tuple[Mapping[str, str], ...]
    source_lines: tuple[int, ...] = ()
    blank_lines_skipped: int = 0

    @property
    def row_count(self) -> int:
        return len(self.rows)

    @property
    def has_email_column(self) -> bool:
        return "email" in self.headers


@dataclass
class _Accumulator:
    records: list[tuple[int, list[str]]] = field(default_factory=list)
    blank: int = 0


def _row_is_blank(cells: Sequence[str]) -> bool:
    return all(cell.strip() == "" for cell in cells)


def _read_records(content: str, delimiter: str) -> _Accumulator:
    accumulator = _Accumulator()
    reader = csv.reader(io.StringIO(content), delimiter=delimiter)
    try:
        for cells in reader:
            if _row_is_blank(cells):
                accumulator.blank += 1
                continue
            accumulator.records.append((reader.line_num, cells))
    except csv.Error as exc:
        raise MalformedInputError(f"Could not parse CSV near line {reader.line_num}: {exc}") from exc
    return accumulator


def _normalize_headers(raw_headers: Sequence[str]) -> tuple[str, ...]:
    headers = [normalize_header(token) for token in raw_headers]
    # Spreadsheet exports often leave trailing delimiters on the header line.
    while headers and headers[-1] == "":
        headers.pop()
    duplicates = sorted({header for header in headers if headers.count(header) > 1})
    if duplicates:
        raise MalformedInputError(f"Duplicate columns: {', '.join(duplicates)}")
    return tuple(headers)


def _validate_headers(headers: Sequence[str]) -> None:
    present = set(headers)
    missing = [name for name in get_member_required_headers() if name not in present]
    if missing:
        raise MissingColumnsError(missing)

    allowed = set(get_member_allowed_headers())
    unknown = [header for header in headers if header not in allowed]
    if unknown:
        raise UnknownColumnsError(unknown)


def parse(content: str, *, delimiter: str = ",") -> RawTable:
    """
    Parse delimited member data into a ``RawTable``.

    Blank lines are skipped, short rows are padded with empty strings and cells
    beyond the header are ignored. Raises ``MalformedInputError`` when there is
    no header plus at least one data row, ``MissingColumnsError`` or
    ``UnknownColumnsError`` when the header breaks the member contract.
    """
    if not delimiter or len(delimiter) != 1:
        raise MalformedInputError("Field delimiter must be a single character.")

    if content.startswith("\ufeff"):
        content = content[1:]

    accumulator = _read_records(content, delimiter)
    if len(accumulator.records) < 2:
        raise MalformedInputError("CSV file must contain a header row and at least one data row")

    _, header_cells = accumulator.records[0]
    headers = _normalize_headers(header_cells)
    _validate_headers(headers)

    rows: list[dict[str, str]] = []
    source_lines: list[int] = []
    width = len(headers)
    for line_number, cells in accumulator.records[1:]:
        padded = list(cells[:width]) + [""] * max(width - len(cells), 0)
        rows.append(dict(zip(headers, padded)))
        source_lines.append(line_number)

    return RawTable(
        headers=headers,
        rows=tuple(rows),
        source_lines=tuple(source_lines),
        blank_lines_skipped=accumulator.blank,
    )


def check_file_name(file_name: str | None) -> str:
    """Return the bare file name, rejecting anything that is not a ``.csv``."""
    name = PurePath(file_name or "").name
    if not name:
        raise MalformedInputError("No file uploaded")
    if PurePath(name).suffix.lower() not in ALLOWED_EXTENSIONS:
        raise MalformedInputError("Invalid file format. Only CSV files are allowed")
    return name


def parse_upload(
    file_name: str | None,
    content: bytes,
    *,
    delimiter: str = ",",
    max_bytes: int | None = None,
) -> RawTable:
    """Validate an uploaded file's name and size, decode it as UTF-8, and parse it."""
    check_file_name(file_name)
    if max_bytes is not None and len(content) > max_bytes:
        limit_mb = max_bytes / (1024 * 1024)
        raise MalformedInputError(f"File exceeds the {limit_mb:g} MB upload limit")
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise MalformedInputError("File is not valid UTF-8 text") from exc
    return parse(text, delimiter=delimiter)

"""Source adapters for member uploads."""

from .csv_members import RawTable, check_file_name, parse, parse_upload

__all__ = ["RawTable", "check_file_name", "parse", "parse_upload"]

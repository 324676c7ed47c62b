"""
Exceptions raised by the member import and activation pipeline.

Only request-level failures are raised. Row-level problems (field errors,
duplicates, skipped or channel-less rows) are collected and returned as data.
"""

from __future__ import annotations

from typing import Any, Sequence


class ImporterError(Exception):
    """Base class for importer failures surfaced to callers."""

    code = "IMPORTER_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code}


class MalformedInputError(ImporterError):
    """Raised when an upload cannot be read as a member table at all."""

    code = "MALFORMED_INPUT"


class MissingColumnsError(ImporterError):
    """Raised when required columns are absent from the header."""

    code = "MISSING_COLUMNS"

    def __init__(self, missing: Sequence[str]) -> None:
        self.missing = tuple(missing)
        super().__init__(f"Missing required columns: {', '.join(self.missing)}")

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["missing"] = list(self.missing)
        return payload


class UnknownColumnsError(ImporterError):
    """Raised when the header contains columns outside the member contract."""

    code = "UNKNOWN_COLUMNS"

    def __init__(self, unknown: Sequence[str]) -> None:
        self.unknown = tuple(unknown)
        super().__init__(f"Invalid columns: {', '.join(self.unknown)}")

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["unknown"] = list(self.unknown)
        return payload


class ImportValidationError(ImporterError):
    """Raised when a commit is attempted for a table that has validation errors."""

    code = "VALIDATION_FAILED"

    def __init__(self, errors: Sequence[Any]) -> None:
        self.errors = list(errors)
        super().__init__(f"Upload has {len(self.errors)} validation error(s); nothing was imported.")

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["errors"] = [error.as_dict() for error in self.errors]
        return payload


class InvalidStateError(ImporterError):
    """Raised when a record cannot make the requested transition."""

    code = "INVALID_STATE"

    def __init__(self, message: str, *, record_id: int | None = None, status: str | None = None) -> None:
        super().__init__(message)
        self.record_id = record_id
        self.status = status

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["record_id"] = self.record_id
        payload["activation_status"] = self.status
        return payload


class AlreadyActivatedError(InvalidStateError):
    """Raised when a credential is requested for an already activated member."""

    code = "ALREADY_ACTIVATED"

    def __init__(self, record_id: int | None = None) -> None:
        super().__init__("Member has already activated their account", record_id=record_id, status="activated")


class RecordNotFoundError(ImporterError):
    code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: Any) -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} {identifier} not found.")


class ChannelUnavailableError(ImporterError):
    """Raised when a record has no destination for the requested channel."""

    code = "CHANNEL_UNAVAILABLE"

    def __init__(self, channel: str, *, record_id: int | None = None) -> None:
        self.channel = channel
        self.record_id = record_id
        super().__init__(f"Member has no {'phone number' if channel == 'sms' else 'email address'} on file.")

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["delivery_method"] = self.channel
        return payload


class InvalidResendRequestError(ImporterError):
    code = "INVALID_RESEND_REQUEST"


class TokenExpiredError(ImporterError):
    code = "TOKEN_EXPIRED"

    def __init__(self, record_id: int | None = None) -> None:
        self.record_id = record_id
        super().__init__("Temporary password has expired; request a new invitation.")


class InvalidCredentialError(ImporterError):
    code = "INVALID_CREDENTIAL"

    def __init__(self) -> None:
        super().__init__("Member ID or temporary password is incorrect.")


class StorageFailureError(ImporterError):
    """Raised when a commit could not be written; the failed job id is kept for audit."""

    code = "STORAGE_FAILURE"

    def __init__(self, message: str, *, job_id: int | None = None) -> None:
        super().__init__(message)
        self.job_id = job_id

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["import_job_id"] = self.job_id
        return payload

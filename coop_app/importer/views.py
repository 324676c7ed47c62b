"""
Importer blueprint: upload preview, commit, listings, resends and activation.

Mutating endpoints take the operator identity from the ``X-Operator-Id``
header; there is no ambient session.
"""

from __future__ import annotations

import time
from datetime import datetime
from http import HTTPStatus
from typing import Any

from flask import Blueprint, current_app, jsonify, request

from config.monitoring import ImportMonitoring
from coop_app.importer.adapters import parse_upload
from coop_app.importer.errors import (
    ChannelUnavailableError,
    ImporterError,
    InvalidCredentialError,
    InvalidStateError,
    RecordNotFoundError,
    StorageFailureError,
    TokenExpiredError,
)
from coop_app.importer.pipeline.activation import ActivationService
from coop_app.importer.pipeline.commit import CommitMetadata, ImportCommitService
from coop_app.importer.pipeline.query_service import ImportQueryService, MemberFilters, PageRequest
from coop_app.importer.pipeline.resend import ResendCoordinator
from coop_app.importer.pipeline.validation import ValidationPatterns, build_preview, validate
from coop_app.models.base import as_utc
from coop_app.models.importer.schema import ImportJob, ImportJobIssue, MemberActivationRecord
from coop_app.utils.importer import get_delimiter, get_listing_limits, get_max_upload_bytes, is_importer_enabled
from coop_app.utils.masking import mask_member_payload
from coop_app.utils.presentation import activation_status_display, import_job_status_display

from .celery_app import DEFAULT_QUEUE_NAME

importer_blueprint = Blueprint("importer", __name__, url_prefix="/api/imports")

OPERATOR_HEADER = "X-Operator-Id"

# Checked in order; AlreadyActivatedError is an InvalidStateError.
_ERROR_STATUS: tuple[tuple[type[ImporterError], HTTPStatus], ...] = (
    (RecordNotFoundError, HTTPStatus.NOT_FOUND),
    (InvalidStateError, HTTPStatus.CONFLICT),
    (TokenExpiredError, HTTPStatus.GONE),
    (InvalidCredentialError, HTTPStatus.UNAUTHORIZED),
    (ChannelUnavailableError, HTTPStatus.UNPROCESSABLE_ENTITY),
    (StorageFailureError, HTTPStatus.INTERNAL_SERVER_ERROR),
)


def _json_error(message: str, status: HTTPStatus):
    return jsonify({"error": message}), status


def _importer_error_response(exc: ImporterError):
    status = HTTPStatus.BAD_REQUEST
    for error_type, mapped_status in _ERROR_STATUS:
        if isinstance(exc, error_type):
            status = mapped_status
            break
    return jsonify(exc.to_dict()), status


def _ensure_importer_enabled_api():
    if not is_importer_enabled():
        return _json_error("Importer is disabled.", HTTPStatus.NOT_FOUND)
    return None


def _require_operator() -> tuple[str | None, Any]:
    operator = (request.headers.get(OPERATOR_HEADER) or "").strip()
    if not operator:
        return None, _json_error(f"{OPERATOR_HEADER} header is required.", HTTPStatus.UNAUTHORIZED)
    return operator, None


def _read_upload() -> tuple[Any, Any]:
    upload = request.files.get("file")
    if upload is None or not upload.filename:
        return None, _json_error("No file uploaded", HTTPStatus.BAD_REQUEST)
    table = parse_upload(
        upload.filename,
        upload.read(),
        delimiter=get_delimiter(),
        max_bytes=get_max_upload_bytes(),
    )
    return (upload.filename, table), None


def _isoformat(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def _page_request() -> PageRequest:
    default_limit, max_limit = get_listing_limits()
    return PageRequest.coerce(
        page=request.args.get("page"),
        limit=request.args.get("limit"),
        sort_by=request.args.get("sort_by"),
        sort_order=request.args.get("sort_order"),
        default_limit=default_limit,
        max_limit=max_limit,
    )


def _serialize_job(job: ImportJob) -> dict[str, Any]:
    return {
        "id": job.id,
        "initiated_by": job.initiated_by,
        "source_file_name": job.source_file_name,
        "status": job.status.value,
        "status_display": import_job_status_display(job.status),
        "total_rows": job.total_rows,
        "successful_imports": job.successful_imports,
        "failed_imports": job.failed_imports,
        "skipped_rows": job.skipped_rows,
        "sms_sent_count": job.sms_sent_count,
        "sms_failed_count": job.sms_failed_count,
        "email_sent_count": job.email_sent_count,
        "email_failed_count": job.email_failed_count,
        "error_summary": job.error_summary,
        "created_at": _isoformat(job.created_at),
        "finished_at": _isoformat(job.finished_at),
    }


def _serialize_issue(issue: ImportJobIssue) -> dict[str, Any]:
    return {
        "row": issue.row_number,
        "member_id": issue.member_id,
        "code": issue.error_code.value,
        "message": issue.error_message,
    }


def _serialize_record(record: MemberActivationRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "import_job_id": record.import_job_id,
        "member_id": record.member_id,
        "name": record.name,
        "phone_number": record.phone_number,
        "email": record.email,
        "activation_status": record.activation_status.value,
        "status_display": activation_status_display(record.activation_status),
        "activation_method": record.activation_method.value if record.activation_method else None,
        "sms_sent_at": _isoformat(record.sms_sent_at),
        "email_sent_at": _isoformat(record.email_sent_at),
        "activated_at": _isoformat(record.activated_at),
        "temporary_password_expires_at": _isoformat(record.temporary_password_expires_at),
        "resend_count": record.resend_count,
        "last_resend_at": _isoformat(record.last_resend_at),
        "last_delivery_error": record.last_delivery_error,
        "sms_retry_count": record.sms_retry_count,
        "sms_last_retry_at": _isoformat(record.sms_last_retry_at),
        "email_retry_count": record.email_retry_count,
        "email_last_retry_at": _isoformat(record.email_last_retry_at),
        "created_at": _isoformat(record.created_at),
    }


@importer_blueprint.get("/health")
def importer_healthcheck():
    """
    Lightweight health endpoint proving the importer blueprint mounted correctly.
    """
    importer_state = current_app.extensions.get("importer", {})
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": importer_state.get("enabled", False),
                "worker_enabled": importer_state.get("worker_enabled", False),
                "queue": DEFAULT_QUEUE_NAME,
                "notifier_backend": current_app.config.get("NOTIFIER_BACKEND", "log"),
            }
        ),
        HTTPStatus.OK,
    )


@importer_blueprint.post("/upload")
def importer_upload_preview():
    """Parse and validate an upload without writing anything."""
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    try:
        upload, error_response = _read_upload()
    except ImporterError as exc:
        ImportMonitoring.record_validation(clean=False)
        return _importer_error_response(exc)
    if error_response:
        return error_response

    file_name, table = upload
    errors = validate(table, patterns=ValidationPatterns.from_config(current_app.config))
    ImportMonitoring.record_validation(clean=not errors)
    preview = build_preview(
        table,
        errors,
        preview_rows=int(current_app.config.get("IMPORT_PREVIEW_ROWS", 10)),
    )
    current_app.logger.info(
        "Import preview generated",
        extra={
            "importer_source_file": file_name,
            "importer_total_rows": preview.total_rows,
            "importer_error_count": len(preview.errors),
        },
    )
    return jsonify(preview.as_dict()), HTTPStatus.OK


@importer_blueprint.post("/confirm")
def importer_confirm():
    """Commit an upload as a new import job and queue credential delivery."""
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    operator, auth_response = _require_operator()
    if auth_response:
        return auth_response

    try:
        upload, error_response = _read_upload()
        if error_response:
            return error_response
        file_name, table = upload
        job = ImportCommitService().commit(
            table,
            CommitMetadata(initiated_by=operator, source_file_name=file_name),
        )
    except ImporterError as exc:
        return _importer_error_response(exc)

    issues = ImportQueryService().list_job_issues(job.id)
    payload = {
        "success": True,
        "message": f"Successfully imported {job.successful_imports} members",
        "import_job": _serialize_job(job),
        "issues": [_serialize_issue(issue) for issue in issues],
    }
    return jsonify(payload), HTTPStatus.CREATED


@importer_blueprint.get("/jobs")
def importer_jobs_list():
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    page_request = _page_request()
    start_time = time.perf_counter()
    result = ImportQueryService().list_import_jobs(page_request)
    duration = time.perf_counter() - start_time
    ImportMonitoring.record_list(
        resource="jobs", duration_seconds=duration, status="success", result_count=len(result.items)
    )
    current_app.logger.info(
        "Import jobs list retrieved",
        extra={
            "importer_job_count": len(result.items),
            "importer_total_jobs": result.pagination.total,
            "importer_response_time_ms": round(duration * 1000, 2),
        },
    )
    return (
        jsonify(
            {
                "import_jobs": [_serialize_job(job) for job in result.items],
                "pagination": result.pagination.as_dict(),
            }
        ),
        HTTPStatus.OK,
    )


@importer_blueprint.get("/jobs/<int:job_id>")
def importer_job_detail(job_id: int):
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    service = ImportQueryService()
    try:
        job = service.get_import_job(job_id)
    except RecordNotFoundError as exc:
        return _importer_error_response(exc)

    payload = _serialize_job(job)
    payload["status_counts"] = dict(service.get_status_counts(import_job_id=job.id))
    return jsonify(payload), HTTPStatus.OK


@importer_blueprint.get("/jobs/<int:job_id>/issues")
def importer_job_issues(job_id: int):
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    try:
        issues = ImportQueryService().list_job_issues(job_id)
    except RecordNotFoundError as exc:
        return _importer_error_response(exc)
    return (
        jsonify({"import_job_id": job_id, "issues": [_serialize_issue(issue) for issue in issues]}),
        HTTPStatus.OK,
    )


@importer_blueprint.get("/members")
def importer_members_list():
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    try:
        filters = MemberFilters.coerce(
            status=request.args.get("status"),
            search=request.args.get("search"),
            import_job_id=request.args.get("import_job_id"),
        )
    except ValueError as exc:
        ImportMonitoring.record_list(resource="members", duration_seconds=0.0, status="invalid_request", result_count=0)
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    page_request = _page_request()
    service = ImportQueryService()
    start_time = time.perf_counter()
    result = service.list_member_records(filters, page_request)
    status_counts = service.get_status_counts(import_job_id=filters.import_job_id)
    duration = time.perf_counter() - start_time
    ImportMonitoring.record_list(
        resource="members", duration_seconds=duration, status="success", result_count=len(result.items)
    )

    members = [_serialize_record(record) for record in result.items]
    if current_app.config.get("MEMBER_LIST_MASK_SENSITIVE", True):
        members = [mask_member_payload(member) for member in members]

    response_payload = {
        "members": members,
        "pagination": result.pagination.as_dict(),
        "status_counts": dict(status_counts),
        "filters": {
            "status": filters.status.value if filters.status else None,
            "search": filters.search,
            "import_job_id": filters.import_job_id,
        },
    }
    current_app.logger.info(
        "Member records list retrieved",
        extra={
            "importer_record_count": len(members),
            "importer_total_records": result.pagination.total,
            "importer_filters": response_payload["filters"],
            "importer_response_time_ms": round(duration * 1000, 2),
        },
    )
    return jsonify(response_payload), HTTPStatus.OK


@importer_blueprint.get("/members/<int:record_id>")
def importer_member_detail(record_id: int):
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    try:
        record = ImportQueryService().get_member_record(record_id)
    except RecordNotFoundError as exc:
        return _importer_error_response(exc)
    return jsonify(_serialize_record(record)), HTTPStatus.OK


@importer_blueprint.post("/members/<int:record_id>/resend")
def importer_member_resend(record_id: int):
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    operator, auth_response = _require_operator()
    if auth_response:
        return auth_response

    body = request.get_json(silent=True) or {}
    try:
        outcome = ResendCoordinator().resend(record_id, body.get("delivery_method"), actor=operator)
    except ImporterError as exc:
        return _importer_error_response(exc)

    payload = outcome.as_dict()
    if outcome.success:
        payload["message"] = f"Invitation resent via {outcome.channel.value}"
        return jsonify(payload), HTTPStatus.OK
    # Delivery was attempted and recorded; the transport rejected it.
    return jsonify(payload), HTTPStatus.BAD_GATEWAY


@importer_blueprint.post("/members/bulk-resend")
def importer_members_bulk_resend():
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    operator, auth_response = _require_operator()
    if auth_response:
        return auth_response

    body = request.get_json(silent=True) or {}
    record_ids = body.get("member_ids", body.get("record_ids"))
    if record_ids is not None and not isinstance(record_ids, list):
        return _json_error("Member IDs array is required and must not be empty", HTTPStatus.BAD_REQUEST)

    try:
        summary = ResendCoordinator().bulk_resend(record_ids or [], body.get("delivery_method"), actor=operator)
    except ImporterError as exc:
        return _importer_error_response(exc)

    payload = summary.as_dict()
    payload["success"] = True
    payload["message"] = f"Bulk resend completed: {summary.success_count} succeeded, {summary.failure_count} failed"
    return jsonify(payload), HTTPStatus.OK


@importer_blueprint.post("/members/<int:record_id>/activate")
def importer_member_activate(record_id: int):
    """Verify a temporary password and activate the member."""
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    operator, auth_response = _require_operator()
    if auth_response:
        return auth_response

    body = request.get_json(silent=True) or {}
    temporary_password = body.get("temporary_password")
    if not isinstance(temporary_password, str) or not temporary_password:
        return _json_error("temporary_password is required", HTTPStatus.BAD_REQUEST)

    try:
        record = ImportQueryService().get_member_record(record_id)
        record = ActivationService().activate(record.member_id, temporary_password, actor=operator)
    except ImporterError as exc:
        return _importer_error_response(exc)
    return jsonify(_serialize_record(record)), HTTPStatus.OK


@importer_blueprint.post("/maintenance/expire-tokens")
def importer_expire_tokens():
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    operator, auth_response = _require_operator()
    if auth_response:
        return auth_response

    result = ActivationService().expire_stale(actor=operator)
    return jsonify({"expired": result.expired, "record_ids": list(result.record_ids)}), HTTPStatus.OK

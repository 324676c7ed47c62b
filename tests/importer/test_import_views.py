from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select

from coop_app.models import db
from coop_app.models.importer.schema import ActivationStatus, ImportJob, MemberActivationRecord


def test_health_endpoint(client):
    response = client.get("/api/imports/health")
    assert response.status_code == 200
    payload = response.get_json()
    assert payload["status"] == "ok"
    assert payload["enabled"] is True
    assert payload["queue"] == "imports"


def test_upload_preview_reports_validation_errors(client, csv_upload):
    content = (
        "member_id,name,phone_number,email\n"
        "M001,Juan Dela Cruz,09171234567,juan@example.com\n"
        "M001,Maria Santos,09181234567,maria@example.com\n"
    )

    response = client.post("/api/imports/upload", data=csv_upload(content), content_type="multipart/form-data")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["success"] is False
    assert payload["total_rows"] == 2
    assert payload["valid_rows"] == 1
    assert payload["errors"] == [
        {"row": 3, "field": "member_id", "value": "M001", "message": "Duplicate member_id", "kind": "duplicate"}
    ]
    assert db.session.execute(select(ImportJob)).first() is None


def test_upload_preview_for_clean_file(client, csv_upload):
    response = client.post("/api/imports/upload", data=csv_upload(), content_type="multipart/form-data")

    payload = response.get_json()
    assert payload["success"] is True
    assert payload["has_email_column"] is True
    assert len(payload["preview_data"]) == 3


def test_upload_rejects_missing_columns(client, csv_upload):
    response = client.post(
        "/api/imports/upload",
        data=csv_upload("member_id,email\nM001,a@b.co\n"),
        content_type="multipart/form-data",
    )

    assert response.status_code == 400
    payload = response.get_json()
    assert payload["code"] == "MISSING_COLUMNS"
    assert payload["missing"] == ["name", "phone_number"]


def test_upload_rejects_non_csv_files(client, csv_upload):
    response = client.post(
        "/api/imports/upload",
        data=csv_upload(file_name="members.xlsx"),
        content_type="multipart/form-data",
    )
    assert response.status_code == 400
    assert response.get_json()["error"] == "Invalid file format. Only CSV files are allowed"


def test_upload_without_file(client):
    response = client.post("/api/imports/upload", data={}, content_type="multipart/form-data")
    assert response.status_code == 400
    assert response.get_json()["error"] == "No file uploaded"


def test_confirm_requires_operator_header(client, csv_upload):
    response = client.post("/api/imports/confirm", data=csv_upload(), content_type="multipart/form-data")
    assert response.status_code == 401
    assert db.session.execute(select(ImportJob)).first() is None


def test_confirm_commits_and_returns_counters(client, notifier, csv_upload, operator_headers):
    response = client.post(
        "/api/imports/confirm",
        data=csv_upload(),
        content_type="multipart/form-data",
        headers=operator_headers,
    )

    assert response.status_code == 201, response.get_json()
    job = response.get_json()["import_job"]
    assert job["initiated_by"] == "admin@svmpc.test"
    assert job["status"] == "completed"
    assert job["status_display"] == {"label": "Completed", "color": "green"}
    assert (job["total_rows"], job["successful_imports"], job["failed_imports"], job["skipped_rows"]) == (3, 3, 0, 0)
    assert job["sms_sent_count"] == 3
    assert len(notifier.sent) == 3


def test_confirm_refuses_invalid_file(client, notifier, csv_upload, operator_headers):
    content = "member_id,name,phone_number\nM001,,09171234567\n"

    response = client.post(
        "/api/imports/confirm",
        data=csv_upload(content),
        content_type="multipart/form-data",
        headers=operator_headers,
    )

    assert response.status_code == 400
    payload = response.get_json()
    assert payload["code"] == "VALIDATION_FAILED"
    assert payload["errors"][0]["message"] == "name is required"
    assert notifier.sent == []


def test_confirm_reports_skipped_rows(client, notifier, csv_upload, record_factory, operator_headers):
    record_factory("M002", phone_number="+63 999 000 0002")

    response = client.post(
        "/api/imports/confirm",
        data=csv_upload(),
        content_type="multipart/form-data",
        headers=operator_headers,
    )

    payload = response.get_json()
    assert payload["import_job"]["skipped_rows"] == 1
    assert payload["issues"] == [
        {"row": 3, "member_id": "M002", "code": "DUPLICATE_MEMBER_ID", "message": "Member ID M002 already exists"}
    ]


def test_jobs_listing_and_detail(client, job_factory, record_factory):
    job = job_factory(total_rows=2, successful_imports=2)
    record_factory("M001", job=job)
    record_factory("M002", job=job, status=ActivationStatus.ACTIVATED)

    listing = client.get("/api/imports/jobs?limit=1")
    assert listing.status_code == 200
    payload = listing.get_json()
    assert payload["pagination"] == {"page": 1, "limit": 1, "total": 1, "pages": 1}
    assert payload["import_jobs"][0]["id"] == job.id

    detail = client.get(f"/api/imports/jobs/{job.id}")
    assert detail.status_code == 200
    assert detail.get_json()["status_counts"]["activated"] == 1

    issues = client.get(f"/api/imports/jobs/{job.id}/issues")
    assert issues.get_json() == {"import_job_id": job.id, "issues": []}

    assert client.get("/api/imports/jobs/999").status_code == 404


def test_members_listing_masks_contact_details(client, record_factory):
    record_factory("MEM123456", phone_number="+63 917 555 0101", email="juan.dela@example.com")

    response = client.get("/api/imports/members")

    assert response.status_code == 200
    payload = response.get_json()
    member = payload["members"][0]
    assert member["member_id"] == "M*******6"
    assert member["phone_number"].endswith("0101")
    assert "917" not in member["phone_number"]
    assert member["email"] == "j***@example.com"
    assert "temporary_password_hash" not in member
    assert payload["status_counts"]["total"] == 1


def test_members_listing_unmasked_when_disabled(app, client, record_factory):
    app.config["MEMBER_LIST_MASK_SENSITIVE"] = False
    record_factory("M001", email="juan@example.com")

    member = client.get("/api/imports/members").get_json()["members"][0]
    assert member["member_id"] == "M001"
    assert member["email"] == "juan@example.com"


def test_members_listing_filters_and_rejects_bad_status(client, record_factory):
    record_factory("M001")
    record_factory("M002", status=ActivationStatus.ACTIVATED)

    filtered = client.get("/api/imports/members?status=activated&sort_by=member_id&sort_order=desc")
    assert filtered.status_code == 200
    assert filtered.get_json()["pagination"]["total"] == 1
    assert filtered.get_json()["filters"]["status"] == "activated"

    assert client.get("/api/imports/members?status=archived").status_code == 400


def test_member_detail_is_unmasked(client, record_factory):
    record, _ = record_factory("M001", email="juan@example.com")

    response = client.get(f"/api/imports/members/{record.id}")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["member_id"] == "M001"
    assert payload["email"] == "juan@example.com"
    assert payload["status_display"]["label"] == "Pending Activation"
    assert "temporary_password_hash" not in payload
    assert payload["sms_retry_count"] == 0
    assert payload["sms_last_retry_at"] is None


def test_member_detail_reports_delivery_retries(client, record_factory):
    record, _ = record_factory("M001")
    record.sms_retry_count = 2
    record.sms_last_retry_at = datetime(2026, 3, 1, 8, 30, tzinfo=timezone.utc)
    db.session.commit()

    payload = client.get(f"/api/imports/members/{record.id}").get_json()

    assert payload["sms_retry_count"] == 2
    assert payload["sms_last_retry_at"].startswith("2026-03-01T08:30:00")
    assert payload["email_retry_count"] == 0


def test_single_resend_endpoint(client, notifier, record_factory, operator_headers):
    record, _ = record_factory("M001", status=ActivationStatus.SMS_FAILED)

    response = client.post(
        f"/api/imports/members/{record.id}/resend",
        json={"delivery_method": "sms"},
        headers=operator_headers,
    )

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["success"] is True
    assert payload["activation_status"] == "pending_activation"


def test_single_resend_error_mapping(client, notifier, record_factory, operator_headers):
    activated, _ = record_factory("M001", status=ActivationStatus.ACTIVATED)
    pending, _ = record_factory("M002")

    conflict = client.post(
        f"/api/imports/members/{activated.id}/resend", json={"delivery_method": "sms"}, headers=operator_headers
    )
    missing = client.post("/api/imports/members/999/resend", json={"delivery_method": "sms"}, headers=operator_headers)
    bad_channel = client.post(
        f"/api/imports/members/{pending.id}/resend", json={"delivery_method": "fax"}, headers=operator_headers
    )
    no_email = client.post(
        f"/api/imports/members/{pending.id}/resend", json={"delivery_method": "email"}, headers=operator_headers
    )
    anonymous = client.post(f"/api/imports/members/{pending.id}/resend", json={"delivery_method": "sms"})

    assert conflict.status_code == 409
    assert conflict.get_json()["code"] == "ALREADY_ACTIVATED"
    assert missing.status_code == 404
    assert bad_channel.status_code == 400
    assert bad_channel.get_json()["error"] == "Invalid delivery method. Must be 'sms' or 'email'"
    assert no_email.status_code == 422
    assert anonymous.status_code == 401


def test_bulk_resend_endpoint(client, notifier, record_factory, operator_headers):
    first, _ = record_factory("M001")
    activated, _ = record_factory("M002", status=ActivationStatus.ACTIVATED)

    response = client.post(
        "/api/imports/members/bulk-resend",
        json={"member_ids": [first.id, activated.id], "delivery_method": "sms"},
        headers=operator_headers,
    )

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["total_members"] == 2
    assert payload["success_count"] == 1
    assert payload["failure_count"] == 1
    assert payload["failed_members"][0]["member_id"] == "M002"


def test_bulk_resend_requires_ids(client, notifier, operator_headers):
    response = client.post(
        "/api/imports/members/bulk-resend",
        json={"member_ids": [], "delivery_method": "sms"},
        headers=operator_headers,
    )
    assert response.status_code == 400
    assert response.get_json()["error"] == "Member IDs array is required and must not be empty"


def test_activate_endpoint(client, record_factory, operator_headers):
    record, plaintext = record_factory("M001")
    expired, expired_plaintext = record_factory("M002", expires_in_hours=-1)

    wrong = client.post(
        f"/api/imports/members/{record.id}/activate",
        json={"temporary_password": "nope"},
        headers=operator_headers,
    )
    ok = client.post(
        f"/api/imports/members/{record.id}/activate",
        json={"temporary_password": plaintext},
        headers=operator_headers,
    )
    again = client.post(
        f"/api/imports/members/{record.id}/activate",
        json={"temporary_password": plaintext},
        headers=operator_headers,
    )
    gone = client.post(
        f"/api/imports/members/{expired.id}/activate",
        json={"temporary_password": expired_plaintext},
        headers=operator_headers,
    )

    assert wrong.status_code == 401
    assert ok.status_code == 200
    assert ok.get_json()["activation_status"] == "activated"
    assert again.status_code == 409
    assert gone.status_code == 410
    db.session.expire_all()
    assert db.session.get(MemberActivationRecord, expired.id).activation_status is ActivationStatus.TOKEN_EXPIRED


def test_expire_tokens_endpoint(client, record_factory, operator_headers):
    stale, _ = record_factory("M001", expires_in_hours=-3)
    record_factory("M002")

    response = client.post("/api/imports/maintenance/expire-tokens", headers=operator_headers)

    assert response.status_code == 200
    assert response.get_json() == {"expired": 1, "record_ids": [stale.id]}

from __future__ import annotations

import pytest
from sqlalchemy import select

from coop_app.importer.credentials import verify_credential
from coop_app.importer.errors import (
    AlreadyActivatedError,
    ChannelUnavailableError,
    InvalidResendRequestError,
    RecordNotFoundError,
)
from coop_app.importer.pipeline.resend import ResendCoordinator
from coop_app.models import ActivityAction, ActivityLog, db
from coop_app.models.importer.schema import ActivationStatus, DeliveryChannel, MemberActivationRecord


def _reload(record_id: int) -> MemberActivationRecord:
    db.session.expire_all()
    return db.session.get(MemberActivationRecord, record_id)


def test_resend_issues_new_credential(app, notifier, record_factory):
    record, old_plaintext = record_factory("M001", email="juan@example.com")
    job_counts_before = (record.import_job.sms_sent_count, record.import_job.email_sent_count)

    outcome = ResendCoordinator().resend(record.id, "email", actor="admin@svmpc.test")

    assert outcome.success is True
    assert outcome.channel is DeliveryChannel.EMAIL
    assert outcome.as_dict()["delivery_method"] == "email"
    reloaded = _reload(record.id)
    new_plaintext = notifier.last_credential_for("juan@example.com")
    assert new_plaintext != old_plaintext
    assert verify_credential(new_plaintext, reloaded.temporary_password_hash)
    assert not verify_credential(old_plaintext, reloaded.temporary_password_hash)
    assert reloaded.activation_method is DeliveryChannel.EMAIL
    assert reloaded.email_sent_at is not None
    assert reloaded.resend_count == 1
    assert reloaded.last_resend_at is not None
    # Resends never touch the import job's delivery counters.
    job = reloaded.import_job
    assert (job.sms_sent_count, job.email_sent_count) == job_counts_before


def test_resend_recovers_failed_record(app, notifier, record_factory):
    record, _ = record_factory("M001", status=ActivationStatus.SMS_FAILED)

    outcome = ResendCoordinator().resend(record.id, DeliveryChannel.SMS, actor="admin@svmpc.test")

    assert outcome.success is True
    assert outcome.activation_status == "pending_activation"
    assert _reload(record.id).activation_status is ActivationStatus.PENDING_ACTIVATION


def test_failed_resend_keeps_existing_credential(app, notifier, record_factory):
    record, old_plaintext = record_factory("M001", status=ActivationStatus.TOKEN_EXPIRED)
    notifier.failing_channels.add(DeliveryChannel.SMS)

    outcome = ResendCoordinator().resend(record.id, "sms", actor="admin@svmpc.test")

    assert outcome.success is False
    assert outcome.error == "Gateway rejected message"
    reloaded = _reload(record.id)
    assert reloaded.activation_status is ActivationStatus.TOKEN_EXPIRED
    assert verify_credential(old_plaintext, reloaded.temporary_password_hash)
    assert reloaded.last_delivery_error == "Gateway rejected message"
    assert reloaded.resend_count == 1


def test_resend_to_activated_member_is_rejected(app, notifier, record_factory):
    record, _ = record_factory("M001", status=ActivationStatus.ACTIVATED)

    with pytest.raises(AlreadyActivatedError):
        ResendCoordinator().resend(record.id, "sms", actor="admin@svmpc.test")

    reloaded = _reload(record.id)
    assert reloaded.activation_status is ActivationStatus.ACTIVATED
    assert reloaded.resend_count == 0
    assert notifier.sent == []


def test_resend_by_email_without_address(app, notifier, record_factory):
    record, _ = record_factory("M001")

    with pytest.raises(ChannelUnavailableError) as excinfo:
        ResendCoordinator().resend(record.id, "email", actor="admin@svmpc.test")
    assert excinfo.value.channel == "email"


def test_resend_unknown_record(app, notifier):
    with pytest.raises(RecordNotFoundError):
        ResendCoordinator().resend(999, "sms", actor="admin@svmpc.test")


@pytest.mark.parametrize("channel", ["fax", "", None])
def test_resend_rejects_unknown_channel(app, notifier, record_factory, channel):
    record, _ = record_factory("M001")
    with pytest.raises(InvalidResendRequestError):
        ResendCoordinator().resend(record.id, channel, actor="admin@svmpc.test")


def test_resend_writes_activity_entry(app, notifier, record_factory):
    record, _ = record_factory("M001")

    ResendCoordinator().resend(record.id, "sms", actor="clerk@svmpc.test")

    entry = db.session.execute(
        select(ActivityLog).where(ActivityLog.action == ActivityAction.RESEND_INVITATION)
    ).scalar_one()
    assert entry.actor == "clerk@svmpc.test"
    assert entry.details["member_id"] == "M001"
    assert entry.details["success"] is True


def test_bulk_resend_reports_every_failure(app, notifier, record_factory):
    ok_one, _ = record_factory("M001")
    ok_two, _ = record_factory("M002", status=ActivationStatus.SMS_FAILED)
    activated, _ = record_factory("M003", status=ActivationStatus.ACTIVATED)
    rejected, _ = record_factory("M004", phone_number="+63 917 000 0004")
    notifier.failing_destinations.add("+63 917 000 0004")

    summary = ResendCoordinator().bulk_resend(
        [ok_one.id, ok_two.id, activated.id, rejected.id, 9999],
        "sms",
        actor="admin@svmpc.test",
    )

    assert summary.total_members == 5
    assert summary.success_count == 2
    assert summary.failure_count == 3
    assert summary.success_count + summary.failure_count == summary.total_members
    failures = {entry["record_id"]: entry for entry in summary.failed_members}
    assert set(failures) == {activated.id, rejected.id, 9999}
    assert failures[activated.id]["member_id"] == "M003"
    assert failures[activated.id]["error"] == "Member has already activated their account"
    assert failures[rejected.id]["error"] == "Gateway rejected message"
    assert failures[9999]["member_id"] is None
    assert _reload(activated.id).activation_status is ActivationStatus.ACTIVATED


def test_bulk_resend_result_is_order_independent(app, notifier, record_factory):
    first, _ = record_factory("M001")
    second, _ = record_factory("M002", status=ActivationStatus.ACTIVATED)

    forward = ResendCoordinator().bulk_resend([first.id, second.id], "sms", actor="a")
    backward = ResendCoordinator().bulk_resend([second.id, first.id], "sms", actor="a")

    assert (forward.success_count, forward.failure_count) == (backward.success_count, backward.failure_count)
    assert [entry["member_id"] for entry in forward.failed_members] == ["M002"]
    assert [entry["member_id"] for entry in backward.failed_members] == ["M002"]


def test_bulk_resend_dedupes_and_flags_invalid_ids(app, notifier, record_factory):
    record, _ = record_factory("M001")

    summary = ResendCoordinator().bulk_resend([record.id, record.id, "abc"], "sms", actor="a")

    assert summary.total_members == 2
    assert summary.success_count == 1
    assert summary.failed_members == [{"record_id": "abc", "member_id": None, "error": "Invalid record id 'abc'"}]
    assert _reload(record.id).resend_count == 1


def test_bulk_resend_treats_string_and_integer_ids_as_one_record(app, notifier, record_factory):
    record, _ = record_factory("M001")

    summary = ResendCoordinator().bulk_resend([str(record.id), record.id, f" {record.id} "], "sms", actor="a")

    assert summary.total_members == 1
    assert summary.success_count == 1
    assert summary.failure_count == 0
    assert len(notifier.sent) == 1
    assert _reload(record.id).resend_count == 1


def test_bulk_resend_requires_ids(app, notifier):
    with pytest.raises(InvalidResendRequestError):
        ResendCoordinator().bulk_resend([], "sms", actor="a")


def test_bulk_resend_requires_valid_channel(app, notifier, record_factory):
    record, _ = record_factory("M001")
    with pytest.raises(InvalidResendRequestError):
        ResendCoordinator().bulk_resend([record.id], "carrier-pigeon", actor="a")


def test_bulk_resend_writes_summary_activity(app, notifier, record_factory):
    record, _ = record_factory("M001")

    ResendCoordinator().bulk_resend([record.id], "sms", actor="admin@svmpc.test")

    entry = db.session.execute(
        select(ActivityLog).where(ActivityLog.action == ActivityAction.BULK_RESEND_INVITATIONS)
    ).scalar_one()
    assert entry.details["success_count"] == 1
    assert entry.details["delivery_method"] == "sms"

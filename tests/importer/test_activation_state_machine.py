from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from coop_app.importer.credentials import issue_credential
from coop_app.importer.errors import (
    AlreadyActivatedError,
    InvalidCredentialError,
    InvalidStateError,
    RecordNotFoundError,
    TokenExpiredError,
)
from coop_app.importer.pipeline import activation
from coop_app.importer.pipeline.activation import ActivationService
from coop_app.models import ActivityAction, ActivityLog, db
from coop_app.models.importer.schema import ActivationStatus, DeliveryChannel, MemberActivationRecord

ALL_STATES = list(ActivationStatus)


@pytest.mark.parametrize("current", ALL_STATES)
@pytest.mark.parametrize("target", ALL_STATES)
def test_only_documented_transitions_are_allowed(current, target):
    allowed = {
        (ActivationStatus.PENDING_ACTIVATION, ActivationStatus.ACTIVATED),
        (ActivationStatus.PENDING_ACTIVATION, ActivationStatus.SMS_FAILED),
        (ActivationStatus.PENDING_ACTIVATION, ActivationStatus.EMAIL_FAILED),
        (ActivationStatus.PENDING_ACTIVATION, ActivationStatus.TOKEN_EXPIRED),
        (ActivationStatus.SMS_FAILED, ActivationStatus.PENDING_ACTIVATION),
        (ActivationStatus.EMAIL_FAILED, ActivationStatus.PENDING_ACTIVATION),
        (ActivationStatus.TOKEN_EXPIRED, ActivationStatus.PENDING_ACTIVATION),
    }
    assert activation.can_transition(current, target) is ((current, target) in allowed)


def test_transition_out_of_activated_raises_already_activated():
    record = MemberActivationRecord(member_id="M001", activation_status=ActivationStatus.ACTIVATED)
    with pytest.raises(AlreadyActivatedError):
        activation.transition(record, ActivationStatus.PENDING_ACTIVATION)
    assert record.activation_status is ActivationStatus.ACTIVATED


def test_transition_rejects_undocumented_edge():
    record = MemberActivationRecord(member_id="M001", activation_status=ActivationStatus.SMS_FAILED)
    with pytest.raises(InvalidStateError) as excinfo:
        activation.transition(record, ActivationStatus.EMAIL_FAILED)
    assert excinfo.value.status == "sms_failed"


def test_mark_delivered_recovers_failed_record_and_stores_new_credential():
    record = MemberActivationRecord(member_id="M001", activation_status=ActivationStatus.EMAIL_FAILED)
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    credential = issue_credential(hash_method="pbkdf2:sha256:1000", now=now)

    activation.mark_delivered(record, DeliveryChannel.EMAIL, now=now, credential=credential)

    assert record.activation_status is ActivationStatus.PENDING_ACTIVATION
    assert record.activation_method is DeliveryChannel.EMAIL
    assert record.email_sent_at == now
    assert record.temporary_password_hash == credential.password_hash
    assert record.temporary_password_expires_at == now + timedelta(hours=24)
    assert record.last_delivery_error is None


def test_mark_delivery_failed_only_moves_pending_records():
    pending = MemberActivationRecord(member_id="M001", activation_status=ActivationStatus.PENDING_ACTIVATION)
    expired = MemberActivationRecord(member_id="M002", activation_status=ActivationStatus.TOKEN_EXPIRED)

    activation.mark_delivery_failed(pending, DeliveryChannel.SMS, "timeout")
    activation.mark_delivery_failed(expired, DeliveryChannel.EMAIL, "mailbox full")

    assert pending.activation_status is ActivationStatus.SMS_FAILED
    assert expired.activation_status is ActivationStatus.TOKEN_EXPIRED
    assert expired.last_delivery_error == "mailbox full"


def test_activate_with_valid_credential(app, record_factory):
    record, plaintext = record_factory("M001")

    activated = ActivationService().activate("M001", plaintext, actor="portal")

    assert activated.id == record.id
    assert activated.activation_status is ActivationStatus.ACTIVATED
    assert activated.activated_at is not None
    assert activated.temporary_password_hash is None
    entry = db.session.execute(
        select(ActivityLog).where(ActivityLog.action == ActivityAction.MEMBER_ACTIVATED)
    ).scalar_one()
    assert entry.actor == "portal"


def test_activate_with_wrong_password_leaves_record_pending(app, record_factory):
    record, _ = record_factory("M001")

    with pytest.raises(InvalidCredentialError):
        ActivationService().activate("M001", "not-the-password")

    db.session.refresh(record)
    assert record.activation_status is ActivationStatus.PENDING_ACTIVATION


def test_activate_with_expired_credential_moves_to_token_expired(app, record_factory):
    record, plaintext = record_factory("M001", expires_in_hours=-1)

    with pytest.raises(TokenExpiredError):
        ActivationService().activate("M001", plaintext)

    db.session.refresh(record)
    assert record.activation_status is ActivationStatus.TOKEN_EXPIRED


def test_activate_twice_raises_already_activated(app, record_factory):
    _, plaintext = record_factory("M001")
    service = ActivationService()
    service.activate("M001", plaintext)

    with pytest.raises(AlreadyActivatedError):
        service.activate("M001", plaintext)


def test_activate_requires_pending_record(app, record_factory):
    record_factory("M001", status=ActivationStatus.SMS_FAILED)

    with pytest.raises(InvalidStateError) as excinfo:
        ActivationService().activate("M001", "anything")
    assert not isinstance(excinfo.value, AlreadyActivatedError)


def test_activate_unknown_member(app):
    with pytest.raises(RecordNotFoundError):
        ActivationService().activate("M404", "anything")


def test_expire_stale_only_touches_elapsed_pending_records(app, record_factory):
    stale, _ = record_factory("M001", expires_in_hours=-2)
    fresh, _ = record_factory("M002", expires_in_hours=5)
    failed, _ = record_factory("M003", expires_in_hours=-2, status=ActivationStatus.SMS_FAILED)

    result = ActivationService().expire_stale()

    assert result.expired == 1
    assert result.record_ids == (stale.id,)
    db.session.expire_all()
    assert db.session.get(MemberActivationRecord, stale.id).activation_status is ActivationStatus.TOKEN_EXPIRED
    assert db.session.get(MemberActivationRecord, fresh.id).activation_status is ActivationStatus.PENDING_ACTIVATION
    assert db.session.get(MemberActivationRecord, failed.id).activation_status is ActivationStatus.SMS_FAILED
    entry = db.session.execute(
        select(ActivityLog).where(ActivityLog.action == ActivityAction.TOKENS_EXPIRED)
    ).scalar_one()
    assert entry.details == {"record_ids": [stale.id]}


def test_expire_stale_with_nothing_to_do(app, record_factory):
    record_factory("M001")
    result = ActivationService().expire_stale()
    assert result.expired == 0
    assert db.session.execute(select(ActivityLog)).first() is None

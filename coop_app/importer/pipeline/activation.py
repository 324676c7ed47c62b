"""
Activation lifecycle for imported members.

``pending_activation`` is the initial state and ``activated`` is absorbing.
Delivery failures park a record in ``sms_failed``/``email_failed``, elapsed
credentials in ``token_expired``; a successful resend brings any of those back
to ``pending_activation``. Every state change goes through ``transition`` so
the allowed edges are enforced in one place.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Mapping

from flask import current_app
from sqlalchemy import select
from sqlalchemy.orm import Session

from config.monitoring import ImportMonitoring
from coop_app.importer.credentials import IssuedCredential, verify_credential
from coop_app.importer.errors import (
    AlreadyActivatedError,
    InvalidCredentialError,
    InvalidStateError,
    RecordNotFoundError,
    TokenExpiredError,
)
from coop_app.models import ActivityAction, ActivityLog, db
from coop_app.models.base import as_utc, utc_now
from coop_app.models.importer.schema import ActivationStatus, DeliveryChannel, MemberActivationRecord

_RECOVERABLE = frozenset(
    {ActivationStatus.SMS_FAILED, ActivationStatus.EMAIL_FAILED, ActivationStatus.TOKEN_EXPIRED}
)

ALLOWED_TRANSITIONS: Mapping[ActivationStatus, frozenset[ActivationStatus]] = {
    ActivationStatus.PENDING_ACTIVATION: frozenset(
        {
            ActivationStatus.ACTIVATED,
            ActivationStatus.SMS_FAILED,
            ActivationStatus.EMAIL_FAILED,
            ActivationStatus.TOKEN_EXPIRED,
        }
    ),
    ActivationStatus.SMS_FAILED: frozenset({ActivationStatus.PENDING_ACTIVATION}),
    ActivationStatus.EMAIL_FAILED: frozenset({ActivationStatus.PENDING_ACTIVATION}),
    ActivationStatus.TOKEN_EXPIRED: frozenset({ActivationStatus.PENDING_ACTIVATION}),
    ActivationStatus.ACTIVATED: frozenset(),
}


def can_transition(current: ActivationStatus, target: ActivationStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def transition(record: MemberActivationRecord, target: ActivationStatus) -> MemberActivationRecord:
    current = record.activation_status
    if current is ActivationStatus.ACTIVATED:
        raise AlreadyActivatedError(record.id)
    if not can_transition(current, target):
        raise InvalidStateError(
            f"Cannot move member from {current.value} to {target.value}.",
            record_id=record.id,
            status=current.value,
        )
    record.activation_status = target
    return record


def is_credential_expired(record: MemberActivationRecord, now: datetime | None = None) -> bool:
    expires_at = as_utc(record.temporary_password_expires_at)
    if expires_at is None:
        return False
    return expires_at <= (now or utc_now())


def ensure_resendable(record: MemberActivationRecord) -> None:
    if record.activation_status is ActivationStatus.ACTIVATED:
        raise AlreadyActivatedError(record.id)


def mark_delivered(
    record: MemberActivationRecord,
    channel: DeliveryChannel,
    *,
    now: datetime | None = None,
    credential: IssuedCredential | None = None,
) -> MemberActivationRecord:
    """
    Apply a successful delivery.

    ``credential`` is the password the delivery carried; it replaces the
    stored hash and refreshes the expiry.
    """
    ensure_resendable(record)
    now = now or utc_now()
    if record.activation_status in _RECOVERABLE:
        transition(record, ActivationStatus.PENDING_ACTIVATION)
    if credential is not None:
        record.temporary_password_hash = credential.password_hash
        record.temporary_password_expires_at = credential.expires_at
    record.activation_method = channel
    if channel is DeliveryChannel.SMS:
        record.sms_sent_at = now
        record.sms_retry_count = 0
        record.sms_last_retry_at = None
    else:
        record.email_sent_at = now
        record.email_retry_count = 0
        record.email_last_retry_at = None
    record.last_delivery_error = None
    return record


def mark_delivery_failed(
    record: MemberActivationRecord,
    channel: DeliveryChannel,
    error: str | None,
) -> MemberActivationRecord:
    """
    Apply a failed delivery.

    Only a pending record changes state; a record that had already failed or
    expired stays where it was, keeping its existing credential.
    """
    ensure_resendable(record)
    if record.activation_status is ActivationStatus.PENDING_ACTIVATION:
        transition(record, channel.failed_status)
    record.last_delivery_error = error
    return record


def note_retry(
    record: MemberActivationRecord,
    channel: DeliveryChannel,
    error: str | None,
    *,
    now: datetime | None = None,
) -> MemberActivationRecord:
    """Count a failed attempt that will be retried; the state is left untouched."""
    ensure_resendable(record)
    now = now or utc_now()
    if channel is DeliveryChannel.SMS:
        record.sms_retry_count = (record.sms_retry_count or 0) + 1
        record.sms_last_retry_at = now
    else:
        record.email_retry_count = (record.email_retry_count or 0) + 1
        record.email_last_retry_at = now
    record.last_delivery_error = error
    return record


def expire(record: MemberActivationRecord) -> MemberActivationRecord:
    return transition(record, ActivationStatus.TOKEN_EXPIRED)


def activate(record: MemberActivationRecord, *, now: datetime | None = None) -> MemberActivationRecord:
    transition(record, ActivationStatus.ACTIVATED)
    record.activated_at = now or utc_now()
    record.temporary_password_hash = None
    return record


@dataclass(frozen=True)
class ExpirySweepResult:
    expired: int
    record_ids: tuple[int, ...]


class ActivationService:
    """Applies external activation events and time-based expiry to records."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def activate(
        self,
        member_id: str,
        temporary_password: str,
        *,
        actor: str | None = None,
        now: datetime | None = None,
    ) -> MemberActivationRecord:
        """
        Verify a member's temporary password and mark them activated.

        An elapsed credential moves the record to ``token_expired`` (committed)
        before ``TokenExpiredError`` is raised.
        """
        now = now or utc_now()
        record = self.session.execute(
            select(MemberActivationRecord).where(MemberActivationRecord.member_id == (member_id or "").strip())
        ).scalar_one_or_none()
        if record is None:
            ImportMonitoring.record_activation(outcome="not_found")
            raise RecordNotFoundError("Member", member_id)

        if record.activation_status is ActivationStatus.ACTIVATED:
            ImportMonitoring.record_activation(outcome="already_activated")
            raise AlreadyActivatedError(record.id)

        if record.activation_status is not ActivationStatus.PENDING_ACTIVATION:
            ImportMonitoring.record_activation(outcome="invalid_state")
            raise InvalidStateError(
                "Member has no active temporary password; request a new invitation.",
                record_id=record.id,
                status=record.activation_status.value,
            )

        if is_credential_expired(record, now):
            expire(record)
            self.session.commit()
            ImportMonitoring.record_activation(outcome="expired")
            current_app.logger.info(
                "Activation attempted with expired credential",
                extra={"importer_record_id": record.id, "importer_member_id": record.member_id},
            )
            raise TokenExpiredError(record.id)

        if not verify_credential(temporary_password, record.temporary_password_hash):
            ImportMonitoring.record_activation(outcome="invalid_credential")
            raise InvalidCredentialError()

        activate(record, now=now)
        ActivityLog.log_action(
            actor or record.member_id,
            ActivityAction.MEMBER_ACTIVATED,
            f"Member {record.member_id} activated their account",
            {"record_id": record.id, "import_job_id": record.import_job_id},
            session=self.session,
        )
        self.session.commit()
        ImportMonitoring.record_activation(outcome="activated")
        current_app.logger.info(
            "Member activated",
            extra={"importer_record_id": record.id, "importer_member_id": record.member_id},
        )
        return record

    def expire_stale(self, now: datetime | None = None, *, actor: str = "system") -> ExpirySweepResult:
        """Move every pending record whose credential has elapsed to ``token_expired``."""
        now = now or utc_now()
        stale = (
            self.session.execute(
                select(MemberActivationRecord).where(
                    MemberActivationRecord.activation_status == ActivationStatus.PENDING_ACTIVATION,
                    MemberActivationRecord.temporary_password_expires_at.is_not(None),
                    MemberActivationRecord.temporary_password_expires_at <= now,
                )
            )
            .scalars()
            .all()
        )
        for record in stale:
            expire(record)
        record_ids = tuple(record.id for record in stale)
        if record_ids:
            ActivityLog.log_action(
                actor,
                ActivityAction.TOKENS_EXPIRED,
                f"Expired {len(record_ids)} temporary password(s)",
                {"record_ids": list(record_ids)},
                session=self.session,
            )
        self.session.commit()
        current_app.logger.info(
            "Expiry sweep finished",
            extra={"importer_expired_count": len(record_ids)},
        )
        return ExpirySweepResult(expired=len(record_ids), record_ids=record_ids)

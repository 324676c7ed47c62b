"""
Single and bulk credential resends.

A resend issues a fresh temporary password and delivers it synchronously. It
only replaces the stored credential when delivery succeeds, so a failed resend
never invalidates a password the member may already hold. Bulk resend is
best-effort: each record gets its own transaction and the caller receives a
ledger of what succeeded and what did not.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config.monitoring import ImportMonitoring
from coop_app.importer.credentials import issue_credential_from_config
from coop_app.importer.errors import (
    ImporterError,
    InvalidResendRequestError,
    RecordNotFoundError,
)
from coop_app.importer.pipeline.notifications import NotificationDispatcher
from coop_app.models import ActivityAction, ActivityLog, db
from coop_app.models.base import utc_now
from coop_app.models.importer.schema import DeliveryChannel, MemberActivationRecord


@dataclass(frozen=True)
class ResendOutcome:
    record_id: int
    member_id: str
    channel: DeliveryChannel
    success: bool
    activation_status: str
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "member_id": self.member_id,
            "delivery_method": self.channel.value,
            "success": self.success,
            "activation_status": self.activation_status,
            "error": self.error,
        }


@dataclass
class BulkResendSummary:
    total_members: int = 0
    success_count: int = 0
    failure_count: int = 0
    failed_members: list[dict[str, Any]] = field(default_factory=list)

    def record_success(self) -> None:
        self.success_count += 1

    def record_failure(self, *, record_id: Any, member_id: str | None, error: str) -> None:
        self.failure_count += 1
        self.failed_members.append({"record_id": record_id, "member_id": member_id, "error": error})

    def as_dict(self) -> dict[str, Any]:
        return {
            "total_members": self.total_members,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "failed_members": list(self.failed_members),
        }


def coerce_channel(channel: DeliveryChannel | str | None) -> DeliveryChannel:
    try:
        return DeliveryChannel.coerce(channel)
    except ValueError:
        raise InvalidResendRequestError("Invalid delivery method. Must be 'sms' or 'email'") from None


def _coerce_record_id(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _dedupe_record_ids(values: Iterable[Any] | None) -> list[tuple[Any, int | None]]:
    """
    Pair each requested value with its record id, keeping first occurrences.

    Ids are compared after coercion so ``"7"`` and ``7`` name one record;
    values that are not ids are compared as given.
    """
    seen: list[tuple[str, Any]] = []
    requested: list[tuple[Any, int | None]] = []
    for value in values or ():
        record_id = _coerce_record_id(value)
        key = ("id", record_id) if record_id is not None else ("raw", value)
        if key in seen:
            continue
        seen.append(key)
        requested.append((value, record_id))
    return requested


class ResendCoordinator:
    """Resend activation credentials to one or many imported members."""

    def __init__(self, session: Session | None = None, dispatcher: NotificationDispatcher | None = None) -> None:
        self.session: Session = session or db.session
        self.dispatcher = dispatcher or NotificationDispatcher(self.session)

    def resend(self, record_id: int, channel: DeliveryChannel | str, *, actor: str) -> ResendOutcome:
        """
        Resend a credential to one member.

        Raises ``RecordNotFoundError``, ``AlreadyActivatedError`` or
        ``ChannelUnavailableError``; a delivery failure is reported in the
        outcome, not raised.
        """
        delivery_channel = coerce_channel(channel)
        outcome = self._resend_one(record_id, delivery_channel, actor=actor)
        ImportMonitoring.record_resend(mode="single", success=outcome.success)
        return outcome

    def bulk_resend(
        self,
        record_ids: Iterable[Any],
        channel: DeliveryChannel | str,
        *,
        actor: str,
    ) -> BulkResendSummary:
        """Resend to every id independently and return the success/failure ledger."""
        delivery_channel = coerce_channel(channel)
        requested = _dedupe_record_ids(record_ids)
        if not requested:
            raise InvalidResendRequestError("Member IDs array is required and must not be empty")

        summary = BulkResendSummary(total_members=len(requested))
        for raw_id, record_id in requested:
            if record_id is None:
                summary.record_failure(record_id=raw_id, member_id=None, error=f"Invalid record id '{raw_id}'")
                ImportMonitoring.record_resend(mode="bulk", success=False)
                continue
            try:
                outcome = self._resend_one(record_id, delivery_channel, actor=actor)
            except ImporterError as exc:
                member_id = self._member_id_for(record_id)
                summary.record_failure(record_id=record_id, member_id=member_id, error=exc.message)
                ImportMonitoring.record_resend(mode="bulk", success=False)
                continue
            except SQLAlchemyError as exc:
                self.session.rollback()
                current_app.logger.exception(
                    "Bulk resend failed to persist record",
                    extra={"importer_record_id": record_id},
                )
                summary.record_failure(
                    record_id=record_id, member_id=self._member_id_for(record_id), error=f"Storage error: {exc}"
                )
                ImportMonitoring.record_resend(mode="bulk", success=False)
                continue

            ImportMonitoring.record_resend(mode="bulk", success=outcome.success)
            if outcome.success:
                summary.record_success()
            else:
                summary.record_failure(
                    record_id=record_id,
                    member_id=outcome.member_id,
                    error=outcome.error or "Delivery failed",
                )

        self._log_bulk_summary(summary, delivery_channel, actor)
        return summary

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _member_id_for(self, record_id: int) -> str | None:
        record = self.session.get(MemberActivationRecord, record_id)
        return record.member_id if record else None

    def _resend_one(self, record_id: int, channel: DeliveryChannel, *, actor: str) -> ResendOutcome:
        record = self.session.get(MemberActivationRecord, record_id)
        if record is None:
            raise RecordNotFoundError("Member", record_id)

        credential = issue_credential_from_config(current_app.config)
        outcome = self.dispatcher.deliver(record, channel, credential, count_towards_job=False)
        record.resend_count = (record.resend_count or 0) + 1
        record.last_resend_at = utc_now()
        ActivityLog.log_action(
            actor,
            ActivityAction.RESEND_INVITATION,
            f"Resent invitation to member {record.member_id} via {channel.value}",
            {
                "record_id": record.id,
                "member_id": record.member_id,
                "delivery_method": channel.value,
                "success": outcome.success,
                "error": outcome.error,
            },
            session=self.session,
        )
        try:
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise

        return ResendOutcome(
            record_id=record.id,
            member_id=record.member_id,
            channel=channel,
            success=outcome.success,
            activation_status=record.activation_status.value,
            error=outcome.error,
        )

    def _log_bulk_summary(self, summary: BulkResendSummary, channel: DeliveryChannel, actor: str) -> None:
        ActivityLog.log_action(
            actor,
            ActivityAction.BULK_RESEND_INVITATIONS,
            f"Bulk resend via {channel.value}: {summary.success_count} succeeded, {summary.failure_count} failed",
            {"delivery_method": channel.value, **summary.as_dict()},
            session=self.session,
        )
        try:
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            current_app.logger.exception("Unable to record bulk resend summary")
        current_app.logger.info(
            "Bulk resend finished",
            extra={
                "importer_resend_total": summary.total_members,
                "importer_resend_success": summary.success_count,
                "importer_resend_failure": summary.failure_count,
            },
        )

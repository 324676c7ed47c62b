"""
Notification dispatcher.

Delivers one activation credential through the configured notifier, applies
the outcome to the record's lifecycle and, for the initial delivery of an
import, bumps the job's per-channel counters with atomic SQL increments.
A failed initial attempt that will be retried only touches the record's
retry counters; the job counters move once the delivery is resolved.
"""

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app
from sqlalchemy import update
from sqlalchemy.orm import Session

from config.monitoring import ImportMonitoring
from coop_app.importer.credentials import IssuedCredential, issue_credential_from_config
from coop_app.importer.errors import ChannelUnavailableError
from coop_app.importer.notifiers import DeliveryResult, MessageContext, Notifier, get_notifier
from coop_app.importer.pipeline import activation
from coop_app.models import db
from coop_app.models.base import utc_now
from coop_app.models.importer.schema import DeliveryChannel, ImportJob, MemberActivationRecord

_JOB_COUNTERS = {
    (DeliveryChannel.SMS, True): ImportJob.sms_sent_count,
    (DeliveryChannel.SMS, False): ImportJob.sms_failed_count,
    (DeliveryChannel.EMAIL, True): ImportJob.email_sent_count,
    (DeliveryChannel.EMAIL, False): ImportJob.email_failed_count,
}


@dataclass(frozen=True)
class DispatchOutcome:
    record_id: int
    channel: DeliveryChannel
    success: bool
    error: str | None = None
    retrying: bool = False

    def as_dict(self) -> dict:
        return {
            "record_id": self.record_id,
            "channel": self.channel.value,
            "success": self.success,
            "error": self.error,
            "retrying": self.retrying,
        }


def increment_job_counter(session: Session, job_id: int, channel: DeliveryChannel, success: bool) -> None:
    column = _JOB_COUNTERS[(channel, success)]
    session.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id)
        .values({column.key: column + 1})
        .execution_options(synchronize_session=False)
    )


class NotificationDispatcher:
    """
    Sends credentials and records the outcome.

    The dispatcher never commits; callers own the transaction so the state
    change and the counter update land together.
    """

    def __init__(self, session: Session | None = None, notifier: Notifier | None = None) -> None:
        self.session: Session = session or db.session
        self._notifier = notifier

    @property
    def notifier(self) -> Notifier:
        if self._notifier is None:
            self._notifier = get_notifier()
        return self._notifier

    def _send(self, record: MemberActivationRecord, channel: DeliveryChannel, destination: str, plaintext: str):
        context = MessageContext.from_config(current_app.config, recipient_name=record.name)
        try:
            return self.notifier.send(channel, destination, plaintext, context=context)
        except Exception as exc:  # notifier is a black box; any raise is a failed delivery
            current_app.logger.exception(
                "Notifier raised during delivery",
                extra={"importer_record_id": record.id, "notifier_channel": channel.value},
            )
            return DeliveryResult.failed(str(exc) or exc.__class__.__name__)

    def deliver(
        self,
        record: MemberActivationRecord,
        channel: DeliveryChannel,
        credential: IssuedCredential,
        *,
        count_towards_job: bool,
        final_attempt: bool = True,
    ) -> DispatchOutcome:
        """
        Deliver ``credential`` to the record's destination for ``channel``.

        The credential is only stored when delivery succeeds. A failure with
        ``final_attempt`` unset is counted as a retry and leaves the state and
        the job counters alone.
        """
        activation.ensure_resendable(record)
        destination = record.destination_for(channel)
        if not destination:
            raise ChannelUnavailableError(channel.value, record_id=record.id)

        result = self._send(record, channel, destination, credential.plaintext)
        retrying = not result.success and not final_attempt
        if result.success:
            activation.mark_delivered(record, channel, now=utc_now(), credential=credential)
        elif retrying:
            activation.note_retry(record, channel, result.error)
        else:
            activation.mark_delivery_failed(record, channel, result.error)

        if count_towards_job and not retrying:
            increment_job_counter(self.session, record.import_job_id, channel, result.success)

        ImportMonitoring.record_delivery(channel=channel.value, success=result.success)
        current_app.logger.info(
            "Activation credential delivery %s",
            "succeeded" if result.success else ("will be retried" if retrying else "failed"),
            extra={
                "importer_record_id": record.id,
                "importer_job_id": record.import_job_id,
                "notifier_channel": channel.value,
                "notifier_error": result.error,
            },
        )
        return DispatchOutcome(
            record_id=record.id,
            channel=channel,
            success=result.success,
            error=result.error,
            retrying=retrying,
        )

    def deliver_initial(
        self,
        record: MemberActivationRecord,
        channel: DeliveryChannel,
        *,
        final_attempt: bool = True,
    ) -> DispatchOutcome | None:
        """
        First delivery for a freshly imported record.

        The credential is issued here, never at commit time. Returns ``None``
        when ``channel`` already delivered a credential to this record, so a
        redelivered task neither sends twice nor counts twice.
        """
        if record.sent_at_for(channel) is not None:
            return None
        credential = issue_credential_from_config(current_app.config)
        return self.deliver(record, channel, credential, count_towards_job=True, final_attempt=final_attempt)

    def record_dispatch_failure(self, record: MemberActivationRecord, channel: DeliveryChannel, error: str) -> None:
        """Apply a delivery that never reached the notifier (e.g. the task could not be queued)."""
        activation.mark_delivery_failed(record, channel, error)
        increment_job_counter(self.session, record.import_job_id, channel, False)
        ImportMonitoring.record_delivery(channel=channel.value, success=False)

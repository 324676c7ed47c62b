"""
Importer Celery tasks.

Credential issuing and delivery run here so a commit response never waits on
password hashing or on SMS and email transports. The periodic expiry sweep
and the worker heartbeat live alongside them.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from celery.utils.time import get_exponential_backoff_interval
from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from coop_app.importer.pipeline.activation import ActivationService
from coop_app.importer.pipeline.notifications import NotificationDispatcher
from coop_app.models.base import db
from coop_app.models.importer.schema import ActivationStatus, DeliveryChannel, MemberActivationRecord

DEFAULT_MAX_RETRIES = 3


@shared_task(name="importer.healthcheck", bind=True)
def importer_healthcheck(self) -> dict[str, Any]:
    """
    Simple heartbeat task used by worker health checks.
    """
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
        "app_version": current_app.config.get("APP_VERSION"),
    }


def _retry_settings(config) -> tuple[int, int, int]:
    """``(max_retries, backoff_factor, backoff_max)`` from ``NOTIFICATION_*`` settings."""
    return (
        max(int(config.get("NOTIFICATION_MAX_RETRIES", DEFAULT_MAX_RETRIES)), 0),
        max(int(config.get("NOTIFICATION_RETRY_BACKOFF_SECONDS", 1)), 1),
        max(int(config.get("NOTIFICATION_RETRY_BACKOFF_MAX_SECONDS", 60)), 1),
    )


@shared_task(name="importer.activation.deliver_credential", bind=True, max_retries=DEFAULT_MAX_RETRIES)
def deliver_activation_credential(self, *, record_id: int, channel: str) -> dict[str, Any]:
    """
    Issue and deliver the initial activation credential for one imported
    member, then update the owning job's delivery counters.

    A failed send is retried with exponential backoff; the record only moves
    to ``sms_failed``/``email_failed`` once the retries are used up.
    """
    record = db.session.get(MemberActivationRecord, record_id)
    if record is None:
        raise ValueError(f"Member activation record {record_id} not found.")

    delivery_channel = DeliveryChannel.coerce(channel)
    if record.activation_status is not ActivationStatus.PENDING_ACTIVATION:
        current_app.logger.info(
            "Skipping credential delivery; record is no longer pending",
            extra={"importer_record_id": record_id, "importer_status": record.activation_status.value},
        )
        return {"record_id": record_id, "status": "skipped", "activation_status": record.activation_status.value}

    max_retries, backoff_factor, backoff_max = _retry_settings(current_app.config)
    attempt = self.request.retries or 0
    try:
        outcome = NotificationDispatcher().deliver_initial(
            record,
            delivery_channel,
            final_attempt=attempt >= max_retries,
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception(
            "Failed to record credential delivery",
            extra={"importer_record_id": record_id, "notifier_channel": delivery_channel.value},
        )
        raise

    if outcome is None:
        current_app.logger.info(
            "Skipping credential delivery; already delivered",
            extra={"importer_record_id": record_id, "notifier_channel": delivery_channel.value},
        )
        return {
            "record_id": record_id,
            "status": "skipped",
            "reason": "already_delivered",
            "activation_status": record.activation_status.value,
        }

    if outcome.retrying:
        countdown = get_exponential_backoff_interval(backoff_factor, attempt, backoff_max)
        current_app.logger.warning(
            "Credential delivery failed; retrying",
            extra={
                "importer_record_id": record_id,
                "notifier_channel": delivery_channel.value,
                "notifier_error": outcome.error,
                "importer_retry": attempt + 1,
                "importer_retry_countdown": countdown,
            },
        )
        raise self.retry(countdown=countdown, max_retries=max_retries)

    return {
        "record_id": record_id,
        "status": "sent" if outcome.success else "failed",
        "channel": delivery_channel.value,
        "error": outcome.error,
        "retries": attempt,
        "task_id": self.request.id,
    }


@shared_task(name="importer.activation.expire_stale_tokens", bind=True)
def expire_stale_tokens(self) -> dict[str, Any]:
    """Periodic sweep moving elapsed pending credentials to ``token_expired``."""
    try:
        result = ActivationService().expire_stale()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Expiry sweep failed")
        raise
    return {"expired": result.expired, "record_ids": list(result.record_ids)}

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from io import BytesIO

import pytest

from coop_app.importer.adapters import parse
from coop_app.importer.credentials import issue_credential
from coop_app.importer.notifiers import DeliveryResult, Notifier, set_notifier
from coop_app.importer.pipeline.validation import normalize_email, normalize_phone
from coop_app.models import db
from coop_app.models.importer.schema import (
    ActivationStatus,
    DeliveryChannel,
    ImportJob,
    ImportJobStatus,
    MemberActivationRecord,
)

OPERATOR_HEADERS = {"X-Operator-Id": "admin@svmpc.test"}

CLEAN_CSV = (
    "member_id,name,phone_number,email\n"
    "M001,Juan Dela Cruz,+63 917 555 0101,juan@example.com\n"
    "M002,Maria Santos,+63 917 555 0102,maria@example.com\n"
    "M003,Pedro Reyes,+63 917 555 0103,\n"
)


@dataclass(frozen=True)
class SentMessage:
    channel: DeliveryChannel
    destination: str
    credential: str


class RecordingNotifier(Notifier):
    """Captures every send; destinations or channels can be told to fail."""

    channels = (DeliveryChannel.SMS, DeliveryChannel.EMAIL)

    def __init__(self) -> None:
        self.sent: list[SentMessage] = []
        self.failing_channels: set[DeliveryChannel] = set()
        self.failing_destinations: set[str] = set()

    def send(self, channel, destination, credential, *, context=None):
        self.sent.append(SentMessage(channel, destination, credential))
        if channel in self.failing_channels or destination in self.failing_destinations:
            return DeliveryResult.failed("Gateway rejected message")
        return DeliveryResult.ok(provider_reference=f"msg-{len(self.sent)}")

    def last_credential_for(self, destination: str) -> str | None:
        for message in reversed(self.sent):
            if message.destination == destination:
                return message.credential
        return None


@pytest.fixture
def operator_headers():
    return dict(OPERATOR_HEADERS)


@pytest.fixture
def clean_csv():
    return CLEAN_CSV


@pytest.fixture
def notifier(app):
    recording = RecordingNotifier()
    set_notifier(app, recording)
    return recording


@pytest.fixture
def make_table():
    def _make(content: str = CLEAN_CSV):
        return parse(content)

    return _make


@pytest.fixture
def csv_upload():
    """Build the ``data`` payload for a multipart upload."""

    def _upload(content: str = CLEAN_CSV, file_name: str = "members.csv") -> dict:
        return {"file": (BytesIO(content.encode("utf-8")), file_name)}

    return _upload


@pytest.fixture
def job_factory(app):
    def _factory(*, initiated_by: str = "admin@svmpc.test", source_file_name: str = "members.csv", **overrides):
        job = ImportJob(
            initiated_by=initiated_by,
            source_file_name=source_file_name,
            status=overrides.pop("status", ImportJobStatus.COMPLETED),
            total_rows=overrides.pop("total_rows", 0),
            successful_imports=overrides.pop("successful_imports", 0),
            failed_imports=overrides.pop("failed_imports", 0),
            skipped_rows=overrides.pop("skipped_rows", 0),
            finished_at=overrides.pop("finished_at", datetime.now(timezone.utc)),
            **overrides,
        )
        db.session.add(job)
        db.session.commit()
        return job

    return _factory


@pytest.fixture
def record_factory(app, job_factory):
    """
    Persist a member record with a known temporary password.

    Returns ``(record, plaintext)``.
    """

    def _factory(
        member_id: str,
        *,
        name: str | None = None,
        phone_number: str | None = None,
        email: str | None = None,
        status: ActivationStatus = ActivationStatus.PENDING_ACTIVATION,
        job: ImportJob | None = None,
        expires_in_hours: float = 24,
    ):
        if job is None:
            job = job_factory(total_rows=1, successful_imports=1)
        suffix = "".join(ch for ch in member_id if ch.isdigit()).zfill(4)[-4:]
        phone_number = phone_number or f"+63 917 555 {suffix}"
        now = datetime.now(timezone.utc)
        credential = issue_credential(hash_method="pbkdf2:sha256:1000", now=now)
        record = MemberActivationRecord(
            import_job_id=job.id,
            member_id=member_id,
            name=name or f"Member {member_id}",
            phone_number=phone_number,
            phone_normalized=normalize_phone(phone_number),
            email=email,
            email_normalized=normalize_email(email) or None,
            activation_status=status,
            temporary_password_hash=credential.password_hash,
            temporary_password_expires_at=now + timedelta(hours=expires_in_hours),
        )
        db.session.add(record)
        db.session.commit()
        return record, credential.plaintext

    return _factory

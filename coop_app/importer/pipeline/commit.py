"""
Import commit service.

Turns a validated ``RawTable`` into one ``ImportJob`` plus a
``MemberActivationRecord`` per accepted row, then hands every new record to the
notification dispatcher. Rows that collide with already committed members are
skipped and rows without any usable delivery channel fail; both are kept as
``ImportJobIssue`` entries so the job explains its own counters.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from config.monitoring import ImportMonitoring
from coop_app.importer.adapters import RawTable
from coop_app.importer.errors import ImportValidationError, StorageFailureError
from coop_app.importer.pipeline.validation import (
    ValidationPatterns,
    is_valid_email,
    is_valid_phone,
    normalize_email,
    normalize_member_id,
    normalize_phone,
    validate,
)
from coop_app.models import ActivityAction, ActivityLog, db
from coop_app.models.base import utc_now
from coop_app.models.importer.schema import (
    ActivationStatus,
    DeliveryChannel,
    ImportIssueCode,
    ImportJob,
    ImportJobIssue,
    ImportJobStatus,
    MemberActivationRecord,
)

DELIVER_TASK_NAME = "importer.activation.deliver_credential"
_LOOKUP_CHUNK_SIZE = 500


@dataclass(frozen=True)
class CommitMetadata:
    """Who is importing what."""

    initiated_by: str
    source_file_name: str

    def __post_init__(self) -> None:
        if not (self.initiated_by or "").strip():
            raise ValueError("initiated_by is required to commit an import.")
        if not (self.source_file_name or "").strip():
            raise ValueError("source_file_name is required to commit an import.")


@dataclass(frozen=True)
class PlannedRecord:
    row_number: int
    member_id: str
    name: str
    phone_number: str
    phone_normalized: str
    email: str | None
    email_normalized: str | None
    channel: DeliveryChannel


@dataclass(frozen=True)
class PlannedIssue:
    row_number: int
    member_id: str | None
    code: ImportIssueCode
    message: str


@dataclass
class CommitPlan:
    total_rows: int
    accepted: list[PlannedRecord] = field(default_factory=list)
    issues: list[PlannedIssue] = field(default_factory=list)

    @property
    def skipped(self) -> int:
        return sum(1 for issue in self.issues if issue.code.is_skip)

    @property
    def failed(self) -> int:
        return sum(1 for issue in self.issues if not issue.code.is_skip)


@dataclass(frozen=True)
class _PendingDelivery:
    record_id: int
    channel: DeliveryChannel


@dataclass
class _Snapshot:
    member_ids: set[str] = field(default_factory=set)
    phones: set[str] = field(default_factory=set)
    emails: set[str] = field(default_factory=set)


def _chunks(values: Sequence[str], size: int) -> Iterable[Sequence[str]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


def choose_channel(phone: str, email: str, patterns: ValidationPatterns) -> DeliveryChannel | None:
    """SMS when the phone is usable, else email when the address is usable."""
    if is_valid_phone(phone, patterns):
        return DeliveryChannel.SMS
    if is_valid_email(email, patterns):
        return DeliveryChannel.EMAIL
    return None


class ImportCommitService:
    """Persist a validated upload and trigger credential delivery."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        patterns: ValidationPatterns | None = None,
        max_attempts: int | None = None,
    ) -> None:
        self.session: Session = session or db.session
        config = current_app.config
        self.patterns = patterns or ValidationPatterns.from_config(config)
        self.max_attempts = max(int(max_attempts or config.get("IMPORT_COMMIT_MAX_ATTEMPTS", 3)), 1)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def commit(self, table: RawTable, metadata: CommitMetadata) -> ImportJob:
        """
        Persist ``table`` as a new import job.

        Raises ``ImportValidationError`` when the table does not validate and
        ``StorageFailureError`` when the write fails for any reason other than a
        concurrent duplicate (those are re-planned as skips).
        """
        errors = validate(table, patterns=self.patterns)
        if errors:
            ImportMonitoring.record_validation(clean=False)
            raise ImportValidationError(errors)
        ImportMonitoring.record_validation(clean=True)

        started = time.perf_counter()

        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            plan = self.plan(table)
            try:
                job, deliveries = self._write(plan, metadata)
                self.session.commit()
            except IntegrityError as exc:
                self.session.rollback()
                last_error = exc
                current_app.logger.warning(
                    "Import commit hit a uniqueness conflict; re-planning",
                    extra={"importer_attempt": attempt, "importer_source_file": metadata.source_file_name},
                )
                continue
            except SQLAlchemyError as exc:
                self.session.rollback()
                raise self._fail(table, metadata, exc, started) from exc
            break
        else:
            raise self._fail(table, metadata, last_error, started) from last_error

        job_id = job.id
        summary = {
            "importer_job_id": job_id,
            "importer_total_rows": plan.total_rows,
            "importer_successful": len(plan.accepted),
            "importer_skipped": plan.skipped,
            "importer_failed": plan.failed,
        }
        ImportMonitoring.record_commit(
            duration_seconds=time.perf_counter() - started,
            status=ImportJobStatus.COMPLETED.value,
            imported=len(plan.accepted),
            skipped=plan.skipped,
            failed=plan.failed,
        )
        current_app.logger.info("Import job committed", extra=summary)

        self._dispatch(deliveries)
        # Delivery tasks update the job's counters from their own session.
        return self.session.get(ImportJob, job_id, populate_existing=True)

    def plan(self, table: RawTable) -> CommitPlan:
        """Decide, against a fresh snapshot of committed records, what happens to each row."""
        snapshot = self._load_snapshot(table)
        plan = CommitPlan(total_rows=table.row_count)
        for index, row in enumerate(table.rows):
            row_number = index + 2
            member_id = normalize_member_id(row.get("member_id"))
            phone = (row.get("phone_number") or "").strip()
            email = (row.get("email") or "").strip()
            phone_key = normalize_phone(phone)
            email_key = normalize_email(email) or None

            conflict = self._conflict(snapshot, member_id, phone_key, email_key)
            if conflict is not None:
                code, message = conflict
                plan.issues.append(PlannedIssue(row_number, member_id or None, code, message))
                continue

            channel = choose_channel(phone, email, self.patterns)
            if channel is None:
                plan.issues.append(
                    PlannedIssue(
                        row_number,
                        member_id or None,
                        ImportIssueCode.CHANNEL_UNAVAILABLE,
                        "No valid phone number or email address to deliver credentials",
                    )
                )
                continue

            plan.accepted.append(
                PlannedRecord(
                    row_number=row_number,
                    member_id=member_id,
                    name=(row.get("name") or "").strip(),
                    phone_number=phone,
                    phone_normalized=phone_key,
                    email=email or None,
                    email_normalized=email_key,
                    channel=channel,
                )
            )
        return plan

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _conflict(
        snapshot: _Snapshot, member_id: str, phone_key: str, email_key: str | None
    ) -> tuple[ImportIssueCode, str] | None:
        if member_id in snapshot.member_ids:
            return ImportIssueCode.DUPLICATE_MEMBER_ID, f"Member ID {member_id} already exists"
        if phone_key and phone_key in snapshot.phones:
            return ImportIssueCode.DUPLICATE_PHONE_NUMBER, "Phone number already registered"
        if email_key and email_key in snapshot.emails:
            return ImportIssueCode.DUPLICATE_EMAIL, "Email already registered"
        return None

    def _load_snapshot(self, table: RawTable) -> _Snapshot:
        member_ids = sorted({normalize_member_id(row.get("member_id")) for row in table.rows} - {""})
        phones = sorted({normalize_phone(row.get("phone_number")) for row in table.rows} - {""})
        emails = sorted({normalize_email(row.get("email")) for row in table.rows} - {""})

        snapshot = _Snapshot()
        for chunk in _chunks(member_ids, _LOOKUP_CHUNK_SIZE):
            snapshot.member_ids.update(
                self.session.execute(
                    select(MemberActivationRecord.member_id).where(MemberActivationRecord.member_id.in_(chunk))
                ).scalars()
            )
        for chunk in _chunks(phones, _LOOKUP_CHUNK_SIZE):
            snapshot.phones.update(
                self.session.execute(
                    select(MemberActivationRecord.phone_normalized).where(
                        MemberActivationRecord.phone_normalized.in_(chunk)
                    )
                ).scalars()
            )
        for chunk in _chunks(emails, _LOOKUP_CHUNK_SIZE):
            snapshot.emails.update(
                self.session.execute(
                    select(MemberActivationRecord.email_normalized).where(
                        MemberActivationRecord.email_normalized.in_(chunk)
                    )
                ).scalars()
            )
        return snapshot

    def _write(
        self,
        plan: CommitPlan,
        metadata: CommitMetadata,
    ) -> tuple[ImportJob, list[_PendingDelivery]]:
        job = ImportJob(
            initiated_by=metadata.initiated_by.strip(),
            source_file_name=metadata.source_file_name,
            status=ImportJobStatus.PENDING,
            total_rows=plan.total_rows,
            successful_imports=len(plan.accepted),
            skipped_rows=plan.skipped,
            failed_imports=plan.failed,
        )
        self.session.add(job)
        self.session.flush()

        staged: list[tuple[MemberActivationRecord, PlannedRecord]] = []
        for planned in plan.accepted:
            # The credential is issued by the delivery task.
            record = MemberActivationRecord(
                import_job_id=job.id,
                member_id=planned.member_id,
                name=planned.name,
                phone_number=planned.phone_number,
                phone_normalized=planned.phone_normalized,
                email=planned.email,
                email_normalized=planned.email_normalized,
                activation_status=ActivationStatus.PENDING_ACTIVATION,
            )
            self.session.add(record)
            staged.append((record, planned))

        for issue in plan.issues:
            self.session.add(
                ImportJobIssue(
                    import_job_id=job.id,
                    row_number=issue.row_number,
                    member_id=issue.member_id,
                    error_code=issue.code,
                    error_message=issue.message,
                )
            )
        self.session.flush()

        job.status = ImportJobStatus.COMPLETED
        job.finished_at = utc_now()
        ActivityLog.log_action(
            metadata.initiated_by.strip(),
            ActivityAction.BULK_IMPORT,
            f"Imported {len(plan.accepted)} of {plan.total_rows} member(s) from {metadata.source_file_name}",
            {
                "import_job_id": job.id,
                "total_rows": plan.total_rows,
                "successful_imports": len(plan.accepted),
                "skipped_rows": plan.skipped,
                "failed_imports": plan.failed,
            },
            session=self.session,
        )
        deliveries = [
            _PendingDelivery(record_id=record.id, channel=planned.channel) for record, planned in staged
        ]
        return job, deliveries

    def _fail(
        self,
        table: RawTable,
        metadata: CommitMetadata,
        exc: Exception | None,
        started: float,
    ) -> StorageFailureError:
        """Persist a failed job with no records and build the error to raise."""
        detail = str(getattr(exc, "orig", None) or exc or "unknown storage error")
        current_app.logger.error(
            "Import commit failed",
            extra={"importer_source_file": metadata.source_file_name, "importer_error": detail},
            exc_info=exc,
        )
        ImportMonitoring.record_commit(
            duration_seconds=time.perf_counter() - started,
            status=ImportJobStatus.FAILED.value,
            imported=0,
            skipped=0,
            failed=table.row_count,
        )
        job_id: int | None = None
        try:
            job = ImportJob(
                initiated_by=metadata.initiated_by.strip(),
                source_file_name=metadata.source_file_name,
                status=ImportJobStatus.FAILED,
                total_rows=table.row_count,
                successful_imports=0,
                skipped_rows=0,
                failed_imports=table.row_count,
                finished_at=utc_now(),
                error_summary=detail[:2000],
            )
            self.session.add(job)
            ActivityLog.log_action(
                metadata.initiated_by.strip(),
                ActivityAction.IMPORT_FAILED,
                f"Import of {metadata.source_file_name} failed",
                {"error": detail[:500], "total_rows": table.row_count},
                session=self.session,
            )
            self.session.commit()
            job_id = job.id
        except SQLAlchemyError:
            self.session.rollback()
            current_app.logger.exception(
                "Unable to persist failed import job",
                extra={"importer_source_file": metadata.source_file_name},
            )
        return StorageFailureError(f"Import could not be saved: {detail}", job_id=job_id)

    def _dispatch(self, deliveries: Sequence[_PendingDelivery]) -> None:
        """Queue one delivery task per new record; runs only after the commit."""
        from coop_app.importer.celery_app import get_celery_app

        celery_app = get_celery_app(current_app._get_current_object())
        for delivery in deliveries:
            kwargs: dict[str, Any] = {"record_id": delivery.record_id, "channel": delivery.channel.value}
            if celery_app is None:
                self._deliver_inline(delivery)
                continue
            try:
                celery_app.tasks[DELIVER_TASK_NAME].apply_async(kwargs=kwargs)
            except Exception as exc:  # broker unavailable; the record must not stay silently pending
                current_app.logger.exception(
                    "Failed to enqueue credential delivery",
                    extra={"importer_record_id": delivery.record_id},
                )
                self._record_enqueue_failure(delivery, exc)

    def _deliver_inline(self, delivery: _PendingDelivery) -> None:
        from coop_app.importer.pipeline.notifications import NotificationDispatcher

        record = self.session.get(MemberActivationRecord, delivery.record_id)
        NotificationDispatcher(self.session).deliver_initial(record, delivery.channel)
        self.session.commit()

    def _record_enqueue_failure(self, delivery: _PendingDelivery, exc: Exception) -> None:
        from coop_app.importer.pipeline.notifications import NotificationDispatcher

        record = self.session.get(MemberActivationRecord, delivery.record_id)
        try:
            NotificationDispatcher(self.session).record_dispatch_failure(
                record, delivery.channel, f"Delivery could not be queued: {exc}"
            )
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            current_app.logger.exception(
                "Unable to record enqueue failure",
                extra={"importer_record_id": delivery.record_id},
            )

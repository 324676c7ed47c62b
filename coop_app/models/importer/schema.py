"""
SQLAlchemy models for member imports and activation tracking.

One ``ImportJob`` is written per confirmed upload; every accepted row becomes a
``MemberActivationRecord`` that then moves through the activation lifecycle.
Rows that were skipped or could not be imported are kept as ``ImportJobIssue``
children so operators can see why.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import CheckConstraint, Enum, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db


class ImportJobStatus(str, enum.Enum):
    """Lifecycle states for an import job."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ActivationStatus(str, enum.Enum):
    """Activation lifecycle for an imported member."""

    PENDING_ACTIVATION = "pending_activation"
    ACTIVATED = "activated"
    SMS_FAILED = "sms_failed"
    EMAIL_FAILED = "email_failed"
    TOKEN_EXPIRED = "token_expired"

    @classmethod
    def coerce(cls, value: "ActivationStatus | str") -> "ActivationStatus":
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        raise ValueError(f"Unknown activation status '{value}'.")


class DeliveryChannel(str, enum.Enum):
    """Channels an activation credential can be delivered through."""

    SMS = "sms"
    EMAIL = "email"

    @property
    def failed_status(self) -> ActivationStatus:
        if self is DeliveryChannel.SMS:
            return ActivationStatus.SMS_FAILED
        return ActivationStatus.EMAIL_FAILED

    @classmethod
    def coerce(cls, value: "DeliveryChannel | str") -> "DeliveryChannel":
        if isinstance(value, cls):
            return value
        normalized = str(value or "").strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        raise ValueError(f"Unknown delivery channel '{value}'.")


class ImportIssueCode(str, enum.Enum):
    """Reasons a row in a confirmed upload did not become a record."""

    DUPLICATE_MEMBER_ID = "DUPLICATE_MEMBER_ID"
    DUPLICATE_PHONE_NUMBER = "DUPLICATE_PHONE_NUMBER"
    DUPLICATE_EMAIL = "DUPLICATE_EMAIL"
    CHANNEL_UNAVAILABLE = "CHANNEL_UNAVAILABLE"

    @property
    def is_skip(self) -> bool:
        return self is not ImportIssueCode.CHANNEL_UNAVAILABLE


class ImportJob(BaseModel):
    """Metadata and counters describing one confirmed member upload."""

    __tablename__ = "import_jobs"

    id: Mapped[int] = mapped_column(primary_key=True)
    initiated_by: Mapped[str] = mapped_column(db.String(120), nullable=False, index=True)
    source_file_name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    status: Mapped[ImportJobStatus] = mapped_column(
        Enum(ImportJobStatus, name="import_job_status_enum"),
        nullable=False,
        default=ImportJobStatus.PENDING,
        index=True,
    )
    total_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    successful_imports: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    failed_imports: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    skipped_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    sms_sent_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    sms_failed_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    email_sent_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    email_failed_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    finished_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    error_summary: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    # Records are the member audit trail: never deleted with their job.
    records = relationship("MemberActivationRecord", back_populates="import_job")
    issues = relationship(
        "ImportJobIssue",
        back_populates="import_job",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ImportJobIssue.row_number",
    )

    __table_args__ = (
        CheckConstraint(
            "successful_imports + failed_imports + skipped_rows = total_rows",
            name="ck_import_jobs_row_outcomes_sum",
        ),
        Index("idx_import_jobs_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<ImportJob id={self.id} status={self.status.value if self.status else None}>"


class ImportJobIssue(BaseModel):
    """A row from a confirmed upload that was skipped or failed to import."""

    __tablename__ = "import_job_issues"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    import_job_id: Mapped[int] = mapped_column(
        ForeignKey("import_jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    row_number: Mapped[int] = mapped_column(db.Integer, nullable=False)
    member_id: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    error_code: Mapped[ImportIssueCode] = mapped_column(
        Enum(ImportIssueCode, name="import_issue_code_enum"),
        nullable=False,
    )
    error_message: Mapped[str] = mapped_column(db.Text, nullable=False)

    import_job = relationship("ImportJob", back_populates="issues")


class MemberActivationRecord(BaseModel):
    """
    One imported member awaiting (or past) activation.

    ``phone_normalized`` and ``email_normalized`` carry the uniqueness
    guarantees; the display values keep whatever formatting the upload used.
    """

    __tablename__ = "member_activation_records"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    import_job_id: Mapped[int] = mapped_column(
        ForeignKey("import_jobs.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    member_id: Mapped[str] = mapped_column(db.String(100), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    phone_number: Mapped[str] = mapped_column(db.String(50), nullable=False)
    phone_normalized: Mapped[str] = mapped_column(db.String(32), nullable=False, unique=True)
    email: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    email_normalized: Mapped[str | None] = mapped_column(db.String(255), nullable=True, unique=True)
    activation_status: Mapped[ActivationStatus] = mapped_column(
        Enum(ActivationStatus, name="activation_status_enum"),
        nullable=False,
        default=ActivationStatus.PENDING_ACTIVATION,
        index=True,
    )
    activation_method: Mapped[DeliveryChannel | None] = mapped_column(
        Enum(DeliveryChannel, name="delivery_channel_enum"),
        nullable=True,
    )
    sms_sent_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    email_sent_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    activated_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    temporary_password_hash: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    temporary_password_expires_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    resend_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    last_resend_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    last_delivery_error: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    # Automatic delivery retries since the last success, per channel.
    sms_retry_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    sms_last_retry_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    email_retry_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    email_last_retry_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))

    import_job = relationship("ImportJob", back_populates="records")

    __table_args__ = (
        Index("idx_member_records_job_status", "import_job_id", "activation_status"),
    )

    def destination_for(self, channel: DeliveryChannel) -> str | None:
        """Return the address a credential for ``channel`` would be sent to."""
        if channel is DeliveryChannel.SMS:
            return self.phone_number or None
        return self.email or None

    def sent_at_for(self, channel: DeliveryChannel) -> datetime | None:
        return self.sms_sent_at if channel is DeliveryChannel.SMS else self.email_sent_at

    def __repr__(self) -> str:
        return f"<MemberActivationRecord member_id={self.member_id} status={self.activation_status.value}>"

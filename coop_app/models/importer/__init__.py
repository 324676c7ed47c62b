"""
Importer-specific SQLAlchemy models: import jobs, their issues, and member
activation records.
"""

from .schema import (
    ActivationStatus,
    DeliveryChannel,
    ImportIssueCode,
    ImportJob,
    ImportJobIssue,
    ImportJobStatus,
    MemberActivationRecord,
)

__all__ = [
    "ActivationStatus",
    "DeliveryChannel",
    "ImportIssueCode",
    "ImportJob",
    "ImportJobIssue",
    "ImportJobStatus",
    "MemberActivationRecord",
]

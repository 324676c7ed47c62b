# coop_app/models/__init__.py
"""
Database models package
"""

from .activity import ActivityAction, ActivityLog
from .base import BaseModel, db
from .importer import (
    ActivationStatus,
    DeliveryChannel,
    ImportIssueCode,
    ImportJob,
    ImportJobIssue,
    ImportJobStatus,
    MemberActivationRecord,
)

__all__ = [
    "db",
    "BaseModel",
    "ActivityAction",
    "ActivityLog",
    # Importer models
    "ActivationStatus",
    "DeliveryChannel",
    "ImportIssueCode",
    "ImportJob",
    "ImportJobIssue",
    "ImportJobStatus",
    "MemberActivationRecord",
]

# coop_app/models/activity.py

import enum

from flask import current_app
from sqlalchemy import Enum
from sqlalchemy.orm import Mapped, Session, mapped_column

from .base import BaseModel, db


class ActivityAction(str, enum.Enum):
    """Auditable operator and system actions."""

    BULK_IMPORT = "BULK_IMPORT"
    IMPORT_FAILED = "IMPORT_FAILED"
    RESEND_INVITATION = "RESEND_INVITATION"
    BULK_RESEND_INVITATIONS = "BULK_RESEND_INVITATIONS"
    MEMBER_ACTIVATED = "MEMBER_ACTIVATED"
    TOKENS_EXPIRED = "TOKENS_EXPIRED"


class ActivityLog(BaseModel):
    """Append-only audit trail of import and activation activity"""

    __tablename__ = "activity_logs"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True)
    actor: Mapped[str] = mapped_column(db.String(120), nullable=False, index=True)
    action: Mapped[ActivityAction] = mapped_column(
        Enum(ActivityAction, name="activity_action_enum"),
        nullable=False,
        index=True,
    )
    description: Mapped[str] = mapped_column(db.Text, nullable=False)
    details: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    def __repr__(self):
        return f"<ActivityLog {self.action.value} by {self.actor}>"

    @classmethod
    def log_action(
        cls,
        actor: str,
        action: ActivityAction,
        description: str,
        details: dict | None = None,
        *,
        session: Session | None = None,
    ) -> "ActivityLog":
        """
        Stage an audit entry on the session.

        The caller owns the transaction; the entry is committed (or rolled
        back) together with the change it describes.
        """
        entry = cls(actor=actor, action=action, description=description, details=details)
        (session or db.session).add(entry)
        current_app.logger.debug(
            "Activity recorded",
            extra={"activity_action": action.value, "activity_actor": actor},
        )
        return entry

"""
Display metadata for activation states.

Kept out of the models so the lifecycle stays free of UI concerns.
"""

from __future__ import annotations

from coop_app.models.importer.schema import ActivationStatus, ImportJobStatus

ACTIVATION_STATUS_DISPLAY: dict[ActivationStatus, dict[str, str]] = {
    ActivationStatus.PENDING_ACTIVATION: {"label": "Pending Activation", "color": "yellow"},
    ActivationStatus.ACTIVATED: {"label": "Activated", "color": "green"},
    ActivationStatus.SMS_FAILED: {"label": "SMS Failed", "color": "red"},
    ActivationStatus.EMAIL_FAILED: {"label": "Email Failed", "color": "red"},
    ActivationStatus.TOKEN_EXPIRED: {"label": "Token Expired", "color": "gray"},
}

IMPORT_JOB_STATUS_DISPLAY: dict[ImportJobStatus, dict[str, str]] = {
    ImportJobStatus.PENDING: {"label": "In Progress", "color": "blue"},
    ImportJobStatus.COMPLETED: {"label": "Completed", "color": "green"},
    ImportJobStatus.FAILED: {"label": "Failed", "color": "red"},
}


def activation_status_display(status: ActivationStatus) -> dict[str, str]:
    return dict(ACTIVATION_STATUS_DISPLAY.get(status, {"label": status.value, "color": "gray"}))


def import_job_status_display(status: ImportJobStatus) -> dict[str, str]:
    return dict(IMPORT_JOB_STATUS_DISPLAY.get(status, {"label": status.value, "color": "gray"}))

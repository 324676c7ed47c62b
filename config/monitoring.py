# config/monitoring.py

import os

from prometheus_client import Counter, Histogram


def _flag(name, default):
    return os.environ.get(name, default).strip().lower() == "true"


class MonitoringConfig:
    """Logging, metrics and outbound mail settings shared by every environment."""

    MONITORING_ENABLED = _flag("MONITORING_ENABLED", "false")
    METRICS_ENDPOINT = os.environ.get("METRICS_ENDPOINT", "/metrics")

    # LOG_FORMAT is "json" or "text"; files rotate at LOG_FILE_MAX_BYTES.
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")
    LOG_DIR = os.environ.get("LOG_DIR", "logs")
    LOG_FILE_NAME = os.environ.get("LOG_FILE_NAME", "coop_member_import.log")
    LOG_FILE_MAX_BYTES = int(os.environ.get("LOG_FILE_MAX_BYTES", 10 * 1024 * 1024))
    LOG_FILE_BACKUP_COUNT = int(os.environ.get("LOG_FILE_BACKUP_COUNT", 10))
    ENABLE_FILE_LOGGING = _flag("ENABLE_FILE_LOGGING", "true")
    ENABLE_CONSOLE_LOGGING = _flag("ENABLE_CONSOLE_LOGGING", "true")

    # SMTP settings for the email notifier
    MAIL_SERVER = os.environ.get("MAIL_SERVER")
    MAIL_PORT = int(os.environ.get("MAIL_PORT", 587))
    MAIL_USE_TLS = _flag("MAIL_USE_TLS", "true")
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")
    MAIL_FROM = os.environ.get("MAIL_FROM", "noreply@example.com")

    APP_NAME = os.environ.get("APP_NAME", "Cooperative Member Import")
    APP_VERSION = os.environ.get("APP_VERSION", "1.0.0")


class DevelopmentMonitoringConfig(MonitoringConfig):
    LOG_LEVEL = "DEBUG"
    LOG_FORMAT = "text"


class ProductionMonitoringConfig(MonitoringConfig):
    """JSON to the rotating file only; the container runtime collects stdout separately."""

    LOG_FORMAT = "json"
    ENABLE_CONSOLE_LOGGING = False


class TestingMonitoringConfig(MonitoringConfig):
    MONITORING_ENABLED = False
    LOG_LEVEL = "WARNING"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = False
    ENABLE_CONSOLE_LOGGING = False


_LATENCY_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5)


class ImportMonitoring:
    """Prometheus metric helpers for the member import pipeline and its endpoints."""

    COMMIT_COUNTER = Counter(
        "member_import_commits_total",
        "Import commits by terminal job status.",
        labelnames=("status",),
    )
    COMMIT_LATENCY = Histogram(
        "member_import_commit_seconds",
        "Latency histogram for import commits.",
        labelnames=("status",),
        buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
    )
    ROW_OUTCOME_COUNTER = Counter(
        "member_import_rows_total",
        "Committed rows by outcome (imported, skipped, failed).",
        labelnames=("outcome",),
    )
    VALIDATION_COUNTER = Counter(
        "member_import_validations_total",
        "Validation passes by result (clean, rejected).",
        labelnames=("result",),
    )
    DELIVERY_COUNTER = Counter(
        "member_activation_deliveries_total",
        "Credential deliveries by channel and outcome.",
        labelnames=("channel", "outcome"),
    )
    RESEND_COUNTER = Counter(
        "member_activation_resends_total",
        "Resend attempts by mode (single, bulk) and outcome.",
        labelnames=("mode", "outcome"),
    )
    ACTIVATION_COUNTER = Counter(
        "member_activation_events_total",
        "Activation attempts by outcome.",
        labelnames=("outcome",),
    )
    LIST_COUNTER = Counter(
        "member_import_list_requests_total",
        "Listing API requests by resource and status.",
        labelnames=("resource", "status"),
    )
    LIST_LATENCY = Histogram(
        "member_import_list_request_seconds",
        "Latency histogram for listing APIs.",
        labelnames=("resource", "status"),
        buckets=_LATENCY_BUCKETS,
    )
    LIST_RESULT_SIZE = Histogram(
        "member_import_list_result_size",
        "Number of items returned by listing APIs.",
        labelnames=("resource",),
        buckets=(0, 1, 5, 10, 25, 50, 100),
    )

    @classmethod
    def record_commit(cls, *, duration_seconds: float, status: str, imported: int, skipped: int, failed: int):
        cls.COMMIT_COUNTER.labels(status=status).inc()
        cls.COMMIT_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))
        for outcome, count in (("imported", imported), ("skipped", skipped), ("failed", failed)):
            if count:
                cls.ROW_OUTCOME_COUNTER.labels(outcome=outcome).inc(count)

    @classmethod
    def record_validation(cls, *, clean: bool):
        cls.VALIDATION_COUNTER.labels(result="clean" if clean else "rejected").inc()

    @classmethod
    def record_delivery(cls, *, channel: str, success: bool):
        cls.DELIVERY_COUNTER.labels(channel=channel, outcome="sent" if success else "failed").inc()

    @classmethod
    def record_resend(cls, *, mode: str, success: bool):
        cls.RESEND_COUNTER.labels(mode=mode, outcome="success" if success else "failure").inc()

    @classmethod
    def record_activation(cls, *, outcome: str):
        cls.ACTIVATION_COUNTER.labels(outcome=outcome).inc()

    @classmethod
    def record_list(cls, *, resource: str, duration_seconds: float, status: str, result_count: int):
        cls.LIST_COUNTER.labels(resource=resource, status=status).inc()
        cls.LIST_LATENCY.labels(resource=resource, status=status).observe(max(duration_seconds, 0.0))
        if status == "success":
            cls.LIST_RESULT_SIZE.labels(resource=resource).observe(float(max(result_count, 0)))

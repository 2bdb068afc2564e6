# config/monitoring.py

import os

from prometheus_client import Counter, Histogram


class MonitoringConfig:
    """Monitoring and logging configuration"""

    MONITORING_ENABLED = os.environ.get("MONITORING_ENABLED", "false").lower() == "true"

    # Logging Configuration
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")  # 'json' or 'text'
    LOG_DIR = os.environ.get("LOG_DIR", "logs")
    LOG_FILE_NAME = os.environ.get("LOG_FILE_NAME", "hts_importer.log")
    LOG_FILE_MAX_BYTES = int(os.environ.get("LOG_FILE_MAX_BYTES", 10485760))  # 10MB
    LOG_FILE_BACKUP_COUNT = int(os.environ.get("LOG_FILE_BACKUP_COUNT", 10))

    # Console and File Logging
    ENABLE_FILE_LOGGING = os.environ.get("ENABLE_FILE_LOGGING", "true").lower() == "true"
    ENABLE_CONSOLE_LOGGING = os.environ.get("ENABLE_CONSOLE_LOGGING", "true").lower() == "true"

    # Application Info
    APP_NAME = os.environ.get("APP_NAME", "HTS Importer")
    APP_VERSION = os.environ.get("APP_VERSION", "1.0.0")


class DevelopmentMonitoringConfig(MonitoringConfig):
    """Development-specific monitoring configuration"""

    LOG_LEVEL = "DEBUG"
    LOG_FORMAT = "text"  # More readable in development
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = True


class ProductionMonitoringConfig(MonitoringConfig):
    """Production-specific monitoring configuration"""

    LOG_LEVEL = "INFO"
    LOG_FORMAT = "json"  # Structured logging for production
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = False  # Usually handled by container orchestration


class TestingMonitoringConfig(MonitoringConfig):
    """Testing-specific monitoring configuration"""

    MONITORING_ENABLED = False
    LOG_LEVEL = "WARNING"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = False
    ENABLE_CONSOLE_LOGGING = False


class ImporterMonitoring:
    """Prometheus metric helpers for the import review endpoints."""

    JOBS_LIST_COUNTER = Counter(
        "hts_importer_jobs_list_requests_total",
        "Total import job list API requests.",
        labelnames=("status",),
    )
    JOBS_LIST_LATENCY = Histogram(
        "hts_importer_jobs_list_request_seconds",
        "Latency histogram for import job list API.",
        labelnames=("status",),
        buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
    )
    JOBS_DETAIL_COUNTER = Counter(
        "hts_importer_jobs_detail_requests_total",
        "Total import job detail API requests.",
        labelnames=("status",),
    )
    JOBS_DETAIL_LATENCY = Histogram(
        "hts_importer_jobs_detail_request_seconds",
        "Latency histogram for import job detail API.",
        labelnames=("status",),
        buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
    )
    DIFF_LIST_COUNTER = Counter(
        "hts_importer_diff_list_requests_total",
        "Total staged diff list API requests.",
        labelnames=("status",),
    )
    DIFF_LIST_RESULT_SIZE = Histogram(
        "hts_importer_diff_list_result_size",
        "Number of diff records returned by the list endpoint.",
        labelnames=("status",),
        buckets=(0, 1, 5, 10, 25, 50, 100, 250, 500, 1000),
    )
    DIFF_EXPORT_COUNTER = Counter(
        "hts_importer_diff_export_requests_total",
        "Total staged diff CSV export requests.",
        labelnames=("status",),
    )
    DIFF_EXPORT_LATENCY = Histogram(
        "hts_importer_diff_export_request_seconds",
        "Latency histogram for the diff export endpoint.",
        labelnames=("status",),
        buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
    )
    DIFF_EXPORT_ROW_COUNT = Histogram(
        "hts_importer_diff_export_row_count",
        "Row count of exported diff records.",
        labelnames=("status",),
        buckets=(0, 10, 100, 1000, 5000, 10000, 25000, 50000, 100000),
    )

    @classmethod
    def record_jobs_list(cls, *, duration_seconds: float, status: str):
        cls.JOBS_LIST_COUNTER.labels(status=status).inc()
        cls.JOBS_LIST_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))

    @classmethod
    def record_jobs_detail(cls, *, duration_seconds: float, status: str):
        cls.JOBS_DETAIL_COUNTER.labels(status=status).inc()
        cls.JOBS_DETAIL_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))

    @classmethod
    def record_diff_list(cls, *, status: str, result_count: int):
        cls.DIFF_LIST_COUNTER.labels(status=status).inc()
        cls.DIFF_LIST_RESULT_SIZE.labels(status=status).observe(float(max(result_count, 0)))

    @classmethod
    def record_diff_export(cls, *, duration_seconds: float, status: str, row_count: int):
        cls.DIFF_EXPORT_COUNTER.labels(status=status).inc()
        cls.DIFF_EXPORT_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))
        cls.DIFF_EXPORT_ROW_COUNT.labels(status=status).observe(float(max(row_count, 0)))

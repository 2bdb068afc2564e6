# config.py
import os


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _coerce_int(value, default, *, minimum=None):
    """
    Parse an integer environment value, falling back to ``default`` when the
    value is missing or malformed. ``minimum`` clamps the parsed result.
    """
    if value is None or str(value).strip() == "":
        return default
    try:
        number = int(str(value).strip())
    except ValueError:
        return default
    if minimum is not None and number < minimum:
        return minimum
    return number


def _parse_int_list(value, *, minimum=1, maximum=100):
    """
    Parse a comma-separated list of integers with optional bounds.
    """

    if not value:
        return []

    parsed: list[int] = []
    for raw_item in value.split(","):
        item = raw_item.strip()
        if not item:
            continue
        try:
            number = int(item)
        except ValueError:
            continue
        if number < minimum or number > maximum:
            continue
        if number not in parsed:
            parsed.append(number)
    return parsed


class Config:
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Only require SECRET_KEY in production mode
    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "Set SECRET_KEY environment variable before deploying.",
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Importer feature flag and worker wiring
    IMPORTER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_ENABLED"), default=True)
    IMPORTER_WORKER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_WORKER_ENABLED"), default=False)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")
    IMPORTER_TASK_TIME_LIMIT = _coerce_int(os.environ.get("IMPORTER_TASK_TIME_LIMIT"), 2 * 60 * 60, minimum=60)
    IMPORTER_TASK_SOFT_TIME_LIMIT = _coerce_int(
        os.environ.get("IMPORTER_TASK_SOFT_TIME_LIMIT"), 110 * 60, minimum=60
    )
    IMPORTER_JOB_MAX_RETRIES = _coerce_int(os.environ.get("IMPORTER_JOB_MAX_RETRIES"), 3, minimum=0)
    IMPORTER_JOB_RETRY_BACKOFF_SECONDS = _coerce_int(
        os.environ.get("IMPORTER_JOB_RETRY_BACKOFF_SECONDS"), 30, minimum=1
    )
    IMPORTER_JOB_LOCK_TTL_SECONDS = _coerce_int(
        os.environ.get("IMPORTER_JOB_LOCK_TTL_SECONDS"), 3 * 60 * 60, minimum=60
    )
    IMPORTER_JOB_LOG_LIMIT = _coerce_int(os.environ.get("IMPORTER_JOB_LOG_LIMIT"), 5000, minimum=10)

    # Raw file storage
    IMPORTER_BLOB_DIR = os.environ.get("IMPORTER_BLOB_DIR")
    IMPORTER_BLOB_NAMESPACE = os.environ.get("IMPORTER_BLOB_NAMESPACE", "hts")
    IMPORTER_BLOB_STORE_ID = os.environ.get("IMPORTER_BLOB_STORE_ID")

    # Source download
    HTS_SOURCE_URL_TEMPLATE = os.environ.get(
        "HTS_SOURCE_URL_TEMPLATE",
        "https://www.usitc.gov/sites/default/files/tata/hts/hts_{year}_revision_{revision}_json.json",
    )
    HTS_SOURCE_MAX_REVISION = _coerce_int(os.environ.get("HTS_SOURCE_MAX_REVISION"), 10, minimum=1)
    IMPORTER_DOWNLOAD_TIMEOUT_SECONDS = _coerce_int(
        os.environ.get("IMPORTER_DOWNLOAD_TIMEOUT_SECONDS"), 300, minimum=1
    )
    IMPORTER_DOWNLOAD_MAX_MB = _coerce_int(os.environ.get("IMPORTER_DOWNLOAD_MAX_MB"), 100, minimum=1)
    IMPORTER_DOWNLOAD_RETRY_ATTEMPTS = _coerce_int(
        os.environ.get("IMPORTER_DOWNLOAD_RETRY_ATTEMPTS"), 3, minimum=1
    )
    IMPORTER_DOWNLOAD_RETRY_BASE_SECONDS = _coerce_int(
        os.environ.get("IMPORTER_DOWNLOAD_RETRY_BASE_SECONDS"), 2, minimum=0
    )

    # Stage batch sizes
    IMPORTER_STAGE_BATCH_SIZE = _coerce_int(os.environ.get("IMPORTER_STAGE_BATCH_SIZE"), 1000, minimum=1)
    IMPORTER_VALIDATION_PAGE_SIZE = _coerce_int(os.environ.get("IMPORTER_VALIDATION_PAGE_SIZE"), 1000, minimum=1)
    IMPORTER_DIFF_BATCH_SIZE = _coerce_int(os.environ.get("IMPORTER_DIFF_BATCH_SIZE"), 1000, minimum=1)
    IMPORTER_PROMOTION_BATCH_SIZE = _coerce_int(os.environ.get("IMPORTER_PROMOTION_BATCH_SIZE"), 500, minimum=1)

    # Review surface pagination
    _parsed_page_sizes = _parse_int_list(os.environ.get("IMPORTER_JOBS_PAGE_SIZES", "20,50,100"), minimum=5, maximum=500)
    if not _parsed_page_sizes:
        _parsed_page_sizes = [20, 50, 100]
    IMPORTER_JOBS_PAGE_SIZES = tuple(sorted(set(_parsed_page_sizes)))
    IMPORTER_JOBS_PAGE_SIZE_DEFAULT = _coerce_int(
        os.environ.get("IMPORTER_JOBS_PAGE_SIZE_DEFAULT"), IMPORTER_JOBS_PAGE_SIZES[0], minimum=1
    )
    IMPORTER_EXPORT_ROW_LIMIT = _coerce_int(os.environ.get("IMPORTER_EXPORT_ROW_LIMIT"), 100000, minimum=1)


class DevelopmentConfig(Config):
    DEBUG = True
    # Get the project root directory (parent of config directory)
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URI format: sqlite:///absolute/path (3 slashes for absolute path)
    db_path_normalized = os.path.join(instance_path, "hts_dev.db").replace("\\", "/")
    db_uri = f"sqlite:///{db_path_normalized}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"  # In-memory database for testing
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    IMPORTER_DOWNLOAD_RETRY_BASE_SECONDS = 0


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False

import pytest

from config.validation import validate_and_exit, validate_environment

PRODUCTION_ENV = {
    "SECRET_KEY": "a" * 64,
    "DATABASE_URL": "postgresql://hts:secret@db/hts",
    "IMPORTER_BLOB_DIR": "/var/lib/hts/blobs",
}


@pytest.fixture
def production_env(monkeypatch):
    for name in ("IMPORTER_WORKER_ENABLED", "CELERY_BROKER_URL", "CELERY_RESULT_BACKEND", "HTS_SOURCE_URL_TEMPLATE"):
        monkeypatch.delenv(name, raising=False)
    for name, value in PRODUCTION_ENV.items():
        monkeypatch.setenv(name, value)
    return monkeypatch


def test_non_production_is_not_validated(monkeypatch):
    monkeypatch.delenv("SECRET_KEY", raising=False)
    assert validate_environment("development") == (True, [])


def test_complete_production_environment_passes(production_env):
    assert validate_environment("production") == (True, [])


def test_default_secret_and_missing_database_fail(production_env):
    production_env.setenv("SECRET_KEY", "your-secret-key")
    production_env.delenv("DATABASE_URL")

    is_valid, errors = validate_environment("production")

    assert is_valid is False
    assert any(error.startswith("SECRET_KEY") for error in errors)
    assert any(error.startswith("DATABASE_URL") for error in errors)


def test_worker_requires_broker_settings(production_env):
    production_env.setenv("IMPORTER_WORKER_ENABLED", "true")

    _, errors = validate_environment("production")

    assert len(errors) == 2
    assert all("IMPORTER_WORKER_ENABLED" in error for error in errors)


def test_source_template_needs_placeholders(production_env):
    production_env.setenv("HTS_SOURCE_URL_TEMPLATE", "https://example.test/hts_{year}.json")

    _, errors = validate_environment("production")

    assert errors == ["HTS_SOURCE_URL_TEMPLATE must contain both {year} and {revision} placeholders"]


def test_validate_and_exit_stops_startup(production_env, capsys):
    production_env.delenv("IMPORTER_BLOB_DIR")

    with pytest.raises(SystemExit) as excinfo:
        validate_and_exit("production")

    assert excinfo.value.code == 1
    assert "IMPORTER_BLOB_DIR" in capsys.readouterr().err

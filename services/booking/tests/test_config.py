import pytest
from pydantic import ValidationError

from venue_booking.config import Settings, load_settings


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("DATABASE_URL", "DB_HOST", "DB_USER", "STORE_BACKEND", "HOLD_TTL_MINUTES", "BACKGROUND_WORKERS"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_database_url_is_built_from_parts(clean_env):
    clean_env.setenv("DB_HOST", "db.internal")
    clean_env.setenv("DB_USER", "booking")

    settings = load_settings()

    assert settings.database_url.startswith("postgresql+psycopg://booking:")
    assert "@db.internal:" in settings.database_url


def test_postgres_scheme_gets_driver(clean_env):
    clean_env.setenv("DATABASE_URL", "postgres://u:p@host:5432/venues")

    assert load_settings().database_url == "postgresql+psycopg://u:p@host:5432/venues"


def test_typed_values_come_from_env(clean_env):
    clean_env.setenv("STORE_BACKEND", "MEMORY")
    clean_env.setenv("HOLD_TTL_MINUTES", "45")
    clean_env.setenv("BACKGROUND_WORKERS", "false")

    settings = load_settings()

    assert settings.store_backend == "memory"
    assert settings.hold_ttl_minutes == 45
    assert settings.background_workers is False


def test_bad_values_are_rejected(clean_env):
    clean_env.setenv("HOLD_TTL_MINUTES", "soon")

    with pytest.raises(ValidationError):
        load_settings()


def test_settings_are_frozen():
    settings = Settings(database_url="postgresql+psycopg://x:y@localhost/z")

    with pytest.raises(ValidationError):
        settings.hold_ttl_minutes = 5

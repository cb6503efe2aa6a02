"""Tests for environment settings."""

import pytest
from pydantic import ValidationError

from conveyor.config import Settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("DATABASE_URL", "REDIS_URL", "REDIS_PASSWORD", "LOG_LEVEL", "LOG_FORMAT"):
        monkeypatch.delenv(name, raising=False)


class TestSettings:
    def test_defaults(self) -> None:
        settings = Settings(_env_file=None)

        assert settings.redis_url == "redis://localhost:6379/0"
        assert settings.redis_password is None
        assert settings.log_level == "INFO"
        assert settings.json_logs is False

    def test_reads_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://u:p@db:5432/app")
        monkeypatch.setenv("REDIS_URL", "redis://cache:6379/1")
        monkeypatch.setenv("REDIS_PASSWORD", "s3cret")
        monkeypatch.setenv("LOG_FORMAT", "json")

        settings = Settings(_env_file=None)

        assert settings.database_url == "postgresql+asyncpg://u:p@db:5432/app"
        assert settings.redis_url == "redis://cache:6379/1"
        assert settings.redis_password is not None
        assert settings.redis_password.get_secret_value() == "s3cret"
        assert "s3cret" not in repr(settings)
        assert settings.json_logs is True

    def test_invalid_log_format(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_FORMAT", "xml")

        with pytest.raises(ValidationError):
            Settings(_env_file=None)

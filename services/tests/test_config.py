"""Tests for settings loading from the environment."""

from gitopsplane.config import ReclaimPolicy, load_settings


class TestSettings:
    def test_operation_defaults(self):
        settings = load_settings()
        assert settings.operations.staleness_threshold_seconds == 300
        assert settings.operations.reclaim_policy is ReclaimPolicy.RETRY
        assert settings.operations.retention_seconds == 86400
        assert settings.readiness.interval_seconds == 1.0
        assert settings.readiness.timeout_seconds == 60.0

    def test_nested_env_override(self, monkeypatch):
        monkeypatch.setenv("GITOPSPLANE_OPERATIONS__RECLAIM_POLICY", "fail")
        monkeypatch.setenv("GITOPSPLANE_OPERATIONS__STALENESS_THRESHOLD_SECONDS", "45")

        settings = load_settings()

        assert settings.operations.reclaim_policy is ReclaimPolicy.FAIL
        assert settings.operations.staleness_threshold_seconds == 45

    def test_keyword_overrides_win(self, monkeypatch):
        monkeypatch.setenv("GITOPSPLANE_DATABASE_URL", "postgresql+asyncpg://env/db")
        settings = load_settings(database_url="sqlite+aiosqlite:///override.db")
        assert settings.database_url == "sqlite+aiosqlite:///override.db"

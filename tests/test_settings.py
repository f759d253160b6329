"""Tests — settings loader (YAML + ${VAR} substitution)."""
import pytest

from config.settings import (
    DatabaseConfig, QueueConfig, get_settings, load_settings, reset_settings,
)


@pytest.fixture(autouse=True)
def _fresh_settings():
    reset_settings()
    yield
    reset_settings()


class TestDefaults:

    def test_database_defaults(self):
        cfg = DatabaseConfig()
        assert cfg.url.startswith("sqlite")
        assert cfg.store_backend == "sql"

    def test_queue_defaults(self):
        cfg = QueueConfig()
        assert cfg.backend == "memory"
        assert cfg.review_queue == "reviewQueue"
        assert cfg.max_attempts == 5
        assert cfg.embedded_consumer is True

    def test_dlq_name_follows_queue(self):
        assert QueueConfig(review_queue="rq").dlq_name == "rq.dlq"
        assert QueueConfig(dead_letter_queue="parked").dlq_name == "parked"

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings.port == 8080
        assert settings.queue.backend == "memory"


class TestYamlLoading:

    def test_full_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_REDIS_URL", "redis://cache:6380/2")
        path = tmp_path / "settings.yaml"
        path.write_text(
            "app_name: Reviews\n"
            "debug: 'true'\n"
            "port: '9090'\n"
            "database:\n"
            "  url: postgresql://u:p@db/reviews\n"
            "queue:\n"
            "  backend: redis\n"
            "  redis_url: ${TEST_REDIS_URL}\n"
            "  max_attempts: '3'\n"
            "  retry_backoff_base: 0.5\n"
            "  embedded_consumer: 'no'\n"
        )
        settings = load_settings(str(path))
        assert settings.app_name == "Reviews"
        assert settings.debug is True
        assert settings.port == 9090
        assert settings.database.url == "postgresql://u:p@db/reviews"
        assert settings.database.store_backend == "sql"
        assert settings.queue.backend == "redis"
        assert settings.queue.redis_url == "redis://cache:6380/2"
        assert settings.queue.max_attempts == 3
        assert settings.queue.retry_backoff_base == 0.5
        assert settings.queue.embedded_consumer is False
        assert settings.queue.review_queue == "reviewQueue"

    def test_unset_variable_left_in_place(self, tmp_path, monkeypatch):
        monkeypatch.delenv("NOT_SET_ANYWHERE", raising=False)
        path = tmp_path / "settings.yaml"
        path.write_text("queue:\n  redis_url: ${NOT_SET_ANYWHERE}\n")
        assert load_settings(str(path)).queue.redis_url == "${NOT_SET_ANYWHERE}"

    def test_env_selects_config_file(self, tmp_path, monkeypatch):
        path = tmp_path / "settings.yaml"
        path.write_text("app_name: FromEnv\n")
        monkeypatch.setenv("REVIEWS_CONFIG", str(path))
        assert get_settings().app_name == "FromEnv"

    def test_get_settings_is_cached(self, tmp_path, monkeypatch):
        monkeypatch.setenv("REVIEWS_CONFIG", str(tmp_path / "absent.yaml"))
        assert get_settings() is get_settings()

    def test_shipped_settings_file_loads(self, monkeypatch):
        monkeypatch.delenv("REVIEWS_CONFIG", raising=False)
        settings = load_settings()
        assert settings.queue.review_queue == "reviewQueue"
        assert settings.queue.consumer_group == "review-consumers"

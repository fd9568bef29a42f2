"""Tests for settings loading."""
import pytest
from pydantic import ValidationError

from app.config import AppSettings, get_config, load_settings, reset_config


@pytest.fixture(autouse=True)
def _fresh_config():
    reset_config()
    yield
    reset_config()


class TestDefaults:
    """Tests for default values."""

    def test_defaults(self):
        settings = AppSettings()
        assert settings.messaging.max_content_length == 4000
        assert settings.messaging.typing_timeout_seconds == 2.0
        assert settings.messaging.disconnect_grace_seconds == 5.0
        assert settings.messaging.heartbeat_timeout_seconds == 30.0
        assert settings.delivery.max_attempts == 3
        assert settings.store.default_page_size == 50

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(tmp_path / "absent.yaml")
        assert settings == AppSettings()


class TestLoading:
    """Tests for YAML loading."""

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "gigchat.settings.yaml"
        path.write_text(
            "logging:\n"
            "  level: debug\n"
            "store:\n"
            "  db_path: /tmp/chat.duckdb\n"
            "delivery:\n"
            "  max_attempts: 5\n"
            "messaging:\n"
            "  typing_timeout_seconds: 1.5\n"
        )
        settings = load_settings(path)
        assert settings.logging.level == "debug"
        assert settings.store.db_path == "/tmp/chat.duckdb"
        assert settings.delivery.max_attempts == 5
        assert settings.messaging.typing_timeout_seconds == 1.5
        assert settings.messaging.disconnect_grace_seconds == 5.0

    def test_env_override_and_cache(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.yaml"
        path.write_text("server:\n  port: 9100\n")
        monkeypatch.setenv("GIGCHAT_SETTINGS", str(path))

        first = get_config()
        assert first.server.port == 9100
        assert get_config() is first

        reset_config()
        assert get_config() is not first

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_settings(path) == AppSettings()


class TestValidation:
    """Tests for settings validation."""

    def test_unknown_log_level(self):
        with pytest.raises(ValidationError):
            AppSettings(logging={"level": "chatty"})

    def test_page_sizes(self):
        with pytest.raises(ValidationError):
            AppSettings(store={"default_page_size": 200, "max_page_size": 100})

    def test_attempts_positive(self):
        with pytest.raises(ValidationError):
            AppSettings(delivery={"max_attempts": 0})

    def test_timeouts_positive(self):
        with pytest.raises(ValidationError):
            AppSettings(messaging={"typing_timeout_seconds": 0})

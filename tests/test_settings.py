"""Tests for the YAML settings loader."""
import textwrap

import pytest

from config.settings import DatabaseConfig, EngineConfig, load_settings


@pytest.fixture(autouse=True)
def restore_cached_settings(monkeypatch):
    import config.settings as settings_module
    monkeypatch.setattr(settings_module, "_settings", settings_module._settings)


@pytest.fixture
def config_file(tmp_path):
    def write(content: str) -> str:
        path = tmp_path / "settings.yaml"
        path.write_text(textwrap.dedent(content))
        return str(path)
    return write


class TestDefaults:
    def test_database_defaults(self):
        cfg = DatabaseConfig()
        assert cfg.store_backend == "memory"
        assert "sqlite" in cfg.url
        assert cfg.store_file_dir == "./data"

    def test_engine_defaults(self):
        cfg = EngineConfig()
        assert cfg.fallback_threshold == 3
        assert cfg.upcoming_days == 6
        assert cfg.typing_delay_min_seconds == 3.0
        assert cfg.typing_delay_max_seconds == 6.0

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "nope.yaml"))
        assert settings.app_name == "FlowBot"
        assert settings.timezone == "America/Argentina/Buenos_Aires"


class TestLoadSettings:
    def test_sections_merge_with_defaults(self, config_file):
        settings = load_settings(config_file("""
            debug: true
            timezone: America/Montevideo
            database:
              store_backend: file
            engine:
              fallback_threshold: 5
              unknown_key: ignored
        """))
        assert settings.debug is True
        assert settings.timezone == "America/Montevideo"
        assert settings.database.store_backend == "file"
        assert settings.database.store_file_dir == "./data"
        assert settings.engine.fallback_threshold == 5
        assert settings.engine.upcoming_days == 6

    def test_env_substitution(self, config_file, monkeypatch):
        monkeypatch.setenv("TEST_WA_TOKEN", "tok-123")
        monkeypatch.delenv("TEST_WA_UNSET", raising=False)
        settings = load_settings(config_file("""
            whatsapp:
              access_token: "${TEST_WA_TOKEN}"
              verify_token: "${TEST_WA_UNSET}"
              known_numbers: ["${TEST_WA_TOKEN}"]
        """))
        assert settings.whatsapp.access_token == "tok-123"
        assert settings.whatsapp.verify_token == ""
        assert settings.whatsapp.known_numbers == ["tok-123"]

    def test_bundled_file_loads(self, monkeypatch):
        monkeypatch.delenv("FLOWBOT_CONFIG", raising=False)
        settings = load_settings()
        assert settings.engine.handoff_label == "Derivado"

"""
Tests for store configuration and AI settings migration.
"""

import pytest

from noteai.config import (
    CONFIG_FILENAME,
    DEFAULT_PROVIDER,
    AISettings,
    default_settings,
    get_default_store_path,
    load_config,
    load_or_create_config,
    migrate_settings,
    needs_migration,
    save_config,
    validate_settings,
)
from noteai.types import ActiveConfig


class TestStoreConfig:
    """noteai.toml round trip."""

    def test_create_and_reload(self, tmp_path):
        config = load_or_create_config(tmp_path)
        assert (tmp_path / CONFIG_FILENAME).exists()
        assert not config.allow_insecure_credentials

        config.allow_insecure_credentials = True
        config.max_tokens = 1200
        save_config(config)

        reloaded = load_config(tmp_path)
        assert reloaded.allow_insecure_credentials
        assert reloaded.max_tokens == 1200
        assert reloaded.database_path == tmp_path / "noteai.db"

    def test_missing_config(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path)

    def test_newer_version_rejected(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text("[store]\nversion = 99\n")
        with pytest.raises(ValueError, match="newer"):
            load_config(tmp_path)

    def test_store_path_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("NOTEAI_STORE_PATH", str(tmp_path / "elsewhere"))
        assert get_default_store_path() == tmp_path / "elsewhere"


class TestMigration:
    """Legacy flat settings become AISettings."""

    def test_detects_legacy_shape(self):
        assert needs_migration({"provider": "deepseek"})
        assert needs_migration({"temperature": 0.3})
        assert not needs_migration({"active_config": {"provider": "deepseek"}, "temperature": 0.3})
        assert not needs_migration({})

    def test_migrates_fields(self):
        settings = migrate_settings({
            "provider": "deepseek",
            "defaultModel": "deepseek-reasoner",
            "showThinking": False,
            "temperature": 0.2,
            "maxTokens": 2000,
            "stream": False,
            "autoSave": False,
        })
        assert settings.active_config.provider == "deepseek"
        assert settings.active_config.model == "deepseek-reasoner"
        assert settings.active_config.applied_at
        assert settings.global_show_thinking is False
        assert settings.temperature == 0.2
        assert settings.max_tokens == 2000
        assert settings.stream is False
        assert settings.auto_save is False

    def test_missing_model_gets_default(self):
        settings = migrate_settings({"provider": "openai"})
        assert settings.active_config.model == "gpt-4o-mini"

    def test_unsupported_model_kept(self):
        settings = migrate_settings({"provider": "deepseek", "defaultModel": "deepseek-v9"})
        assert settings.active_config.model == "deepseek-v9"


class TestAISettings:

    def test_round_trip(self):
        settings = AISettings(active_config=ActiveConfig("zhipu", "glm-4-air"), temperature=1.1)
        again = AISettings.from_dict(settings.to_dict())
        assert again.active_config.provider == "zhipu"
        assert again.active_config.model == "glm-4-air"
        assert again.temperature == 1.1

    def test_from_dict_fills_defaults(self):
        settings = AISettings.from_dict({})
        assert settings.active_config.provider == DEFAULT_PROVIDER
        assert settings.active_config.model == "glm-4-plus"

    def test_default_settings(self):
        settings = default_settings(temperature=0.1, max_tokens=100)
        assert settings.temperature == 0.1
        assert settings.max_tokens == 100


class TestValidateSettings:

    def test_valid(self):
        report = validate_settings(default_settings())
        assert report.is_valid
        assert report.warnings == []

    def test_unknown_provider(self):
        settings = AISettings(active_config=ActiveConfig("nope", "x"))
        report = validate_settings(settings)
        assert not report.is_valid

    def test_unsupported_model_warns(self):
        settings = AISettings(active_config=ActiveConfig("deepseek", "deepseek-v9"))
        report = validate_settings(settings)
        assert report.is_valid
        assert any("deepseek-v9" in w for w in report.warnings)

    def test_out_of_range_parameters_warn(self):
        settings = default_settings(temperature=3.0, max_tokens=0)
        report = validate_settings(settings)
        assert len(report.warnings) == 2

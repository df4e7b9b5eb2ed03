"""Tests for settings loading and validation."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from qwenproxy.config.settings import (
    ConfigurationError,
    LoggingSettings,
    SecuritySettings,
    Settings,
    StorageSettings,
    UpstreamSettings,
)


@pytest.mark.unit
class TestUpstreamSettings:
    def test_credentials_accept_lists_and_csv(self) -> None:
        from_list = UpstreamSettings(api_keys=["a", " b ", ""])
        from_csv = UpstreamSettings(api_keys="a, b,,")

        assert from_list.api_key_list == ["a", "b"]
        assert from_csv.api_key_list == ["a", "b"]
        assert UpstreamSettings().ssxmod_itna_list == []

    def test_urls_are_joined(self) -> None:
        upstream = UpstreamSettings(base_url="https://upstream.test/")

        assert upstream.chat_url == "https://upstream.test/api/chat/completions"
        assert upstream.models_url == "https://upstream.test/api/models"
        assert upstream.sts_url == "https://upstream.test/api/v1/files/getstsToken"

    def test_any_client_error_invalidates_by_default(self) -> None:
        upstream = UpstreamSettings()

        assert upstream.should_invalidate(400)
        assert upstream.should_invalidate(401)
        assert upstream.should_invalidate(429)
        assert not upstream.should_invalidate(500)

    def test_invalidation_status_list(self) -> None:
        upstream = UpstreamSettings(invalidate_on_status=[401, 403])

        assert upstream.should_invalidate(401)
        assert not upstream.should_invalidate(400)


@pytest.mark.unit
class TestValidation:
    def test_log_level_normalized(self) -> None:
        assert LoggingSettings(level="debug").level == "DEBUG"

    def test_bad_log_level_rejected(self) -> None:
        with pytest.raises(ValidationError):
            LoggingSettings(level="loud")

    def test_empty_auth_token_is_unset(self) -> None:
        assert SecuritySettings(auth_token="").auth_token is None

    def test_unknown_storage_backend_rejected(self) -> None:
        with pytest.raises(ValidationError):
            StorageSettings(backend="redis")


@pytest.mark.unit
class TestTomlConfig:
    def test_toml_values_applied(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("UPSTREAM__DEFAULT_MODEL", raising=False)
        config = tmp_path / "qwenproxy.toml"
        config.write_text(
            '[upstream]\ndefault_model = "qwen-plus"\napi_keys = ["k1", "k2"]\n'
            '[storage]\nbackend = "memory"\n',
            encoding="utf-8",
        )

        settings = Settings.from_config(config_path=config)

        assert settings.upstream.default_model == "qwen-plus"
        assert settings.upstream.api_key_list == ["k1", "k2"]
        assert settings.storage.backend == "memory"

    def test_environment_wins_over_toml(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("UPSTREAM__DEFAULT_MODEL", "qwen-from-env")
        config = tmp_path / "qwenproxy.toml"
        config.write_text('[upstream]\ndefault_model = "qwen-plus"\n', encoding="utf-8")

        settings = Settings.from_config(config_path=config)

        assert settings.upstream.default_model == "qwen-from-env"

    def test_invalid_toml_raises(self, tmp_path: Path) -> None:
        config = tmp_path / "broken.toml"
        config.write_text("[upstream\n", encoding="utf-8")

        with pytest.raises(ConfigurationError):
            Settings.from_config(config_path=config)

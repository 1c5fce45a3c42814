"""Tests for streamchat config loading."""

import pytest
import yaml

from streamchat.config import (
    ChatConfig,
    ProviderSpec,
    StreamingSpec,
    load_config,
)
from streamchat.credentials import ConfigCredentials, StaticCredentials
from streamchat.errors import ConfigError


class TestDefaults:
    def test_chat_config_defaults(self):
        config = ChatConfig()
        assert config.provider.url == "https://openrouter.ai/api/v1"
        assert config.provider.api_key_env == "OPENROUTER_API_KEY"
        assert config.streaming.batch_chunks == 2
        assert config.streaming.flush_interval == pytest.approx(0.06)
        assert config.retry.max_retries == 3
        assert config.retry.jitter is False
        assert config.rate_limit.requests_per_minute == 0
        assert config.defaults.max_tokens == 2000
        assert config.defaults.temperature == 0.7

    def test_streaming_interval_seconds(self):
        assert StreamingSpec(flush_interval_ms=250).flush_interval == 0.25


class TestLoadConfig:
    def test_load_from_file(self, tmp_path):
        path = tmp_path / "streamchat.yaml"
        path.write_text(yaml.dump({
            "provider": {"url": "http://localhost:8080/v1", "default_model": "local/model"},
            "streaming": {"batch_chunks": 4, "flush_interval_ms": 100},
            "retry": {"max_retries": 5, "jitter": True},
            "rate_limit": {"requests_per_minute": 20},
            "defaults": {"max_tokens": 1000},
            "db_path": str(tmp_path / "chats.db"),
        }))

        config = load_config(path)

        assert config.provider.url == "http://localhost:8080/v1"
        assert config.provider.default_model == "local/model"
        assert config.provider.api_key_env == "OPENROUTER_API_KEY"
        assert config.streaming.batch_chunks == 4
        assert config.retry.max_retries == 5
        assert config.retry.jitter is True
        assert config.rate_limit.requests_per_minute == 20
        assert config.defaults.max_tokens == 1000
        assert config.defaults.temperature == 0.7
        assert config.db_path == str(tmp_path / "chats.db")

    def test_missing_explicit_path_uses_defaults(self, tmp_path):
        config = load_config(tmp_path / "nope.yaml")
        assert config == ChatConfig()

    def test_empty_file_uses_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(path) == ChatConfig()

    def test_unknown_keys_ignored(self, tmp_path, caplog):
        path = tmp_path / "c.yaml"
        path.write_text(yaml.dump({"provider": {"url": "http://x/v1", "colour": "blue"}}))

        config = load_config(path)

        assert config.provider.url == "http://x/v1"
        assert "colour" in caplog.text

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("provider: [unclosed")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_non_mapping_root(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_non_mapping_section(self, tmp_path):
        path = tmp_path / "section.yaml"
        path.write_text(yaml.dump({"retry": [1, 2]}))
        with pytest.raises(ConfigError):
            load_config(path)


class TestCredentials:
    def test_explicit_key_wins(self, monkeypatch):
        monkeypatch.setenv("OPENROUTER_API_KEY", "from-env")
        creds = ConfigCredentials(ProviderSpec(api_key="explicit"))
        assert creds.get_credential() == "explicit"

    def test_env_fallback(self, monkeypatch):
        monkeypatch.setenv("STREAMCHAT_TEST_KEY", "from-env")
        creds = ConfigCredentials(ProviderSpec(api_key_env="STREAMCHAT_TEST_KEY"))
        assert creds.get_credential() == "from-env"

    def test_no_key(self, monkeypatch):
        monkeypatch.delenv("STREAMCHAT_TEST_KEY", raising=False)
        creds = ConfigCredentials(ProviderSpec(api_key_env="STREAMCHAT_TEST_KEY"))
        assert creds.get_credential() is None

    def test_static(self):
        assert StaticCredentials("k").get_credential() == "k"
        assert StaticCredentials("").get_credential() is None

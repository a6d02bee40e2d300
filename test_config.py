#!/usr/bin/env python3
"""
Test configuration loading, validation and credential resolution.
"""

import pytest
import yaml

from chatstream.config import Configuration
from chatstream.llm.exceptions import CredentialMissingError

BASE = {
    "llm": {"base_url": "https://llm.test/v1/", "model": "m", "api_key_env": "CS_KEY"},
    "storage": {"path": "~/chat-data", "max_bytes": 1000},
}


def test_shipped_config_loads():
    config = Configuration()
    assert config.get_llm_config()["model"] == "x-ai/grok-4.1-fast"
    assert config.get_streaming_config() == {"publish_interval": 0.1}
    assert config.get_chat_config()["title_max_chars"] == 30


def test_config_from_explicit_path(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump(BASE))
    config = Configuration(str(path))
    assert config.get_llm_config()["base_url"] == "https://llm.test/v1"


def test_non_dict_yaml_rejected(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ValueError, match="must be YAML dict"):
        Configuration(str(path))


def test_missing_model_rejected():
    config = Configuration.from_dict({"llm": {"base_url": "https://x"}})
    with pytest.raises(ValueError, match="llm.model must be explicitly configured"):
        config.get_llm_config()


def test_user_key_wins_over_environment(monkeypatch):
    monkeypatch.setenv("CS_KEY", "from-env")
    config = Configuration.from_dict(BASE)
    assert config.resolve_api_key("  typed-key ") == "typed-key"
    assert config.resolve_api_key("") == "from-env"


def test_missing_key_raises(monkeypatch):
    monkeypatch.delenv("CS_KEY", raising=False)
    config = Configuration.from_dict(BASE)
    with pytest.raises(CredentialMissingError, match="API key is required"):
        config.resolve_api_key(None)


def test_negative_publish_interval_rejected():
    config = Configuration.from_dict({"streaming": {"publish_interval_ms": -5}})
    with pytest.raises(ValueError):
        config.get_streaming_config()


def test_storage_config_expands_home():
    storage = Configuration.from_dict(BASE).get_storage_config()
    assert not storage["path"].startswith("~")
    assert storage["max_bytes"] == 1000
    assert storage["fsync"] is True


def test_invalid_quota_rejected():
    config = Configuration.from_dict({"storage": {"path": "/tmp/x", "max_bytes": 0}})
    with pytest.raises(ValueError, match="max_bytes"):
        config.get_storage_config()


def test_model_falls_back_to_configured_model():
    config = Configuration.from_dict(BASE)
    assert config.resolve_model(" other/model ") == "other/model"
    assert config.resolve_model("") == "m"
    assert config.resolve_model(None) == "m"

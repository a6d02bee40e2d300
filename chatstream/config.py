"""Configuration management for the chat client."""

from __future__ import annotations

import os
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel

from chatstream.llm.exceptions import CredentialMissingError

CONFIG_ENV_VAR = "CHATSTREAM_CONFIG"
MISSING_KEY_MESSAGE = "API key is required. Please set it in Settings."


class ChatSettings(BaseModel):
    """User-entered settings; empty values fall back to configuration."""
    api_key: str = ""
    model: str = ""
    system_prompt: str = ""


class Configuration:
    """Manages configuration and environment variables for the chat client."""

    def __init__(self, config_path: str | None = None) -> None:
        """Initialize configuration from YAML and environment variables."""
        self.load_env()  # Load .env for API keys
        self.config_path = config_path or os.getenv(CONFIG_ENV_VAR) or os.path.join(
            os.path.dirname(__file__), "config.yaml"
        )
        self._config = self._load_yaml_config(self.config_path)

    @staticmethod
    def load_env() -> None:
        """Load environment variables from .env file."""
        load_dotenv()

    @staticmethod
    def _load_yaml_config(config_path: str) -> dict[str, Any]:
        """Load configuration from YAML file."""
        with open(config_path) as file:
            config = yaml.safe_load(file)
            if not isinstance(config, dict):
                raise ValueError(
                    f"Config file must be YAML dict, got {type(config)}"
                )
            return config

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> Configuration:
        """Build a configuration from an in-memory dict (no file access)."""
        instance = cls.__new__(cls)
        instance.config_path = None
        instance._config = config
        return instance

    def get_config_dict(self) -> dict[str, Any]:
        """Get the full configuration dictionary."""
        return self._config

    def get_llm_config(self) -> dict[str, Any]:
        """Get LLM endpoint configuration.

        Returns:
            LLM configuration dictionary.

        Raises:
            ValueError: If a required parameter is missing or invalid.
        """
        llm_config = self._config.get("llm", {})

        required_keys = ["base_url", "model"]
        for key in required_keys:
            if not llm_config.get(key):
                raise ValueError(
                    f"llm.{key} must be explicitly configured in config.yaml"
                )

        timeout = llm_config.get("timeout", 60.0)
        if not isinstance(timeout, int | float) or timeout <= 0:
            raise ValueError("llm.timeout must be a positive number")

        return {
            "base_url": llm_config["base_url"].rstrip("/"),
            "model": llm_config["model"],
            "app_name": llm_config.get("app_name", "ChatAI"),
            "app_url": llm_config.get("app_url", ""),
            "timeout": float(timeout),
            "api_key_env": llm_config.get("api_key_env", "OPENROUTER_API_KEY"),
        }

    def resolve_api_key(self, user_key: str | None = None) -> str:
        """Get the API key, preferring the one entered in settings.

        Returns:
            The API key as a string.

        Raises:
            CredentialMissingError: If neither settings nor the environment
                provide a key.
        """
        if user_key and user_key.strip():
            return user_key.strip()

        env_key = self.get_llm_config()["api_key_env"]
        api_key = os.getenv(env_key)
        if not api_key:
            raise CredentialMissingError(MISSING_KEY_MESSAGE)
        return api_key

    def resolve_model(self, user_model: str | None = None) -> str:
        """Get the model id, preferring the one entered in settings."""
        if user_model and user_model.strip():
            return user_model.strip()
        return self.get_llm_config()["model"]

    def get_streaming_config(self) -> dict[str, Any]:
        """Get streaming configuration.

        Returns:
            Dictionary with ``publish_interval`` in seconds.

        Raises:
            ValueError: If the publish interval is negative or not a number.
        """
        streaming = self._config.get("streaming", {})
        interval_ms = streaming.get("publish_interval_ms", 100)
        if not isinstance(interval_ms, int | float) or interval_ms < 0:
            raise ValueError(
                "streaming.publish_interval_ms must be a non-negative number"
            )
        return {"publish_interval": interval_ms / 1000.0}

    def get_storage_config(self) -> dict[str, Any]:
        """Get storage configuration.

        Raises:
            ValueError: If the storage path is missing or max_bytes is invalid.
        """
        storage = self._config.get("storage", {})
        if not storage.get("path"):
            raise ValueError("storage.path must be explicitly configured")

        max_bytes = storage.get("max_bytes")
        if max_bytes is not None and (not isinstance(max_bytes, int) or max_bytes <= 0):
            raise ValueError("storage.max_bytes must be a positive integer")

        return {
            "path": os.path.expanduser(storage["path"]),
            "max_bytes": max_bytes,
            "fsync": bool(storage.get("fsync", True)),
        }

    def get_chat_config(self) -> dict[str, Any]:
        """Get session defaults (title rules, system prompt)."""
        chat = self._config.get("chat", {})
        title_max_chars = chat.get("title_max_chars", 30)
        if not isinstance(title_max_chars, int) or title_max_chars < 1:
            raise ValueError("chat.title_max_chars must be a positive integer")
        return {
            "default_title": chat.get("default_title") or "New Chat",
            "title_max_chars": title_max_chars,
            "system_prompt": chat.get("system_prompt") or "",
        }

    def get_logging_config(self) -> dict[str, Any]:
        """Get logging configuration from YAML."""
        return self._config.get("logging", {})

    def default_settings(self) -> ChatSettings:
        """Settings seeded from configuration; api_key stays empty."""
        return ChatSettings(
            model=self.get_llm_config()["model"],
            system_prompt=self.get_chat_config()["system_prompt"],
        )

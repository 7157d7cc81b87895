"""Configuration management for localchat.

Loads settings from YAML config file with Pydantic validation.
Config file location: ~/.localchat/config.yaml
"""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, model_validator


# === Default paths ===

def get_localchat_home() -> Path:
    """Get the localchat data directory (~/.localchat)."""
    return Path(os.environ.get("LOCALCHAT_HOME", Path.home() / ".localchat"))


# === Configuration Models ===


class OllamaConfig(BaseModel):
    """Connection settings for the generation backend."""

    base_url: str = "http://localhost:11434"
    default_model: str = "deepseek-r1:14b"
    timeout: float = 60.0  # seconds, applies to connect and each read


class ContextWindowConfig(BaseModel):
    """Token budget for a single session's conversation history."""

    max_tokens: int = Field(default=8192, gt=0)
    trim_threshold: int = Field(default=7000, gt=0)
    summarization_threshold: int = Field(default=6000, gt=0)
    context_messages: int = Field(default=5, gt=0)  # Recent messages sent as history
    encoding: str = "cl100k_base"

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def check_thresholds(self) -> ContextWindowConfig:
        if self.trim_threshold >= self.max_tokens:
            raise ValueError(
                f"trim_threshold ({self.trim_threshold}) must be below "
                f"max_tokens ({self.max_tokens})"
            )
        return self


class StorageConfig(BaseModel):
    """Durable session storage configuration."""

    db_path: str | None = None  # Defaults to ~/.localchat/chat.db

    def resolve_db_path(self) -> Path:
        if self.db_path:
            return Path(self.db_path).expanduser()
        return get_localchat_home() / "chat.db"


class ChatConfig(BaseModel):
    """Root configuration for localchat."""

    ollama: OllamaConfig = Field(default_factory=OllamaConfig)
    context: ContextWindowConfig = Field(default_factory=ContextWindowConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    log_level: str = "WARNING"


# === Config Loading ===

# Environment variables that override values from the YAML file
_ENV_OVERRIDES = {
    "OLLAMA_API_URL": "base_url",
    "OLLAMA_DEFAULT_MODEL": "default_model",
}


def _apply_env_overrides(config: ChatConfig) -> ChatConfig:
    """Apply OLLAMA_* environment variables on top of the loaded config."""
    updates: dict[str, object] = {}
    for env_name, field_name in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            updates[field_name] = value

    timeout_ms = os.environ.get("OLLAMA_TIMEOUT_MS")
    if timeout_ms:
        try:
            updates["timeout"] = int(timeout_ms) / 1000
        except ValueError as e:
            raise ValueError(f"OLLAMA_TIMEOUT_MS must be an integer, got {timeout_ms!r}") from e

    if not updates:
        return config
    ollama = config.ollama.model_copy(update=updates)
    return config.model_copy(update={"ollama": ollama})


def load_config(config_path: Path | None = None) -> ChatConfig:
    """Load configuration from YAML file.

    Falls back to defaults if the config file doesn't exist.
    Environment overrides are applied last.
    """
    if config_path is None:
        config_path = get_localchat_home() / "config.yaml"

    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        config = ChatConfig(**raw)
    else:
        config = ChatConfig()

    return _apply_env_overrides(config)


def save_default_config(config_path: Path | None = None) -> Path:
    """Save the default configuration to a YAML file.

    Creates parent directories if needed. Returns the path.
    """
    if config_path is None:
        config_path = get_localchat_home() / "config.yaml"

    config_path.parent.mkdir(parents=True, exist_ok=True)

    config = ChatConfig()
    data = config.model_dump()

    with open(config_path, "w", encoding="utf-8") as f:
        yaml.dump(data, f, default_flow_style=False, allow_unicode=True, sort_keys=False)

    return config_path

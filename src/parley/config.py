import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from parley.errors import ConfigError

logger = logging.getLogger(__name__)


MODEL_ALIASES = {
    "4o": "gpt-4o",
    "4o-mini": "gpt-4o-mini",
    "3.5": "gpt-3.5-turbo",
    "sonnet": "claude-sonnet-4-20250514",
    "haiku": "claude-3-5-haiku-20241022",
    "flash": "gemini/gemini-2.5-flash",
    "deepseek": "deepseek/deepseek-chat",
}


def resolve_model_alias(name: str) -> str:
    return MODEL_ALIASES.get(name.lower(), name)


class LLMConfig(BaseModel):
    model: str = "gpt-3.5-turbo"
    temperature: float = Field(default=0.5, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2000, ge=100, le=32000)
    presence_penalty: float = Field(default=0.0, ge=-2.0, le=2.0)

    @field_validator("model")
    @classmethod
    def _model_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("model must not be empty")
        return resolve_model_alias(value)

    def request_kwargs(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "presence_penalty": self.presence_penalty,
        }


class ChatConfig(BaseModel):
    llm: LLMConfig = Field(default_factory=LLMConfig)
    summary_model: str = "gpt-3.5-turbo"
    history_message_count: int = Field(default=4, ge=0, le=64)
    compress_message_length_threshold: int = Field(default=1000, ge=500, le=4000)
    send_bot_messages: bool = True
    context_ceiling: int = Field(default=4000, ge=1)
    large_message_len: int = Field(default=1000, ge=1)
    knowledge_snippet_max_len: int = Field(default=1000, ge=1)
    topic_min_len: int = Field(default=50, ge=0)

    def summary_llm(self) -> LLMConfig:
        return self.llm.model_copy(update={"model": resolve_model_alias(self.summary_model)})


def get_optional_env(name: str, default: str | None = None) -> str | None:
    return os.environ.get(name, default)


_ENV_OVERRIDES = {
    "PARLEY_MODEL": ("llm", "model"),
    "PARLEY_MAX_TOKENS": ("llm", "max_tokens"),
    "PARLEY_SUMMARY_MODEL": (None, "summary_model"),
    "PARLEY_HISTORY_MESSAGE_COUNT": (None, "history_message_count"),
    "PARLEY_COMPRESS_THRESHOLD": (None, "compress_message_length_threshold"),
}


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = get_optional_env(env_name)
        if value is None:
            continue
        target = data.setdefault(section, {}) if section else data
        target[key] = value
    return data


def load_config(path: str | Path | None = None) -> ChatConfig:
    if path is None:
        path = get_optional_env("PARLEY_CONFIG")

    data: dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")
        try:
            data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse config file {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Invalid config format in {config_path}, expected a mapping")

    data = _apply_env_overrides(data)
    try:
        return ChatConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

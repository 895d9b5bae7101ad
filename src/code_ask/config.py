from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from pydantic_settings import BaseSettings

PROVIDERS = ("openai", "openai-compatible", "anthropic", "google", "ollama")

DEFAULT_OLLAMA_BASE_URL = "http://localhost:11434/v1"


class Settings(BaseSettings):
    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    provider: str = "openai"
    model: str = "gpt-4o-mini"
    base_url: str = ""
    max_tokens: int = 8192

    openai_api_key: str = ""
    anthropic_api_key: str = ""
    google_api_key: str = ""

    # Workspace
    work_dir: str = "."
    data_dir: str = "~/.local/share/code-ask"
    # Full copies of truncated tool output; empty disables the side channel
    output_dir: str = "~/.local/share/code-ask/outputs"

    max_rounds: int = 10
    search_timeout: float = 30.0

    def api_key_for(self, provider: str) -> str:
        if provider == "anthropic":
            return self.anthropic_api_key
        if provider == "google":
            return self.google_api_key
        if provider == "ollama":
            return "ollama"
        return self.openai_api_key

    @property
    def resolved_data_dir(self) -> Path:
        return Path(self.data_dir).expanduser()

    @property
    def resolved_output_dir(self) -> Path | None:
        if not self.output_dir:
            return None
        return Path(self.output_dir).expanduser()


settings = Settings()


@dataclass
class ModelConfig:
    name: str = ""
    provider: str = ""
    model: str = ""
    base_url: str = ""
    api_key: str = ""
    max_tokens: int | None = None
    temperature: float | None = None


@dataclass
class LoopLimits:
    """Stuck-loop heuristics. Empirical values, kept tunable."""

    max_rounds: int = 10
    empty_rounds_to_stop: int = 3
    empty_rounds_for_hint: int = 2
    invocations_to_stop: int = 8
    empty_rounds_with_invocations: int = 2
    min_useful_chars: int = 30
    evidence_excerpts: int = 3
    evidence_excerpt_chars: int = 500


_models_config_cache: dict | None = None


def _load_models_yaml() -> dict:
    global _models_config_cache
    if _models_config_cache is not None:
        return _models_config_cache

    config_path = os.environ.get("MODELS_CONFIG_PATH", "models.yaml")
    path = Path(config_path)
    if not path.is_file():
        _models_config_cache = {}
        return _models_config_cache

    import yaml

    with open(path) as f:
        _models_config_cache = yaml.safe_load(f) or {}
    return _models_config_cache


def get_model_config(name: str = "") -> ModelConfig:
    """Get a model config by name, merging the default section + named override.

    Falls back to Settings env variables if models.yaml doesn't exist.
    """
    data = _load_models_yaml()

    if not data:
        # No YAML config, use env-based Settings
        return _finish(
            name,
            {
                "provider": settings.provider,
                "model": settings.model,
                "base_url": settings.base_url,
                "api_key": "",
                "max_tokens": settings.max_tokens,
                "temperature": None,
            },
        )

    default = data.get("default", {})
    merged = {
        "provider": default.get("provider", settings.provider),
        "model": default.get("model", settings.model),
        "base_url": default.get("base_url", settings.base_url),
        "api_key": default.get("api_key", ""),
        "max_tokens": default.get("max_tokens"),
        "temperature": default.get("temperature"),
    }

    if name:
        override = data.get("models", {}).get(name, {})
        for key, value in override.items():
            if key in merged:
                merged[key] = value

    return _finish(name, merged)


def _finish(name: str, merged: dict) -> ModelConfig:
    provider = merged["provider"]
    if provider not in PROVIDERS:
        raise ValueError(f"unknown provider: {provider!r}")
    base_url = merged["base_url"] or ""
    if provider == "ollama" and not base_url:
        base_url = DEFAULT_OLLAMA_BASE_URL
    return ModelConfig(
        name=name or "default",
        provider=provider,
        model=merged["model"],
        base_url=base_url,
        api_key=merged["api_key"] or settings.api_key_for(provider),
        max_tokens=merged["max_tokens"],
        temperature=merged["temperature"],
    )

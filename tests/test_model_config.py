"""Tests for models.yaml configuration loading and ModelConfig merging."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from code_ask.config import DEFAULT_OLLAMA_BASE_URL, ModelConfig, _load_models_yaml, get_model_config, settings


@pytest.fixture(autouse=True)
def _reset_cache():
    """Reset the module-level YAML cache before each test."""
    import code_ask.config as cfg
    cfg._models_config_cache = None
    yield
    cfg._models_config_cache = None


# ---------------------------------------------------------------------------
# ModelConfig dataclass
# ---------------------------------------------------------------------------

def test_model_config_defaults():
    mc = ModelConfig()
    assert mc.model == ""
    assert mc.provider == ""
    assert mc.temperature is None
    assert mc.max_tokens is None
    assert mc.base_url == ""


# ---------------------------------------------------------------------------
# _load_models_yaml
# ---------------------------------------------------------------------------

def test_load_yaml_missing_file(tmp_path):
    """When file doesn't exist, returns empty dict."""
    with patch.dict("os.environ", {"MODELS_CONFIG_PATH": str(tmp_path / "nope.yaml")}):
        result = _load_models_yaml()
    assert result == {}


def test_load_yaml_empty_file(tmp_path):
    yaml_file = tmp_path / "models.yaml"
    yaml_file.write_text("")
    with patch.dict("os.environ", {"MODELS_CONFIG_PATH": str(yaml_file)}):
        result = _load_models_yaml()
    assert result == {}


def test_load_yaml_caches_result(tmp_path):
    """Second call returns cached dict without re-reading."""
    yaml_file = tmp_path / "models.yaml"
    yaml_file.write_text("default:\n  model: m1\n")
    with patch.dict("os.environ", {"MODELS_CONFIG_PATH": str(yaml_file)}):
        first = _load_models_yaml()
        yaml_file.write_text("default:\n  model: m2\n")
        second = _load_models_yaml()
    assert first is second
    assert first["default"]["model"] == "m1"


# ---------------------------------------------------------------------------
# get_model_config: no YAML file (env fallback)
# ---------------------------------------------------------------------------

def test_no_yaml_falls_back_to_settings(tmp_path):
    with patch.dict("os.environ", {"MODELS_CONFIG_PATH": str(tmp_path / "missing.yaml")}):
        mc = get_model_config()
    assert mc.name == "default"
    assert mc.provider == settings.provider
    assert mc.model == settings.model
    assert mc.max_tokens == settings.max_tokens
    assert mc.temperature is None


def test_no_yaml_name_ignored(tmp_path):
    with patch.dict("os.environ", {"MODELS_CONFIG_PATH": str(tmp_path / "missing.yaml")}):
        mc = get_model_config("fast")
    assert mc.model == settings.model
    assert mc.name == "fast"


# ---------------------------------------------------------------------------
# get_model_config: default section and named overrides
# ---------------------------------------------------------------------------

YAML_WITH_MODELS = (
    "default:\n"
    "  provider: openai\n"
    "  model: gpt-4o-mini\n"
    "  temperature: 0.2\n"
    "  api_key: sk-default\n"
    "models:\n"
    "  claude:\n"
    "    provider: anthropic\n"
    "    model: claude-sonnet-4-5\n"
    "    api_key: sk-ant\n"
    "    max_tokens: 4096\n"
    "  local:\n"
    "    provider: ollama\n"
    "    model: qwen2.5-coder\n"
    "  gemini:\n"
    "    provider: google\n"
    "    model: gemini-2.5-flash\n"
    "    temperature: 0.0\n"
)


def test_default_section(tmp_path):
    (tmp_path / "m.yaml").write_text(YAML_WITH_MODELS)
    with patch.dict("os.environ", {"MODELS_CONFIG_PATH": str(tmp_path / "m.yaml")}):
        mc = get_model_config()
    assert mc.provider == "openai"
    assert mc.model == "gpt-4o-mini"
    assert mc.temperature == 0.2
    assert mc.api_key == "sk-default"
    assert mc.max_tokens is None


def test_named_override_merges_with_default(tmp_path):
    (tmp_path / "m.yaml").write_text(YAML_WITH_MODELS)
    with patch.dict("os.environ", {"MODELS_CONFIG_PATH": str(tmp_path / "m.yaml")}):
        mc = get_model_config("claude")
    assert mc.name == "claude"
    assert mc.provider == "anthropic"
    assert mc.model == "claude-sonnet-4-5"
    assert mc.max_tokens == 4096
    assert mc.api_key == "sk-ant"
    # temperature inherited from default
    assert mc.temperature == 0.2


def test_zero_temperature_kept(tmp_path):
    (tmp_path / "m.yaml").write_text(YAML_WITH_MODELS)
    with patch.dict("os.environ", {"MODELS_CONFIG_PATH": str(tmp_path / "m.yaml")}):
        mc = get_model_config("gemini")
    assert mc.temperature == 0.0


def test_ollama_gets_local_base_url(tmp_path):
    (tmp_path / "m.yaml").write_text(YAML_WITH_MODELS)
    with patch.dict("os.environ", {"MODELS_CONFIG_PATH": str(tmp_path / "m.yaml")}):
        mc = get_model_config("local")
    assert mc.provider == "ollama"
    assert mc.base_url == DEFAULT_OLLAMA_BASE_URL


def test_unknown_name_gets_default(tmp_path):
    (tmp_path / "m.yaml").write_text(YAML_WITH_MODELS)
    with patch.dict("os.environ", {"MODELS_CONFIG_PATH": str(tmp_path / "m.yaml")}):
        mc = get_model_config("nonexistent")
    assert mc.model == "gpt-4o-mini"
    assert mc.temperature == 0.2


def test_unknown_provider_rejected(tmp_path):
    (tmp_path / "m.yaml").write_text("default:\n  provider: bedrock\n  model: m\n")
    with patch.dict("os.environ", {"MODELS_CONFIG_PATH": str(tmp_path / "m.yaml")}):
        with pytest.raises(ValueError, match="unknown provider"):
            get_model_config()


def test_api_key_from_settings_when_missing(tmp_path):
    (tmp_path / "m.yaml").write_text("default:\n  provider: anthropic\n  model: m\n")
    with patch.dict("os.environ", {"MODELS_CONFIG_PATH": str(tmp_path / "m.yaml")}):
        mc = get_model_config()
    assert mc.api_key == settings.anthropic_api_key


# ---------------------------------------------------------------------------
# get_model_config: null handling and minimal YAML
# ---------------------------------------------------------------------------

def test_null_values_in_yaml(tmp_path):
    yaml_content = (
        "default:\n"
        "  model: m\n"
        "  max_tokens: null\n"
        "  temperature: null\n"
    )
    (tmp_path / "m.yaml").write_text(yaml_content)
    with patch.dict("os.environ", {"MODELS_CONFIG_PATH": str(tmp_path / "m.yaml")}):
        mc = get_model_config()
    assert mc.max_tokens is None
    assert mc.temperature is None


def test_yaml_no_default_section(tmp_path):
    """YAML with only a models section: default fields come from Settings."""
    (tmp_path / "m.yaml").write_text("models:\n  big:\n    model: gpt-4.1\n")
    with patch.dict("os.environ", {"MODELS_CONFIG_PATH": str(tmp_path / "m.yaml")}):
        mc = get_model_config("big")
    assert mc.model == "gpt-4.1"
    assert mc.provider == settings.provider

import pydantic
import pytest

from graphchat_core.config.settings import Settings
from graphchat_core.domain.exceptions import ValidationError
from graphchat_core.prompts import DEFAULT_SYSTEM_INSTRUCTIONS_FILE, load_system_prompt


def test_settings_defaults():
    s = Settings(_env_file=None)
    assert s.default_model == "gpt-5.2-high"
    assert s.stream_read_timeout >= s.http_timeout
    assert s.anthropic_version == "2023-06-01"
    assert 256 <= s.ink_max_dim_px <= 8192


def test_blank_api_key_becomes_none():
    assert Settings(_env_file=None, openai_api_key="   ").openai_api_key is None


def test_short_api_key_rejected():
    with pytest.raises(pydantic.ValidationError):
        Settings(_env_file=None, anthropic_api_key="abc")


def test_ink_limits_validated():
    with pytest.raises(pydantic.ValidationError):
        Settings(_env_file=None, ink_raster_scale=10)


def test_yaml_config_source(tmp_path, monkeypatch):
    cfg = tmp_path / "config.yaml"
    cfg.write_text("http_timeout: 42\nstorage_root: /tmp/graphchat\n", encoding="utf-8")
    monkeypatch.setenv("GRAPHCHAT_CONFIG_FILE", str(cfg))
    monkeypatch.delenv("HTTP_TIMEOUT", raising=False)
    s = Settings(_env_file=None)
    assert s.http_timeout == 42
    assert s.storage_root == "/tmp/graphchat"


def test_system_prompt_sources(tmp_path):
    assert load_system_prompt() == DEFAULT_SYSTEM_INSTRUCTIONS_FILE.read_text(encoding="utf-8")
    assert load_system_prompt("") == ""
    custom = tmp_path / "custom.md"
    custom.write_text("Be brief.", encoding="utf-8")
    assert load_system_prompt(None, str(custom)) == "Be brief."


def test_missing_system_prompt_file_is_validation_error():
    with pytest.raises(ValidationError) as exc:
        load_system_prompt(None, "/nonexistent/prompt.md")
    assert exc.value.code == "SYSTEM_PROMPT_UNREADABLE"

# tests/test_config.py
import pytest
from pydantic import ValidationError

from switchboard import config as config_module
from switchboard.config import Settings


def test_defaults_cover_every_provider():
    settings = Settings()
    assert list(settings.providers) == ["native", "local-gpu", "remote-api"]
    assert settings.selection.allow_remote_auto_select is False
    assert settings.providers["remote-api"].backend == "openai"
    assert settings.providers["local-gpu"].priority < settings.providers["remote-api"].priority


def test_yaml_overrides_merge_over_defaults():
    settings = Settings(providers={"remote-api": {"backend": "ollama", "base_url": "http://localhost:11434"}})
    remote = settings.providers["remote-api"]
    assert remote.backend == "ollama"
    assert remote.priority == 3
    assert "native" in settings.providers


def test_env_vars_expanded(monkeypatch):
    monkeypatch.setenv("SB_TEST_KEY", "sk-from-env")
    settings = Settings(providers={"remote-api": {"api_key": "${SB_TEST_KEY}"}})
    assert settings.providers["remote-api"].api_key == "sk-from-env"

    monkeypatch.delenv("SB_TEST_KEY")
    assert Settings(providers={"remote-api": {"api_key": "${SB_TEST_KEY}"}}).providers["remote-api"].api_key == ""


def test_generation_limits_validated():
    with pytest.raises(ValidationError):
        Settings(generation={"temperature": 2.0})
    with pytest.raises(ValidationError):
        Settings(generation={"top_k": 0})


def test_config_file_from_env(tmp_path, monkeypatch):
    path = tmp_path / "switchboard.yaml"
    path.write_text(
        "selection:\n"
        "  default_provider: remote-api\n"
        "  probe_timeout: 2.5\n"
        "hardware:\n"
        "  has_gpu: true\n"
        "  estimated_vram_gb: 12\n"
    )
    monkeypatch.setenv("SWITCHBOARD_CONFIG", str(path))
    try:
        settings = config_module.reload_settings()
        assert settings.selection.default_provider == "remote-api"
        assert settings.selection.probe_timeout == 2.5
        assert settings.hardware.has_gpu is True
    finally:
        monkeypatch.delenv("SWITCHBOARD_CONFIG")
        config_module.reload_settings()

"""Tests for settings persistence and overrides."""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from chatlens.services.settings import Settings, SettingsStore, redact_secret

_ENV_NAMES = (
    "CHATLENS_API_KEY",
    "CHATLENS_BASE_URL",
    "CHATLENS_MODEL",
    "CHATLENS_PROVIDER",
    "CHATLENS_DEBUG_LOGGING",
    "CHATLENS_REQUEST_TIMEOUT",
    "CHATLENS_TEMPERATURE",
    "CHATLENS_MAX_TOKENS",
    "CHATLENS_MAX_TOOL_ROUNDS",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_missing_file_gives_defaults(tmp_path: Path) -> None:
    settings = SettingsStore(tmp_path / "settings.json").load()

    assert settings == Settings()
    assert settings.provider == "deepseek"
    assert settings.max_tool_rounds == 5


def test_save_and_load_roundtrip(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "settings.json"
    store = SettingsStore(path)
    original = Settings(provider="qwen", api_key="sk-secret", default_headers={"X-App": "chatlens"})

    assert store.save(original) == path
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["version"] == 1
    assert store.load() == original
    if os.name != "nt":
        assert path.stat().st_mode & 0o777 == 0o600


def test_invalid_files_fall_back_to_defaults(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"

    path.write_text("{not json", encoding="utf-8")
    assert SettingsStore(path).load() == Settings()

    path.write_text("[1, 2]", encoding="utf-8")
    assert SettingsStore(path).load() == Settings()


def test_unknown_keys_are_ignored(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"model": "qwen-max", "theme": "dark"}), encoding="utf-8")

    assert SettingsStore(path).load().model == "qwen-max"


def test_runtime_overrides_skip_none(tmp_path: Path) -> None:
    store = SettingsStore(tmp_path / "settings.json")
    store.save(Settings(model="deepseek-chat", api_key="file-key"))

    settings = store.load(overrides={"model": "deepseek-reasoner", "api_key": None, "bogus": 1})

    assert settings.model == "deepseek-reasoner"
    assert settings.api_key == "file-key"


def test_environment_beats_runtime_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CHATLENS_API_KEY", "env-key")
    monkeypatch.setenv("CHATLENS_DEBUG_LOGGING", "yes")
    monkeypatch.setenv("CHATLENS_MAX_TOOL_ROUNDS", "3")
    monkeypatch.setenv("CHATLENS_TEMPERATURE", "0.1")

    settings = SettingsStore(tmp_path / "settings.json").load(overrides={"api_key": "cli-key"})

    assert settings.api_key == "env-key"
    assert settings.debug_logging is True
    assert settings.max_tool_rounds == 3
    assert settings.temperature == 0.1


def test_malformed_numeric_environment_is_ignored(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CHATLENS_MAX_TOKENS", "lots")
    monkeypatch.setenv("CHATLENS_REQUEST_TIMEOUT", "soon")

    settings = SettingsStore(tmp_path / "settings.json").load()

    assert settings.max_tokens == 2048
    assert settings.request_timeout == 90.0


def test_client_settings_resolve_provider_defaults() -> None:
    client = Settings(provider="qwen", api_key="k").client_settings()

    assert client.base_url == "https://dashscope.aliyuncs.com/compatible-mode/v1"
    assert client.model == "qwen-plus"
    assert client.default_headers is None


def test_agent_config_uses_settings_and_overrides() -> None:
    config = Settings(max_tool_rounds=2, temperature=0.3).agent_config(max_tokens=99)

    assert config.max_rounds == 2
    assert config.temperature == 0.3
    assert config.max_tokens == 99


def test_redact_secret() -> None:
    assert redact_secret("") == ""
    assert redact_secret("abcd") == "****"
    assert redact_secret("sk-123456") == "sk*****56"

"""Tests for configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from tether.config import AIConfig, load_config, resolve_model


def _write_config(path: Path, data: dict) -> Path:
    config_file = path / "config.yaml"
    config_file.write_text(yaml.dump(data))
    return config_file


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("AI_CHAT_BASE_URL", "AI_CHAT_API_KEY", "AI_CHAT_MODEL", "AI_CHAT_SYSTEM_PROMPT", "AI_CHAT_VERIFY_SSL"):
        monkeypatch.delenv(name, raising=False)


class TestLoadConfig:
    def test_minimal_file(self, tmp_path: Path) -> None:
        config_file = _write_config(
            tmp_path,
            {"ai": {"base_url": "http://localhost:1/v1", "api_key": "k"}, "app": {"data_dir": str(tmp_path / "data")}},
        )
        config = load_config(config_file)
        assert config.ai.base_url == "http://localhost:1/v1"
        assert config.ai.model == "gpt-4o-mini"
        assert config.ai.verify_ssl is True
        assert config.agent.max_steps == 100
        assert config.agent.interrupt_text == "[interrupted by user]"
        assert config.stream.grace_period == 0.5
        assert config.app.data_dir.is_dir()

    def test_env_fallback(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AI_CHAT_BASE_URL", "http://env/v1")
        monkeypatch.setenv("AI_CHAT_API_KEY", "env-key")
        monkeypatch.setenv("AI_CHAT_MODEL", "custom-model")
        monkeypatch.setenv("AI_CHAT_VERIFY_SSL", "false")
        config_file = _write_config(tmp_path, {"app": {"data_dir": str(tmp_path / "data")}})
        config = load_config(config_file)
        assert config.ai.base_url == "http://env/v1"
        assert config.ai.model == "custom-model"
        assert config.ai.models[0] == "custom-model"
        assert config.ai.verify_ssl is False

    def test_file_overrides_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AI_CHAT_BASE_URL", "http://env/v1")
        config_file = _write_config(
            tmp_path,
            {"ai": {"base_url": "http://file/v1", "api_key": "k"}, "app": {"data_dir": str(tmp_path / "data")}},
        )
        assert load_config(config_file).ai.base_url == "http://file/v1"

    def test_sections(self, tmp_path: Path) -> None:
        config_file = _write_config(
            tmp_path,
            {
                "ai": {"base_url": "http://x/v1", "api_key": "k", "models": ["a", "b"]},
                "app": {"data_dir": str(tmp_path / "data"), "port": 9000},
                "agent": {"max_steps": 5, "interrupt_text": "[stopped]"},
                "stream": {"grace_period": 1.5, "high_water_mark": 10, "retained_streams": 3},
            },
        )
        config = load_config(config_file)
        assert config.ai.models == ["a", "b"]
        assert config.ai.model == "a"
        assert config.app.port == 9000
        assert config.agent.max_steps == 5
        assert config.agent.interrupt_text == "[stopped]"
        assert config.stream.grace_period == 1.5
        assert config.stream.high_water_mark == 10
        assert config.stream.retained_streams == 3

    def test_missing_base_url(self, tmp_path: Path) -> None:
        config_file = _write_config(tmp_path, {"ai": {"api_key": "k"}})
        with pytest.raises(ValueError, match="base_url is required"):
            load_config(config_file)

    def test_missing_api_key(self, tmp_path: Path) -> None:
        config_file = _write_config(tmp_path, {"ai": {"base_url": "http://x/v1"}})
        with pytest.raises(ValueError, match="api_key is required"):
            load_config(config_file)

    def test_max_steps_must_be_positive(self, tmp_path: Path) -> None:
        config_file = _write_config(
            tmp_path,
            {
                "ai": {"base_url": "http://x/v1", "api_key": "k"},
                "app": {"data_dir": str(tmp_path / "data")},
                "agent": {"max_steps": 0},
            },
        )
        with pytest.raises(ValueError, match="max_steps"):
            load_config(config_file)


class TestResolveModel:
    def test_known_model(self) -> None:
        config = AIConfig(base_url="x", api_key="k", model="a", models=["a", "b"])
        assert resolve_model(config, "b") == "b"

    def test_unknown_or_missing_model(self) -> None:
        config = AIConfig(base_url="x", api_key="k", model="a", models=["a", "b"])
        assert resolve_model(config, "zzz") == "a"
        assert resolve_model(config, None) == "a"

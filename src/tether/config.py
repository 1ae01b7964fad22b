"""Configuration loader: YAML file with environment variable fallbacks."""

from __future__ import annotations

import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

_DEFAULT_SYSTEM_PROMPT = "You're a good bot. Just chat and have fun."

_DEFAULT_MODELS = ["gpt-4o-mini", "gpt-4o"]


@dataclass
class AIConfig:
    base_url: str
    api_key: str
    model: str = _DEFAULT_MODELS[0]
    models: list[str] = field(default_factory=lambda: list(_DEFAULT_MODELS))
    system_prompt: str = _DEFAULT_SYSTEM_PROMPT
    verify_ssl: bool = True
    request_timeout: float = 120.0


@dataclass
class AppSettings:
    host: str = "127.0.0.1"
    port: int = 8080
    data_dir: Path = field(default_factory=lambda: Path.home() / ".tether")


@dataclass
class AgentSettings:
    max_steps: int = 100
    interrupt_text: str = "[interrupted by user]"


@dataclass
class StreamSettings:
    grace_period: float = 0.5  # seconds after a finish chunk before stream-done
    high_water_mark: int = 256  # chunks a reader may lag before the writer waits
    retained_streams: int = 64  # closed channels kept around for reattach


@dataclass
class AppConfig:
    ai: AIConfig
    app: AppSettings = field(default_factory=AppSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    stream: StreamSettings = field(default_factory=StreamSettings)


def _get_config_path(data_dir: Path | None = None) -> Path:
    if data_dir:
        return data_dir / "config.yaml"
    return Path.home() / ".tether" / "config.yaml"


def resolve_model(config: AIConfig, model: str | None) -> str:
    """Return ``model`` if it is one of the configured models, else the default."""
    if model and model in config.models:
        return model
    return config.model


def load_config(config_path: Path | None = None) -> AppConfig:
    raw: dict[str, Any] = {}
    path = config_path or _get_config_path()

    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}

    ai_raw = raw.get("ai", {})
    base_url = ai_raw.get("base_url") or os.environ.get("AI_CHAT_BASE_URL", "")
    api_key = ai_raw.get("api_key") or os.environ.get("AI_CHAT_API_KEY", "")
    models = [str(m) for m in ai_raw.get("models", [])] or list(_DEFAULT_MODELS)
    model = ai_raw.get("model") or os.environ.get("AI_CHAT_MODEL", "") or models[0]
    if model not in models:
        models.insert(0, model)
    system_prompt = ai_raw.get("system_prompt") or os.environ.get("AI_CHAT_SYSTEM_PROMPT", "") or _DEFAULT_SYSTEM_PROMPT

    if not base_url:
        raise ValueError(
            "AI base_url is required. Set 'ai.base_url' in config.yaml "
            f"({path}) or AI_CHAT_BASE_URL environment variable."
        )
    if not api_key:
        raise ValueError(
            f"AI api_key is required. Set 'ai.api_key' in config.yaml ({path}) or AI_CHAT_API_KEY environment variable."
        )

    verify_ssl_raw = ai_raw.get("verify_ssl", os.environ.get("AI_CHAT_VERIFY_SSL", "true"))
    verify_ssl = str(verify_ssl_raw).lower() not in ("false", "0", "no")

    ai = AIConfig(
        base_url=base_url,
        api_key=api_key,
        model=model,
        models=models,
        system_prompt=system_prompt,
        verify_ssl=verify_ssl,
        request_timeout=float(ai_raw.get("request_timeout", 120.0)),
    )

    app_raw = raw.get("app", {})
    data_dir = Path(os.path.expanduser(app_raw.get("data_dir", "~/.tether")))
    app_settings = AppSettings(
        host=app_raw.get("host", "127.0.0.1"),
        port=int(app_raw.get("port", 8080)),
        data_dir=data_dir,
    )

    agent_raw = raw.get("agent", {})
    agent_settings = AgentSettings(
        max_steps=int(agent_raw.get("max_steps", 100)),
        interrupt_text=str(agent_raw.get("interrupt_text", "[interrupted by user]")),
    )
    if agent_settings.max_steps < 1:
        raise ValueError("agent.max_steps must be at least 1")

    stream_raw = raw.get("stream", {})
    stream_settings = StreamSettings(
        grace_period=float(stream_raw.get("grace_period", 0.5)),
        high_water_mark=int(stream_raw.get("high_water_mark", 256)),
        retained_streams=int(stream_raw.get("retained_streams", 64)),
    )

    app_settings.data_dir.mkdir(parents=True, exist_ok=True)
    try:
        app_settings.data_dir.chmod(stat.S_IRWXU)  # 0700
        if path.exists():
            path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0600
    except OSError:
        pass  # May fail on Windows or non-owned files

    return AppConfig(
        ai=ai,
        app=app_settings,
        agent=agent_settings,
        stream=stream_settings,
    )

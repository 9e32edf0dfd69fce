"""
Configuration loader for the conversation engine.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


DEFAULT_NOISE_PATTERNS = [
    r"^(uh|um|ah|hmm|er|oh)$",
    r"^[.,!?;:\s]+$",
    r"^thank you$",
    r"^thanks$",
]


@dataclass
class EngineSettings:
    min_text_length: int = 3
    cooldown_ms: int = 1000              # quiet period after the assistant finishes
    noise_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_NOISE_PATTERNS))
    poll_interval_ms: int = 50           # upper bound for a cancelled wait to resolve
    speaking_on_first_audio: bool = True  # False → enter SPEAKING for the whole turn
    emit_partial_metrics: bool = False
    # Seeds the history with a system turn; when set it replaces llm.system_prompt
    system_prompt: str = ""


@dataclass
class STTConfig:
    provider: str = "deepgram"
    api_key: str = ""
    model: str = "nova-3"
    language: str = "en-US"
    sample_rate: int = 48000
    channels: int = 1
    encoding: str = "linear16"
    endpointing_ms: int = 2000
    url: str = "wss://api.deepgram.com/v1/listen"


@dataclass
class LLMConfig:
    provider: str = "openai"
    api_key: str = ""
    model: str = "gpt-3.5-turbo"
    temperature: float = 0.7
    max_tokens: int = 200
    base_url: str = "https://api.openai.com/v1"
    # Fallback prompt, only sent when the history has no system turn of its own
    system_prompt: str = (
        "You are a helpful AI assistant in a voice conversation. Keep responses "
        "natural and conversational. Avoid markdown, bullet points, or special "
        "formatting. Speak numbers as words. Keep responses concise and flowing "
        "for speech."
    )


@dataclass
class TTSConfig:
    provider: str = "openai"
    api_key: str = ""
    model: str = "tts-1"
    voice: str = "alloy"
    sample_rate: int = 24000
    base_url: str = "https://api.openai.com/v1"
    min_flush_chars: int = 30
    max_buffer_chars: int = 80


@dataclass
class LatencyConfig:
    stt_complete_ms: int = 250
    first_token_ms: int = 700
    full_answer_ms: int = 3000
    full_tts_ms: int = 5000
    publish_interval_s: int = 30


@dataclass
class Settings:
    app_name: str = "Walkie"
    debug: bool = False
    engine: EngineSettings = field(default_factory=EngineSettings)
    stt: STTConfig = field(default_factory=STTConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    tts: TTSConfig = field(default_factory=TTSConfig)
    latency: LatencyConfig = field(default_factory=LatencyConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _merge(current: Any, section: dict[str, Any]) -> Any:
    """Build a new dataclass of the same type, overriding known keys only."""
    known = {k: v for k, v in section.items() if hasattr(current, k)}
    return type(current)(**{**current.__dict__, **known})


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "WALKIE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "engine" in raw:
            settings.engine = _merge(settings.engine, raw["engine"] or {})
        if "stt" in raw:
            settings.stt = _merge(settings.stt, raw["stt"] or {})
        if "llm" in raw:
            settings.llm = _merge(settings.llm, raw["llm"] or {})
        if "tts" in raw:
            settings.tts = _merge(settings.tts, raw["tts"] or {})
        if "latency" in raw:
            settings.latency = _merge(settings.latency, raw["latency"] or {})

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings

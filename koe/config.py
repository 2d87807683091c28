"""
Runtime configuration for koe.

All settings come from environment variables (loaded from .env by main.py).
"""

import os
from dataclasses import dataclass
from typing import Optional


DEFAULT_VOICE_ID = "JBFqnCBsd6RMkjVDRZzb"
DEFAULT_MODEL_ID = "eleven_multilingual_v2"
DEFAULT_OUTPUT_FORMAT = "mp3_44100_128"


class ConfigError(ValueError):
    """An environment variable holds a value that cannot be used."""


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    """
    Service settings.

    Buffer sizes are in characters, delays and timeouts in seconds.
    """
    ai_api_url: Optional[str] = None
    elevenlabs_api_key: Optional[str] = None
    voice_id: str = DEFAULT_VOICE_ID
    model_id: str = DEFAULT_MODEL_ID
    output_format: str = DEFAULT_OUTPUT_FORMAT

    min_buffer: int = 80
    max_buffer: int = 250
    close_delay: float = 0.1
    drain_timeout: float = 30.0
    drain_interval: float = 0.1
    agent_timeout: float = 120.0

    port: int = 3040
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the current environment."""
        settings = cls(
            ai_api_url=os.getenv("AI_API_URL") or os.getenv("NEXT_PUBLIC_AI_API_URL") or None,
            elevenlabs_api_key=os.getenv("ELEVENLABS_API_KEY") or None,
            voice_id=os.getenv("ELEVENLABS_VOICE_ID", DEFAULT_VOICE_ID),
            model_id=os.getenv("ELEVENLABS_MODEL_ID", DEFAULT_MODEL_ID),
            output_format=os.getenv("ELEVENLABS_OUTPUT_FORMAT", DEFAULT_OUTPUT_FORMAT),
            min_buffer=_int("TTS_MIN_BUFFER", 80),
            max_buffer=_int("TTS_MAX_BUFFER", 250),
            close_delay=_float("TTS_CLOSE_DELAY", 0.1),
            drain_timeout=_float("TTS_DRAIN_TIMEOUT", 30.0),
            drain_interval=_float("TTS_DRAIN_INTERVAL", 0.1),
            agent_timeout=_float("AGENT_TIMEOUT", 120.0),
            port=_int("PORT", 3040),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
        if settings.min_buffer <= 0 or settings.max_buffer < settings.min_buffer:
            raise ConfigError(
                f"TTS_MAX_BUFFER ({settings.max_buffer}) must be >= "
                f"TTS_MIN_BUFFER ({settings.min_buffer}) > 0"
            )
        return settings

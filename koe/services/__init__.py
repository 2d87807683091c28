"""
External services for the koe streaming pipeline.

Agent API    -- streamed completions (unframed JSON)
ElevenLabs   -- streaming TTS socket + one-shot HTTP synthesis
Credentials  -- per-user API key lookup
"""

from .agent_api import AgentAPIError, AgentClient
from .credentials import fetch_elevenlabs_key
from .speech import SpeechAPIError, stream_speech
from .tts import SynthesisSession

__all__ = [
    "AgentAPIError",
    "AgentClient",
    "fetch_elevenlabs_key",
    "SpeechAPIError",
    "stream_speech",
    "SynthesisSession",
]

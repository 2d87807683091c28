"""
FastAPI server for koe.

Endpoints:
- GET  /health               - Health check
- POST /api/tts-chat-stream  - Agent text + synthesized audio as one SSE stream
- POST /api/concierge-stream - Alias of the above
- POST /api/tts-stream       - Complete text -> SSE audio stream
- POST /api/text-to-speech   - Complete text -> audio/mpeg (one-shot)
- GET  /trace/latest         - Most recent turn trace as JSON
"""

import asyncio
import dataclasses
from functools import lru_cache
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from sse_starlette.sse import EventSourceResponse

from .config import Settings
from .log import Logger, get_logger
from .multiplexer import OutboundStream, sse_message
from .services.agent_api import AgentClient
from .services.credentials import fetch_elevenlabs_key
from .services.speech import SpeechAPIError, stream_speech
from .services.tts import SynthesisSession
from .tracer import latest_trace
from .turn import Turn, speak
from .types import TurnRequest

logger = get_logger("koe.server")

app = FastAPI(title="koe", docs_url=None, redoc_url=None)

# Plain "\n" line endings: one `data: <json>\n\n` frame per event
SSE_SEP = "\n"


# ── Dependencies ────────────────────────────────────────────────────

@lru_cache()
def get_settings() -> Settings:
    """Return a cached Settings instance."""
    return Settings.from_env()


def get_session_factory() -> Callable[..., SynthesisSession]:
    return SynthesisSession


def get_agent_client(settings: Settings = Depends(get_settings)) -> Optional[AgentClient]:
    if not settings.ai_api_url:
        return None
    return AgentClient(settings.ai_api_url, timeout=settings.agent_timeout)


KeyLookup = Callable[[Settings, str], Awaitable[Optional[str]]]


def get_key_lookup() -> KeyLookup:
    return fetch_elevenlabs_key


async def _api_key(request: Request, settings: Settings, lookup: KeyLookup) -> Optional[str]:
    """Resolve the caller's key; only called once the body has been validated."""
    return await lookup(settings, request.headers.get("cookie", ""))


def _error(message: str, status_code: int, **extra: Any) -> JSONResponse:
    return JSONResponse({"error": message, **extra}, status_code=status_code)


async def _read_json(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _str(body: Dict[str, Any], key: str) -> Optional[str]:
    value = body.get(key)
    if isinstance(value, str) and value:
        return value
    return None


async def _sse(
    stream: OutboundStream,
    task: asyncio.Task,
    on_end: Optional[Callable[[], None]] = None,
) -> AsyncIterator[Dict[str, str]]:
    """
    Drain an OutboundStream as SSE frames.

    If the client goes away first, the producing task is cancelled,
    which aborts the upstream agent request and the synthesis socket.
    """
    try:
        async for event in stream:
            yield sse_message(event)
    finally:
        if not task.done():
            Logger.client_disconnected()
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        if on_end is not None:
            on_end()


# ── Routes ──────────────────────────────────────────────────────────

@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "ok"}


@app.post("/api/tts-chat-stream")
@app.post("/api/concierge-stream")
async def tts_chat_stream(
    request: Request,
    settings: Settings = Depends(get_settings),
    agent: Optional[AgentClient] = Depends(get_agent_client),
    key_lookup: KeyLookup = Depends(get_key_lookup),
    session_factory: Callable[..., SynthesisSession] = Depends(get_session_factory),
):
    """
    Stream one agent turn as text events interleaved with audio events.

    Body: {agentId, sessionId, prompt, voiceId?}
    """
    if agent is None:
        return _error("AI_API_URL not configured", 500)

    body = await _read_json(request)
    agent_id = _str(body, "agentId")
    session_id = _str(body, "sessionId")
    prompt = _str(body, "prompt")
    if not (agent_id and session_id and prompt):
        return _error("agentId, sessionId, and prompt are required", 400)

    api_key = await _api_key(request, settings, key_lookup)
    if not api_key:
        return _error("ELEVENLABS_API_KEY not configured", 500)

    turn = Turn(
        TurnRequest(
            agent_id=agent_id,
            session_id=session_id,
            prompt=prompt,
            voice_id=_str(body, "voiceId"),
            cookies=request.headers.get("cookie", ""),
        ),
        agent=agent,
        api_key=api_key,
        settings=settings,
        session_factory=session_factory,
    )

    def save_trace() -> None:
        try:
            turn.tracer.save()
        except OSError as e:
            logger.warning(f"Could not save trace: {e}")

    task = asyncio.create_task(turn.run())
    return EventSourceResponse(_sse(turn.stream, task, on_end=save_trace), sep=SSE_SEP)


@app.post("/api/tts-stream")
async def tts_stream(
    request: Request,
    settings: Settings = Depends(get_settings),
    key_lookup: KeyLookup = Depends(get_key_lookup),
    session_factory: Callable[..., SynthesisSession] = Depends(get_session_factory),
):
    """
    Synthesize a complete text over the streaming socket.

    Body: {text, voiceId?, modelId?}
    """
    body = await _read_json(request)
    text = _str(body, "text")
    if not text:
        return _error("Text is required", 400)

    api_key = await _api_key(request, settings, key_lookup)
    if not api_key:
        return _error("ELEVENLABS_API_KEY not configured", 500)

    model_id = _str(body, "modelId")
    if model_id:
        settings = dataclasses.replace(settings, model_id=model_id)

    stream = OutboundStream(event_log=Logger())
    task = asyncio.create_task(speak(
        text,
        stream,
        api_key=api_key,
        settings=settings,
        voice_id=_str(body, "voiceId"),
        session_factory=session_factory,
    ))
    return EventSourceResponse(_sse(stream, task), sep=SSE_SEP)


@app.post("/api/text-to-speech")
async def text_to_speech(
    request: Request,
    settings: Settings = Depends(get_settings),
    key_lookup: KeyLookup = Depends(get_key_lookup),
):
    """
    One-shot synthesis proxied as audio/mpeg.

    Body: {text, voiceId?, modelId?}
    """
    body = await _read_json(request)
    text = _str(body, "text")
    if not text:
        return _error("Text is required", 400)
    api_key = await _api_key(request, settings, key_lookup)
    if not api_key:
        logger.error("ELEVENLABS_API_KEY is not configured")
        return _error("Text-to-speech service is not configured", 500)

    chunks = stream_speech(
        api_key,
        text,
        voice_id=_str(body, "voiceId") or settings.voice_id,
        model_id=_str(body, "modelId") or settings.model_id,
        output_format=settings.output_format,
    )

    # Pull the first chunk here so API errors become a JSON response
    try:
        first = await chunks.__anext__()
    except StopAsyncIteration:
        first = b""
    except SpeechAPIError as e:
        return _error("Failed to generate speech", e.status_code, details=e.detail)

    async def audio() -> AsyncIterator[bytes]:
        try:
            if first:
                yield first
            async for chunk in chunks:
                yield chunk
        finally:
            await chunks.aclose()

    return StreamingResponse(audio(), media_type="audio/mpeg")


@app.get("/trace/latest")
async def trace_latest():
    """Return the most recent turn trace as JSON."""
    data = latest_trace()
    if data is None:
        return JSONResponse({"error": "No traces found"}, status_code=404)
    return JSONResponse(data)

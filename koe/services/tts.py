"""
ElevenLabs text-to-speech session over the stream-input WebSocket.
"""

import json
import asyncio
from typing import Any, Awaitable, Callable, List, Optional

import websockets

from ..config import Settings
from ..log import Logger, ServiceLogger
from ..types import SessionState

log = ServiceLogger("TTS")

ELEVENLABS_WS_URL = "wss://api.elevenlabs.io/v1/text-to-speech"

VOICE_SETTINGS = {
    "stability": 0.5,
    "similarity_boost": 0.75,
}

# Lower thresholds than the vendor default for faster first audio
CHUNK_LENGTH_SCHEDULE = [50, 90, 130, 170]


class SynthesisSession:
    """
    One streaming synthesis socket, scoped to one chat turn.

        UNINITIALIZED --start()--> CONNECTING --open--> READY
        READY --final chunk + close signal--> DRAINING --isFinal--> CLOSED

    Text sent before READY is queued and flushed in order once the
    socket is open. Audio arrives via callback as base64 strings.
    Errors are reported once through on_error and never retried.
    """

    def __init__(
        self,
        api_key: str,
        on_audio: Callable[[str], Awaitable[None]],
        on_done: Callable[[], Awaitable[None]],
        on_error: Callable[[str], Awaitable[None]],
        settings: Optional[Settings] = None,
        voice_id: Optional[str] = None,
        connect: Callable[..., Awaitable[Any]] = websockets.connect,
    ):
        self._settings = settings or Settings()
        self._api_key = api_key
        self._voice_id = voice_id or self._settings.voice_id
        self._connect = connect

        self._on_audio = on_audio
        self._on_done = on_done
        self._on_error = on_error

        self._state = SessionState.UNINITIALIZED
        self._event_log = Logger()
        self._ws: Optional[Any] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._receive_task: Optional[asyncio.Task] = None

        self._queue: List[str] = []
        self._final: Optional[str] = None
        self._finishing = False
        self._failed = False
        self._sent_chunks = 0

    # ── State ───────────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state == SessionState.READY

    @property
    def is_closed(self) -> bool:
        return self._state == SessionState.CLOSED

    @property
    def sent_chunks(self) -> int:
        """Number of non-empty text chunks written to the socket."""
        return self._sent_chunks

    @property
    def url(self) -> str:
        s = self._settings
        return (
            f"{ELEVENLABS_WS_URL}/{self._voice_id}/stream-input?"
            f"model_id={s.model_id}&"
            f"output_format={s.output_format}"
        )

    def _set_state(self, new: SessionState) -> None:
        self._event_log.transition(self._state, new)
        self._state = new

    # ── Lifecycle ───────────────────────────────────────────────────

    def start(self) -> None:
        """Begin connecting in the background. No-op after the first call."""
        if self._state != SessionState.UNINITIALIZED:
            return
        self._set_state(SessionState.CONNECTING)
        self._connect_task = asyncio.create_task(self._open())

    async def send(self, text: str) -> None:
        """Send a non-final text chunk (queued until the socket is ready)."""
        if not text or self._finishing or self._state in (SessionState.DRAINING, SessionState.CLOSED):
            return
        if self._state != SessionState.READY:
            self._queue.append(text)
            return
        await self._send_text(text)

    async def finish(self, remaining: str = "") -> None:
        """
        Send the final chunk and the end-of-input signal.

        If the socket is still connecting, the final chunk is sent right
        after the queued chunks once it opens.
        """
        if self._finishing or self._state == SessionState.CLOSED:
            return
        self._finishing = True
        self._final = remaining

        if self._state == SessionState.READY:
            await self._send_final()

    async def close(self) -> None:
        """Force-close the socket (drain ceiling, cancellation)."""
        if self._state == SessionState.CLOSED and self._ws is None:
            return
        self._set_state(SessionState.CLOSED)

        for task in (self._connect_task, self._receive_task):
            if task and task is not asyncio.current_task() and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._connect_task = None
        self._receive_task = None

        await self._close_socket()
        log.disconnected()

    # ── Socket I/O ──────────────────────────────────────────────────

    async def _open(self) -> None:
        """Connect, handshake, then flush everything queued while connecting."""
        try:
            self._ws = await self._connect(
                self.url,
                additional_headers={"xi-api-key": self._api_key},
            )
            log.connected()

            await self._ws.send(json.dumps({
                "text": " ",
                "voice_settings": VOICE_SETTINGS,
                "generation_config": {
                    "chunk_length_schedule": CHUNK_LENGTH_SCHEDULE,
                },
            }))

            self._receive_task = asyncio.create_task(self._receive_loop())

            # Chunks may keep arriving while we flush; the loop picks them up
            while self._queue:
                await self._send_text(self._queue.pop(0))

            if self._state != SessionState.CONNECTING:
                return
            self._set_state(SessionState.READY)

            if self._finishing:
                await self._send_final()

        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("Connection failed", e)
            await self._fail(f"TTS WebSocket error: {e}")

    async def _send_text(self, text: str, is_last: bool = False) -> None:
        message = {
            "text": text + " ",  # ElevenLabs expects a trailing space
            "try_trigger_generation": True,
        }
        if is_last:
            message["flush"] = True

        log.debug(f"send {len(text)} chars (last: {is_last})")
        await self._ws.send(json.dumps(message))
        self._sent_chunks += 1

    async def _send_final(self) -> None:
        """Final chunk (or a bare flush), then the empty-text close signal."""
        text = self._final or ""
        self._final = None
        try:
            if text.strip():
                await self._send_text(text, is_last=True)
            else:
                await self._ws.send(json.dumps({"text": " ", "flush": True}))

            self._set_state(SessionState.DRAINING)

            # Give the trailing generation time to flush server-side
            await asyncio.sleep(self._settings.close_delay)
            if self._ws is not None and self._state == SessionState.DRAINING:
                await self._ws.send(json.dumps({"text": ""}))
        except Exception as e:
            log.error("Send failed", e)
            await self._fail(f"TTS WebSocket error: {e}")

    async def _receive_loop(self) -> None:
        """Background task forwarding audio until isFinal or socket close."""
        try:
            while self._ws is not None and self._state != SessionState.CLOSED:
                try:
                    message = await self._ws.recv()
                except websockets.exceptions.ConnectionClosed:
                    break
                if await self._handle_message(message):
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("Receive failed", e)
            await self._fail(f"TTS WebSocket error: {e}")
            return

        if self._state != SessionState.CLOSED:
            self._set_state(SessionState.CLOSED)
            await self._close_socket()

    async def _handle_message(self, message: Any) -> bool:
        """Forward audio; returns True once the final message arrived."""
        try:
            data = json.loads(message)
        except (TypeError, ValueError):
            log.error(f"Invalid JSON: {str(message)[:100]}")
            return False
        if not isinstance(data, dict):
            return False

        audio = data.get("audio")
        if audio:
            await self._on_audio(audio)

        if data.get("isFinal"):
            self._set_state(SessionState.CLOSED)
            await self._on_done()
            await self._close_socket()
            return True
        return False

    async def _fail(self, message: str) -> None:
        if self._failed:
            return
        self._failed = True
        self._set_state(SessionState.CLOSED)
        task = self._receive_task
        if task and task is not asyncio.current_task() and not task.done():
            task.cancel()
        await self._close_socket()
        await self._on_error(message)

    async def _close_socket(self) -> None:
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except Exception as e:
            log.debug(f"close failed: {e}")

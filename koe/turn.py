"""
Turn -- one prompt in, one multiplexed text + audio stream out.

    agent API bytes -> frames -> AgentEvents -> text events ─┐
                                    └-> Chunker -> SynthesisSession -> audio events
                                                                      ─┴-> OutboundStream

The agent read loop and the synthesis socket progress independently.
They share only this object's TextBuffer (via Chunker) and session.
All state is scoped to one Turn; nothing is shared across requests.
"""

import asyncio
import time
import uuid
from typing import Callable, Optional

from .chunker import Chunker, split_text
from .config import Settings
from .events import interpret, to_outbound
from .framing import iter_frames
from .log import Logger, ServiceLogger
from .multiplexer import OutboundStream, drain
from .services.agent_api import AgentAPIError, AgentClient
from .services.tts import SynthesisSession
from .tracer import Tracer
from .types import (
    TurnRequest,
    audio_done_event, audio_event, error_event, text_done_event,
)

log = ServiceLogger("Turn")


def _ms_since(t0: float) -> int:
    """Milliseconds elapsed since t0."""
    return int((time.monotonic() - t0) * 1000)


class Turn:
    """
    Orchestrates one chat turn.

    The synthesis session is created lazily: once the transcript crosses
    min_buffer, or at end of stream if any text was produced at all.
    At most one session exists per turn.
    """

    def __init__(
        self,
        request: TurnRequest,
        agent: AgentClient,
        api_key: str,
        settings: Optional[Settings] = None,
        session_factory: Callable[..., SynthesisSession] = SynthesisSession,
    ):
        self._request = request
        self._agent = agent
        self._api_key = api_key
        self._settings = settings or Settings()
        self._session_factory = session_factory

        self._chunker = Chunker(self._settings.min_buffer, self._settings.max_buffer)
        self._session: Optional[SynthesisSession] = None
        self._stream = OutboundStream(event_log=Logger())
        self._audio_done_sent = False

        self.sessions_created = 0
        self.tracer = Tracer(turn_id=uuid.uuid4().hex[:12], prompt=request.prompt)

    @property
    def stream(self) -> OutboundStream:
        return self._stream

    @property
    def chunker(self) -> Chunker:
        return self._chunker

    @property
    def session(self) -> Optional[SynthesisSession]:
        return self._session

    # ── Main loop ───────────────────────────────────────────────────

    async def run(self) -> None:
        """Drive the turn to completion; always closes the stream."""
        t0 = time.monotonic()
        Logger.turn_started(self._request.agent_id, self._request.prompt)

        try:
            self.tracer.begin("agent")
            try:
                chunks = self._agent.stream_completion(
                    self._request.agent_id,
                    self._request.session_id,
                    self._request.prompt,
                    cookies=self._request.cookies,
                )
                frames = iter_frames(chunks)
                try:
                    async for obj in frames:
                        await self._on_frame(obj)
                finally:
                    # Closing the byte stream aborts the upstream request
                    await frames.aclose()
                    await chunks.aclose()
            except AgentAPIError as e:
                log.error("Agent stream failed", e)
                await self._stream.send(error_event(str(e)))
                return
            finally:
                self.tracer.end("agent")

            await self._stream.send(text_done_event())
            await self._finish_synthesis()

            await drain(
                self._session,
                ceiling=self._settings.drain_timeout,
                interval=self._settings.drain_interval,
            )

        except asyncio.CancelledError:
            self.tracer.cancel()
            log.info(f"Turn cancelled at +{_ms_since(t0)}ms")
            raise

        except Exception as e:
            log.error("Turn failed", e)
            await self._stream.send(error_event(str(e) or type(e).__name__))

        finally:
            if self._session is not None and not self._session.is_closed:
                await self._session.close()
            self.tracer.end("tts")
            self._stream.close()
            Logger.turn_finished(_ms_since(t0))

    # ── Agent side ──────────────────────────────────────────────────

    async def _on_frame(self, obj: dict) -> None:
        event = interpret(obj)
        if event is None:
            return

        outbound = to_outbound(event)
        if outbound is not None:
            await self._stream.send(outbound)

        if event.text_delta is None:
            return

        if not self.tracer.has("first_text"):
            self.tracer.mark("first_text")
            log.info(f"⏱  first text  +{int(self.tracer.elapsed_ms())}ms")

        self._chunker.add(event.text_delta)

        if self._session is None and self._chunker.should_open_session():
            self._open_session()

        if self._session is not None:
            while True:
                chunk = self._chunker.take(self._session.is_ready)
                if chunk is None:
                    break
                await self._session.send(chunk)

    async def _finish_synthesis(self) -> None:
        """Upstream ended: send the remainder as the final chunk."""
        if self._session is None:
            if not self._chunker.transcript.strip():
                return
            # Short answer that never crossed min_buffer
            self._open_session()

        await self._session.finish(self._chunker.finish())

    def _open_session(self) -> None:
        if self._session is not None:
            return
        self._session = self._session_factory(
            api_key=self._api_key,
            on_audio=self._on_audio,
            on_done=self._on_audio_done,
            on_error=self._on_synthesis_error,
            settings=self._settings,
            voice_id=self._request.voice_id,
        )
        self.sessions_created += 1
        self.tracer.begin("tts")
        self._session.start()

    # ── Synthesis side ──────────────────────────────────────────────

    async def _on_audio(self, audio_base64: str) -> None:
        if not self.tracer.has("first_audio"):
            self.tracer.mark("first_audio")
            log.info(f"⏱  first audio +{int(self.tracer.elapsed_ms())}ms")
        await self._stream.send(audio_event(audio_base64))

    async def _on_audio_done(self) -> None:
        if self._audio_done_sent:
            return
        self._audio_done_sent = True
        self.tracer.end("tts")
        await self._stream.send(audio_done_event())

    async def _on_synthesis_error(self, message: str) -> None:
        self.tracer.end("tts")
        await self._stream.send(error_event(message))


async def speak(
    text: str,
    stream: OutboundStream,
    api_key: str,
    settings: Optional[Settings] = None,
    voice_id: Optional[str] = None,
    session_factory: Callable[..., SynthesisSession] = SynthesisSession,
) -> None:
    """
    Synthesize a complete text through one session, audio events only.

    Always closes `stream`.
    """
    settings = settings or Settings()

    async def on_audio(audio_base64: str) -> None:
        await stream.send(audio_event(audio_base64))

    async def on_done() -> None:
        await stream.send(audio_done_event())

    async def on_error(message: str) -> None:
        await stream.send(error_event(message))

    session = session_factory(
        api_key=api_key,
        on_audio=on_audio,
        on_done=on_done,
        on_error=on_error,
        settings=settings,
        voice_id=voice_id,
    )
    chunks = split_text(text)

    try:
        session.start()
        for chunk in chunks[:-1]:
            await session.send(chunk)
        await session.finish(chunks[-1] if chunks else "")
        await drain(session, ceiling=settings.drain_timeout, interval=settings.drain_interval)
    except Exception as e:
        log.error("Speech failed", e)
        await stream.send(error_event(str(e) or type(e).__name__))
    finally:
        if not session.is_closed:
            await session.close()
        stream.close()

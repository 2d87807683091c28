"""
Incremental audio player for streamed synthesis output.

Audio fragments (base64) arrive with unpredictable size and timing.
PlaybackBuffer appends them, one at a time and in order, to a media
buffer obtained from an injected MediaBackend, and starts playback
once enough audio is buffered to play without gaps.

    UNATTACHED --first chunk, buffer created--> BUFFER_OPEN
    BUFFER_OPEN / IDLE --append--> APPENDING --complete--> IDLE
    IDLE --done + queue drained--> ENDED
    any --reset()--> UNATTACHED
"""

import asyncio
import base64
import binascii
from collections import deque
from typing import Deque, Optional

from .log import ServiceLogger
from .media import MediaBackend, MediaSource, ResourceExhausted
from .types import PlaybackState

log = ServiceLogger("Player")

MIN_BUFFERED_SECONDS = 2.0


class PlaybackBuffer:
    """
    Growable, seekable playback buffer for one chat view.

    One instance is reused across turns: call reset() before each new
    turn so the previous media buffer is released before a new one is
    allocated.
    """

    def __init__(
        self,
        backend: MediaBackend,
        min_buffered_seconds: float = MIN_BUFFERED_SECONDS,
        check_interval: float = 0.1,
        max_retries: int = 5,
        backoff: float = 0.1,
        max_append_retries: int = 3,
    ):
        self._backend = backend
        self._min_buffered = min_buffered_seconds
        self._check_interval = check_interval
        self._max_retries = max_retries
        self._backoff = backoff
        self._max_append_retries = max_append_retries

        self._state = PlaybackState.UNATTACHED
        self._source: Optional[MediaSource] = None
        self._queue: Deque[bytes] = deque()

        self._attach_task: Optional[asyncio.Task] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._check_task: Optional[asyncio.Task] = None

        self._failed = False
        self._done = False
        self._started = False
        self.chunks_received = 0
        self.bytes_received = 0

    # ── State ───────────────────────────────────────────────────────

    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def started(self) -> bool:
        """Whether playback has been started for this turn."""
        return self._started

    @property
    def source(self) -> Optional[MediaSource]:
        return self._source

    @property
    def queued(self) -> int:
        return len(self._queue)

    def buffered_seconds(self) -> float:
        if self._source is None or self._state == PlaybackState.UNATTACHED:
            return 0.0
        start, end = self._source.buffered()
        return max(0.0, end - start)

    # ── Public API ──────────────────────────────────────────────────

    async def add_chunk(self, audio_base64: str) -> None:
        """Queue one base64 fragment; the first one attaches a media buffer."""
        try:
            data = base64.b64decode(audio_base64, validate=True)
        except (binascii.Error, ValueError) as e:
            log.error("Dropping undecodable audio chunk", e)
            return
        if not data:
            return

        self.chunks_received += 1
        self.bytes_received += len(data)

        if self._failed:
            # Degraded turn: no media buffer, text still renders
            return

        self._queue.append(data)
        log.debug(f"chunk {len(data)} bytes, queued {len(self._queue)}")

        if self._source is None:
            self._attach()
        elif self._state != PlaybackState.UNATTACHED:
            self._kick_drain()

    async def mark_done(self) -> None:
        """
        Upstream synthesis is complete: no more chunks this turn.

        Once the queue drains, playback is force-started if it never
        reached the threshold, and the media stream is ended.
        """
        self._done = True
        if self._source is not None and self._state != PlaybackState.UNATTACHED:
            self._kick_drain()

    async def reset(self) -> None:
        """
        Tear down the current turn's media resources.

        Safe to call repeatedly and before any chunk has arrived.
        """
        for task in (self._check_task, self._attach_task, self._drain_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._check_task = None
        self._attach_task = None
        self._drain_task = None

        source, self._source = self._source, None
        if source is not None:
            self._detach(source)

        self._queue.clear()
        self._failed = False
        self._done = False
        self._started = False
        self.chunks_received = 0
        self.bytes_received = 0
        self._state = PlaybackState.UNATTACHED

    # ── Attach ──────────────────────────────────────────────────────

    def _attach(self) -> None:
        self._source = self._backend.open()
        self._attach_task = asyncio.create_task(self._create_buffer(self._source))

    async def _create_buffer(self, source: MediaSource) -> None:
        """Allocate the append buffer, backing off while the platform is at its ceiling."""
        # First try, then up to max_retries more at backoff x retry
        for retry in range(self._max_retries + 1):
            try:
                source.add_buffer()
                break
            except ResourceExhausted as e:
                if retry == self._max_retries:
                    log.error(f"Media buffer unavailable after {retry} retries", e)
                    self._degrade()
                    return
                delay = self._backoff * (retry + 1)
                log.warning(f"Media buffer limit hit (attempt {retry + 1}), retrying in {int(delay * 1000)}ms")
                await asyncio.sleep(delay)
            except Exception as e:
                log.error("Media buffer creation failed", e)
                self._degrade()
                return

        self._state = PlaybackState.BUFFER_OPEN
        log.info(f"buffer ready ({len(self._queue)} chunks waiting)")

        self._check_task = asyncio.create_task(self._check_loop())
        self._kick_drain()

    def _degrade(self) -> None:
        self._failed = True
        self._queue.clear()

    # ── Append loop ─────────────────────────────────────────────────

    def _kick_drain(self) -> None:
        """Start the append loop unless it is already running."""
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        """Append queued chunks strictly one at a time."""
        source = self._source
        failures = 0
        while self._queue and source is self._source:
            chunk = self._queue.popleft()
            self._state = PlaybackState.APPENDING
            try:
                await source.append(chunk)
                failures = 0
            except asyncio.CancelledError:
                raise
            except Exception as e:
                failures += 1
                if failures > self._max_append_retries:
                    log.error(f"Append failed {failures} times, dropping chunk", e)
                    failures = 0
                else:
                    # Back at the head so later chunks never overtake it
                    log.warning(f"Append failed ({e}), retrying")
                    self._queue.appendleft(chunk)
                    self._state = PlaybackState.IDLE
                    await asyncio.sleep(self._backoff)
                    continue
            self._state = PlaybackState.IDLE
            await self._maybe_start()

        if self._done and not self._queue and source is self._source:
            await self._finish(source)

    async def _finish(self, source: MediaSource) -> None:
        if self._state == PlaybackState.ENDED:
            return
        if not self._started:
            log.info("stream ended before buffer threshold, force playing")
            await self._maybe_start(force=True)
        if source.is_open:
            source.end_of_stream()
        self._state = PlaybackState.ENDED

    # ── Playback start ──────────────────────────────────────────────

    async def _check_loop(self) -> None:
        """Periodically test the start threshold, decoupled from arrivals."""
        while not self._started:
            await asyncio.sleep(self._check_interval)
            await self._maybe_start()

    async def _maybe_start(self, force: bool = False) -> None:
        if self._started or self._source is None:
            return
        start, end = self._source.buffered()
        duration = end - start
        if duration <= 0:
            return
        if not force and duration < self._min_buffered:
            return

        self._started = True
        log.info(f"start playback at {start:.3f}s ({duration:.2f}s buffered, force={force})")
        self._source.seek(start)
        await self._source.play()

    # ── Teardown ────────────────────────────────────────────────────

    def _detach(self, source: MediaSource) -> None:
        """Abort, remove buffer, end stream, release -- in that order."""
        for step in (source.pause, source.abort):
            try:
                step()
            except Exception as e:
                log.debug(f"{step.__name__} during reset: {e}")

        if source.is_open:
            for step in (source.remove_buffer, source.end_of_stream):
                try:
                    step()
                except Exception as e:
                    log.debug(f"{step.__name__} during reset: {e}")

        source.release()

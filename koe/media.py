"""
Media backends for the incremental audio player.

A backend stands in for the platform's append-only media buffer (a
browser MediaSource + SourceBuffer, a native audio sink, a file).
PlaybackBuffer only talks to these two interfaces:

    MediaBackend.open()        -> MediaSource   (one per turn)
    MediaSource.add_buffer()   may raise ResourceExhausted
    MediaSource.append(bytes)  resolves when the append has completed

Two implementations ship here: MemoryMediaBackend (durations estimated
from the stream bitrate, optional platform-wide buffer ceiling) and
FileMediaBackend (same, plus each turn's audio written to disk).
"""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Tuple

from .log import ServiceLogger

log = ServiceLogger("Player")

# mp3_44100_128 -> 128 kbit/s
MP3_128_BYTES_PER_SECOND = 16000


class ResourceExhausted(Exception):
    """The platform refused a new media buffer (too many alive)."""


class MediaSource(ABC):
    """One backing media resource, attached to the output for one turn."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether the source still accepts buffers and appends."""

    @abstractmethod
    def add_buffer(self) -> None:
        """Allocate the append buffer. Raises ResourceExhausted at the ceiling."""

    @abstractmethod
    async def append(self, data: bytes) -> None:
        """Append encoded audio; returns once the platform signals completion."""

    @abstractmethod
    def buffered(self) -> Tuple[float, float]:
        """(start, end) of the buffered range in seconds; (0, 0) when empty."""

    @abstractmethod
    def seek(self, position: float) -> None: ...

    @abstractmethod
    async def play(self) -> None: ...

    @abstractmethod
    def pause(self) -> None: ...

    @abstractmethod
    def abort(self) -> None:
        """Abort an in-flight append."""

    @abstractmethod
    def remove_buffer(self) -> None:
        """Detach the append buffer from this source, freeing its slot."""

    @abstractmethod
    def end_of_stream(self) -> None: ...

    @abstractmethod
    def release(self) -> None:
        """Detach from the output and release the temporary handle/URL."""


class MediaBackend(ABC):
    """Factory of MediaSources."""

    @abstractmethod
    def open(self) -> MediaSource: ...


# =============================================================================
# IN-MEMORY BACKEND
# =============================================================================

class MemorySource(MediaSource):
    """Bytes kept in memory; duration derived from a constant bitrate."""

    def __init__(
        self,
        backend: "MemoryMediaBackend",
        index: int,
    ):
        self._backend = backend
        self.index = index
        self.data = bytearray()
        self.appends: List[int] = []
        self.current_time = 0.0
        self.playing = False
        self.ended = False
        self.released = False
        self.has_buffer = False
        self.in_flight = False
        self.aborted = 0

    @property
    def is_open(self) -> bool:
        return not self.ended and not self.released

    def add_buffer(self) -> None:
        if self.has_buffer:
            return
        self._backend._acquire()
        self.has_buffer = True

    async def append(self, data: bytes) -> None:
        if not self.has_buffer or not self.is_open:
            raise RuntimeError("append on a detached media source")
        if self.in_flight:
            raise RuntimeError("append while a previous append is in flight")
        self.in_flight = True
        try:
            await asyncio.sleep(self._backend.append_delay)
            self.data.extend(data)
            self.appends.append(len(data))
            self._on_append(data)
        finally:
            self.in_flight = False

    def _on_append(self, data: bytes) -> None:
        pass

    def buffered(self) -> Tuple[float, float]:
        if not self.data:
            return 0.0, 0.0
        start = self._backend.start_offset
        return start, start + len(self.data) / self._backend.bytes_per_second

    def seek(self, position: float) -> None:
        self.current_time = position

    async def play(self) -> None:
        self.playing = True

    def pause(self) -> None:
        self.playing = False

    def abort(self) -> None:
        if self.in_flight:
            self.aborted += 1
        self.in_flight = False

    def remove_buffer(self) -> None:
        if self.has_buffer:
            self.has_buffer = False
            self._backend._free()

    def end_of_stream(self) -> None:
        self.ended = True

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        self.playing = False
        # Releasing the handle lets the platform reclaim a forgotten buffer
        self.remove_buffer()


class MemoryMediaBackend(MediaBackend):
    """
    In-memory platform model.

    `max_buffers` caps how many append buffers may be alive at once across
    all sources, like a browser's page-wide decoder limit.
    """

    source_class = MemorySource

    def __init__(
        self,
        bytes_per_second: int = MP3_128_BYTES_PER_SECOND,
        max_buffers: Optional[int] = None,
        append_delay: float = 0.0,
        start_offset: float = 0.0,
    ):
        self.bytes_per_second = bytes_per_second
        self.max_buffers = max_buffers
        self.append_delay = append_delay
        self.start_offset = start_offset
        self.live_buffers = 0
        self.sources: List[MemorySource] = []

    def open(self) -> MediaSource:
        source = self.source_class(self, len(self.sources))
        self.sources.append(source)
        return source

    def _acquire(self) -> None:
        if self.max_buffers is not None and self.live_buffers >= self.max_buffers:
            raise ResourceExhausted(
                f"{self.live_buffers} media buffers alive (limit {self.max_buffers})"
            )
        self.live_buffers += 1

    def _free(self) -> None:
        self.live_buffers = max(0, self.live_buffers - 1)


# =============================================================================
# FILE BACKEND
# =============================================================================

class FileSource(MemorySource):
    """MemorySource that also streams each append to disk."""

    def __init__(self, backend: "FileMediaBackend", index: int):
        super().__init__(backend, index)
        self.path = backend.directory / f"{backend.prefix}-{index:03d}.{backend.extension}"
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_bytes(b"")

    def _on_append(self, data: bytes) -> None:
        with self.path.open("ab") as f:
            f.write(data)

    async def play(self) -> None:
        await super().play()
        log.info(f"playing {self.path.name} from {self.current_time:.2f}s")


class FileMediaBackend(MemoryMediaBackend):
    """Writes each turn's audio to <directory>/<prefix>-NNN.<extension>."""

    source_class = FileSource

    def __init__(
        self,
        directory: Path,
        prefix: str = "turn",
        extension: str = "mp3",
        bytes_per_second: int = MP3_128_BYTES_PER_SECOND,
    ):
        super().__init__(bytes_per_second=bytes_per_second)
        self.directory = Path(directory)
        self.prefix = prefix
        self.extension = extension

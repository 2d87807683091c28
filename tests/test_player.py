"""
Tests for the incremental playback buffer.

MemoryMediaBackend models the platform: a constant bitrate gives each
append a known duration, and max_buffers models the page-wide limit
on live media buffers.
"""

import asyncio
import base64

import pytest

from koe.media import MemoryMediaBackend, MemorySource, ResourceExhausted
from koe.player import PlaybackBuffer
from koe.types import PlaybackState


# =============================================================================
# HELPERS
# =============================================================================

# 1000 bytes == 1 second of audio
BPS = 1000


def b64(size: int, fill: bytes = b"\x01") -> str:
    return base64.b64encode(fill * size).decode()


async def settle(rounds: int = 30) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class CountingBackend(MemoryMediaBackend):
    """Counts buffer allocation attempts, successful or not."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.allocations = 0

    def _acquire(self) -> None:
        self.allocations += 1
        super()._acquire()


class FlakySource(MemorySource):
    async def append(self, data: bytes) -> None:
        if self._backend.append_failures:
            self._backend.append_failures -= 1
            raise RuntimeError("append rejected")
        await super().append(data)


class FlakyBackend(MemoryMediaBackend):
    """The next `append_failures` appends raise, across all sources."""

    source_class = FlakySource

    def __init__(self, append_failures: int, **kwargs):
        super().__init__(**kwargs)
        self.append_failures = append_failures


@pytest.fixture
def backend() -> MemoryMediaBackend:
    return MemoryMediaBackend(bytes_per_second=BPS)


@pytest.fixture
async def player(backend):
    p = PlaybackBuffer(backend, check_interval=0.01, backoff=0.01)
    yield p
    await p.reset()


# =============================================================================
# START THRESHOLD
# =============================================================================

class TestStartThreshold:

    @pytest.mark.asyncio
    async def test_starts_at_two_seconds_from_buffer_start(self):
        """2.5s in 0.5s fragments: play once >= 2.0s, seeking to the buffer start."""
        backend = MemoryMediaBackend(bytes_per_second=BPS, start_offset=0.5)
        player = PlaybackBuffer(backend, check_interval=10.0)

        started_after = None
        for i in range(1, 6):
            await player.add_chunk(b64(500))
            await settle()
            if player.started and started_after is None:
                started_after = i

        assert started_after == 4
        source = player.source
        assert source.playing
        assert source.current_time == 0.5
        assert player.buffered_seconds() == pytest.approx(2.5)
        await player.reset()

    @pytest.mark.asyncio
    async def test_not_started_below_threshold(self, player):
        await player.add_chunk(b64(1500))
        await settle()
        await asyncio.sleep(0.05)
        assert not player.started
        assert player.state == PlaybackState.IDLE

    @pytest.mark.asyncio
    async def test_force_start_when_done_early(self, player):
        """A reply shorter than the threshold still plays once the stream ends."""
        await player.add_chunk(b64(300))
        await player.mark_done()
        await settle()

        assert player.started
        assert player.source.playing
        assert player.source.ended
        assert player.state == PlaybackState.ENDED

    @pytest.mark.asyncio
    async def test_done_before_buffer_ready(self, player):
        """mark_done racing the buffer allocation still ends the stream."""
        await player.add_chunk(b64(300))
        await player.mark_done()
        await player.add_chunk(b64(300))  # late chunk is still appended
        await settle()

        assert player.state == PlaybackState.ENDED
        assert len(player.source.data) == 600


# =============================================================================
# APPEND ORDERING
# =============================================================================

class TestAppends:

    @pytest.mark.asyncio
    async def test_appends_serialized_in_order(self):
        """Bursts never overlap appends and bytes land in arrival order."""
        backend = MemoryMediaBackend(bytes_per_second=BPS, append_delay=0.002)
        player = PlaybackBuffer(backend, check_interval=10.0)

        for i in range(10):
            await player.add_chunk(b64(10, bytes([i])))
        await player.mark_done()
        await asyncio.sleep(0.1)

        source = player.source
        assert source.appends == [10] * 10
        assert bytes(source.data) == b"".join(bytes([i]) * 10 for i in range(10))
        assert player.state == PlaybackState.ENDED
        await player.reset()

    @pytest.mark.asyncio
    async def test_failed_append_retried_in_order(self):
        """A rejected chunk goes back to the head; nothing overtakes it."""
        backend = FlakyBackend(2, bytes_per_second=BPS)
        player = PlaybackBuffer(backend, check_interval=10.0, backoff=0.001)

        for i in range(3):
            await player.add_chunk(b64(10, bytes([i])))
        await player.mark_done()
        await asyncio.sleep(0.1)

        source = player.source
        assert source.appends == [10, 10, 10]
        assert bytes(source.data) == b"".join(bytes([i]) * 10 for i in range(3))
        assert player.state == PlaybackState.ENDED
        await player.reset()

    @pytest.mark.asyncio
    async def test_chunk_dropped_after_append_retries(self):
        backend = FlakyBackend(3, bytes_per_second=BPS)
        player = PlaybackBuffer(backend, check_interval=10.0, backoff=0.001, max_append_retries=2)

        for i in range(3):
            await player.add_chunk(b64(10, bytes([i])))
        await player.mark_done()
        await asyncio.sleep(0.1)

        assert bytes(player.source.data) == bytes([1]) * 10 + bytes([2]) * 10
        assert player.state == PlaybackState.ENDED
        await player.reset()

    @pytest.mark.asyncio
    async def test_invalid_base64_dropped(self, player):
        await player.add_chunk("not base64!!")
        assert player.chunks_received == 0
        assert player.source is None

    @pytest.mark.asyncio
    async def test_counters(self, player):
        await player.add_chunk(b64(10))
        await player.add_chunk(b64(20))
        assert player.chunks_received == 2
        assert player.bytes_received == 30


# =============================================================================
# BUFFER LIMIT
# =============================================================================

class TestBufferLimit:

    @pytest.mark.asyncio
    async def test_retries_until_slot_frees(self):
        backend = MemoryMediaBackend(bytes_per_second=BPS, max_buffers=1)
        hog = backend.open()
        hog.add_buffer()

        player = PlaybackBuffer(backend, backoff=0.01, max_retries=5)
        await player.add_chunk(b64(100))
        await settle()
        assert player.state == PlaybackState.UNATTACHED

        hog.release()
        await asyncio.sleep(0.1)

        assert player.source.has_buffer
        assert player.state == PlaybackState.IDLE
        assert len(player.source.data) == 100
        await player.reset()

    @pytest.mark.asyncio
    async def test_gives_up_and_degrades(self):
        """After the first try and max_retries retries the turn continues without audio."""
        backend = CountingBackend(bytes_per_second=BPS, max_buffers=0)
        player = PlaybackBuffer(backend, backoff=0.001, max_retries=3)

        await player.add_chunk(b64(100))
        await asyncio.sleep(0.05)
        await player.add_chunk(b64(100))

        assert player.queued == 0
        assert player.state == PlaybackState.UNATTACHED
        assert backend.allocations == 4
        assert player.chunks_received == 2
        await player.reset()

    @pytest.mark.asyncio
    async def test_default_is_first_try_plus_five_retries(self):
        backend = CountingBackend(bytes_per_second=BPS, max_buffers=0)
        player = PlaybackBuffer(backend, backoff=0.001)

        await player.add_chunk(b64(100))
        await asyncio.sleep(0.1)

        assert backend.allocations == 6
        assert player.state == PlaybackState.UNATTACHED
        await player.reset()

    @pytest.mark.asyncio
    async def test_limit_error_is_resource_exhausted(self):
        backend = MemoryMediaBackend(max_buffers=0)
        with pytest.raises(ResourceExhausted):
            backend.open().add_buffer()


# =============================================================================
# RESET
# =============================================================================

class TestReset:

    @pytest.mark.asyncio
    async def test_reset_without_chunks(self, player):
        await player.reset()
        await player.reset()
        assert player.state == PlaybackState.UNATTACHED

    @pytest.mark.asyncio
    async def test_reset_releases_buffer(self, backend, player):
        await player.add_chunk(b64(100))
        await settle()
        source = player.source
        assert backend.live_buffers == 1

        await player.reset()
        await player.reset()

        assert backend.live_buffers == 0
        assert source.released
        assert not source.playing
        assert player.source is None
        assert player.state == PlaybackState.UNATTACHED
        assert player.chunks_received == 0

    @pytest.mark.asyncio
    async def test_turns_reuse_one_slot(self):
        """With a one-buffer platform, consecutive turns never exhaust it."""
        backend = MemoryMediaBackend(bytes_per_second=BPS, max_buffers=1)
        player = PlaybackBuffer(backend, max_retries=0)

        for _ in range(3):
            await player.reset()
            await player.add_chunk(b64(100))
            await player.mark_done()
            await settle()
            assert player.state == PlaybackState.ENDED

        assert len(backend.sources) == 3
        assert backend.live_buffers == 1
        await player.reset()
        assert backend.live_buffers == 0

    @pytest.mark.asyncio
    async def test_reset_mid_append(self):
        backend = MemoryMediaBackend(bytes_per_second=BPS, append_delay=0.05)
        player = PlaybackBuffer(backend)
        await player.add_chunk(b64(100))
        await settle()
        assert player.state == PlaybackState.APPENDING

        await player.reset()
        assert player.state == PlaybackState.UNATTACHED
        assert backend.live_buffers == 0

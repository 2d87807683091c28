"""
Output multiplexer.

Text events (agent read loop) and audio events (synthesis socket
callbacks) are written by two independent producers into one ordered
OutboundStream, which the HTTP response drains as Server-Sent Events
(`data: <json>` per event).
"""

import json
import asyncio
from typing import AsyncIterator, Dict, Optional

from .log import Logger, ServiceLogger
from .services.tts import SynthesisSession
from .types import OutboundEvent

log = ServiceLogger("Turn")

_CLOSE = object()


def sse_message(event: OutboundEvent) -> Dict[str, str]:
    """One event as an EventSourceResponse item (a single `data:` line)."""
    return {"data": json.dumps(event)}


class OutboundStream:
    """
    Single-consumer queue of outbound events.

    Writes after close() are dropped: once the client is gone, producers
    keep running to their own terminal state without erroring.
    """

    def __init__(self, event_log: Optional[Logger] = None):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._event_log = event_log

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: OutboundEvent) -> None:
        if self._closed:
            return
        if self._event_log:
            self._event_log.event(event)
        await self._queue.put(event)

    def close(self) -> None:
        """Mark end of stream; queued events are still delivered."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSE)

    async def __aiter__(self) -> AsyncIterator[OutboundEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSE:
                return
            yield item


async def drain(
    session: Optional[SynthesisSession],
    ceiling: float = 30.0,
    interval: float = 0.1,
) -> bool:
    """
    Wait for the synthesis session to close on its own.

    Polls every `interval` seconds up to `ceiling`, then force-closes.
    Returns True if the session closed by itself (or never existed).
    """
    if session is None:
        return True

    waited = 0.0
    while not session.is_closed and waited < ceiling:
        await asyncio.sleep(interval)
        waited += interval

    if session.is_closed:
        return True

    log.warning(f"Synthesis still open after {ceiling:.0f}s, force-closing")
    await session.close()
    return False

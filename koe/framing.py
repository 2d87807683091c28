"""
Frame extraction for unframed JSON streams.

The agent completion API writes JSON objects back to back with no
delimiter guarantee, and HTTP reads split them at arbitrary offsets
(mid-string, mid-escape, mid-codepoint). FrameExtractor accumulates
text and yields each top-level object as soon as it is balanced.

    extractor = FrameExtractor()
    for obj in extractor.feed('{"event": "on_chat_mo'):
        ...                                   # nothing yet
    for obj in extractor.feed('del_stream", "data": "Hi"}{"ev'):
        ...                                   # one object
"""

import codecs
import json
from typing import Any, AsyncIterator, Dict, Iterator, List


class FrameExtractor:
    """
    Restartable brace-depth scanner.

    Scanner state (depth, in-string, escape, scan position) survives
    between feeds, so each character is examined exactly once.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._pos = 0          # next character to scan
        self._start = -1       # index of the current object's opening brace
        self._depth = 0
        self._in_string = False
        self._escape = False

    @property
    def pending(self) -> str:
        """Text of the incomplete object currently being accumulated."""
        if self._start < 0:
            return ""
        return self._buffer[self._start:]

    def feed(self, text: str) -> List[Dict[str, Any]]:
        """Add text and return every object completed by it, in order."""
        return list(self._feed(text))

    def _feed(self, text: str) -> Iterator[Dict[str, Any]]:
        self._buffer += text
        buf = self._buffer
        i = self._pos

        while i < len(buf):
            ch = buf[i]

            if self._depth == 0:
                # Between objects: only an opening brace matters
                if ch == "{":
                    self._start = i
                    self._depth = 1
            elif self._in_string:
                if self._escape:
                    self._escape = False
                elif ch == "\\":
                    self._escape = True
                elif ch == '"':
                    self._in_string = False
            elif ch == '"':
                self._in_string = True
            elif ch == "{":
                self._depth += 1
            elif ch == "}":
                self._depth -= 1
                if self._depth == 0:
                    frame = buf[self._start:i + 1]
                    self._start = -1
                    obj = _decode(frame)
                    if obj is not None:
                        yield obj
            i += 1

        # Drop everything before the object in progress
        if self._start < 0:
            self._buffer = ""
            self._pos = 0
        else:
            self._buffer = buf[self._start:]
            self._pos = i - self._start
            self._start = 0


def _decode(frame: str) -> Any:
    """Decode one balanced frame; malformed frames are dropped."""
    try:
        obj = json.loads(frame)
    except ValueError:
        return None
    if not isinstance(obj, dict):
        return None
    return obj


async def iter_frames(chunks: AsyncIterator[bytes]) -> AsyncIterator[Dict[str, Any]]:
    """Yield decoded objects from an async stream of raw byte chunks."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    extractor = FrameExtractor()

    async for chunk in chunks:
        for obj in extractor.feed(decoder.decode(chunk)):
            yield obj

    for obj in extractor.feed(decoder.decode(b"", final=True)):
        yield obj

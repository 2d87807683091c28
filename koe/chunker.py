"""
Sentence/boundary chunking of streamed text for speech synthesis.

Feeding single words to the synthesizer gives flat prosody; waiting for
whole paragraphs adds latency. The policy here sits between the two:

    1. pending >= min_buffer and session ready -> send complete sentences
    2. pending >= max_buffer, no sentence end  -> cut at last space past min_buffer
    3. upstream finished                       -> send whatever is left (final)
"""

import re
from typing import List, Optional

from .types import TextBuffer


MIN_BUFFER = 80
MAX_BUFFER = 250

_TERMINATORS = ".!?;\n"
_SENTENCE = re.compile(r"[^.!?]*[.!?]+\s*")


def boundary_end(text: str) -> int:
    """
    Length of the longest prefix made of complete sentence/line units.

    Trailing whitespace after the last terminator belongs to the prefix.
    Returns 0 when the text holds no terminator.
    """
    last = max(text.rfind(t) for t in _TERMINATORS)
    if last < 0:
        return 0
    end = last + 1
    while end < len(text) and text[end].isspace():
        end += 1
    return end


def force_split(text: str, min_buffer: int = MIN_BUFFER) -> int:
    """
    Cut point for an over-long buffer with no sentence end.

    The cut falls just after the last whitespace at or after `min_buffer`,
    so no word is split. Without such whitespace the whole text goes.
    """
    for i in range(len(text) - 1, min_buffer - 1, -1):
        if text[i].isspace():
            return i + 1
    return len(text)


def next_chunk_length(
    pending: str,
    session_ready: bool,
    min_buffer: int = MIN_BUFFER,
    max_buffer: int = MAX_BUFFER,
) -> int:
    """How many characters of `pending` to send now (0 = keep buffering)."""
    if len(pending) >= min_buffer and session_ready:
        end = boundary_end(pending)
        if end:
            return end

    if len(pending) >= max_buffer:
        return force_split(pending, min_buffer)

    return 0


class Chunker:
    """Owns the per-request TextBuffer and applies the flush policy to it."""

    def __init__(self, min_buffer: int = MIN_BUFFER, max_buffer: int = MAX_BUFFER):
        self.min_buffer = min_buffer
        self.max_buffer = max_buffer
        self.buffer = TextBuffer()

    @property
    def transcript(self) -> str:
        return self.buffer.full_transcript

    @property
    def pending(self) -> str:
        return self.buffer.pending

    def add(self, delta: str) -> None:
        self.buffer.append(delta)

    def should_open_session(self) -> bool:
        """Enough text has been produced to justify a synthesis session."""
        return len(self.buffer.full_transcript) >= self.min_buffer

    def take(self, session_ready: bool) -> Optional[str]:
        """Slice the next non-final chunk off the buffer, if one is due."""
        count = next_chunk_length(
            self.buffer.pending, session_ready, self.min_buffer, self.max_buffer
        )
        if count == 0:
            return None
        return self.buffer.consume(count)

    def finish(self) -> str:
        """The final chunk: everything not yet sent, regardless of size."""
        return self.buffer.consume_all()


def split_text(text: str, limit: int = 200) -> List[str]:
    """
    Group a complete text into sentence-aligned chunks of at most ~`limit` chars.

    A single sentence longer than `limit` stays whole.
    """
    sentences = _SENTENCE.findall(text)
    tail = text[sum(len(s) for s in sentences):]
    if tail.strip():
        sentences.append(tail)
    if not sentences:
        return [text] if text else []

    chunks: List[str] = []
    current = ""
    for sentence in sentences:
        if current and len(current) + len(sentence) > limit:
            chunks.append(current)
            current = sentence
        else:
            current += sentence
    if current:
        chunks.append(current)
    return chunks

"""
Lightweight span tracer for one chat turn.

Records begin/end spans and point-in-time markers relative to the
moment the turn started. Persisted as JSON to <trace_dir>/<turn_id>.json.

Usage:
    tracer = Tracer("a1b2c3", prompt="Hello")
    tracer.begin("agent")
    tracer.mark("first_text")
    tracer.end("agent")
    tracer.save()
"""

import json
import os
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import List, Optional

from .log import get_logger

logger = get_logger("koe.tracer")

TRACE_DIR = Path(os.getenv("KOE_TRACE_DIR", "/tmp/koe"))


@dataclass
class Span:
    """A named time range within a turn."""
    name: str
    start_ms: float
    end_ms: Optional[float] = None


@dataclass
class Marker:
    """A named point-in-time within a turn."""
    name: str
    time_ms: float


@dataclass
class Tracer:
    """All timestamps are milliseconds since the tracer was created."""
    turn_id: str
    prompt: str = ""
    spans: List[Span] = field(default_factory=list)
    markers: List[Marker] = field(default_factory=list)
    cancelled: bool = False
    t0: float = field(default_factory=time.monotonic)

    def elapsed_ms(self) -> float:
        return round((time.monotonic() - self.t0) * 1000, 1)

    def begin(self, name: str) -> None:
        self.spans.append(Span(name=name, start_ms=self.elapsed_ms()))

    def end(self, name: str) -> None:
        """End the most recent open span with this name."""
        for span in reversed(self.spans):
            if span.name == name and span.end_ms is None:
                span.end_ms = self.elapsed_ms()
                return

    def mark(self, name: str) -> None:
        """Record a marker once; repeats are ignored."""
        if any(m.name == name for m in self.markers):
            return
        self.markers.append(Marker(name=name, time_ms=self.elapsed_ms()))

    def has(self, name: str) -> bool:
        return any(m.name == name for m in self.markers)

    def cancel(self) -> None:
        """Flag the turn as cancelled and close every open span."""
        self.cancelled = True
        now = self.elapsed_ms()
        for span in self.spans:
            if span.end_ms is None:
                span.end_ms = now

    def to_dict(self) -> dict:
        return {
            "turn_id": self.turn_id,
            "prompt": self.prompt,
            "cancelled": self.cancelled,
            "spans": [asdict(s) for s in self.spans],
            "markers": [asdict(m) for m in self.markers],
        }

    def save(self, trace_dir: Optional[Path] = None) -> Path:
        directory = trace_dir or TRACE_DIR
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{self.turn_id}.json"
        path.write_text(json.dumps(self.to_dict(), indent=2))
        logger.debug(f"Trace saved to {path}")
        return path


def latest_trace(trace_dir: Optional[Path] = None) -> Optional[dict]:
    """Load the most recently written trace, if any."""
    directory = trace_dir or TRACE_DIR
    if not directory.exists():
        return None
    traces = sorted(directory.glob("*.json"), key=lambda p: p.stat().st_mtime, reverse=True)
    if not traces:
        return None
    return json.loads(traces[0].read_text())

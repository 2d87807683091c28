"""
Centralized logging for koe.

Provides:
- Configured console logger with colors
- Logger for lifecycle and outbound-event logging
- ServiceLogger for individual services
"""

import logging
import sys
from typing import Optional

from .types import OutboundEvent, OutboundType, SessionState


# =============================================================================
# COLORS
# =============================================================================

class C:
    """ANSI color codes."""
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    MAGENTA = "\033[35m"
    CYAN = "\033[36m"
    WHITE = "\033[37m"

    BRIGHT_RED = "\033[91m"
    BRIGHT_GREEN = "\033[92m"
    BRIGHT_YELLOW = "\033[93m"
    BRIGHT_BLUE = "\033[94m"
    BRIGHT_MAGENTA = "\033[95m"
    BRIGHT_CYAN = "\033[96m"


def _c(color: str, text: str) -> str:
    """Wrap text in color codes."""
    return color + text + C.RESET


def _quote(text: str, color: str = C.WHITE) -> str:
    """Wrap text in quotes with color."""
    return _c(color, '"' + text + '"')


def _clip(text: str, limit: int = 50) -> str:
    text = text.replace("\n", " ")
    if len(text) > limit:
        return text[:limit - 3] + "..."
    return text


# =============================================================================
# LOGGING SETUP
# =============================================================================

class ColorFormatter(logging.Formatter):
    """Custom formatter with colors and clean timestamp."""

    def format(self, record: logging.LogRecord) -> str:
        # Millisecond-precision timestamps for latency debugging
        ms = int(record.msecs)
        ts = self.formatTime(record, "%H:%M:%S") + f".{ms:03d}"
        time_str = _c(C.DIM, ts)
        return time_str + " │ " + record.getMessage()


def setup_logging(level: int = logging.INFO) -> None:
    """Configure logging for the application."""
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(ColorFormatter())
    console.setLevel(level)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [console]

    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)


# =============================================================================
# LOGGER (lifecycle + outbound events)
# =============================================================================

class Logger:
    """
    Unified logger for koe.

    Class methods    -- lifecycle events (server, turn, client)
    Instance methods -- per-turn outbound event and state logging
    """

    _logger = logging.getLogger("koe")

    # ── Lifecycle (class methods) ────────────────────────────────────

    @classmethod
    def server_starting(cls, port: int) -> None:
        cls._logger.info("\U0001F680 " + _c(C.CYAN, "Server starting on port " + str(port)))

    @classmethod
    def server_ready(cls, url: str) -> None:
        cls._logger.info(_c(C.GREEN, "✓  Ready") + " " + _c(C.DIM, url))

    @classmethod
    def turn_started(cls, agent_id: str, prompt: str) -> None:
        cls._logger.info(
            "\U0001F4AC " + _c(C.CYAN, "Turn") + " " +
            _c(C.DIM, "agent " + agent_id[:8]) + " " + _quote(_clip(prompt, 40), C.DIM)
        )

    @classmethod
    def turn_finished(cls, elapsed_ms: int) -> None:
        cls._logger.info(_c(C.GREEN, "✓  Turn finished") + " " + _c(C.DIM, f"+{elapsed_ms}ms"))

    @classmethod
    def client_disconnected(cls) -> None:
        cls._logger.info("\U0001F50C " + _c(C.DIM, "Client disconnected"))

    @classmethod
    def shutdown(cls) -> None:
        cls._logger.info("\U0001F44B " + _c(C.DIM, "Shutting down"))

    # ── Instance methods (one turn) ──────────────────────────────────

    def __init__(self):
        self._events_logger = logging.getLogger("koe.events")

    def event(self, event: OutboundEvent) -> None:
        """Log an outbound event."""
        kind = event.get("type")

        if kind == OutboundType.AUDIO:
            size = len(event.get("data") or "")
            self._events_logger.debug(_c(C.DIM, "→ audio (" + str(size) + " b64 chars)"))
            return

        if kind == OutboundType.TEXT:
            name = event.get("event") or "text"
            if name == "on_chat_model_stream":
                self._events_logger.debug(_c(C.DIM, "→ " + _quote(_clip(event.get("data") or ""))))
                return
            self._events_logger.info(
                _c(C.YELLOW, "→") + " " + _c(C.BRIGHT_BLUE, name)
            )
            return

        if kind == OutboundType.TEXT_DONE:
            self._events_logger.info(_c(C.GREEN, "→") + " " + _c(C.DIM, "text done"))
            return

        if kind == OutboundType.AUDIO_DONE:
            self._events_logger.info(_c(C.GREEN, "→") + " " + _c(C.DIM, "audio done"))
            return

        if kind == OutboundType.ERROR:
            self.error(str(event.get("data")))

    def transition(self, old: SessionState, new: SessionState) -> None:
        """Log a synthesis session transition (magenta)."""
        if old != new:
            self._events_logger.info(
                _c(C.MAGENTA, "◆") + " " +
                _c(C.DIM, old.name) + " " +
                _c(C.MAGENTA, "→") + " " +
                _c(C.BRIGHT_MAGENTA, new.name)
            )

    def error(self, msg: str, exc: Optional[Exception] = None) -> None:
        """Log an error (red)."""
        if exc:
            self._events_logger.error(
                _c(C.RED, "✗ " + msg + ":") + " " + _c(C.DIM, str(exc))
            )
        else:
            self._events_logger.error(_c(C.RED, "✗ " + msg))


# =============================================================================
# SERVICE LOGGING
# =============================================================================

class ServiceLogger:
    """Logger for individual services (Agent, TTS, Turn, Player, ...)."""

    COLORS = {
        "Agent": C.BRIGHT_GREEN,
        "TTS": C.BRIGHT_CYAN,
        "Turn": C.BRIGHT_YELLOW,
        "Player": C.WHITE,
        "Client": C.BRIGHT_BLUE,
        "Speech": C.BRIGHT_MAGENTA,
        "Credentials": C.YELLOW,
    }

    def __init__(self, service_name: str):
        self._logger = logging.getLogger("koe." + service_name)
        self._name = service_name
        self._color = self.COLORS.get(service_name, C.WHITE)

    def connected(self) -> None:
        self._logger.info(
            _c(C.GREEN, "✓") + " " + _c(self._color, self._name) + " " + _c(C.DIM, "connected")
        )

    def disconnected(self) -> None:
        self._logger.debug(_c(C.DIM, "○ " + self._name + " disconnected"))

    def error(self, msg: str, exc: Optional[BaseException] = None) -> None:
        if exc:
            self._logger.error(
                _c(C.RED, "✗") + " " +
                _c(self._color, self._name + ":") + " " +
                msg + " " + _c(C.DIM, "(" + str(exc) + ")")
            )
        else:
            self._logger.error(
                _c(C.RED, "✗") + " " + _c(self._color, self._name + ":") + " " + msg
            )

    def warning(self, msg: str) -> None:
        self._logger.warning(_c(C.YELLOW, "!") + " " + _c(self._color, self._name + ":") + " " + msg)

    def debug(self, msg: str) -> None:
        self._logger.debug("  " + _c(C.DIM, self._name + ": " + msg))

    def info(self, msg: str) -> None:
        self._logger.info("  " + _c(self._color, self._name + ":") + " " + msg)

"""
Client for the multiplexed text + audio stream.

Reads the server's SSE stream, builds the assistant message from text
events, and hands audio to an injected PlaybackBuffer.

    player = PlaybackBuffer(FileMediaBackend(Path("out")))
    client = ChatClient("http://localhost:3040", player=player)
    message = await client.ask(agent_id, session_id, "Hello")
"""

import json
from typing import Any, AsyncIterator, Callable, Dict, Optional

import httpx

from .log import ServiceLogger
from .player import PlaybackBuffer
from .types import ChatMessage, OutboundType

log = ServiceLogger("Client")

STREAM_PATH = "/api/tts-chat-stream"


async def iter_sse_events(lines: AsyncIterator[str]) -> AsyncIterator[Dict[str, Any]]:
    """Decode `data:` lines into event dicts; other lines are ignored."""
    async for line in lines:
        if not line.startswith("data:"):
            continue
        raw = line[5:].strip()
        if not raw:
            continue
        try:
            event = json.loads(raw)
        except ValueError:
            log.warning(f"Unparseable SSE data: {raw[:80]}")
            continue
        if isinstance(event, dict):
            yield event


def _pick(source: Any, *keys: str) -> Any:
    if not isinstance(source, dict):
        return None
    for key in keys:
        value = source.get(key)
        if value:
            return value
    return None


def _tool_start(event: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize an on_tool_start event into a pending tool call."""
    data = event.get("data")
    name = (
        _pick(event, "name", "tool_name")
        or _pick(data, "name", "tool_name")
        or (data if isinstance(data, str) else None)
        or "unknown_tool"
    )
    tool_input = _pick(event, "input", "tool_input") or _pick(data, "input", "tool_input") or {}
    if not isinstance(tool_input, dict):
        tool_input = {"query": tool_input}
    if "query" not in tool_input and isinstance(data, dict) and data.get("query"):
        tool_input = {"query": data["query"], **tool_input}

    return {
        "toolType": _pick(event, "toolType", "tool_type") or _pick(data, "toolType", "tool_type") or "unknown",
        "toolName": name,
        "input": tool_input,
        "output": None,
    }


def _tool_output(event: Dict[str, Any]) -> Any:
    """Extract the tool result from an on_tool_end event."""
    data = event.get("data")
    for scope in (event, data):
        if not isinstance(scope, dict):
            continue
        if scope.get("output"):
            return scope["output"]
        if scope.get("results"):
            return {"results": scope["results"]}
        if scope.get("tool_output"):
            return scope["tool_output"]
    if isinstance(data, list):
        return {"results": data}
    if isinstance(data, dict):
        return data
    return {}


class ChatClient:
    """Consumes one turn at a time; the player is reset before each turn."""

    def __init__(
        self,
        base_url: str,
        player: Optional[PlaybackBuffer] = None,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._player = player
        self._timeout = httpx.Timeout(timeout, connect=10.0)
        self._transport = transport
        self._pending_tool: Optional[Dict[str, Any]] = None

    async def ask(
        self,
        agent_id: str,
        session_id: str,
        prompt: str,
        voice_id: Optional[str] = None,
        on_update: Optional[Callable[[ChatMessage], None]] = None,
    ) -> ChatMessage:
        """Stream one turn and return the assembled message."""
        message = ChatMessage()
        self._pending_tool = None
        if self._player is not None:
            await self._player.reset()

        body: Dict[str, Any] = {"agentId": agent_id, "sessionId": session_id, "prompt": prompt}
        if voice_id:
            body["voiceId"] = voice_id

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                async with client.stream("POST", self._base_url + STREAM_PATH, json=body) as response:
                    if response.status_code >= 400:
                        detail = (await response.aread()).decode("utf-8", errors="replace")
                        message.error = f"TTS Chat API error: {response.status_code} - {detail}"
                        log.error(message.error)
                        return message

                    async for event in iter_sse_events(response.aiter_lines()):
                        await self.handle(event, message)
                        if on_update is not None:
                            on_update(message)
        except httpx.HTTPError as e:
            log.error("Request failed", e)
            message.error = str(e)
        finally:
            # End of stream ends playback even without audio_done (error, drain ceiling)
            if self._player is not None and not message.audio_done:
                await self._player.mark_done()

        return message

    async def handle(self, event: Dict[str, Any], message: ChatMessage) -> None:
        """Apply one outbound event to the message (and the player)."""
        kind = event.get("type")

        if kind == OutboundType.TEXT:
            self._handle_text(event, message)

        elif kind == OutboundType.AUDIO:
            data = event.get("data")
            if isinstance(data, str) and data:
                message.audio_chunks += 1
                if self._player is not None:
                    await self._player.add_chunk(data)

        elif kind == OutboundType.AUDIO_DONE:
            message.audio_done = True
            if self._player is not None:
                await self._player.mark_done()

        elif kind == OutboundType.TEXT_DONE:
            message.text_done = True

        elif kind == OutboundType.ERROR:
            message.error = str(event.get("data") or "An error occurred")
            log.error(f"Stream error: {message.error}")

    def _handle_text(self, event: Dict[str, Any], message: ChatMessage) -> None:
        name = event.get("event")
        data = event.get("data")

        if name == "on_chat_model_stream":
            if isinstance(data, str):
                message.content += data

        elif name == "on_tool_start":
            self._pending_tool = _tool_start(event)
            message.current_tool = self._pending_tool["toolName"]

        elif name == "on_tool_end":
            if self._pending_tool is not None:
                output = _tool_output(event)
                self._pending_tool["output"] = output if isinstance(output, dict) else {"result": output}
                message.tool_calls.append(self._pending_tool)
                self._pending_tool = None
            message.current_tool = ""

        elif name == "on_chain_end":
            if isinstance(data, str) and data:
                message.content = data
            # Server already normalized these; prefer them over accumulated calls
            tool_calls = event.get("toolCalls")
            if isinstance(tool_calls, list) and tool_calls:
                message.tool_calls = list(tool_calls)
            retrieval_calls = event.get("retrieval_calls")
            if isinstance(retrieval_calls, list) and retrieval_calls:
                message.retrieval_calls = list(retrieval_calls)

        elif name == "error":
            if isinstance(data, dict):
                message.error = data.get("message") or data.get("error") or "An error occurred"
            else:
                message.error = str(data or "An error occurred")

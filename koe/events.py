"""
Agent event interpretation.

interpret()    -- raw frame -> AgentEvent (normalizes legacy field names once)
to_outbound()  -- AgentEvent -> outbound event dict (or None to drop)

Both are pure. Every surface that consumes agent frames goes through
these two functions.
"""

from typing import Any, Dict, List, Optional

from .types import AgentEvent, AgentEventKind, EVENT_NAMES, OutboundEvent, OutboundType


# Lookup order for tool-call data; first non-empty list wins.
_TOOL_CALL_KEYS = ("toolCalls", "tool_calls")
_RETRIEVAL_CALL_KEYS = ("retrieval_calls",)


def _first_list(obj: Dict[str, Any], keys) -> Optional[List[Any]]:
    """Search `obj` then `obj["data"]` for the first non-empty list."""
    scopes = [obj]
    data = obj.get("data")
    if isinstance(data, dict):
        scopes.append(data)

    for scope in scopes:
        for key in keys:
            value = scope.get(key)
            if isinstance(value, list) and value:
                return value
    return None


def interpret(obj: Dict[str, Any]) -> Optional[AgentEvent]:
    """
    Classify one decoded frame.

    Returns None for objects that carry no `event` name.
    """
    name = obj.get("event")
    if not isinstance(name, str) or not name:
        return None

    kind = EVENT_NAMES.get(name, AgentEventKind.OTHER)

    text_delta = None
    if kind == AgentEventKind.MODEL_STREAM:
        data = obj.get("data")
        if isinstance(data, str) and data:
            text_delta = data

    tool_calls = None
    retrieval_calls = None
    if kind == AgentEventKind.CHAIN_END:
        tool_calls = _first_list(obj, _TOOL_CALL_KEYS)
        retrieval_calls = _first_list(obj, _RETRIEVAL_CALL_KEYS)

    return AgentEvent(
        kind=kind,
        name=name,
        payload=obj,
        text_delta=text_delta,
        tool_calls=tool_calls,
        retrieval_calls=retrieval_calls,
    )


def to_outbound(event: AgentEvent) -> Optional[OutboundEvent]:
    """Map an agent event to the event forwarded to the client."""
    kind = event.kind

    if kind == AgentEventKind.MODEL_STREAM:
        if event.text_delta is None:
            return None
        return {"type": OutboundType.TEXT, "data": event.text_delta, "event": event.name}

    if kind in (AgentEventKind.TOOL_START, AgentEventKind.TOOL_END):
        # Verbatim: the client renders tool UI from fields we don't interpret.
        # The union tag always wins over a payload field named "type".
        return {**event.payload, "type": OutboundType.TEXT, "event": event.name}

    if kind == AgentEventKind.CHAIN_END:
        return {
            "type": OutboundType.TEXT,
            "event": event.name,
            "data": event.payload.get("data"),
            "toolCalls": event.tool_calls,
            "retrieval_calls": event.retrieval_calls,
        }

    if kind in (AgentEventKind.ERROR, AgentEventKind.OTHER):
        return {"type": OutboundType.TEXT, "data": event.payload.get("data"), "event": event.name}

    raise ValueError(f"Unhandled agent event kind: {kind}")

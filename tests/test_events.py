"""
Unit tests for agent event interpretation and outbound mapping.

Both functions are pure, so these are plain input/output checks.
"""

import pytest

from koe.events import interpret, to_outbound
from koe.types import AgentEvent, AgentEventKind


# =============================================================================
# INTERPRET
# =============================================================================

class TestInterpret:

    def test_object_without_event_is_ignored(self):
        """Frames with no event name produce nothing."""
        assert interpret({"data": "hi"}) is None
        assert interpret({"event": ""}) is None

    def test_model_stream_delta(self):
        """on_chat_model_stream with string data carries a text delta."""
        event = interpret({"event": "on_chat_model_stream", "data": "Hi"})
        assert event.kind == AgentEventKind.MODEL_STREAM
        assert event.text_delta == "Hi"

    def test_model_stream_non_string_has_no_delta(self):
        """Non-string or empty data is not a delta."""
        assert interpret({"event": "on_chat_model_stream", "data": {"x": 1}}).text_delta is None
        assert interpret({"event": "on_chat_model_stream", "data": ""}).text_delta is None

    def test_unknown_event_is_other(self):
        event = interpret({"event": "on_retriever_end", "data": 3})
        assert event.kind == AgentEventKind.OTHER
        assert event.text_delta is None

    @pytest.mark.parametrize("obj, expected", [
        ({"event": "on_chain_end", "toolCalls": [1]}, [1]),
        ({"event": "on_chain_end", "tool_calls": [2]}, [2]),
        ({"event": "on_chain_end", "data": {"toolCalls": [3]}}, [3]),
        ({"event": "on_chain_end", "data": {"tool_calls": [4]}}, [4]),
        ({"event": "on_chain_end", "toolCalls": [], "data": {"tool_calls": [5]}}, [5]),
        ({"event": "on_chain_end", "data": "done"}, None),
    ])
    def test_chain_end_tool_call_lookup(self, obj, expected):
        """Tool calls are found in the first non-empty location, in order."""
        assert interpret(obj).tool_calls == expected

    def test_chain_end_retrieval_calls(self):
        event = interpret({"event": "on_chain_end", "data": {"retrieval_calls": ["r"]}})
        assert event.retrieval_calls == ["r"]

    def test_top_level_wins_over_nested(self):
        """A top-level list takes precedence over one nested in data."""
        event = interpret({
            "event": "on_chain_end",
            "toolCalls": ["top"],
            "data": {"toolCalls": ["nested"]},
        })
        assert event.tool_calls == ["top"]


# =============================================================================
# TO OUTBOUND
# =============================================================================

class TestToOutbound:

    def test_model_stream(self):
        outbound = to_outbound(interpret({"event": "on_chat_model_stream", "data": "Hi"}))
        assert outbound == {"type": "text", "data": "Hi", "event": "on_chat_model_stream"}

    def test_model_stream_without_delta_dropped(self):
        assert to_outbound(interpret({"event": "on_chat_model_stream", "data": ""})) is None

    def test_tool_events_forwarded_verbatim(self):
        """Tool start/end keep every payload field, tagged as text."""
        obj = {"event": "on_tool_start", "name": "search", "input": {"q": "x"}, "toolType": "web"}
        outbound = to_outbound(interpret(obj))
        assert outbound["type"] == "text"
        assert outbound["event"] == "on_tool_start"
        assert outbound["name"] == "search"
        assert outbound["input"] == {"q": "x"}
        assert outbound["toolType"] == "web"

    def test_payload_type_does_not_override_tag(self):
        obj = {"event": "on_tool_end", "type": "tool", "output": "ok"}
        outbound = to_outbound(interpret(obj))
        assert outbound["type"] == "text"
        assert outbound["output"] == "ok"

    def test_chain_end_normalized(self):
        """on_chain_end always carries both normalized lists (possibly None)."""
        obj = {"event": "on_chain_end", "data": {"tool_calls": [1]}}
        outbound = to_outbound(interpret(obj))
        assert outbound == {
            "type": "text",
            "event": "on_chain_end",
            "data": {"tool_calls": [1]},
            "toolCalls": [1],
            "retrieval_calls": None,
        }

    def test_error_and_other(self):
        assert to_outbound(interpret({"event": "error", "data": "boom"})) == {
            "type": "text", "data": "boom", "event": "error",
        }
        assert to_outbound(interpret({"event": "custom"})) == {
            "type": "text", "data": None, "event": "custom",
        }

    def test_does_not_mutate_payload(self):
        obj = {"event": "on_tool_start", "type": "x"}
        to_outbound(interpret(obj))
        assert obj == {"event": "on_tool_start", "type": "x"}

    def test_all_kinds_handled(self):
        """Every kind maps without raising."""
        for kind in AgentEventKind:
            event = AgentEvent(kind=kind, name="n", payload={"event": "n"}, text_delta="t")
            to_outbound(event)

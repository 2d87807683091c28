"""
HTTP-level tests for the FastAPI app.

Dependencies are swapped through app.dependency_overrides so no
request leaves the process.
"""

import json

import pytest
from fastapi.testclient import TestClient
from sse_starlette.sse import AppStatus

import koe.tracer
from fakes import FAST, FakeAgent, FakeSession, factory, frame
from koe.server import (
    app,
    get_agent_client,
    get_key_lookup,
    get_session_factory,
    get_settings,
)
from koe.services.agent_api import AgentAPIError
from koe.services.speech import SpeechAPIError


# =============================================================================
# FIXTURES
# =============================================================================

def parse_sse(body: str):
    return [
        json.loads(block[len("data: "):])
        for block in body.split("\n\n")
        if block.startswith("data: ")
    ]


def key_lookup(key="sk-test", calls=None):
    async def lookup(settings, cookies):
        if calls is not None:
            calls.append(cookies)
        return key
    return lookup


@pytest.fixture(autouse=True)
def isolated(tmp_path, monkeypatch):
    """Fresh overrides and a private trace directory per test."""
    monkeypatch.setattr(koe.tracer, "TRACE_DIR", tmp_path / "traces")
    # sse-starlette keeps a process-wide exit event bound to the first loop
    monkeypatch.setattr(AppStatus, "should_exit_event", None, raising=False)
    FakeSession.instances = []
    app.dependency_overrides[get_settings] = lambda: FAST
    app.dependency_overrides[get_key_lookup] = lambda: key_lookup()
    app.dependency_overrides[get_session_factory] = lambda: factory()
    yield
    app.dependency_overrides.clear()


def make_client(agent=None) -> TestClient:
    app.dependency_overrides[get_agent_client] = lambda: agent
    return TestClient(app)


BODY = {"agentId": "agent-1", "sessionId": "sess-1", "prompt": "Hi"}


# =============================================================================
# CHAT STREAM
# =============================================================================

class TestChatStream:

    def test_streams_text_and_audio(self):
        agent = FakeAgent([
            frame("on_chat_model_stream", "Hello there, "),
            frame("on_chat_model_stream", "how can I help?"),
        ])
        client = make_client(agent)
        response = client.post("/api/tts-chat-stream", json=BODY)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = parse_sse(response.text)
        assert [e["type"] for e in events] == ["text", "text", "text_done", "audio", "audio_done"]
        assert agent.calls == [("agent-1", "sess-1", "Hi", "")]

    def test_alias_route(self):
        client = make_client(FakeAgent([frame("on_chat_model_stream", "Ok.")]))
        response = client.post("/api/concierge-stream", json=BODY)
        assert response.status_code == 200
        assert parse_sse(response.text)[-1] == {"type": "audio_done"}

    def test_voice_id_passed_to_session(self):
        client = make_client(FakeAgent([frame("on_chat_model_stream", "Ok.")]))
        client.post("/api/tts-chat-stream", json={**BODY, "voiceId": "voice-9"})
        assert FakeSession.instances[0].voice_id == "voice-9"
        assert FakeSession.instances[0].api_key == "sk-test"

    @pytest.mark.parametrize("missing", ["agentId", "sessionId", "prompt"])
    def test_missing_field_is_400(self, missing):
        client = make_client(FakeAgent([]))
        body = {k: v for k, v in BODY.items() if k != missing}
        response = client.post("/api/tts-chat-stream", json=body)
        assert response.status_code == 400
        assert response.json() == {"error": "agentId, sessionId, and prompt are required"}

    def test_missing_api_key_is_500(self):
        app.dependency_overrides[get_key_lookup] = lambda: key_lookup(None)
        client = make_client(FakeAgent([]))
        response = client.post("/api/tts-chat-stream", json=BODY)
        assert response.status_code == 500

    def test_invalid_body_skips_key_lookup(self):
        """A 400 never costs a credentials-service round trip."""
        calls = []
        app.dependency_overrides[get_key_lookup] = lambda: key_lookup(calls=calls)
        client = make_client(FakeAgent([]))

        response = client.post("/api/tts-chat-stream", json={"prompt": "Hi"})
        assert response.status_code == 400
        assert client.post("/api/tts-stream", json={}).status_code == 400
        assert client.post("/api/text-to-speech", json={"text": ""}).status_code == 400
        assert calls == []

    def test_key_lookup_gets_cookies(self):
        calls = []
        app.dependency_overrides[get_key_lookup] = lambda: key_lookup(calls=calls)
        client = make_client(FakeAgent([frame("on_chat_model_stream", "Ok.")]))
        client.post("/api/tts-chat-stream", json=BODY, headers={"cookie": "sid=42"})
        assert calls == ["sid=42"]

    def test_missing_agent_url_is_500(self):
        client = make_client(None)
        response = client.post("/api/tts-chat-stream", json=BODY)
        assert response.status_code == 500
        assert "AI_API_URL" in response.json()["error"]

    def test_agent_error_becomes_error_event(self):
        client = make_client(FakeAgent([], error=AgentAPIError(503, "down")))
        response = client.post("/api/tts-chat-stream", json=BODY)
        assert response.status_code == 200
        assert parse_sse(response.text) == [{"type": "error", "data": "Agent API error: 503 - down"}]

    def test_trace_saved_and_served(self):
        client = make_client(FakeAgent([frame("on_chat_model_stream", "Ok.")]))
        client.post("/api/tts-chat-stream", json=BODY)

        response = client.get("/trace/latest")
        assert response.status_code == 200
        trace = response.json()
        assert trace["prompt"] == "Hi"
        assert {s["name"] for s in trace["spans"]} >= {"agent", "tts"}


# =============================================================================
# COMPLETE-TEXT ROUTES
# =============================================================================

class TestTTSStream:

    def test_streams_audio(self):
        client = make_client()
        response = client.post("/api/tts-stream", json={"text": "Read this aloud."})
        assert response.status_code == 200
        events = parse_sse(response.text)
        assert events[-1] == {"type": "audio_done"}
        assert FakeSession.instances[0].final == "Read this aloud."

    def test_text_required(self):
        client = make_client()
        assert client.post("/api/tts-stream", json={}).status_code == 400


class TestTextToSpeech:

    def test_proxies_audio(self, monkeypatch):
        async def fake_stream(api_key, text, voice_id, model_id, output_format="mp3_44100_128"):
            assert api_key == "sk-test"
            assert voice_id == FAST.voice_id
            yield b"ID3"
            yield b"more"

        monkeypatch.setattr("koe.server.stream_speech", fake_stream)
        client = make_client()
        response = client.post("/api/text-to-speech", json={"text": "Hi"})
        assert response.status_code == 200
        assert response.headers["content-type"] == "audio/mpeg"
        assert response.content == b"ID3more"

    def test_upstream_error_status_forwarded(self, monkeypatch):
        async def fake_stream(*args, **kwargs):
            raise SpeechAPIError(401, "invalid key")
            yield b""

        monkeypatch.setattr("koe.server.stream_speech", fake_stream)
        client = make_client()
        response = client.post("/api/text-to-speech", json={"text": "Hi"})
        assert response.status_code == 401
        assert response.json() == {"error": "Failed to generate speech", "details": "invalid key"}

    def test_text_required(self):
        client = make_client()
        response = client.post("/api/text-to-speech", json={"text": ""})
        assert response.status_code == 400


# =============================================================================
# MISC
# =============================================================================

class TestMisc:

    def test_health(self):
        assert make_client().get("/health").json() == {"status": "ok"}

    def test_no_trace_is_404(self):
        assert make_client().get("/trace/latest").status_code == 404

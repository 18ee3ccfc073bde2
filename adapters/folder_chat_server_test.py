"""Tests for the stub chat server and client ↔ server round trips.

Validates:
- Health endpoint and request validation
- Streamed bodies follow the marker protocol and parse back cleanly
- JSON mode answers, error answers, empty-answer fallback
- FolderChatClient against the app over httpx.ASGITransport
"""

import asyncio
import os
import sys

import httpx
import pytest

# Ensure adapters/ is on path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from starlette.testclient import TestClient

from chat_config import DEFAULTS
from folder_chat import Conversation, FolderChatClient
from folder_chat_server import (
    NO_ANSWER,
    ResponderEvent,
    ScriptedResponder,
    create_app,
    load_server_config,
)
from stream_parser import Completion, Failure, ParserState, ProgressNotice, StreamParser

SOURCES = [{"path": "notes/plan.md", "title": "plan"}]


def run(coro):
    """Run async test in event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _scripted(answer="The plan ships Friday.", chunk_size=5):
    return ScriptedResponder(
        answer=answer,
        sources=SOURCES,
        progress=["Searching files...", "Reading notes/plan.md"],
        chunk_size=chunk_size,
    )


async def _failing_responder(question, history):
    yield ResponderEvent("progress", text="Searching files...")
    yield ResponderEvent("text", text="Partial")
    yield ResponderEvent("error", text="rate limited")


def _parse(body: bytes):
    parser = StreamParser()
    events = parser.feed(body) + parser.finish()
    return parser, events


class TestEndpoints:
    def test_healthz(self):
        client = TestClient(create_app(_scripted()))
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    def test_invalid_json(self):
        client = TestClient(create_app(_scripted()))
        response = client.post("/chat", content=b"{nope")
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_JSON"

    def test_missing_question(self):
        client = TestClient(create_app(_scripted()))
        response = client.post("/chat", json={"question": "  "})
        assert response.status_code == 400
        assert response.json()["error"] == "MISSING_QUESTION"


class TestServerConfig:
    @pytest.fixture(autouse=True)
    def _isolate(self, monkeypatch, tmp_path):
        for var in list(os.environ):
            if var.startswith("FOLDER_CHAT_"):
                monkeypatch.delenv(var)
        monkeypatch.chdir(tmp_path)

    def test_broken_config_falls_back_to_defaults(self, tmp_path):
        (tmp_path / ".folder-chat.yaml").write_text("client:\n  api_key: \"{env:HOME}\"\n")
        assert load_server_config() == DEFAULTS

    def test_unparsable_yaml_falls_back_to_defaults(self, tmp_path):
        (tmp_path / ".folder-chat.yaml").write_text("client: [unclosed\n")
        assert load_server_config() == DEFAULTS

    def test_valid_config_used(self, tmp_path):
        (tmp_path / ".folder-chat.yaml").write_text("server:\n  answer: Hello\n")
        assert load_server_config()["server"]["answer"] == "Hello"


class TestStreamedBody:
    def test_markers_parse_back(self):
        client = TestClient(create_app(_scripted()))
        response = client.post("/chat", json={"question": "When?", "stream": True})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")

        assert b"<!-- PROGRESS: Searching files... -->" in response.content
        parser, events = _parse(response.content)
        assert events == [Completion("The plan ships Friday.", {"sources": SOURCES})]
        assert parser.state is ParserState.COMPLETED

    def test_progress_before_start(self):
        client = TestClient(create_app(_scripted()))
        body = client.post("/chat", json={"question": "q"}).content
        head, _, _ = body.partition(b"<!-- STREAM_START -->")
        parser = StreamParser()
        assert parser.feed(head) == [ProgressNotice("Reading notes/plan.md")]

    def test_error_marker(self):
        client = TestClient(create_app(_failing_responder))
        response = client.post("/chat", json={"question": "q"})
        _, events = _parse(response.content)
        assert events[-1] == Failure("rate limited")

    def test_empty_answer_fallback(self):
        client = TestClient(create_app(_scripted(answer="")))
        _, events = _parse(client.post("/chat", json={"question": "q"}).content)
        assert events[-1] == Completion(NO_ANSWER, {"sources": SOURCES})


class TestJsonBody:
    def test_answer(self):
        client = TestClient(create_app(_scripted()))
        response = client.post("/chat", json={"question": "q", "stream": False})
        assert response.json() == {"answer": "The plan ships Friday.", "sources": SOURCES}

    def test_error(self):
        client = TestClient(create_app(_failing_responder))
        response = client.post("/chat", json={"question": "q", "stream": False})
        assert response.json()["error"] == "rate limited"


def _asgi_client(app, stream=True):
    http = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://stub")
    return FolderChatClient({"client": {"stream": stream}}, http_client=http)


async def _outcome(client, question):
    session = client.start(question)
    async for _ in session.events():
        pass
    return session.outcome


class TestClientRoundTrip:
    def test_streamed(self):
        client = _asgi_client(create_app(_scripted()))
        outcome = run(_outcome(client, "When?"))
        assert outcome == Completion("The plan ships Friday.", {"sources": SOURCES})

    def test_json(self):
        client = _asgi_client(create_app(_scripted()), stream=False)
        outcome = run(_outcome(client, "When?"))
        assert outcome == Completion("The plan ships Friday.", {"sources": SOURCES})

    def test_server_error_marker(self):
        client = _asgi_client(create_app(_failing_responder))
        outcome = run(_outcome(client, "q"))
        assert outcome == Failure("rate limited")

    def test_conversation_history_reaches_server(self):
        seen = []

        async def echo_history(question, history):
            seen.append(history)
            yield ResponderEvent("text", text=f"turns={len(history)}")

        conversation = Conversation(_asgi_client(create_app(echo_history)))
        run(conversation.send("one"))
        outcome = run(conversation.send("two"))
        assert outcome.text == "turns=2"
        assert seen[1][0] == {"role": "user", "content": "one"}

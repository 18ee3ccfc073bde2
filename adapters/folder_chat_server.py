#!/usr/bin/env python3
"""
folder_chat_server.py — Stub folder chat backend speaking the marker protocol

FastAPI application for local development and integration tests. Answers
come from a pluggable responder; the default replays a scripted answer
from config (server.answer / server.sources / server.progress).

Run with any ASGI server, e.g.: uvicorn folder_chat_server:app --port 3001

Endpoints:
  POST /chat     — {"question", "conversation_history", "stream"}
                   stream=true  → text/plain body with PROGRESS / STREAM_START /
                                  STREAM_END / ERROR markers
                   stream=false → {"answer", "sources"[, "error"]}
  GET  /healthz  — Liveness probe
"""

import copy
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import yaml
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.responses import Response, StreamingResponse

from chat_config import DEFAULTS, load_config
from sentinel_scanner import format_error, format_progress, format_stream_end, format_stream_start

logger = logging.getLogger("folder_chat.server")

NO_ANSWER = "I couldn't find an answer to your question in this folder."

START_TIME = time.monotonic()


@dataclass
class ResponderEvent:
    """One step of an answer: progress, text, sources or error."""
    kind: str
    text: str = ""
    sources: List[Dict[str, str]] = field(default_factory=list)


Responder = Callable[[str, List[Dict[str, str]]], AsyncIterator[ResponderEvent]]


class ScriptedResponder:
    """Replays a fixed answer in chunk_size pieces."""

    def __init__(
        self,
        answer: str,
        sources: Optional[List[Dict[str, str]]] = None,
        progress: Optional[List[str]] = None,
        chunk_size: int = 16,
    ):
        self.answer = answer
        self.sources = sources or []
        self.progress = progress or []
        self.chunk_size = max(1, chunk_size)

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ScriptedResponder":
        server = config.get("server", {})
        return cls(
            answer=server.get("answer", ""),
            sources=server.get("sources", []),
            progress=server.get("progress", []),
            chunk_size=server.get("chunk_size", 16),
        )

    async def __call__(
        self, question: str, history: List[Dict[str, str]]
    ) -> AsyncIterator[ResponderEvent]:
        for line in self.progress:
            yield ResponderEvent("progress", text=line)
        for i in range(0, len(self.answer), self.chunk_size):
            yield ResponderEvent("text", text=self.answer[i:i + self.chunk_size])
        yield ResponderEvent("sources", sources=self.sources)


async def stream_markers(
    responder: Responder, question: str, history: List[Dict[str, str]]
) -> AsyncIterator[str]:
    """Encode responder output as the streamed marker protocol."""
    started = False
    sources: List[Dict[str, str]] = []
    try:
        async for event in responder(question, history):
            if event.kind == "progress":
                if not started:
                    yield format_progress(event.text)
            elif event.kind == "text":
                if not started:
                    yield format_stream_start()
                    started = True
                yield event.text
            elif event.kind == "sources":
                sources = list(event.sources)
            elif event.kind == "error":
                yield format_error(event.text)
                return
    except Exception as e:
        logger.exception("Responder failed mid-stream")
        yield format_error(f"Internal error: {e}")
        return

    if not started:
        yield format_stream_start()
        yield NO_ANSWER
    yield format_stream_end({"sources": sources})


async def collect_answer(
    responder: Responder, question: str, history: List[Dict[str, str]]
) -> Dict[str, Any]:
    """Run the responder to completion and build the JSON answer document."""
    parts: List[str] = []
    sources: List[Dict[str, str]] = []
    async for event in responder(question, history):
        if event.kind == "text":
            parts.append(event.text)
        elif event.kind == "sources":
            sources = list(event.sources)
        elif event.kind == "error":
            return {"answer": "", "sources": [], "error": event.text}
    return {"answer": "".join(parts) or NO_ANSWER, "sources": sources}


def create_app(responder: Responder) -> FastAPI:
    app = FastAPI(title="Folder Chat Stub", docs_url=None, redoc_url=None)

    @app.get("/healthz")
    async def healthz() -> Dict[str, Any]:
        """Liveness probe."""
        return {
            "status": "alive",
            "uptime_s": round(time.monotonic() - START_TIME, 2),
        }

    @app.post("/chat")
    async def chat(request: Request) -> Response:
        body = await request.body()
        try:
            chat_request = json.loads(body)
        except json.JSONDecodeError:
            return JSONResponse(
                status_code=400,
                content={"error": "INVALID_JSON", "message": "Request body is not valid JSON"},
            )
        if not isinstance(chat_request, dict):
            return JSONResponse(
                status_code=400,
                content={"error": "INVALID_JSON", "message": "Request body must be a JSON object"},
            )

        question = chat_request.get("question")
        if not isinstance(question, str) or not question.strip():
            return JSONResponse(
                status_code=400,
                content={"error": "MISSING_QUESTION", "message": "Request needs a non-empty 'question'"},
            )

        history = chat_request.get("conversation_history") or []
        logger.info("Question (%d prior turns, stream=%s)", len(history), chat_request.get("stream", True))

        if chat_request.get("stream", True):
            return StreamingResponse(
                stream_markers(responder, question, history),
                media_type="text/plain; charset=utf-8",
            )

        try:
            answer = await collect_answer(responder, question, history)
        except Exception as e:
            logger.exception("Responder failed")
            answer = {"answer": "", "sources": [], "error": f"Internal error: {e}"}
        return JSONResponse(content=answer)

    return app


def load_server_config() -> Dict[str, Any]:
    """load_config(), falling back to DEFAULTS when the local config is broken."""
    try:
        return load_config()
    except (ValueError, yaml.YAMLError) as e:
        logger.error("Config error, serving defaults: %s", e)
        return copy.deepcopy(DEFAULTS)


app = create_app(ScriptedResponder.from_config(load_server_config()))

#!/usr/bin/env python3
"""
folder_chat.py — Folder chat client over httpx

Usage: python3 folder_chat.py <question> [--json] [--config path]

Sends one question (plus recent conversation turns) to the chat backend and
renders the answer as it streams. Progress goes to stderr, the answer and
its sources to stdout.

Exit codes:
  0 = answer completed
  1 = answer failed (protocol error, malformed payload, incomplete stream)
  2 = network/transport error
  4 = invalid usage or config
"""

import asyncio
import logging
import sys
from typing import Any, Dict, List, Optional, Union

import httpx

from chat_config import load_config, redact_headers
from chat_session import ChatHandlers, ChatResponse, ChatSession, ChatTransportError
from stream_parser import TRANSPORT_ERROR, Completion, Failure

logger = logging.getLogger("folder_chat.client")

DEFAULT_HISTORY_LIMIT = 10


class ConversationBusyError(RuntimeError):
    """A question was sent while the previous answer is still in flight."""


def _safe_error_body(response: httpx.Response) -> str:
    """Extract an error message from a (read) response without dumping the whole body."""
    try:
        data = response.json()
        if isinstance(data, dict):
            message = data.get("message") or data.get("error")
            if message:
                return str(message)[:200]
        return response.text[:200]
    except Exception:
        return response.text[:200] if response.text else "(empty body)"


def build_chat_request(
    question: str,
    prior_turns: List[Dict[str, str]],
    stream: bool = True,
    history_limit: int = DEFAULT_HISTORY_LIMIT,
) -> Dict[str, Any]:
    """Build the request body. Only the most recent turns are sent."""
    recent = prior_turns[-history_limit:] if history_limit > 0 else []
    return {
        "question": question,
        "conversation_history": [
            {"role": turn["role"], "content": turn["content"]} for turn in recent
        ],
        "stream": stream,
    }


class FolderChatClient:
    """Opens chat sessions against the configured backend.

    Each session owns one streamed HTTP response, released when the
    session ends however it ends.
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        client_config = (config or {}).get("client", {})
        self.base_url = client_config.get("base_url", "http://127.0.0.1:3001").rstrip("/")
        self.chat_path = client_config.get("chat_path", "/chat")
        self.api_key = client_config.get("api_key", "")
        self.stream = client_config.get("stream", True)
        self.history_limit = client_config.get("history_limit", DEFAULT_HISTORY_LIMIT)

        if http_client is None:
            timeout = httpx.Timeout(
                connect=client_config.get("connect_timeout_ms", 5000) / 1000.0,
                read=client_config.get("read_timeout_ms", 60000) / 1000.0,
                write=30.0,
                pool=client_config.get("total_timeout_ms", 300000) / 1000.0,
            )
            http_client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
            self._owns_client = True
        else:
            self._owns_client = False
        self._http = http_client

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/plain, application/json" if self.stream else "application/json",
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _open(self, body: Dict[str, Any]) -> ChatResponse:
        headers = self._headers()
        logger.debug("POST %s headers=%s", self.chat_path, redact_headers(headers))
        request = self._http.build_request("POST", self.chat_path, json=body, headers=headers)
        try:
            response = await self._http.send(request, stream=True)
        except httpx.TimeoutException as e:
            raise ChatTransportError(f"Request timed out: {e}") from e
        except httpx.ConnectError as e:
            raise ChatTransportError(f"Connection failed: {e}") from e
        except httpx.HTTPError as e:
            raise ChatTransportError(f"Request failed: {e}") from e

        if not response.is_success:
            try:
                await response.aread()
                detail = _safe_error_body(response)
            finally:
                await response.aclose()
            raise ChatTransportError(
                f"HTTP {response.status_code}: {detail}",
                status_code=response.status_code,
            )

        return ChatResponse(
            content_type=response.headers.get("content-type"),
            chunks=self._iter_chunks(response),
            close=response.aclose,
        )

    @staticmethod
    async def _iter_chunks(response: httpx.Response):
        try:
            async for chunk in response.aiter_bytes():
                yield chunk
        except httpx.TimeoutException as e:
            raise ChatTransportError(f"Read timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ChatTransportError(f"Connection lost: {e}") from e

    def start(self, question: str, prior_turns: Optional[List[Dict[str, str]]] = None) -> ChatSession:
        """Create the session for one question. Nothing is sent until it runs."""
        body = build_chat_request(question, prior_turns or [], self.stream, self.history_limit)
        return ChatSession(lambda: self._open(body))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()


class Conversation:
    """In-memory turn list with a single in-flight question.

    A second send() while an answer is in flight is rejected. Turns are
    recorded only when an answer completes.
    """

    def __init__(self, client: FolderChatClient):
        self.client = client
        self.turns: List[Dict[str, Any]] = []
        self._session: Optional[ChatSession] = None

    @property
    def busy(self) -> bool:
        return self._session is not None

    async def send(
        self, question: str, handlers: Optional[ChatHandlers] = None
    ) -> Optional[Union[Completion, Failure]]:
        if not question.strip():
            return None
        if self._session is not None:
            raise ConversationBusyError("A question is already being answered")

        session = self.client.start(question, self.turns)
        self._session = session
        try:
            outcome = await session.run(handlers or ChatHandlers())
        finally:
            self._session = None

        if isinstance(outcome, Completion):
            self.turns.append({"role": "user", "content": question})
            self.turns.append(
                {"role": "assistant", "content": outcome.text, "sources": outcome.sources}
            )
        return outcome

    def cancel(self) -> None:
        if self._session is not None:
            self._session.cancel()

    def clear(self) -> None:
        self.turns = []


# === Human CLI Mode ===


async def _ask(question: str, config: Dict[str, Any]) -> int:
    client = FolderChatClient(config)
    rendered = 0

    def on_progress(notice):
        print(f"... {notice.text}", file=sys.stderr, flush=True)

    def on_content_update(snapshot):
        nonlocal rendered
        # Snapshots grow from the same buffer; print only the new tail
        if len(snapshot.text) > rendered:
            sys.stdout.write(snapshot.text[rendered:])
            sys.stdout.flush()
            rendered = len(snapshot.text)

    try:
        outcome = await client.start(question).run(
            ChatHandlers(on_progress=on_progress, on_content_update=on_content_update)
        )
    finally:
        await client.aclose()

    if isinstance(outcome, Failure):
        print(f"\nERROR: {outcome.reason}", file=sys.stderr)
        return 2 if outcome.kind == TRANSPORT_ERROR else 1

    if outcome is None:
        return 1

    sys.stdout.write(outcome.text[rendered:])
    print()
    if outcome.sources:
        print("\n--- Sources ---")
        for source in outcome.sources:
            print(f"- {source.get('title', '')} ({source.get('path', '')})")
    return 0


def main():
    args = sys.argv[1:]

    if not args or args[0].startswith("--"):
        print("Usage: python3 folder_chat.py <question> [--json] [--config path]", file=sys.stderr)
        sys.exit(4)

    question = args[0]
    config_path = None
    if "--config" in args:
        idx = args.index("--config")
        if idx + 1 >= len(args):
            print("ERROR: --config requires a path argument", file=sys.stderr)
            sys.exit(4)
        config_path = args[idx + 1]

    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")

    try:
        config = load_config(config_path)
    except (OSError, ValueError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(4)

    if "--json" in args:
        config["client"]["stream"] = False

    sys.exit(asyncio.run(_ask(question, config)))


if __name__ == "__main__":
    main()

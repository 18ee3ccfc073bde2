"""Chat session driver — one question/answer exchange, from request to terminal event.

A session opens one transport response, routes it through the mode
classifier, and yields a typed event sequence:

    ProgressNotice* → ContentSnapshot* → (Completion | Failure)

Guarantees:
- exactly one Completion or Failure, always last, unless cancelled
- cancel() stops reading and suppresses every later event (no Failure)
- the transport response is closed on every exit path

The driver does not guard against concurrent sessions; that is the
caller's job (see folder_chat.Conversation).
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import (
    Any,
    AsyncGenerator,
    AsyncIterable,
    AsyncIterator,
    Awaitable,
    Callable,
    List,
    Optional,
    Union,
)

from mode_classifier import ResponseMode, classify_response_mode, parse_json_body, response_encoding
from stream_parser import (
    TRANSPORT_ERROR,
    ChatEvent,
    Completion,
    ContentSnapshot,
    Failure,
    ParserState,
    ProgressNotice,
    StreamParser,
)
from text_decoder import TextDecoder

logger = logging.getLogger("folder_chat.chat_session")

Chunk = Union[bytes, str]


class ChatTransportError(Exception):
    """Connection failure or non-success status from the chat backend."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    def to_dict(self) -> dict:
        return {
            "error": "ChatTransportError",
            "message": str(self),
            "status_code": self.status_code,
        }


@dataclass
class ChatResponse:
    """One transport response: declared content kind plus its chunk source."""

    content_type: Optional[str]
    chunks: AsyncIterable[Chunk]
    close: Optional[Callable[[], Awaitable[None]]] = None

    @classmethod
    def from_body(cls, body: Chunk, content_type: Optional[str]) -> "ChatResponse":
        """Wrap a complete, fully buffered body."""
        async def _single() -> AsyncGenerator[Chunk, None]:
            yield body

        return cls(content_type=content_type, chunks=_single())


@dataclass
class ChatHandlers:
    """UI callbacks. Any may be None; any may be a coroutine function."""

    on_progress: Optional[Callable[[ProgressNotice], Any]] = None
    on_content_update: Optional[Callable[[ContentSnapshot], Any]] = None
    on_complete: Optional[Callable[[Completion], Any]] = None
    on_failure: Optional[Callable[[Failure], Any]] = None

    def for_event(self, event: ChatEvent) -> Optional[Callable[[Any], Any]]:
        if isinstance(event, ProgressNotice):
            return self.on_progress
        if isinstance(event, ContentSnapshot):
            return self.on_content_update
        if isinstance(event, Completion):
            return self.on_complete
        return self.on_failure


async def _read_next(iterator: AsyncIterator[Chunk]) -> Optional[Chunk]:
    """Await the next chunk; None at end of input."""
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


class ChatSession:
    """Single-use driver for one chat response."""

    def __init__(self, open_response: Callable[[], Awaitable[ChatResponse]]):
        self._open_response = open_response
        self._started = False
        self._cancelled = False
        self._mode: Optional[ResponseMode] = None
        self._parser: Optional[StreamParser] = None
        self._outcome: Optional[Union[Completion, Failure]] = None

    @classmethod
    def for_response(cls, response: ChatResponse) -> "ChatSession":
        async def _open() -> ChatResponse:
            return response

        return cls(_open)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def mode(self) -> Optional[ResponseMode]:
        return self._mode

    @property
    def outcome(self) -> Optional[Union[Completion, Failure]]:
        return self._outcome

    @property
    def state(self) -> ParserState:
        if self._parser is not None:
            return self._parser.state
        if isinstance(self._outcome, Completion):
            return ParserState.COMPLETED
        if isinstance(self._outcome, Failure):
            return ParserState.FAILED
        return ParserState.AWAITING_START

    @property
    def active(self) -> bool:
        return self._started and self._outcome is None and not self._cancelled

    def cancel(self) -> None:
        """Stop reading at the next suspension point and emit nothing further."""
        if not self._cancelled:
            logger.info("Chat session cancelled (state=%s)", self.state.value)
        self._cancelled = True

    async def events(self) -> AsyncGenerator[ChatEvent, None]:
        if self._started:
            raise RuntimeError("ChatSession can only be run once")
        self._started = True
        if self._cancelled:
            return

        try:
            response = await self._open_response()
        except ChatTransportError as e:
            if not self._cancelled:
                self._outcome = Failure(reason=str(e), kind=TRANSPORT_ERROR)
                logger.warning("Chat request failed: %s", e)
                yield self._outcome
            return

        iterator = response.chunks.__aiter__()
        try:
            self._mode = classify_response_mode(response.content_type)
            encoding = response_encoding(response.content_type)
            logger.debug("Chat response mode: %s (%s)", self._mode.value, encoding)

            json_decoder: Optional[TextDecoder] = None
            json_text = ""
            if self._mode is ResponseMode.JSON:
                json_decoder = TextDecoder(encoding)
            else:
                self._parser = StreamParser(encoding)

            while self._outcome is None:
                if self._cancelled:
                    return

                events: List[ChatEvent]
                try:
                    chunk = await _read_next(iterator)
                except ChatTransportError as e:
                    if self._parser is not None:
                        events = self._parser.fail(str(e), TRANSPORT_ERROR)
                    else:
                        events = [Failure(reason=str(e), kind=TRANSPORT_ERROR)]
                else:
                    if json_decoder is not None:
                        if chunk is None:
                            json_text += json_decoder.finish()
                            events = [parse_json_body(json_text)]
                        else:
                            json_text += json_decoder.feed(chunk)
                            events = []
                    elif chunk is None:
                        events = self._parser.finish()
                    else:
                        events = self._parser.feed(chunk)

                for event in events:
                    if self._cancelled:
                        return
                    if isinstance(event, (Completion, Failure)):
                        self._outcome = event
                    yield event
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
            if response.close is not None:
                await response.close()

    async def run(self, handlers: ChatHandlers) -> Optional[Union[Completion, Failure]]:
        """Drive the session, dispatching each event to its handler.

        Returns the terminal event, or None if the session was cancelled.
        """
        events = self.events()
        try:
            async for event in events:
                callback = handlers.for_event(event)
                if callback is None:
                    continue
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
        finally:
            # Runs the release in events() even when a handler raised
            await events.aclose()
        return self._outcome

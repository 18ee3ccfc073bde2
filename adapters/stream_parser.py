"""Streaming chat response parser — state machine over the marker protocol.

State machine: AWAITING_START → STREAMING → COMPLETED, with FAILED reachable
from either non-terminal state. COMPLETED and FAILED are terminal: input
arriving after them is ignored.

State lives in an explicit ParserContext (state + owned buffer) and the
transitions are free functions over it, so each step can be driven and
inspected on its own. StreamParser bundles a context with a TextDecoder
for byte-level input.

Protocol errors never raise: they become a Failure event carrying the reason.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from sentinel_scanner import (
    find_error,
    find_last_progress,
    find_stream_end,
    find_stream_start,
    strip_trailing_partial_marker,
)
from text_decoder import DEFAULT_CHARSET, TextDecoder

logger = logging.getLogger("folder_chat.stream_parser")

# Failure kinds
TRANSPORT_ERROR = "transport_error"
PROTOCOL_ERROR = "protocol_error"
MALFORMED_PAYLOAD = "malformed_payload"
INCOMPLETE_STREAM = "incomplete_stream"
INVALID_JSON = "invalid_json"

INCOMPLETE_STREAM_REASON = "incomplete stream"


class ParserState(Enum):
    AWAITING_START = "AWAITING_START"
    STREAMING = "STREAMING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        return self in (ParserState.COMPLETED, ParserState.FAILED)


# ── Events ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ProgressNotice:
    """Transient status line, superseded by the next one."""
    text: str


@dataclass(frozen=True)
class ContentSnapshot:
    """Best current rendering of the in-progress answer body."""
    text: str


@dataclass(frozen=True)
class Completion:
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def sources(self) -> List[Dict[str, Any]]:
        return list(self.metadata.get("sources") or [])


@dataclass(frozen=True)
class Failure:
    reason: str
    kind: str = PROTOCOL_ERROR


ChatEvent = Union[ProgressNotice, ContentSnapshot, Completion, Failure]


# ── State machine ────────────────────────────────────────────────────


@dataclass
class ParserContext:
    state: ParserState = ParserState.AWAITING_START
    buffer: str = ""
    last_progress: Optional[str] = None
    last_snapshot: Optional[str] = None


def _transition(ctx: ParserContext, new_state: ParserState) -> None:
    logger.debug("Stream parser: %s → %s", ctx.state.value, new_state.value)
    ctx.state = new_state


def _fail(ctx: ParserContext, reason: str, kind: str) -> List[ChatEvent]:
    _transition(ctx, ParserState.FAILED)
    ctx.buffer = ""
    logger.warning("Chat stream failed (%s): %s", kind, reason)
    return [Failure(reason=reason, kind=kind)]


def _parse_metadata(payload: str) -> Dict[str, Any]:
    """Parse a STREAM_END payload. Raises ValueError describing the problem."""
    try:
        metadata = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ValueError(f"STREAM_END payload is not valid JSON: {e}") from e
    if not isinstance(metadata, dict):
        raise ValueError(
            f"STREAM_END payload must be a JSON object, got {type(metadata).__name__}"
        )
    sources = metadata.get("sources")
    if sources is not None and not isinstance(sources, list):
        raise ValueError("STREAM_END payload 'sources' must be a list")
    return metadata


def _step_streaming(ctx: ParserContext) -> List[ChatEvent]:
    end = find_stream_end(ctx.buffer)
    # Anything after a complete end marker is never consumed
    error = find_error(ctx.buffer if end is None else ctx.buffer[:end.start])
    if error is not None:
        return _fail(ctx, error, PROTOCOL_ERROR)

    if end is not None:
        if end.multiline:
            return _fail(
                ctx,
                "malformed completion payload: multi-line STREAM_END payload is not supported",
                PROTOCOL_ERROR,
            )
        try:
            metadata = _parse_metadata(end.payload)
        except ValueError as e:
            return _fail(ctx, f"malformed completion payload: {e}", MALFORMED_PAYLOAD)
        text = ctx.buffer[:end.start]
        _transition(ctx, ParserState.COMPLETED)
        ctx.buffer = ""
        return [Completion(text=text, metadata=metadata)]

    view = strip_trailing_partial_marker(ctx.buffer)
    if view == ctx.last_snapshot:
        return []
    ctx.last_snapshot = view
    return [ContentSnapshot(text=view)]


def _step_awaiting_start(ctx: ParserContext) -> List[ChatEvent]:
    error = find_error(ctx.buffer)
    if error is not None:
        return _fail(ctx, error, PROTOCOL_ERROR)

    body_offset = find_stream_start(ctx.buffer)
    if body_offset is not None:
        ctx.buffer = ctx.buffer[body_offset:]
        ctx.last_progress = None
        ctx.last_snapshot = None
        _transition(ctx, ParserState.STREAMING)
        # The first snapshot doubles as the placeholder (empty when no body yet)
        return _step_streaming(ctx)

    progress = find_last_progress(ctx.buffer)
    if progress is not None and progress != ctx.last_progress:
        ctx.last_progress = progress
        return [ProgressNotice(text=progress)]
    return []


def advance(ctx: ParserContext, text: str) -> List[ChatEvent]:
    """Append decoded text to the buffer and return the events it produced."""
    if ctx.state.terminal:
        return []
    if not text:
        return []
    ctx.buffer += text
    if ctx.state is ParserState.AWAITING_START:
        return _step_awaiting_start(ctx)
    return _step_streaming(ctx)


def finalize(ctx: ParserContext) -> List[ChatEvent]:
    """Handle transport end-of-input: a stream with no terminal marker fails."""
    if ctx.state.terminal:
        return []
    return _fail(ctx, INCOMPLETE_STREAM_REASON, INCOMPLETE_STREAM)


class StreamParser:
    """Byte-level front end: TextDecoder + ParserContext for one response."""

    def __init__(self, encoding: str = DEFAULT_CHARSET):
        self._decoder = TextDecoder(encoding)
        self.context = ParserContext()

    @property
    def state(self) -> ParserState:
        return self.context.state

    @property
    def done(self) -> bool:
        return self.context.state.terminal

    def feed(self, chunk: Union[bytes, str]) -> List[ChatEvent]:
        if self.done:
            return []
        return advance(self.context, self._decoder.feed(chunk))

    def finish(self) -> List[ChatEvent]:
        if self.done:
            return []
        events = advance(self.context, self._decoder.finish())
        if self.done:
            return events
        return events + finalize(self.context)

    def fail(self, reason: str, kind: str = TRANSPORT_ERROR) -> List[ChatEvent]:
        """Fail from outside the byte stream (e.g. the connection dropped)."""
        if self.done:
            return []
        return _fail(self.context, reason, kind)

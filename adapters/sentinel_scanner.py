"""
sentinel_scanner.py — In-band marker grammar for streamed chat answers

Stateless search functions over an accumulated text buffer, plus the
encoders the server side uses to emit the same markers.

Wire format (all markers share the HTML comment delimiters so a renderer
that knows nothing about the protocol degrades gracefully):

  <!-- PROGRESS: <free text> -->
  <!-- STREAM_START -->
  <response body text>
  <!-- STREAM_END: {"sources":[{"path":"...","title":"..."}]} -->
  <!-- ERROR: <free text> -->

The STREAM_END payload is a single JSON object on one line.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

OPEN = "<!--"
CLOSE = "-->"

PROGRESS_HEAD = f"{OPEN} PROGRESS:"
STREAM_START_MARKER = f"{OPEN} STREAM_START {CLOSE}"
STREAM_END_HEAD = f"{OPEN} STREAM_END:"
ERROR_HEAD = f"{OPEN} ERROR:"

# Markers that may follow body text and must never leak into a snapshot
_TRAILING_HEADS = (STREAM_END_HEAD, ERROR_HEAD)


@dataclass(frozen=True)
class StreamEndMatch:
    """A complete STREAM_END marker found in the buffer."""
    payload: str
    start: int  # buf[:start] is the final body text
    end: int
    multiline: bool = False


def _find_marker(buf: str, head: str, pos: int = 0) -> Optional[Tuple[int, int, str]]:
    """Find the first complete `head <payload> CLOSE` at or after pos.

    Returns (marker_start, marker_end, raw_payload) or None while the
    marker is absent or still unterminated.
    """
    start = buf.find(head, pos)
    if start == -1:
        return None
    payload_start = start + len(head)
    close = buf.find(CLOSE, payload_start)
    if close == -1:
        return None
    return start, close + len(CLOSE), buf[payload_start:close]


def find_last_progress(buf: str) -> Optional[str]:
    """Return the text of the most recent complete PROGRESS marker."""
    last = None
    pos = 0
    while True:
        found = _find_marker(buf, PROGRESS_HEAD, pos)
        if found is None:
            return last
        _, pos, payload = found
        last = payload.strip()


def find_stream_start(buf: str) -> Optional[int]:
    """Return the offset just past the STREAM_START marker, where the body begins."""
    idx = buf.find(STREAM_START_MARKER)
    if idx == -1:
        return None
    return idx + len(STREAM_START_MARKER)


def find_stream_end(buf: str) -> Optional[StreamEndMatch]:
    found = _find_marker(buf, STREAM_END_HEAD)
    if found is None:
        return None
    start, end, raw = found
    payload = raw.strip()
    return StreamEndMatch(
        payload=payload,
        start=start,
        end=end,
        multiline="\n" in payload or "\r" in payload,
    )


def find_error(buf: str) -> Optional[str]:
    found = _find_marker(buf, ERROR_HEAD)
    if found is None:
        return None
    return found[2].strip()


def _partial_head_length(text: str) -> int:
    """Length of the longest suffix of text that is a proper prefix of a trailing head."""
    longest = 0
    for head in _TRAILING_HEADS:
        for n in range(min(len(head) - 1, len(text)), longest, -1):
            if text.endswith(head[:n]):
                longest = n
                break
    return longest


def strip_trailing_partial_marker(buf: str) -> str:
    """Drop any in-flight STREAM_END / ERROR marker from the end of buf.

    Cuts from the first complete head through the end of the buffer, then
    removes a trailing fragment that could still grow into a head
    ("<", "<!-- ", "<!-- STREAM_E", ...).
    """
    cut = len(buf)
    for head in _TRAILING_HEADS:
        idx = buf.find(head)
        if idx != -1:
            cut = min(cut, idx)
    view = buf[:cut]
    partial = _partial_head_length(view)
    if partial:
        view = view[:-partial]
    return view


# ── Encoders ─────────────────────────────────────────────────────────


def _inline(text: str) -> str:
    # A CLOSE inside free text would end the marker early
    return text.replace(CLOSE, "-- >")


def format_progress(text: str) -> str:
    return f"{PROGRESS_HEAD} {_inline(text)} {CLOSE}"


def format_stream_start() -> str:
    return STREAM_START_MARKER


def format_stream_end(metadata: Dict[str, Any]) -> str:
    """Encode metadata as compact single-line JSON inside a STREAM_END marker.

    '<' and '>' only occur inside JSON strings here, so escaping them keeps
    marker tokens out of the payload without changing its decoded value.
    """
    payload = json.dumps(metadata, separators=(",", ":"), ensure_ascii=False)
    payload = payload.replace("<", "\\u003c").replace(">", "\\u003e")
    return f"{STREAM_END_HEAD} {payload} {CLOSE}"


def format_error(text: str) -> str:
    return f"{ERROR_HEAD} {_inline(text)} {CLOSE}"

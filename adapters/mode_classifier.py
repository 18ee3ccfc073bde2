"""Response mode selection and whole-body JSON answers.

The server declares the body kind through Content-Type:
- application/json (or any +json type): one document
  {"answer": str, "sources": [{"path", "title"}], "error"?: str}
- anything else: streamed text carrying the marker protocol

The mode is chosen once per response and never changes afterwards.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, Dict, Optional, Union

from stream_parser import INVALID_JSON, PROTOCOL_ERROR, Completion, Failure
from text_decoder import DEFAULT_CHARSET, decode_body, parse_content_type

logger = logging.getLogger("folder_chat.mode_classifier")


class ResponseMode(Enum):
    JSON = "JSON"
    STREAMING = "STREAMING"


def classify_response_mode(content_type: Optional[str]) -> ResponseMode:
    media_type, _ = parse_content_type(content_type)
    if media_type == "application/json" or media_type.endswith("+json"):
        return ResponseMode.JSON
    return ResponseMode.STREAMING


def _validate_sources(sources: Any) -> Optional[str]:
    """Return a description of the first problem with sources, or None."""
    if not isinstance(sources, list):
        return "'sources' must be a list"
    for i, source in enumerate(sources):
        if not isinstance(source, dict):
            return f"sources[{i}] must be an object"
        for key in ("path", "title"):
            if not isinstance(source.get(key), str):
                return f"sources[{i}].{key} must be a string"
    return None


def parse_json_body(
    body: Union[bytes, str], encoding: str = DEFAULT_CHARSET
) -> Union[Completion, Failure]:
    """Turn a complete JSON answer document into a Completion or Failure."""
    text = decode_body(body, encoding)
    try:
        document = json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning("Non-JSON answer body: %s", e)
        return Failure(reason=f"Invalid JSON response: {e}", kind=INVALID_JSON)

    if not isinstance(document, dict):
        return Failure(
            reason=f"Invalid JSON response: expected an object, got {type(document).__name__}",
            kind=INVALID_JSON,
        )

    error = document.get("error")
    if error:
        return Failure(reason=str(error), kind=PROTOCOL_ERROR)

    answer = document.get("answer")
    if not isinstance(answer, str):
        return Failure(reason="Invalid JSON response: 'answer' must be a string", kind=INVALID_JSON)

    problem = _validate_sources(document.get("sources"))
    if problem:
        return Failure(reason=f"Invalid JSON response: {problem}", kind=INVALID_JSON)

    metadata: Dict[str, Any] = {
        k: v for k, v in document.items() if k not in ("answer", "error")
    }
    return Completion(text=answer, metadata=metadata)


def response_encoding(content_type: Optional[str]) -> str:
    return parse_content_type(content_type)[1]

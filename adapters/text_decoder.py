"""
text_decoder.py — Incremental text decoding for chunked chat responses

Decodes raw transport chunks (httpx response.aiter_bytes()) into text.
Handles: multi-byte characters split across chunks, invalid byte sequences
(replaced, never fatal), charset selection from the Content-Type header.
"""

import codecs
import logging
from typing import Optional, Tuple, Union

logger = logging.getLogger("folder_chat.text_decoder")

DEFAULT_CHARSET = "utf-8"


def parse_content_type(header: Optional[str]) -> Tuple[str, str]:
    """Split a Content-Type header into (media_type, charset).

    Missing header → ("", "utf-8"). Unknown charsets fall back to utf-8.
    """
    if not header:
        return "", DEFAULT_CHARSET

    media_type, _, params = header.partition(";")
    charset = DEFAULT_CHARSET
    for param in params.split(";"):
        name, _, value = param.strip().partition("=")
        if name.strip().lower() == "charset" and value:
            charset = value.strip().strip('"').lower()

    try:
        codecs.lookup(charset)
    except LookupError:
        logger.warning("Unknown charset %r in Content-Type, using %s", charset, DEFAULT_CHARSET)
        charset = DEFAULT_CHARSET

    return media_type.strip().lower(), charset


class TextDecoder:
    """Stateful decoder: one instance per response body.

    A chunk ending mid-codepoint keeps its trailing bytes until the next
    feed(); finish() flushes them, substituting U+FFFD for anything that
    can no longer complete.
    """

    def __init__(self, encoding: str = DEFAULT_CHARSET):
        self.encoding = encoding
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")

    def feed(self, chunk: Union[bytes, str]) -> str:
        if isinstance(chunk, str):
            return chunk
        return self._decoder.decode(chunk)

    def finish(self) -> str:
        return self._decoder.decode(b"", final=True)


def decode_body(body: Union[bytes, str], encoding: str = DEFAULT_CHARSET) -> str:
    """Decode a complete, fully buffered body."""
    decoder = TextDecoder(encoding)
    return decoder.feed(body) + decoder.finish()

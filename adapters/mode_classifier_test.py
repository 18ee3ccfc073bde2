"""Tests for response mode selection and JSON answer parsing."""

import os
import sys

# Ensure adapters/ is on path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from mode_classifier import ResponseMode, classify_response_mode, parse_json_body, response_encoding
from stream_parser import INVALID_JSON, PROTOCOL_ERROR, Completion, Failure


class TestClassify:
    def test_json(self):
        assert classify_response_mode("application/json") is ResponseMode.JSON

    def test_json_with_charset(self):
        assert classify_response_mode("application/json; charset=utf-8") is ResponseMode.JSON

    def test_json_suffix(self):
        assert classify_response_mode("application/problem+json") is ResponseMode.JSON

    def test_text_is_streaming(self):
        assert classify_response_mode("text/plain; charset=utf-8") is ResponseMode.STREAMING

    def test_missing_is_streaming(self):
        assert classify_response_mode(None) is ResponseMode.STREAMING

    def test_encoding_from_header(self):
        assert response_encoding("text/plain; charset=latin-1") == "latin-1"
        assert response_encoding(None) == "utf-8"


class TestParseJsonBody:
    def test_answer_with_sources(self):
        result = parse_json_body(b'{"answer":"Hi","sources":[{"path":"a.md","title":"A"}]}')
        assert result == Completion(
            text="Hi", metadata={"sources": [{"path": "a.md", "title": "A"}]}
        )

    def test_extra_fields_kept_in_metadata(self):
        result = parse_json_body('{"answer":"Hi","sources":[],"model":"m1"}')
        assert result.metadata == {"sources": [], "model": "m1"}

    def test_error_field(self):
        result = parse_json_body('{"answer":"","sources":[],"error":"API key not configured"}')
        assert result == Failure(reason="API key not configured", kind=PROTOCOL_ERROR)

    def test_empty_error_ignored(self):
        result = parse_json_body('{"answer":"ok","sources":[],"error":null}')
        assert isinstance(result, Completion)
        assert "error" not in result.metadata

    def test_not_json(self):
        result = parse_json_body(b"<html>502</html>")
        assert isinstance(result, Failure)
        assert result.kind == INVALID_JSON
        assert result.reason.startswith("Invalid JSON response")

    def test_not_an_object(self):
        assert parse_json_body("[]").kind == INVALID_JSON

    def test_missing_answer(self):
        result = parse_json_body('{"sources":[]}')
        assert result.kind == INVALID_JSON
        assert "answer" in result.reason

    def test_missing_sources(self):
        result = parse_json_body('{"answer":"Hi"}')
        assert result.kind == INVALID_JSON
        assert "sources" in result.reason

    def test_bad_source_entry(self):
        result = parse_json_body('{"answer":"Hi","sources":[{"path":"a.md"}]}')
        assert result.kind == INVALID_JSON
        assert "sources[0].title" in result.reason

    def test_utf8_body(self):
        result = parse_json_body('{"answer":"déjà vu","sources":[]}'.encode("utf-8"))
        assert result.text == "déjà vu"

# tests/telemetry/otlp/test_buffer.py
"""Tests for DocumentBuffer and JSON string escaping."""

import json

import pytest

from telerelay.telemetry.otlp.buffer import DocumentBuffer, escape_json_string


class TestEscapeJsonString:
    @pytest.mark.parametrize(
        ("raw", "escaped"),
        [
            ('say "hi"', 'say \\"hi\\"'),
            ("C:\\path", "C:\\\\path"),
            ("line1\nline2", "line1\\nline2"),
            ("tab\there", "tab\\there"),
            ("\r\b\f", "\\r\\b\\f"),
            ("\x00\x1f", "\\u0000\\u001f"),
            ("unicode é ✓", "unicode é ✓"),
        ],
    )
    def test_escapes(self, raw: str, escaped: str) -> None:
        assert escape_json_string(raw) == escaped

    def test_escaped_text_parses_back(self) -> None:
        """Escaped output is a valid JSON string body."""
        raw = 'mixed \\ "quotes" \n and \x07 bell'
        assert json.loads(f'"{escape_json_string(raw)}"') == raw


class TestDocumentBuffer:
    def test_small_document_stays_text(self) -> None:
        buf = DocumentBuffer(spill_threshold=1024)
        buf.write('{"a":')
        buf.write_string("b")
        buf.write("}")
        assert buf.promoted is False
        assert buf.getvalue() == b'{"a":"b"}'

    def test_spills_past_threshold(self) -> None:
        """Crossing the threshold moves pending text into the byte area."""
        buf = DocumentBuffer(spill_threshold=8)
        buf.write("12345")
        assert buf.promoted is False
        buf.write("6789")
        assert buf.promoted is True
        buf.write("tail")
        assert buf.getvalue() == b"123456789tail"

    def test_length_is_utf8_bytes(self) -> None:
        buf = DocumentBuffer()
        buf.write("é")
        assert len(buf) == 2

    def test_empty_writes_ignored(self) -> None:
        buf = DocumentBuffer()
        buf.write("")
        assert buf.getvalue() == b""

    def test_lone_surrogate_replaced(self) -> None:
        """Unencodable text is replaced instead of failing the document."""
        buf = DocumentBuffer()
        buf.write_string("bad \ud800 char")
        assert buf.getvalue() == b'"bad ? char"'

    def test_iter_chunks(self) -> None:
        buf = DocumentBuffer(spill_threshold=4)
        buf.write("abcdefghij")
        chunks = list(buf.iter_chunks(chunk_size=4))
        assert chunks == [b"abcd", b"efgh", b"ij"]
        assert b"".join(chunks) == buf.getvalue()

    def test_writes_after_chunking_are_kept(self) -> None:
        buf = DocumentBuffer()
        buf.write("ab")
        assert list(buf.iter_chunks(1)) == [b"a", b"b"]
        buf.write("c")
        assert buf.getvalue() == b"abc"

    @pytest.mark.parametrize("size", [0, -1])
    def test_invalid_sizes(self, size: int) -> None:
        with pytest.raises(ValueError):
            DocumentBuffer(spill_threshold=size)
        with pytest.raises(ValueError):
            list(DocumentBuffer().iter_chunks(size))

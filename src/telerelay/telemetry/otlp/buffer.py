# src/telerelay/telemetry/otlp/buffer.py
"""Growable append-only buffer for OTLP JSON documents.

Small appends are collected as text pieces. Once the pending text passes
the spill threshold it is encoded to UTF-8 once and appended to a byte
area; content that has spilled is never re-encoded or copied again except
by bytearray growth. Transport reads the finished document either whole
(getvalue) or as fixed-size chunks for a streamed request body.
"""

from collections.abc import Iterator

DEFAULT_SPILL_THRESHOLD = 32 * 1024
DEFAULT_CHUNK_SIZE = 64 * 1024

_JSON_ESCAPES: dict[int, str] = {code: f"\\u{code:04x}" for code in range(0x20)}
_JSON_ESCAPES.update(
    {
        ord("\\"): "\\\\",
        ord('"'): '\\"',
        ord("\b"): "\\b",
        ord("\f"): "\\f",
        ord("\n"): "\\n",
        ord("\r"): "\\r",
        ord("\t"): "\\t",
    }
)


def escape_json_string(value: str) -> str:
    """Escape backslash, quote and control characters for a JSON string body.

    Translation is a single pass, so a backslash produced by escaping is
    never escaped a second time.
    """
    return value.translate(_JSON_ESCAPES)


class DocumentBuffer:
    """Append-only document buffer that promotes itself to bytes storage.

    Example:
        buf = DocumentBuffer()
        buf.write('{"name":')
        buf.write_string('say "hi"')
        buf.write("}")
        body = buf.getvalue()  # b'{"name":"say \\"hi\\""}'
    """

    def __init__(self, spill_threshold: int = DEFAULT_SPILL_THRESHOLD) -> None:
        if spill_threshold <= 0:
            raise ValueError(f"spill_threshold must be positive, got {spill_threshold}")
        self._spill_threshold = spill_threshold
        self._pending: list[str] = []
        self._pending_chars = 0
        self._spilled = bytearray()

    @property
    def promoted(self) -> bool:
        """True once any content has moved into the byte area."""
        return len(self._spilled) > 0

    def write(self, text: str) -> None:
        """Append raw (already valid JSON) text."""
        if not text:
            return
        self._pending.append(text)
        self._pending_chars += len(text)
        if self._pending_chars >= self._spill_threshold:
            self._spill()

    def write_string(self, value: str) -> None:
        """Append a quoted, escaped JSON string."""
        self.write('"')
        self.write(escape_json_string(value))
        self.write('"')

    def _spill(self) -> None:
        if not self._pending:
            return
        # Lone surrogates cannot be UTF-8 encoded; replace rather than fail the document
        self._spilled += "".join(self._pending).encode("utf-8", errors="replace")
        self._pending.clear()
        self._pending_chars = 0

    def __len__(self) -> int:
        """Size of the document in bytes."""
        self._spill()
        return len(self._spilled)

    def getvalue(self) -> bytes:
        self._spill()
        return bytes(self._spilled)

    def iter_chunks(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        """Yield the document in chunks of at most chunk_size bytes."""
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self._spill()
        view = memoryview(self._spilled)
        try:
            for start in range(0, len(view), chunk_size):
                yield bytes(view[start : start + chunk_size])
        finally:
            view.release()

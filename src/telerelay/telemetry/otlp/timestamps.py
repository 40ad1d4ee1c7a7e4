# src/telerelay/telemetry/otlp/timestamps.py
"""ISO-8601 to Unix-nanosecond conversion.

OTLP wants integer nanoseconds since the epoch, serialized as decimal
strings. Conversion uses integer arithmetic throughout so that
2024-01-01T00:00:00.000Z becomes exactly 1704067200000000000, and
fractional digits beyond microseconds are kept rather than rounded away.
"""

import re
from datetime import UTC, datetime, timedelta

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

_FRACTION = re.compile(r"^(?P<head>.*?T?\d{2}:\d{2}:\d{2})[.,](?P<digits>\d+)(?P<tail>.*)$")


def parse_timestamp(value: str) -> tuple[datetime, int]:
    """Parse an ISO-8601 timestamp.

    Accepts an explicit offset or a trailing "Z"; a value with neither is
    taken as UTC.

    Returns:
        (timestamp truncated to whole seconds, nanoseconds within that second)

    Raises:
        ValueError: If the value is not an ISO-8601 timestamp.
    """
    text = value.strip()
    if not text:
        raise ValueError("empty timestamp")
    if text[-1] in "Zz":
        text = text[:-1] + "+00:00"

    nanos = 0
    match = _FRACTION.match(text)
    if match is not None:
        digits = match.group("digits")
        nanos = int(digits[:9].ljust(9, "0"))
        text = match.group("head") + match.group("tail")

    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.replace(microsecond=0), nanos


def datetime_to_unix_nanos(value: datetime) -> int:
    """Exact nanoseconds since the epoch for an aware (or UTC-naive) datetime."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return (value - EPOCH) // timedelta(microseconds=1) * 1000


def iso_to_unix_nanos(value: str) -> int:
    """Convert an ISO-8601 string to Unix nanoseconds.

    Raises:
        ValueError: If the value cannot be parsed.
    """
    whole_seconds, nanos = parse_timestamp(value)
    return datetime_to_unix_nanos(whole_seconds) + nanos

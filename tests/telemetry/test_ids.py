# tests/telemetry/test_ids.py
"""Tests for trace/span id allocation."""

import re

from telerelay.telemetry.ids import IdAllocator


def test_id_formats() -> None:
    ids = IdAllocator()
    assert re.fullmatch(r"[0-9a-f]{32}", ids.new_trace_id())
    assert re.fullmatch(r"[0-9a-f]{16}", ids.new_span_id())


def test_ids_are_distinct() -> None:
    ids = IdAllocator()
    assert len({ids.new_trace_id() for _ in range(50)}) == 50

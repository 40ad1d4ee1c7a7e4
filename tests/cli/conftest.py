# tests/cli/conftest.py
"""Shared fixtures and helpers for CLI tests.

Commands reconfigure root logging onto the runner's captured stream, so
test_cli.py uses the restore_logging fixture.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from telerelay.core.config import load_settings
from telerelay.runtime import RelayRuntime


@pytest.fixture
def settings_file(tmp_path: Path) -> Path:
    """Settings YAML with a file-backed store and the console backend."""
    path = tmp_path / "telerelay.yaml"
    path.write_text(
        "store:\n"
        f"  url: sqlite:///{tmp_path / 'relay.db'}\n"
        "collector:\n"
        "  base_url: http://127.0.0.1:9\n"
        "failover:\n"
        "  fallback_backend: console\n"
        "logging:\n"
        "  level: WARNING\n"
    )
    return path


def open_runtime(settings_file: Path) -> RelayRuntime:
    """Runtime over the same store the CLI commands use."""
    return RelayRuntime.from_settings(load_settings(settings_file))

"""Shared test fixtures"""
import json
import os
import stat
import sys
from pathlib import Path
from typing import Any, Dict, List

import pytest

from core.events import is_terminal


def write_script(path: Path, body: str) -> Path:
    """Write an executable Python script run by the current interpreter"""
    path.write_text(f"#!{sys.executable}\n{body}")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def write_manifest(agent_dir: Path, manifest: Dict[str, Any]) -> Path:
    agent_dir.mkdir(parents=True, exist_ok=True)
    manifest_path = agent_dir / "lavs.json"
    manifest_path.write_text(json.dumps(manifest))
    return manifest_path


def event_types(events: List[Any]) -> List[str]:
    return [e.type for e in events]


def assert_well_formed(events: List[Any]) -> None:
    """One RUN_STARTED first, one terminal last, every opened block closed"""
    types = event_types(events)
    assert types[0] == "RUN_STARTED"
    assert types.count("RUN_STARTED") == 1
    assert is_terminal(events[-1])
    assert sum(1 for e in events if is_terminal(e)) == 1

    open_text = set()
    open_thinking = set()
    open_tools = set()
    for event in events:
        if event.type == "TEXT_MESSAGE_START":
            open_text.add(event.message_id)
        elif event.type == "TEXT_MESSAGE_END":
            open_text.discard(event.message_id)
        elif event.type == "THINKING_START":
            open_thinking.add(event.message_id)
        elif event.type == "THINKING_END":
            open_thinking.discard(event.message_id)
        elif event.type == "TOOL_CALL_START":
            open_tools.add(event.tool_call_id)
        elif event.type == "TOOL_CALL_END":
            open_tools.discard(event.tool_call_id)
    assert not open_text and not open_thinking and not open_tools


@pytest.fixture
def clean_env(monkeypatch):
    """Remove variables that would leak host configuration into engines"""
    for name in (
        "CURSOR_CLI_PATH", "CURSOR_API_KEY",
        "ANTHROPIC_API_KEY", "ANTHROPIC_AUTH_TOKEN", "ANTHROPIC_BASE_URL",
    ):
        monkeypatch.delenv(name, raising=False)
    return os.environ

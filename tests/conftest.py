"""Shared test fixtures."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

from coding_engines.metrics import MetricsCollector

ECHO_AGENT_COMMAND = (sys.executable, "-m", "coding_engines.engines.echo_agent")
_ENV_VARS = (
    "OPENCODE_HOST",
    "OPENCODE_PORT",
    "OPENCODE_PROVIDER",
    "OPENCODE_API_KEY",
    "OPENCODE_SERVER_COMMAND",
    "OPENCODE_STARTUP_TIMEOUT_SECONDS",
    "CODING_ENGINE_PROVIDER",
    "CODING_ENGINE_MODEL",
    "CODING_ENGINE_TIMEOUT_SECONDS",
    "CODING_ENGINE_COMMAND_TEMPLATE",
    "CODING_ENGINE_PREVIEW_MODE",
    "CODING_ENGINE_CHAT_ONLY",
    "CLAUDE_DEFAULT_MODEL",
    "CLAUDE_CODE_COMMAND",
    "CLAUDE_MAX_TURNS",
    "CODING_ENGINES_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Start every test from default configuration."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def repo(tmp_path: Path) -> Path:
    path = tmp_path / "repo"
    path.mkdir()
    return path


@pytest.fixture()
def collector() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture()
def echo_template() -> str:
    """Command template running the bundled echo agent."""
    return f"{sys.executable} -m coding_engines.engines.echo_agent --prompt-file {{prompt_file}}"

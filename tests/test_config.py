from __future__ import annotations

from pathlib import Path

import allure
import pytest

from coding_engines.config import (
    CLAUDE_DEFAULT_MODEL,
    DEFAULT_SERVER_COMMAND,
    EngineSettings,
    ServerSettings,
    Settings,
    server_url,
)
from coding_engines.models import (
    CHAT_ONLY_ALLOWED_TOOLS,
    DEFAULT_TIMEOUT_SECONDS,
    ProcessOptions,
    resolve_process_config,
)

pytestmark = [
    allure.epic("Coding Engines"),
    allure.feature("Configuration"),
]


def test_server_url_defaults() -> None:
    assert server_url() == "http://127.0.0.1:4096"


def test_server_url_uses_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("OPENCODE_HOST", "localhost")
    monkeypatch.setenv("OPENCODE_PORT", "9999")

    assert server_url() == "http://localhost:9999"


def test_invalid_port_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("OPENCODE_PORT", "not-a-port")

    with pytest.raises(ValueError, match="Invalid OPENCODE_PORT"):
        server_url()


def test_from_env_defaults() -> None:
    settings = Settings.from_env()

    assert settings.server.command == DEFAULT_SERVER_COMMAND
    assert settings.engine.provider == "opencode"
    assert settings.engine.claude_model == CLAUDE_DEFAULT_MODEL
    assert settings.engine.claude_max_turns == 50
    assert settings.executor.timeout_seconds == 30 * 60
    assert settings.log_level == "WARNING"
    settings.validate()


def test_from_env_reads_overrides(monkeypatch) -> None:
    monkeypatch.setenv("CODING_ENGINE_PROVIDER", "Claude-Code")
    monkeypatch.setenv("CLAUDE_CODE_COMMAND", "npx -y @anthropic-ai/claude-code")
    monkeypatch.setenv("CLAUDE_MAX_TURNS", "7")
    monkeypatch.setenv("CODING_ENGINE_PREVIEW_MODE", "yes")
    monkeypatch.setenv("OPENCODE_SERVER_COMMAND", "opencode serve")

    settings = Settings.from_env()

    assert settings.engine.provider == "claude-code"
    assert settings.engine.claude_command == ("npx", "-y", "@anthropic-ai/claude-code")
    assert settings.engine.claude_max_turns == 7
    assert settings.engine.preview_mode is True
    assert settings.server.command == ("opencode", "serve")


def test_from_env_rejects_bad_boolean(monkeypatch) -> None:
    monkeypatch.setenv("CODING_ENGINE_CHAT_ONLY", "maybe")

    with pytest.raises(ValueError, match="Invalid boolean value for CODING_ENGINE_CHAT_ONLY"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(server=ServerSettings(port=0)), "OPENCODE_PORT"),
        (Settings(server=ServerSettings(command=())), "OPENCODE_SERVER_COMMAND"),
        (Settings(engine=EngineSettings(provider="direct-llm")), "Unsupported"),
        (Settings(engine=EngineSettings(provider="cli")), "CODING_ENGINE_COMMAND_TEMPLATE"),
        (Settings(engine=EngineSettings(claude_max_turns=0)), "CLAUDE_MAX_TURNS"),
    ],
)
def test_validate_rejects_invalid_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_override_beats_default_beats_builtin(tmp_path: Path) -> None:
    config = resolve_process_config(
        defaults=ProcessOptions(model="engine-model", max_turns=10, preview_mode=True),
        overrides=ProcessOptions(model="call-model"),
        cwd=tmp_path,
        fallback_model="builtin",
    )

    assert config.model == "call-model"
    assert config.max_turns == 10
    assert config.preview_mode is True
    assert config.chat_only is False
    assert config.timeout_seconds == DEFAULT_TIMEOUT_SECONDS
    assert config.cwd == tmp_path


def test_fallback_model_used_when_nothing_set(tmp_path: Path) -> None:
    config = resolve_process_config(defaults=ProcessOptions(), cwd=tmp_path, fallback_model="x")

    assert config.model == "x"
    assert config.allowed_tools is None


def test_chat_only_forces_read_only_tools_over_engine_default(tmp_path: Path) -> None:
    config = resolve_process_config(
        defaults=ProcessOptions(chat_only=True, allowed_tools=("Read", "Write", "Bash")),
        cwd=tmp_path,
        fallback_model="m",
    )

    assert config.allowed_tools == CHAT_ONLY_ALLOWED_TOOLS


def test_chat_only_keeps_explicit_per_call_allow_list(tmp_path: Path) -> None:
    config = resolve_process_config(
        defaults=ProcessOptions(chat_only=True),
        overrides=ProcessOptions(allowed_tools=("Read",)),
        cwd=tmp_path,
        fallback_model="m",
    )

    assert config.allowed_tools == ("Read",)


def test_non_positive_timeout_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="timeout_seconds"):
        resolve_process_config(
            defaults=ProcessOptions(timeout_seconds=0),
            cwd=tmp_path,
            fallback_model="m",
        )

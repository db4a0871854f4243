from __future__ import annotations

import allure
import pytest

from coding_engines.config import Settings
from coding_engines.engines import (
    ClaudeCodeEngine,
    CliTemplateEngine,
    EngineFactoryOptions,
    OpencodeEngine,
    create_coding_engine,
)
from coding_engines.server import ServerManager

pytestmark = [
    allure.epic("Coding Engines"),
    allure.feature("Engine Selection"),
]


def test_default_provider_is_opencode() -> None:
    manager = ServerManager()

    engine = create_coding_engine(EngineFactoryOptions(server_manager=manager))

    assert isinstance(engine, OpencodeEngine)
    assert engine.server_manager is manager
    assert engine.get_name() == "Opencode"


@pytest.mark.parametrize(
    ("provider", "engine_type"),
    [
        ("claude-code", ClaudeCodeEngine),
        ("Claude-Code ", ClaudeCodeEngine),
        ("cli", CliTemplateEngine),
    ],
)
def test_provider_keys_select_engine(provider: str, engine_type: type) -> None:
    options = EngineFactoryOptions(provider=provider, command_template="agent {prompt}")

    assert isinstance(create_coding_engine(options), engine_type)


def test_direct_llm_is_reserved_but_not_implemented() -> None:
    with pytest.raises(ValueError, match="not implemented yet"):
        create_coding_engine(EngineFactoryOptions(provider="direct-llm"))


def test_unknown_provider_is_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown coding engine provider"):
        create_coding_engine(EngineFactoryOptions(provider="copilot"))


def test_cli_provider_requires_usable_template() -> None:
    with pytest.raises(ValueError, match="empty"):
        create_coding_engine(EngineFactoryOptions(provider="cli"))


def test_from_settings_carries_engine_defaults(monkeypatch) -> None:
    monkeypatch.setenv("CODING_ENGINE_PROVIDER", "claude-code")
    monkeypatch.setenv("CODING_ENGINE_MODEL", "claude-opus-4-20250514")
    monkeypatch.setenv("CODING_ENGINE_PREVIEW_MODE", "true")
    monkeypatch.setenv("CODING_ENGINE_TIMEOUT_SECONDS", "120")
    monkeypatch.setenv("CLAUDE_CODE_COMMAND", "npx -y @anthropic-ai/claude-code")
    monkeypatch.setenv("CLAUDE_MAX_TURNS", "7")
    monkeypatch.setenv("OPENCODE_PORT", "4999")

    options = EngineFactoryOptions.from_settings(Settings.from_env())
    engine = create_coding_engine(options)

    assert options.provider == "claude-code"
    assert options.process_options.model == "claude-opus-4-20250514"
    assert options.process_options.preview_mode is True
    assert options.process_options.timeout_seconds == 120
    assert options.server_manager is not None
    assert options.server_manager.get_url() == "http://127.0.0.1:4999"
    assert isinstance(engine, ClaudeCodeEngine)
    assert engine.options.model == "claude-opus-4-20250514"

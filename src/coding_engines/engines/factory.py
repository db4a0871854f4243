"""Select a coding engine variant by provider key."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from coding_engines.config import (
    CLAUDE_DEFAULT_MODEL,
    DEFAULT_CLAUDE_COMMAND,
    OPENCODE_DEFAULT_MODEL,
    Settings,
)
from coding_engines.engines.base import CodingEngine
from coding_engines.engines.claude_code import ClaudeCodeEngine
from coding_engines.engines.cli_template import CliTemplateEngine
from coding_engines.engines.opencode import OpencodeEngine
from coding_engines.events import EventSink
from coding_engines.metrics import MetricsCollector
from coding_engines.models import ProcessOptions
from coding_engines.server.manager import ServerManager

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "opencode"
_NOT_IMPLEMENTED_PROVIDERS = {"direct-llm"}


@dataclass(slots=True)
class EngineFactoryOptions:
    """Everything the factory needs to build one engine."""

    provider: str = DEFAULT_PROVIDER
    process_options: ProcessOptions = field(default_factory=ProcessOptions)
    claude_command: tuple[str, ...] = DEFAULT_CLAUDE_COMMAND
    claude_model: str = CLAUDE_DEFAULT_MODEL
    claude_max_turns: int = 50
    opencode_model: str = OPENCODE_DEFAULT_MODEL
    command_template: str = ""
    server_manager: ServerManager | None = None
    metrics_collector: MetricsCollector | None = None
    sinks: tuple[EventSink, ...] = ()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        server_manager: ServerManager | None = None,
        sinks: Iterable[EventSink] = (),
    ) -> EngineFactoryOptions:
        engine = settings.engine
        return cls(
            provider=engine.provider,
            process_options=ProcessOptions(
                model=engine.model,
                preview_mode=engine.preview_mode,
                chat_only=engine.chat_only,
                timeout_seconds=settings.executor.timeout_seconds,
            ),
            claude_command=engine.claude_command,
            claude_model=engine.claude_model,
            claude_max_turns=engine.claude_max_turns,
            command_template=engine.command_template,
            server_manager=server_manager or ServerManager(settings.server),
            sinks=tuple(sinks),
        )


def create_coding_engine(options: EngineFactoryOptions | None = None) -> CodingEngine:
    """Build the engine for ``options.provider``; unknown keys raise ``ValueError``."""

    options = options or EngineFactoryOptions()
    provider = (options.provider or DEFAULT_PROVIDER).strip().lower()
    logger.debug("Creating coding engine for provider %s", provider)

    if provider == "opencode":
        return OpencodeEngine(
            options.process_options,
            server_manager=options.server_manager,
            default_model=options.opencode_model,
            metrics_collector=options.metrics_collector,
            sinks=options.sinks,
        )
    if provider == "claude-code":
        return ClaudeCodeEngine(
            options.process_options,
            command=options.claude_command,
            default_model=options.claude_model,
            default_max_turns=options.claude_max_turns,
            metrics_collector=options.metrics_collector,
            sinks=options.sinks,
        )
    if provider == "cli":
        return CliTemplateEngine(
            options.command_template,
            options.process_options,
            metrics_collector=options.metrics_collector,
            sinks=options.sinks,
        )
    if provider in _NOT_IMPLEMENTED_PROVIDERS:
        raise ValueError(f"Coding engine provider {provider!r} is not implemented yet.")
    raise ValueError(f"Unknown coding engine provider: {provider!r}")

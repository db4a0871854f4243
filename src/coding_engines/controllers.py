"""Controllers for coding-engines CLI commands."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from pathlib import Path

from coding_engines.cancellation import CancellationToken
from coding_engines.config import Settings
from coding_engines.diff_converter import convert_search_replace_to_diff, split_unified_diff
from coding_engines.engines import EngineFactoryOptions, create_coding_engine
from coding_engines.errors import EngineError
from coding_engines.metrics import MetricsCollector, render_metrics_lines
from coding_engines.models import ChangesSummary
from coding_engines.result import Result
from coding_engines.server import ServerManager, ServerOptions
from coding_engines.validation import InstructionValidator

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CommandOutcome:
    """Lines to print plus whether the command succeeded."""

    lines: list[str] = field(default_factory=list)
    success: bool = True


@dataclass(slots=True)
class RunCommand:
    """CLI input for one engine invocation."""

    instruction: str
    repo_path: Path
    provider: str | None = None
    model: str | None = None
    preview: bool | None = None
    chat_only: bool | None = None
    timeout_seconds: float | None = None
    context_files: tuple[Path, ...] = ()
    show_metrics: bool = False
    on_log: Callable[[str], None] | None = None


@dataclass(slots=True)
class ValidateCommand:
    """CLI input for the instruction safety check."""

    instruction: str


@dataclass(slots=True)
class ConvertCommand:
    """CLI input for SEARCH/REPLACE to diff conversion."""

    text: str
    list_files: bool = False


@dataclass(slots=True)
class ServeCommand:
    """CLI input for running the agent server in the foreground."""

    host: str | None = None
    port: int | None = None
    startup_timeout_seconds: float | None = None


@dataclass(slots=True)
class ModelsCommand:
    """CLI input for listing supported models."""

    provider: str | None = None


class CodingEnginesCliController:
    """Coordinates engine runs, validation, conversion and server CLI operations."""

    def __init__(self, settings_loader: Callable[[], Settings] = Settings.from_env) -> None:
        self._settings_loader = settings_loader

    def run(
        self,
        command: RunCommand,
        cancellation_token: CancellationToken | None = None,
    ) -> CommandOutcome:
        settings = self._load_settings(provider=command.provider)
        collector = MetricsCollector()
        options = EngineFactoryOptions.from_settings(settings)
        options.metrics_collector = collector
        process = options.process_options
        if command.model is not None:
            process.model = command.model
        if command.preview is not None:
            process.preview_mode = command.preview
        if command.chat_only is not None:
            process.chat_only = command.chat_only
        if command.timeout_seconds is not None:
            process.timeout_seconds = command.timeout_seconds
        process.on_log = command.on_log

        engine = create_coding_engine(options)
        logger.info("Running %s in %s", engine.get_name(), command.repo_path)
        try:
            result = engine.apply_changes(
                command.instruction,
                command.repo_path,
                context_files=list(command.context_files),
                cancellation_token=cancellation_token,
            )
        finally:
            if options.server_manager is not None:
                options.server_manager.stop()

        lines = [f"Engine: {engine.get_name()}"]
        lines += _result_lines(result)
        if command.show_metrics:
            lines.append("Metrics:")
            lines += [f"  {line}" for line in render_metrics_lines(collector.get_metrics())]
        return CommandOutcome(lines=lines, success=result.ok)

    def validate(self, command: ValidateCommand) -> CommandOutcome:
        validator = InstructionValidator()
        rule = validator.first_violation(command.instruction)
        if rule is None:
            return CommandOutcome(lines=["Instruction is safe."])
        return CommandOutcome(
            lines=[
                f"Potentially dangerous instruction detected: {rule.description}",
                f"Severity: {rule.severity.value}",
            ],
            success=False,
        )

    def convert(self, command: ConvertCommand) -> CommandOutcome:
        diff = convert_search_replace_to_diff(command.text)
        if not command.list_files:
            return CommandOutcome(lines=diff.splitlines())
        changes = split_unified_diff(diff)
        if not changes:
            return CommandOutcome(lines=["No file changes found."])
        return CommandOutcome(lines=[change.path for change in changes])

    def server_url(self) -> CommandOutcome:
        return CommandOutcome(lines=[ServerManager().get_url()])

    def serve(
        self,
        command: ServeCommand,
        wait: Callable[[], None] | None = None,
    ) -> CommandOutcome:
        """Start the agent server, block in ``wait`` and stop it afterwards."""

        settings = self._load_settings()
        manager = ServerManager(settings.server)
        started = manager.start(
            ServerOptions(
                host=command.host,
                port=command.port,
                startup_timeout_seconds=command.startup_timeout_seconds,
            ),
        )
        if not started.ok:
            return CommandOutcome(lines=[f"Server failed to start: {started.error}"], success=False)
        assert started.value is not None
        lines = [f"Agent server running at {started.value.url} (pid={started.value.pid})"]
        try:
            (wait or _wait_forever)()
        except KeyboardInterrupt:
            lines.append("Interrupted.")
        finally:
            manager.stop()
        lines.append("Agent server stopped.")
        return CommandOutcome(lines=lines)

    def models(self, command: ModelsCommand) -> CommandOutcome:
        settings = self._load_settings(provider=command.provider)
        engine = create_coding_engine(EngineFactoryOptions.from_settings(settings))
        models = engine.get_supported_models()
        return CommandOutcome(lines=[f"{engine.get_name()} models:", *[f"  {m}" for m in models]])

    def _load_settings(self, provider: str | None = None) -> Settings:
        settings = self._settings_loader()
        if provider:
            settings = replace(settings, engine=replace(settings.engine, provider=provider))
        settings.validate()
        return settings


def _result_lines(result: Result[ChangesSummary, EngineError]) -> list[str]:
    if not result.ok:
        error = result.error
        assert error is not None
        return [f"Failed ({error.kind.value}): {error}"]
    summary = result.value
    assert summary is not None
    lines = [
        f"Summary: {summary.summary}",
        f"Files changed: {len(summary.changes)}",
    ]
    lines += [f"  {change.path}" for change in summary.changes]
    if summary.files_created:
        lines.append(f"Files created: {', '.join(summary.files_created)}")
    if summary.total_cost:
        lines.append(f"Total cost: ${summary.total_cost:.4f}")
    if summary.diff:
        lines += ["", *summary.diff.splitlines()]
    return lines


def _wait_forever() -> None:
    while True:
        time.sleep(1)

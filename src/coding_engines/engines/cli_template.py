"""Generic CLI agent engine driven by a user command template."""

from __future__ import annotations

import logging
import shlex
import tempfile
from collections.abc import Iterable, Sequence
from pathlib import Path

from coding_engines.cancellation import CancellationToken
from coding_engines.errors import EngineError
from coding_engines.events import EventSink
from coding_engines.executor import JsonLineParser, ProcessExecutor
from coding_engines.metrics import MetricsCollector
from coding_engines.models import (
    ChangesSummary,
    ProcessConfig,
    ProcessOptions,
    try_resolve_process_config,
)
from coding_engines.result import Result
from coding_engines.validation import InstructionValidator

logger = logging.getLogger(__name__)

ENGINE_NAME = "CLI Agent"
DEFAULT_MODEL = "default"


def render_command_template(
    command_template: str,
    *,
    model: str,
    prompt: str,
    prompt_file: Path,
) -> list[str]:
    """Render ``{model}``, ``{prompt}`` and ``{prompt_file}`` into argv."""

    stripped = command_template.strip()
    if not stripped:
        raise ValueError("CLI command template is empty.")
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise ValueError("CLI command template must include {prompt} or {prompt_file}.")
    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except (KeyError, IndexError) as error:
        raise ValueError(f"Unsupported command template placeholder: {error}") from error

    argv = shlex.split(rendered)
    if not argv:
        raise ValueError("CLI command template rendered empty command.")
    return argv


class TemplateCommandBuilder:
    """Render the template per call, writing the prompt to a file first."""

    def __init__(self, command_template: str, prompt_dir: Path) -> None:
        self.command_template = command_template
        self.prompt_dir = prompt_dir

    def build_args(
        self,
        config: ProcessConfig,
        instruction: str,
        repo_path: Path,
        context_files: Sequence[Path],
    ) -> list[str]:
        del repo_path
        prompt = instruction
        if context_files:
            listed = "\n".join(f"- {path}" for path in context_files)
            prompt = f"{instruction}\n\nRelevant files:\n{listed}"
        handle = tempfile.NamedTemporaryFile(  # noqa: SIM115
            "w",
            encoding="utf-8",
            prefix="prompt-",
            suffix=".txt",
            dir=self.prompt_dir,
            delete=False,
        )
        with handle:
            handle.write(prompt)
        return render_command_template(
            self.command_template,
            model=config.model,
            prompt=prompt,
            prompt_file=Path(handle.name),
        )


class CliTemplateEngine:
    """Run any CLI agent that prints plain text or JSON lines."""

    def __init__(  # noqa: PLR0913
        self,
        command_template: str,
        options: ProcessOptions | None = None,
        *,
        default_model: str = DEFAULT_MODEL,
        validator: InstructionValidator | None = None,
        metrics_collector: MetricsCollector | None = None,
        sinks: Iterable[EventSink] = (),
    ) -> None:
        # Fail on unusable templates at construction time.
        render_command_template(
            command_template,
            model=default_model,
            prompt="",
            prompt_file=Path("prompt.txt"),
        )
        self.command_template = command_template
        self.options = options or ProcessOptions()
        self.default_model = default_model
        self._sinks = list(sinks)
        self._validator = validator
        self._metrics = metrics_collector

    def get_name(self) -> str:
        return ENGINE_NAME

    def get_supported_models(self) -> list[str]:
        return [self.options.model or self.default_model]

    def apply_changes(  # noqa: PLR0913
        self,
        instruction: str,
        repo_path: Path,
        context_files: Sequence[Path] | None = None,
        cancellation_token: CancellationToken | None = None,
        *,
        overrides: ProcessOptions | None = None,
    ) -> Result[ChangesSummary, EngineError]:
        resolved = try_resolve_process_config(
            defaults=self.options,
            overrides=overrides,
            cwd=Path(repo_path),
            fallback_model=self.default_model,
        )
        if not resolved.ok:
            assert resolved.error is not None
            return Result.failure(resolved.error)
        config = resolved.value
        assert config is not None
        with tempfile.TemporaryDirectory(prefix="coding-engines-") as prompt_dir:
            executor = ProcessExecutor(
                name=ENGINE_NAME,
                command_builder=TemplateCommandBuilder(self.command_template, Path(prompt_dir)),
                output_parser=JsonLineParser(),
                metrics_prefix="cli",
                validator=self._validator,
                metrics_collector=self._metrics,
            )
            logger.debug("Running CLI template engine with model %s", config.model)
            return executor.execute(
                config,
                instruction,
                Path(repo_path),
                context_files=list(context_files or ()),
                cancellation_token=cancellation_token,
                sinks=self._sinks,
            )

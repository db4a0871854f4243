"""CLI entrypoint for coding-engines."""

import logging
import os
from pathlib import Path

import rich_click as click

from coding_engines import __version__
from coding_engines.config import SUPPORTED_PROVIDERS
from coding_engines.controllers import (
    CodingEnginesCliController,
    CommandOutcome,
    ConvertCommand,
    ModelsCommand,
    RunCommand,
    ServeCommand,
    ValidateCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = CodingEnginesCliController()
PROVIDER_CHOICE = click.Choice(SUPPORTED_PROVIDERS, case_sensitive=False)


@click.group()
@click.version_option(version=__version__, prog_name="coding-engines")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Logging level. Defaults to CODING_ENGINES_LOG_LEVEL or WARNING.",
)
def coding_engines(log_level: str | None) -> None:
    """Run AI coding engines against a repository checkout."""

    level = (log_level or os.getenv("CODING_ENGINES_LOG_LEVEL") or "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@coding_engines.command("run")
@click.argument("instruction")
@click.option(
    "--repo",
    "repo_path",
    type=click.Path(path_type=Path, exists=True, file_okay=False),
    default=Path("."),
    show_default=True,
    help="Repository checkout the engine works in.",
)
@click.option("--provider", type=PROVIDER_CHOICE, default=None, help="Engine provider key.")
@click.option("--model", default=None, help="Model override, for example `zai/glm-4.7`.")
@click.option("--preview/--no-preview", default=None, help="Plan only, do not edit files.")
@click.option("--chat-only/--no-chat-only", default=None, help="Restrict to read-only tools.")
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Per-call timeout in seconds.",
)
@click.option(
    "--context-file",
    "context_files",
    type=click.Path(path_type=Path),
    multiple=True,
    help="File to mention as context. Can be repeated.",
)
@click.option("--metrics", "show_metrics", is_flag=True, help="Print collected metrics.")
@click.option("--quiet", is_flag=True, help="Do not stream engine output.")
def run(  # noqa: PLR0913
    instruction: str,
    repo_path: Path,
    provider: str | None,
    model: str | None,
    preview: bool | None,
    chat_only: bool | None,
    timeout_seconds: float | None,
    context_files: tuple[Path, ...],
    show_metrics: bool,
    quiet: bool,
) -> None:
    """Apply **INSTRUCTION** to the repository and print the resulting diff."""

    try:
        outcome = CONTROLLER.run(
            RunCommand(
                instruction=instruction,
                repo_path=repo_path.resolve(),
                provider=provider,
                model=model,
                preview=preview,
                chat_only=chat_only,
                timeout_seconds=timeout_seconds,
                context_files=context_files,
                show_metrics=show_metrics,
                on_log=None if quiet else _echo_err,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _finish(outcome, "Engine run failed.")


@coding_engines.command("validate")
@click.argument("instruction")
def validate(instruction: str) -> None:
    """Check an instruction against the dangerous-command rules."""

    _finish(CONTROLLER.validate(ValidateCommand(instruction=instruction)), "Instruction rejected.")


@coding_engines.command("convert")
@click.argument("source", type=click.File("r", encoding="utf-8"), default="-")
@click.option("--files", "list_files", is_flag=True, help="List changed files only.")
def convert(source, list_files: bool) -> None:
    """Convert SEARCH/REPLACE output (file or stdin) to a unified diff."""

    _emit_lines(CONTROLLER.convert(ConvertCommand(text=source.read(), list_files=list_files)).lines)


@coding_engines.group()
def server() -> None:
    """Agent server commands."""


@server.command("url")
def server_url() -> None:
    """Print the agent server URL from OPENCODE_HOST/OPENCODE_PORT."""

    try:
        _emit_lines(CONTROLLER.server_url().lines)
    except ValueError as error:
        raise click.ClickException(str(error)) from error


@server.command("serve")
@click.option("--host", default=None, help="Bind host. Defaults to OPENCODE_HOST.")
@click.option(
    "--port",
    type=click.IntRange(min=1, max=65_535),
    default=None,
    help="Bind port. Defaults to OPENCODE_PORT.",
)
@click.option(
    "--startup-timeout",
    "startup_timeout_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Seconds to wait for the health check.",
)
def server_serve(host: str | None, port: int | None, startup_timeout_seconds: float | None) -> None:
    """Start the agent server and keep it running until interrupted."""

    try:
        outcome = CONTROLLER.serve(
            ServeCommand(host=host, port=port, startup_timeout_seconds=startup_timeout_seconds),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _finish(outcome, "Agent server failed.")


@coding_engines.command("models")
@click.option("--provider", type=PROVIDER_CHOICE, default=None, help="Engine provider key.")
def models(provider: str | None) -> None:
    """List models supported by the selected engine."""

    try:
        _emit_lines(CONTROLLER.models(ModelsCommand(provider=provider)).lines)
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _finish(outcome: CommandOutcome, failure_message: str) -> None:
    _emit_lines(outcome.lines)
    if not outcome.success:
        raise click.ClickException(failure_message)


def _echo_err(line: str) -> None:
    click.echo(line, err=True)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    coding_engines()

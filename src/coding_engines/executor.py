"""One-shot CLI agent execution with streaming, timeout and cancellation.

Each ``ProcessExecutor.execute`` call is independent: it owns its subprocess,
its event emitter and its accumulated output. Timeout and cancellation race
for the same terminal latch (the emitter's ``close``); whichever is observed
first decides the error kind, both kill the process, and no event is
delivered after that point.
"""

from __future__ import annotations

import json
import logging
import os
import queue
import subprocess
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from coding_engines.cancellation import CancellationToken
from coding_engines.diff_converter import convert_search_replace_to_diff, split_unified_diff
from coding_engines.errors import (
    EngineCancelledError,
    EngineError,
    EngineTimeoutError,
    ProcessError,
)
from coding_engines.events import CallbackSink, EventEmitter, EventSink
from coding_engines.failure_classifier import classify_failure
from coding_engines.metrics import MetricsCollector
from coding_engines.metrics import metrics as default_metrics
from coding_engines.models import ChangesSummary, ChatMessage, ProcessConfig
from coding_engines.process import STDERR, STDOUT, pump_lines, terminate_process
from coding_engines.result import Result
from coding_engines.validation import InstructionValidator

logger = logging.getLogger(__name__)

_CANCELLED = "cancelled"
_TIMEOUT = "timeout"
_FAILED = "failed"
_STDERR_TAIL_LINES = 20


@dataclass(frozen=True, slots=True)
class ParsedLine:
    """What one stdout line contributes to the call.

    ``text`` is appended to the output handed to the diff converter (``None``
    contributes nothing); the other fields feed the chat sink and the summary.
    """

    text: str | None = None
    chat: ChatMessage | None = None
    file_modified: str | None = None
    file_created: str | None = None
    summary: str | None = None
    cost_usd: float | None = None
    error: str | None = None


class CommandBuilder(Protocol):
    """Turn an effective config plus a request into an argv list."""

    def build_args(
        self,
        config: ProcessConfig,
        instruction: str,
        repo_path: Path,
        context_files: Sequence[Path],
    ) -> list[str]:
        """Return argv; raise ``ValueError`` for unusable configuration."""


class OutputParser(Protocol):
    """Interpret one stdout line of an engine."""

    def parse_line(self, line: str) -> ParsedLine:
        """Classify a raw line; must not raise."""


class PlainTextParser:
    """Every line is plain output."""

    def parse_line(self, line: str) -> ParsedLine:
        return ParsedLine(text=line)


class JsonLineParser:
    """Parse JSON-object lines through ``parse_event``; other lines stay plain."""

    def parse_line(self, line: str) -> ParsedLine:
        event = load_json_object(line)
        if event is None:
            return ParsedLine(text=line)
        return self.parse_event(event)

    def parse_event(self, event: dict[str, Any]) -> ParsedLine:
        text = event.get("text") or event.get("message")
        if isinstance(text, str) and text:
            return ParsedLine(text=text, chat=ChatMessage(role="assistant", content=text, raw=event))
        return ParsedLine()


def load_json_object(line: str) -> dict[str, Any] | None:
    stripped = line.strip()
    if not stripped.startswith("{"):
        return None
    try:
        value = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


class OutputAccumulator:
    """Collect parsed output of one call and build its ``ChangesSummary``."""

    def __init__(self, engine_name: str) -> None:
        self.engine_name = engine_name
        self._transcript: list[str] = []
        self._assistant_text: list[str] = []
        self._summary: str | None = None
        self._error_message: str | None = None
        self._files_modified: list[str] = []
        self._files_created: list[str] = []
        self._total_cost = 0.0

    @property
    def error_message(self) -> str | None:
        return self._error_message

    def add(self, parsed: ParsedLine) -> None:
        if parsed.text is not None:
            self._transcript.append(parsed.text)
        if parsed.chat is not None and parsed.chat.role == "assistant" and parsed.chat.content:
            self._assistant_text.append(parsed.chat.content)
        if parsed.file_modified:
            _append_unique(self._files_modified, parsed.file_modified)
        if parsed.file_created:
            _append_unique(self._files_created, parsed.file_created)
        if parsed.summary:
            self._summary = parsed.summary
        if parsed.cost_usd:
            self._total_cost += parsed.cost_usd
        if parsed.error and self._error_message is None:
            self._error_message = parsed.error

    def build_summary(self) -> ChangesSummary:
        """Convert the transcript to a canonical diff and describe the changes.

        ``files_modified`` lists tool-reported paths first, then paths found
        in the diff that were not reported as created.
        """

        diff = convert_search_replace_to_diff("\n".join(self._transcript))
        changes = split_unified_diff(diff)
        files_modified = list(self._files_modified)
        for change in changes:
            if change.path not in self._files_created:
                _append_unique(files_modified, change.path)
        summary_text = (
            self._summary
            or "".join(self._assistant_text).strip()
            or f"Changes applied by {self.engine_name}"
        )
        return ChangesSummary(
            changes=tuple(changes),
            summary=summary_text,
            diff=diff if changes else "",
            files_modified=tuple(files_modified),
            files_created=tuple(self._files_created),
            total_cost=self._total_cost,
        )


class ProcessExecutor:
    """Spawn a CLI agent per call and turn its output into a ``ChangesSummary``."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        name: str,
        command_builder: CommandBuilder,
        output_parser: OutputParser | None = None,
        metrics_prefix: str | None = None,
        validator: InstructionValidator | None = None,
        metrics_collector: MetricsCollector | None = None,
        extra_env: Mapping[str, str] | None = None,
        kill_grace_seconds: float = 5.0,
        poll_interval_seconds: float = 0.1,
    ) -> None:
        self.name = name
        self.command_builder = command_builder
        self.output_parser = output_parser or PlainTextParser()
        self.metrics_prefix = metrics_prefix or name.lower().replace(" ", "_")
        self.validator = validator or InstructionValidator()
        self.metrics = metrics_collector or default_metrics
        self.extra_env = dict(extra_env or {})
        self.kill_grace_seconds = kill_grace_seconds
        self.poll_interval_seconds = poll_interval_seconds

    def execute(  # noqa: PLR0913
        self,
        config: ProcessConfig,
        instruction: str,
        repo_path: Path,
        context_files: Sequence[Path] = (),
        cancellation_token: CancellationToken | None = None,
        sinks: Iterable[EventSink] = (),
    ) -> Result[ChangesSummary, EngineError]:
        run = _ExecutionRun(
            executor=self,
            config=config,
            instruction=instruction,
            repo_path=Path(repo_path),
            context_files=list(context_files),
            cancellation_token=cancellation_token,
            sinks=list(sinks),
        )
        return run.run()


class _ExecutionRun:
    """State of a single ``execute`` call; never shared between calls."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        executor: ProcessExecutor,
        config: ProcessConfig,
        instruction: str,
        repo_path: Path,
        context_files: list[Path],
        cancellation_token: CancellationToken | None,
        sinks: list[EventSink],
    ) -> None:
        self._executor = executor
        self._config = config
        self._instruction = instruction
        self._repo_path = repo_path
        self._context_files = context_files
        self._token = cancellation_token
        self._emitter = EventEmitter([CallbackSink(config), *sinks])
        self._metrics = executor.metrics
        self._prefix = executor.metrics_prefix
        self._process: subprocess.Popen[str] | None = None
        self._started = time.monotonic()
        self._output = OutputAccumulator(executor.name)
        self._stdout_lines: list[str] = []
        self._stderr_lines: list[str] = []

    def run(self) -> Result[ChangesSummary, EngineError]:
        name = self._executor.name
        self._metrics.increment(
            f"{self._prefix}.requests.total",
            {"model": self._config.model, "preview": str(self._config.preview_mode).lower()},
        )

        validation = self._executor.validator.validate(self._instruction)
        if not validation.ok:
            self._metrics.increment(
                f"{self._prefix}.requests.failed",
                {"reason": "validation_error"},
            )
            assert validation.error is not None
            return Result.failure(validation.error)

        if self._token is not None and self._token.is_cancelled:
            return self._fail(EngineCancelledError("Task cancelled by user"), reason=_CANCELLED)

        try:
            args = self._executor.command_builder.build_args(
                self._config,
                self._instruction,
                self._repo_path,
                self._context_files,
            )
        except ValueError as error:
            return self._fail(ProcessError(str(error)), reason="invalid_command")

        self._emitter.log(f"[{name}] Executing in: {self._repo_path}")
        self._emitter.log(f"[{name}] Model: {self._config.model}")
        logger.info("Running %s (%s) in %s", name, self._config.model, self._repo_path)

        env = os.environ.copy()
        env["COLUMNS"] = "200"
        env.update(self._executor.extra_env)
        try:
            self._process = subprocess.Popen(  # noqa: S603
                args,
                cwd=self._repo_path,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError as error:
            return self._fail(
                ProcessError(f"{name} command not found: {args[0]}", reason="command_not_found"),
                reason="spawn_error",
                cause=error,
            )
        except OSError as error:
            return self._fail(
                ProcessError(f"{name} failed to start: {error}", transient=True),
                reason="spawn_error",
                cause=error,
            )

        unregister: Callable[[], None] | None = None
        try:
            if self._token is not None:
                unregister = self._token.on_cancelled(self._on_cancelled)
            return self._supervise()
        finally:
            if unregister is not None:
                unregister()
            if self._process.poll() is None:
                terminate_process(self._process, grace_seconds=self._executor.kill_grace_seconds)

    def _on_cancelled(self) -> None:
        if not self._emitter.close(_CANCELLED):
            return
        logger.warning("%s execution cancelled", self._executor.name)
        process = self._process
        if process is not None and process.poll() is None:
            try:
                process.terminate()
            except OSError:
                logger.debug("Terminate after cancel failed", exc_info=True)

    def _supervise(self) -> Result[ChangesSummary, EngineError]:
        process = self._process
        assert process is not None
        assert process.stdout is not None
        assert process.stderr is not None

        lines: queue.Queue[tuple[str, str | None]] = queue.Queue()
        pump_lines(process.stdout, STDOUT, lines)
        pump_lines(process.stderr, STDERR, lines)

        deadline = self._started + self._config.timeout_seconds
        poll_interval = self._executor.poll_interval_seconds
        open_streams = 2

        while True:
            if self._emitter.terminal_reason == _CANCELLED:
                return self._cancelled()

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                if self._emitter.close(_TIMEOUT):
                    return self._timed_out()
                continue

            if open_streams == 0:
                if process.poll() is not None:
                    break
                try:
                    process.wait(timeout=min(poll_interval, remaining))
                except subprocess.TimeoutExpired:
                    pass
                continue

            try:
                stream_name, line = lines.get(timeout=min(poll_interval, remaining))
            except queue.Empty:
                continue
            if line is None:
                open_streams -= 1
                continue
            if stream_name == STDERR:
                self._handle_stderr(line)
            else:
                self._handle_stdout(line)

        return self._finish(process.returncode)

    def _handle_stdout(self, line: str) -> None:
        self._stdout_lines.append(line)
        parsed = self._executor.output_parser.parse_line(line)
        if line.strip():
            self._emitter.log(line)
        if parsed.chat is not None:
            self._emitter.chat(parsed.chat)
        self._output.add(parsed)

    def _handle_stderr(self, line: str) -> None:
        if not line.strip():
            return
        self._stderr_lines.append(line)
        self._emitter.log(f"[stderr] {line}")

    def _finish(self, returncode: int) -> Result[ChangesSummary, EngineError]:
        name = self._executor.name
        if self._emitter.terminal_reason == _CANCELLED:
            return self._cancelled()

        if returncode != 0:
            stderr = "\n".join(self._stderr_lines[-_STDERR_TAIL_LINES:])
            classification = classify_failure(
                exit_code=returncode,
                stdout="\n".join(self._stdout_lines[-_STDERR_TAIL_LINES:]),
                stderr=stderr,
            )
            message = self._output.error_message or (
                self._stderr_lines[-1] if self._stderr_lines else ""
            )
            message = f"{name} exited with code {returncode}" + (f": {message}" if message else "")
            if classification.hint:
                message = f"{message}\nHint: {classification.hint}"
            self._emitter.close(_FAILED)
            logger.warning("%s exited with code %s", name, returncode)
            return self._fail(
                ProcessError(
                    message,
                    exit_code=returncode,
                    stderr=stderr,
                    transient=classification.transient,
                    reason=classification.reason.value,
                ),
                reason="non_zero_exit_code",
            )

        summary = self._output.build_summary()
        self._emitter.changes(summary)
        if not self._emitter.complete(summary):
            return self._cancelled()

        self._record_duration()
        self._metrics.increment(f"{self._prefix}.requests.success")
        if summary.files_modified:
            self._metrics.histogram(f"{self._prefix}.files.modified", len(summary.files_modified))
        logger.info(
            "%s completed: %d file change(s), modified=%d created=%d",
            name,
            len(summary.changes),
            len(summary.files_modified),
            len(summary.files_created),
        )
        return Result.success(summary)

    def _cancelled(self) -> Result[ChangesSummary, EngineError]:
        self._kill()
        return self._fail(EngineCancelledError("Task cancelled by user"), reason=_CANCELLED)

    def _timed_out(self) -> Result[ChangesSummary, EngineError]:
        timeout = self._config.timeout_seconds
        logger.warning("%s process timed out after %gs", self._executor.name, timeout)
        self._kill()
        return self._fail(
            EngineTimeoutError(
                f"{self._executor.name} process timed out after {timeout:g}s",
                timeout_seconds=timeout,
            ),
            reason=_TIMEOUT,
        )

    def _kill(self) -> None:
        if self._process is not None:
            terminate_process(self._process, grace_seconds=self._executor.kill_grace_seconds)

    def _fail(
        self,
        error: EngineError,
        *,
        reason: str,
        cause: BaseException | None = None,
    ) -> Result[ChangesSummary, EngineError]:
        if cause is not None:
            error.__cause__ = cause
        self._emitter.close(_FAILED)
        self._record_duration()
        self._metrics.increment(f"{self._prefix}.requests.failed", {"reason": reason})
        return Result.failure(error)

    def _record_duration(self) -> None:
        duration_ms = (time.monotonic() - self._started) * 1000
        self._metrics.histogram(
            f"{self._prefix}.execution.duration",
            duration_ms,
            {"model": self._config.model},
        )


def _append_unique(items: list[str], value: str) -> None:
    if value not in items:
        items.append(value)

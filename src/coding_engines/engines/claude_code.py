"""Claude Code CLI engine (``claude -p ... --output-format stream-json``)."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any

from coding_engines.cancellation import CancellationToken
from coding_engines.config import CLAUDE_DEFAULT_MODEL, DEFAULT_CLAUDE_COMMAND
from coding_engines.errors import EngineError
from coding_engines.events import EventSink
from coding_engines.executor import JsonLineParser, ParsedLine, ProcessExecutor
from coding_engines.metrics import MetricsCollector
from coding_engines.models import (
    ChangesSummary,
    ChatMessage,
    ProcessConfig,
    ProcessOptions,
    try_resolve_process_config,
)
from coding_engines.result import Result
from coding_engines.validation import InstructionValidator

logger = logging.getLogger(__name__)

ENGINE_NAME = "Claude Code"
DEFAULT_MAX_TURNS = 50
SUPPORTED_MODELS = [
    "claude-sonnet-4-20250514",
    "claude-opus-4-20250514",
    "claude-3-7-sonnet-20250219",
    "claude-3-5-haiku-20241022",
]
_FILE_TOOLS = {"Write", "Edit", "MultiEdit"}


class ClaudeStreamParser(JsonLineParser):
    """Map Claude Code stream-json events onto chat messages and file tracking."""

    def parse_event(self, event: dict[str, Any]) -> ParsedLine:  # noqa: PLR0911
        event_type = event.get("type")
        if event_type == "assistant":
            return _parse_assistant(event)
        if event_type == "tool_use":
            return _tool_use_line(event.get("tool_name"), event.get("tool_input"), event)
        if event_type == "tool_result":
            content = _stringify(event.get("tool_result") or event.get("content"))
            if event.get("is_error"):
                return ParsedLine(
                    chat=ChatMessage(role="tool_error", content=content, raw=event),
                )
            return ParsedLine(chat=ChatMessage(role="tool_result", content=content, raw=event))
        if event_type == "result":
            summary = event.get("message") or event.get("result")
            cost = event.get("cost_usd") or event.get("total_cost_usd")
            return ParsedLine(
                summary=summary if isinstance(summary, str) and summary else None,
                cost_usd=float(cost) if isinstance(cost, int | float) else None,
            )
        if event_type == "error":
            message = _stringify(event.get("message") or event.get("error"))
            return ParsedLine(
                chat=ChatMessage(role="error", content=message, raw=event),
                error=message or None,
            )
        return ParsedLine()


def _parse_assistant(event: dict[str, Any]) -> ParsedLine:
    message = event.get("message")
    if isinstance(message, str):
        return ParsedLine(
            text=message,
            chat=ChatMessage(role="assistant", content=message, raw=event),
        )
    if not isinstance(message, dict):
        return ParsedLine()

    # Full SDK messages carry a list of content blocks; at most one tool call per line.
    texts: list[str] = []
    tool_line: ParsedLine | None = None
    for block in message.get("content") or []:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "text" and block.get("text"):
            texts.append(str(block["text"]))
        elif block.get("type") == "tool_use" and tool_line is None:
            tool_line = _tool_use_line(block.get("name"), block.get("input"), event)

    text = "\n".join(texts)
    if tool_line is not None and not text:
        return tool_line
    if not text:
        return ParsedLine()
    return ParsedLine(
        text=text,
        chat=ChatMessage(role="assistant", content=text, raw=event),
        file_modified=tool_line.file_modified if tool_line else None,
        file_created=tool_line.file_created if tool_line else None,
    )


def _tool_use_line(tool_name: Any, tool_input: Any, raw: dict[str, Any]) -> ParsedLine:
    name = str(tool_name or "tool")
    file_path = None
    if isinstance(tool_input, dict) and tool_input.get("file_path"):
        file_path = str(tool_input["file_path"])
    chat = ChatMessage(
        role="tool_use",
        content=f"{name} {file_path}" if file_path else name,
        tool_name=name,
        file_path=file_path,
        raw=raw,
    )
    if name in _FILE_TOOLS and file_path:
        return ParsedLine(chat=chat, file_modified=file_path)
    return ParsedLine(chat=chat)


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "\n".join(
            _stringify(item.get("text") if isinstance(item, dict) else item) for item in value
        )
    return str(value)


class ClaudeCommandBuilder:
    """Build ``claude`` argv from the effective config."""

    def __init__(
        self,
        command: Sequence[str] = DEFAULT_CLAUDE_COMMAND,
        *,
        default_max_turns: int = DEFAULT_MAX_TURNS,
    ) -> None:
        if not command:
            raise ValueError("Claude Code command must not be empty.")
        self.command = tuple(command)
        self.default_max_turns = default_max_turns

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
        args = [
            *self.command,
            "-p",
            prompt,
            "--verbose",
            "--output-format",
            "stream-json",
            "--max-turns",
            str(config.max_turns or self.default_max_turns),
        ]
        if config.model:
            args += ["--model", config.model]
        if config.allowed_tools:
            args += ["--allowedTools", ",".join(config.allowed_tools)]
        if config.disallowed_tools:
            args += ["--disallowedTools", ",".join(config.disallowed_tools)]
        if config.preview_mode:
            args += ["--permission-mode", "plan"]
        return args


class ClaudeCodeEngine:
    """Coding engine backed by the Claude Code CLI, one process per call."""

    def __init__(  # noqa: PLR0913
        self,
        options: ProcessOptions | None = None,
        *,
        command: Sequence[str] = DEFAULT_CLAUDE_COMMAND,
        default_model: str = CLAUDE_DEFAULT_MODEL,
        default_max_turns: int = DEFAULT_MAX_TURNS,
        validator: InstructionValidator | None = None,
        metrics_collector: MetricsCollector | None = None,
        sinks: Iterable[EventSink] = (),
    ) -> None:
        self.options = options or ProcessOptions()
        self.default_model = default_model
        self._sinks = list(sinks)
        self._executor = ProcessExecutor(
            name=ENGINE_NAME,
            command_builder=ClaudeCommandBuilder(command, default_max_turns=default_max_turns),
            output_parser=ClaudeStreamParser(),
            metrics_prefix="claude_code",
            validator=validator,
            metrics_collector=metrics_collector,
            extra_env={"CLAUDE_CODE_DISABLE_NONESSENTIAL_TRAFFIC": "1"},
        )

    def get_name(self) -> str:
        return ENGINE_NAME

    def get_supported_models(self) -> list[str]:
        return list(SUPPORTED_MODELS)

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
        logger.debug("Claude Code config resolved: model=%s", config.model)
        return self._executor.execute(
            config,
            instruction,
            Path(repo_path),
            context_files=list(context_files or ()),
            cancellation_token=cancellation_token,
            sinks=self._sinks,
        )

"""Data model shared by engines, executor and server manager."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from coding_engines.errors import EngineError, ValidationError
from coding_engines.result import Result

CHAT_ONLY_ALLOWED_TOOLS: tuple[str, ...] = ("Read", "LS", "Grep", "Glob")
DEFAULT_TIMEOUT_SECONDS = 30 * 60


@dataclass(frozen=True, slots=True)
class FileChange:
    """Unified diff text for one file."""

    path: str
    diff: str


@dataclass(frozen=True, slots=True)
class ChangesSummary:
    """Structured result of one successful engine invocation."""

    changes: tuple[FileChange, ...]
    summary: str
    diff: str = ""
    files_modified: tuple[str, ...] = ()
    files_created: tuple[str, ...] = ()
    total_cost: float = 0.0

    @property
    def paths(self) -> list[str]:
        return [change.path for change in self.changes]


@dataclass(frozen=True, slots=True)
class ChatMessage:
    """Conversational event parsed from structured engine output."""

    role: str
    content: str
    tool_name: str | None = None
    file_path: str | None = None
    cost_usd: float | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False)


LogCallback = Callable[[str], None]
ChatCallback = Callable[[ChatMessage], None]
ChangesCallback = Callable[[ChangesSummary], None]


@dataclass(slots=True)
class ProcessOptions:
    """Caller-supplied, partial execution options; unset fields fall back."""

    model: str | None = None
    preview_mode: bool | None = None
    chat_only: bool | None = None
    allowed_tools: tuple[str, ...] | None = None
    disallowed_tools: tuple[str, ...] | None = None
    timeout_seconds: float | None = None
    max_turns: int | None = None
    on_log: LogCallback | None = None
    on_chat_message: ChatCallback | None = None
    on_changes: ChangesCallback | None = None


@dataclass(frozen=True, slots=True)
class ProcessConfig:
    """Effective configuration of one call, resolved once and never mutated."""

    model: str
    cwd: Path
    preview_mode: bool = False
    chat_only: bool = False
    allowed_tools: tuple[str, ...] | None = None
    disallowed_tools: tuple[str, ...] | None = None
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    max_turns: int | None = None
    on_log: LogCallback | None = None
    on_chat_message: ChatCallback | None = None
    on_changes: ChangesCallback | None = None


def resolve_process_config(
    *,
    defaults: ProcessOptions,
    overrides: ProcessOptions | None = None,
    cwd: Path,
    fallback_model: str,
) -> ProcessConfig:
    """Merge per-call overrides over engine defaults into a frozen config.

    Precedence for every field: override, then engine default, then the
    built-in default. In chat-only mode without an explicit per-call
    allow-list the read-only tool subset replaces any default allow-list.
    """

    overrides = overrides or ProcessOptions()

    def pick(name: str, builtin: Any) -> Any:
        value = getattr(overrides, name)
        if value is not None:
            return value
        value = getattr(defaults, name)
        if value is not None:
            return value
        return builtin

    chat_only = bool(pick("chat_only", False))
    allowed_tools = pick("allowed_tools", None)
    if chat_only and overrides.allowed_tools is None:
        allowed_tools = CHAT_ONLY_ALLOWED_TOOLS
    timeout_seconds = float(pick("timeout_seconds", DEFAULT_TIMEOUT_SECONDS))
    if timeout_seconds <= 0:
        raise ValueError(f"timeout_seconds must be > 0, got {timeout_seconds!r}")

    return ProcessConfig(
        model=pick("model", fallback_model),
        cwd=cwd,
        preview_mode=bool(pick("preview_mode", False)),
        chat_only=chat_only,
        allowed_tools=tuple(allowed_tools) if allowed_tools is not None else None,
        disallowed_tools=_as_tuple(pick("disallowed_tools", None)),
        timeout_seconds=timeout_seconds,
        max_turns=pick("max_turns", None),
        on_log=pick("on_log", None),
        on_chat_message=pick("on_chat_message", None),
        on_changes=pick("on_changes", None),
    )


def try_resolve_process_config(
    *,
    defaults: ProcessOptions,
    overrides: ProcessOptions | None = None,
    cwd: Path,
    fallback_model: str,
) -> Result[ProcessConfig, EngineError]:
    """``resolve_process_config`` with invalid options reported as ``ValidationError``."""

    try:
        config = resolve_process_config(
            defaults=defaults,
            overrides=overrides,
            cwd=cwd,
            fallback_model=fallback_model,
        )
    except ValueError as error:
        return Result.failure(ValidationError(f"Invalid process options: {error}"))
    return Result.success(config)


def _as_tuple(values: tuple[str, ...] | None) -> tuple[str, ...] | None:
    return tuple(values) if values is not None else None


class ServerStatus(str, Enum):
    """Lifecycle states of the long-lived backend server."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ServerHandle:
    """Snapshot of the singleton backend server."""

    host: str
    port: int
    status: ServerStatus
    pid: int | None = None

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"


class EventKind(str, Enum):
    """Kinds of events emitted while an engine call runs."""

    LOG = "log"
    CHAT = "chat"
    CHANGES = "changes"
    COMPLETED = "completed"


@dataclass(frozen=True, slots=True)
class EngineEvent:
    """One ordered event of an engine call; ``COMPLETED`` is always last."""

    sequence: int
    kind: EventKind
    payload: Any = None

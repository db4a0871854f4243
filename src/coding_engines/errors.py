"""Typed error kinds carried inside ``Result`` failures."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Normalized error kinds reported to engine callers."""

    VALIDATION = "validation"
    ALREADY_RUNNING = "already_running"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    PROCESS = "process"
    PARSE = "parse"


class EngineError(RuntimeError):
    """Base class for every failure an engine call can report."""

    kind: ErrorKind = ErrorKind.PROCESS

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(EngineError):
    """Instruction rejected by the safety gate before any process was spawned."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, *, rule_description: str | None = None) -> None:
        super().__init__(message)
        self.rule_description = rule_description


class AlreadyRunningError(EngineError):
    """Server start requested while another start or run is in effect."""

    kind = ErrorKind.ALREADY_RUNNING


class EngineTimeoutError(EngineError):
    """Execution exceeded its configured timeout and was terminated."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str, *, timeout_seconds: float) -> None:
        super().__init__(message)
        self.timeout_seconds = timeout_seconds


class EngineCancelledError(EngineError):
    """Execution was cancelled through a cancellation token."""

    kind = ErrorKind.CANCELLED


class ProcessError(EngineError):
    """Backend process failed to start or exited with a non-zero code."""

    kind = ErrorKind.PROCESS

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        stderr: str = "",
        transient: bool = False,
        reason: str | None = None,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr
        self.transient = transient
        self.reason = reason


class ParseError(EngineError):
    """Backend output could not be interpreted."""

    kind = ErrorKind.PARSE

"""Opencode engine: session API of the long-lived agent server."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path
from typing import Any

import httpx

from coding_engines.cancellation import CancellationToken
from coding_engines.config import OPENCODE_DEFAULT_MODEL
from coding_engines.errors import (
    AlreadyRunningError,
    EngineCancelledError,
    EngineError,
    EngineTimeoutError,
    ParseError,
    ProcessError,
)
from coding_engines.events import CallbackSink, EventEmitter, EventSink
from coding_engines.executor import OutputAccumulator, ParsedLine
from coding_engines.metrics import MetricsCollector
from coding_engines.metrics import metrics as default_metrics
from coding_engines.models import (
    ChangesSummary,
    ChatMessage,
    ProcessConfig,
    ProcessOptions,
    try_resolve_process_config,
)
from coding_engines.result import Result
from coding_engines.server.client import OpencodeClient, SessionReply
from coding_engines.server.manager import ServerManager, get_default_server_manager
from coding_engines.validation import InstructionValidator

logger = logging.getLogger(__name__)

ENGINE_NAME = "Opencode"
FALLBACK_MODELS = ["zai/glm-4.7", "zai/glm-4-flash"]
_WRITE_TOOLS = ("edit", "write", "patch", "bash")
_METRICS_PREFIX = "opencode"

ClientFactory = Callable[..., OpencodeClient]


def parse_reply_part(part: dict[str, Any]) -> ParsedLine:  # noqa: PLR0911
    """Map one message part of a session reply onto a ``ParsedLine``."""

    part_type = part.get("type")
    if part_type == "text":
        text = part.get("text")
        if not isinstance(text, str) or not text:
            return ParsedLine()
        return ParsedLine(text=text, chat=ChatMessage(role="assistant", content=text, raw=part))

    if part_type in ("tool", "tool_use"):
        tool = str(part.get("tool") or "tool")
        state = part.get("state") if isinstance(part.get("state"), dict) else {}
        status = state.get("status") or "started"
        tool_input = state.get("input") if isinstance(state.get("input"), dict) else {}
        metadata = state.get("metadata") if isinstance(state.get("metadata"), dict) else {}
        file_path = tool_input.get("filePath")
        file_path = str(file_path) if file_path else None
        chat = ChatMessage(
            role="tool_use",
            content=f"{tool} {status}" + (f": {file_path}" if file_path else ""),
            tool_name=tool,
            file_path=file_path,
            raw=part,
        )
        if status != "completed":
            return ParsedLine(chat=chat)
        if tool == "edit":
            diff = metadata.get("diff")
            return ParsedLine(
                text=diff if isinstance(diff, str) and diff else None,
                chat=chat,
                file_modified=file_path,
            )
        if tool == "write":
            return ParsedLine(chat=chat, file_created=file_path)
        return ParsedLine(chat=chat)

    if part_type in ("step-finish", "step_finish"):
        cost = part.get("cost")
        return ParsedLine(cost_usd=float(cost) if isinstance(cost, int | float) else None)

    if part_type == "error":
        message = str(part.get("message") or part.get("error") or "")
        return ParsedLine(chat=ChatMessage(role="error", content=message, raw=part), error=message)

    return ParsedLine()


class OpencodeEngine:
    """Coding engine that sends instructions to an ``opencode serve`` backend.

    The server is started through the injected ``ServerManager`` when it does
    not answer health checks. Each call opens its own session; cancellation
    and timeout abort that session and share one terminal latch.
    """

    def __init__(  # noqa: PLR0913
        self,
        options: ProcessOptions | None = None,
        *,
        server_manager: ServerManager | None = None,
        client_factory: ClientFactory = OpencodeClient,
        default_model: str = OPENCODE_DEFAULT_MODEL,
        validator: InstructionValidator | None = None,
        metrics_collector: MetricsCollector | None = None,
        sinks: Iterable[EventSink] = (),
        poll_interval_seconds: float = 0.1,
    ) -> None:
        self.options = options or ProcessOptions()
        self.server_manager = server_manager or get_default_server_manager()
        self.default_model = default_model
        self._client_factory = client_factory
        self._validator = validator or InstructionValidator()
        self._metrics = metrics_collector or default_metrics
        self._sinks = list(sinks)
        self._poll_interval = poll_interval_seconds

    def get_name(self) -> str:
        return ENGINE_NAME

    def get_supported_models(self) -> list[str]:
        try:
            with self._client_factory(self.server_manager.get_url(), timeout_seconds=5.0) as client:
                models = client.list_models()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Failed to fetch opencode models: %s", exc)
            return list(FALLBACK_MODELS)
        if not models:
            logger.warning("No opencode models fetched, using fallback")
            return list(FALLBACK_MODELS)
        return models

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
        run = _SessionRun(
            engine=self,
            config=config,
            instruction=_with_context(instruction, context_files or ()),
            raw_instruction=instruction,
            cancellation_token=cancellation_token,
        )
        return run.run()

    def ensure_server(self) -> Result[None, EngineError]:
        """Start the backend server unless it already answers health checks."""

        if self.server_manager.health_check():
            return Result.success(None)
        started = self.server_manager.start()
        if started.ok or isinstance(started.error, AlreadyRunningError):
            return Result.success(None)
        assert started.error is not None
        return Result.failure(started.error)


class _SessionRun:
    """One ``apply_changes`` call against the server."""

    def __init__(
        self,
        *,
        engine: OpencodeEngine,
        config: ProcessConfig,
        instruction: str,
        raw_instruction: str,
        cancellation_token: CancellationToken | None,
    ) -> None:
        self._engine = engine
        self._config = config
        self._instruction = instruction
        self._raw_instruction = raw_instruction
        self._token = cancellation_token
        self._metrics = engine._metrics
        self._poll_interval = engine._poll_interval
        self._emitter = EventEmitter([CallbackSink(config), *engine._sinks])
        self._started = time.monotonic()
        self._client: OpencodeClient | None = None
        self._session_id: str | None = None
        self._abort_lock = threading.Lock()

    def run(self) -> Result[ChangesSummary, EngineError]:
        self._metrics.increment(
            f"{_METRICS_PREFIX}.requests.total",
            {"model": self._config.model, "preview": str(self._config.preview_mode).lower()},
        )
        validation = self._engine._validator.validate(self._raw_instruction)
        if not validation.ok:
            assert validation.error is not None
            return self._fail(validation.error, reason="validation_error")

        if self._token is not None and self._token.is_cancelled:
            return self._fail(EngineCancelledError("Task cancelled by user"), reason="cancelled")

        server = self._engine.ensure_server()
        if not server.ok:
            assert server.error is not None
            return self._fail(server.error, reason="server_unavailable")

        self._emitter.log(f"[{ENGINE_NAME}] Executing in: {self._config.cwd}")
        self._emitter.log(f"[{ENGINE_NAME}] Model: {self._config.model}")
        self._client = self._engine._client_factory(
            self._engine.server_manager.get_url(),
            timeout_seconds=self._config.timeout_seconds,
        )
        unregister: Callable[[], None] | None = None
        try:
            if self._token is not None:
                unregister = self._token.on_cancelled(self._on_cancelled)
            return self._supervise()
        finally:
            if unregister is not None:
                unregister()
            self._client.close()

    def _on_cancelled(self) -> None:
        if self._emitter.close("cancelled"):
            logger.warning("Opencode session cancelled")
            self._abort()

    def _abort(self) -> None:
        with self._abort_lock:
            if self._client is not None and self._session_id is not None:
                self._client.abort_session(self._session_id)

    def _supervise(self) -> Result[ChangesSummary, EngineError]:
        outcome: dict[str, Any] = {}
        worker = threading.Thread(
            target=self._request,
            args=(outcome,),
            daemon=True,
            name="opencode-session",
        )
        worker.start()

        deadline = self._started + self._config.timeout_seconds
        while worker.is_alive():
            if self._emitter.terminal_reason == "cancelled":
                return self._fail(EngineCancelledError("Task cancelled by user"), reason="cancelled")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                if self._emitter.close("timeout"):
                    self._abort()
                    timeout = self._config.timeout_seconds
                    return self._fail(
                        EngineTimeoutError(
                            f"Opencode session timed out after {timeout:g}s",
                            timeout_seconds=timeout,
                        ),
                        reason="timeout",
                    )
                continue
            worker.join(timeout=min(self._poll_interval, remaining))

        if self._emitter.terminal_reason == "cancelled":
            return self._fail(EngineCancelledError("Task cancelled by user"), reason="cancelled")
        error = outcome.get("error")
        if error is not None:
            return self._fail(_http_error(error), reason="http_error")
        reply = outcome.get("reply")
        if reply is None:
            return self._fail(
                ParseError("Opencode session ended without a reply"),
                reason="parse_error",
            )
        return self._finish(reply)

    def _request(self, outcome: dict[str, Any]) -> None:
        assert self._client is not None
        try:
            session_id = self._client.create_session(self._config.cwd)
            with self._abort_lock:
                self._session_id = session_id
            if self._emitter.terminal_reason == "cancelled":
                self._client.abort_session(session_id)
                return
            outcome["reply"] = self._client.send_message(
                session_id,
                text=self._instruction,
                model=self._config.model,
                directory=self._config.cwd,
                tools=_tool_flags(self._config),
            )
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            outcome["error"] = exc

    def _finish(self, reply: SessionReply) -> Result[ChangesSummary, EngineError]:
        output = OutputAccumulator(ENGINE_NAME)
        for part in reply.parts:
            if not isinstance(part, dict):
                continue
            parsed = parse_reply_part(part)
            if parsed.chat is not None:
                self._emitter.log(f"[{ENGINE_NAME}] {parsed.chat.content}")
                self._emitter.chat(parsed.chat)
            output.add(parsed)

        if output.error_message:
            return self._fail(
                ProcessError(f"Opencode reported an error: {output.error_message}"),
                reason="agent_error",
            )

        summary = output.build_summary()
        self._emitter.changes(summary)
        if not self._emitter.complete(summary):
            return self._fail(EngineCancelledError("Task cancelled by user"), reason="cancelled")

        self._record_duration()
        self._metrics.increment(f"{_METRICS_PREFIX}.requests.success")
        if summary.files_modified:
            self._metrics.histogram(
                f"{_METRICS_PREFIX}.files.modified",
                len(summary.files_modified),
            )
        logger.info("Opencode completed: %d file change(s)", len(summary.changes))
        return Result.success(summary)

    def _fail(self, error: EngineError, *, reason: str) -> Result[ChangesSummary, EngineError]:
        self._emitter.close("failed")
        self._record_duration()
        self._metrics.increment(f"{_METRICS_PREFIX}.requests.failed", {"reason": reason})
        return Result.failure(error)

    def _record_duration(self) -> None:
        self._metrics.histogram(
            f"{_METRICS_PREFIX}.execution.duration",
            (time.monotonic() - self._started) * 1000,
            {"model": self._config.model},
        )


def _tool_flags(config: ProcessConfig) -> dict[str, bool] | None:
    if not (config.chat_only or config.preview_mode):
        return None
    return {tool: False for tool in _WRITE_TOOLS}


def _with_context(instruction: str, context_files: Sequence[Path]) -> str:
    if not context_files:
        return instruction
    listed = "\n".join(f"- {path}" for path in context_files)
    return f"{instruction}\n\nRelevant files:\n{listed}"


def _http_error(error: Exception) -> EngineError:
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        process_error = ProcessError(
            f"Opencode server returned HTTP {status}",
            transient=status >= 500 or status == 429,
            reason="backend_transient" if status >= 500 else None,
        )
    elif isinstance(error, httpx.HTTPError):
        process_error = ProcessError(
            f"Opencode server request failed: {error}",
            transient=True,
            reason="backend_transient",
        )
    else:
        process_error = ParseError(f"Unexpected opencode response: {error}")
    process_error.__cause__ = error
    return process_error

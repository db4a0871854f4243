"""Lifecycle of the long-lived local agent server (``opencode serve``)."""

from __future__ import annotations

import logging
import os
import queue
import subprocess
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

import httpx

from coding_engines.config import ServerSettings, resolve_server_host, resolve_server_port
from coding_engines.errors import (
    AlreadyRunningError,
    EngineError,
    EngineTimeoutError,
    ProcessError,
)
from coding_engines.metrics import MetricsCollector
from coding_engines.metrics import metrics as default_metrics
from coding_engines.models import ServerHandle, ServerStatus
from coding_engines.process import STDERR, STDOUT, pump_lines, terminate_process
from coding_engines.result import Result

logger = logging.getLogger(__name__)

ReadinessProbe = Callable[[str], bool]

_PROVIDER_TOKEN_KEYS = {
    "copilot": "COPILOT_TOKEN",
    "anthropic": "ANTHROPIC_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "zai": "ZAI_API_KEY",
}


@dataclass(slots=True)
class ServerOptions:
    """Per-start overrides; unset fields fall back to env, then settings."""

    host: str | None = None
    port: int | None = None
    command: tuple[str, ...] | None = None
    startup_timeout_seconds: float | None = None


class ServerManager:
    """Own exactly one backend server process and its state machine.

    ``STOPPED -> STARTING -> RUNNING -> STOPPING -> STOPPED``, with ``FAILED``
    reachable from ``STARTING``. Every transition runs under one lock, so of
    several concurrent ``start`` calls exactly one launches the server.
    """

    def __init__(
        self,
        settings: ServerSettings | None = None,
        *,
        probe: ReadinessProbe | None = None,
        metrics_collector: MetricsCollector | None = None,
        poll_interval_seconds: float = 0.2,
    ) -> None:
        self._settings = settings or ServerSettings()
        self._probe = probe or self._http_probe
        self._metrics = metrics_collector or default_metrics
        self._poll_interval = poll_interval_seconds
        self._transition_lock = threading.Lock()
        self._status = ServerStatus.STOPPED
        self._host: str | None = None
        self._port: int | None = None
        self._process: subprocess.Popen[str] | None = None
        self._last_options: ServerOptions | None = None

    @property
    def status(self) -> ServerStatus:
        return self._status

    @property
    def handle(self) -> ServerHandle:
        return ServerHandle(
            host=self._host or resolve_server_host(self._settings.host),
            port=self._port or resolve_server_port(self._settings.port),
            status=self._status,
            pid=self._process.pid if self._process is not None else None,
        )

    def get_url(self) -> str:
        """Server URL from the resolved host/port, else env, else settings. No I/O."""

        host = self._host or resolve_server_host(self._settings.host)
        port = self._port or resolve_server_port(self._settings.port)
        return f"http://{host}:{port}"

    def start(self, options: ServerOptions | None = None) -> Result[ServerHandle, EngineError]:
        options = options or ServerOptions()
        with self._transition_lock:
            if self._status in (ServerStatus.STARTING, ServerStatus.RUNNING):
                logger.warning("Agent server is already %s", self._status.value)
                return Result.failure(
                    AlreadyRunningError(f"Agent server is already {self._status.value}"),
                )

            self._status = ServerStatus.STARTING
            self._last_options = options
            try:
                self._host = options.host or resolve_server_host(self._settings.host)
                self._port = options.port or resolve_server_port(self._settings.port)
            except ValueError as error:
                return self._fail(
                    ProcessError(
                        f"Agent server address is invalid: {error}",
                        reason="invalid_config",
                    ),
                )
            self._metrics.increment("server.start", {"port": str(self._port)})

            command = [*(options.command or self._settings.command)]
            command += ["--port", str(self._port), "--hostname", self._host]
            logger.info("Starting agent server on %s:%s", self._host, self._port)
            try:
                self._process = subprocess.Popen(  # noqa: S603
                    command,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    env=build_server_env(os.environ),
                )
            except OSError as error:
                return self._fail(
                    ProcessError(f"Agent server failed to start: {error}", transient=False),
                )

            self._drain_output(self._process)
            timeout = options.startup_timeout_seconds or self._settings.startup_timeout_seconds
            error = self._wait_until_ready(self._process, timeout)
            if error is not None:
                terminate_process(self._process, grace_seconds=self._settings.stop_grace_seconds)
                return self._fail(error)

            self._status = ServerStatus.RUNNING
            logger.info("Agent server running with PID %s", self._process.pid)
            return Result.success(self.handle)

    def stop(self) -> Result[None, EngineError]:
        """Stop the server; succeeds whatever the current state is."""

        with self._transition_lock:
            if self._status in (ServerStatus.STOPPED, ServerStatus.FAILED):
                logger.debug("No agent server to stop (status=%s)", self._status.value)
                return Result.success(None)

            self._status = ServerStatus.STOPPING
            process, self._process = self._process, None
            if process is not None:
                logger.info("Stopping agent server (PID %s)", process.pid)
                terminate_process(process, grace_seconds=self._settings.stop_grace_seconds)
            self._status = ServerStatus.STOPPED
            self._metrics.increment("server.stop")
            return Result.success(None)

    def restart(self) -> Result[ServerHandle, EngineError]:
        self.stop()
        return self.start(self._last_options)

    def health_check(self) -> bool:
        try:
            url = self.get_url()
        except ValueError as exc:
            logger.warning("Cannot health check agent server: %s", exc)
            return False
        return self._probe(url)

    def _wait_until_ready(
        self,
        process: subprocess.Popen[str],
        timeout_seconds: float,
    ) -> EngineError | None:
        deadline = time.monotonic() + timeout_seconds
        url = self.get_url()
        while True:
            returncode = process.poll()
            if returncode is not None:
                return ProcessError(
                    f"Agent server exited during startup with code {returncode}",
                    exit_code=returncode,
                )
            if self._probe(url):
                return None
            if time.monotonic() >= deadline:
                return EngineTimeoutError(
                    f"Agent server not ready after {timeout_seconds:g}s at {url}",
                    timeout_seconds=timeout_seconds,
                )
            time.sleep(self._poll_interval)

    def _fail(self, error: EngineError) -> Result[ServerHandle, EngineError]:
        logger.error("Agent server start failed: %s", error)
        self._status = ServerStatus.FAILED
        self._process = None
        self._metrics.increment("server.start.failed")
        return Result.failure(error)

    def _http_probe(self, url: str) -> bool:
        try:
            response = httpx.get(
                f"{url}{self._settings.health_path}",
                timeout=httpx.Timeout(5.0),
            )
        except httpx.HTTPError as exc:
            logger.debug("Health check failed: %s", exc)
            return False
        return response.is_success

    @staticmethod
    def _drain_output(process: subprocess.Popen[str]) -> None:
        lines: queue.Queue[tuple[str, str | None]] = queue.Queue()
        assert process.stdout is not None
        assert process.stderr is not None
        pump_lines(process.stdout, STDOUT, lines)
        pump_lines(process.stderr, STDERR, lines)

        def _log_lines() -> None:
            open_streams = 2
            while open_streams:
                stream_name, line = lines.get()
                if line is None:
                    open_streams -= 1
                elif line.strip():
                    level = logging.WARNING if stream_name == STDERR else logging.INFO
                    logger.log(level, "[agent-server] %s", line)

        threading.Thread(target=_log_lines, daemon=True, name="agent-server-log").start()


def build_server_env(base: Mapping[str, str]) -> dict[str, str]:
    """Copy ``base`` and fill provider credentials the server expects."""

    env = dict(base)
    env["NODE_ENV"] = "production"
    provider = env.get("OPENCODE_PROVIDER", "").strip().lower()
    token_key = _PROVIDER_TOKEN_KEYS.get(provider)
    if token_key and env.get(token_key, "").strip() and not env.get("OPENCODE_API_KEY", "").strip():
        env["OPENCODE_API_KEY"] = env[token_key]
    return env


_default_manager: ServerManager | None = None
_default_manager_lock = threading.Lock()


def get_default_server_manager() -> ServerManager:
    """Process-wide manager for hosts that want one shared server."""

    global _default_manager  # noqa: PLW0603
    with _default_manager_lock:
        if _default_manager is None:
            _default_manager = ServerManager()
        return _default_manager

"""Runtime configuration for coding engines, the executor and the agent server."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field

DEFAULT_SERVER_HOST = "127.0.0.1"
DEFAULT_SERVER_PORT = 4096
DEFAULT_SERVER_COMMAND = ("bunx", "opencode-ai", "serve")
SUPPORTED_PROVIDERS = ("opencode", "claude-code", "cli")
CLAUDE_DEFAULT_MODEL = "claude-sonnet-4-20250514"
OPENCODE_DEFAULT_MODEL = "opencode/grok-code-fast-1"
DEFAULT_CLAUDE_COMMAND = ("claude",)


@dataclass(slots=True)
class ServerSettings:
    """Long-lived agent server settings."""

    host: str = DEFAULT_SERVER_HOST
    port: int = DEFAULT_SERVER_PORT
    command: tuple[str, ...] = DEFAULT_SERVER_COMMAND
    startup_timeout_seconds: float = 30.0
    health_path: str = "/global/health"
    stop_grace_seconds: float = 5.0


@dataclass(slots=True)
class ExecutorSettings:
    """Per-call subprocess settings."""

    timeout_seconds: float = 30 * 60
    kill_grace_seconds: float = 5.0


@dataclass(slots=True)
class EngineSettings:
    """Engine selection and per-variant defaults."""

    provider: str = "opencode"
    model: str | None = None
    claude_model: str = CLAUDE_DEFAULT_MODEL
    claude_command: tuple[str, ...] = DEFAULT_CLAUDE_COMMAND
    claude_max_turns: int = 50
    command_template: str = ""
    preview_mode: bool = False
    chat_only: bool = False


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    server: ServerSettings = field(default_factory=ServerSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    engine: EngineSettings = field(default_factory=EngineSettings)
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults for local development."""

        return cls(
            server=ServerSettings(
                host=resolve_server_host(),
                port=resolve_server_port(),
                command=_env_command("OPENCODE_SERVER_COMMAND", DEFAULT_SERVER_COMMAND),
                startup_timeout_seconds=float(
                    os.getenv("OPENCODE_STARTUP_TIMEOUT_SECONDS", "30"),
                ),
            ),
            executor=ExecutorSettings(
                timeout_seconds=float(os.getenv("CODING_ENGINE_TIMEOUT_SECONDS", str(30 * 60))),
            ),
            engine=EngineSettings(
                provider=os.getenv("CODING_ENGINE_PROVIDER", "opencode").strip().lower(),
                model=os.getenv("CODING_ENGINE_MODEL") or None,
                claude_model=os.getenv("CLAUDE_DEFAULT_MODEL", CLAUDE_DEFAULT_MODEL),
                claude_command=_env_command("CLAUDE_CODE_COMMAND", DEFAULT_CLAUDE_COMMAND),
                claude_max_turns=int(os.getenv("CLAUDE_MAX_TURNS", "50")),
                command_template=os.getenv("CODING_ENGINE_COMMAND_TEMPLATE", ""),
                preview_mode=_env_bool("CODING_ENGINE_PREVIEW_MODE", default=False),
                chat_only=_env_bool("CODING_ENGINE_CHAT_ONLY", default=False),
            ),
            log_level=os.getenv("CODING_ENGINES_LOG_LEVEL", "WARNING").strip().upper(),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range or unknown values."""

        if not 0 < self.server.port < 65_536:
            raise ValueError(f"OPENCODE_PORT must be in 1..65535, got {self.server.port}.")
        if self.server.startup_timeout_seconds <= 0:
            raise ValueError("OPENCODE_STARTUP_TIMEOUT_SECONDS must be > 0.")
        if not self.server.command:
            raise ValueError("OPENCODE_SERVER_COMMAND must not be empty.")
        if self.executor.timeout_seconds <= 0:
            raise ValueError("CODING_ENGINE_TIMEOUT_SECONDS must be > 0.")
        if self.engine.provider not in SUPPORTED_PROVIDERS:
            raise ValueError(
                f"Unsupported CODING_ENGINE_PROVIDER: {self.engine.provider!r}. "
                f"Supported: {', '.join(SUPPORTED_PROVIDERS)}",
            )
        if self.engine.claude_max_turns <= 0:
            raise ValueError("CLAUDE_MAX_TURNS must be > 0.")
        if self.engine.provider == "cli" and not self.engine.command_template.strip():
            raise ValueError(
                "CODING_ENGINE_COMMAND_TEMPLATE is required for the 'cli' provider.",
            )


def resolve_server_host(default: str = DEFAULT_SERVER_HOST) -> str:
    return os.getenv("OPENCODE_HOST", "").strip() or default


def resolve_server_port(default: int = DEFAULT_SERVER_PORT) -> int:
    raw = os.getenv("OPENCODE_PORT", "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as error:
        raise ValueError(f"Invalid OPENCODE_PORT value: {raw!r}") from error


def server_url() -> str:
    """Compose the agent server URL from env overrides and defaults; no I/O."""

    return f"http://{resolve_server_host()}:{resolve_server_port()}"


def _env_command(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return tuple(shlex.split(raw))


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")

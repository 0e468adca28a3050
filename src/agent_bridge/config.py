"""Runtime configuration for the backend bridge and state engine."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class StreamSettings:
    """Streaming turn settings shared by every adapter."""

    inactivity_timeout_seconds: float = 600.0
    ask_user_plan_timeout_seconds: float = 600.0
    ask_user_timeout_seconds: float = 60.0
    kill_grace_seconds: float = 5.0


@dataclass(slots=True)
class ContextSettings:
    """History budget for backends without native session resume."""

    max_tokens: int = 8_000
    max_messages: int = 20
    truncate_tool_output: int = 500
    include_header: bool = True


@dataclass(slots=True)
class BackendSettings:
    """Per-backend launch commands and credentials.

    Commands are shell-like strings; the first word is the executable probed
    for availability, the rest is prepended to the backend's own arguments.
    """

    amp_command: str = "amp"
    cursor_command: str = "cursor-agent"
    droid_command: str = "droid"
    codex_command: str = "codex"
    copilot_cli_path: str | None = None
    amp_api_key: str | None = None
    models: dict[str, str] = field(default_factory=dict)

    def command_argv(self, backend_id: str) -> list[str]:
        """Split configured command for backend into argv prefix."""

        commands = {
            "amp": self.amp_command,
            "cursor": self.cursor_command,
            "droid": self.droid_command,
            "codex": self.codex_command,
        }
        try:
            raw = commands[backend_id]
        except KeyError as error:
            raise ValueError(f"No command configured for backend: {backend_id}") from error
        return shlex.split(raw)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_bridge.db")
    log_level: str = "INFO"
    sqlite_busy_timeout_ms: int = 5_000
    stream: StreamSettings = field(default_factory=StreamSettings)
    context: ContextSettings = field(default_factory=ContextSettings)
    backends: BackendSettings = field(default_factory=BackendSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("AGENT_BRIDGE_DB_PATH", ".agent_bridge.db")),
            log_level=os.getenv("AGENT_BRIDGE_LOG_LEVEL", "INFO").upper(),
            sqlite_busy_timeout_ms=int(os.getenv("AGENT_BRIDGE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            stream=StreamSettings(
                inactivity_timeout_seconds=float(
                    os.getenv("AGENT_BRIDGE_INACTIVITY_TIMEOUT_SECONDS", "600"),
                ),
                ask_user_plan_timeout_seconds=float(
                    os.getenv("AGENT_BRIDGE_ASK_USER_PLAN_TIMEOUT_SECONDS", "600"),
                ),
                ask_user_timeout_seconds=float(
                    os.getenv("AGENT_BRIDGE_ASK_USER_TIMEOUT_SECONDS", "60"),
                ),
                kill_grace_seconds=float(os.getenv("AGENT_BRIDGE_KILL_GRACE_SECONDS", "5")),
            ),
            context=ContextSettings(
                max_tokens=int(os.getenv("AGENT_BRIDGE_CONTEXT_MAX_TOKENS", "8000")),
                max_messages=int(os.getenv("AGENT_BRIDGE_CONTEXT_MAX_MESSAGES", "20")),
                truncate_tool_output=int(
                    os.getenv("AGENT_BRIDGE_CONTEXT_TRUNCATE_TOOL_OUTPUT", "500"),
                ),
                include_header=_env_bool("AGENT_BRIDGE_CONTEXT_INCLUDE_HEADER", True),
            ),
            backends=BackendSettings(
                amp_command=os.getenv("AGENT_BRIDGE_AMP_COMMAND", "amp"),
                cursor_command=os.getenv("AGENT_BRIDGE_CURSOR_COMMAND", "cursor-agent"),
                droid_command=os.getenv("AGENT_BRIDGE_DROID_COMMAND", "droid"),
                codex_command=os.getenv("AGENT_BRIDGE_CODEX_COMMAND", "codex"),
                copilot_cli_path=_env_optional("AGENT_BRIDGE_COPILOT_CLI_PATH"),
                amp_api_key=_env_optional("AGENT_BRIDGE_AMP_API_KEY")
                or _env_optional("AMP_API_KEY"),
                models=_collect_model_overrides(),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the runtime cannot honor."""

        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"AGENT_BRIDGE_LOG_LEVEL must be one of {', '.join(_LOG_LEVELS)}.",
            )
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("AGENT_BRIDGE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.stream.inactivity_timeout_seconds <= 0:
            raise ValueError("AGENT_BRIDGE_INACTIVITY_TIMEOUT_SECONDS must be > 0.")
        if self.stream.ask_user_plan_timeout_seconds <= 0:
            raise ValueError("AGENT_BRIDGE_ASK_USER_PLAN_TIMEOUT_SECONDS must be > 0.")
        if self.stream.ask_user_timeout_seconds <= 0:
            raise ValueError("AGENT_BRIDGE_ASK_USER_TIMEOUT_SECONDS must be > 0.")
        if self.stream.kill_grace_seconds < 0:
            raise ValueError("AGENT_BRIDGE_KILL_GRACE_SECONDS must be >= 0.")
        if self.context.max_tokens <= 0:
            raise ValueError("AGENT_BRIDGE_CONTEXT_MAX_TOKENS must be > 0.")
        if self.context.max_messages <= 0:
            raise ValueError("AGENT_BRIDGE_CONTEXT_MAX_MESSAGES must be > 0.")
        if self.context.truncate_tool_output < 4:
            raise ValueError("AGENT_BRIDGE_CONTEXT_TRUNCATE_TOOL_OUTPUT must be >= 4.")
        for backend_id in ("amp", "cursor", "droid", "codex"):
            if not self.backends.command_argv(backend_id):
                raise ValueError(
                    f"AGENT_BRIDGE_{backend_id.upper()}_COMMAND must not be empty.",
                )


def _env_optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


def _collect_model_overrides() -> dict[str, str]:
    """Read `AGENT_BRIDGE_<BACKEND>_MODEL` overrides."""

    overrides: dict[str, str] = {}
    for backend_id in ("amp", "cursor", "droid", "codex", "copilot"):
        value = _env_optional(f"AGENT_BRIDGE_{backend_id.upper()}_MODEL")
        if value is not None:
            overrides[backend_id] = value
    return overrides


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

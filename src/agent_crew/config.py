"""Runtime configuration for runners, providers, tools and notifications."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse


def default_instance_name() -> str:
    """Runner instance name in the `hostname-pid` form."""

    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass(slots=True)
class RunnerSettings:
    """Scheduler loop and runner registry settings."""

    poll_interval_seconds: float = 5.0
    heartbeat_interval_seconds: float = 10.0
    sweep_interval_seconds: float = 30.0
    dead_after_seconds: int = 60
    max_concurrency: int = 3
    graceful_shutdown_seconds: float = 30.0
    instance_name: str = field(default_factory=default_instance_name)


@dataclass(slots=True)
class ProviderSettings:
    """LLM provider call settings."""

    timeout_seconds: float = 120.0
    max_output_tokens: int = 4096
    ollama_base_url: str = "http://localhost:11434/v1"
    orchestrator_native_tools: bool = False


@dataclass(slots=True)
class ToolSettings:
    """Built-in and custom tool execution settings."""

    timeout_seconds: float = 15.0
    code_interpreter_timeout_seconds: float = 10.0


@dataclass(slots=True)
class NotificationSettings:
    """Webhook delivery settings for output routes."""

    timeout_seconds: float = 10.0
    attempts: int = 2
    retry_delay_seconds: float = 5.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_crew.db")
    sqlite_busy_timeout_ms: int = 5_000
    encryption_key: str | None = None
    workspace_id: str = "default"
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    providers: ProviderSettings = field(default_factory=ProviderSettings)
    tools: ToolSettings = field(default_factory=ToolSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("AGENT_CREW_DB_PATH", ".agent_crew.db")),
            sqlite_busy_timeout_ms=int(os.getenv("AGENT_CREW_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            encryption_key=os.getenv("AGENT_CREW_ENCRYPTION_KEY") or None,
            workspace_id=os.getenv("AGENT_CREW_WORKSPACE_ID", "default").strip() or "default",
            runner=RunnerSettings(
                poll_interval_seconds=float(os.getenv("AGENT_CREW_POLL_INTERVAL_SECONDS", "5")),
                heartbeat_interval_seconds=float(
                    os.getenv("AGENT_CREW_HEARTBEAT_INTERVAL_SECONDS", "10"),
                ),
                sweep_interval_seconds=float(
                    os.getenv("AGENT_CREW_SWEEP_INTERVAL_SECONDS", "30"),
                ),
                dead_after_seconds=int(os.getenv("AGENT_CREW_RUNNER_DEAD_AFTER_SECONDS", "60")),
                max_concurrency=int(os.getenv("AGENT_CREW_MAX_CONCURRENCY", "3")),
                graceful_shutdown_seconds=float(
                    os.getenv("AGENT_CREW_GRACEFUL_SHUTDOWN_SECONDS", "30"),
                ),
                instance_name=os.getenv("AGENT_CREW_INSTANCE_NAME") or default_instance_name(),
            ),
            providers=ProviderSettings(
                timeout_seconds=float(os.getenv("AGENT_CREW_PROVIDER_TIMEOUT_SECONDS", "120")),
                max_output_tokens=int(os.getenv("AGENT_CREW_MAX_OUTPUT_TOKENS", "4096")),
                ollama_base_url=os.getenv(
                    "AGENT_CREW_OLLAMA_BASE_URL",
                    "http://localhost:11434/v1",
                ),
                orchestrator_native_tools=_env_bool(
                    "AGENT_CREW_ORCHESTRATOR_NATIVE_TOOLS",
                    default=False,
                ),
            ),
            tools=ToolSettings(
                timeout_seconds=float(os.getenv("AGENT_CREW_TOOL_TIMEOUT_SECONDS", "15")),
                code_interpreter_timeout_seconds=float(
                    os.getenv("AGENT_CREW_CODE_INTERPRETER_TIMEOUT_SECONDS", "10"),
                ),
            ),
            notifications=NotificationSettings(
                timeout_seconds=float(os.getenv("AGENT_CREW_WEBHOOK_TIMEOUT_SECONDS", "10")),
                attempts=int(os.getenv("AGENT_CREW_WEBHOOK_ATTEMPTS", "2")),
                retry_delay_seconds=float(
                    os.getenv("AGENT_CREW_WEBHOOK_RETRY_DELAY_SECONDS", "5"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on values the runner cannot work with."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("AGENT_CREW_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.runner.poll_interval_seconds <= 0:
            raise ValueError("AGENT_CREW_POLL_INTERVAL_SECONDS must be > 0.")
        if self.runner.heartbeat_interval_seconds <= 0:
            raise ValueError("AGENT_CREW_HEARTBEAT_INTERVAL_SECONDS must be > 0.")
        if self.runner.sweep_interval_seconds <= 0:
            raise ValueError("AGENT_CREW_SWEEP_INTERVAL_SECONDS must be > 0.")
        if self.runner.dead_after_seconds <= self.runner.heartbeat_interval_seconds:
            raise ValueError(
                "AGENT_CREW_RUNNER_DEAD_AFTER_SECONDS must be greater than "
                "AGENT_CREW_HEARTBEAT_INTERVAL_SECONDS.",
            )
        if self.runner.max_concurrency <= 0:
            raise ValueError("AGENT_CREW_MAX_CONCURRENCY must be a positive integer.")
        if self.runner.graceful_shutdown_seconds < 0:
            raise ValueError("AGENT_CREW_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.providers.timeout_seconds <= 0:
            raise ValueError("AGENT_CREW_PROVIDER_TIMEOUT_SECONDS must be > 0.")
        if self.providers.max_output_tokens <= 0:
            raise ValueError("AGENT_CREW_MAX_OUTPUT_TOKENS must be a positive integer.")
        _validate_base_url(self.providers.ollama_base_url)
        if self.tools.timeout_seconds <= 0:
            raise ValueError("AGENT_CREW_TOOL_TIMEOUT_SECONDS must be > 0.")
        if self.tools.code_interpreter_timeout_seconds <= 0:
            raise ValueError("AGENT_CREW_CODE_INTERPRETER_TIMEOUT_SECONDS must be > 0.")
        if self.notifications.timeout_seconds <= 0:
            raise ValueError("AGENT_CREW_WEBHOOK_TIMEOUT_SECONDS must be > 0.")
        if self.notifications.attempts <= 0:
            raise ValueError("AGENT_CREW_WEBHOOK_ATTEMPTS must be a positive integer.")
        if self.notifications.retry_delay_seconds < 0:
            raise ValueError("AGENT_CREW_WEBHOOK_RETRY_DELAY_SECONDS must be >= 0.")


def _validate_base_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid AGENT_CREW_OLLAMA_BASE_URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


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

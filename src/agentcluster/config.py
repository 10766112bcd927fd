"""Configuration management for AgentCluster.

This module defines the configuration schema using Pydantic settings,
supporting TOML files, environment variables, and programmatic overrides.

Configuration loading priority (highest to lowest):
1. Programmatic overrides (passed to AgentClusterConfig constructor)
2. Environment variables (AGENTCLUSTER_* prefix)
3. TOML configuration file
4. Default values defined in this module

Example TOML configuration:
    [executor]
    concurrency_limit = 2
    failure_mode = "continue"

    [agents.claude]
    command = "claude"
    prompt_as_input = true

Example environment variable override:
    AGENTCLUSTER_EXECUTOR__CONCURRENCY_LIMIT=8
    AGENTCLUSTER_MONITOR__CHECK_INTERVAL_SECONDS=0.1
"""

from __future__ import annotations

import re
import tempfile
from pathlib import Path
from typing import Any

import tomli
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_BLOCKAGE_SIGNATURES: list[str] = [
    "[y/n]",
    "(y/n)",
    "yes/no",
    "continue?",
    "press enter",
    "press any key",
    "password:",
    "passphrase",
    "username:",
    "authentication required",
    "merge conflict",
    "<<<<<<<",
    "waiting for input",
    "input required",
    "do you want to proceed",
]


class LoggingConfig(BaseSettings):
    """Logging configuration.

    Attributes:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Log format (json or console)
        file: Optional log file path (None logs to stderr)
        rotation_size_mb: Log file rotation size in megabytes
        retention_count: Number of rotated log files to keep
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENTCLUSTER_LOGGING__",
        extra="forbid",
    )

    level: str = Field(default="INFO")
    format: str = Field(default="console")
    file: Path | None = Field(default=None)
    rotation_size_mb: int = Field(default=20, ge=1, le=1000)
    retention_count: int = Field(default=5, ge=1, le=100)

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level is recognized."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format is recognized."""
        valid_formats = {"json", "console"}
        v_lower = v.lower()
        if v_lower not in valid_formats:
            raise ValueError(f"Invalid log format: {v}. Must be one of {valid_formats}")
        return v_lower


class DatabaseConfig(BaseSettings):
    """Context store database configuration.

    Attributes:
        url: SQLAlchemy async database URL
        echo: Enable SQL query logging
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENTCLUSTER_DATABASE__",
        extra="forbid",
    )

    url: str = Field(
        default="sqlite+aiosqlite:///./agentcluster-context.db",
        description="Context store connection URL",
    )
    echo: bool = Field(default=False)


class SessionConfig(BaseSettings):
    """Per-session PTY and buffer configuration.

    Attributes:
        buffer_max_lines: Maximum completed lines kept in the output buffer
        buffer_max_bytes: Maximum bytes of text kept in the output buffer
        terminal_cols: Default terminal width
        terminal_rows: Default terminal height
        terminate_grace_seconds: Wait after the polite signal before SIGKILL
        drain_timeout_seconds: Time allowed to drain the PTY after exit
        replay_lines: Lines replayed to an observer on attach
        prompt_delay_seconds: Delay before typing the prompt into the PTY
        recover_on_input: Mark a blocked session recovered when a writer types
        max_sessions: Maximum sessions held by the registry
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENTCLUSTER_SESSION__",
        extra="forbid",
    )

    buffer_max_lines: int = Field(default=10000, ge=10)
    buffer_max_bytes: int = Field(default=4 * 1024 * 1024, ge=1024)
    terminal_cols: int = Field(default=80, ge=10, le=1000)
    terminal_rows: int = Field(default=24, ge=2, le=1000)
    terminate_grace_seconds: float = Field(default=3.0, ge=0.0, le=120.0)
    drain_timeout_seconds: float = Field(default=1.0, ge=0.0, le=60.0)
    replay_lines: int = Field(default=50, ge=0, le=10000)
    recover_on_input: bool = Field(default=True)
    prompt_delay_seconds: float = Field(default=0.5, ge=0.0, le=30.0)
    max_sessions: int = Field(default=100, ge=1)


class MonitorConfig(BaseSettings):
    """Blockage detection configuration.

    Attributes:
        signatures: Case-insensitive substrings that indicate a stalled prompt
        check_interval_seconds: Sampling interval of the monitor loop
        scan_window_lines: Number of tail lines inspected per sample
        inactivity_timeout_seconds: Report blockage after this long without
            output (None disables)
        max_runtime_seconds: Abort sessions running longer than this
            (None disables)
        patterns: Regular expressions matched against each new output line
        auto_recovery: Leave ``blocked`` once fresh output without a
            signature appears, and send ``recovery_prompt`` on recovery
        recovery_prompt: Text written to the agent when it is recovered
            without operator input (None sends nothing)
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENTCLUSTER_MONITOR__",
        extra="forbid",
    )

    signatures: list[str] = Field(
        default_factory=lambda: list(DEFAULT_BLOCKAGE_SIGNATURES)
    )
    check_interval_seconds: float = Field(default=0.25, gt=0.0, lt=1.0)
    scan_window_lines: int = Field(default=20, ge=1, le=1000)
    inactivity_timeout_seconds: float | None = Field(default=None, gt=0.0)
    max_runtime_seconds: float | None = Field(default=None, gt=0.0)
    patterns: list[str] = Field(default_factory=list)
    auto_recovery: bool = Field(default=False)
    recovery_prompt: str | None = Field(default="\n")

    @field_validator("signatures")
    @classmethod
    def validate_signatures(cls, v: list[str]) -> list[str]:
        """Drop empty signatures, which would match every line."""
        return [s for s in v if s.strip()]

    @field_validator("patterns")
    @classmethod
    def validate_patterns(cls, v: list[str]) -> list[str]:
        """Reject patterns that do not compile."""
        for pattern in v:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"Invalid pattern {pattern!r}: {e}") from e
        return v


class ExecutorConfig(BaseSettings):
    """Cluster executor scheduling configuration.

    Attributes:
        concurrency_limit: Maximum live sessions per run
        poll_interval_seconds: Upper bound on the sleep between iterations
        max_retries: Retries granted to a failed task before it fails the run
        failure_mode: "fail_fast" aborts the run, "continue" skips dependents
        blocked_timeout_seconds: Escalate blocked sessions after this long
            (None disables)
        blocked_timeout_action: "notify" logs and publishes, "kill" kills
        base_work_dir: Parent directory for per-task working directories
        context_max_chars: Truncation limit for one upstream context section
        cleanup_on_finish: Kill remaining sessions of a run when it finishes
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENTCLUSTER_EXECUTOR__",
        extra="forbid",
    )

    concurrency_limit: int = Field(default=4, ge=1, le=256)
    poll_interval_seconds: float = Field(default=0.5, gt=0.0, le=30.0)
    max_retries: int = Field(default=1, ge=0, le=20)
    failure_mode: str = Field(default="fail_fast")
    blocked_timeout_seconds: float | None = Field(default=None, gt=0.0)
    blocked_timeout_action: str = Field(default="notify")
    base_work_dir: Path = Field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "agentcluster" / "runs"
    )
    context_max_chars: int = Field(default=10000, ge=100)
    cleanup_on_finish: bool = Field(default=True)

    @field_validator("failure_mode")
    @classmethod
    def validate_failure_mode(cls, v: str) -> str:
        """Validate failure mode is recognized."""
        valid_modes = {"fail_fast", "continue"}
        v_lower = v.lower()
        if v_lower not in valid_modes:
            raise ValueError(f"Invalid failure mode: {v}. Must be one of {valid_modes}")
        return v_lower

    @field_validator("blocked_timeout_action")
    @classmethod
    def validate_blocked_action(cls, v: str) -> str:
        """Validate blocked-timeout action is recognized."""
        valid_actions = {"notify", "kill"}
        v_lower = v.lower()
        if v_lower not in valid_actions:
            raise ValueError(
                f"Invalid blocked timeout action: {v}. Must be one of {valid_actions}"
            )
        return v_lower


class AgentCommandConfig(BaseModel):
    """How to launch one agent kind.

    ``args`` may contain a ``{prompt}`` placeholder. When ``prompt_as_input``
    is set the prompt is typed into the PTY after spawn instead. With
    ``inject_context`` the upstream task outputs are appended to the prompt;
    they are always exported as ``AGENTCLUSTER_UPSTREAM_CONTEXT``.
    """

    command: str
    args: list[str] = Field(default_factory=list)
    prompt_as_input: bool = Field(default=False)
    inject_context: bool = Field(default=True)
    env: dict[str, str] = Field(default_factory=dict)


def _default_agents() -> dict[str, AgentCommandConfig]:
    return {
        "claude": AgentCommandConfig(command="claude", prompt_as_input=True),
        "opencode": AgentCommandConfig(command="opencode", prompt_as_input=True),
        "shell": AgentCommandConfig(
            command="/bin/sh", args=["-c", "{prompt}"], inject_context=False
        ),
    }


class WebConfig(BaseSettings):
    """Web API configuration.

    Attributes:
        host: Bind host address
        port: Bind port number
        cors_origins: Allowed CORS origins
        long_poll_timeout_seconds: Maximum wait of a long-poll output request
        long_poll_idle_seconds: Detach a long-poll observer that has sent no
            request for this long (None disables)
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENTCLUSTER_WEB__",
        extra="forbid",
    )

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8765, ge=1, le=65535)
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    long_poll_timeout_seconds: float = Field(default=25.0, gt=0.0, le=120.0)
    long_poll_idle_seconds: float | None = Field(default=60.0, gt=0.0)


class AgentClusterConfig(BaseSettings):
    """Root configuration for AgentCluster.

    Environment variable format for nested config:
        AGENTCLUSTER_<SECTION>__<KEY>=value
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENTCLUSTER_",
        env_nested_delimiter="__",
        extra="forbid",
    )

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    agents: dict[str, AgentCommandConfig] = Field(default_factory=_default_agents)
    web: WebConfig = Field(default_factory=WebConfig)

    @field_validator("agents")
    @classmethod
    def merge_default_agents(
        cls, v: dict[str, AgentCommandConfig]
    ) -> dict[str, AgentCommandConfig]:
        """Keep built-in agent kinds that a TOML file does not override."""
        merged = _default_agents()
        merged.update(v)
        return merged


def load_config(config_path: Path | None = None) -> AgentClusterConfig:
    """Load configuration from TOML file with environment variable overrides.

    Configuration search order (first found is used):
    1. config_path if explicitly provided
    2. ./agentcluster.toml (current directory)
    3. ~/.config/agentcluster/config.toml (user config directory)

    Args:
        config_path: Explicit path to TOML config file. If None, searches
                    default locations.

    Returns:
        AgentClusterConfig: Fully resolved configuration instance.

    Raises:
        FileNotFoundError: If config_path is explicitly provided but doesn't exist.
        ValueError: If TOML file contains invalid configuration.
    """
    toml_data: dict[str, Any] = {}

    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        selected_path: Path | None = config_path
    else:
        search_paths = [
            Path.cwd() / "agentcluster.toml",
            Path.home() / ".config" / "agentcluster" / "config.toml",
        ]
        selected_path = next((p for p in search_paths if p.exists()), None)

    if selected_path is not None:
        with open(selected_path, "rb") as f:
            toml_data = tomli.load(f)

    try:
        return AgentClusterConfig(**toml_data)
    except Exception as e:
        if selected_path:
            raise ValueError(f"Invalid configuration in {selected_path}: {e}") from e
        raise ValueError(f"Invalid configuration: {e}") from e

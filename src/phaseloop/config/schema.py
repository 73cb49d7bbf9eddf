"""Configuration schema for phaseloop YAML files."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_GOAL = "Build a complete MVP application"

DEFAULT_AGENT_FLAGS: tuple[str, ...] = (
    "-p",
    "--verbose",
    "--dangerously-skip-permissions",
    "--output-format",
    "stream-json",
)


@dataclass(slots=True)
class RunConfig:
    project_dir: str = "."
    state_dir: str = ".claude"  # relative to project_dir
    goal: str = ""
    goal_file: str = "GOAL.md"
    max_iterations: int = 12
    default_timeout_ms: int = 300_000
    log_level: str = "info"
    log_file: str = "orchestrator.log"  # relative to state_dir


@dataclass(slots=True)
class RetryConfig:
    max_retries: int = 3
    rate_limit_cooldown_seconds: float = 1_800.0
    backoff_base_seconds: float = 2.0


@dataclass(slots=True)
class ResourceConfig:
    max_concurrent_operations: int = 5
    cleanup_wait_seconds: float = 30.0
    cleanup_poll_seconds: float = 1.0


@dataclass(slots=True)
class AgentConfig:
    binary: str = "claude"
    flags: list[str] = field(default_factory=lambda: list(DEFAULT_AGENT_FLAGS))
    mcp_config: str = ".mcp.json"  # relative to project_dir; skipped if absent
    api_key_env: str = ""  # env var whose value becomes ANTHROPIC_AUTH_TOKEN
    base_url: str = ""
    api_timeout_ms: int = 3_000_000
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class StatusConfig:
    update_interval_minutes: int = 30
    webhook_url: str = ""


@dataclass(slots=True)
class FeedbackConfig:
    inbox_file: str = "feedback.jsonl"  # relative to state_dir
    poll_seconds: float = 2.0


@dataclass(slots=True)
class CheckpointConfig:
    retention: int = 10


@dataclass(slots=True)
class PhaseloopConfig:
    version: int = 1
    run: RunConfig = field(default_factory=RunConfig)
    retries: RetryConfig = field(default_factory=RetryConfig)
    resources: ResourceConfig = field(default_factory=ResourceConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    status: StatusConfig = field(default_factory=StatusConfig)
    feedback: FeedbackConfig = field(default_factory=FeedbackConfig)
    checkpoints: CheckpointConfig = field(default_factory=CheckpointConfig)

    @property
    def project_path(self) -> Path:
        return Path(self.run.project_dir).expanduser()

    @property
    def state_path(self) -> Path:
        return self.project_path / self.run.state_dir

    @property
    def inbox_path(self) -> Path:
        return self.state_path / self.feedback.inbox_file

    @property
    def default_timeout_seconds(self) -> float:
        return self.run.default_timeout_ms / 1000.0

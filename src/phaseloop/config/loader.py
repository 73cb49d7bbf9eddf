"""YAML + environment config loader for phaseloop."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Mapping

import yaml
from dotenv import load_dotenv

from phaseloop.config.schema import (
    DEFAULT_GOAL,
    AgentConfig,
    CheckpointConfig,
    FeedbackConfig,
    PhaseloopConfig,
    ResourceConfig,
    RetryConfig,
    RunConfig,
    StatusConfig,
)
from phaseloop.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "phaseloop.yaml"

# (section, field, env var, cast)
_ENV_OVERRIDES: tuple[tuple[str, str, str, type], ...] = (
    ("run", "project_dir", "PHASELOOP_PROJECT_DIR", str),
    ("run", "goal", "GOAL", str),
    ("run", "max_iterations", "MAX_ITERATIONS", int),
    ("run", "default_timeout_ms", "DEFAULT_TIMEOUT", int),
    ("run", "log_level", "LOG_LEVEL", str),
    ("retries", "max_retries", "MAX_RETRIES", int),
    ("resources", "max_concurrent_operations", "MAX_CONCURRENT_OPS", int),
    ("status", "update_interval_minutes", "STATUS_UPDATE_INTERVAL_MINUTES", int),
    ("status", "webhook_url", "STATUS_WEBHOOK_URL", str),
    ("agent", "binary", "PHASELOOP_AGENT_BINARY", str),
    ("agent", "api_key_env", "PHASELOOP_API_KEY_ENV", str),
    ("agent", "base_url", "PHASELOOP_BASE_URL", str),
)


def load_config(
    path: str | Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> PhaseloopConfig:
    """Load YAML config (if present) and apply environment overrides."""
    if environ is None:
        load_dotenv()
        environ = os.environ
    p = Path(path) if path else Path(DEFAULT_CONFIG_FILE)
    raw = _load_yaml(p)

    cfg = PhaseloopConfig(
        version=int(raw.get("version", 1)),
        run=RunConfig(**_pick(_section(raw, "run"), RunConfig)),
        retries=RetryConfig(**_pick(_section(raw, "retries"), RetryConfig)),
        resources=ResourceConfig(**_pick(_section(raw, "resources"), ResourceConfig)),
        agent=AgentConfig(**_pick(_section(raw, "agent"), AgentConfig)),
        status=StatusConfig(**_pick(_section(raw, "status"), StatusConfig)),
        feedback=FeedbackConfig(**_pick(_section(raw, "feedback"), FeedbackConfig)),
        checkpoints=CheckpointConfig(**_pick(_section(raw, "checkpoints"), CheckpointConfig)),
    )
    apply_env_overrides(cfg, environ)
    return cfg


def apply_env_overrides(cfg: PhaseloopConfig, environ: Mapping[str, str]) -> None:
    for section_name, field_name, env_name, cast in _ENV_OVERRIDES:
        value = environ.get(env_name, "").strip()
        if not value:
            continue
        try:
            converted = cast(value)
        except ValueError as exc:
            raise ConfigurationError(f"{env_name} must be {cast.__name__}, got {value!r}") from exc
        setattr(getattr(cfg, section_name), field_name, converted)


def validate_config(cfg: PhaseloopConfig, environ: Mapping[str, str] | None = None) -> None:
    """Raise ConfigurationError for values the orchestrator cannot run with."""
    env = os.environ if environ is None else environ
    if cfg.run.max_iterations <= 0:
        raise ConfigurationError("max_iterations must be > 0.")
    if cfg.run.default_timeout_ms <= 0:
        raise ConfigurationError("default_timeout_ms must be > 0.")
    if cfg.retries.max_retries < 0:
        raise ConfigurationError("max_retries must be >= 0.")
    if cfg.resources.max_concurrent_operations <= 0:
        raise ConfigurationError("max_concurrent_operations must be > 0.")
    if cfg.checkpoints.retention <= 0:
        raise ConfigurationError("checkpoints.retention must be > 0.")
    cfg.status.update_interval_minutes = max(1, cfg.status.update_interval_minutes)
    if cfg.agent.api_key_env and not env.get(cfg.agent.api_key_env):
        raise ConfigurationError(
            f"Missing required environment variables: {cfg.agent.api_key_env}",
        )


def resolve_goal(cfg: PhaseloopConfig, override: str | None = None) -> str:
    """Pick the run goal: explicit override, then GOAL.md, then config/env, then default."""
    if override and override.strip():
        return override.strip()
    goal_file = cfg.project_path / cfg.run.goal_file
    if goal_file.exists():
        try:
            content = goal_file.read_text(encoding="utf-8").strip()
        except OSError as exc:
            logger.error("Failed to read %s: %s", goal_file, exc)
        else:
            if content:
                logger.info("Loaded goal from %s", goal_file.name)
                return content
    if cfg.run.goal.strip():
        return cfg.run.goal.strip()
    logger.warning("No goal file or GOAL set, using fallback goal")
    return DEFAULT_GOAL


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
    return raw if isinstance(raw, dict) else {}


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name, {})
    return value if isinstance(value, dict) else {}


def _pick(raw: dict[str, Any], model_type: type[Any]) -> dict[str, Any]:
    allowed = set(model_type.__dataclass_fields__.keys())
    return {k: v for k, v in raw.items() if k in allowed}

"""Global test fixtures for phaseloop."""

from __future__ import annotations

import sys
from collections.abc import Callable
from pathlib import Path

import pytest

from phaseloop.config.schema import PhaseloopConfig

FAKE_AGENT = Path(__file__).parent / "helpers" / "fake_agent.py"


@pytest.fixture
def fake_agent_argv() -> list[str]:
    """Binary + flags that launch the stand-in agent script."""
    return [sys.executable, str(FAKE_AGENT)]


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., PhaseloopConfig]:
    """Config rooted in a temp project dir with fast cleanup/poll timings."""

    def _make(**run_overrides: object) -> PhaseloopConfig:
        cfg = PhaseloopConfig()
        cfg.run.project_dir = str(tmp_path)
        cfg.resources.cleanup_wait_seconds = 0.2
        cfg.resources.cleanup_poll_seconds = 0.01
        cfg.feedback.poll_seconds = 0.01
        for key, value in run_overrides.items():
            setattr(cfg.run, key, value)
        return cfg

    return _make
